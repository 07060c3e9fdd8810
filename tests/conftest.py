import logging

import pytest

from fakes import FakeAgent, node, target


@pytest.fixture
def agent():
    """One 128GB worker, the home node, and a prepared target `t1`."""
    return FakeAgent(
        nodes=[node("home", 64.0), node("pserv-0", 128.0)],
        targets=[target("t1")],
    )


@pytest.fixture
def restore_root_logging():
    # LoggingExtension replaces root stream handlers; put pytest's back afterwards.
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for h in list(root.handlers):
        if h not in handlers:
            root.removeHandler(h)
    for h in handlers:
        if h not in root.handlers:
            root.addHandler(h)
    root.setLevel(level)
