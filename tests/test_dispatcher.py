# tests/test_dispatcher.py
import logging

import pytest

from batcher.config import Config
from batcher.dispatcher import BatchDispatcher, InvalidTargetError, plan_placements
from batcher.models import OperationCosts, OperationKind
from batcher.pool import WorkerPool

from fakes import FakeAgent, node, target

UNIT = OperationCosts(weaken=1.0, grow=1.0, hack=1.0)


def _nodes():
    # deliberately unsorted
    return [node("c", 100.0), node("a", 10.0), node("b", 10.0)]


def _plan(op, threads, nodes=None, **kw):
    kw.setdefault("home_node", "home")
    kw.setdefault("reserved", 0.0)
    return plan_placements(op, threads, nodes or _nodes(), 1.0, **kw)


@pytest.mark.parametrize("op", [OperationKind.WEAKEN, OperationKind.GROW])
def test_weaken_and_grow_fill_smallest_first(op):
    assert _plan(op, 25) == {"a": 10, "b": 10, "c": 5}
    assert _plan(op, 15) == {"a": 10, "b": 5}
    assert _plan(op, 10) == {"a": 10}
    assert _plan(op, 0) == {}


def test_hack_is_not_fragmented():
    # fits whole on the smallest node
    assert _plan(OperationKind.HACK, 8) == {"a": 8}
    # too big for a and b, goes whole to c
    assert _plan(OperationKind.HACK, 25) == {"c": 25}
    # only the largest node may take a partial share
    assert _plan(OperationKind.HACK, 150) == {"c": 100}


def test_reserved_slice_only_on_home():
    nodes = [node("home", 20.0), node("w", 8.0)]
    assert _plan(OperationKind.WEAKEN, 30, nodes, reserved=15.0) == {"w": 8, "home": 5}


def test_partially_used_nodes_rank_by_free_memory():
    nodes = [node("big", 100.0, used=95.0), node("small", 10.0)]
    assert _plan(OperationKind.GROW, 12, nodes) == {"big": 5, "small": 7}


def _dispatcher(nodes, **cfg_kwargs):
    agent = FakeAgent(nodes=nodes, targets=[target("t1")])
    d = BatchDispatcher(agent, WorkerPool(agent), Config(**cfg_kwargs), UNIT)
    return d, agent


def test_dispatch_places_all_threads():
    d, agent = _dispatcher(_nodes())
    assert d.dispatch(OperationKind.WEAKEN, 25, "t1") is True
    assert [(n, t) for _, n, t, _ in agent.execs] == [("a", 10), ("b", 10), ("c", 5)]
    assert {p.node for p in d.last_placements} == {"a", "b", "c"}
    # every exec is preceded by a payload transfer to that node
    assert [n for _, n in agent.transfers] == ["a", "b", "c"]
    assert all(path.endswith("rpc-weaken.js") for path, _ in agent.transfers)


def test_dispatch_rounds_fractional_threads_up():
    d, agent = _dispatcher(_nodes())
    assert d.dispatch(OperationKind.GROW, 4.2, "t1") is True
    assert agent.execs[0][2] == 5


def test_dispatch_zero_threads_is_noop():
    d, agent = _dispatcher(_nodes())
    assert d.dispatch(OperationKind.HACK, 0, "t1") is True
    assert agent.execs == []


def test_dispatch_non_finite_threads(caplog):
    d, agent = _dispatcher(_nodes())
    with caplog.at_level(logging.ERROR, logger="dispatcher"):
        assert d.dispatch(OperationKind.WEAKEN, float("inf"), "t1") is False
    assert agent.execs == []
    assert "invalid thread count" in caplog.text


def test_hack_overflow_reports_spawn_failure(caplog):
    d, agent = _dispatcher(_nodes())
    with caplog.at_level(logging.ERROR, logger="dispatcher"):
        assert d.dispatch(OperationKind.HACK, 150, "t1") is False
    assert [(n, t) for _, n, t, _ in agent.execs] == [("c", 100)]
    assert "spawn failed" in caplog.text
    assert "'remaining': 50" in caplog.text


def test_exec_failure_leaves_threads_unplaced(caplog):
    d, agent = _dispatcher(_nodes())
    agent.fail_nodes.add("a")
    with caplog.at_level(logging.WARNING, logger="dispatcher"):
        assert d.dispatch(OperationKind.WEAKEN, 25, "t1") is False
    assert [n for _, n, _, _ in agent.execs] == ["b", "c"]
    assert "exec failed" in caplog.text


def test_home_target_rejected():
    d, agent = _dispatcher(_nodes())
    with pytest.raises(InvalidTargetError):
        d.dispatch(OperationKind.HACK, 1, "home")
    assert agent.execs == []


def test_repolls_pool_between_calls():
    d, agent = _dispatcher([node("w", 10.0)])
    agent.consume = True
    assert d.dispatch(OperationKind.WEAKEN, 6, "t1") is True
    assert d.dispatch(OperationKind.WEAKEN, 6, "t1") is False
    assert [t for _, _, t, _ in agent.execs] == [6, 4]
