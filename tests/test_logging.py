# tests/test_logging.py
import logging

import pytest

from extensions.logging import TRACE, LoggingExtension, level_for, sanitize_target

pytestmark = pytest.mark.usefixtures("restore_root_logging")


def test_level_for():
    assert level_for(debug=False, trace=False) == logging.INFO
    assert level_for(debug=True, trace=False) == logging.DEBUG
    assert level_for(debug=True, trace=True) == TRACE
    assert logging.getLevelName(TRACE) == "TRACE"


def test_sanitize_target():
    assert sanitize_target("n00dles") == "n00dles"
    assert sanitize_target("../etc/passwd") == "etc_passwd"
    assert sanitize_target("...") == "target"


def test_target_logs_go_to_their_own_file(tmp_path):
    ext = LoggingExtension(tmp_path, global_level=logging.INFO, enable_session_log=True)
    try:
        ext.get_target_logger("alpha").info("batch for alpha")
        ext.get_target_logger("beta").info("batch for beta")

        token = ext.set_target_context("alpha")
        try:
            logging.getLogger("dispatcher").warning("shared module line")
        finally:
            ext.reset_target_context(token)
    finally:
        ext.close()

    alpha = (tmp_path / "alpha.log").read_text(encoding="utf-8")
    beta = (tmp_path / "beta.log").read_text(encoding="utf-8")
    session = (tmp_path / "session.log").read_text(encoding="utf-8")
    assert "batch for alpha" in alpha and "shared module line" in alpha
    assert "batch for alpha" not in beta and "shared module line" not in beta
    assert "batch for beta" in session


def test_target_handlers_are_lru_bounded(tmp_path):
    ext = LoggingExtension(tmp_path, max_open_target_logs=4)
    try:
        for name in ("a", "b", "c", "d", "e"):
            ext.get_target_logger(name)
        assert ext.open_target_logs == 4
        ext.close_target("e")
        assert ext.open_target_logs == 3
    finally:
        ext.close()
    assert ext.open_target_logs == 0


def test_without_log_dir_no_files(tmp_path):
    ext = LoggingExtension(None)
    log = ext.get_target_logger("alpha")
    assert log.name == "target.alpha"
    assert ext.open_target_logs == 0
    ext.close()
