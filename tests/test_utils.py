# tests/test_utils.py
import warnings

import pytest

from batcher import utils


def test_format_ram():
    assert utils.format_ram(1.75) == "1.75GB"
    assert utils.format_ram(2048) == "2.00TB"
    assert utils.format_ram(float("nan")) == "n/a"


def test_format_number_and_percent():
    assert utils.format_number(950) == "950.000"
    assert utils.format_number(1_500_000) == "1.500m"
    assert utils.format_percent(0.256) == "26%"
    assert utils.format_percent(None) == "n/a"


def test_format_duration():
    assert utils.format_duration(4000) == "4s"
    assert utils.format_duration(125_000) == "2m 5s"
    assert utils.format_duration(3_725_000) == "1h 2m 5s"


def test_http_status_mapping():
    assert utils.http_status_to_exc(200) is None
    assert isinstance(utils.http_status_to_exc(404), utils.NonRetryableHTTPError)
    assert isinstance(utils.http_status_to_exc(401), utils.NonRetryableHTTPError)
    assert isinstance(utils.http_status_to_exc(429), utils.TransientHTTPError)
    assert isinstance(utils.http_status_to_exc(503), utils.TransientHTTPError)


def test_getenv_helpers(monkeypatch):
    monkeypatch.setenv("X_INT", "500")
    monkeypatch.setenv("X_CSV", " a, ,b ")
    assert utils.getenv_int("X_INT", 1, max_val=100) == 100
    assert utils.getenv_csv("X_CSV", "") == ("a", "b")
    assert utils.getenv_bool("X_MISSING", True) is True


@pytest.mark.asyncio
async def test_retry_async_retries_transient_only():
    calls = {"n": 0}

    @utils.retry_async(max_attempts=3, initial_delay_ms=1, max_delay_ms=2, jitter_ms=0)
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise utils.TransientHTTPError("HTTP 503")
        return "ok"

    assert await flaky() == "ok"
    assert calls["n"] == 3

    @utils.retry_async(max_attempts=3, initial_delay_ms=1, max_delay_ms=2, jitter_ms=0)
    async def gone():
        calls["n"] += 1
        raise utils.NonRetryableHTTPError("HTTP 404")

    calls["n"] = 0
    with pytest.raises(utils.NonRetryableHTTPError):
        await gone()
    assert calls["n"] == 1


@pytest.mark.asyncio
async def test_retry_async_backoff_emits_no_warnings():
    calls = {"n": 0}

    @utils.retry_async(max_attempts=2, initial_delay_ms=1, max_delay_ms=2, jitter_ms=1)
    async def flaky():
        calls["n"] += 1
        if calls["n"] < 2:
            raise utils.TransientHTTPError("HTTP 429")
        return "ok"

    with warnings.catch_warnings():
        warnings.simplefilter("error")
        assert await flaky() == "ok"
    assert calls["n"] == 2
