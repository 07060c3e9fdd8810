from __future__ import annotations

import logging
import math
import os
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential, wait_random

logger = logging.getLogger(__name__)

# ========== Environment & Logging helpers ==========

_TRUTHY = frozenset({"1", "true", "t", "yes", "y", "on"})

N = TypeVar("N", int, float)


def getenv_str(name: str, default: str) -> str:
    v = os.getenv(name)
    return v if v is not None and v.strip() else default


def _getenv_number(name: str, default: N, cast: Callable[[str], N],
                   min_val: Optional[N], max_val: Optional[N]) -> N:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        val = cast(raw.strip())
    except ValueError:
        logger.warning("ignoring %s=%r: not a valid %s", name, raw, cast.__name__)
        return default
    if min_val is not None and val < min_val:
        val = min_val
    if max_val is not None and val > max_val:
        val = max_val
    return val


def getenv_int(name: str, default: int, min_val: Optional[int] = None, max_val: Optional[int] = None) -> int:
    return _getenv_number(name, default, int, min_val, max_val)


def getenv_float(name: str, default: float, min_val: Optional[float] = None, max_val: Optional[float] = None) -> float:
    return _getenv_number(name, default, float, min_val, max_val)


def getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def getenv_csv(name: str, default_csv: str) -> Tuple[str, ...]:
    """Comma-separated env var as a tuple; blank items dropped."""
    return tuple(p for p in (x.strip() for x in getenv_str(name, default_csv).split(",")) if p)


def init_logging(log_path: Path, level: int = logging.INFO) -> None:
    """
    File + console logging for the standalone tools (payload fetch).
    The scheduler itself goes through LoggingExtension.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.FileHandler(log_path, encoding="utf-8"), logging.StreamHandler()],
    )

# ========== Human readable formatting ==========

_RAM_UNITS = ("GB", "TB", "PB", "EB")
_NUMBER_SUFFIXES = ("", "k", "m", "b", "t", "q")


def format_ram(gb: float, digits: int = 2) -> str:
    """Memory amounts are expressed in GB by the execution agent."""
    if gb is None or not math.isfinite(gb):
        return "n/a"
    value = float(gb)
    unit = _RAM_UNITS[0]
    for unit in _RAM_UNITS:
        if abs(value) < 1024 or unit == _RAM_UNITS[-1]:
            break
        value /= 1024
    return f"{value:.{digits}f}{unit}"


def format_percent(ratio: Optional[float], digits: int = 0) -> str:
    if ratio is None or not math.isfinite(ratio):
        return "n/a"
    return f"{ratio * 100:.{digits}f}%"


def format_number(n: float, digits: int = 3) -> str:
    if n is None or not math.isfinite(n):
        return "n/a"
    value = float(n)
    suffix = _NUMBER_SUFFIXES[0]
    for suffix in _NUMBER_SUFFIXES:
        if abs(value) < 1000 or suffix == _NUMBER_SUFFIXES[-1]:
            break
        value /= 1000
    return f"{value:.{digits}f}{suffix}"


def format_duration(ms: float) -> str:
    if ms is None or not math.isfinite(ms):
        return "n/a"
    total = int(round(ms / 1000.0))
    hours, rem = divmod(total, 3600)
    minutes, seconds = divmod(rem, 60)
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"

# ========== Exceptions & HTTP status mapping ==========

class TransientHTTPError(Exception):
    """Retryable transient HTTP/Net error (429/5xx/timeouts)."""

class NonRetryableHTTPError(Exception):
    """Non-retryable client error (e.g., 404) or auth failure."""

def http_status_to_exc(status: Optional[int]) -> Optional[Exception]:
    if status is None:
        return None
    if status in (401, 404):
        return NonRetryableHTTPError(f"HTTP {status}")
    if status >= 400:
        # rate limits (403/429) and 5xx are usually temporary
        return TransientHTTPError(f"HTTP {status}")
    return None

def retry_async(max_attempts: int, initial_delay_ms: int, max_delay_ms: int, jitter_ms: int):
    def _decorator(fn: Callable[..., Awaitable]):
        @retry(
            reraise=True,
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential(multiplier=initial_delay_ms / 1000.0, max=max_delay_ms / 1000.0)
            + wait_random(0, jitter_ms / 1000.0),
            retry=retry_if_exception_type((TransientHTTPError, IOError, TimeoutError)),
        )
        async def wrapper(*args, **kwargs):
            return await fn(*args, **kwargs)
        return wrapper
    return _decorator
