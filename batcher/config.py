from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from .models import OperationKind
from .utils import getenv_bool, getenv_csv, getenv_float, getenv_int, getenv_str

# ---------- Project Paths ----------
PROJECT_ROOT: Path = Path(__file__).resolve().parents[1]
LOG_DIR: Path = PROJECT_ROOT / "logs"

# Grow damage is offset against the steal fraction at this ratio.
GROW_TO_HACK_RATIO: float = 1.25


class ConfigError(ValueError):
    """Raised when a configuration value is out of range."""


# ---------- Config dataclass ----------
@dataclass(frozen=True)
class Config:
    # Batch timing
    margin_ms: float = 200.0
    concurrency: int = 2

    # Memory policy
    reserved: float = 0.0
    memory_oversubscription: float = 0.2
    home_node: str = "home"
    purchased_prefix: str = "pserv"

    # Thread sizing
    steal: float = 0.4
    prep_thresh: float = 1.10
    money_thresh: float = 0.0
    cores: int = 1
    home_cores: bool = False
    max_grow_threads: Optional[int] = None

    # Targets
    targets: Tuple[str, ...] = ()
    eligibility_ratio: float = 0.5
    grind: bool = False

    # Loop pacing (ms)
    eligibility_poll_ms: float = 60_000.0
    grind_retry_ms: float = 60_000.0
    status_interval_ms: float = 5_000.0
    startup_settle_ms: float = 10.0

    # Payloads
    payload_dir: str = "/bb"

    # Logging / relay
    debug: bool = False
    trace: bool = False
    relay_queue_size: int = 256
    log_dir: Optional[Path] = None
    max_open_target_logs: int = 64

    # Testing / one-shot
    once: bool = False

    def __post_init__(self) -> None:
        # trace output is a superset of debug output
        if self.trace and not self.debug:
            object.__setattr__(self, "debug", True)
        object.__setattr__(self, "targets", tuple(self.targets))
        validate_config(self)

    def payload_path(self, op: OperationKind) -> str:
        return f"{self.payload_dir.rstrip('/')}/rpc-{op.value}.js"

    def payload_paths(self) -> Dict[OperationKind, str]:
        return {op: self.payload_path(op) for op in OperationKind}


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ConfigError(msg)


def _finite(v: float) -> bool:
    return isinstance(v, (int, float)) and math.isfinite(v)


def validate_config(cfg: Config) -> None:
    _require(_finite(cfg.margin_ms) and cfg.margin_ms >= 0, f"margin must be >= 0 ms (got {cfg.margin_ms})")
    _require(cfg.concurrency >= 1, f"concurrency must be >= 1 (got {cfg.concurrency})")
    _require(_finite(cfg.reserved) and cfg.reserved >= 0, f"reserved must be >= 0 (got {cfg.reserved})")
    _require(
        _finite(cfg.memory_oversubscription) and 0.0 <= cfg.memory_oversubscription <= 1.0,
        f"memoryOversubscription must be within [0, 1] (got {cfg.memory_oversubscription})",
    )
    # 1 / (1 - steal * ratio) must stay finite and positive
    _require(
        _finite(cfg.steal) and 0.0 < cfg.steal < 1.0 / GROW_TO_HACK_RATIO,
        f"steal must be within (0, {1.0 / GROW_TO_HACK_RATIO}) (got {cfg.steal})",
    )
    _require(_finite(cfg.prep_thresh) and cfg.prep_thresh >= 1.0, f"prepThresh must be >= 1 (got {cfg.prep_thresh})")
    _require(
        _finite(cfg.money_thresh) and 0.0 <= cfg.money_thresh <= 1.0,
        f"moneyThresh must be within [0, 1] (got {cfg.money_thresh})",
    )
    _require(cfg.cores >= 1, f"cores must be >= 1 (got {cfg.cores})")
    _require(
        cfg.max_grow_threads is None or cfg.max_grow_threads >= 1,
        f"maxGrowThreads must be >= 1 when set (got {cfg.max_grow_threads})",
    )
    _require(
        _finite(cfg.eligibility_ratio) and 0.0 < cfg.eligibility_ratio <= 1.0,
        f"eligibilityRatio must be within (0, 1] (got {cfg.eligibility_ratio})",
    )
    for name in ("eligibility_poll_ms", "grind_retry_ms", "status_interval_ms", "startup_settle_ms"):
        v = getattr(cfg, name)
        _require(_finite(v) and v >= 0, f"{name} must be >= 0 (got {v})")
    _require(cfg.relay_queue_size >= 1, f"relay_queue_size must be >= 1 (got {cfg.relay_queue_size})")
    _require(bool(cfg.payload_dir.strip()), "payload_dir must not be empty")
    _require(cfg.home_node not in cfg.targets, f"{cfg.home_node!r} cannot be a target")


def load_config() -> Config:
    """Build a Config from BATCHER_* environment variables (defaults otherwise)."""
    max_grow = getenv_int("BATCHER_MAX_GROW_THREADS", 0, min_val=0)
    log_dir = getenv_str("BATCHER_LOG_DIR", "")
    return Config(
        margin_ms=getenv_float("BATCHER_MARGIN_MS", 200.0),
        concurrency=getenv_int("BATCHER_CONCURRENCY", 2, min_val=1),
        reserved=getenv_float("BATCHER_RESERVED", 0.0, min_val=0.0),
        memory_oversubscription=getenv_float("BATCHER_MEMORY_OVERSUBSCRIPTION", 0.2, min_val=0.0, max_val=1.0),
        home_node=getenv_str("BATCHER_HOME_NODE", "home"),
        purchased_prefix=getenv_str("BATCHER_PURCHASED_PREFIX", "pserv"),
        steal=getenv_float("BATCHER_STEAL", 0.4),
        prep_thresh=getenv_float("BATCHER_PREP_THRESH", 1.10),
        money_thresh=getenv_float("BATCHER_MONEY_THRESH", 0.0, min_val=0.0, max_val=1.0),
        cores=getenv_int("BATCHER_CORES", 1, min_val=1),
        home_cores=getenv_bool("BATCHER_HOME_CORES", False),
        max_grow_threads=max_grow or None,
        targets=getenv_csv("BATCHER_TARGETS", ""),
        eligibility_ratio=getenv_float("BATCHER_ELIGIBILITY_RATIO", 0.5),
        grind=getenv_bool("BATCHER_GRIND", False),
        payload_dir=getenv_str("BATCHER_PAYLOAD_DIR", "/bb"),
        debug=getenv_bool("BATCHER_DEBUG", False),
        trace=getenv_bool("BATCHER_TRACE", False),
        log_dir=Path(log_dir) if log_dir else None,
    )


def with_overrides(cfg: Config, overrides: Mapping[str, Any]) -> Config:
    """
    Return a copy of cfg with every non-None override applied.
    Unknown keys are ignored so an argparse namespace can be passed as vars(ns).
    """
    known = {f.name for f in fields(Config)}
    changes = {k: v for k, v in overrides.items() if k in known and v is not None}
    return replace(cfg, **changes)


__all__ = [
    "GROW_TO_HACK_RATIO",
    "ConfigError",
    "Config",
    "validate_config",
    "load_config",
    "with_overrides",
]
