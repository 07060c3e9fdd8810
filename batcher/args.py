from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Optional

from .config import Config, ConfigError, load_config, with_overrides

EXIT_CONFIG_ERROR: int = 2


def build_parser() -> argparse.ArgumentParser:
    # Every option defaults to None so unset flags fall through to BATCHER_* env vars.
    p = argparse.ArgumentParser(
        description="Schedule timed weaken/grow/hack batches across a pool of worker nodes."
    )
    p.add_argument("--target", dest="targets", action="append", default=None,
                   help="Target name (repeatable). Defaults to every valid target.")

    p.add_argument("--margin", dest="margin_ms", type=float, default=None,
                   help="Safety gap between dependent dispatches in ms (default 200).")
    p.add_argument("--concurrency", type=int, default=None,
                   help="Max overlapping batches per target (default 2).")
    p.add_argument("--reserved", type=float, default=None,
                   help="Memory (GB) on the home node never offered to the pool (default 0).")
    p.add_argument("--memory-oversubscription", dest="memory_oversubscription", type=float, default=None,
                   help="Fraction of committed budgets grinding may overcommit (default 0.2).")
    p.add_argument("--steal", type=float, default=None,
                   help="Fraction of a target's money taken per batch (default 0.4).")
    p.add_argument("--prep-thresh", dest="prep_thresh", type=float, default=None,
                   help="Security/min-security ratio above which a batch only weakens (default 1.10).")
    p.add_argument("--money-thresh", dest="money_thresh", type=float, default=None,
                   help="Money/max-money ratio below which batches skip the hack (default 0, disabled).")
    p.add_argument("--cores", type=int, default=None)
    p.add_argument("--home-cores", dest="home_cores", action="store_true", default=None,
                   help="Size grow/weaken with the home node's core count.")
    p.add_argument("--home-node", dest="home_node", type=str, default=None)
    p.add_argument("--purchased-prefix", dest="purchased_prefix", type=str, default=None)
    p.add_argument("--max-grow-threads", dest="max_grow_threads", type=int, default=None)
    p.add_argument("--eligibility-ratio", dest="eligibility_ratio", type=float, default=None)
    p.add_argument("--payload-dir", dest="payload_dir", type=str, default=None)

    p.add_argument("--grind", action="store_true", default=None,
                   help="Spend leftover memory on weaken-only batches against an easy target.")
    p.add_argument("--once", action="store_true", default=None,
                   help="Run a single batch per target and exit.")
    p.add_argument("--debug", action="store_true", default=None)
    p.add_argument("--trace", action="store_true", default=None)
    p.add_argument("--log-dir", dest="log_dir", type=str, default=None,
                   help="Write per-target log files under this directory.")

    p.add_argument("--agent", type=str, default=None,
                   help="Execution agent factory as 'module:callable' (called with the Config).")
    p.add_argument("--scenario", type=str, default=None,
                   help="Run against a simulated cluster described by this JSON file.")
    p.add_argument("--mode", choices=["batch", "report", "weaken"], default="batch",
                   help="batch: run the scheduler; report: print target status; "
                        "weaken: restart every worker as weaken-only against the targets.")
    p.add_argument("--time-scale", dest="time_scale", type=float, default=1.0,
                   help="Simulated clock speed-up (simulation only).")
    return p


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    p = build_parser()
    return p.parse_args(list(argv) if argv is not None else None)


def config_from_args(ns: argparse.Namespace, base: Optional[Config] = None) -> Config:
    overrides = dict(vars(ns))
    if overrides.get("targets") is not None:
        overrides["targets"] = tuple(t for t in overrides["targets"] if t)
    if overrides.get("log_dir") is not None:
        overrides["log_dir"] = Path(overrides["log_dir"])
    return with_overrides(base if base is not None else load_config(), overrides)


__all__ = [
    "EXIT_CONFIG_ERROR",
    "ConfigError",
    "build_parser",
    "parse_args",
    "config_from_args",
]
