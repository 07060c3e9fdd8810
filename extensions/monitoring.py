from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Callable, List, Optional

import psutil  # type: ignore

from batcher.agent import DEBUG_PORT, INFO_PORT, NULL_PORT_DATA, TRACE_PORT, ExecutionAgent
from batcher.config import Config
from batcher.models import MemoryBudget
from batcher.pool import WorkerPool
from batcher.utils import format_percent, format_ram

from .logging import TRACE

logger = logging.getLogger("monitor")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

relay_logger = logging.getLogger("relay")


# ---------------------------------------------------------------------------
# Status snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    processes: int
    ratio: Optional[float]
    budget: float
    used: float
    free: float
    installed: float
    host_rss: Optional[int] = None

    def render(self) -> str:
        host = format_ram(self.host_rss / 1024 ** 3) if self.host_rss is not None else "n/a"
        return (
            f"{self.processes:5d} {format_percent(self.ratio):>4s} "
            f"Budget: {format_ram(self.budget):>10s} Used: {format_ram(self.used):>10s} "
            f"Free: {format_ram(self.free):>10s} Installed: {format_ram(self.installed):>10s} "
            f"Host: {host}"
        )


def _host_rss() -> Optional[int]:
    try:
        return int(psutil.Process(os.getpid()).memory_info().rss)
    except (psutil.Error, OSError) as e:  # pragma: no cover
        logger.debug("[monitor] psutil memory_info failed: %s", e)
        return None


def take_snapshot(pool: WorkerPool, budget: MemoryBudget) -> StatusSnapshot:
    snap = pool.snapshot()
    total_budget = budget.total()
    ratio = snap.used / total_budget if total_budget > 0 else None
    return StatusSnapshot(
        processes=snap.processes,
        ratio=ratio,
        budget=total_budget,
        used=snap.used,
        free=snap.free,
        installed=snap.installed,
        host_rss=_host_rss(),
    )


class StatusMonitor:
    """Logs a pool utilization line every `status_interval_ms`."""

    def __init__(self, *, agent: ExecutionAgent, cfg: Config, pool: WorkerPool, budget: MemoryBudget) -> None:
        self.agent = agent
        self.cfg = cfg
        self.pool = pool
        self.budget = budget
        self.last: Optional[StatusSnapshot] = None

    def tick(self) -> StatusSnapshot:
        self.last = take_snapshot(self.pool, self.budget)
        logger.info("%s", self.last.render())
        return self.last

    async def run(self) -> None:
        while True:
            try:
                self.tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[monitor] status snapshot failed")
            await self.agent.sleep(self.cfg.status_interval_ms)


# ---------------------------------------------------------------------------
# Log relay
# ---------------------------------------------------------------------------


class LogRelay:
    """
    Forwards one channel's messages to the `relay` logger.

    The channel is cleared on start; each message is read after the next write and
    the empty-port sentinel is dropped.
    """

    def __init__(self, agent: ExecutionAgent, port: int, level: int, enabled: Callable[[], bool]) -> None:
        self.agent = agent
        self.port = port
        self.level = level
        self.enabled = enabled
        self.forwarded = 0

    def forward(self, data: object) -> bool:
        if data == NULL_PORT_DATA or not self.enabled():
            return False
        relay_logger.log(self.level, "%s", data)
        self.forwarded += 1
        return True

    async def run(self) -> None:
        channel = self.agent.get_port(self.port)
        channel.clear()
        while True:
            if channel.empty():
                await channel.next_write()
            self.forward(channel.read())


def build_relays(agent: ExecutionAgent, cfg: Config) -> List[LogRelay]:
    return [
        LogRelay(agent, TRACE_PORT, TRACE, lambda: cfg.trace),
        LogRelay(agent, DEBUG_PORT, logging.DEBUG, lambda: cfg.debug),
        LogRelay(agent, INFO_PORT, logging.INFO, lambda: True),
    ]


__all__ = [
    "StatusSnapshot",
    "take_snapshot",
    "StatusMonitor",
    "LogRelay",
    "build_relays",
]
