from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from batcher.agent import ExecutionAgent
from batcher.config import Config
from batcher.dispatcher import BatchDispatcher
from batcher.models import MemoryBudget, OperationCosts, OperationKind
from batcher.pool import WorkerPool
from batcher.utils import format_duration

from .targets import best_grind_target

logger = logging.getLogger("grinding")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

GrindSelector = Callable[[ExecutionAgent, Config], Optional[str]]


def leftover_threads(
    installed: float,
    committed: float,
    oversubscription: float,
    weaken_cost: float,
) -> float:
    """
    Weaken threads that fit beside the committed batch budgets. Budgets are
    discounted by `oversubscription`, so some overcommit is intentional.
    """
    if weaken_cost <= 0:
        return 0.0
    return (installed - committed * (1.0 - oversubscription)) / weaken_cost


class GrindingLoop:
    """
    Soaks up leftover memory with weaken-only batches against an easy target.
    Runs forever; nothing it does feeds back into the money batches.
    """

    def __init__(
        self,
        *,
        agent: ExecutionAgent,
        cfg: Config,
        pool: WorkerPool,
        dispatcher: BatchDispatcher,
        budget: MemoryBudget,
        costs: OperationCosts,
        selector: GrindSelector = best_grind_target,
    ) -> None:
        self.agent = agent
        self.cfg = cfg
        self.pool = pool
        self.dispatcher = dispatcher
        self.budget = budget
        self.costs = costs
        self.selector = selector
        self.rounds = 0

    def threads(self) -> float:
        return leftover_threads(
            self.pool.installed_memory(),
            self.budget.total(),
            self.cfg.memory_oversubscription,
            self.costs.weaken,
        )

    async def step(self) -> Optional[str]:
        """One grinding round. Returns the target used, or None when nothing was available."""
        target = self.selector(self.agent, self.cfg)
        if not target:
            logger.debug("[grind] no grind target available; retrying in %s",
                         format_duration(self.cfg.grind_retry_ms))
            await self.agent.sleep(self.cfg.grind_retry_ms)
            return None

        threads = self.threads()
        weaken_time = self.agent.duration(OperationKind.WEAKEN, target)
        if threads >= 1:
            self.dispatcher.dispatch(OperationKind.WEAKEN, threads, target)
        else:
            logger.debug("[grind] no leftover capacity (threads=%.2f)", threads)
        self.rounds += 1
        await self.agent.sleep(weaken_time + self.cfg.margin_ms)
        return target

    async def run(self) -> None:
        logger.info("[grind] started")
        while True:
            try:
                await self.step()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[grind] round failed; retrying")
                await self.agent.sleep(self.cfg.margin_ms)


__all__ = ["leftover_threads", "GrindingLoop", "GrindSelector"]
