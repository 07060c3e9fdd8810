from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from extensions.grinding import GrindingLoop, GrindSelector
from extensions.logging import LoggingExtension
from extensions.monitoring import StatusMonitor, build_relays
from extensions.targets import best_grind_target, valid_targets

from .agent import ExecutionAgent
from .config import Config
from .dispatcher import BatchDispatcher
from .models import MemoryBudget, OperationCosts, OperationKind
from .pool import WorkerPool, check_external_memory
from .scheduler import TargetLoop
from .threads import ThreadCalculator

logger = logging.getLogger("orchestrator")

TargetProvider = Callable[[ExecutionAgent, Config], List[str]]


def measure_costs(agent: ExecutionAgent, cfg: Config) -> OperationCosts:
    """Per-thread memory of each payload; treated as constant for the run."""
    return OperationCosts(
        weaken=agent.payload_memory(cfg.payload_path(OperationKind.WEAKEN)),
        grow=agent.payload_memory(cfg.payload_path(OperationKind.GROW)),
        hack=agent.payload_memory(cfg.payload_path(OperationKind.HACK)),
    )


@dataclass
class Orchestrator:
    """
    Wires the pool, calculators, dispatcher and loops together and runs them on the
    current event loop.

    Startup order: memory check, relays + status monitor, a short settle sleep, then
    one TargetLoop per target and the grinding loop when enabled.
    """

    agent: ExecutionAgent
    cfg: Config
    log_ext: Optional[LoggingExtension] = None
    target_provider: TargetProvider = valid_targets
    grind_selector: GrindSelector = best_grind_target

    budget: MemoryBudget = field(default_factory=MemoryBudget)
    loops: Dict[str, TargetLoop] = field(default_factory=dict)
    background: List[asyncio.Task] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.pool = WorkerPool(self.agent)
        self.costs: Optional[OperationCosts] = None
        self.dispatcher: Optional[BatchDispatcher] = None
        self.calculator: Optional[ThreadCalculator] = None
        self.grinder: Optional[GrindingLoop] = None
        self.monitor: Optional[StatusMonitor] = None

    # ------------------------------------------------------------------ #
    # Setup
    # ------------------------------------------------------------------ #

    def prepare(self) -> None:
        """Startup checks and component wiring. Raises ExternalMemoryError."""
        check_external_memory(self.pool, self.cfg.reserved, self.agent.self_memory())
        self.costs = measure_costs(self.agent, self.cfg)
        self.dispatcher = BatchDispatcher(self.agent, self.pool, self.cfg, self.costs)
        self.calculator = ThreadCalculator(self.agent, self.cfg, self.costs, self.budget)
        self.monitor = StatusMonitor(agent=self.agent, cfg=self.cfg, pool=self.pool, budget=self.budget)
        if self.cfg.grind:
            self.grinder = GrindingLoop(
                agent=self.agent,
                cfg=self.cfg,
                pool=self.pool,
                dispatcher=self.dispatcher,
                budget=self.budget,
                costs=self.costs,
                selector=self.grind_selector,
            )

    def resolve_targets(self) -> List[str]:
        targets: Sequence[str] = self.cfg.targets or self.target_provider(self.agent, self.cfg)
        out = [t for t in targets if t != self.cfg.home_node]
        if len(out) != len(targets):
            logger.warning("[orchestrator] ignoring %r as a target", self.cfg.home_node)
        known = set(self.agent.list_nodes())
        unknown = [t for t in out if t not in known]
        if unknown:
            logger.warning("[orchestrator] ignoring unknown target(s): %s", ", ".join(unknown))
        return [t for t in out if t in known]

    def build_loop(self, name: str) -> TargetLoop:
        assert self.calculator is not None and self.dispatcher is not None
        log = self.log_ext.get_target_logger(name) if self.log_ext is not None else None
        loop = TargetLoop(
            name,
            agent=self.agent,
            cfg=self.cfg,
            calculator=self.calculator,
            dispatcher=self.dispatcher,
            log=log,
        )
        self.loops[name] = loop
        return loop

    # ------------------------------------------------------------------ #
    # Run
    # ------------------------------------------------------------------ #

    def _start_background(self) -> None:
        assert self.monitor is not None
        for relay in build_relays(self.agent, self.cfg):
            self.background.append(asyncio.create_task(relay.run(), name=f"relay:{relay.port}"))
        self.background.append(asyncio.create_task(self.monitor.run(), name="monitor"))

    async def _run_target(self, loop: TargetLoop) -> None:
        token = self.log_ext.set_target_context(loop.name) if self.log_ext is not None else None
        try:
            assert self.calculator is not None
            # prime the shared budget so grinding starts from a sane estimate
            try:
                self.calculator.calculate(loop.name)
            except Exception:
                logger.exception("[orchestrator] could not prime budget for %s", loop.name)
            await loop.run()
        finally:
            if token is not None:
                self.log_ext.reset_target_context(token)

    @staticmethod
    def _on_loop_done(task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("[orchestrator] loop %s stopped: %r", task.get_name(), exc, exc_info=exc)

    async def run(self) -> None:
        self.prepare()
        self._start_background()

        # let the relays subscribe before workers start writing
        await self.agent.sleep(self.cfg.startup_settle_ms)

        targets = self.resolve_targets()
        jobs = [
            asyncio.create_task(self._run_target(self.build_loop(name)), name=name) for name in targets
        ]
        if self.grinder is not None and not self.cfg.once:
            jobs.append(asyncio.create_task(self.grinder.run(), name="grind"))
        for job in jobs:
            job.add_done_callback(self._on_loop_done)

        logger.info(
            "[orchestrator] running %d target loop(s)%s",
            len(targets),
            " + grinding" if self.grinder is not None else "",
        )
        try:
            await asyncio.gather(*jobs, return_exceptions=True)
        finally:
            for job in jobs:
                job.cancel()
            await self.stop_background()

    async def stop_background(self) -> None:
        for t in self.background:
            t.cancel()
        await asyncio.gather(*self.background, return_exceptions=True)
        self.background.clear()


__all__ = ["measure_costs", "Orchestrator", "TargetProvider"]
