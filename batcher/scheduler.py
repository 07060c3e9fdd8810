from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Set

from .agent import ExecutionAgent
from .config import Config
from .dispatcher import BatchDispatcher
from .models import OperationKind
from .threads import ThreadCalculator, is_prep_cycle
from .timing import calculate_times
from .utils import format_duration

logger = logging.getLogger("scheduler")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class TargetLoop:
    """
    Drives the repeating batch cycle of one target.

    States:
      - waiting:  required skill above what the operator can reach; re-polled every
                  `eligibility_poll_ms`.
      - cycling:  one batch started per iteration; up to `concurrency` batches overlap.

    The loop never terminates on its own (except with `once`). Agent errors while
    pacing are logged and retried one margin later.
    """

    def __init__(
        self,
        name: str,
        *,
        agent: ExecutionAgent,
        cfg: Config,
        calculator: ThreadCalculator,
        dispatcher: BatchDispatcher,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self.agent = agent
        self.cfg = cfg
        self.calculator = calculator
        self.dispatcher = dispatcher
        self.log = log or logger
        self.state = "waiting"
        self.batches_started = 0
        self._inflight: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------ #
    # Eligibility
    # ------------------------------------------------------------------ #

    def is_eligible(self) -> bool:
        s = self.agent.get_target(self.name)
        return s.required_skill <= self.agent.skill_level() * self.cfg.eligibility_ratio

    async def wait_until_eligible(self) -> None:
        self.state = "waiting"
        while not self.is_eligible():
            await self.agent.sleep(self.cfg.eligibility_poll_ms)
        self.state = "cycling"

    # ------------------------------------------------------------------ #
    # One batch
    # ------------------------------------------------------------------ #

    def _log_stats(self, batch_id: int, src: str, argv: Dict[str, Any]) -> None:
        argv = dict(argv)
        argv["batch_id"] = batch_id
        argv["name"] = self.name
        self.log.debug("loop.%s %s", src, argv)

    async def run_batch(self, batch_id: int) -> None:
        cfg = self.cfg
        margin = cfg.margin_ms
        d = self.dispatcher
        name = self.name

        s = self.agent.get_target(name)
        times = calculate_times(self.agent, name, margin)
        threads = self.calculator.calculate(name)
        if threads is None:
            return

        if cfg.debug:
            self._log_stats(batch_id, "threads", threads.as_dict())
            self._log_stats(batch_id, "start", s.stats())

        if threads.prep:
            d.dispatch(OperationKind.WEAKEN, threads.prep_weaken, name)
            self.log.info("weakening %s for %s", name, format_duration(times.weaken_time))
            await self.agent.sleep(times.weaken_time + margin)
        else:
            d.dispatch(OperationKind.WEAKEN, threads.hack_weaken, name)
            await self.agent.sleep(times.weaken_lead)
            d.dispatch(OperationKind.WEAKEN, threads.grow_weaken, name)
            await self.agent.sleep(times.grow_lead)
            d.dispatch(OperationKind.GROW, threads.grow, name)
            await self.agent.sleep(times.hack_lead - times.grow_lead)
            d.dispatch(OperationKind.HACK, threads.hack, name)
            await self.agent.sleep(times.hack_time + times.trailing_margin)

        if cfg.debug:
            self._log_stats(batch_id, "end", self.agent.get_target(name).stats())

    # ------------------------------------------------------------------ #
    # Cycle pacing
    # ------------------------------------------------------------------ #

    def next_deadline(self) -> float:
        """Delay before the next batch may start even if the current one is still running."""
        cfg = self.cfg
        s = self.agent.get_target(self.name)
        weaken_time = self.agent.duration(OperationKind.WEAKEN, self.name)
        next_sleep = cfg.margin_ms * 4
        if is_prep_cycle(s, cfg.prep_thresh):
            next_sleep += weaken_time
        batch_length = weaken_time + cfg.margin_ms * 4
        return max(next_sleep, batch_length / cfg.concurrency)

    def _on_batch_done(self, task: asyncio.Task) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.log.error(
                "[scheduler] batch failed for %s: %s", self.name, exc, exc_info=exc
            )

    def start_batch(self) -> asyncio.Task:
        batch_id = self.batches_started
        self.batches_started += 1
        task = asyncio.create_task(self.run_batch(batch_id), name=f"batch:{self.name}:{batch_id}")
        self._inflight.add(task)
        task.add_done_callback(self._on_batch_done)
        return task

    async def run(self) -> None:
        while True:
            try:
                await self.wait_until_eligible()
                break
            except asyncio.CancelledError:
                raise
            except Exception:
                self.log.exception("[scheduler] eligibility check failed for %s", self.name)
                await self.agent.sleep(self.cfg.margin_ms)
        self.log.info("[scheduler] %s eligible; starting batches", self.name)

        while True:
            try:
                next_sleep = self.next_deadline()
            except asyncio.CancelledError:
                raise
            except Exception:
                self.log.exception("[scheduler] could not pace next batch for %s", self.name)
                await self.agent.sleep(self.cfg.margin_ms)
                continue

            batch = self.start_batch()
            if self.cfg.once:
                await asyncio.wait({batch})
                return

            timer = asyncio.create_task(self.agent.sleep(next_sleep), name=f"deadline:{self.name}")
            await asyncio.wait({batch, timer}, return_when=asyncio.FIRST_COMPLETED)
            if not timer.done():
                # the batch keeps running untouched; only the idle timer is dropped
                timer.cancel()
            elif not timer.cancelled() and timer.exception() is not None:
                self.log.error(
                    "[scheduler] deadline timer failed for %s: %s",
                    self.name,
                    timer.exception(),
                    exc_info=timer.exception(),
                )

    @property
    def inflight(self) -> int:
        return len(self._inflight)


__all__ = ["TargetLoop"]
