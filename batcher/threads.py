from __future__ import annotations

import logging
import math
from typing import Optional

from .agent import ExecutionAgent
from .config import GROW_TO_HACK_RATIO, Config
from .models import MemoryBudget, OperationCosts, TargetState, ThreadPlan

# --------------------------------------------------------------------
# Module logger
# --------------------------------------------------------------------
_logger = logging.getLogger("threads")
if not _logger.handlers:
    _logger.addHandler(logging.NullHandler())


# -----------------------------
# Helpers
# -----------------------------
def _ceil(x: float) -> float:
    """math.ceil that lets inf/nan through so the budget check can reject them."""
    if not math.isfinite(x):
        return x
    return float(math.ceil(x))


def _ratio(num: float, den: float) -> float:
    if den is None or not math.isfinite(den) or den <= 0:
        return math.inf if num > 0 else math.nan
    return num / den


def is_prep_cycle(s: TargetState, prep_thresh: float) -> bool:
    return s.security > s.min_security * prep_thresh


def growth_multiplier(steal: float, money: float, max_money: float) -> float:
    """
    Growth needed to refill the target after a batch: enough to offset the stolen
    fraction at the grow/hack damage ratio, or enough to refill an already drained
    target, whichever is larger.
    """
    denom = 1.0 - steal * GROW_TO_HACK_RATIO
    offset = 1.0 / denom if denom > 0 else math.inf
    return max(offset, max_money / max(money, 1.0))


def budget_is_degenerate(budget: float) -> bool:
    return budget is None or math.isnan(budget) or not math.isfinite(budget) or budget < 1


# -----------------------------
# Public API
# -----------------------------
class ThreadCalculator:
    """
    Turns one poll of a target into a ThreadPlan.

    The plan is a pure function of polled state and the config; the only side effect
    is recording the plan's budget in the shared MemoryBudget.
    """

    def __init__(
        self,
        agent: ExecutionAgent,
        cfg: Config,
        costs: OperationCosts,
        budget: MemoryBudget,
        *,
        cores: Optional[int] = None,
    ) -> None:
        self.agent = agent
        self.cfg = cfg
        self.costs = costs
        self.budget = budget
        self.cores = int(cores) if cores is not None else resolve_cores(agent, cfg)

    def calculate(self, name: str) -> Optional[ThreadPlan]:
        """
        Return the plan for the next batch against `name`, or None when the batch must
        be skipped (target not hackable yet, or a degenerate budget).
        """
        cfg = self.cfg
        cores = self.cores
        s = self.agent.get_target(name)
        skill = self.agent.skill_level()
        if s.required_skill > skill:
            _logger.debug("[threads] %s not ready: requires %d, skill %d", name, s.required_skill, skill)
            return None

        prep = is_prep_cycle(s, cfg.prep_thresh)
        steal = cfg.steal
        factor = growth_multiplier(steal, s.money, s.max_money)

        hack = _ceil(_ratio(steal, self.agent.hack_analyze(name)))
        if cfg.money_thresh > 0 and s.money < s.max_money * cfg.money_thresh:
            hack = 0.0
        grow = _ceil(self.agent.growth_analyze(name, factor, cores))
        if cfg.max_grow_threads is not None and math.isfinite(grow):
            grow = min(grow, float(cfg.max_grow_threads))

        extra_difficulty = max(0.0, s.security - s.min_security)
        weaken_potency = self.agent.weaken_analyze(1, cores)
        grow_security = (
            self.agent.growth_analyze_security(int(grow), cores) if math.isfinite(grow) else math.inf
        )
        hack_security = (
            self.agent.hack_analyze_security(int(hack), name) if math.isfinite(hack) else math.inf
        )

        grow_weaken = _ceil(_ratio(grow_security, weaken_potency))
        hack_weaken = _ceil(_ratio(hack_security + extra_difficulty, weaken_potency))
        prep_weaken = _ceil(_ratio(extra_difficulty, weaken_potency)) if extra_difficulty > 0 else 0.0

        c = self.costs
        total = (
            c.weaken * prep_weaken
            + c.weaken * grow_weaken
            + c.weaken * hack_weaken
            + c.grow * grow
            + c.hack * hack
        )

        if budget_is_degenerate(total):
            _logger.error(
                "[threads] failed to build budget for %s: budget=%s threads=%s "
                "grow_security=%s weaken_potency=%s hack_security=%s growth_factor=%s",
                name,
                total,
                {
                    "hack": hack,
                    "grow": grow,
                    "prep_weaken": prep_weaken,
                    "grow_weaken": grow_weaken,
                    "hack_weaken": hack_weaken,
                },
                grow_security,
                weaken_potency,
                hack_security,
                factor,
            )
            return None

        plan = ThreadPlan(
            hack=int(hack),
            grow=int(grow),
            prep_weaken=int(prep_weaken),
            grow_weaken=int(grow_weaken),
            hack_weaken=int(hack_weaken),
            budget=total,
            prep=prep,
        )
        self.budget.record(name, total)
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("[threads] %s plan=%s factor=%.3f cores=%d", name, plan.as_dict(), factor, cores)
        return plan


def resolve_cores(agent: ExecutionAgent, cfg: Config) -> int:
    """Core multiplier for grow/weaken sizing: the home node's cores when asked for."""
    if cfg.home_cores:
        try:
            return max(1, int(agent.get_node(cfg.home_node).cores))
        except KeyError:
            _logger.warning("[threads] home node %r not found; using %d core(s)", cfg.home_node, cfg.cores)
    return cfg.cores


__all__ = [
    "ThreadCalculator",
    "is_prep_cycle",
    "growth_multiplier",
    "budget_is_degenerate",
    "resolve_cores",
]
