from __future__ import annotations

from .agent import ExecutionAgent
from .models import OperationKind, TimingPlan


def compute_timing(weaken_time: float, grow_time: float, hack_time: float, margin: float) -> TimingPlan:
    """
    Offsets between the dispatch calls of a money batch.

    The batch dispatches hack-weaken, then grow-weaken `weaken_lead` later, then grow
    after `grow_lead`, then hack after `hack_lead - grow_lead`. With durations held
    constant the effects land `margin` apart in the order hack, hack-weaken, grow,
    grow-weaken, so a weaken always resolves last.
    """
    return TimingPlan(
        weaken_time=weaken_time,
        grow_time=grow_time,
        hack_time=hack_time,
        grow_lead=weaken_time - grow_time - margin,
        hack_lead=weaken_time - hack_time - margin * 3,
        weaken_lead=margin * 2,
        trailing_margin=margin * 4,
    )


def calculate_times(agent: ExecutionAgent, name: str, margin: float) -> TimingPlan:
    return compute_timing(
        agent.duration(OperationKind.WEAKEN, name),
        agent.duration(OperationKind.GROW, name),
        agent.duration(OperationKind.HACK, name),
        margin,
    )


__all__ = ["compute_timing", "calculate_times"]
