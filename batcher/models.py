from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from enum import Enum
from typing import Dict, Iterator, Mapping


class OperationKind(str, Enum):
    WEAKEN = "weaken"
    GROW = "grow"
    HACK = "hack"


# -----------------------------
# Snapshots of external state
# -----------------------------
@dataclass(frozen=True, slots=True)
class NodeState:
    """
    One poll of a worker node. Memory figures are in GB.

    - has_root:   the node accepts dispatched jobs.
    - processes:  number of jobs currently running on the node.
    """
    name: str
    max_ram: float
    ram_used: float
    has_root: bool
    cores: int = 1
    processes: int = 0

    @property
    def free_ram(self) -> float:
        return self.max_ram - self.ram_used


@dataclass(frozen=True, slots=True)
class TargetState:
    name: str
    max_money: float
    money: float
    min_security: float
    security: float
    required_skill: int

    def stats(self) -> Dict[str, float]:
        return {
            "min_security": self.min_security,
            "security": self.security,
            "money": self.money,
            "max_money": self.max_money,
        }


# -----------------------------
# Per-cycle plans
# -----------------------------
@dataclass(frozen=True, slots=True)
class OperationCosts:
    """Per-thread memory cost of each payload, measured once at startup."""
    weaken: float
    grow: float
    hack: float

    def of(self, op: OperationKind) -> float:
        return getattr(self, op.value)

    def largest(self) -> float:
        return max(self.weaken, self.grow, self.hack)


@dataclass(frozen=True, slots=True)
class ThreadPlan:
    hack: int
    grow: int
    prep_weaken: int
    grow_weaken: int
    hack_weaken: int
    budget: float
    prep: bool = False

    def as_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass(frozen=True, slots=True)
class TimingPlan:
    """
    Offsets (ms) between successive dispatch calls of one money batch.
    Valid only for the instant they were computed.
    """
    weaken_time: float
    grow_time: float
    hack_time: float
    grow_lead: float
    hack_lead: float
    weaken_lead: float
    trailing_margin: float

    @property
    def batch_length(self) -> float:
        return self.weaken_time + self.trailing_margin


# -----------------------------
# Shared accounting
# -----------------------------
class MemoryBudget(Mapping[str, float]):
    """
    Last computed memory requirement per target.

    Each target loop is the only writer of its own key; the grinding loop and the
    status monitor read the total. Values are estimates and are never reconciled
    against what is actually running.
    """

    __slots__ = ("_by_target",)

    def __init__(self) -> None:
        self._by_target: Dict[str, float] = {}

    def record(self, target: str, amount: float) -> float:
        value = float(math.ceil(amount))
        self._by_target[target] = value
        return value

    def total(self) -> float:
        return float(sum(self._by_target.values()))

    def __getitem__(self, target: str) -> float:
        return self._by_target[target]

    def __iter__(self) -> Iterator[str]:
        return iter(self._by_target)

    def __len__(self) -> int:
        return len(self._by_target)

    def __repr__(self) -> str:
        return f"MemoryBudget({self._by_target!r})"


__all__ = [
    "OperationKind",
    "NodeState",
    "TargetState",
    "OperationCosts",
    "ThreadPlan",
    "TimingPlan",
    "MemoryBudget",
]
