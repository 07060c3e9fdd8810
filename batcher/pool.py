from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List

from .agent import ExecutionAgent
from .models import NodeState
from .utils import format_ram

logger = logging.getLogger("worker_pool")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class ExternalMemoryError(RuntimeError):
    """
    Raised at startup when memory already in use across the pool exceeds what
    the operator reserved for other processes. The scheduler refuses to run.
    """

    def __init__(self, used: float, allowed: float) -> None:
        super().__init__(
            f"Too much memory used elsewhere: {format_ram(used)} in use, "
            f"{format_ram(allowed)} allowed"
        )
        self.used = used
        self.allowed = allowed


@dataclass(frozen=True, slots=True)
class PoolSnapshot:
    free: float
    used: float
    installed: float
    processes: int


class WorkerPool:
    """
    Read-only view of the nodes that can host jobs.

    Nothing is cached: every call re-polls every node, since concurrent batches
    change used memory between calls.
    """

    def __init__(self, agent: ExecutionAgent) -> None:
        self.agent = agent

    def nodes(self) -> List[NodeState]:
        out: List[NodeState] = []
        for name in self.agent.list_nodes():
            node = self.agent.get_node(name)
            if node.has_root and node.max_ram > 0:
                out.append(node)
        return out

    def names(self) -> List[str]:
        return [n.name for n in self.nodes()]

    def free_memory(self) -> float:
        return sum(n.max_ram - n.ram_used for n in self.nodes())

    def used_memory(self) -> float:
        return sum(n.ram_used for n in self.nodes())

    def installed_memory(self) -> float:
        return sum(n.max_ram for n in self.nodes())

    def process_count(self) -> int:
        return sum(n.processes for n in self.nodes())

    def snapshot(self) -> PoolSnapshot:
        nodes = self.nodes()
        return PoolSnapshot(
            free=sum(n.max_ram - n.ram_used for n in nodes),
            used=sum(n.ram_used for n in nodes),
            installed=sum(n.max_ram for n in nodes),
            processes=sum(n.processes for n in nodes),
        )


def check_external_memory(pool: WorkerPool, reserved: float, self_memory: float) -> float:
    """
    Return the memory in use at startup, or raise ExternalMemoryError if it is more
    than the reserve plus the scheduler's own footprint.
    """
    used = pool.used_memory()
    allowed = reserved + self_memory
    if used > allowed:
        raise ExternalMemoryError(used, allowed)
    logger.debug(
        "[pool] startup memory check ok: used=%s allowed=%s",
        format_ram(used),
        format_ram(allowed),
    )
    return used


__all__ = [
    "ExternalMemoryError",
    "PoolSnapshot",
    "WorkerPool",
    "check_external_memory",
]
