from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Deque, List, Optional, Protocol, runtime_checkable

from .models import NodeState, OperationKind, TargetState

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

NULL_PORT_DATA = "NULL PORT DATA"

TRACE_PORT = 1
DEBUG_PORT = 2
INFO_PORT = 3


class LogChannel:
    """
    Bounded publish/subscribe channel used by worker payloads to forward log lines.

    - write() appends; when full the oldest entry is dropped and returned.
    - read() never blocks and returns NULL_PORT_DATA when empty.
    - next_write() suspends until the channel holds at least one entry.
    """

    __slots__ = ("port", "maxsize", "_items", "_written")

    def __init__(self, port: int, maxsize: int = 256) -> None:
        self.port = int(port)
        self.maxsize = max(1, int(maxsize))
        self._items: Deque[Any] = deque()
        self._written = asyncio.Event()

    def write(self, data: Any) -> Optional[Any]:
        dropped = None
        if len(self._items) >= self.maxsize:
            dropped = self._items.popleft()
        self._items.append(data)
        self._written.set()
        return dropped

    def read(self) -> Any:
        if not self._items:
            return NULL_PORT_DATA
        return self._items.popleft()

    def empty(self) -> bool:
        return not self._items

    def clear(self) -> None:
        self._items.clear()
        self._written.clear()

    async def next_write(self) -> None:
        while not self._items:
            self._written.clear()
            await self._written.wait()

    def __len__(self) -> int:
        return len(self._items)


@runtime_checkable
class ExecutionAgent(Protocol):
    """
    Everything the scheduler knows about the outside world.

    All polling calls are synchronous and return fresh values; sleep() is the only
    suspension point. Memory is in GB, durations in milliseconds.
    """

    # ---- pool & target state ----
    def list_nodes(self) -> List[str]: ...

    def get_node(self, name: str) -> NodeState: ...

    def get_target(self, name: str) -> TargetState: ...

    def skill_level(self) -> int: ...

    def duration(self, op: OperationKind, target: str) -> float: ...

    # ---- memory footprints ----
    def payload_memory(self, path: str) -> float: ...

    def self_memory(self) -> float: ...

    # ---- effect analysis ----
    def hack_analyze(self, target: str) -> float: ...

    def growth_analyze(self, target: str, multiplier: float, cores: int = 1) -> float: ...

    def growth_analyze_security(self, threads: int, cores: int = 1) -> float: ...

    def hack_analyze_security(self, threads: int, target: str) -> float: ...

    def weaken_analyze(self, threads: int, cores: int = 1) -> float: ...

    # ---- actions ----
    def transfer_payload(self, path: str, node: str) -> bool: ...

    def exec(self, path: str, node: str, threads: int, arg: str) -> int: ...

    def kill_all(self, node: str) -> bool: ...

    async def sleep(self, ms: float) -> None: ...

    def get_port(self, port: int) -> LogChannel: ...


__all__ = [
    "NULL_PORT_DATA",
    "TRACE_PORT",
    "DEBUG_PORT",
    "INFO_PORT",
    "LogChannel",
    "ExecutionAgent",
]
