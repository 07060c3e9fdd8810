from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

from .agent import ExecutionAgent
from .config import Config
from .models import NodeState, OperationCosts, OperationKind
from .pool import WorkerPool
from .utils import format_ram

logger = logging.getLogger("dispatcher")
if not logger.handlers:
    logger.addHandler(logging.NullHandler())


class InvalidTargetError(ValueError):
    """Raised when a batch is aimed at the home node."""


@dataclass(frozen=True, slots=True)
class Placement:
    node: str
    threads: int
    pid: int


def plan_placements(
    op: OperationKind,
    threads: int,
    nodes: List[NodeState],
    cost: float,
    *,
    home_node: str,
    reserved: float,
) -> Dict[str, int]:
    """
    Pack `threads` onto `nodes`, smallest free memory first.

    WEAKEN and GROW may split across any number of nodes. HACK is only split on the
    largest (last ranked) node; a smaller node that cannot take the whole remainder is
    skipped, so hacks are not fragmented into many weak jobs.
    """
    remaining = threads
    out: Dict[str, int] = {}
    ranked = sorted(nodes, key=lambda n: n.max_ram - n.ram_used)
    last = len(ranked) - 1

    for i, node in enumerate(ranked):
        if remaining <= 0:
            break
        max_ram = node.max_ram
        if node.name == home_node:
            max_ram -= reserved

        max_local = int(math.floor((max_ram - node.ram_used) / cost)) if cost > 0 else 0
        local = remaining

        if op in (OperationKind.WEAKEN, OperationKind.GROW):
            local = min(remaining, max_local)
        elif local > max_local:
            if i == last:
                # biggest node available; take whatever fits
                local = max_local
            else:
                continue

        if local < 1:
            continue

        out[node.name] = local
        remaining -= local

    return out


class BatchDispatcher:
    """
    Issues remote-execution calls for one operation at a time.

    The pool is re-polled on every call; nothing is reserved, so concurrent batches
    may race for the same memory and under-fill.
    """

    def __init__(
        self,
        agent: ExecutionAgent,
        pool: WorkerPool,
        cfg: Config,
        costs: OperationCosts,
        *,
        payloads: Optional[Mapping[OperationKind, str]] = None,
    ) -> None:
        self.agent = agent
        self.pool = pool
        self.cfg = cfg
        self.costs = costs
        self.payloads: Dict[OperationKind, str] = dict(payloads or cfg.payload_paths())
        self.last_placements: List[Placement] = []

    def dispatch(self, op: OperationKind, threads: float, arg: str) -> bool:
        """Return True when every requested thread was placed."""
        if arg == self.cfg.home_node:
            raise InvalidTargetError(f"refusing to dispatch {op.value} against {arg!r}")

        self.last_placements = []
        if threads is None or not math.isfinite(threads):
            logger.error("[dispatch] invalid thread count op=%s threads=%s target=%s", op.value, threads, arg)
            return False

        requested = int(math.ceil(threads))
        if requested <= 0:
            return True

        cost = self.costs.of(op)
        payload = self.payloads[op]
        nodes = self.pool.nodes()
        free_mem = sum(n.max_ram - n.ram_used for n in nodes)
        mem_required = cost * requested

        placements = plan_placements(
            op,
            requested,
            nodes,
            cost,
            home_node=self.cfg.home_node,
            reserved=self.cfg.reserved,
        )

        remaining = requested
        for node_name, local in placements.items():
            self.agent.transfer_payload(payload, node_name)
            pid = self.agent.exec(payload, node_name, local, arg)
            if not pid:
                logger.warning(
                    "[dispatch] exec failed op=%s node=%s threads=%d target=%s",
                    op.value, node_name, local, arg,
                )
                continue
            remaining -= local
            self.last_placements.append(Placement(node=node_name, threads=local, pid=pid))

        if remaining < 1:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "[dispatch] op=%s threads=%d target=%s nodes=%d",
                    op.value, requested, arg, len(self.last_placements),
                )
            return True

        logger.error(
            "[dispatch] spawn failed %s",
            {
                "op": op.value,
                "threads": requested,
                "remaining": remaining,
                "target": arg,
                "required": format_ram(mem_required),
                "free": format_ram(free_mem),
            },
        )
        return False


__all__ = [
    "InvalidTargetError",
    "Placement",
    "plan_placements",
    "BatchDispatcher",
]
