# components/weaken_dispatch.py
from __future__ import annotations

import logging
import math
from typing import Dict, List, Sequence

from batcher.agent import ExecutionAgent
from batcher.config import Config
from batcher.models import OperationKind
from extensions.targets import best_grind_target

logger = logging.getLogger("weaken_dispatch")

MIN_MONEY_FOR_ALL = 1_000_000


def select_targets(agent: ExecutionAgent, cfg: Config, requested: Sequence[str]) -> List[str]:
    """
    `best` (or nothing) picks the grind target; `all` picks every non-home,
    non-purchased server below the operator's skill with a worthwhile money cap.
    """
    if len(requested) == 1 and requested[0] == "all":
        skill = agent.skill_level()
        out = []
        for name in agent.list_nodes():
            if name == cfg.home_node or name.startswith(cfg.purchased_prefix):
                continue
            s = agent.get_target(name)
            if s.required_skill < skill and s.max_money > MIN_MONEY_FOR_ALL:
                out.append(name)
        return out
    if requested and not (len(requested) == 1 and requested[0] == "best"):
        return list(requested)
    best = best_grind_target(agent, cfg)
    return [best] if best else []


def spawn_weakeners(agent: ExecutionAgent, cfg: Config, targets: Sequence[str]) -> Dict[str, int]:
    """
    Clear every rooted worker and split all of its weaken capacity evenly across
    `targets`. Returns threads started per target.
    """
    payload = cfg.payload_path(OperationKind.WEAKEN)
    cost = agent.payload_memory(payload)
    started: Dict[str, int] = {t: 0 for t in targets}
    if not targets or cost <= 0:
        return started

    logger.info("Spawning workers, please wait...")
    workers = [n for n in agent.list_nodes() if agent.get_node(n).has_root]
    total = 0
    for name in workers:
        agent.kill_all(name)
        if name != cfg.home_node:
            agent.transfer_payload(payload, name)
        node = agent.get_node(name)
        total += int(math.floor(node.free_ram / cost))
    per_target = total // len(targets)

    for target in targets:
        remaining = per_target
        for worker in workers:
            if remaining <= 0:
                break
            threads = min(remaining, int(math.floor(agent.get_node(worker).free_ram / cost)))
            if threads < 1:
                continue
            if agent.exec(payload, worker, threads, target):
                remaining -= threads
                started[target] += threads
        if remaining > 0:
            logger.warning("weaken %s: %d of %d thread(s) unplaced", target, remaining, per_target)
    return started


__all__ = ["select_targets", "spawn_weakeners"]
