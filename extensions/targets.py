from __future__ import annotations

import logging
from typing import List, Optional

from batcher.agent import ExecutionAgent
from batcher.config import Config

logger = logging.getLogger("targets")


def _is_candidate(agent: ExecutionAgent, name: str, cfg: Config) -> bool:
    if name == cfg.home_node or name.startswith(cfg.purchased_prefix):
        return False
    if not agent.get_node(name).has_root:
        return False
    return agent.get_target(name).max_money > 0


def valid_targets(agent: ExecutionAgent, cfg: Config) -> List[str]:
    """
    Every rooted, money-bearing node that is neither home nor a purchased server.
    Skill is not checked here; each target loop waits for eligibility itself.
    """
    out = [name for name in agent.list_nodes() if _is_candidate(agent, name, cfg)]
    logger.info("[targets] %d valid target(s): %s", len(out), ", ".join(out))
    return out


def best_grind_target(agent: ExecutionAgent, cfg: Config) -> Optional[str]:
    """
    Easiest hackable target for experience farming: lowest minimum security,
    ties broken by the highest skill requirement (more experience per weaken).
    """
    skill = agent.skill_level()
    best: Optional[str] = None
    best_key = None
    for name in agent.list_nodes():
        if not _is_candidate(agent, name, cfg):
            continue
        s = agent.get_target(name)
        if s.required_skill > skill:
            continue
        key = (s.min_security, -s.required_skill, name)
        if best_key is None or key < best_key:
            best, best_key = name, key
    return best


__all__ = ["valid_targets", "best_grind_target"]
