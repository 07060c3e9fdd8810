# components/status_report.py
from __future__ import annotations

import logging

import pandas as pd

from batcher.agent import ExecutionAgent
from batcher.config import Config
from batcher.utils import format_number

logger = logging.getLogger("status_report")

COLUMNS = ["Name", "Level", "Avail", "Max", "Current", "Min"]


def collect_dataframe(agent: ExecutionAgent, cfg: Config) -> pd.DataFrame:
    """
    One row per server the operator can comfortably work on (required level at most
    half the current skill). The home node is skipped.
    """
    skill = agent.skill_level()
    rows = []
    for name in agent.list_nodes():
        if name == cfg.home_node:
            continue
        s = agent.get_target(name)
        if s.required_skill > skill / 2:
            continue
        rows.append({
            "Name": name,
            "Level": s.required_skill,
            "Avail": s.money,
            "Max": s.max_money,
            "Current": s.security,
            "Min": s.min_security,
        })
    if not rows:
        return pd.DataFrame(columns=COLUMNS)
    return pd.DataFrame(rows, columns=COLUMNS)


def render(df: pd.DataFrame) -> str:
    if df.empty:
        return "no targets within reach"
    out = df.copy()
    out["Avail"] = out["Avail"].map(format_number)
    out["Max"] = out["Max"].map(format_number)
    out["Current"] = out["Current"].round().astype(int)
    out["Min"] = out["Min"].round().astype(int)
    return out.to_string(index=False)


def report(agent: ExecutionAgent, cfg: Config) -> str:
    text = render(collect_dataframe(agent, cfg))
    logger.info("\n%s", text)
    return text


__all__ = ["COLUMNS", "collect_dataframe", "render", "report"]
