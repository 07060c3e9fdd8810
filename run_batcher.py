from __future__ import annotations

import argparse
import asyncio
import importlib
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from batcher.agent import ExecutionAgent
from batcher.args import EXIT_CONFIG_ERROR, config_from_args, parse_args
from batcher.config import Config, ConfigError
from batcher.models import OperationKind
from batcher.orchestrator import Orchestrator
from batcher.pool import ExternalMemoryError
from components.sim_agent import SimulatedAgent
from components.status_report import report
from components.weaken_dispatch import select_targets, spawn_weakeners
from extensions.logging import LoggingExtension, level_for

logger = logging.getLogger("run_batcher")

EXIT_OK = 0
EXIT_EXTERNAL_MEMORY = 2


# ----------------------------
# Agent construction
# ----------------------------

def _load_factory(spec: str):
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigError(f"--agent must look like 'module:callable' (got {spec!r})")
    module = importlib.import_module(module_name)
    try:
        return getattr(module, attr)
    except AttributeError:
        raise ConfigError(f"{module_name} has no attribute {attr!r}") from None


def build_agent(args: argparse.Namespace, cfg: Config) -> ExecutionAgent:
    if args.agent:
        agent = _load_factory(args.agent)(cfg)
    elif args.scenario:
        try:
            agent = SimulatedAgent.from_file(Path(args.scenario), time_scale=args.time_scale,
                                             port_size=cfg.relay_queue_size)
        except ValueError as e:
            raise ConfigError(str(e)) from e
    else:
        raise ConfigError("an execution agent is required: pass --agent or --scenario")
    if not isinstance(agent, ExecutionAgent):
        raise ConfigError(f"{type(agent).__name__} does not implement ExecutionAgent")
    return agent


# ----------------------------
# Modes
# ----------------------------

async def _run_weaken_only(agent: ExecutionAgent, cfg: Config) -> None:
    targets = select_targets(agent, cfg, cfg.targets)
    started = spawn_weakeners(agent, cfg, targets)
    logger.info("weaken-only: %s", started)
    if isinstance(agent, SimulatedAgent):
        # keep the loop alive so simulated jobs can complete
        await agent.sleep(max((agent.duration(OperationKind.WEAKEN, t) for t in targets), default=0.0))


async def main_async(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    try:
        cfg = config_from_args(args)
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error("invalid configuration: %s", e)
        return EXIT_CONFIG_ERROR

    level = level_for(debug=cfg.debug, trace=cfg.trace)
    log_ext = LoggingExtension(
        cfg.log_dir,
        global_level=level,
        max_open_target_logs=cfg.max_open_target_logs,
        enable_session_log=cfg.log_dir is not None,
    )
    try:
        try:
            agent = build_agent(args, cfg)
        except ConfigError as e:
            logger.error("invalid configuration: %s", e)
            return EXIT_CONFIG_ERROR

        if args.mode == "report":
            print(report(agent, cfg))
            return EXIT_OK
        if args.mode == "weaken":
            await _run_weaken_only(agent, cfg)
            return EXIT_OK

        orch = Orchestrator(agent=agent, cfg=cfg, log_ext=log_ext)
        try:
            await orch.run()
        except ExternalMemoryError as e:
            logger.error("%s", e)
            return EXIT_EXTERNAL_MEMORY
        return EXIT_OK
    finally:
        log_ext.close()


# ----------------------------
# Entrypoint
# ----------------------------

def main() -> None:
    sys.exit(asyncio.run(main_async()))

if __name__ == "__main__":
    main()
