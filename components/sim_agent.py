# components/sim_agent.py
from __future__ import annotations

import asyncio
import json
import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field, ValidationError, model_validator

from batcher.agent import DEBUG_PORT, INFO_PORT, TRACE_PORT, LogChannel
from batcher.models import NodeState, OperationKind, TargetState

logger = logging.getLogger(__name__)
if not logger.handlers:
    logger.addHandler(logging.NullHandler())

# Security added per thread and removed per weaken thread.
HACK_SECURITY_PER_THREAD = 0.002
GROW_SECURITY_PER_THREAD = 0.004
WEAKEN_PER_THREAD = 0.05


# ---------- Scenario schema ----------
class ServerSpec(BaseModel):
    """
    One simulated server. Any server can host jobs (max_ram > 0) and/or be a
    target (max_money > 0).
    """
    name: str = Field(..., min_length=1)
    max_ram: float = Field(default=0.0, ge=0.0, description="Installed memory (GB).")
    ram_used: float = Field(default=0.0, ge=0.0, description="Memory used by unrelated processes (GB).")
    has_root: bool = True
    cores: int = Field(default=1, ge=1)

    max_money: float = Field(default=0.0, ge=0.0)
    money: float = Field(default=0.0, ge=0.0)
    min_security: float = Field(default=1.0, gt=0.0)
    security: float = Field(default=1.0, gt=0.0)
    required_skill: int = Field(default=1, ge=0)

    growth: float = Field(default=1.03, gt=1.0, description="Money multiplier per grow thread.")
    hack_fraction: float = Field(default=0.002, gt=0.0, le=1.0, description="Money fraction per hack thread at 0 security.")
    base_time_ms: float = Field(default=4000.0, gt=0.0, description="Hack time at minimum security.")

    @model_validator(mode="after")
    def _check_ranges(self) -> "ServerSpec":
        if self.ram_used > self.max_ram:
            raise ValueError(f"{self.name}: ram_used exceeds max_ram")
        if self.money > self.max_money:
            raise ValueError(f"{self.name}: money exceeds max_money")
        if self.security < self.min_security:
            raise ValueError(f"{self.name}: security below min_security")
        return self


class SimulationScenario(BaseModel):
    skill: int = Field(default=1, ge=0)
    # payloads live on this server from the start
    home: str = "home"
    self_memory: float = Field(default=0.0, ge=0.0)
    payload_memory: Dict[OperationKind, float] = Field(
        default_factory=lambda: {OperationKind.WEAKEN: 1.75, OperationKind.GROW: 1.75, OperationKind.HACK: 1.7}
    )
    servers: List[ServerSpec] = Field(default_factory=list)

    @model_validator(mode="after")
    def _unique_names(self) -> "SimulationScenario":
        names = [s.name for s in self.servers]
        if len(names) != len(set(names)):
            raise ValueError("server names must be unique")
        missing = [op.value for op in OperationKind if op not in self.payload_memory]
        if missing:
            raise ValueError(f"payload_memory missing {missing}")
        return self


def load_scenario(path: Path) -> SimulationScenario:
    try:
        return SimulationScenario.model_validate(json.loads(Path(path).read_text(encoding="utf-8")))
    except (OSError, json.JSONDecodeError, ValidationError) as e:
        raise ValueError(f"invalid scenario {path}: {e}") from e


# ---------- Runtime ----------
@dataclass
class _Job:
    pid: int
    op: OperationKind
    node: str
    threads: int
    target: str
    ram: float
    task: Optional[asyncio.Task] = None


@dataclass
class _Server:
    spec: ServerSpec
    ram_used: float
    money: float
    security: float
    jobs: Dict[int, _Job] = field(default_factory=dict)


def _op_for_path(path: str) -> OperationKind:
    stem = path.rsplit("/", 1)[-1]
    for op in OperationKind:
        if op.value in stem:
            return op
    raise KeyError(f"unknown payload {path!r}")


class SimulatedAgent:
    """
    In-process stand-in for a real cluster.

    exec() reserves memory on the worker for the job's duration (computed from the
    target's state at dispatch), then applies the operation to the target and
    releases the memory. Every completion is reported on the debug port.
    """

    def __init__(self, scenario: SimulationScenario, *, time_scale: float = 1.0, port_size: int = 256) -> None:
        self.scenario = scenario
        self.time_scale = max(1e-6, float(time_scale))
        self.skill = scenario.skill
        self._servers: Dict[str, _Server] = {
            s.name: _Server(spec=s, ram_used=s.ram_used, money=s.money, security=s.security)
            for s in scenario.servers
        }
        self._ports: Dict[int, LogChannel] = {
            p: LogChannel(p, port_size) for p in (TRACE_PORT, DEBUG_PORT, INFO_PORT)
        }
        self._transferred: Set[Tuple[str, str]] = set()
        self._next_pid = 1
        self.completed: List[Tuple[OperationKind, str, int]] = []

    @classmethod
    def from_file(cls, path: Path, **kwargs) -> "SimulatedAgent":
        return cls(load_scenario(path), **kwargs)

    def _server(self, name: str) -> _Server:
        try:
            return self._servers[name]
        except KeyError:
            raise KeyError(f"unknown server {name!r}") from None

    # ---- pool & target state ----
    def list_nodes(self) -> List[str]:
        return list(self._servers)

    def get_node(self, name: str) -> NodeState:
        s = self._server(name)
        return NodeState(
            name=name,
            max_ram=s.spec.max_ram,
            ram_used=s.ram_used,
            has_root=s.spec.has_root,
            cores=s.spec.cores,
            processes=len(s.jobs),
        )

    def get_target(self, name: str) -> TargetState:
        s = self._server(name)
        return TargetState(
            name=name,
            max_money=s.spec.max_money,
            money=s.money,
            min_security=s.spec.min_security,
            security=s.security,
            required_skill=s.spec.required_skill,
        )

    def skill_level(self) -> int:
        return self.skill

    def duration(self, op: OperationKind, target: str) -> float:
        s = self._server(target)
        hack_time = s.spec.base_time_ms * (s.security / s.spec.min_security)
        if op is OperationKind.HACK:
            return hack_time
        if op is OperationKind.GROW:
            return hack_time * 3.2
        return hack_time * 4.0

    # ---- memory footprints ----
    def payload_memory(self, path: str) -> float:
        return self.scenario.payload_memory[_op_for_path(path)]

    def self_memory(self) -> float:
        return self.scenario.self_memory

    # ---- effect analysis ----
    def hack_analyze(self, target: str) -> float:
        s = self._server(target)
        return max(0.0, s.spec.hack_fraction * (100.0 - s.security) / 100.0)

    def growth_analyze(self, target: str, multiplier: float, cores: int = 1) -> float:
        if multiplier <= 1:
            return 0.0
        return math.log(multiplier) / (math.log(self._server(target).spec.growth) * max(1, cores))

    def growth_analyze_security(self, threads: int, cores: int = 1) -> float:
        return GROW_SECURITY_PER_THREAD * threads

    def hack_analyze_security(self, threads: int, target: str) -> float:
        return HACK_SECURITY_PER_THREAD * threads

    def weaken_analyze(self, threads: int, cores: int = 1) -> float:
        return WEAKEN_PER_THREAD * threads * (1 + (max(1, cores) - 1) / 16)

    # ---- actions ----
    def transfer_payload(self, path: str, node: str) -> bool:
        self._server(node)
        self._transferred.add((path, node))
        return True

    def holds_payload(self, path: str, node: str) -> bool:
        return node == self.scenario.home or (path, node) in self._transferred

    def exec(self, path: str, node: str, threads: int, arg: str) -> int:
        server = self._server(node)
        op = _op_for_path(path)
        ram = self.payload_memory(path) * threads
        if threads < 1 or not server.spec.has_root or not self.holds_payload(path, node):
            return 0
        if server.ram_used + ram > server.spec.max_ram + 1e-9:
            return 0
        pid = self._next_pid
        self._next_pid += 1
        job = _Job(pid=pid, op=op, node=node, threads=threads, target=arg, ram=ram)
        server.ram_used += ram
        server.jobs[pid] = job
        duration = self.duration(op, arg)
        job.task = asyncio.create_task(self._run_job(job, duration), name=f"sim:{op.value}:{pid}")
        self._ports[TRACE_PORT].write(f"exec {op.value} {arg} threads={threads} node={node} pid={pid}")
        return pid

    async def _run_job(self, job: _Job, duration: float) -> None:
        try:
            await self.sleep(duration)
            self._apply(job)
        finally:
            server = self._servers[job.node]
            if server.jobs.pop(job.pid, None) is not None:
                server.ram_used = max(server.spec.ram_used, server.ram_used - job.ram)

    def _apply(self, job: _Job) -> None:
        t = self._server(job.target)
        cores = self._servers[job.node].spec.cores
        if job.op is OperationKind.WEAKEN:
            t.security = max(t.spec.min_security, t.security - self.weaken_analyze(job.threads, cores))
            result = f"security={t.security:.3f}"
        elif job.op is OperationKind.GROW:
            grown = (t.money + job.threads) * t.spec.growth ** (job.threads * cores)
            t.money = min(t.spec.max_money, grown)
            t.security += self.growth_analyze_security(job.threads, cores)
            result = f"money={t.money:.0f}"
        else:
            fraction = min(1.0, self.hack_analyze(job.target) * job.threads)
            stolen = t.money * fraction
            t.money -= stolen
            t.security += self.hack_analyze_security(job.threads, job.target)
            result = f"stolen={stolen:.0f}"
        self.completed.append((job.op, job.target, job.threads))
        self._ports[DEBUG_PORT].write(f"{job.op.value} {job.target} threads={job.threads} {result}")

    def kill_all(self, node: str) -> bool:
        server = self._server(node)
        killed = bool(server.jobs)
        for job in list(server.jobs.values()):
            if job.task is not None:
                job.task.cancel()
        server.jobs.clear()
        server.ram_used = server.spec.ram_used
        return killed

    async def sleep(self, ms: float) -> None:
        await asyncio.sleep(max(0.0, ms) / 1000.0 / self.time_scale)

    def get_port(self, port: int) -> LogChannel:
        ch = self._ports.get(port)
        if ch is None:
            ch = self._ports[port] = LogChannel(port)
        return ch


__all__ = [
    "ServerSpec",
    "SimulationScenario",
    "load_scenario",
    "SimulatedAgent",
]
