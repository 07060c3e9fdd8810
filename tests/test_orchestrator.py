# tests/test_orchestrator.py
import asyncio
import logging

import pytest

from batcher.config import Config
from batcher.models import OperationKind
from batcher.orchestrator import Orchestrator, measure_costs
from batcher.pool import ExternalMemoryError
from components.sim_agent import ServerSpec, SimulatedAgent, SimulationScenario

from fakes import FakeAgent, node, target


def test_measure_costs(agent):
    costs = measure_costs(agent, Config())
    assert (costs.weaken, costs.grow, costs.hack) == (1.75, 1.75, 1.7)


@pytest.mark.asyncio
async def test_refuses_to_start_when_memory_used_elsewhere():
    agent = FakeAgent(nodes=[node("home", 100.0, used=90.0)], targets=[target("t1")])
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1",)))
    with pytest.raises(ExternalMemoryError):
        await orch.run()
    assert agent.execs == []
    assert orch.background == []


@pytest.mark.asyncio
async def test_reserved_memory_allows_external_use():
    agent = FakeAgent(nodes=[node("home", 100.0, used=90.0)], targets=[target("t1")])
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1",), reserved=90.0, once=True))
    await orch.run()
    assert len(agent.execs) == 4


@pytest.mark.asyncio
async def test_once_runs_one_batch_per_target(agent):
    agent.targets["t2"] = target("t2")
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1", "t2"), once=True))
    await orch.run()

    by_target = {}
    for op, _, _, arg in agent.execs:
        by_target.setdefault(arg, []).append(op)
    assert set(by_target) == {"t1", "t2"}
    for ops in by_target.values():
        assert ops == [OperationKind.WEAKEN, OperationKind.WEAKEN, OperationKind.GROW, OperationKind.HACK]

    # both budgets were recorded and the background tasks were stopped
    assert set(orch.budget) == {"t1", "t2"}
    assert orch.background == []


def test_targets_default_to_discovered(agent):
    agent.nodes["pserv-1"] = node("pserv-1", 16.0)
    agent.targets["broke"] = target("broke", max_money=0.0, money=0.0)
    orch = Orchestrator(agent=agent, cfg=Config())
    assert orch.resolve_targets() == ["t1"]


def test_custom_target_provider_drops_home(agent):
    orch = Orchestrator(agent=agent, cfg=Config(), target_provider=lambda a, c: ["home", "t1"])
    assert orch.resolve_targets() == ["t1"]


@pytest.mark.asyncio
async def test_one_failing_loop_does_not_stop_others(agent):
    agent.targets["t2"] = target("t2")
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1", "t2"), once=True))
    original = orch.build_loop

    async def explode():
        raise RuntimeError("loop died")

    def build(name):
        loop = original(name)
        if name == "t1":
            loop.run = explode
        return loop

    orch.build_loop = build
    await orch.run()
    assert {arg for *_, arg in agent.execs} == {"t2"}


def test_grinding_loop_is_wired_when_enabled(agent):
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1",), grind=True))
    orch.prepare()
    assert orch.grinder is not None
    assert orch.grinder.selector(agent, orch.cfg) == "t1"


@pytest.mark.asyncio
async def test_simulated_cluster_end_to_end():
    scenario = SimulationScenario(
        skill=10,
        servers=[
            ServerSpec(name="home", max_ram=64.0),
            ServerSpec(
                name="alpha",
                max_money=1_000_000.0,
                money=1_000_000.0,
                min_security=5.0,
                security=5.0,
                required_skill=1,
                growth=1.5,
                hack_fraction=0.05,
                base_time_ms=1000.0,
            ),
        ],
    )
    agent = SimulatedAgent(scenario, time_scale=100.0)
    orch = Orchestrator(agent=agent, cfg=Config(targets=("alpha",), once=True))
    await asyncio.wait_for(orch.run(), timeout=10)

    ops = [op for op, name, _ in agent.completed if name == "alpha"]
    assert sorted(op.value for op in ops) == ["grow", "hack", "weaken", "weaken"]
    state = agent.get_target("alpha")
    assert state.security < 5.1
    assert 0 < state.money <= 1_000_000.0
    assert agent.get_node("home").ram_used == pytest.approx(0.0, abs=1e-9)


@pytest.mark.asyncio
async def test_unknown_target_is_skipped(agent, caplog):
    orch = Orchestrator(agent=agent, cfg=Config(targets=("ghost", "t1"), once=True))
    with caplog.at_level(logging.WARNING, logger="orchestrator"):
        await orch.run()
    assert "ignoring unknown target(s): ghost" in caplog.text
    assert {arg for *_, arg in agent.execs} == {"t1"}
    assert set(orch.loops) == {"t1"}


@pytest.mark.asyncio
async def test_failed_budget_priming_does_not_stop_the_loop(agent, caplog):
    agent.targets["t2"] = target("t2")
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1", "t2"), once=True))
    orch.prepare()
    original = orch.calculator.calculate
    calls = {"n": 0}

    def flaky(name):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConnectionError("agent hiccup")
        return original(name)

    orch.calculator.calculate = flaky
    orch.prepare = lambda: None
    with caplog.at_level(logging.ERROR, logger="orchestrator"):
        await orch.run()
    assert "could not prime budget for t1" in caplog.text
    assert {arg for *_, arg in agent.execs} == {"t1", "t2"}


@pytest.mark.asyncio
async def test_stopped_loop_is_logged_while_others_run(agent, caplog):
    agent.targets["t2"] = target("t2")
    orch = Orchestrator(agent=agent, cfg=Config(targets=("t1", "t2")))
    original = orch.build_loop
    release = asyncio.Event()

    async def explode():
        raise RuntimeError("loop died")

    async def park():
        await release.wait()

    def build(name):
        loop = original(name)
        loop.run = explode if name == "t1" else park
        return loop

    orch.build_loop = build
    with caplog.at_level(logging.ERROR, logger="orchestrator"):
        task = asyncio.create_task(orch.run())
        for _ in range(20):
            if "loop t1 stopped" in caplog.text:
                break
            await asyncio.sleep(0)
        # reported before the remaining loop finishes
        assert "loop t1 stopped" in caplog.text
        assert not task.done()
        release.set()
        await task
