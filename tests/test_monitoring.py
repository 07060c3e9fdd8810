# tests/test_monitoring.py
import asyncio
import logging

import pytest

from batcher.agent import DEBUG_PORT, INFO_PORT, NULL_PORT_DATA, TRACE_PORT, LogChannel
from batcher.config import Config
from batcher.models import MemoryBudget
from batcher.pool import WorkerPool
from extensions.logging import TRACE
from extensions.monitoring import LogRelay, StatusMonitor, build_relays, take_snapshot

from fakes import FakeAgent, node


def test_channel_drops_oldest_when_full():
    ch = LogChannel(1, maxsize=2)
    assert ch.write("a") is None
    assert ch.write("b") is None
    assert ch.write("c") == "a"
    assert [ch.read(), ch.read(), ch.read()] == ["b", "c", NULL_PORT_DATA]


def test_snapshot_ratio_without_budget():
    agent = FakeAgent(nodes=[node("home", 64.0, used=16.0, processes=3)])
    snap = take_snapshot(WorkerPool(agent), MemoryBudget())
    assert snap.ratio is None
    assert snap.processes == 3
    line = snap.render()
    assert "n/a" in line
    assert "16.00GB" in line


def test_snapshot_ratio_against_budget():
    agent = FakeAgent(nodes=[node("home", 64.0, used=16.0)])
    budget = MemoryBudget()
    budget.record("a", 31.2)
    snap = take_snapshot(WorkerPool(agent), budget)
    assert snap.budget == 32.0
    assert snap.ratio == pytest.approx(0.5)
    assert " 50% " in snap.render()


def test_monitor_tick_logs(caplog):
    agent = FakeAgent(nodes=[node("home", 64.0)])
    mon = StatusMonitor(agent=agent, cfg=Config(), pool=WorkerPool(agent), budget=MemoryBudget())
    with caplog.at_level(logging.INFO, logger="monitor"):
        snap = mon.tick()
    assert mon.last is snap
    assert "Installed:" in caplog.text


def test_relay_forward_gating(caplog):
    agent = FakeAgent()
    enabled = {"on": False}
    relay = LogRelay(agent, DEBUG_PORT, logging.DEBUG, lambda: enabled["on"])
    with caplog.at_level(logging.DEBUG, logger="relay"):
        assert relay.forward("hidden") is False
        enabled["on"] = True
        assert relay.forward(NULL_PORT_DATA) is False
        assert relay.forward("shown") is True
    assert relay.forwarded == 1
    assert "shown" in caplog.text and "hidden" not in caplog.text


def test_build_relays_follow_config():
    agent = FakeAgent()
    relays = {r.port: r for r in build_relays(agent, Config(debug=True))}
    assert relays[TRACE_PORT].level == TRACE
    assert relays[TRACE_PORT].enabled() is False
    assert relays[DEBUG_PORT].enabled() is True
    assert relays[INFO_PORT].enabled() is True


@pytest.mark.asyncio
async def test_relay_run_clears_then_forwards(caplog):
    agent = FakeAgent()
    ch = agent.get_port(INFO_PORT)
    ch.write("stale")
    relay = LogRelay(agent, INFO_PORT, logging.INFO, lambda: True)

    with caplog.at_level(logging.INFO, logger="relay"):
        task = asyncio.create_task(relay.run())
        await asyncio.sleep(0)
        ch.write("fresh")
        for _ in range(5):
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert relay.forwarded == 1
    assert "fresh" in caplog.text
    assert "stale" not in caplog.text
