# tests/test_timing.py
from batcher.timing import calculate_times, compute_timing


def test_offsets():
    t = compute_timing(4000.0, 3200.0, 1000.0, 200.0)
    assert t.grow_lead == 600.0
    assert t.hack_lead == 2400.0
    assert t.weaken_lead == 400.0
    assert t.trailing_margin == 800.0
    assert t.batch_length == 4800.0


def test_effects_land_in_order_one_margin_apart():
    W, G, H, m = 4000.0, 3200.0, 1000.0, 200.0
    t = compute_timing(W, G, H, m)

    # dispatch instants as run by the target loop
    hack_weaken_at = 0.0
    grow_weaken_at = hack_weaken_at + t.weaken_lead
    grow_at = grow_weaken_at + t.grow_lead
    hack_at = grow_at + (t.hack_lead - t.grow_lead)

    landings = [
        ("hack", hack_at + H),
        ("hack_weaken", hack_weaken_at + W),
        ("grow", grow_at + G),
        ("grow_weaken", grow_weaken_at + W),
    ]
    assert [name for name, _ in sorted(landings, key=lambda x: x[1])] == [
        "hack", "hack_weaken", "grow", "grow_weaken",
    ]
    gaps = [b[1] - a[1] for a, b in zip(landings, landings[1:])]
    assert gaps == [m, m, m]

    # the batch outlives its last landing
    batch_end = hack_at + H + t.trailing_margin
    assert batch_end > landings[-1][1]


def test_calculate_times_polls_agent(agent):
    agent.durations = {k: v / 2 for k, v in agent.durations.items()}
    t = calculate_times(agent, "t1", 100.0)
    assert (t.weaken_time, t.grow_time, t.hack_time) == (2000.0, 1600.0, 500.0)
    assert t.grow_lead == 300.0
