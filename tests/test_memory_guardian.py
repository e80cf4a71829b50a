from __future__ import annotations

import psutil
import pytest

from memory_guardian.guardian import ACTION_DROP_ALL, ACTION_DROP_PAGE_CACHE, ACTION_NONE, MemoryGuardian
from memory_guardian.pressure import MemorySample, PressureTier, classify, usage_label

GB = 1024 ** 3


def sample_at(used_percent: float, *, swap_free_percent: float = 100.0) -> MemorySample:
    total = 8 * GB
    used = int(total * used_percent / 100.0)
    return MemorySample(
        total_bytes=total,
        used_bytes=used,
        available_bytes=total - used,
        swap_total_bytes=2 * GB,
        swap_free_bytes=int(2 * GB * swap_free_percent / 100.0),
    )


class SequenceSampler:
    def __init__(self, *percents: float) -> None:
        self.percents = list(percents)
        self.calls = 0

    def __call__(self) -> MemorySample:
        self.calls += 1
        return sample_at(self.percents.pop(0))


@pytest.mark.parametrize(
    "used, tier",
    [(50.0, PressureTier.NORMAL), (85.0, PressureTier.NORMAL), (85.1, PressureTier.HIGH),
     (95.0, PressureTier.HIGH), (95.1, PressureTier.CRITICAL)],
)
def test_classify_uses_strict_thresholds(used, tier):
    assert classify(used, high=85.0, critical=95.0) is tier


def test_guardian_escalates_and_recovers(store):
    sampler = SequenceSampler(80.0, 90.0, 70.0, 97.0, 82.0, 80.0)
    guardian = MemoryGuardian(store, sampler=sampler)

    events = []
    actions = []
    for _ in range(4):
        cycle = guardian.run_cycle()
        events.append(cycle.event)
        actions.append(cycle.actions)

    assert [e.tier for e in events] == [
        PressureTier.NORMAL, PressureTier.HIGH, PressureTier.CRITICAL, PressureTier.NORMAL
    ]
    assert actions[0] == []
    assert actions[1] == ["sync", "drop_caches=1"]
    assert actions[2] == ["sync", "drop_caches=3", "compact_memory"]
    assert actions[3] == []
    assert [e.action_taken for e in events] == [
        ACTION_NONE, ACTION_DROP_PAGE_CACHE, ACTION_DROP_ALL, ACTION_NONE
    ]
    assert [e.after_percent for e in events] == [None, 70.0, 82.0, None]
    # the tier is fixed by the first sample even when the second is lower
    assert events[2].used_percent == 97.0
    assert sampler.calls == 6


def test_critical_cycle_writes_kernel_tunables(settings, store):
    (settings.root / "proc/sys/vm").mkdir(parents=True)
    guardian = MemoryGuardian(store, sampler=lambda: sample_at(99.0))
    guardian.run_cycle()
    assert store.read_kernel_value("/proc/sys/vm/drop_caches") == "3"
    assert store.read_kernel_value("/proc/sys/vm/compact_memory") == "1"


def test_guardian_rejects_inverted_thresholds(store):
    with pytest.raises(ValueError):
        MemoryGuardian(store, high_percent=95.0, critical_percent=85.0)


def test_guardian_from_settings_uses_configured_thresholds(settings, store):
    import dataclasses

    tuned = dataclasses.replace(settings, guardian_high_percent=70.0, guardian_critical_percent=80.0)
    guardian = MemoryGuardian.from_settings(tuned, store, sampler=lambda: sample_at(75.0))
    assert guardian.run_cycle().event.tier is PressureTier.HIGH


@pytest.mark.parametrize("used, label", [(50.0, "OK"), (61.0, "MODERATE"), (80.0, "HIGH"), (91.0, "CRITICAL")])
def test_usage_labels(used, label):
    assert usage_label(used) == label


def test_guardian_loop_survives_sampler_errors(store):
    import threading

    stop = threading.Event()
    calls = []

    def flaky_sampler():
        calls.append(1)
        if len(calls) == 1:
            raise psutil.AccessDenied()
        stop.set()
        return sample_at(50.0)

    guardian = MemoryGuardian(store, sampler=flaky_sampler, interval_seconds=0.01)
    guardian.loop(stop)

    assert len(calls) == 2
    assert guardian.last_cycle.event.tier is PressureTier.NORMAL
