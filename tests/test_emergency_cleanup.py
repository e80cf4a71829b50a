from __future__ import annotations

import pytest

from memory_guardian.emergency import EmergencyCleanup
from memory_guardian.pressure import MemorySample
from memory_guardian.reaper import ProcessInfo

GB = 1024 ** 3


def _sample(used_percent: float) -> MemorySample:
    total = 16 * GB
    used = int(total * used_percent / 100.0)
    return MemorySample(total, used, total - used, 4 * GB, 4 * GB)


class Readings:
    def __init__(self, *percents):
        self.percents = list(percents)

    def __call__(self):
        return _sample(self.percents.pop(0))


PROCESSES = [
    ProcessInfo(100, "electron", 900 * 1024 ** 2),
    ProcessInfo(200, "firefox", 2 * GB),
    ProcessInfo(300, "chrome", 3 * GB),
    ProcessInfo(400, "sshd", 10 * 1024 ** 2),
    ProcessInfo(500, "chrome", 1 * GB),
]


def test_kills_only_when_reclaim_is_not_enough(store):
    killed = []
    cleanup = EmergencyCleanup(
        store,
        sampler=Readings(96.0, 93.0, 70.0),
        processes=lambda: PROCESSES,
        killer=killed.append,
    )

    report = cleanup.run()

    assert report.actions[:5] == ["sync", "drop_caches=3", "compact_memory", "swapoff", "swapon"]
    assert report.actions[5:] == ["kill:chrome", "kill:firefox", "kill:electron"]
    # chrome first, then firefox, then electron; sshd is never touched
    assert killed == [300, 500, 200, 100]
    assert report.killed == {"chrome": [300, 500], "firefox": [200], "electron": [100]}
    assert report.before_percent == pytest.approx(96.0)
    assert report.after_percent == pytest.approx(70.0)
    assert "Memory before: 96.0%" in report.render()


def test_no_kills_when_reclaim_brings_usage_down(store, runner):
    killed = []
    cleanup = EmergencyCleanup(
        store,
        sampler=Readings(96.0, 85.0),
        processes=lambda: PROCESSES,
        killer=killed.append,
    )

    report = cleanup.run()

    assert killed == []
    assert report.killed == {}
    assert report.after_percent == pytest.approx(85.0)
    assert report.freed_percent == 11.0
    swap_calls = [call for call in runner.calls if call[0] in {"swapoff", "swapon"}]
    assert swap_calls == [("swapoff", "-a"), ("swapon", "-a")]


def test_swap_stays_on_when_swapoff_fails(store, runner):
    runner.failing.add("swapoff")
    cleanup = EmergencyCleanup(store, sampler=Readings(50.0, 50.0), processes=lambda: [], killer=lambda pid: None)
    report = cleanup.run()
    assert "swapon" not in report.actions
    assert not runner.commands("swapon")
