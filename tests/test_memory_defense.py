from __future__ import annotations

import dataclasses
import time

from hostopt.mutator import ConfigMutator
from hostopt.privileged import PrivilegedFileStore
from hostopt.profile import derive_threshold_policy, profile_for_memory
from hostopt.units import GUARDIAN_SERVICE, GUARDIAN_TIMER
from memory_guardian.kernel_oom import DROPIN_NAME, OOMD_UNIT
from memory_guardian.pressure import MemorySample
from memory_guardian.reaper import (
    FastReaper,
    ProcessInfo,
    ReaperState,
    render_earlyoom_defaults,
    select_victim,
)
from memory_guardian.supervisor import (
    REPO_ROOT,
    TIER_GUARDIAN,
    TIER_KERNEL,
    TIER_REAPER,
    MemoryDefenseSupervisor,
)

GB = 1024 ** 3
MB = 1024 ** 2


def _sample(available_percent: float, swap_free_percent: float) -> MemorySample:
    total = 8 * GB
    available = int(total * available_percent / 100.0)
    return MemorySample(total, total - available, available, 2 * GB, int(2 * GB * swap_free_percent / 100.0))


def test_earlyoom_defaults_follow_policy(settings, fingerprint_factory):
    policy = derive_threshold_policy(fingerprint_factory(total_memory_mb=4096), settings)
    text = render_earlyoom_defaults(policy, profile_name="LOW", total_memory_gb=4.0)
    args = next(line for line in text.splitlines() if line.startswith("EARLYOOM_ARGS="))
    assert args.startswith('EARLYOOM_ARGS="-m 10 -s 20 ')
    assert "--avoid '(^|/)sshd$'" in args
    assert "--prefer '(^|/)Web Content$'" in args
    assert args.endswith('-r 60 -n"')


def test_victim_is_largest_preferred_never_protected():
    processes = [
        ProcessInfo(1, "systemd", 50 * MB),
        ProcessInfo(10, "Xorg", 4 * GB),
        ProcessInfo(20, "firefox", 1 * GB),
        ProcessInfo(30, "chrome", 2 * GB),
        ProcessInfo(40, "postgres", 6 * GB),
    ]
    assert select_victim(processes).pid == 30
    assert select_victim([p for p in processes if p.name not in {"chrome", "firefox"}]) is None


def test_reaper_kills_only_on_combined_breach(settings, fingerprint_factory):
    policy = derive_threshold_policy(fingerprint_factory(total_memory_mb=4096), settings)
    readings = [_sample(5.0, 50.0), _sample(5.0, 10.0)]
    killed = []
    reaper = FastReaper(
        policy,
        sampler=lambda: readings.pop(0),
        processes=lambda: [ProcessInfo(99, "chromium", GB)],
        killer=killed.append,
    )

    assert reaper.step() is None  # swap still plentiful
    assert reaper.state is ReaperState.IDLE
    victim = reaper.step()
    assert victim.pid == 99
    assert killed == [99]
    assert reaper.state is ReaperState.IDLE

    reaper.stop()
    assert reaper.state is ReaperState.STOPPED
    assert reaper.step() is None


def _supervisor(settings, runner, fingerprint_factory, **overrides):
    settings = dataclasses.replace(settings, **overrides)
    store = PrivilegedFileStore(settings, runner)
    mutator = ConfigMutator(settings, store, hostname="testhost")
    policy = derive_threshold_policy(fingerprint_factory(), settings)
    return MemoryDefenseSupervisor(mutator, policy), store


def test_configure_writes_all_tiers(settings, runner, fingerprint_factory):
    runner.stdout["systemctl"] = f"{OOMD_UNIT} enabled enabled\n"
    supervisor, store = _supervisor(settings, runner, fingerprint_factory)

    mutations = supervisor.configure(profile_for_memory(4096), fingerprint_factory())

    names = [m.name for m in mutations]
    assert names == [
        "oomd-config",
        "oomd-user-slice",
        "oomd-system-slice",
        "earlyoom-config",
        "guardian-service",
        "guardian-timer",
    ]
    assert "ManagedOOMMemoryPressureLimit=80%" in store.read_text(f"/etc/systemd/system/user.slice.d/{DROPIN_NAME}")
    assert "DefaultMemoryPressureDurationSec=20sec" in store.read_text(f"/etc/systemd/oomd.conf.d/{DROPIN_NAME}")
    assert "-m 10 -s 20" in store.read_text("/etc/default/earlyoom")
    service_text = store.read_text(settings.unit_path(GUARDIAN_SERVICE))
    assert "memory_guardian.guardian --once" in service_text
    assert f"WorkingDirectory={REPO_ROOT}\n" in service_text
    assert f"Environment=PYTHONPATH={REPO_ROOT}\n" in service_text
    assert "Environment=HOSTOPT_LOG_PATH=/var/log/host-optimizer/guardian.log\n" in service_text
    assert "OnUnitActiveSec=2min" in store.read_text(settings.unit_path(GUARDIAN_TIMER))
    assert {tier.state for tier in supervisor.tiers.values()} == {"active"}
    assert runner.commands(f"systemctl enable --now {GUARDIAN_TIMER}")


def test_missing_daemons_degrade_without_stopping_other_tiers(settings, runner, fingerprint_factory):
    runner.missing.add("earlyoom")
    supervisor, _store = _supervisor(settings, runner, fingerprint_factory)

    mutations = supervisor.configure(profile_for_memory(4096), fingerprint_factory())

    assert supervisor.tiers[TIER_KERNEL].state == "degraded"
    assert supervisor.tiers[TIER_REAPER].state == "degraded"
    assert supervisor.tiers[TIER_GUARDIAN].state == "active"
    assert [m.name for m in mutations] == ["guardian-service", "guardian-timer"]
    assert {d.tier for d in supervisor.degradations} == {TIER_KERNEL, TIER_REAPER}
    assert supervisor.reaper is None


def test_reaper_fallback_when_enabled(settings, runner, fingerprint_factory):
    runner.missing.add("earlyoom")
    supervisor, _store = _supervisor(settings, runner, fingerprint_factory, reaper_fallback=True)
    supervisor.configure(profile_for_memory(4096), fingerprint_factory())
    assert supervisor.tiers[TIER_REAPER].state == "fallback"
    assert isinstance(supervisor.reaper, FastReaper)


def test_start_and_stop_run_tier_threads(settings, runner, fingerprint_factory):
    supervisor, _store = _supervisor(
        settings, runner, fingerprint_factory, guardian_interval_seconds=0.05
    )
    supervisor.guardian.sampler = lambda: _sample(50.0, 100.0)
    supervisor.guardian.interval_seconds = 0.05

    assert supervisor.start() is True
    deadline = time.time() + 5.0
    while supervisor.guardian.last_cycle is None and time.time() < deadline:
        time.sleep(0.01)
    other, _ = _supervisor(settings, runner, fingerprint_factory)
    assert other.start() is False  # host-wide lease already held
    supervisor.stop()

    status = supervisor.status()
    assert status["running"] is False
    assert status["last_cycle"]["tier"] == "NORMAL"
    assert other.start() is True
    other.stop()


def test_reaper_keeps_killing_after_restart(settings, runner, fingerprint_factory):
    settings = dataclasses.replace(settings, reaper_interval_seconds=0.01)
    policy = derive_threshold_policy(fingerprint_factory(total_memory_mb=4096), settings)
    killed = []
    reaper = FastReaper(
        policy,
        sampler=lambda: _sample(1.0, 1.0),
        processes=lambda: [ProcessInfo(77, "chrome", GB)],
        killer=killed.append,
    )
    supervisor, _store = _supervisor(settings, runner, fingerprint_factory)
    supervisor.reaper = reaper
    supervisor.guardian.sampler = lambda: _sample(50.0, 100.0)
    supervisor.guardian.interval_seconds = 0.05

    def wait_for_kills(count):
        deadline = time.time() + 5.0
        while len(killed) < count and time.time() < deadline:
            time.sleep(0.01)

    assert supervisor.start() is True
    wait_for_kills(1)
    supervisor.stop()
    assert reaper.state is ReaperState.STOPPED
    before_restart = len(killed)
    assert before_restart >= 1

    assert supervisor.start() is True
    wait_for_kills(before_restart + 1)
    try:
        assert len(killed) > before_restart
        assert reaper.state is not ReaperState.STOPPED
    finally:
        supervisor.stop()
