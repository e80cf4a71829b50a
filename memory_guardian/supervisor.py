from __future__ import annotations

import os
import sys
import threading
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostopt.errors import MutationError, PackageUnavailable, SupervisorDegraded
from hostopt.host_probe import HostFingerprint
from hostopt.installer import PackageInstaller
from hostopt.logging_utils import log_message
from hostopt.mutator import ConfigMutation, ConfigMutator, MutationStep, StepResult
from hostopt.profile import OptimizationProfile, ThresholdPolicy
from hostopt.target_lock import TargetLease
from hostopt.units import GUARDIAN_SERVICE, GUARDIAN_TIMER, guardian_units
from memory_guardian.guardian import MemoryGuardian
from memory_guardian.kernel_oom import OOMD_UNIT, live_oom_mismatches, oomd_available, oomd_steps
from memory_guardian.reaper import EARLYOOM_UNIT, FastReaper, render_earlyoom_defaults

LOG_SOURCE = "memory-defense"
SUPERVISOR_LEASE = "memory-defense-supervisor"
REPO_ROOT = Path(__file__).resolve().parents[1]

TIER_KERNEL = "kernel-oom"
TIER_REAPER = "reaper"
TIER_GUARDIAN = "guardian"


def _python_bin() -> str:
    candidate = os.getenv("PYTHON_BIN")
    if candidate:
        return candidate
    virtual_env = os.getenv("VIRTUAL_ENV")
    if virtual_env:
        return str(Path(virtual_env) / "bin" / "python")
    return sys.executable


@dataclass
class TierStatus:
    tier: str
    state: str  # active | degraded | fallback
    detail: str = ""

    def as_dict(self) -> Dict[str, str]:
        return asdict(self)


class MemoryDefenseSupervisor:
    """
    Configures the three memory-defense tiers and, when asked, runs the
    in-process ones (guardian loop, fallback reaper) as independent threads.
    The tiers share no state: each reads host memory on its own schedule.
    """

    def __init__(
        self,
        mutator: ConfigMutator,
        policy: ThresholdPolicy,
        *,
        installer: Optional[PackageInstaller] = None,
        guardian: Optional[MemoryGuardian] = None,
        reaper: Optional[FastReaper] = None,
    ) -> None:
        self.mutator = mutator
        self.settings = mutator.settings
        self.store = mutator.store
        self.policy = policy
        self.installer = installer
        self.guardian = guardian or MemoryGuardian(
            self.store,
            high_percent=policy.guardian_high_percent,
            critical_percent=policy.guardian_critical_percent,
            interval_seconds=policy.guardian_interval_seconds,
        )
        self.reaper = reaper
        self.tiers: Dict[str, TierStatus] = {}
        self.degradations: List[SupervisorDegraded] = []
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._lease: Optional[TargetLease] = None
        self._bootstrap_lock = threading.Lock()

    # ------------------------------------------------------------------ configure
    def configure(self, profile: OptimizationProfile, fingerprint: HostFingerprint) -> List[ConfigMutation]:
        """Write every tier's configuration through the mutator; returns the applied mutations."""
        mutations: List[ConfigMutation] = []
        mutations.extend(self._configure_kernel_tier())
        mutations.extend(self._configure_reaper_tier(profile, fingerprint))
        mutations.extend(self._configure_guardian_tier())
        return mutations

    def _degrade(self, tier: str, reason: str, *, cause: Optional[BaseException] = None, state: str = "degraded") -> None:
        notice = SupervisorDegraded(tier, reason, cause=cause)
        self.degradations.append(notice)
        self.tiers[tier] = TierStatus(tier, state, reason)
        log_message(LOG_SOURCE, str(notice), severity="warning")

    def _apply(self, tier: str, steps: List[MutationStep]) -> List[ConfigMutation]:
        try:
            return self.mutator.apply_steps(steps)
        except MutationError as exc:
            self._degrade(tier, f"{len(exc.failures)} configuration step(s) failed", cause=exc)
            return list(exc.applied) + list(exc.touched)

    def _configure_kernel_tier(self) -> List[ConfigMutation]:
        stale = live_oom_mismatches(self.store)
        if not oomd_available(self.store):
            self._degrade(TIER_KERNEL, "systemd-oomd not available; kernel OOM tuning only")
            return []
        mutations = self._apply(TIER_KERNEL, oomd_steps(self.settings))
        if TIER_KERNEL in self.tiers:
            return mutations
        self.store.daemon_reload()
        self.store.enable_unit(OOMD_UNIT)
        self.store.restart_unit(OOMD_UNIT)
        detail = "systemd-oomd managing user.slice and system.slice"
        if stale:
            detail += f"; pending sysctl reload for {', '.join(sorted(stale))}"
        self.tiers[TIER_KERNEL] = TierStatus(TIER_KERNEL, "active", detail)
        return mutations

    def _ensure_earlyoom(self) -> bool:
        if self.store.has_command("earlyoom"):
            return True
        if self.installer is None:
            return False
        try:
            self.installer.ensure("earlyoom")
        except PackageUnavailable as exc:
            log_message(LOG_SOURCE, str(exc), severity="warning")
            return False
        return True

    def _configure_reaper_tier(self, profile: OptimizationProfile, fingerprint: HostFingerprint) -> List[ConfigMutation]:
        if not self._ensure_earlyoom():
            if self.settings.reaper_fallback:
                self._degrade(TIER_REAPER, "earlyoom missing; in-process reaper will run", state="fallback")
                self.reaper = self.reaper or FastReaper(self.policy)
            else:
                self._degrade(TIER_REAPER, "earlyoom missing; set HOSTOPT_REAPER_FALLBACK=1 for the in-process reaper")
            return []
        content = render_earlyoom_defaults(
            self.policy, profile_name=profile.name.value, total_memory_gb=fingerprint.total_memory_gb
        )
        step = MutationStep(
            name="earlyoom-config",
            target=self.settings.earlyoom_defaults_path,
            render=lambda _current: StepResult(
                content,
                {"mem_percent": self.policy.earlyoom_mem_percent, "swap_percent": self.policy.earlyoom_swap_percent},
            ),
            activate=lambda m: m.activate_unit(EARLYOOM_UNIT),
            reactivate=(("systemctl", "restart", EARLYOOM_UNIT),),
        )
        mutations = self._apply(TIER_REAPER, [step])
        if TIER_REAPER not in self.tiers and not self.store.unit_active(EARLYOOM_UNIT):
            self._degrade(TIER_REAPER, "earlyoom is configured but not running")
        if TIER_REAPER not in self.tiers:
            self.tiers[TIER_REAPER] = TierStatus(
                TIER_REAPER,
                "active",
                f"earlyoom: RAM<{self.policy.earlyoom_mem_percent}% and swap<{self.policy.earlyoom_swap_percent}%",
            )
        return mutations

    def _configure_guardian_tier(self) -> List[ConfigMutation]:
        service, timer = guardian_units(
            _python_bin(),
            self.policy.guardian_interval_seconds,
            working_dir=str(REPO_ROOT),
            log_dir=str(self.settings.guardian_log_dir),
        )
        steps = [
            MutationStep(
                name="guardian-service",
                target=self.settings.unit_path(GUARDIAN_SERVICE),
                render=lambda _current: StepResult(service.render()),
                reactivate=(("systemctl", "daemon-reload"),),
            ),
            MutationStep(
                name="guardian-timer",
                target=self.settings.unit_path(GUARDIAN_TIMER),
                render=lambda _current: StepResult(timer.render()),
                activate=lambda m: self._activate_timer(),
                unit=GUARDIAN_TIMER,
                reactivate=(("systemctl", "daemon-reload"),),
            ),
        ]
        mutations = self._apply(TIER_GUARDIAN, steps)
        if TIER_GUARDIAN not in self.tiers:
            self.tiers[TIER_GUARDIAN] = TierStatus(
                TIER_GUARDIAN,
                "active",
                f">{self.policy.guardian_high_percent:.0f}% page cache, "
                f">{self.policy.guardian_critical_percent:.0f}% all caches + compaction",
            )
        return mutations

    def _activate_timer(self) -> List[str]:
        self.store.daemon_reload()
        if self.store.enable_unit(GUARDIAN_TIMER, now=True).ok:
            return []
        reason = f"{GUARDIAN_TIMER} could not be started; run `host-optimizer guardian --loop` instead"
        self.mutator.defer(self.settings.unit_path(GUARDIAN_TIMER), reason)
        return [reason]

    # ------------------------------------------------------------------ runtime
    def start(self) -> bool:
        with self._bootstrap_lock:
            if any(thread.is_alive() for thread in self._threads):
                return True
            lease = TargetLease(SUPERVISOR_LEASE, lock_dir=self.settings.lock_dir, timeout=0)
            if not lease.acquire():
                log_message(LOG_SOURCE, "another memory defense supervisor already active; skipping", severity="warning")
                return False
            self._lease = lease
            self._stop.clear()
            self._threads = [
                threading.Thread(target=self.guardian.loop, args=(self._stop,), name="memory-guardian", daemon=True)
            ]
            if self.reaper is not None:
                self.reaper.reset()
                self._threads.append(threading.Thread(target=self.reaper.run, name="fast-reaper", daemon=True))
            for thread in self._threads:
                thread.start()
            log_message(LOG_SOURCE, f"started {len(self._threads)} tier thread(s)")
            return True

    def stop(self) -> None:
        self._stop.set()
        if self.reaper is not None:
            self.reaper.stop()
        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []
        if self._lease is not None:
            self._lease.release()
            self._lease = None

    def status(self) -> Dict[str, Any]:
        return {
            "running": any(thread.is_alive() for thread in self._threads),
            "tiers": {name: tier.as_dict() for name, tier in self.tiers.items()},
            "last_cycle": (
                {
                    "used_percent": self.guardian.last_cycle.event.used_percent,
                    "tier": self.guardian.last_cycle.event.tier.name,
                    "after_percent": self.guardian.last_cycle.event.after_percent,
                    "actions": list(self.guardian.last_cycle.actions),
                }
                if self.guardian.last_cycle
                else None
            ),
        }
