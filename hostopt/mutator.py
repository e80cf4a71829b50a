from __future__ import annotations

import glob
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from hostopt.backups import BackupStore
from hostopt.errors import ActivationDeferred, BackupError, MutationError, VerificationError
from hostopt.fstab import FstabTable, desired_entries
from hostopt.host_probe import HostFingerprint, StorageClass
from hostopt.logging_utils import log_message
from hostopt.privileged import PrivilegedFileStore
from hostopt.profile import OptimizationProfile, select_cpu_governor, select_io_scheduler
from hostopt.settings import OptimizerSettings
from hostopt.swapfile import SwapFileAllocator, disable_swap, enable_swap, format_swap, swap_active
from hostopt.sysctl_table import SysctlDocument, desired_parameters, memory_parameters, proc_sys_path
from hostopt.target_lock import TargetLease
from hostopt.units import (
    CPU_UNIT,
    NETWORK_UNIT,
    ZRAM_UNIT,
    UdevSchedulerRule,
    cpu_governor_unit,
    modules_load,
    network_unit,
    zram_unit,
)

LOG_SOURCE = "mutator"
MIB = 1024 * 1024

Command = Tuple[str, ...]


@dataclass(frozen=True)
class ConfigMutation:
    name: str
    target_path: str
    backup_path: Optional[str]
    new_content: Optional[str]
    structured_edit: Optional[Dict[str, Any]]
    applied_at: float
    created: bool
    requires_reboot: bool = False
    notes: Tuple[str, ...] = ()
    unit: Optional[str] = None
    reactivate: Tuple[Command, ...] = ()
    failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["notes"] = list(self.notes)
        payload["reactivate"] = [list(cmd) for cmd in self.reactivate]
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ConfigMutation":
        data = dict(payload)
        data["notes"] = tuple(data.get("notes") or ())
        data["reactivate"] = tuple(tuple(cmd) for cmd in data.get("reactivate") or ())
        return cls(**data)


class RestoreOutcome(str, Enum):
    RESTORED = "restored"
    REMOVED = "removed"
    NOOP = "noop"


@dataclass
class StepResult:
    content: str
    structured_edit: Optional[Dict[str, Any]] = None


# Activation hooks return the reasons a change only applies after reboot.
Activator = Callable[["ConfigMutator"], List[str]]


@dataclass
class MutationStep:
    """One named mutation of one text target: render, back up, write, verify, activate."""

    name: str
    target: str
    render: Callable[[str], StepResult]
    activate: Optional[Activator] = None
    requires: Tuple[str, ...] = ()
    mode: int = 0o644
    unit: Optional[str] = None
    reactivate: Tuple[Command, ...] = ()

    def execute(self, mutator: "ConfigMutator") -> ConfigMutation:
        store = mutator.store
        path = store.path(self.target)
        existed = path.exists()
        current = store.read_text(self.target) if existed else ""
        planned = self.render(current)
        backup = mutator.backups.snapshot(path, self.target)
        record: Dict[str, Any] = dict(
            name=self.name,
            target_path=self.target,
            backup_path=str(backup) if backup else None,
            new_content=planned.content,
            structured_edit=planned.structured_edit,
            created=not existed,
            unit=self.unit,
            reactivate=self.reactivate,
        )
        payload = planned.content.encode("utf-8")
        try:
            try:
                store.write_bytes(self.target, payload, mode=None if existed else self.mode)
                written = store.read_bytes(self.target)
            except OSError as exc:
                raise MutationError("write failed", target=self.target, cause=exc) from exc
            if written != payload:
                raise VerificationError("content read back differs from content written", target=self.target)
            deferred = self.activate(mutator) if self.activate else []
        except MutationError as exc:
            raise _touched(exc, record)
        except OSError as exc:
            raise _touched(MutationError("activation failed", target=self.target, cause=exc), record) from exc
        return ConfigMutation(
            applied_at=time.time(),
            requires_reboot=bool(deferred),
            notes=tuple(deferred),
            **record,
        )


def _touched(error: MutationError, record: Dict[str, Any]) -> MutationError:
    """Attach a restorable record of a step that failed after its backup was taken."""
    error.backup_path = record["backup_path"]
    error.touched = [ConfigMutation(applied_at=time.time(), failed=True, notes=(str(error),), **record)]
    return error


@dataclass
class SwapFileStep:
    """The swap file: preallocated and formatted rather than rendered; never backed up."""

    name: str
    target: str
    size_mb: int
    requires: Tuple[str, ...] = ()
    allocator: SwapFileAllocator = field(default_factory=SwapFileAllocator)

    def execute(self, mutator: "ConfigMutator") -> ConfigMutation:
        store = mutator.store
        path = store.path(self.target)
        existed = path.exists()
        expected = self.size_mb * MIB
        active = swap_active(store, self.target)
        prior_mb = path.stat().st_size // MIB if existed else None
        base = dict(
            name=self.name,
            target_path=self.target,
            backup_path=None,
            new_content=None,
            applied_at=time.time(),
            created=not existed,
            reactivate=(("swapon", "-a"),),
        )
        if existed and active and path.stat().st_size == expected:
            return ConfigMutation(structured_edit={"size_mb": self.size_mb, "method": "unchanged"}, **base)
        if active and not disable_swap(store, self.target):
            note = "swap file is in use and could not be released; resize after reboot"
            mutator.defer(self.target, note)
            return ConfigMutation(
                structured_edit={"size_mb": self.size_mb, "method": "deferred"},
                requires_reboot=True,
                notes=(note,),
                **base,
            )
        if prior_mb is not None:
            log_message(
                LOG_SOURCE,
                f"replacing {self.target} ({prior_mb}MB) with {self.size_mb}MB; the old file is not kept",
                severity="warning",
            )
        try:
            allocation = self.allocator.allocate(path, self.size_mb)
        except OSError as exc:
            raise MutationError("swap file allocation failed", target=self.target, cause=exc) from exc
        format_swap(store, self.target)
        notes: List[str] = []
        if not enable_swap(store, self.target):
            notes.append("swapon refused; the swap file activates at boot from fstab")
            mutator.defer(self.target, notes[-1])
        return ConfigMutation(
            structured_edit={"size_mb": self.size_mb, "method": allocation.method, "previous_size_mb": prior_mb},
            requires_reboot=bool(notes),
            notes=tuple(notes),
            **base,
        )


class ConfigMutator:
    """
    Applies an ``OptimizationProfile`` as a sequence of named mutations. Steps
    run strictly one after another; each holds an exclusive lease on its target
    for its whole backup -> write -> verify -> activate cycle.
    """

    def __init__(
        self,
        settings: OptimizerSettings,
        store: PrivilegedFileStore,
        *,
        hostname: str = "localhost",
        backups: Optional[BackupStore] = None,
        allocator: Optional[SwapFileAllocator] = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.backups = backups or BackupStore(settings.backup_root, hostname)
        self.allocator = allocator or SwapFileAllocator()
        self.deferred: List[ActivationDeferred] = []
        self._pending_mounts: List[str] = []

    # ------------------------------------------------------------------ planning
    def plan(self, profile: OptimizationProfile, fingerprint: HostFingerprint) -> List[Any]:
        s = self.settings
        steps: List[Any] = []
        if profile.zram_enabled:
            steps.append(
                MutationStep(
                    name="zram-unit",
                    target=s.unit_path(ZRAM_UNIT),
                    render=lambda _current: StepResult(zram_unit(profile.zram_size_mb).render()),
                    activate=lambda m: m._activate_zram(),
                    unit=ZRAM_UNIT,
                    reactivate=(("systemctl", "daemon-reload"),),
                )
            )
        steps.append(self.swapfile_step(profile))
        steps.append(
            MutationStep(
                name="sysctl",
                target=s.sysctl_path,
                render=lambda current: self._render_sysctl(current, profile),
                activate=lambda m: m._activate_sysctl(profile),
                reactivate=(("sysctl", "-e", "-p", str(self.store.path(s.sysctl_path))),),
            )
        )
        steps.append(
            MutationStep(
                name="fstab",
                target=s.fstab_path,
                render=lambda current: self._render_fstab(current, profile, fingerprint),
                activate=lambda m: m._activate_fstab(),
                requires=("swapfile",),
                reactivate=(("systemctl", "daemon-reload"),),
            )
        )
        scheduler = select_io_scheduler(fingerprint.storage_class)
        steps.append(
            MutationStep(
                name="io-scheduler",
                target=s.udev_rule_path,
                render=lambda _current: StepResult(
                    UdevSchedulerRule(scheduler).render(), {"scheduler": scheduler}
                ),
                activate=lambda m: m._activate_scheduler(scheduler, fingerprint.storage_class),
                reactivate=(("udevadm", "control", "--reload-rules"),),
            )
        )
        governor = select_cpu_governor(fingerprint.is_laptop)
        steps.append(
            MutationStep(
                name="cpu-governor",
                target=s.unit_path(CPU_UNIT),
                render=lambda _current: StepResult(cpu_governor_unit(governor).render(), {"governor": governor}),
                activate=lambda m: m.activate_unit(CPU_UNIT),
                unit=CPU_UNIT,
                reactivate=(("systemctl", "daemon-reload"),),
            )
        )
        steps.append(
            MutationStep(
                name="bbr-module",
                target=s.modules_load_path,
                render=lambda _current: StepResult(modules_load()),
                activate=lambda m: m._activate_bbr(),
            )
        )
        if fingerprint.network_interface:
            iface = fingerprint.network_interface
            steps.append(
                MutationStep(
                    name="network-tuning",
                    target=s.unit_path(NETWORK_UNIT),
                    render=lambda _current: StepResult(network_unit(iface).render(), {"interface": iface}),
                    activate=lambda m: m.activate_unit(NETWORK_UNIT),
                    unit=NETWORK_UNIT,
                    reactivate=(("systemctl", "daemon-reload"),),
                )
            )
        return steps

    def swapfile_step(self, profile: OptimizationProfile) -> SwapFileStep:
        return SwapFileStep(
            name="swapfile",
            target=self.settings.swapfile_path,
            size_mb=profile.swap_size_mb,
            allocator=self.allocator,
        )

    # ------------------------------------------------------------------ apply
    def apply(self, profile: OptimizationProfile, fingerprint: HostFingerprint) -> List[ConfigMutation]:
        """
        Run every planned step. Returns the applied mutations, or raises
        ``MutationError`` carrying them plus the per-step failures once all
        independent steps have had their turn.
        """
        return self.apply_steps(self.plan(profile, fingerprint))

    def apply_steps(self, steps: Sequence[Any]) -> List[ConfigMutation]:
        applied: List[ConfigMutation] = []
        touched: List[ConfigMutation] = []
        failures: List[MutationError] = []
        failed: set = set()
        for step in steps:
            if step.name in self.settings.skip_steps:
                log_message(LOG_SOURCE, f"skipping {step.name} (disabled by settings)")
                continue
            blocked = [name for name in step.requires if name in failed]
            if blocked:
                error = MutationError(f"{step.name} skipped: prerequisite {', '.join(blocked)} failed", target=step.target)
                log_message(LOG_SOURCE, str(error), severity="error")
                failures.append(error)
                failed.add(step.name)
                continue
            try:
                mutation = self.apply_step(step)
            except MutationError as exc:
                log_message(
                    LOG_SOURCE,
                    f"{step.name} failed: {exc}",
                    severity="error",
                    details={"target": step.target, "backup": exc.backup_path or str(self.backups.host_dir)},
                )
                failures.append(exc)
                touched.extend(exc.touched)
                failed.add(step.name)
                continue
            applied.append(mutation)
        if failures:
            raise MutationError(
                f"{len(failures)} mutation(s) failed", applied=applied, failures=failures, touched=touched
            )
        return applied

    def apply_step(self, step: Any) -> ConfigMutation:
        lease = TargetLease(step.target, lock_dir=self.settings.lock_dir)
        if not lease.acquire():
            raise MutationError(f"target is locked by another run (pid {lease.holder()})", target=step.target)
        try:
            mutation = step.execute(self)
        except OSError as exc:
            raise MutationError(f"{step.name} failed", target=step.target, cause=exc) from exc
        finally:
            lease.release()
        log_message(
            LOG_SOURCE,
            f"applied {mutation.name} -> {mutation.target_path}",
            details={"backup": mutation.backup_path, "reboot": mutation.requires_reboot},
        )
        return mutation

    # ------------------------------------------------------------------ restore
    def restore(self, mutation: Optional[ConfigMutation]) -> RestoreOutcome:
        """
        Put the target back to its pre-mutation bytes. Safe to call repeatedly
        and with nothing applied (returns ``RestoreOutcome.NOOP``).
        """
        if mutation is None:
            log_message(LOG_SOURCE, "restore requested but no mutation was applied; nothing to do")
            return RestoreOutcome.NOOP
        target = mutation.target_path
        with TargetLease(target, lock_dir=self.settings.lock_dir):
            outcome = self._restore_locked(mutation)
        if outcome is not RestoreOutcome.NOOP:
            for command in mutation.reactivate:
                self.store.run(*command)
        log_message(LOG_SOURCE, f"restore {mutation.name}: {outcome.value}", details={"target": target})
        return outcome

    def _restore_locked(self, mutation: ConfigMutation) -> RestoreOutcome:
        target = mutation.target_path
        if mutation.backup_path:
            backup = Path(mutation.backup_path)
            if not backup.exists():
                raise BackupError("backup file is missing", target=target, cause=FileNotFoundError(str(backup)))
            payload = backup.read_bytes()
            if self.store.exists(target) and self.store.read_bytes(target) == payload:
                return RestoreOutcome.NOOP
            self.store.write_bytes(target, payload, mode=backup.stat().st_mode & 0o7777)
            if self.store.read_bytes(target) != payload:
                raise VerificationError("restored content read back differs from backup", target=target)
            return RestoreOutcome.RESTORED
        if mutation.created:
            if not self.store.exists(target):
                return RestoreOutcome.NOOP
            if mutation.unit:
                self.store.disable_unit(mutation.unit)
            if swap_active(self.store, target):
                disable_swap(self.store, target)
            self.store.remove(target)
            return RestoreOutcome.REMOVED
        log_message(
            LOG_SOURCE,
            f"no backup exists for {target}; leaving it as is",
            severity="warning",
        )
        return RestoreOutcome.NOOP

    def restore_all(self, mutations: Iterable[ConfigMutation]) -> List[Tuple[ConfigMutation, RestoreOutcome]]:
        results: List[Tuple[ConfigMutation, RestoreOutcome]] = []
        for mutation in reversed(list(mutations)):
            results.append((mutation, self.restore(mutation)))
        return results

    # ------------------------------------------------------------------ manifests
    def record(self, mutations: Sequence[ConfigMutation], meta: Optional[Dict[str, Any]] = None) -> Path:
        return self.backups.write_manifest([m.to_dict() for m in mutations], meta)

    def load_manifest(self, path: Optional[Path] = None) -> List[ConfigMutation]:
        path = path or self.backups.latest_manifest()
        if path is None:
            return []
        payload = self.backups.read_manifest(path)
        return [ConfigMutation.from_dict(entry) for entry in payload.get("mutations", [])]

    # ------------------------------------------------------------------ activation
    def defer(self, target: str, reason: str) -> None:
        notice = ActivationDeferred(reason, target=target)
        self.deferred.append(notice)
        log_message(LOG_SOURCE, str(notice), severity="warning")

    def activate_unit(self, unit: str) -> List[str]:
        target = self.settings.unit_path(unit)
        self.store.daemon_reload()
        if not self.store.enable_unit(unit).ok:
            reason = f"{unit} could not be enabled"
            self.defer(target, reason)
            return [reason]
        if not self.store.restart_unit(unit).ok:
            reason = f"{unit} enabled but did not start; it runs at next boot"
            self.defer(target, reason)
            return [reason]
        return []

    def _activate_zram(self) -> List[str]:
        if "/dev/zram0" in self.store.active_swaps():
            self.store.daemon_reload()
            self.store.enable_unit(ZRAM_UNIT)
            reason = "zram0 is already an active swap device; the new size applies after reboot"
            self.defer(self.settings.unit_path(ZRAM_UNIT), reason)
            return [reason]
        return self.activate_unit(ZRAM_UNIT)

    def _render_sysctl(self, current: str, profile: OptimizationProfile) -> StepResult:
        document = SysctlDocument.parse(current)
        desired = desired_parameters(profile)
        diff = document.diff(desired)
        return StepResult(document.render(desired, title=f"profile {profile.name.value}"), diff.summary())

    def _activate_sysctl(self, profile: OptimizationProfile) -> List[str]:
        host_path = str(self.store.path(self.settings.sysctl_path))
        reasons: List[str] = []
        if not self.store.run("sysctl", "-e", "-p", host_path).ok:
            reasons.append("sysctl reload reported errors; some keys apply after reboot")
        # read the memory keys back from the live kernel where they are visible
        stale = []
        for key, value in memory_parameters(profile).items():
            live = self.store.read_kernel_value(proc_sys_path(key))
            if live is not None and " ".join(live.split()) != value:
                stale.append(key)
        if stale:
            reasons.append(f"live values differ after reload: {', '.join(stale)}")
        for reason in reasons:
            self.defer(self.settings.sysctl_path, reason)
        return reasons

    def _render_fstab(
        self, current: str, profile: OptimizationProfile, fingerprint: HostFingerprint
    ) -> StepResult:
        table = FstabTable.parse(current)
        include_swap = self.store.exists(self.settings.swapfile_path)
        entries = desired_entries(profile, fingerprint, self.settings, include_swap=include_swap)
        self._pending_mounts = [e.mountpoint for e in table.new_mounts(entries)]
        return StepResult(
            table.render(entries),
            {"entries": [e.render() for e in entries], "new_mounts": list(self._pending_mounts)},
        )

    def _activate_fstab(self) -> List[str]:
        self.store.daemon_reload()
        mounts, self._pending_mounts = self._pending_mounts, []
        if not mounts:
            return []
        reason = f"new tmpfs mounts take effect at next boot: {', '.join(mounts)}"
        self.defer(self.settings.fstab_path, reason)
        return [reason]

    def _activate_scheduler(self, scheduler: str, storage: StorageClass) -> List[str]:
        root = self.settings.root
        for queue_file in sorted(glob.glob(str(root / "sys/block/*/queue/scheduler"))):
            device = Path(queue_file).parents[1].name
            if device.startswith(("loop", "ram", "zram", "dm-")):
                continue
            host = "/" + str(Path(queue_file).relative_to(root))
            self.store.write_kernel_value(host, scheduler)
            self.store.write_kernel_value(host.replace("/scheduler", "/read_ahead_kb"), "256")
        if self.store.has_command("udevadm"):
            self.store.run("udevadm", "control", "--reload-rules")
        if storage in (StorageClass.SSD, StorageClass.NVME):
            if not self.store.enable_unit("fstrim.timer", now=True).ok:
                log_message(LOG_SOURCE, "fstrim.timer unavailable; TRIM not scheduled", severity="warning")
        return []

    def _activate_bbr(self) -> List[str]:
        if self.store.run("modprobe", "tcp_bbr").ok:
            return []
        reason = "tcp_bbr module could not be loaded now; it loads at boot"
        self.defer(self.settings.modules_load_path, reason)
        return [reason]

