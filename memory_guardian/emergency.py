from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Tuple

import psutil

from hostopt.logging_utils import log_message
from hostopt.privileged import PrivilegedFileStore
from memory_guardian.pressure import MemorySample, sample_memory
from memory_guardian.reaper import ProcessInfo, kill_process, list_processes
from memory_guardian.reclaim import DROP_ALL_CACHES, Reclaimer

LOG_SOURCE = "emergency-cleanup"

# Killed in this order, least essential first.
KILL_TARGETS: Tuple[str, ...] = ("chrome", "firefox", "electron")


@dataclass
class CleanupReport:
    before_percent: float
    after_reclaim_percent: float
    after_percent: float
    actions: List[str] = field(default_factory=list)
    killed: Dict[str, List[int]] = field(default_factory=dict)

    @property
    def freed_percent(self) -> float:
        return round(self.before_percent - self.after_percent, 2)

    def render(self) -> str:
        lines = [
            f"Memory before: {self.before_percent:.1f}%",
            f"Actions: {', '.join(self.actions) or 'none'}",
        ]
        for name, pids in self.killed.items():
            lines.append(f"Killed {name}: {', '.join(str(pid) for pid in pids)}")
        lines.append(f"Memory after: {self.after_percent:.1f}%")
        return "\n".join(lines)


class EmergencyCleanup:
    """
    Out-of-band, blocking cleanup. Reclaims everything the kernel can give
    back first; terminating applications is the last resort and happens only
    while usage is still above ``kill_percent``.
    """

    def __init__(
        self,
        store: PrivilegedFileStore,
        *,
        kill_percent: float = 90.0,
        targets: Tuple[str, ...] = KILL_TARGETS,
        sampler: Callable[[], MemorySample] = sample_memory,
        processes: Callable[[], Iterable[ProcessInfo]] = list_processes,
        killer: Callable[[int], None] = kill_process,
    ) -> None:
        self.reclaimer = Reclaimer(store)
        self.kill_percent = kill_percent
        self.targets = targets
        self.sampler = sampler
        self.processes = processes
        self.killer = killer

    def run(self) -> CleanupReport:
        before = self.sampler().used_percent
        log_message(LOG_SOURCE, f"emergency cleanup started at {before:.1f}% memory used", severity="warning")
        self.reclaimer.reset()
        self.reclaimer.sync()
        self.reclaimer.drop_caches(DROP_ALL_CACHES)
        self.reclaimer.compact()
        self.reclaimer.cycle_swap()
        after_reclaim = self.sampler().used_percent
        report = CleanupReport(before, after_reclaim, after_reclaim, actions=self.reclaimer.reset())
        if after_reclaim > self.kill_percent:
            log_message(
                LOG_SOURCE,
                f"still at {after_reclaim:.1f}% after reclaim; terminating memory-heavy applications",
                severity="error",
            )
            report.killed = self._kill_targets()
            report.actions.extend(f"kill:{name}" for name in report.killed)
            report.after_percent = self.sampler().used_percent
        log_message(
            LOG_SOURCE,
            f"emergency cleanup finished: {report.before_percent:.1f}% -> {report.after_percent:.1f}%",
            details={"actions": report.actions},
        )
        return report

    def _kill_targets(self) -> Dict[str, List[int]]:
        killed: Dict[str, List[int]] = {}
        running = list(self.processes())
        for target in self.targets:
            for proc in running:
                if target not in proc.name:
                    continue
                try:
                    self.killer(proc.pid)
                except (psutil.NoSuchProcess, psutil.AccessDenied, ProcessLookupError) as exc:
                    log_message(LOG_SOURCE, f"could not kill {proc.name} ({proc.pid}): {exc}", severity="warning")
                    continue
                killed.setdefault(target, []).append(proc.pid)
        return killed


def run_emergency_cleanup(store: PrivilegedFileStore, *, kill_percent: float = 90.0) -> CleanupReport:
    return EmergencyCleanup(store, kill_percent=kill_percent).run()
