from __future__ import annotations

import os
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

import psutil

from hostopt.logging_utils import log_message
from hostopt.profile import ThresholdPolicy
from memory_guardian.pressure import MemorySample, sample_memory

LOG_SOURCE = "reaper"

EARLYOOM_UNIT = "earlyoom.service"

# Core OS processes that must never be chosen as a victim.
AVOID_NAMES: Tuple[str, ...] = ("init", "systemd", "Xorg", "sshd")
# Memory-hungry user applications, most expendable first.
PREFER_NAMES: Tuple[str, ...] = (
    "Web Content",
    "Isolated Web Co",
    "chrome",
    "chromium",
    "firefox",
    "electron",
)


def _anchored(name: str) -> str:
    return f"(^|/){name}$"


def render_earlyoom_defaults(policy: ThresholdPolicy, *, profile_name: str, total_memory_gb: float) -> str:
    """Body of /etc/default/earlyoom for the given thresholds."""
    args = [f"-m {policy.earlyoom_mem_percent}", f"-s {policy.earlyoom_swap_percent}"]
    args.extend(f"--avoid '{_anchored(name)}'" for name in AVOID_NAMES)
    args.extend(f"--prefer '{_anchored(name)}'" for name in PREFER_NAMES)
    args.extend([f"-r {policy.earlyoom_report_interval}", "-n"])
    lines = [
        "# Generated by host-optimizer; manual edits are replaced on the next run.",
        f"# Profile: {profile_name} | RAM: {total_memory_gb:.1f}GB",
        "",
        f'EARLYOOM_ARGS="{" ".join(args)}"',
        "",
        f"# -m {policy.earlyoom_mem_percent}: kill when available RAM < {policy.earlyoom_mem_percent}%",
        f"# -s {policy.earlyoom_swap_percent}: kill when free swap < {policy.earlyoom_swap_percent}%",
    ]
    return "\n".join(lines) + "\n"


class ReaperState(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    KILLING = "killing"
    STOPPED = "stopped"


@dataclass(frozen=True)
class ProcessInfo:
    pid: int
    name: str
    rss_bytes: int


def list_processes() -> List[ProcessInfo]:
    found: List[ProcessInfo] = []
    for proc in psutil.process_iter(["pid", "name", "memory_info"]):
        info = proc.info
        memory = info.get("memory_info")
        if not info.get("name") or memory is None:
            continue
        found.append(ProcessInfo(int(info["pid"]), str(info["name"]), int(memory.rss)))
    return found


def kill_process(pid: int) -> None:
    psutil.Process(pid).kill()


def is_protected(name: str) -> bool:
    return os.path.basename(name) in AVOID_NAMES


def preference_rank(name: str) -> Optional[int]:
    base = os.path.basename(name)
    for rank, candidate in enumerate(PREFER_NAMES):
        if base == candidate:
            return rank
    return None


def select_victim(processes: Iterable[ProcessInfo], *, self_pid: Optional[int] = None) -> Optional[ProcessInfo]:
    """Largest-RSS process on the prefer list; protected processes and pid 1 are never eligible."""
    eligible = [
        proc
        for proc in processes
        if proc.pid not in (1, self_pid)
        and not is_protected(proc.name)
        and preference_rank(proc.name) is not None
    ]
    if not eligible:
        return None
    return max(eligible, key=lambda proc: (proc.rss_bytes, -preference_rank(proc.name)))


class FastReaper:
    """
    In-process stand-in for earlyoom: Idle -> Scanning -> (Breach ? Kill : Idle).
    The terminal state is reached only through ``stop``.
    """

    def __init__(
        self,
        policy: ThresholdPolicy,
        *,
        sampler: Callable[[], MemorySample] = sample_memory,
        processes: Callable[[], Iterable[ProcessInfo]] = list_processes,
        killer: Callable[[int], None] = kill_process,
    ) -> None:
        self.policy = policy
        self.sampler = sampler
        self.processes = processes
        self.killer = killer
        self.state = ReaperState.IDLE
        self.kills: List[ProcessInfo] = []
        self._stop = threading.Event()

    def breached(self, sample: MemorySample) -> bool:
        return (
            sample.available_percent < self.policy.earlyoom_mem_percent
            and sample.swap_free_percent < self.policy.earlyoom_swap_percent
        )

    def step(self) -> Optional[ProcessInfo]:
        if self.state is ReaperState.STOPPED:
            return None
        self.state = ReaperState.SCANNING
        sample = self.sampler()
        if not self.breached(sample):
            self.state = ReaperState.IDLE
            return None
        self.state = ReaperState.KILLING
        victim = select_victim(self.processes(), self_pid=os.getpid())
        if victim is None:
            log_message(
                LOG_SOURCE,
                "memory breach but no preferred victim is running",
                severity="warning",
                details={"available_percent": round(sample.available_percent, 2)},
            )
        else:
            try:
                self.killer(victim.pid)
            except (psutil.NoSuchProcess, psutil.AccessDenied, ProcessLookupError) as exc:
                log_message(LOG_SOURCE, f"could not kill {victim.name} ({victim.pid}): {exc}", severity="warning")
                victim = None
            else:
                self.kills.append(victim)
                log_message(
                    LOG_SOURCE,
                    f"killed {victim.name} (pid {victim.pid}, {victim.rss_bytes // (1024 * 1024)}MB)",
                    severity="warning",
                    details={"available_percent": round(sample.available_percent, 2)},
                )
        if self.state is not ReaperState.STOPPED:
            self.state = ReaperState.IDLE
        return victim

    def run(self) -> None:
        while not self._stop.is_set():
            self.step()
            self._stop.wait(self.policy.reaper_interval_seconds)
        self.state = ReaperState.STOPPED

    def stop(self) -> None:
        self._stop.set()
        self.state = ReaperState.STOPPED

    def reset(self) -> None:
        """Re-arm a stopped reaper so ``run`` can be started again."""
        self._stop.clear()
        self.state = ReaperState.IDLE
