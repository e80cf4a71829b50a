from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from hostopt.host_probe import HostFingerprint
from hostopt.profile import OptimizationProfile
from hostopt.settings import DISK_SWAP_PRIORITY, OptimizerSettings

MARK_BEGIN = "# BEGIN host-optimizer"
MARK_END = "# END host-optimizer"
SUPERSEDED_PREFIX = "#(superseded by host-optimizer) "

# /var/log moves to tmpfs only on small hosts
VAR_LOG_TMPFS_MAX_RAM_MB = 4096
VAR_LOG_TMPFS_SIZE = "256M"


@dataclass(frozen=True)
class FstabEntry:
    spec: str
    mountpoint: str
    fstype: str
    options: str
    dump: int = 0
    passno: int = 0

    def render(self) -> str:
        return f"{self.spec} {self.mountpoint} {self.fstype} {self.options} {self.dump} {self.passno}"

    @property
    def key(self) -> Tuple[str, str]:
        # swap entries are identified by their device, mounts by mountpoint
        return ("swap", self.spec) if self.fstype == "swap" else ("mount", self.mountpoint)

    @classmethod
    def parse(cls, line: str) -> "FstabEntry | None":
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        parts = stripped.split()
        if len(parts) < 4:
            return None
        dump = int(parts[4]) if len(parts) > 4 and parts[4].isdigit() else 0
        passno = int(parts[5]) if len(parts) > 5 and parts[5].isdigit() else 0
        return cls(parts[0], parts[1], parts[2], parts[3], dump, passno)


def _size(mb: int) -> str:
    return f"{mb // 1024}G" if mb % 1024 == 0 else f"{mb}M"


def desired_entries(
    profile: OptimizationProfile,
    fingerprint: HostFingerprint,
    settings: OptimizerSettings,
    *,
    include_swap: bool = True,
) -> List[FstabEntry]:
    entries: List[FstabEntry] = []
    if include_swap:
        entries.append(FstabEntry(settings.swapfile_path, "none", "swap", f"sw,pri={DISK_SWAP_PRIORITY}"))
    entries.append(
        FstabEntry("tmpfs", "/tmp", "tmpfs", f"defaults,noatime,mode=1777,size={_size(profile.tmpfs_size_mb)}")
    )
    if fingerprint.total_memory_mb <= VAR_LOG_TMPFS_MAX_RAM_MB:
        entries.append(
            FstabEntry("tmpfs", "/var/log", "tmpfs", f"defaults,noatime,mode=0755,size={VAR_LOG_TMPFS_SIZE}")
        )
    return entries


class FstabTable:
    """Unmanaged lines plus the entries inside the tool's marked block."""

    def __init__(self, foreign_lines: List[str], managed: List[FstabEntry]) -> None:
        self.foreign_lines = foreign_lines
        self.managed = managed

    @classmethod
    def parse(cls, text: str) -> "FstabTable":
        foreign: List[str] = []
        managed: List[FstabEntry] = []
        inside = False
        for line in text.splitlines():
            marker = line.strip()
            if marker.startswith(MARK_BEGIN):
                inside = True
                continue
            if inside and marker == MARK_END:
                inside = False
                continue
            if inside:
                entry = FstabEntry.parse(line)
                if entry:
                    managed.append(entry)
                continue
            foreign.append(line)
        return cls(foreign, managed)

    def render(self, entries: List[FstabEntry]) -> str:
        keys = {entry.key for entry in entries}
        lines: List[str] = []
        for line in self.foreign_lines:
            existing = FstabEntry.parse(line)
            if existing is not None and existing.key in keys:
                lines.append(f"{SUPERSEDED_PREFIX}{line.strip()}")
            else:
                lines.append(line)
        while lines and not lines[-1].strip():
            lines.pop()
        if lines:
            lines.append("")
        lines.append(MARK_BEGIN)
        lines.extend(entry.render() for entry in entries)
        lines.append(MARK_END)
        return "\n".join(lines) + "\n"

    def new_mounts(self, entries: List[FstabEntry]) -> List[FstabEntry]:
        """Non-swap entries that were not already managed; they mount at next boot."""
        previous = {entry.key: entry for entry in self.managed}
        return [e for e in entries if e.fstype != "swap" and previous.get(e.key) != e]
