from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from hostopt.profile import OptimizationProfile

MARK_BEGIN = "# BEGIN host-optimizer"
MARK_END = "# END host-optimizer"
SUPERSEDED_PREFIX = "#(superseded by host-optimizer) "

GROUP_ORDER: Tuple[str, ...] = ("memory", "oom", "network", "filesystem", "kernel", "security")

# Tier 1 of the memory defense: the platform OOM killer's tuning.
OOM_PARAMETERS: "OrderedDict[str, str]" = OrderedDict(
    [
        ("vm.panic_on_oom", "0"),
        ("vm.oom_kill_allocating_task", "0"),
        ("vm.overcommit_memory", "1"),
        ("vm.overcommit_ratio", "50"),
        ("vm.watermark_scale_factor", "200"),
        ("vm.watermark_boost_factor", "0"),
    ]
)

NETWORK_PARAMETERS: "OrderedDict[str, str]" = OrderedDict(
    [
        ("net.core.netdev_max_backlog", "16384"),
        ("net.core.rmem_default", "262144"),
        ("net.core.rmem_max", "16777216"),
        ("net.core.wmem_default", "262144"),
        ("net.core.wmem_max", "16777216"),
        ("net.core.optmem_max", "65536"),
        ("net.ipv4.tcp_rmem", "4096 87380 16777216"),
        ("net.ipv4.tcp_wmem", "4096 65536 16777216"),
        ("net.ipv4.tcp_congestion_control", "bbr"),
        ("net.core.default_qdisc", "fq"),
        ("net.ipv4.tcp_fastopen", "3"),
        ("net.netfilter.nf_conntrack_max", "1048576"),
        ("net.netfilter.nf_conntrack_tcp_timeout_established", "600"),
        ("net.ipv4.tcp_slow_start_after_idle", "0"),
        ("net.ipv4.tcp_mtu_probing", "1"),
        ("net.ipv4.tcp_tw_reuse", "1"),
        ("net.ipv4.tcp_fin_timeout", "10"),
        ("net.ipv4.tcp_keepalive_time", "600"),
        ("net.ipv4.tcp_keepalive_intvl", "60"),
        ("net.ipv4.tcp_keepalive_probes", "5"),
    ]
)

FILESYSTEM_PARAMETERS: "OrderedDict[str, str]" = OrderedDict(
    [
        ("fs.file-max", "2097152"),
        ("fs.inotify.max_user_watches", "524288"),
        ("fs.inotify.max_user_instances", "512"),
        ("fs.inotify.max_queued_events", "32768"),
    ]
)

KERNEL_PARAMETERS: "OrderedDict[str, str]" = OrderedDict(
    [
        ("kernel.pid_max", "4194304"),
        ("kernel.threads-max", "4194304"),
        ("kernel.sched_autogroup_enabled", "1"),
    ]
)

SECURITY_PARAMETERS: "OrderedDict[str, str]" = OrderedDict(
    [
        ("kernel.kptr_restrict", "2"),
        ("kernel.dmesg_restrict", "1"),
        ("kernel.unprivileged_bpf_disabled", "1"),
        ("net.core.bpf_jit_harden", "2"),
    ]
)

Groups = "OrderedDict[str, OrderedDict[str, str]]"


def memory_parameters(profile: OptimizationProfile) -> "OrderedDict[str, str]":
    return OrderedDict(
        [
            ("vm.swappiness", str(profile.swappiness)),
            ("vm.vfs_cache_pressure", str(profile.vfs_cache_pressure)),
            ("vm.dirty_ratio", str(profile.dirty_ratio)),
            ("vm.dirty_background_ratio", str(profile.dirty_background_ratio)),
            ("vm.dirty_expire_centisecs", "3000"),
            ("vm.dirty_writeback_centisecs", "500"),
            ("vm.min_free_kbytes", str(profile.min_free_kb)),
            ("vm.page-cluster", "0"),
            ("vm.extfrag_threshold", "500"),
            ("vm.compact_unevictable_allowed", "1"),
        ]
    )


def desired_parameters(profile: OptimizationProfile) -> Groups:
    return OrderedDict(
        [
            ("memory", memory_parameters(profile)),
            ("oom", OrderedDict(OOM_PARAMETERS)),
            ("network", OrderedDict(NETWORK_PARAMETERS)),
            ("filesystem", OrderedDict(FILESYSTEM_PARAMETERS)),
            ("kernel", OrderedDict(KERNEL_PARAMETERS)),
            ("security", OrderedDict(SECURITY_PARAMETERS)),
        ]
    )


def flatten(groups: Groups) -> "OrderedDict[str, str]":
    flat: "OrderedDict[str, str]" = OrderedDict()
    for name in GROUP_ORDER:
        for key, value in groups.get(name, {}).items():
            flat[key] = value
    return flat


def _parse_assignment(line: str) -> Optional[Tuple[str, str]]:
    stripped = line.strip()
    if not stripped or stripped.startswith(("#", ";")) or "=" not in stripped:
        return None
    key, value = stripped.split("=", 1)
    key = key.strip().lstrip("-")
    if not key:
        return None
    return key, " ".join(value.split())


@dataclass
class SysctlDiff:
    added: Dict[str, str] = field(default_factory=dict)
    changed: Dict[str, Tuple[str, str]] = field(default_factory=dict)
    removed: Dict[str, str] = field(default_factory=dict)
    superseded: Dict[str, str] = field(default_factory=dict)
    unchanged: int = 0

    @property
    def is_noop(self) -> bool:
        return not (self.added or self.changed or self.removed or self.superseded)

    def summary(self) -> Dict[str, object]:
        return {
            "added": sorted(self.added),
            "changed": {key: list(pair) for key, pair in sorted(self.changed.items())},
            "removed": sorted(self.removed),
            "superseded": sorted(self.superseded),
            "unchanged": self.unchanged,
        }


class SysctlDocument:
    """
    A sysctl.conf split into the lines the tool does not own and the parsed
    key-ordered mapping of the tool's marked block. Rendering is deterministic:
    the same desired mapping always serialises to the same bytes.
    """

    def __init__(self, foreign_lines: List[str], managed: "OrderedDict[str, str]") -> None:
        self.foreign_lines = foreign_lines
        self.managed = managed

    @classmethod
    def parse(cls, text: str) -> "SysctlDocument":
        foreign: List[str] = []
        managed: "OrderedDict[str, str]" = OrderedDict()
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
                assignment = _parse_assignment(line)
                if assignment:
                    managed[assignment[0]] = assignment[1]
                continue
            foreign.append(line)
        return cls(foreign, managed)

    def foreign_assignments(self) -> Dict[str, str]:
        found: Dict[str, str] = {}
        for line in self.foreign_lines:
            assignment = _parse_assignment(line)
            if assignment:
                found[assignment[0]] = assignment[1]
        return found

    def diff(self, desired: Groups) -> SysctlDiff:
        flat = flatten(desired)
        result = SysctlDiff()
        for key, value in flat.items():
            if key not in self.managed:
                result.added[key] = value
            elif self.managed[key] != value:
                result.changed[key] = (self.managed[key], value)
            else:
                result.unchanged += 1
        for key, value in self.managed.items():
            if key not in flat:
                result.removed[key] = value
        for key, value in self.foreign_assignments().items():
            if key in flat:
                result.superseded[key] = value
        return result

    def render(self, desired: Groups, *, title: str) -> str:
        flat = flatten(desired)
        lines: List[str] = []
        for line in self.foreign_lines:
            assignment = _parse_assignment(line)
            if assignment and assignment[0] in flat:
                # an unmanaged assignment of a managed key would override the block
                lines.append(f"{SUPERSEDED_PREFIX}{line.strip()}")
            else:
                lines.append(line)
        while lines and not lines[-1].strip():
            lines.pop()
        if lines:
            lines.append("")
        lines.append(f"{MARK_BEGIN} ({title})")
        for group in GROUP_ORDER:
            values = desired.get(group)
            if not values:
                continue
            lines.append(f"# ===== {group.upper()} =====")
            for key, value in values.items():
                lines.append(f"{key}={value}")
        lines.append(MARK_END)
        return "\n".join(lines) + "\n"


def proc_sys_path(key: str) -> str:
    return "/proc/sys/" + key.replace(".", "/")
