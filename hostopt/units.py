from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

from hostopt.settings import ZRAM_PRIORITY

GENERATED_HEADER = "# Generated by host-optimizer; manual edits are replaced on the next run."

ZRAM_UNIT = "host-optimizer-zram.service"
CPU_UNIT = "host-optimizer-cpu.service"
NETWORK_UNIT = "host-optimizer-network.service"
GUARDIAN_SERVICE = "host-optimizer-guardian.service"
GUARDIAN_TIMER = "host-optimizer-guardian.timer"

Directive = Tuple[str, str]


@dataclass(frozen=True)
class SystemdUnit:
    """A self-contained unit file; sections render in declaration order."""

    name: str
    description: str
    after: str = "multi-user.target"
    service: Tuple[Directive, ...] = ()
    timer: Tuple[Directive, ...] = ()
    wanted_by: str = "multi-user.target"

    def render(self) -> str:
        lines: List[str] = [GENERATED_HEADER, "[Unit]", f"Description={self.description}"]
        if self.after:
            lines.append(f"After={self.after}")
        if self.service:
            lines.extend(["", "[Service]"])
            lines.extend(f"{k}={v}" for k, v in self.service)
        if self.timer:
            lines.extend(["", "[Timer]"])
            lines.extend(f"{k}={v}" for k, v in self.timer)
        lines.extend(["", "[Install]", f"WantedBy={self.wanted_by}"])
        return "\n".join(lines) + "\n"


def zram_unit(zram_size_mb: int, *, algorithm: str = "lz4") -> SystemdUnit:
    return SystemdUnit(
        name=ZRAM_UNIT,
        description="host-optimizer compressed swap (zram)",
        service=(
            ("Type", "oneshot"),
            ("RemainAfterExit", "true"),
            ("ExecStartPre", "/sbin/modprobe zram num_devices=1"),
            ("ExecStart", f"/bin/sh -c 'echo {algorithm} > /sys/block/zram0/comp_algorithm'"),
            ("ExecStart", f"/bin/sh -c 'echo {zram_size_mb}M > /sys/block/zram0/disksize'"),
            ("ExecStart", "/sbin/mkswap /dev/zram0"),
            ("ExecStart", f"/sbin/swapon -p {ZRAM_PRIORITY} /dev/zram0"),
            ("ExecStop", "/sbin/swapoff /dev/zram0"),
        ),
    )


def cpu_governor_unit(governor: str) -> SystemdUnit:
    return SystemdUnit(
        name=CPU_UNIT,
        description=f"host-optimizer CPU governor ({governor})",
        service=(
            ("Type", "oneshot"),
            ("RemainAfterExit", "yes"),
            (
                "ExecStart",
                "/bin/sh -c 'for cpu in /sys/devices/system/cpu/cpu*/cpufreq/scaling_governor; "
                f"do echo {governor} > $cpu 2>/dev/null || true; done'",
            ),
        ),
    )


def network_unit(interface: str) -> SystemdUnit:
    return SystemdUnit(
        name=NETWORK_UNIT,
        description=f"host-optimizer network interface tuning ({interface})",
        after="network.target",
        service=(
            ("Type", "oneshot"),
            ("RemainAfterExit", "yes"),
            ("ExecStart", f"-/sbin/ethtool -G {interface} rx 4096 tx 4096"),
            ("ExecStart", f"-/sbin/ethtool -K {interface} tso on gso on"),
            ("ExecStart", f"/sbin/ip link set {interface} txqueuelen 10000"),
        ),
    )


def guardian_units(
    python_bin: str,
    interval_seconds: float,
    *,
    working_dir: str,
    log_dir: str,
) -> Tuple[SystemdUnit, SystemdUnit]:
    minutes = max(1, int(round(interval_seconds / 60.0)))
    log_dir = log_dir.rstrip("/")
    service = SystemdUnit(
        name=GUARDIAN_SERVICE,
        description="host-optimizer memory guardian cycle",
        service=(
            ("Type", "oneshot"),
            ("WorkingDirectory", working_dir),
            ("Environment", f"PYTHONPATH={working_dir}"),
            ("Environment", f"HOSTOPT_LOG_PATH={log_dir}/guardian.log"),
            ("Environment", f"HOSTOPT_LOG_SERVICE_DIR={log_dir}/services"),
            ("ExecStart", f"{python_bin} -m memory_guardian.guardian --once"),
            ("Nice", "-5"),
        ),
    )
    timer = SystemdUnit(
        name=GUARDIAN_TIMER,
        description="host-optimizer memory guardian schedule",
        timer=(
            ("OnBootSec", f"{minutes}min"),
            ("OnUnitActiveSec", f"{minutes}min"),
            ("AccuracySec", "15s"),
            ("Unit", GUARDIAN_SERVICE),
        ),
        wanted_by="timers.target",
    )
    return service, timer


@dataclass(frozen=True)
class UdevSchedulerRule:
    scheduler: str
    read_ahead_kb: int = 256
    nr_requests: int = 256
    kernels: str = "sd[a-z]|nvme[0-9]n[0-9]"

    def render(self) -> str:
        match = f'ACTION=="add|change", KERNEL=="{self.kernels}"'
        lines = [
            GENERATED_HEADER,
            f'{match}, ATTR{{queue/scheduler}}="{self.scheduler}"',
            f'{match}, ATTR{{queue/read_ahead_kb}}="{self.read_ahead_kb}"',
            f'{match}, ATTR{{queue/nr_requests}}="{self.nr_requests}"',
        ]
        return "\n".join(lines) + "\n"


def modules_load(modules: Tuple[str, ...] = ("tcp_bbr",)) -> str:
    return GENERATED_HEADER + "\n" + "\n".join(modules) + "\n"
