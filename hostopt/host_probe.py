from __future__ import annotations

import os
import platform
from dataclasses import asdict, dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Tuple

import psutil

from hostopt.errors import DetectionError
from hostopt.logging_utils import log_message
from hostopt.privileged import CommandRunner

LOG_SOURCE = "fingerprint"


class StorageClass(str, Enum):
    HDD = "HDD"
    SSD = "SSD"
    NVME = "NVMe"


class GpuVendor(str, Enum):
    NVIDIA = "NVIDIA"
    AMD = "AMD"
    INTEL = "Intel"
    UNKNOWN = "Unknown"


class DesktopEnvironment(str, Enum):
    GNOME = "GNOME"
    KDE = "KDE"
    XFCE = "XFCE"
    CINNAMON = "Cinnamon"
    MATE = "MATE"
    LXQT = "LXQt"
    COSMIC = "COSMIC"
    HEADLESS = "Unknown/Headless"


# session process name -> desktop, checked in order
_DESKTOP_PROCESSES: Tuple[Tuple[str, DesktopEnvironment], ...] = (
    ("gnome-shell", DesktopEnvironment.GNOME),
    ("plasmashell", DesktopEnvironment.KDE),
    ("xfce4-session", DesktopEnvironment.XFCE),
    ("cinnamon", DesktopEnvironment.CINNAMON),
    ("mate-session", DesktopEnvironment.MATE),
    ("lxqt-session", DesktopEnvironment.LXQT),
    ("cosmic-session", DesktopEnvironment.COSMIC),
)

_VIRTUAL_BLOCK_PREFIXES = ("loop", "ram", "zram", "dm-", "sr", "md", "fd")


@dataclass(frozen=True)
class HostFingerprint:
    total_memory_mb: int
    available_memory_mb: int
    storage_class: StorageClass
    storage_device: str
    cpu_cores: int
    cpu_threads: int
    cpu_model: str
    gpu_vendor: GpuVendor
    is_laptop: bool
    is_virtual_machine: bool
    virtualization: str
    desktop_environment: DesktopEnvironment
    network_interface: str
    kernel_version: str
    distro: str
    hostname: str

    @property
    def total_memory_gb(self) -> float:
        return round(self.total_memory_mb / 1024, 1)

    @property
    def system_type(self) -> str:
        return "Laptop" if self.is_laptop else "Desktop"

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        for key, value in payload.items():
            if isinstance(value, Enum):
                payload[key] = value.value
        return payload

    def to_context_block(self) -> str:
        lines = ["Host fingerprint:"]
        for key, value in self.as_dict().items():
            lines.append(f"- {key}: {value}")
        return "\n".join(lines)


def _under(root: Path, host_path: str) -> Path:
    return root / host_path.lstrip("/")


def _read_meminfo(root: Path) -> Tuple[Optional[int], Optional[int]]:
    meminfo = _under(root, "/proc/meminfo")
    if not meminfo.exists():
        return None, None
    total: Optional[int] = None
    available: Optional[int] = None
    try:
        for line in meminfo.read_text(encoding="utf-8").splitlines():
            parts = line.split()
            if len(parts) < 2:
                continue
            if parts[0] == "MemTotal:":
                total = int(parts[1]) // 1024
            elif parts[0] == "MemAvailable:":
                available = int(parts[1]) // 1024
    except (OSError, ValueError):
        return None, None
    return total, available


def detect_memory(root: Path) -> Tuple[int, int]:
    """(total_mb, available_mb); the only fact whose absence is fatal."""
    try:
        vm = psutil.virtual_memory()
        if vm.total > 0:
            return int(vm.total // (1024 * 1024)), int(vm.available // (1024 * 1024))
    except (OSError, RuntimeError) as exc:
        log_message(LOG_SOURCE, f"psutil memory query failed: {exc}", severity="warning")
    total, available = _read_meminfo(root)
    if not total:
        raise DetectionError("no readable memory-accounting source", target=_under(root, "/proc/meminfo"))
    return total, available if available is not None else total


def _primary_block_device(root: Path) -> Optional[str]:
    block = _under(root, "/sys/block")
    try:
        names = sorted(entry.name for entry in block.iterdir())
    except OSError:
        return None
    for name in names:
        if name.startswith(_VIRTUAL_BLOCK_PREFIXES):
            continue
        return name
    return None


def detect_storage(root: Path) -> Tuple[StorageClass, str]:
    if _under(root, "/sys/block/nvme0n1").is_dir():
        return StorageClass.NVME, "nvme0n1"
    device = _primary_block_device(root)
    if device is None:
        return StorageClass.HDD, "unknown"
    if device.startswith("nvme"):
        return StorageClass.NVME, device
    rotational = _under(root, f"/sys/block/{device}/queue/rotational")
    try:
        flag = rotational.read_text(encoding="utf-8").strip()
    except OSError:
        flag = "1"
    return (StorageClass.SSD if flag == "0" else StorageClass.HDD), device


def detect_laptop(root: Path) -> bool:
    supply = _under(root, "/sys/class/power_supply")
    try:
        return any(entry.name.startswith("BAT") or entry.name == "battery" for entry in supply.iterdir())
    except OSError:
        return False


def detect_cpu(root: Path) -> Tuple[int, int, str]:
    threads = max(1, os.cpu_count() or 1)
    try:
        cores = psutil.cpu_count(logical=False) or threads
    except (OSError, RuntimeError):
        cores = threads
    model = "Unknown"
    cpuinfo = _under(root, "/proc/cpuinfo")
    try:
        for line in cpuinfo.read_text(encoding="utf-8").splitlines():
            if line.startswith("model name"):
                model = line.split(":", 1)[1].strip()
                break
    except (OSError, IndexError):
        pass
    return int(cores), int(threads), model


def detect_gpu(runner: CommandRunner) -> GpuVendor:
    if not runner.which("lspci"):
        return GpuVendor.UNKNOWN
    result = runner.run(["lspci"])
    if not result.ok:
        return GpuVendor.UNKNOWN
    display = [
        line.lower()
        for line in result.stdout.splitlines()
        if any(tag in line.lower() for tag in ("vga", "3d", "display"))
    ]
    joined = "\n".join(display)
    if "nvidia" in joined:
        return GpuVendor.NVIDIA
    if "amd" in joined or "radeon" in joined:
        return GpuVendor.AMD
    if "intel" in joined:
        return GpuVendor.INTEL
    return GpuVendor.UNKNOWN


def detect_virtualization(runner: CommandRunner) -> Tuple[bool, str]:
    if not runner.which("systemd-detect-virt"):
        return False, "none"
    result = runner.run(["systemd-detect-virt"])
    kind = result.stdout.strip() or "none"
    return (result.ok and kind != "none"), kind


def detect_desktop() -> DesktopEnvironment:
    running = set()
    for proc in psutil.process_iter(["name"]):
        try:
            name = proc.info.get("name")
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
        if name:
            running.add(name)
    for process_name, desktop in _DESKTOP_PROCESSES:
        if process_name in running:
            return desktop
    current = os.getenv("XDG_CURRENT_DESKTOP", "").upper()
    for desktop in DesktopEnvironment:
        if desktop is not DesktopEnvironment.HEADLESS and desktop.value.upper() in current:
            return desktop
    return DesktopEnvironment.HEADLESS


def detect_network_interface(root: Path) -> str:
    route = _under(root, "/proc/net/route")
    try:
        lines = route.read_text(encoding="utf-8").splitlines()[1:]
    except OSError:
        return ""
    for line in lines:
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "00000000":
            return parts[0]
    return ""


def detect_distro(root: Path) -> str:
    release = _under(root, "/etc/os-release")
    values: Dict[str, str] = {}
    try:
        for line in release.read_text(encoding="utf-8").splitlines():
            if "=" in line:
                key, value = line.split("=", 1)
                values[key.strip()] = value.strip().strip('"')
    except OSError:
        return "unknown"
    name = values.get("NAME") or values.get("ID") or "unknown"
    version = values.get("VERSION_ID", "")
    return f"{name} {version}".strip()


def collect_fingerprint(*, root: Path | str = "/", runner: Optional[CommandRunner] = None) -> HostFingerprint:
    """
    Read-only snapshot of the host. Raises ``DetectionError`` only when total
    memory cannot be determined; every other fact falls back to a sentinel.
    """
    root_path = Path(root)
    runner = runner or CommandRunner(timeout=15.0)
    total_mb, available_mb = detect_memory(root_path)
    storage, device = detect_storage(root_path)
    cores, threads, model = detect_cpu(root_path)
    is_vm, virt = detect_virtualization(runner)
    fingerprint = HostFingerprint(
        total_memory_mb=total_mb,
        available_memory_mb=available_mb,
        storage_class=storage,
        storage_device=device,
        cpu_cores=cores,
        cpu_threads=threads,
        cpu_model=model,
        gpu_vendor=detect_gpu(runner),
        is_laptop=detect_laptop(root_path),
        is_virtual_machine=is_vm,
        virtualization=virt,
        desktop_environment=detect_desktop(),
        network_interface=detect_network_interface(root_path),
        kernel_version=platform.release(),
        distro=detect_distro(root_path),
        hostname=platform.node() or "localhost",
    )
    log_message(
        LOG_SOURCE,
        f"{fingerprint.total_memory_mb}MB RAM, {storage.value} ({device}), {threads} threads, {fingerprint.system_type}",
        details={"desktop": fingerprint.desktop_environment.value, "iface": fingerprint.network_interface or "unknown"},
    )
    return fingerprint


__all__ = [
    "DesktopEnvironment",
    "GpuVendor",
    "HostFingerprint",
    "StorageClass",
    "collect_fingerprint",
]
