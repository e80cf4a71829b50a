from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from hostopt.host_probe import HostFingerprint, StorageClass
from hostopt.settings import OptimizerSettings


class ProfileName(str, Enum):
    MINIMAL = "MINIMAL"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    EXTREME = "EXTREME"


@dataclass(frozen=True)
class OptimizationProfile:
    name: ProfileName
    swap_size_mb: int
    swappiness: int
    zram_enabled: bool
    zram_size_mb: int
    tmpfs_size_mb: int
    vfs_cache_pressure: int
    min_free_kb: int
    dirty_ratio: int
    dirty_background_ratio: int

    def as_dict(self) -> Dict[str, object]:
        payload = asdict(self)
        payload["name"] = self.name.value
        return payload


@dataclass(frozen=True)
class ThresholdPolicy:
    earlyoom_mem_percent: int
    earlyoom_swap_percent: int
    earlyoom_report_interval: int
    guardian_high_percent: float
    guardian_critical_percent: float
    emergency_kill_percent: float
    guardian_interval_seconds: float
    reaper_interval_seconds: float
    low_ram: bool


# A band's values as a function of total memory (MB).
BandValues = Callable[[int], OptimizationProfile]


def _fixed(
    name: ProfileName,
    *,
    swap_mb: int,
    swappiness: int,
    zram_mb: int,
    tmpfs_mb: int,
    vfs: int,
    min_free_kb: int,
    dirty: int,
    dirty_bg: int,
) -> BandValues:
    def build(total_mb: int) -> OptimizationProfile:
        return OptimizationProfile(
            name=name,
            swap_size_mb=swap_mb,
            swappiness=swappiness,
            zram_enabled=zram_mb > 0,
            zram_size_mb=zram_mb,
            tmpfs_size_mb=tmpfs_mb,
            vfs_cache_pressure=vfs,
            min_free_kb=min_free_kb,
            dirty_ratio=dirty,
            dirty_background_ratio=dirty_bg,
        )

    return build


def _minimal(total_mb: int) -> OptimizationProfile:
    # swap twice the RAM, zram the size of RAM
    return OptimizationProfile(
        name=ProfileName.MINIMAL,
        swap_size_mb=total_mb * 2,
        swappiness=60,
        zram_enabled=True,
        zram_size_mb=total_mb,
        tmpfs_size_mb=512,
        vfs_cache_pressure=150,
        min_free_kb=65536,
        dirty_ratio=10,
        dirty_background_ratio=3,
    )


# (inclusive upper bound in MB, values); evaluated top-down, None is unbounded.
PROFILE_BANDS: Tuple[Tuple[Optional[int], BandValues], ...] = (
    (2048, _minimal),
    (4096, _fixed(ProfileName.LOW, swap_mb=6144, swappiness=60, zram_mb=6144, tmpfs_mb=1024,
                  vfs=100, min_free_kb=131072, dirty=10, dirty_bg=5)),
    (8192, _fixed(ProfileName.MEDIUM, swap_mb=16384, swappiness=60, zram_mb=8192, tmpfs_mb=2048,
                  vfs=70, min_free_kb=131072, dirty=10, dirty_bg=5)),
    (16384, _fixed(ProfileName.HIGH, swap_mb=16384, swappiness=30, zram_mb=0, tmpfs_mb=4096,
                   vfs=50, min_free_kb=262144, dirty=15, dirty_bg=5)),
    (None, _fixed(ProfileName.EXTREME, swap_mb=16384, swappiness=30, zram_mb=0, tmpfs_mb=8192,
                  vfs=50, min_free_kb=524288, dirty=20, dirty_bg=10)),
)


def profile_for_memory(total_memory_mb: int) -> OptimizationProfile:
    for upper_bound, build in PROFILE_BANDS:
        if upper_bound is None or total_memory_mb <= upper_bound:
            return build(total_memory_mb)
    raise AssertionError("PROFILE_BANDS must end with an unbounded band")


def derive_profile(fingerprint: HostFingerprint) -> OptimizationProfile:
    """Total and deterministic: only ``total_memory_mb`` is consulted."""
    return profile_for_memory(fingerprint.total_memory_mb)


_SCHEDULERS: Dict[StorageClass, str] = {
    StorageClass.NVME: "none",
    StorageClass.SSD: "none",
    StorageClass.HDD: "mq-deadline",
}


def select_io_scheduler(storage_class: StorageClass) -> str:
    return _SCHEDULERS.get(storage_class, "none")


def select_cpu_governor(is_laptop: bool) -> str:
    return "schedutil" if is_laptop else "performance"


def derive_threshold_policy(fingerprint: HostFingerprint, settings: OptimizerSettings) -> ThresholdPolicy:
    low_ram = fingerprint.total_memory_mb <= settings.low_ram_cutoff_mb
    return ThresholdPolicy(
        earlyoom_mem_percent=settings.earlyoom_mem_low_ram if low_ram else settings.earlyoom_mem_default,
        earlyoom_swap_percent=settings.earlyoom_swap_low_ram if low_ram else settings.earlyoom_swap_default,
        earlyoom_report_interval=settings.earlyoom_report_interval,
        guardian_high_percent=settings.guardian_high_percent,
        guardian_critical_percent=settings.guardian_critical_percent,
        emergency_kill_percent=settings.emergency_kill_percent,
        guardian_interval_seconds=settings.guardian_interval_seconds,
        reaper_interval_seconds=settings.reaper_interval_seconds,
        low_ram=low_ram,
    )
