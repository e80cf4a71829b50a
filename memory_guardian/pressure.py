from __future__ import annotations

import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

import psutil


class PressureTier(IntEnum):
    NORMAL = 0
    HIGH = 1
    CRITICAL = 2


@dataclass(frozen=True)
class MemorySample:
    total_bytes: int
    used_bytes: int
    available_bytes: int
    swap_total_bytes: int
    swap_free_bytes: int

    @property
    def used_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.used_bytes / self.total_bytes * 100.0

    @property
    def available_percent(self) -> float:
        if self.total_bytes <= 0:
            return 0.0
        return self.available_bytes / self.total_bytes * 100.0

    @property
    def swap_free_percent(self) -> float:
        # no swap counts as fully exhausted swap
        if self.swap_total_bytes <= 0:
            return 0.0
        return self.swap_free_bytes / self.swap_total_bytes * 100.0


@dataclass(frozen=True)
class MemoryPressureEvent:
    used_percent: float
    available_mb: int
    tier: PressureTier
    timestamp: float
    action_taken: str = "none"
    after_percent: Optional[float] = None



def sample_memory() -> MemorySample:
    vm = psutil.virtual_memory()
    swap = psutil.swap_memory()
    return MemorySample(
        total_bytes=int(vm.total),
        used_bytes=int(vm.total - vm.available),
        available_bytes=int(vm.available),
        swap_total_bytes=int(swap.total),
        swap_free_bytes=int(swap.free),
    )


def classify(used_percent: float, *, high: float, critical: float) -> PressureTier:
    """Highest tier whose threshold is strictly exceeded."""
    if used_percent > critical:
        return PressureTier.CRITICAL
    if used_percent > high:
        return PressureTier.HIGH
    return PressureTier.NORMAL


def pressure_event(
    sample: MemorySample, *, high: float, critical: float, now: Optional[float] = None
) -> MemoryPressureEvent:
    used = sample.used_percent
    return MemoryPressureEvent(
        used_percent=round(used, 2),
        available_mb=sample.available_bytes // (1024 * 1024),
        tier=classify(used, high=high, critical=critical),
        timestamp=time.time() if now is None else now,
    )


USAGE_LABELS = ((90.0, "CRITICAL"), (75.0, "HIGH"), (60.0, "MODERATE"))


def usage_label(used_percent: float) -> str:
    for threshold, label in USAGE_LABELS:
        if used_percent > threshold:
            return label
    return "OK"
