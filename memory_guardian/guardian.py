#!/usr/bin/env python3
from __future__ import annotations

import argparse
import sys
import threading
from dataclasses import dataclass, field, replace
from typing import Callable, List, Optional

import psutil

from hostopt.logging_utils import flush_logs, log_message
from hostopt.privileged import PrivilegedFileStore
from hostopt.settings import OptimizerSettings
from memory_guardian.pressure import (
    MemoryPressureEvent,
    MemorySample,
    PressureTier,
    pressure_event,
    sample_memory,
)
from memory_guardian.process_names import set_process_name
from memory_guardian.reclaim import DROP_ALL_CACHES, DROP_PAGE_CACHE, Reclaimer

LOG_SOURCE = "memory-guardian"

ACTION_NONE = "none"
ACTION_DROP_PAGE_CACHE = "drop_page_cache"
ACTION_DROP_ALL = "drop_all_caches+compact"

Sampler = Callable[[], MemorySample]


@dataclass
class GuardianCycle:
    event: MemoryPressureEvent
    actions: List[str] = field(default_factory=list)


class MemoryGuardian:
    """
    Tier 3 of the memory defense. Each cycle samples usage, decides the
    highest tier breached, and runs that tier's reclaim actions. The tier comes
    from the first sample alone; after reclaiming, one more sample records the
    resulting usage.
    """

    def __init__(
        self,
        store: PrivilegedFileStore,
        *,
        high_percent: float = 85.0,
        critical_percent: float = 95.0,
        interval_seconds: float = 120.0,
        sampler: Optional[Sampler] = None,
    ) -> None:
        if critical_percent <= high_percent:
            raise ValueError("critical threshold must exceed the high threshold")
        self.store = store
        self.high_percent = high_percent
        self.critical_percent = critical_percent
        self.interval_seconds = interval_seconds
        self.sampler = sampler or sample_memory
        self.reclaimer = Reclaimer(store)
        self.last_cycle: Optional[GuardianCycle] = None

    @classmethod
    def from_settings(cls, settings: OptimizerSettings, store: Optional[PrivilegedFileStore] = None, **kwargs) -> "MemoryGuardian":
        return cls(
            store or PrivilegedFileStore(settings),
            high_percent=settings.guardian_high_percent,
            critical_percent=settings.guardian_critical_percent,
            interval_seconds=settings.guardian_interval_seconds,
            **kwargs,
        )

    def run_cycle(self) -> GuardianCycle:
        event = pressure_event(self.sampler(), high=self.high_percent, critical=self.critical_percent)
        self.reclaimer.reset()
        if event.tier is PressureTier.CRITICAL:
            log_message(
                LOG_SOURCE,
                f"CRITICAL memory usage {event.used_percent:.1f}%; dropping all caches",
                severity="error",
                details={"available_mb": event.available_mb},
            )
            self.reclaimer.sync()
            self.reclaimer.drop_caches(DROP_ALL_CACHES)
            self.reclaimer.compact()
            action = ACTION_DROP_ALL
        elif event.tier is PressureTier.HIGH:
            log_message(
                LOG_SOURCE,
                f"high memory usage {event.used_percent:.1f}%; dropping page cache",
                severity="warning",
                details={"available_mb": event.available_mb},
            )
            self.reclaimer.sync()
            self.reclaimer.drop_caches(DROP_PAGE_CACHE)
            action = ACTION_DROP_PAGE_CACHE
        else:
            action = ACTION_NONE
        if action != ACTION_NONE:
            after = round(self.sampler().used_percent, 2)
            event = replace(event, action_taken=action, after_percent=after)
            log_message(
                LOG_SOURCE,
                f"cleanup complete; memory usage now {after:.1f}%",
                details={"before": event.used_percent, "action": action},
            )
        cycle = GuardianCycle(event=event, actions=self.reclaimer.reset())
        self.last_cycle = cycle
        return cycle

    def loop(self, stop_event: threading.Event) -> None:
        log_message(LOG_SOURCE, f"guardian loop started (every {self.interval_seconds:.0f}s)")
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except (OSError, psutil.Error) as exc:
                log_message(LOG_SOURCE, f"guardian cycle failed: {exc}", severity="error")
            stop_event.wait(self.interval_seconds)
        log_message(LOG_SOURCE, "guardian loop stopped")


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Periodic memory guardian (tier 3).")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Run a single cycle and exit (default).")
    mode.add_argument("--loop", action="store_true", help="Run cycles until interrupted.")
    parser.add_argument("--interval", type=float, default=None, help="Seconds between cycles in --loop mode.")
    args = parser.parse_args(argv)

    settings = OptimizerSettings.from_env()
    guardian = MemoryGuardian.from_settings(settings)
    if args.interval:
        guardian.interval_seconds = max(1.0, args.interval)
    set_process_name("host-optimizer-guardian")
    if not args.loop:
        cycle = guardian.run_cycle()
        print(f"memory {cycle.event.used_percent:.1f}% tier={cycle.event.tier.name} actions={','.join(cycle.actions) or 'none'}")
        flush_logs()
        return 0
    stop = threading.Event()
    try:
        guardian.loop(stop)
    except KeyboardInterrupt:
        stop.set()
    flush_logs()
    return 0


if __name__ == "__main__":
    sys.exit(main())
