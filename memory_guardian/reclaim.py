from __future__ import annotations

from typing import List

from hostopt.logging_utils import log_message
from hostopt.privileged import PrivilegedFileStore

LOG_SOURCE = "reclaim"

DROP_PAGE_CACHE = 1
DROP_ALL_CACHES = 3


class Reclaimer:
    """
    Kernel reclaim primitives. Every action is appended to ``actions`` in the
    order it ran so callers can report exactly what happened.
    """

    def __init__(self, store: PrivilegedFileStore) -> None:
        self.store = store
        self.actions: List[str] = []

    def sync(self) -> bool:
        self.actions.append("sync")
        return self.store.run("sync").ok

    def drop_caches(self, level: int) -> bool:
        self.actions.append(f"drop_caches={level}")
        return self.store.write_kernel_value("/proc/sys/vm/drop_caches", str(level))

    def compact(self) -> bool:
        self.actions.append("compact_memory")
        return self.store.write_kernel_value("/proc/sys/vm/compact_memory", "1")

    def cycle_swap(self) -> bool:
        """Pull swapped pages back into RAM, then re-enable every swap area."""
        self.actions.append("swapoff")
        if not self.store.run("swapoff", "-a").ok:
            log_message(LOG_SOURCE, "swapoff -a failed; swap left as is", severity="warning")
            return False
        self.actions.append("swapon")
        return self.store.run("swapon", "-a").ok

    def reset(self) -> List[str]:
        done, self.actions = self.actions, []
        return done
