from __future__ import annotations

import fcntl
import hashlib
import os
import threading
import time
from pathlib import Path
from typing import IO, Optional


def lock_file_for(name: str, lock_dir: Path) -> Path:
    """Stable lock file per target: readable tail of the path plus a digest."""
    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:12]
    readable = "".join(ch if ch.isalnum() else "-" for ch in name).strip("-")[-48:] or "target"
    return lock_dir / f"{readable}-{digest}.lock"


class TargetLease:
    """
    Exclusive ``flock`` on one configuration target. A run holds it for the
    whole backup/write/verify/activate cycle of that target; a restore takes
    the same lease, so the two never interleave on one file. The memory
    defense supervisor uses one host-wide lease of its own.

    The lock file records the holder's pid and target so a blocked caller can
    say who it is waiting for.
    """

    def __init__(
        self,
        name: str,
        *,
        lock_dir: Path,
        timeout: Optional[float] = 30.0,
        poll_interval: float = 0.2,
    ) -> None:
        self.name = name
        self.timeout = timeout
        self.poll_interval = poll_interval
        Path(lock_dir).mkdir(parents=True, exist_ok=True)
        self.lock_path = lock_file_for(name, Path(lock_dir))
        self._handle: Optional[IO[str]] = None

    @property
    def held(self) -> bool:
        return self._handle is not None

    def holder(self) -> Optional[int]:
        """Pid recorded by whoever last took the lease (None if never taken)."""
        try:
            first = self.lock_path.read_text(encoding="utf-8").split(" ", 1)[0]
        except OSError:
            return None
        return int(first) if first.isdigit() else None

    def _attempt(self) -> bool:
        handle = self.lock_path.open("a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            return False
        handle.seek(0)
        handle.truncate()
        handle.write(f"{os.getpid()} {self.name}\n")
        handle.flush()
        self._handle = handle
        return True

    def acquire(self, *, cancel_event: Optional[threading.Event] = None) -> bool:
        if self.held:
            return True
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while not self._attempt():
            if cancel_event is not None and cancel_event.is_set():
                return False
            if deadline is not None and time.monotonic() >= deadline:
                return False
            time.sleep(self.poll_interval)
        return True

    def release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()

    def __enter__(self) -> "TargetLease":
        if not self.acquire():
            raise TimeoutError(f"lease on {self.name} held by pid {self.holder()}")
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
