from __future__ import annotations

import errno
import os
from dataclasses import dataclass
from pathlib import Path

from hostopt.errors import VerificationError
from hostopt.logging_utils import log_message
from hostopt.privileged import PrivilegedFileStore
from hostopt.settings import DISK_SWAP_PRIORITY

LOG_SOURCE = "swapfile"

_CHUNK = 1024 * 1024
# errno values meaning "this filesystem cannot preallocate"
_UNSUPPORTED = {errno.EOPNOTSUPP, errno.ENOTSUP, errno.EINVAL, errno.ENOSYS}


@dataclass(frozen=True)
class SwapAllocation:
    path: Path
    size_bytes: int
    method: str


class SwapFileAllocator:
    """Creates a file of exactly ``size_mb`` MiB, preferring preallocation."""

    def allocate(self, path: Path, size_mb: int) -> SwapAllocation:
        size = int(size_mb) * _CHUNK
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            path.unlink()
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            method = self._fallocate(fd, size)
            if method is None:
                self._zero_fill(fd, size)
                method = "zero-fill"
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(path, 0o600)
        actual = path.stat().st_size
        if actual != size:
            raise VerificationError(f"swap file is {actual} bytes, expected {size}", target=path)
        log_message(LOG_SOURCE, f"allocated {size_mb}MB at {path} via {method}")
        return SwapAllocation(path, size, method)

    def _fallocate(self, fd: int, size: int) -> "str | None":
        try:
            os.posix_fallocate(fd, 0, size)
        except OSError as exc:
            if exc.errno in _UNSUPPORTED:
                log_message(LOG_SOURCE, f"fallocate unsupported ({exc.strerror}); zero-filling", severity="warning")
                os.ftruncate(fd, 0)
                return None
            raise
        return "fallocate"

    def _zero_fill(self, fd: int, size: int) -> None:
        block = b"\0" * _CHUNK
        written = 0
        while written < size:
            chunk = block if size - written >= _CHUNK else block[: size - written]
            written += os.write(fd, chunk)


def swap_active(store: PrivilegedFileStore, target: str) -> bool:
    return target in store.active_swaps()


def format_swap(store: PrivilegedFileStore, target: str) -> None:
    result = store.run("mkswap", str(store.path(target)))
    if not result.ok:
        raise VerificationError("mkswap did not format the swap file", target=target, cause=RuntimeError(result.stderr.strip()))


def enable_swap(store: PrivilegedFileStore, target: str) -> bool:
    """False when the kernel refused activation (left for the next boot via fstab)."""
    return store.run("swapon", "-p", str(DISK_SWAP_PRIORITY), str(store.path(target))).ok


def disable_swap(store: PrivilegedFileStore, target: str) -> bool:
    return store.run("swapoff", str(store.path(target))).ok
