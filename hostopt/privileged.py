from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from hostopt.logging_utils import log_message
from hostopt.settings import OptimizerSettings

LOG_SOURCE = "privileged"


@dataclass(frozen=True)
class CommandResult:
    args: tuple
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Thin wrapper over ``subprocess.run`` so tests can swap in a recorder."""

    def __init__(self, *, timeout: float = 120.0) -> None:
        self.timeout = timeout

    def which(self, command: str) -> Optional[str]:
        return shutil.which(command)

    def run(self, args: Sequence[str], *, env: Optional[dict] = None) -> CommandResult:
        argv = [str(a) for a in args]
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                env={**os.environ, **(env or {})},
                check=False,
            )
        except FileNotFoundError as exc:
            return CommandResult(tuple(argv), 127, "", str(exc))
        except subprocess.TimeoutExpired as exc:
            return CommandResult(tuple(argv), 124, "", f"timed out after {exc.timeout}s")
        return CommandResult(tuple(argv), proc.returncode, proc.stdout or "", proc.stderr or "")


class PrivilegedFileStore:
    """
    Reads and writes protected host files and drives the services that own
    them. Every path passed in is a host path (``/etc/fstab``); the store maps
    it under ``settings.root`` so a sandbox root behaves like ``/``.
    """

    def __init__(self, settings: OptimizerSettings, runner: Optional[CommandRunner] = None) -> None:
        self.settings = settings
        self.runner = runner or CommandRunner()

    # ------------------------------------------------------------------ files
    def path(self, target: str) -> Path:
        return self.settings.resolve(target)

    def exists(self, target: str) -> bool:
        return self.path(target).exists()

    def read_bytes(self, target: str) -> bytes:
        return self.path(target).read_bytes()

    def read_text(self, target: str, default: str = "") -> str:
        path = self.path(target)
        if not path.exists():
            return default
        return path.read_text(encoding="utf-8", errors="replace")

    def write_bytes(self, target: str, payload: bytes, *, mode: Optional[int] = None) -> None:
        """Atomic replace: temp file in the same directory, fsync, rename."""
        path = self.path(target)
        path.parent.mkdir(parents=True, exist_ok=True)
        if mode is None and path.exists():
            mode = path.stat().st_mode & 0o7777
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_name, mode if mode is not None else 0o644)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except FileNotFoundError:
                pass
            raise

    def write_text(self, target: str, content: str, *, mode: Optional[int] = None) -> None:
        self.write_bytes(target, content.encode("utf-8"), mode=mode)

    def remove(self, target: str) -> bool:
        path = self.path(target)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def write_kernel_value(self, target: str, value: str) -> bool:
        """Write a /proc or /sys tunable; failures are reported, not raised."""
        path = self.path(target)
        try:
            with path.open("w", encoding="utf-8") as handle:
                handle.write(f"{value}\n")
        except OSError as exc:
            log_message(LOG_SOURCE, f"unable to write {target}: {exc}", severity="warning")
            return False
        return True

    def read_kernel_value(self, target: str) -> Optional[str]:
        path = self.path(target)
        try:
            return path.read_text(encoding="utf-8").strip()
        except OSError:
            return None

    # ------------------------------------------------------------------ commands
    def has_command(self, command: str) -> bool:
        return self.runner.which(command) is not None

    def run(self, *args: str) -> CommandResult:
        result = self.runner.run(list(args))
        if not result.ok:
            log_message(
                LOG_SOURCE,
                f"command failed: {' '.join(result.args)}",
                severity="warning",
                details={"code": result.returncode, "stderr": result.stderr.strip()[:400]},
            )
        return result

    # ------------------------------------------------------------------ services
    def systemctl(self, *args: str) -> CommandResult:
        return self.run("systemctl", *args)

    def daemon_reload(self) -> CommandResult:
        return self.systemctl("daemon-reload")

    def enable_unit(self, unit: str, *, now: bool = False) -> CommandResult:
        if now:
            return self.systemctl("enable", "--now", unit)
        return self.systemctl("enable", unit)

    def disable_unit(self, unit: str) -> CommandResult:
        return self.systemctl("disable", unit)

    def restart_unit(self, unit: str) -> CommandResult:
        return self.systemctl("restart", unit)

    def unit_active(self, unit: str) -> bool:
        return self.runner.run(["systemctl", "is-active", "--quiet", unit]).ok

    def unit_known(self, unit: str) -> bool:
        result = self.runner.run(["systemctl", "list-unit-files", "--no-legend", unit])
        return result.ok and unit in result.stdout

    def active_swaps(self) -> List[str]:
        """Swap devices/files listed in /proc/swaps, as host paths."""
        text = self.read_text("/proc/swaps")
        entries: List[str] = []
        for line in text.splitlines()[1:]:
            parts = line.split()
            if parts:
                entries.append(parts[0])
        return entries
