from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Type

from hostopt.errors import PackageUnavailable
from hostopt.logging_utils import log_message
from hostopt.privileged import CommandResult, CommandRunner

LOG_SOURCE = "installer"

ESSENTIAL_TOOLS: Tuple[str, ...] = (
    "htop",
    "iotop",
    "sysstat",
    "nethogs",
    "iftop",
    "nmon",
    "cpufrequtils",
    "irqbalance",
    "earlyoom",
    "ethtool",
    "net-tools",
    "e2fsprogs",
)
LAPTOP_TOOLS: Tuple[str, ...] = ("tlp", "tlp-rdw", "powertop")


@dataclass(frozen=True)
class InstallResult:
    package: str
    manager: str
    ok: bool
    detail: str = ""


class PackageInstaller(ABC):
    """Install/upgrade named packages through one concrete package manager."""

    name: str = "unknown"
    probe_command: str = ""

    def __init__(self, runner: Optional[CommandRunner] = None) -> None:
        self.runner = runner or CommandRunner(timeout=900.0)
        self._refreshed = False

    @abstractmethod
    def install_command(self, package: str) -> List[str]:
        ...

    def refresh_command(self) -> Optional[List[str]]:
        return None

    def env(self) -> Dict[str, str]:
        return {}

    def refresh(self) -> None:
        if self._refreshed:
            return
        command = self.refresh_command()
        self._refreshed = True
        if command is None:
            return
        result = self.runner.run(command, env=self.env())
        if not result.ok:
            log_message(LOG_SOURCE, f"{self.name} refresh failed", severity="warning", details={"code": result.returncode})

    def install_package(self, package: str) -> InstallResult:
        result: CommandResult = self.runner.run(self.install_command(package), env=self.env())
        if result.ok:
            log_message(LOG_SOURCE, f"installed {package} via {self.name}")
            return InstallResult(package, self.name, True)
        detail = (result.stderr or result.stdout).strip()[:400]
        return InstallResult(package, self.name, False, detail)

    def ensure(self, package: str, *, command: Optional[str] = None) -> InstallResult:
        """Install ``package`` unless ``command`` is already on PATH; raise when it cannot be had."""
        if command and self.runner.which(command):
            return InstallResult(package, self.name, True, "already present")
        self.refresh()
        outcome = self.install_package(package)
        if not outcome.ok:
            raise PackageUnavailable(package, manager=self.name, cause=RuntimeError(outcome.detail or "install failed"))
        return outcome


class AptInstaller(PackageInstaller):
    name = "apt"
    probe_command = "apt-get"

    def env(self) -> Dict[str, str]:
        return {"DEBIAN_FRONTEND": "noninteractive"}

    def refresh_command(self) -> Optional[List[str]]:
        return ["apt-get", "update", "-qq"]

    def install_command(self, package: str) -> List[str]:
        return ["apt-get", "install", "-y", package]


class DnfInstaller(PackageInstaller):
    name = "dnf"
    probe_command = "dnf"

    def refresh_command(self) -> Optional[List[str]]:
        return ["dnf", "makecache", "-q"]

    def install_command(self, package: str) -> List[str]:
        return ["dnf", "install", "-y", package]


class PacmanInstaller(PackageInstaller):
    name = "pacman"
    probe_command = "pacman"

    def refresh_command(self) -> Optional[List[str]]:
        return ["pacman", "-Sy", "--noconfirm"]

    def install_command(self, package: str) -> List[str]:
        return ["pacman", "-S", "--noconfirm", "--needed", package]


class ZypperInstaller(PackageInstaller):
    name = "zypper"
    probe_command = "zypper"

    def refresh_command(self) -> Optional[List[str]]:
        return ["zypper", "--non-interactive", "refresh"]

    def install_command(self, package: str) -> List[str]:
        return ["zypper", "--non-interactive", "install", package]


class NullInstaller(PackageInstaller):
    """Selected when no supported manager exists; every install is unavailable."""

    name = "none"

    def install_command(self, package: str) -> List[str]:
        return []

    def install_package(self, package: str) -> InstallResult:
        return InstallResult(package, self.name, False, "no supported package manager")


_CANDIDATES: Sequence[Type[PackageInstaller]] = (AptInstaller, DnfInstaller, PacmanInstaller, ZypperInstaller)


def detect_installer(runner: Optional[CommandRunner] = None) -> PackageInstaller:
    """Capability probe run once at startup; the first manager on PATH wins."""
    runner = runner or CommandRunner(timeout=900.0)
    for cls in _CANDIDATES:
        if runner.which(cls.probe_command):
            log_message(LOG_SOURCE, f"package manager: {cls.name}")
            return cls(runner)
    log_message(LOG_SOURCE, "no supported package manager found", severity="warning")
    return NullInstaller(runner)


@dataclass
class ToolSuiteOutcome:
    installed: List[str] = field(default_factory=list)
    unavailable: List[str] = field(default_factory=list)


def install_tool_suite(installer: PackageInstaller, *, is_laptop: bool, extra: Iterable[str] = ()) -> ToolSuiteOutcome:
    """Best-effort install of the monitoring/tuning tools; every failure is a warning."""
    outcome = ToolSuiteOutcome()
    packages = list(ESSENTIAL_TOOLS) + (list(LAPTOP_TOOLS) if is_laptop else []) + list(extra)
    for package in packages:
        try:
            installer.ensure(package, command=package)
        except PackageUnavailable as exc:
            log_message(LOG_SOURCE, str(exc), severity="warning")
            outcome.unavailable.append(package)
            continue
        outcome.installed.append(package)
    return outcome
