import os
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest


def _isolate_runtime() -> None:
    if os.environ.get("HOSTOPT_TEST_RUNTIME"):
        return
    log_root = Path(os.getenv("PYTEST_LOG_HOME") or tempfile.mkdtemp(prefix="hostopt-logs-"))
    os.environ["HOSTOPT_TEST_RUNTIME"] = str(log_root)
    os.environ["HOSTOPT_LOG_PATH"] = str(log_root / "host-optimizer.log")
    os.environ["HOSTOPT_LOG_SERVICE_DIR"] = str(log_root / "services")
    os.environ["HOSTOPT_ENV_LOADED"] = "1"
    os.environ["HOSTOPT_CONFIG"] = str(log_root / "absent.yaml")


# the log bus reads its paths when hostopt is first imported
_isolate_runtime()

from hostopt.host_probe import DesktopEnvironment, GpuVendor, HostFingerprint, StorageClass
from hostopt.privileged import CommandResult, PrivilegedFileStore
from hostopt.settings import OptimizerSettings


def pytest_configure():
    _isolate_runtime()


class FakeRunner:
    """Records every command instead of running it."""

    def __init__(self, *, missing: Sequence[str] = (), failing: Sequence[str] = ()) -> None:
        self.calls: List[tuple] = []
        self.missing: Set[str] = set(missing)
        self.failing: Set[str] = set(failing)
        self.stdout: Dict[str, str] = {}

    def which(self, command: str) -> Optional[str]:
        return None if command in self.missing else f"/usr/bin/{command}"

    def run(self, args, *, env=None) -> CommandResult:
        argv = tuple(str(a) for a in args)
        self.calls.append(argv)
        joined = " ".join(argv)
        if argv[0] in self.missing:
            return CommandResult(argv, 127, "", "not found")
        if any(joined.startswith(prefix) for prefix in self.failing):
            return CommandResult(argv, 1, "", "failed")
        return CommandResult(argv, 0, self.stdout.get(argv[0], ""), "")

    def commands(self, prefix: str) -> List[tuple]:
        return [call for call in self.calls if " ".join(call).startswith(prefix)]


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def settings(tmp_path) -> OptimizerSettings:
    root = tmp_path / "root"
    root.mkdir()
    return OptimizerSettings(
        root=root,
        backup_root=tmp_path / "backups",
        report_dir=tmp_path / "reports",
        lock_dir=tmp_path / "locks",
    )


@pytest.fixture
def store(settings, runner) -> PrivilegedFileStore:
    return PrivilegedFileStore(settings, runner)


def make_fingerprint(**overrides) -> HostFingerprint:
    values = dict(
        total_memory_mb=4096,
        available_memory_mb=2048,
        storage_class=StorageClass.SSD,
        storage_device="sda",
        cpu_cores=4,
        cpu_threads=8,
        cpu_model="Test CPU",
        gpu_vendor=GpuVendor.INTEL,
        is_laptop=False,
        is_virtual_machine=False,
        virtualization="none",
        desktop_environment=DesktopEnvironment.HEADLESS,
        network_interface="eth0",
        kernel_version="6.1.0",
        distro="Debian 12",
        hostname="testhost",
    )
    values.update(overrides)
    return HostFingerprint(**values)


@pytest.fixture
def fingerprint() -> HostFingerprint:
    return make_fingerprint()


@pytest.fixture
def fingerprint_factory():
    return make_fingerprint
