from __future__ import annotations

import pytest

from hostopt.errors import PackageUnavailable
from hostopt.installer import (
    ESSENTIAL_TOOLS,
    LAPTOP_TOOLS,
    AptInstaller,
    DnfInstaller,
    NullInstaller,
    detect_installer,
    install_tool_suite,
)


def test_first_manager_on_path_wins(runner):
    runner.missing.add("apt-get")
    assert isinstance(detect_installer(runner), DnfInstaller)


def test_no_manager_yields_null_installer(runner):
    runner.missing.update({"apt-get", "dnf", "pacman", "zypper"})
    installer = detect_installer(runner)
    assert isinstance(installer, NullInstaller)
    with pytest.raises(PackageUnavailable):
        installer.ensure("earlyoom")


def test_apt_refreshes_once_and_runs_noninteractive(runner):
    runner.missing.update({"htop", "iotop"})
    installer = AptInstaller(runner)
    installer.ensure("htop", command="htop")
    installer.ensure("iotop", command="iotop")
    assert runner.commands("apt-get update") == [("apt-get", "update", "-qq")]
    assert ("apt-get", "install", "-y", "iotop") in runner.calls


def test_present_command_skips_install(runner):
    result = AptInstaller(runner).ensure("htop", command="htop")
    assert result.ok
    assert runner.calls == []


def test_failures_become_warnings_in_tool_suite(runner):
    runner.missing.update(ESSENTIAL_TOOLS + LAPTOP_TOOLS)
    runner.missing.discard("apt-get")
    runner.failing.add("apt-get install -y nmon")
    outcome = install_tool_suite(AptInstaller(runner), is_laptop=True)
    assert outcome.unavailable == ["nmon"]
    assert "tlp" in outcome.installed
    assert len(outcome.installed) == len(ESSENTIAL_TOOLS) + len(LAPTOP_TOOLS) - 1
