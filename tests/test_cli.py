from __future__ import annotations

import pytest

from hostopt import cli
from hostopt.errors import DetectionError


@pytest.fixture
def host(tmp_path, monkeypatch, fingerprint):
    root = tmp_path / "root"
    (root / "etc").mkdir(parents=True)
    (root / "etc/sysctl.conf").write_text("vm.swappiness = 10\n", encoding="utf-8")
    (root / "etc/fstab").write_text("UUID=abc / ext4 defaults 0 1\n", encoding="utf-8")
    monkeypatch.setenv("HOSTOPT_ROOT", str(root))
    monkeypatch.setenv("HOSTOPT_BACKUP_ROOT", str(tmp_path / "backups"))
    monkeypatch.setenv("HOSTOPT_REPORT_DIR", str(tmp_path / "reports"))
    monkeypatch.setenv("HOSTOPT_LOCK_DIR", str(tmp_path / "locks"))
    monkeypatch.setenv("HOSTOPT_SKIP_STEPS", "swapfile")
    monkeypatch.setattr(cli, "_is_root", lambda: True)
    monkeypatch.setattr(cli, "collect_fingerprint", lambda **_kwargs: fingerprint)
    return root


def test_non_root_is_refused(monkeypatch, runner, capsys):
    monkeypatch.setattr(cli, "_is_root", lambda: False)
    assert cli.main(["run", "--yes"], runner=runner) == 1
    assert "must run as root" in capsys.readouterr().err
    assert runner.calls == []


def test_run_then_restore_round_trip(host, tmp_path, runner, capsys):
    assert cli.main(["run", "--yes", "--skip-tools"], runner=runner) == 0
    out = capsys.readouterr().out
    assert "Selected profile: LOW" in out
    assert "vm.swappiness=60" in (host / "etc/sysctl.conf").read_text(encoding="utf-8")
    assert list((tmp_path / "reports").glob("host-optimizer-report-*.txt"))
    assert list((tmp_path / "backups" / "testhost").glob("manifest.*.json"))

    assert cli.main(["restore", "--hostname", "testhost"], runner=runner) == 0
    assert (host / "etc/sysctl.conf").read_text(encoding="utf-8") == "vm.swappiness = 10\n"
    assert not (host / "etc/systemd/system/host-optimizer-cpu.service").exists()


def test_declined_confirmation_changes_nothing(host, runner, monkeypatch):
    monkeypatch.setattr("builtins.input", lambda _prompt: "n")
    assert cli.main(["run"], runner=runner) == 0
    assert (host / "etc/sysctl.conf").read_text(encoding="utf-8") == "vm.swappiness = 10\n"
    assert runner.calls == []


def test_restore_with_nothing_recorded(host, runner, capsys):
    assert cli.main(["restore", "--hostname", "testhost"], runner=runner) == 0
    assert "Nothing to restore" in capsys.readouterr().out


def test_detection_error_exits_one(host, runner, monkeypatch, capsys):
    def fail(**_kwargs):
        raise DetectionError("no readable memory-accounting source", target="/proc/meminfo")

    monkeypatch.setattr(cli, "collect_fingerprint", fail)
    assert cli.main(["profile"], runner=runner) == 1
    assert "/proc/meminfo" in capsys.readouterr().err


def test_profile_is_read_only(host, runner, capsys):
    assert cli.main(["profile"], runner=runner) == 0
    out = capsys.readouterr().out
    assert "Profile: LOW" in out
    assert "Memory in use:" in out
    assert not (host / "etc/systemd").exists()


def test_guardian_once(host, runner, capsys):
    assert cli.main(["guardian", "--once"], runner=runner) == 0
    assert "tier=" in capsys.readouterr().out
