from __future__ import annotations

import pytest

from hostopt import host_probe
from hostopt.errors import DetectionError
from hostopt.host_probe import (
    GpuVendor,
    StorageClass,
    collect_fingerprint,
    detect_gpu,
    detect_laptop,
    detect_memory,
    detect_network_interface,
    detect_storage,
)


def _write(root, host_path, text):
    path = root / host_path.lstrip("/")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def _psutil_unavailable(monkeypatch):
    def boom():
        raise OSError("no /proc")

    monkeypatch.setattr(host_probe.psutil, "virtual_memory", boom)


def test_memory_falls_back_to_meminfo(tmp_path, monkeypatch):
    _psutil_unavailable(monkeypatch)
    _write(tmp_path, "/proc/meminfo", "MemTotal:  4194304 kB\nMemFree: 100 kB\nMemAvailable:  2097152 kB\n")
    assert detect_memory(tmp_path) == (4096, 2048)


def test_missing_memory_source_is_fatal(tmp_path, monkeypatch):
    _psutil_unavailable(monkeypatch)
    with pytest.raises(DetectionError) as excinfo:
        detect_memory(tmp_path)
    assert "meminfo" in str(excinfo.value)


def test_collect_fingerprint_propagates_detection_error(tmp_path, monkeypatch, runner):
    _psutil_unavailable(monkeypatch)
    with pytest.raises(DetectionError):
        collect_fingerprint(root=tmp_path, runner=runner)


def test_nvme_device_wins(tmp_path):
    (tmp_path / "sys/block/nvme0n1/queue").mkdir(parents=True)
    _write(tmp_path, "/sys/block/sda/queue/rotational", "1\n")
    assert detect_storage(tmp_path) == (StorageClass.NVME, "nvme0n1")


@pytest.mark.parametrize("flag, expected", [("0", StorageClass.SSD), ("1", StorageClass.HDD)])
def test_rotational_flag_decides_ssd_or_hdd(tmp_path, flag, expected):
    (tmp_path / "sys/block/loop0").mkdir(parents=True)
    _write(tmp_path, "/sys/block/sda/queue/rotational", f"{flag}\n")
    assert detect_storage(tmp_path) == (expected, "sda")


def test_no_block_devices_defaults_to_hdd(tmp_path):
    assert detect_storage(tmp_path) == (StorageClass.HDD, "unknown")


def test_laptop_detected_from_battery(tmp_path):
    assert detect_laptop(tmp_path) is False
    (tmp_path / "sys/class/power_supply/BAT0").mkdir(parents=True)
    assert detect_laptop(tmp_path) is True


def test_default_route_interface(tmp_path):
    _write(
        tmp_path,
        "/proc/net/route",
        "Iface\tDestination\tGateway\n"
        "docker0\t0011A8C0\t00000000\n"
        "wlp2s0\t00000000\t0100A8C0\n",
    )
    assert detect_network_interface(tmp_path) == "wlp2s0"


def test_missing_route_table_yields_empty_interface(tmp_path):
    assert detect_network_interface(tmp_path) == ""


def test_gpu_vendor_from_lspci(runner):
    runner.stdout["lspci"] = (
        "00:02.0 VGA compatible controller: Intel Corporation UHD Graphics 620\n"
        "01:00.0 3D controller: NVIDIA Corporation GP108M\n"
    )
    assert detect_gpu(runner) is GpuVendor.NVIDIA


def test_gpu_unknown_without_lspci(runner):
    runner.missing.add("lspci")
    assert detect_gpu(runner) is GpuVendor.UNKNOWN


def test_fingerprint_in_sandbox_root(tmp_path, runner, monkeypatch):
    monkeypatch.setattr(host_probe, "detect_desktop", lambda: host_probe.DesktopEnvironment.HEADLESS)
    _write(tmp_path, "/sys/block/sda/queue/rotational", "0\n")
    _write(tmp_path, "/proc/net/route", "Iface\tDestination\neth0\t00000000\n")
    _write(tmp_path, "/etc/os-release", 'NAME="Debian GNU/Linux"\nVERSION_ID="12"\n')
    fp = collect_fingerprint(root=tmp_path, runner=runner)
    assert fp.total_memory_mb > 0
    assert fp.storage_class is StorageClass.SSD
    assert fp.network_interface == "eth0"
    assert fp.distro == "Debian GNU/Linux 12"
    assert fp.as_dict()["storage_class"] == "SSD"
