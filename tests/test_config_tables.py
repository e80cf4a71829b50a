from __future__ import annotations

from hostopt.fstab import MARK_BEGIN as FSTAB_BEGIN
from hostopt.fstab import FstabTable, desired_entries
from hostopt.profile import profile_for_memory
from hostopt.settings import OptimizerSettings
from hostopt.sysctl_table import (
    GROUP_ORDER,
    MARK_BEGIN,
    MARK_END,
    SUPERSEDED_PREFIX,
    SysctlDocument,
    desired_parameters,
)

EXISTING_SYSCTL = "# distro defaults\nkernel.printk = 3 4 1 3\nvm.swappiness = 10\n\n\n"


def _render(text, profile):
    return SysctlDocument.parse(text).render(desired_parameters(profile), title=f"profile {profile.name.value}")


def test_sysctl_render_is_idempotent():
    profile = profile_for_memory(4096)
    once = _render(EXISTING_SYSCTL, profile)
    twice = _render(once, profile)
    assert once == twice
    assert once.count(MARK_BEGIN) == 1
    assert once.count(MARK_END) == 1


def test_sysctl_second_pass_diff_is_noop():
    profile = profile_for_memory(4096)
    once = _render(EXISTING_SYSCTL, profile)
    diff = SysctlDocument.parse(once).diff(desired_parameters(profile))
    assert diff.is_noop
    assert diff.unchanged > 0


def test_foreign_assignment_of_managed_key_is_superseded():
    text = _render(EXISTING_SYSCTL, profile_for_memory(4096))
    assert "kernel.printk = 3 4 1 3" in text
    assert f"{SUPERSEDED_PREFIX}vm.swappiness = 10" in text
    assert "vm.swappiness=60" in text


def test_profile_change_replaces_block_values():
    first = _render(EXISTING_SYSCTL, profile_for_memory(4096))
    diff = SysctlDocument.parse(first).diff(desired_parameters(profile_for_memory(32768)))
    assert diff.changed["vm.swappiness"] == ("60", "30")
    second = _render(first, profile_for_memory(32768))
    assert "vm.swappiness=60" not in second
    assert second.count(MARK_BEGIN) == 1


def test_sysctl_groups_render_in_order():
    text = _render("", profile_for_memory(4096))
    headers = [line for line in text.splitlines() if line.startswith("# =====")]
    assert headers == [f"# ===== {group.upper()} =====" for group in GROUP_ORDER]
    assert "vm.panic_on_oom=0" in text
    assert "vm.overcommit_memory=1" in text


def test_fstab_entries_for_small_host(fingerprint_factory):
    settings = OptimizerSettings()
    entries = desired_entries(profile_for_memory(4096), fingerprint_factory(total_memory_mb=4096), settings)
    rendered = [entry.render() for entry in entries]
    assert rendered[0] == "/swapfile none swap sw,pri=10 0 0"
    assert any(line.startswith("tmpfs /tmp tmpfs") and "size=1G" in line for line in rendered)
    assert any(line.startswith("tmpfs /var/log tmpfs") and "size=256M" in line for line in rendered)


def test_fstab_skips_var_log_on_larger_hosts(fingerprint_factory):
    entries = desired_entries(
        profile_for_memory(8192), fingerprint_factory(total_memory_mb=8192), OptimizerSettings()
    )
    assert [entry.mountpoint for entry in entries] == ["none", "/tmp"]


def test_fstab_render_is_idempotent_and_supersedes_conflicts(fingerprint_factory):
    existing = "UUID=abc / ext4 defaults 0 1\ntmpfs /tmp tmpfs defaults 0 0\n"
    entries = desired_entries(profile_for_memory(4096), fingerprint_factory(), OptimizerSettings())
    once = FstabTable.parse(existing).render(entries)
    twice = FstabTable.parse(once).render(entries)
    assert once == twice
    assert once.count(FSTAB_BEGIN) == 1
    assert "UUID=abc / ext4 defaults 0 1" in once
    assert f"{SUPERSEDED_PREFIX}tmpfs /tmp tmpfs defaults 0 0" in once


def test_new_mounts_only_reports_changed_tmpfs(fingerprint_factory):
    entries = desired_entries(profile_for_memory(4096), fingerprint_factory(), OptimizerSettings())
    fresh = FstabTable.parse("")
    assert {e.mountpoint for e in fresh.new_mounts(entries)} == {"/tmp", "/var/log"}
    applied = FstabTable.parse(fresh.render(entries))
    assert applied.new_mounts(entries) == []
