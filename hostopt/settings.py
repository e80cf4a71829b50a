from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, FrozenSet, Optional

import yaml

from hostopt.logging_utils import log_message

DEFAULT_CONFIG_PATH = Path("config/host_optimizer.yaml")

# Swap priorities: compressed swap always ranks above the disk swap file.
ZRAM_PRIORITY = 100
DISK_SWAP_PRIORITY = 10


@dataclass(frozen=True)
class OptimizerSettings:
    # Filesystem layout. Every absolute target below is resolved under ``root``.
    root: Path = Path("/")
    backup_root: Path = Path("/var/backups/host-optimizer")
    report_dir: Path = Path("/var/log")
    guardian_log_dir: Path = Path("/var/log/host-optimizer")
    lock_dir: Path = Path("/run/host-optimizer")
    sysctl_path: str = "/etc/sysctl.conf"
    fstab_path: str = "/etc/fstab"
    unit_dir: str = "/etc/systemd/system"
    udev_rule_path: str = "/etc/udev/rules.d/60-ioschedulers.rules"
    modules_load_path: str = "/etc/modules-load.d/host-optimizer.conf"
    earlyoom_defaults_path: str = "/etc/default/earlyoom"
    oomd_dropin_dir: str = "/etc/systemd"
    swapfile_path: str = "/swapfile"

    # Threshold constants. The 8 GB cutoff and the two threshold pairs are not
    # authoritative; override them through HOSTOPT_* or the YAML file.
    low_ram_cutoff_mb: int = 8192
    earlyoom_mem_low_ram: int = 10
    earlyoom_swap_low_ram: int = 20
    earlyoom_mem_default: int = 5
    earlyoom_swap_default: int = 10
    earlyoom_report_interval: int = 60
    guardian_high_percent: float = 85.0
    guardian_critical_percent: float = 95.0
    emergency_kill_percent: float = 90.0

    # Scheduling
    guardian_interval_seconds: float = 120.0
    reaper_interval_seconds: float = 1.0

    # Behaviour toggles
    skip_steps: FrozenSet[str] = frozenset()
    reaper_fallback: bool = False
    install_tools: bool = True

    @classmethod
    def from_env(cls, *, config_path: Optional[Path] = None, **overrides: Any) -> "OptimizerSettings":
        """
        Build settings from defaults, then ``config/host_optimizer.yaml`` (if
        present), then ``HOSTOPT_<FIELD>`` environment variables, then explicit
        keyword overrides.
        """
        values: Dict[str, Any] = {}
        values.update(load_yaml_overrides(config_path))
        for field_def in fields(cls):
            raw = os.getenv(f"HOSTOPT_{field_def.name.upper()}")
            if raw is None:
                continue
            values[field_def.name] = raw
        values.update(overrides)
        return cls().with_values(values)

    def with_values(self, values: Dict[str, Any]) -> "OptimizerSettings":
        defaults = {f.name: getattr(self, f.name) for f in fields(self)}
        coerced: Dict[str, Any] = {}
        for key, raw in values.items():
            if key not in defaults:
                log_message("settings", f"ignoring unknown setting '{key}'", severity="warning")
                continue
            try:
                coerced[key] = _coerce(defaults[key], raw)
            except (TypeError, ValueError) as exc:
                log_message("settings", f"invalid value for {key}: {raw!r} ({exc})", severity="warning")
        return replace(self, **coerced)

    def resolve(self, target: str | Path) -> Path:
        """Map an absolute host path onto the configured root."""
        path = Path(target)
        if path.is_absolute():
            return self.root / path.relative_to("/")
        return self.root / path

    def unit_path(self, unit_name: str) -> str:
        return f"{self.unit_dir.rstrip('/')}/{unit_name}"


def _coerce(default: Any, raw: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, Path):
        return Path(str(raw)).expanduser()
    if isinstance(default, frozenset):
        if isinstance(raw, (list, tuple, set, frozenset)):
            return frozenset(str(item).strip() for item in raw if str(item).strip())
        return frozenset(part.strip() for part in str(raw).split(",") if part.strip())
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return str(raw)


def load_yaml_overrides(path: Optional[Path] = None) -> Dict[str, Any]:
    path = path or Path(os.getenv("HOSTOPT_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        log_message("settings", f"unable to read {path}: {exc}", severity="warning")
        return {}
    if not isinstance(data, dict):
        log_message("settings", f"{path} does not hold a mapping; ignoring", severity="warning")
        return {}
    return data
