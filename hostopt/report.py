from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from hostopt.errors import OptimizerError
from hostopt.host_probe import HostFingerprint
from hostopt.installer import ToolSuiteOutcome
from hostopt.logging_utils import log_message
from hostopt.mutator import ConfigMutation
from hostopt.profile import OptimizationProfile

LOG_SOURCE = "report"


def render_report(
    fingerprint: HostFingerprint,
    profile: OptimizationProfile,
    mutations: Sequence[ConfigMutation],
    *,
    tiers: Optional[Dict[str, Dict[str, str]]] = None,
    deferred: Iterable[OptimizerError] = (),
    failures: Iterable[OptimizerError] = (),
    tools: Optional[ToolSuiteOutcome] = None,
    manifest: Optional[Path] = None,
    generated_at: Optional[datetime] = None,
) -> str:
    stamp = (generated_at or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
    lines: List[str] = [
        "host-optimizer report",
        f"Generated: {stamp}",
        "",
        fingerprint.to_context_block(),
        "",
        f"Profile: {profile.name.value}",
    ]
    for key, value in profile.as_dict().items():
        if key != "name":
            lines.append(f"- {key}: {value}")
    lines.extend(["", "Mutations:"])
    if not mutations:
        lines.append("- none")
    for mutation in mutations:
        flag = " (reboot required)" if mutation.requires_reboot else ""
        if mutation.failed:
            flag += " (FAILED; restorable)"
        backup = f" backup={mutation.backup_path}" if mutation.backup_path else ""
        lines.append(f"- {mutation.name}: {mutation.target_path}{backup}{flag}")
    failures = list(failures)
    if failures:
        lines.extend(["", "Failures:"])
        lines.extend(f"- {failure}" for failure in failures)
    if tiers:
        lines.extend(["", "Memory defense:"])
        for name, status in tiers.items():
            lines.append(f"- {name}: {status.get('state')} {status.get('detail', '')}".rstrip())
    deferred = list(deferred)
    if deferred:
        lines.extend(["", "Deferred until reboot:"])
        lines.extend(f"- {notice}" for notice in deferred)
    if tools is not None:
        lines.extend(["", f"Tools installed: {', '.join(tools.installed) or 'none'}"])
        if tools.unavailable:
            lines.append(f"Tools unavailable: {', '.join(tools.unavailable)}")
    if manifest is not None:
        lines.extend(["", f"Undo with: host-optimizer restore --manifest {manifest}"])
    return "\n".join(lines) + "\n"


def write_report(report_dir: Path, text: str) -> Optional[Path]:
    path = Path(report_dir) / f"host-optimizer-report-{datetime.now().strftime('%Y%m%d_%H%M%S')}.txt"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
    except OSError as exc:
        log_message(LOG_SOURCE, f"unable to write report: {exc}", severity="warning")
        return None
    log_message(LOG_SOURCE, f"report written to {path}")
    return path
