from __future__ import annotations

from typing import Dict, List

from hostopt.mutator import MutationStep, StepResult
from hostopt.privileged import PrivilegedFileStore
from hostopt.settings import OptimizerSettings
from hostopt.sysctl_table import OOM_PARAMETERS, proc_sys_path
from hostopt.units import GENERATED_HEADER

OOMD_UNIT = "systemd-oomd.service"
DROPIN_NAME = "host-optimizer.conf"

PRESSURE_DURATION = "20sec"
# slice -> memory pressure limit at which systemd-oomd kills the cgroup
SLICE_LIMITS: Dict[str, str] = {"user.slice": "80%", "system.slice": "90%"}


def render_oomd_conf() -> str:
    return f"{GENERATED_HEADER}\n[OOM]\nDefaultMemoryPressureDurationSec={PRESSURE_DURATION}\n"


def render_slice_dropin(limit: str) -> str:
    return (
        f"{GENERATED_HEADER}\n[Slice]\n"
        "ManagedOOMMemoryPressure=kill\n"
        f"ManagedOOMMemoryPressureLimit={limit}\n"
    )


def oomd_available(store: PrivilegedFileStore) -> bool:
    return store.unit_known(OOMD_UNIT)


def oomd_steps(settings: OptimizerSettings) -> List[MutationStep]:
    """Mutations that hand memory-pressure kills to systemd-oomd."""
    reload_oomd = (("systemctl", "daemon-reload"), ("systemctl", "restart", OOMD_UNIT))
    steps = [
        MutationStep(
            name="oomd-config",
            target=f"{settings.oomd_dropin_dir.rstrip('/')}/oomd.conf.d/{DROPIN_NAME}",
            render=lambda _current: StepResult(render_oomd_conf()),
            reactivate=reload_oomd,
        )
    ]
    for slice_name, limit in SLICE_LIMITS.items():
        steps.append(
            MutationStep(
                name=f"oomd-{slice_name.split('.')[0]}-slice",
                target=f"{settings.unit_dir.rstrip('/')}/{slice_name}.d/{DROPIN_NAME}",
                render=lambda _current, limit=limit: StepResult(render_slice_dropin(limit), {"limit": limit}),
                reactivate=reload_oomd,
            )
        )
    return steps


def live_oom_mismatches(store: PrivilegedFileStore) -> Dict[str, str]:
    """OOM sysctl keys whose live value differs from the managed value (unreadable keys are skipped)."""
    stale: Dict[str, str] = {}
    for key, wanted in OOM_PARAMETERS.items():
        live = store.read_kernel_value(proc_sys_path(key))
        if live is not None and live != wanted:
            stale[key] = live
    return stale
