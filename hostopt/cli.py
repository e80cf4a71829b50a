from __future__ import annotations

import argparse
import os
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from hostopt.errors import DetectionError, MutationError, OptimizerError
from hostopt.host_probe import HostFingerprint, collect_fingerprint
from hostopt.installer import ToolSuiteOutcome, detect_installer, install_tool_suite
from hostopt.logging_utils import flush_logs, log_message
from hostopt.mutator import ConfigMutation, ConfigMutator
from hostopt.privileged import CommandRunner, PrivilegedFileStore
from hostopt.profile import derive_profile, derive_threshold_policy
from hostopt.report import render_report, write_report
from hostopt.settings import OptimizerSettings
from memory_guardian.emergency import EmergencyCleanup
from memory_guardian.guardian import MemoryGuardian
from memory_guardian.pressure import sample_memory, usage_label
from memory_guardian.process_names import set_process_name
from memory_guardian.reaper import FastReaper
from memory_guardian.supervisor import MemoryDefenseSupervisor

LOG_SOURCE = "cli"


def _is_root() -> bool:
    return os.geteuid() == 0


def _safe_input(prompt: str) -> str:
    try:
        return input(prompt)
    except EOFError:
        return ""


def _require_root(command: str) -> bool:
    if _is_root():
        return True
    print(f"[host-optimizer] '{command}' must run as root (try sudo).", file=sys.stderr)
    return False


def _settings(args: argparse.Namespace) -> OptimizerSettings:
    overrides: Dict[str, Any] = {}
    if getattr(args, "root", None):
        overrides["root"] = args.root
    if getattr(args, "skip", None):
        overrides["skip_steps"] = args.skip
    return OptimizerSettings.from_env(config_path=args.config, **overrides)


def _fingerprint(settings: OptimizerSettings, runner: CommandRunner) -> HostFingerprint:
    return collect_fingerprint(root=settings.root, runner=runner)


# ---------------------------------------------------------------------- commands
def cmd_profile(args: argparse.Namespace, runner: CommandRunner) -> int:
    settings = _settings(args)
    fingerprint = _fingerprint(settings, runner)
    profile = derive_profile(fingerprint)
    policy = derive_threshold_policy(fingerprint, settings)
    print(fingerprint.to_context_block())
    print()
    print(f"Profile: {profile.name.value}")
    for key, value in profile.as_dict().items():
        if key != "name":
            print(f"- {key}: {value}")
    print(
        f"Memory defense: earlyoom RAM<{policy.earlyoom_mem_percent}% swap<{policy.earlyoom_swap_percent}%, "
        f"guardian >{policy.guardian_high_percent:.0f}%/>{policy.guardian_critical_percent:.0f}%"
    )
    used = sample_memory().used_percent
    print(f"Memory in use: {used:.1f}% [{usage_label(used)}]")
    return 0


def cmd_run(args: argparse.Namespace, runner: CommandRunner) -> int:
    if not _require_root("run"):
        return 1
    settings = _settings(args)
    set_process_name("host-optimizer")
    fingerprint = _fingerprint(settings, runner)
    profile = derive_profile(fingerprint)
    policy = derive_threshold_policy(fingerprint, settings)
    print(fingerprint.to_context_block())
    print(f"\nSelected profile: {profile.name.value} (swap {profile.swap_size_mb}MB, swappiness {profile.swappiness})")
    if not args.yes:
        answer = _safe_input("Apply these changes to this host? [y/N] ").strip().lower()
        if answer not in {"y", "yes"}:
            print("Aborted; nothing was changed.")
            return 0

    store = PrivilegedFileStore(settings, runner)
    mutator = ConfigMutator(settings, store, hostname=fingerprint.hostname)
    installer = detect_installer(runner)
    tools: Optional[ToolSuiteOutcome] = None
    if settings.install_tools and not args.skip_tools:
        tools = install_tool_suite(installer, is_laptop=fingerprint.is_laptop)

    applied: List[ConfigMutation] = []
    failures: List[OptimizerError] = []
    try:
        applied.extend(mutator.apply(profile, fingerprint))
    except MutationError as exc:
        # failed steps that already touched their target stay restorable
        applied.extend(exc.applied + exc.touched)
        failures.extend(exc.failures or [exc])

    supervisor = MemoryDefenseSupervisor(mutator, policy, installer=installer)
    applied.extend(supervisor.configure(profile, fingerprint))

    manifest = mutator.record(applied, {"profile": profile.name.value, "hostname": fingerprint.hostname})
    text = render_report(
        fingerprint,
        profile,
        applied,
        tiers=supervisor.status()["tiers"],
        deferred=list(mutator.deferred) + list(supervisor.degradations),
        failures=failures,
        tools=tools,
        manifest=manifest,
    )
    report_path = write_report(settings.report_dir, text)
    print()
    print(text)
    if report_path:
        print(f"Report saved to {report_path}")
    if failures:
        print(
            f"[host-optimizer] {len(failures)} step(s) failed; backups are in {mutator.backups.host_dir}. "
            f"Undo the run with: host-optimizer restore --manifest {manifest}",
            file=sys.stderr,
        )
        for failure in failures:
            backup = getattr(failure, "backup_path", None)
            print(f"  - {failure}" + (f" (backup: {backup})" if backup else ""), file=sys.stderr)
        return 1
    if any(m.requires_reboot for m in applied):
        print("Some changes take effect after a reboot.")
    return 0


def cmd_restore(args: argparse.Namespace, runner: CommandRunner) -> int:
    if not _require_root("restore"):
        return 1
    settings = _settings(args)
    hostname = args.hostname or _fingerprint(settings, runner).hostname
    mutator = ConfigMutator(settings, PrivilegedFileStore(settings, runner), hostname=hostname)
    manifest = Path(args.manifest) if args.manifest else mutator.backups.latest_manifest()
    mutations = mutator.load_manifest(manifest) if manifest else []
    if not mutations:
        print("Nothing to restore: no applied mutations were recorded.")
        mutator.restore(None)
        return 0
    for mutation, outcome in mutator.restore_all(mutations):
        print(f"{mutation.name}: {outcome.value} ({mutation.target_path})")
    return 0


def cmd_emergency(args: argparse.Namespace, runner: CommandRunner) -> int:
    if not _require_root("emergency-cleanup"):
        return 1
    settings = _settings(args)
    cleanup = EmergencyCleanup(PrivilegedFileStore(settings, runner), kill_percent=settings.emergency_kill_percent)
    print(cleanup.run().render())
    return 0


def cmd_guardian(args: argparse.Namespace, runner: CommandRunner) -> int:
    if not _require_root("guardian"):
        return 1
    settings = _settings(args)
    store = PrivilegedFileStore(settings, runner)
    if not args.loop:
        cycle = MemoryGuardian.from_settings(settings, store).run_cycle()
        print(
            f"memory {cycle.event.used_percent:.1f}% tier={cycle.event.tier.name} "
            f"actions={','.join(cycle.actions) or 'none'}"
        )
        return 0
    set_process_name("host-optimizer-guardian")
    fingerprint = _fingerprint(settings, runner)
    policy = derive_threshold_policy(fingerprint, settings)
    supervisor = MemoryDefenseSupervisor(ConfigMutator(settings, store, hostname=fingerprint.hostname), policy)
    if settings.reaper_fallback and not store.has_command("earlyoom"):
        supervisor.reaper = FastReaper(policy)
    if not supervisor.start():
        return 1
    waiter = threading.Event()
    try:
        while not waiter.wait(1.0):
            pass
    except KeyboardInterrupt:
        log_message(LOG_SOURCE, "interrupted; stopping memory defense threads")
    finally:
        supervisor.stop()
    return 0


# ---------------------------------------------------------------------- entry point
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="host-optimizer", description="Adaptive Linux host optimizer")
    parser.add_argument("--config", type=Path, default=None, help="YAML settings file (default: config/host_optimizer.yaml)")
    parser.add_argument("--root", type=Path, default=None, help="Operate on a different filesystem root")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Fingerprint, derive a profile and apply it")
    run.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    run.add_argument("--skip-tools", action="store_true", help="Do not install the monitoring tool suite")
    run.add_argument("--skip", action="append", default=[], metavar="STEP", help="Skip a named mutation step")
    run.set_defaults(handler=cmd_run)

    profile = sub.add_parser("profile", help="Show the fingerprint and the profile that would apply")
    profile.set_defaults(handler=cmd_profile)

    emergency = sub.add_parser("emergency-cleanup", help="Reclaim memory now")
    emergency.set_defaults(handler=cmd_emergency)

    guardian = sub.add_parser("guardian", help="Run the periodic memory guardian")
    mode = guardian.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="Single cycle (default)")
    mode.add_argument("--loop", action="store_true", help="Run the in-process defense tiers until interrupted")
    guardian.set_defaults(handler=cmd_guardian)

    restore = sub.add_parser("restore", help="Undo a recorded run")
    restore.add_argument("--manifest", default=None, help="Manifest to restore (default: latest)")
    restore.add_argument("--hostname", default=None, help="Backup directory name (default: this host)")
    restore.set_defaults(handler=cmd_restore)
    return parser


def main(argv: Optional[List[str]] = None, *, runner: Optional[CommandRunner] = None) -> int:
    args = build_parser().parse_args(argv)
    runner = runner or CommandRunner()
    try:
        return args.handler(args, runner)
    except DetectionError as exc:
        print(f"[host-optimizer] cannot fingerprint this host: {exc}", file=sys.stderr)
        return 1
    except MutationError as exc:
        print(f"[host-optimizer] {exc}", file=sys.stderr)
        return 1
    finally:
        flush_logs()


if __name__ == "__main__":
    sys.exit(main())
