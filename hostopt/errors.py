from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence, Union

PathLike = Union[str, Path]


class OptimizerError(Exception):
    """Base class for every failure raised by the optimizer core."""

    def __init__(self, message: str, *, target: Optional[PathLike] = None, cause: Optional[BaseException] = None) -> None:
        self.target = str(target) if target is not None else None
        self.cause = cause
        detail = message
        if self.target:
            detail = f"{detail} [target={self.target}]"
        if cause is not None:
            detail = f"{detail}: {cause}"
        super().__init__(detail)


class DetectionError(OptimizerError):
    """No readable memory-accounting source exists; nothing downstream can run."""


class PackageUnavailable(OptimizerError):
    """A package could not be installed; callers skip the tool and continue."""

    def __init__(self, package: str, *, manager: str = "unknown", cause: Optional[BaseException] = None) -> None:
        self.package = package
        self.manager = manager
        super().__init__(f"package '{package}' unavailable via {manager}", cause=cause)


class MutationError(OptimizerError):
    """
    A configuration mutation failed. When raised by ``ConfigMutator.apply`` it
    carries the mutations that did complete and the per-step failures.
    ``touched`` holds restorable records of steps that failed after their
    backup was taken; ``backup_path`` is that step's backup, if any.
    """

    def __init__(
        self,
        message: str,
        *,
        target: Optional[PathLike] = None,
        cause: Optional[BaseException] = None,
        applied: Sequence[object] = (),
        failures: Sequence["MutationError"] = (),
        touched: Sequence[object] = (),
        backup_path: Optional[str] = None,
    ) -> None:
        self.applied = list(applied)
        self.failures = list(failures)
        self.touched = list(touched)
        self.backup_path = backup_path
        super().__init__(message, target=target, cause=cause)


class BackupError(MutationError):
    """The pre-write backup could not be made; the target was left untouched."""


class VerificationError(MutationError):
    """The bytes read back from the target differ from what was written."""


class ActivationDeferred(OptimizerError):
    """The change was written but only takes effect after a reboot."""


class SupervisorDegraded(OptimizerError):
    """A memory defense tier has no backing daemon; the other tiers continue."""

    def __init__(self, tier: str, reason: str, *, cause: Optional[BaseException] = None) -> None:
        self.tier = tier
        self.reason = reason
        super().__init__(f"{tier} degraded: {reason}", cause=cause)
