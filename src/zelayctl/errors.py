"""Error taxonomy shared by the lifecycle manager and the CLI."""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class LifecycleError(RuntimeError):
    """Base class for lifecycle failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER

    def __init__(self, message: str, *, hints: Sequence[str] | None = None) -> None:
        """Store *message* plus optional operator *hints*."""
        super().__init__(message)
        self.hints: tuple[str, ...] = tuple(hints or ())


class InsufficientPrivilegeError(LifecycleError, PermissionError):
    """Raised when the command is not running with root privileges."""

    exit_code = ExitCode.ENVIRONMENT


class UnsupportedPlatformError(LifecycleError):
    """Raised when the OS or CPU architecture is not supported."""

    exit_code = ExitCode.ENVIRONMENT


class SettingsError(LifecycleError, ValueError):
    """Raised when install settings fail validation."""

    exit_code = ExitCode.VALIDATION


class FetchError(LifecycleError):
    """Raised when an artifact transfer fails or yields an empty payload."""

    exit_code = ExitCode.PROVIDER


class ServiceStartError(LifecycleError):
    """Raised when the service is not active after the start grace period."""

    exit_code = ExitCode.PROVIDER


class NotInstalledError(LifecycleError):
    """Raised when an operation requires an existing installation."""

    exit_code = ExitCode.VALIDATION


class BackupError(LifecycleError):
    """Raised when the pre-update backup cannot be created or verified."""

    exit_code = ExitCode.ENVIRONMENT


class InvalidTransitionError(LifecycleError):
    """Raised when a lifecycle state change is not permitted."""

    exit_code = ExitCode.VALIDATION


class InstallCancelled(LifecycleError):
    """Raised when the operator declines to continue an install."""

    exit_code = ExitCode.OK


class UpdateFailedRolledBack(LifecycleError):
    """The update failed but the previous artifact is running again."""

    exit_code = ExitCode.ROLLED_BACK


class UpdateFailedUnrecovered(LifecycleError):
    """The update failed and restoring the backup did not bring the service back."""

    exit_code = ExitCode.UNRECOVERED

    def __init__(
        self,
        message: str,
        *,
        backup_path: str,
        active_path: str,
        unit: str,
        hints: Sequence[str] | None = None,
    ) -> None:
        """Capture the paths the operator needs for a manual restore."""
        self.backup_path = backup_path
        self.active_path = active_path
        self.unit = unit
        recovery = (
            f"cp {backup_path} {active_path}",
            f"chmod +x {active_path}",
            f"systemctl restart {unit}",
        )
        super().__init__(message, hints=[*recovery, *(hints or ())])

    @property
    def recovery_commands(self) -> tuple[str, ...]:
        """Return the shell commands that restore the backup by hand."""
        return self.hints[:3]


__all__ = [
    "BackupError",
    "FetchError",
    "InstallCancelled",
    "InsufficientPrivilegeError",
    "InvalidTransitionError",
    "LifecycleError",
    "NotInstalledError",
    "ServiceStartError",
    "SettingsError",
    "UnsupportedPlatformError",
    "UpdateFailedRolledBack",
    "UpdateFailedUnrecovered",
]
