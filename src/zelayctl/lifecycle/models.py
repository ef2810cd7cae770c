"""Lifecycle data model: states, installation records and unit descriptors."""
from __future__ import annotations

import shlex
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import InvalidTransitionError


def utc_now() -> str:
    """Return the current UTC time in ISO-8601 form."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class InstallationState(str, Enum):
    """Persisted lifecycle state of a managed service."""

    ABSENT = "absent"
    INSTALLING = "installing"
    INSTALLED = "installed"
    UPDATING = "updating"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"
    UNINSTALLING = "uninstalling"

    @property
    def is_intermediate(self) -> bool:
        """Return ``True`` for states that only exist while a command runs."""
        return self in _INTERMEDIATE

    def can_transition_to(self, target: InstallationState) -> bool:
        """Return ``True`` when moving to *target* is allowed."""
        return target in _TRANSITIONS.get(self, frozenset())


_TRANSITIONS: dict[InstallationState, frozenset[InstallationState]] = {
    InstallationState.ABSENT: frozenset({InstallationState.INSTALLING}),
    InstallationState.INSTALLING: frozenset(
        {InstallationState.INSTALLED, InstallationState.FAILED}
    ),
    InstallationState.INSTALLED: frozenset(
        {
            InstallationState.UPDATING,
            InstallationState.INSTALLING,
            InstallationState.UNINSTALLING,
        }
    ),
    InstallationState.UPDATING: frozenset(
        {
            InstallationState.INSTALLED,
            InstallationState.ROLLED_BACK,
            InstallationState.FAILED,
        }
    ),
    InstallationState.ROLLED_BACK: frozenset({InstallationState.INSTALLED}),
    InstallationState.FAILED: frozenset(
        {InstallationState.INSTALLING, InstallationState.UNINSTALLING}
    ),
    InstallationState.UNINSTALLING: frozenset(
        {InstallationState.ABSENT, InstallationState.FAILED}
    ),
}

_INTERMEDIATE = frozenset(
    {
        InstallationState.INSTALLING,
        InstallationState.UPDATING,
        InstallationState.ROLLED_BACK,
        InstallationState.UNINSTALLING,
    }
)


def transition(current: InstallationState, target: InstallationState) -> InstallationState:
    """Validate ``current -> target`` and return *target*."""
    if not current.can_transition_to(target):
        raise InvalidTransitionError(
            f"Cannot move installation from '{current.value}' to '{target.value}'."
        )
    return target


def escape_unit_value(value: str) -> str:
    """Escape systemd specifiers and variable references in *value*."""
    return value.replace("%", "%%").replace("$", "$$")


def settle_stale(state: InstallationState) -> InstallationState:
    """Map a state left behind by an interrupted run to ``failed``."""
    return InstallationState.FAILED if state.is_intermediate else state


@dataclass(slots=True)
class Installation:
    """Registry record for one managed service."""

    service: str
    profile: str
    install_dir: Path
    unit_name: str
    unit_path: Path
    active_path: Path
    backup_path: Path
    origin_url: str
    state: InstallationState = InstallationState.ABSENT
    config_path: Path | None = None
    data_dir: Path | None = None
    version_marker: str | None = None
    version_string: str | None = None
    backup_checksum: str | None = None
    installed_at: str | None = None
    updated_at: str | None = None
    last_changed: str | None = None
    settings: dict[str, Any] = field(default_factory=dict)
    last_outcome: str | None = None

    def move_to(self, target: InstallationState) -> None:
        """Apply a validated state change and stamp ``last_changed``."""
        self.state = transition(self.state, target)
        self.last_changed = utc_now()

    def to_record(self) -> dict[str, object]:
        """Return the YAML-ready registry entry."""
        return {
            "service": self.service,
            "profile": self.profile,
            "state": self.state.value,
            "install_dir": str(self.install_dir),
            "config_path": str(self.config_path) if self.config_path else None,
            "data_dir": str(self.data_dir) if self.data_dir else None,
            "unit_name": self.unit_name,
            "unit_path": str(self.unit_path),
            "active_path": str(self.active_path),
            "version_marker": self.version_marker,
            "version_string": self.version_string,
            "backup_path": str(self.backup_path),
            "backup_checksum": self.backup_checksum,
            "origin_url": self.origin_url,
            "installed_at": self.installed_at,
            "updated_at": self.updated_at,
            "last_changed": self.last_changed,
            "settings": dict(self.settings),
            "last_outcome": self.last_outcome,
        }

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Installation:
        """Rebuild an installation from a registry entry."""
        try:
            state = InstallationState(str(record.get("state", InstallationState.FAILED.value)))
        except ValueError:
            state = InstallationState.FAILED

        def _optional_path(key: str) -> Path | None:
            value = record.get(key)
            return Path(str(value)) if value else None

        settings = record.get("settings")
        return cls(
            service=str(record["service"]),
            profile=str(record.get("profile", "")),
            install_dir=Path(str(record.get("install_dir", ""))),
            unit_name=str(record.get("unit_name", "")),
            unit_path=Path(str(record.get("unit_path", ""))),
            active_path=Path(str(record.get("active_path", ""))),
            backup_path=Path(str(record.get("backup_path", ""))),
            origin_url=str(record.get("origin_url", "")),
            state=state,
            config_path=_optional_path("config_path"),
            data_dir=_optional_path("data_dir"),
            version_marker=record.get("version_marker"),
            version_string=record.get("version_string"),
            backup_checksum=record.get("backup_checksum"),
            installed_at=record.get("installed_at"),
            updated_at=record.get("updated_at"),
            last_changed=record.get("last_changed"),
            settings=dict(settings) if isinstance(settings, Mapping) else {},
            last_outcome=record.get("last_outcome"),
        )


@dataclass(frozen=True)
class UnitDescriptor:
    """Everything needed to render a systemd service unit."""

    name: str
    description: str
    exec_start: Sequence[str]
    working_directory: Path
    restart: str
    restart_sec: int = 5
    restart_prevent_exit_status: int | None = None
    exec_reload: str | None = None
    after: Sequence[str] = ("network.target",)
    wants: Sequence[str] = ()
    user: str = "root"
    group: str | None = None
    limit_nofile: int = 1048576
    limit_nproc: int = 1048576
    syslog_identifier: str | None = None
    unit_mode: int = 0o644

    def to_context(self) -> dict[str, object]:
        """Return the template context for ``systemd/service.j2``."""
        return {
            "description": self.description,
            "exec_start": " ".join(
                shlex.quote(escape_unit_value(arg)) for arg in self.exec_start
            ),
            "working_directory": str(self.working_directory),
            "restart": self.restart,
            "restart_sec": self.restart_sec,
            "restart_prevent_exit_status": self.restart_prevent_exit_status,
            "exec_reload": self.exec_reload,
            "after": list(self.after),
            "wants": list(self.wants),
            "user": self.user,
            "group": self.group,
            "limit_nofile": self.limit_nofile,
            "limit_nproc": self.limit_nproc,
            "syslog_identifier": self.syslog_identifier,
        }


@dataclass(frozen=True)
class LifecycleOutcome:
    """Terminal result of a successful (or no-op) lifecycle command."""

    action: str
    service: str
    state: InstallationState
    message: str
    changed: int = 0
    version_marker: str | None = None
    previous_marker: str | None = None
    version_string: str | None = None
    previous_version: str | None = None
    warnings: tuple[str, ...] = ()
    details: Mapping[str, object] = field(default_factory=dict)

    def to_context(self) -> dict[str, object]:
        """Return a serialisable summary for the operations log."""
        return {
            "action": self.action,
            "service": self.service,
            "state": self.state.value,
            "version_marker": self.version_marker,
            "previous_marker": self.previous_marker,
            "version_string": self.version_string,
            "previous_version": self.previous_version,
            **dict(self.details),
        }


@dataclass(frozen=True)
class StatusReport:
    """Read-only view of an installation combined with live systemd state."""

    service: str
    unit_name: str
    state: InstallationState
    active: bool
    enabled: bool
    version_marker: str | None
    version_string: str | None
    backup_present: bool
    install_dir: Path
    details: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-ready representation."""
        return {
            "service": self.service,
            "unit": self.unit_name,
            "state": self.state.value,
            "active": self.active,
            "enabled": self.enabled,
            "version_marker": self.version_marker,
            "version_string": self.version_string,
            "backup_present": self.backup_present,
            "install_dir": str(self.install_dir),
            **dict(self.details),
        }


__all__ = [
    "Installation",
    "InstallationState",
    "LifecycleOutcome",
    "StatusReport",
    "UnitDescriptor",
    "escape_unit_value",
    "settle_stale",
    "transition",
    "utc_now",
]
