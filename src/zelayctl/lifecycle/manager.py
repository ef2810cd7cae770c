"""Install, update and uninstall a zelay service as guarded, ordered steps.

The manager owns the registry record for one service profile and drives the
artifact store and the service controller. Each public method either returns
a :class:`LifecycleOutcome` or raises a :class:`~zelayctl.errors.LifecycleError`
subclass after leaving the record in a well-defined state.

Update ordering is the core guarantee: the backup is written and verified
before the active artifact is replaced, and a failed start restores that
backup by copy so the host keeps a runnable binary whenever one existed.
"""
from __future__ import annotations

import os
import platform
import shutil
import time
from collections.abc import Callable, Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from ..artifacts import ArtifactStore
from ..config import HealthConfig
from ..errors import (
    BackupError,
    FetchError,
    InstallCancelled,
    NotInstalledError,
    ServiceStartError,
    UpdateFailedRolledBack,
    UpdateFailedUnrecovered,
)
from ..logging import OperationScope
from ..preflight import detect_platform, port_in_use, ports_in_use, require_root
from ..providers.fetcher import ArtifactFetcher
from ..providers.systemd import SystemdError
from ..service_config import load_document, nameservers_of
from ..settings import ServiceSettings
from ..state import StateRegistry
from .models import (
    Installation,
    InstallationState,
    LifecycleOutcome,
    StatusReport,
    UnitDescriptor,
    settle_stale,
    utc_now,
)
from .profiles import ServiceProfile


class ServiceController(Protocol):
    """Operations the lifecycle manager needs from the init system."""

    def unit_name(self, name: str) -> str:
        """Return the unit name for *name*."""
        ...

    def unit_path(self, name: str) -> Path:
        """Return the unit file path for *name*."""
        ...

    def unit_exists(self, name: str) -> bool:
        """Return ``True`` when the unit file exists."""
        ...

    def register_unit(self, descriptor: UnitDescriptor) -> bool:
        """Write the unit file; return ``True`` when it changed."""
        ...

    def reload_units(self) -> None:
        """Reload the unit cache."""
        ...

    def is_active(self, name: str) -> bool:
        """Return ``True`` when the service is running."""
        ...

    def is_enabled(self, name: str) -> bool:
        """Return ``True`` when the service starts at boot."""
        ...

    def start(self, name: str) -> object:
        """Start the service."""
        ...

    def stop(self, name: str) -> bool:
        """Stop the service if running."""
        ...

    def enable(self, name: str) -> object:
        """Enable the service."""
        ...

    def disable(self, name: str) -> bool:
        """Disable the service if enabled."""
        ...

    def remove(self, name: str) -> bool:
        """Delete the unit file if present."""
        ...


PortConfirm = Callable[[Sequence[int]], bool]


def _decline_busy_ports(ports: Sequence[int]) -> bool:
    return False


@dataclass(slots=True)
class LifecycleManager:
    """Drive the lifecycle of the service described by *profile*."""

    profile: ServiceProfile
    controller: ServiceController
    fetcher: ArtifactFetcher
    registry: StateRegistry
    health: HealthConfig = field(default_factory=HealthConfig)
    os_release_file: Path = Path("/etc/os-release")
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    geteuid: Callable[[], int] = field(default=os.geteuid, repr=False)
    machine: Callable[[], str] = field(default=platform.machine, repr=False)
    port_probe: Callable[[int], bool] = field(default=port_in_use, repr=False)

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def service_name(self) -> str:
        """Return the systemd service name."""
        return self.profile.service.service_name

    @property
    def unit_name(self) -> str:
        """Return the unit name."""
        return self.controller.unit_name(self.service_name)

    @property
    def store(self) -> ArtifactStore:
        """Return the artifact store for the profile."""
        return ArtifactStore(self.profile.install_dir, self.profile.service.binary_name)

    @property
    def journal_hint(self) -> str:
        """Return the command operators use to inspect start failures."""
        return f"journalctl -u {self.unit_name} -n 50"

    # ------------------------------------------------------------------
    # Registry helpers
    # ------------------------------------------------------------------
    def load_installation(self) -> Installation | None:
        """Return the recorded installation, settling states left by a crash."""
        record = self.registry.get_installation(self.service_name)
        if record is None:
            return None
        installation = Installation.from_record(record)
        settled = settle_stale(installation.state)
        if settled is not installation.state:
            installation.state = settled
            installation.last_outcome = "interrupted"
            installation.last_changed = utc_now()
            self._save(installation)
        return installation

    def _save(self, installation: Installation) -> None:
        self.registry.upsert_installation(installation.to_record())

    def _blank_installation(self) -> Installation:
        store = self.store
        return Installation(
            service=self.service_name,
            profile=self.profile.name,
            install_dir=self.profile.install_dir,
            unit_name=self.unit_name,
            unit_path=self.controller.unit_path(self.service_name),
            active_path=store.active_path,
            backup_path=store.backup_path,
            origin_url=self.profile.service.download_url,
            config_path=self.profile.config_path,
        )

    def _adopt_legacy(self, op: OperationScope | None = None) -> Installation | None:
        """Record a host set up by the shell installers as ``installed``."""
        store = self.store
        if not (self.controller.unit_exists(self.service_name) and store.has_active()):
            return None
        installation = self._blank_installation()
        installation.state = InstallationState.INSTALLED
        installation.version_marker = store.version_marker()
        installation.installed_at = utc_now()
        installation.last_changed = installation.installed_at
        installation.last_outcome = "adopted"
        self._save(installation)
        if op is not None:
            op.add_step("registry.adopt", detail={"service": self.service_name})
        return installation

    # ------------------------------------------------------------------
    # Install
    # ------------------------------------------------------------------
    def install(
        self,
        settings: ServiceSettings,
        op: OperationScope,
        *,
        confirm_ports: PortConfirm = _decline_busy_ports,
    ) -> LifecycleOutcome:
        """Install (or reinstall) the service and leave it running and enabled."""
        require_root(self.geteuid)
        op.add_step("preflight.root")
        host = detect_platform(self.os_release_file, machine=self.machine)
        op.add_step("preflight.platform", detail=host.to_dict())
        self.profile.check_settings(settings)
        self._check_ports(settings, op, confirm_ports)

        existing = self.load_installation()
        installation = existing or self._blank_installation()
        reinstall_over_healthy = installation.state is InstallationState.INSTALLED
        installation.move_to(InstallationState.INSTALLING)
        self._save(installation)
        op.add_step("state.installing")

        store = self.store
        was_running = False
        try:
            if self.controller.unit_exists(self.service_name):
                was_running = self.controller.is_active(self.service_name)
                stopped = self.controller.stop(self.service_name)
                op.add_step("systemd.stop", status="success" if stopped else "skipped")

            data_dir = self.profile.data_dir(settings)
            self.profile.install_dir.mkdir(parents=True, exist_ok=True)
            data_dir.mkdir(parents=True, exist_ok=True)
            op.add_step("fs.directories", detail=[self.profile.install_dir, data_dir])

            staged = store.stage(self.fetcher.fetch(self.profile.service.download_url))
            marker = store.activate(staged)
            op.add_step("artifact.activate", detail={"path": store.active_path, "sha256": marker})

            config_path = self.profile.write_config(settings)
            if config_path is not None:
                op.add_step("config.write", detail=config_path)

            changed = self.controller.register_unit(self.profile.unit_descriptor(settings))
            op.add_step("systemd.register", status="success" if changed else "unchanged")

            self.controller.enable(self.service_name)
            op.add_step("systemd.enable")
            self.controller.start(self.service_name)
            op.add_step("systemd.start")
            if not self._wait_until_active():
                op.add_step("health.check", status="failed")
                raise ServiceStartError(
                    f"{self.unit_name} did not become active after start.",
                    hints=[self.journal_hint],
                )
            op.add_step("health.check")
        except FetchError:
            if reinstall_over_healthy:
                self._recover_reinstall(installation, was_running, op)
            else:
                self._mark_failed(installation, "fetch_failed")
            raise
        except Exception:
            self._mark_failed(installation, "install_failed")
            raise

        now = utc_now()
        installation.version_marker = marker
        installation.version_string = store.probe_version()
        installation.config_path = config_path
        installation.data_dir = data_dir
        installation.installed_at = installation.installed_at or now
        installation.updated_at = now
        installation.settings = dict(settings.describe())
        installation.last_outcome = "installed"
        installation.move_to(InstallationState.INSTALLED)
        self._save(installation)
        return LifecycleOutcome(
            action="install",
            service=self.service_name,
            state=installation.state,
            message=f"{self.service_name} installed and running.",
            changed=1,
            version_marker=marker,
            version_string=installation.version_string,
            details={
                "install_dir": self.profile.install_dir,
                "config_path": config_path,
                "data_dir": data_dir,
                "unit": self.unit_name,
                "settings": installation.settings,
            },
        )

    def _check_ports(
        self,
        settings: ServiceSettings,
        op: OperationScope,
        confirm_ports: PortConfirm,
    ) -> None:
        ports = self.profile.ports(settings)
        if not ports:
            return
        if self.controller.unit_exists(self.service_name) and self.controller.is_active(
            self.service_name
        ):
            # A running install holds its own ports; they free up once it stops.
            op.add_step("preflight.ports", status="skipped", detail={"ports": list(ports)})
            return
        busy = ports_in_use(ports, probe=self.port_probe)
        if not busy:
            op.add_step("preflight.ports", detail={"ports": list(ports)})
            return
        op.add_step("preflight.ports", status="warning", detail={"in_use": busy})
        if not confirm_ports(busy):
            raise InstallCancelled(
                "Install cancelled: port(s) "
                + ", ".join(str(port) for port in busy)
                + " already in use."
            )

    def _recover_reinstall(
        self,
        installation: Installation,
        was_running: bool,
        op: OperationScope,
    ) -> None:
        if was_running:
            try:
                self.controller.start(self.service_name)
                op.add_step("systemd.restart_previous")
            except SystemdError as exc:
                op.add_step("systemd.restart_previous", status="failed", detail=str(exc))
                self._mark_failed(installation, "fetch_failed")
                return
        installation.last_outcome = "reinstall_fetch_failed"
        installation.move_to(InstallationState.INSTALLED)
        self._save(installation)

    def _mark_failed(self, installation: Installation, outcome: str) -> None:
        installation.last_outcome = outcome
        installation.move_to(InstallationState.FAILED)
        self._save(installation)

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------
    def update(self, op: OperationScope) -> LifecycleOutcome:
        """Replace the active artifact, rolling back when the new one fails to start."""
        require_root(self.geteuid)
        installation = self.load_installation() or self._adopt_legacy(op)
        store = self.store
        if installation is None or not store.has_active():
            raise NotInstalledError(
                f"{self.service_name} is not installed.",
                hints=[f"zelayctl {self.profile.name} install"],
            )
        if installation.state is not InstallationState.INSTALLED:
            raise NotInstalledError(
                f"{self.service_name} is in state '{installation.state.value}'; reinstall first.",
                hints=[f"zelayctl {self.profile.name} install"],
            )

        installation.move_to(InstallationState.UPDATING)
        self._save(installation)
        op.add_step("state.updating")

        previous_marker = store.version_marker()
        previous_version = store.probe_version()

        try:
            backup_checksum = store.create_backup()
        except BackupError:
            op.add_step("artifact.backup", status="failed")
            self._return_to_installed(installation, "backup_failed")
            raise
        installation.backup_checksum = backup_checksum
        self._save(installation)
        op.add_step(
            "artifact.backup", detail={"path": store.backup_path, "sha256": backup_checksum}
        )

        was_running = False
        try:
            was_running = self.controller.is_active(self.service_name)
            if was_running:
                self.controller.stop(self.service_name)
                op.add_step("systemd.stop")
            staged = store.stage(self.fetcher.fetch(self.profile.service.download_url))
        except Exception as exc:
            op.add_step("artifact.fetch", status="failed", detail=str(exc))
            self._resume_previous(was_running, op)
            self._return_to_installed(installation, "fetch_failed")
            raise

        try:
            marker = store.activate(staged)
        except OSError as exc:
            store.discard(staged)
            op.add_step("artifact.activate", status="failed", detail=str(exc))
            self._resume_previous(was_running, op)
            self._return_to_installed(installation, "activate_failed")
            raise BackupError(f"Failed to activate new artifact: {exc}") from exc
        op.add_step("artifact.activate", detail={"path": store.active_path, "sha256": marker})
        new_version = store.probe_version()

        if was_running and not self._start_and_verify(op, "systemd.start"):
            self._roll_back(installation, op, previous_version=previous_version)

        now = utc_now()
        installation.version_marker = marker
        installation.version_string = new_version
        installation.updated_at = now
        installation.last_outcome = "updated"
        installation.move_to(InstallationState.INSTALLED)
        self._save(installation)
        message = f"{self.service_name} updated."
        if not was_running:
            message = f"{self.service_name} updated; service was not running and was left stopped."
        return LifecycleOutcome(
            action="update",
            service=self.service_name,
            state=installation.state,
            message=message,
            changed=int(marker != previous_marker),
            version_marker=marker,
            previous_marker=previous_marker,
            version_string=new_version,
            previous_version=previous_version,
            details={"backup_path": store.backup_path, "was_running": was_running},
        )

    def _roll_back(
        self,
        installation: Installation,
        op: OperationScope,
        *,
        previous_version: str | None,
    ) -> None:
        """Restore the backup after a failed start; always raises."""
        store = self.store
        restored = False
        try:
            self.controller.stop(self.service_name)
            marker = store.restore_backup()
            op.add_step("artifact.restore", detail={"path": store.active_path, "sha256": marker})
            restored = self._start_and_verify(op, "systemd.start_previous")
        except (BackupError, SystemdError) as exc:
            op.add_step("artifact.restore", status="failed", detail=str(exc))

        if restored:
            installation.move_to(InstallationState.ROLLED_BACK)
            self._save(installation)
            installation.version_marker = store.version_marker()
            installation.version_string = previous_version
            installation.last_outcome = "rolled_back"
            installation.move_to(InstallationState.INSTALLED)
            self._save(installation)
            raise UpdateFailedRolledBack(
                f"New {self.service_name} artifact failed to start; previous version restored.",
                hints=[self.journal_hint],
            )

        installation.version_marker = store.version_marker()
        self._mark_failed(installation, "rollback_failed")
        raise UpdateFailedUnrecovered(
            f"New {self.service_name} artifact failed to start and the backup could not be "
            "brought back up.",
            backup_path=str(store.backup_path),
            active_path=str(store.active_path),
            unit=self.unit_name,
            hints=[self.journal_hint],
        )

    def _start_and_verify(self, op: OperationScope, step: str) -> bool:
        try:
            self.controller.start(self.service_name)
        except SystemdError as exc:
            op.add_step(step, status="failed", detail=str(exc))
            return False
        healthy = self._wait_until_active()
        op.add_step(step, status="success" if healthy else "failed")
        return healthy

    def _resume_previous(self, was_running: bool, op: OperationScope) -> None:
        if not was_running:
            return
        try:
            self.controller.start(self.service_name)
            op.add_step("systemd.start_previous")
        except SystemdError as exc:
            op.add_step("systemd.start_previous", status="failed", detail=str(exc))

    def _return_to_installed(self, installation: Installation, outcome: str) -> None:
        installation.last_outcome = outcome
        installation.move_to(InstallationState.INSTALLED)
        self._save(installation)

    def _wait_until_active(self) -> bool:
        for _ in range(self.health.attempts):
            self.sleep(self.health.grace_seconds)
            if self.controller.is_active(self.service_name):
                return True
        return False

    # ------------------------------------------------------------------
    # Uninstall
    # ------------------------------------------------------------------
    def uninstall(
        self,
        op: OperationScope,
        *,
        confirm: Callable[[], bool],
        keep_data: bool = False,
    ) -> LifecycleOutcome:
        """Stop, disable and remove the service once *confirm* returns ``True``."""
        require_root(self.geteuid)
        if not confirm():
            op.add_step("confirm", status="declined")
            return LifecycleOutcome(
                action="uninstall",
                service=self.service_name,
                state=self._current_state(),
                message="Uninstall cancelled.",
                details={"cancelled": True},
            )
        op.add_step("confirm")

        installation = self.load_installation()
        if installation is not None and installation.state is not InstallationState.ABSENT:
            installation.move_to(InstallationState.UNINSTALLING)
            self._save(installation)

        changed = 0
        try:
            if self.controller.stop(self.service_name):
                changed += 1
            op.add_step("systemd.stop")
            if self.controller.disable(self.service_name):
                changed += 1
            op.add_step("systemd.disable")
            if self.controller.remove(self.service_name):
                changed += 1
            op.add_step("systemd.remove")
        except SystemdError:
            if installation is not None:
                self._mark_failed(installation, "uninstall_failed")
            raise

        install_dir = self.profile.install_dir
        if keep_data:
            op.add_step("fs.remove", status="skipped", detail=install_dir)
        elif install_dir.exists():
            shutil.rmtree(install_dir)
            changed += 1
            op.add_step("fs.remove", detail=install_dir)

        if installation is not None and installation.state is InstallationState.UNINSTALLING:
            installation.move_to(InstallationState.ABSENT)
        if self.registry.remove_installation(self.service_name):
            changed += 1
        op.add_step("registry.remove")
        message = (
            f"{self.service_name} uninstalled."
            if changed
            else f"{self.service_name} was not installed; nothing to do."
        )
        return LifecycleOutcome(
            action="uninstall",
            service=self.service_name,
            state=InstallationState.ABSENT,
            message=message,
            changed=changed,
            details={"keep_data": keep_data, "install_dir": install_dir},
        )

    def _current_state(self) -> InstallationState:
        record = self.registry.get_installation(self.service_name)
        if record is None:
            return InstallationState.ABSENT
        return Installation.from_record(record).state

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    def status(self) -> StatusReport:
        """Combine the registry record with live systemd state."""
        store = self.store
        record = self.registry.get_installation(self.service_name)
        details: dict[str, object] = {}
        if record is not None:
            installation = Installation.from_record(record)
            state = installation.state
            version_string = installation.version_string
            details["last_outcome"] = installation.last_outcome
            details["updated_at"] = installation.updated_at
        elif self.controller.unit_exists(self.service_name) and store.has_active():
            state = InstallationState.INSTALLED
            version_string = None
            details["legacy"] = True
        else:
            state = InstallationState.ABSENT
            version_string = None
        config_path = self.profile.config_path
        if config_path is not None and config_path.is_file():
            details["dns"] = list(nameservers_of(load_document(config_path)))
        unit_present = self.controller.unit_exists(self.service_name)
        return StatusReport(
            service=self.service_name,
            unit_name=self.unit_name,
            state=state,
            active=unit_present and self.controller.is_active(self.service_name),
            enabled=unit_present and self.controller.is_enabled(self.service_name),
            version_marker=store.version_marker(),
            version_string=version_string,
            backup_present=store.has_backup(),
            install_dir=self.profile.install_dir,
            details=details,
        )

    def iter_commands(self) -> Iterator[str]:
        """Yield the systemctl/journalctl commands shown after an install."""
        unit = self.unit_name
        yield f"systemctl status {unit}"
        yield f"systemctl restart {unit}"
        yield f"systemctl stop {unit}"
        yield f"journalctl -u {unit} -f"


__all__ = ["LifecycleManager", "PortConfirm", "ServiceController"]
