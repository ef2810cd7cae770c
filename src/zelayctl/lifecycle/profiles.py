"""Service profiles: what differs between the agent and the manager."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from ..config import ServiceConfig
from ..errors import SettingsError
from ..service_config import AgentConfigDocument
from ..settings import AgentSettings, ManagerSettings, ServiceSettings
from .models import UnitDescriptor


@dataclass(frozen=True)
class ServiceProfile:
    """Base profile: paths derived from the service configuration."""

    service: ServiceConfig

    name = "service"
    description = "Zelay service"

    @property
    def install_dir(self) -> Path:
        """Return the install directory."""
        return self.service.install_dir

    @property
    def active_path(self) -> Path:
        """Return the path of the active executable."""
        return self.install_dir / self.service.binary_name

    @property
    def config_path(self) -> Path | None:
        """Return the generated configuration path, if the profile has one."""
        if self.service.config_name is None:
            return None
        return self.install_dir / self.service.config_name

    def check_settings(self, settings: ServiceSettings) -> None:
        """Reject settings meant for another profile."""
        raise NotImplementedError

    def ports(self, settings: ServiceSettings) -> tuple[int, ...]:
        """Return the ports the service binds."""
        return settings.ports

    def data_dir(self, settings: ServiceSettings) -> Path:
        """Return the directory holding per-service data."""
        raise NotImplementedError

    def write_config(self, settings: ServiceSettings) -> Path | None:
        """Persist the generated configuration; return its path."""
        return None

    def unit_descriptor(self, settings: ServiceSettings) -> UnitDescriptor:
        """Return the unit descriptor for *settings*."""
        raise NotImplementedError


@dataclass(frozen=True)
class AgentProfile(ServiceProfile):
    """The forwarding agent: ``zelay api`` plus a JSON configuration."""

    name = "agent"
    description = "Zelay Agent"

    def check_settings(self, settings: ServiceSettings) -> None:
        """Require :class:`AgentSettings`."""
        self._narrow(settings)

    def _narrow(self, settings: ServiceSettings) -> AgentSettings:
        if not isinstance(settings, AgentSettings):
            raise SettingsError("The agent requires server and apikey settings.")
        return settings

    def data_dir(self, settings: ServiceSettings) -> Path:
        """Return ``<install_dir>/instances``."""
        return self.install_dir / "instances"

    def write_config(self, settings: ServiceSettings) -> Path | None:
        """Write ``zelay.conf`` from *settings*, replacing any existing document."""
        agent = self._narrow(settings)
        path = self.config_path or self.install_dir / "zelay.conf"
        AgentConfigDocument.from_settings(agent).write(path)
        return path

    def unit_descriptor(self, settings: ServiceSettings) -> UnitDescriptor:
        """Describe ``zelay api -c <conf> --server <addr> --key <apikey>``."""
        agent = self._narrow(settings)
        config_path = self.config_path or self.install_dir / "zelay.conf"
        return UnitDescriptor(
            name=self.service.service_name,
            description=self.description,
            exec_start=(
                str(self.active_path),
                "api",
                "-c",
                str(config_path),
                "--server",
                agent.server,
                "--key",
                agent.api_key,
            ),
            working_directory=self.install_dir,
            restart="on-failure",
            restart_sec=5,
            restart_prevent_exit_status=23,
            exec_reload="/bin/kill -HUP $MAINPID",
            after=("network.target", "nss-lookup.target"),
            wants=("network.target",),
            group="root",
            unit_mode=0o600,
        )


@dataclass(frozen=True)
class ManagerProfile(ServiceProfile):
    """The management server: web UI and agent listener."""

    name = "manager"
    description = "Zelay Manager"

    def check_settings(self, settings: ServiceSettings) -> None:
        """Require :class:`ManagerSettings`."""
        self._narrow(settings)

    def _narrow(self, settings: ServiceSettings) -> ManagerSettings:
        if not isinstance(settings, ManagerSettings):
            raise SettingsError("The manager requires webport/agentport/datadir settings.")
        return settings

    def data_dir(self, settings: ServiceSettings) -> Path:
        """Return the configured data directory or ``<install_dir>/data``."""
        return self._narrow(settings).resolve_data_dir(self.install_dir)

    def unit_descriptor(self, settings: ServiceSettings) -> UnitDescriptor:
        """Describe ``zelay-manager --webport W --agentport A --data-dir D``."""
        manager = self._narrow(settings)
        return UnitDescriptor(
            name=self.service.service_name,
            description=self.description,
            exec_start=(
                str(self.active_path),
                "--webport",
                str(manager.web_port),
                "--agentport",
                str(manager.agent_port),
                "--data-dir",
                str(manager.resolve_data_dir(self.install_dir)),
            ),
            working_directory=self.install_dir,
            restart="always",
            restart_sec=5,
            after=("network.target",),
            wants=("network-online.target",),
            syslog_identifier=self.service.service_name,
        )


def profile_for(name: str, service: ServiceConfig) -> ServiceProfile:
    """Return the profile called *name* bound to *service*."""
    if name == "agent":
        return AgentProfile(service)
    if name == "manager":
        return ManagerProfile(service)
    raise SettingsError(f"Unknown service profile '{name}'.")


__all__ = ["AgentProfile", "ManagerProfile", "ServiceProfile", "profile_for"]
