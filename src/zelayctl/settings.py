"""Immutable install settings for the agent and manager services.

Settings arrive on the command line as ``key=value`` tokens (``server=``,
``apikey=``, ``dns=`` for the agent; ``webport=``, ``agentport=``,
``datadir=`` for the manager) and are validated into frozen dataclasses that
the lifecycle manager receives explicitly.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from .errors import SettingsError

DEFAULT_DNS: tuple[str, ...] = ("223.5.5.5:53", "119.29.29.29:53")
DEFAULT_WEB_PORT = 3000
DEFAULT_AGENT_PORT = 3001

_AGENT_KEYS = {"server": "server", "apikey": "apikey", "api-key": "apikey", "dns": "dns"}
_MANAGER_KEYS = {
    "webport": "webport",
    "web-port": "webport",
    "agentport": "agentport",
    "agent-port": "agentport",
    "datadir": "datadir",
    "data-dir": "datadir",
}


def reject_control_chars(value: str, *, label: str) -> str:
    """Return *value*, refusing newlines and other control characters."""
    if any(ord(char) < 32 or ord(char) == 127 for char in value):
        raise SettingsError(f"{label} must not contain control characters.")
    return value


def parse_host_port(value: str, *, label: str) -> tuple[str, int]:
    """Split ``host:port`` and validate the port range."""
    reject_control_chars(value, label=label)
    text = value.strip()
    host, sep, port_text = text.rpartition(":")
    if not sep or not host or not port_text:
        raise SettingsError(f"{label} must use the form HOST:PORT (got {value!r}).")
    host = host.strip("[]")
    return host, parse_port(port_text, label=label)


def parse_port(value: str | int, *, label: str) -> int:
    """Return *value* as a TCP port number."""
    try:
        port = int(str(value).strip(), 10)
    except ValueError as exc:
        raise SettingsError(f"{label} must be an integer port (got {value!r}).") from exc
    if not 1 <= port <= 65535:
        raise SettingsError(f"{label} must be between 1 and 65535 (got {port}).")
    return port


def parse_dns_list(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Normalise a comma-separated (or iterable) nameserver list."""
    if value is None:
        return DEFAULT_DNS
    items = value.split(",") if isinstance(value, str) else list(value)
    servers = tuple(item.strip() for item in items if item and item.strip())
    if not servers:
        return DEFAULT_DNS
    for server in servers:
        parse_host_port(server, label="dns")
    return servers


def parse_key_values(tokens: Iterable[str], aliases: Mapping[str, str]) -> dict[str, str]:
    """Parse ``key=value`` tokens, resolving *aliases* to canonical keys."""
    values: dict[str, str] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        canonical = aliases.get(key.strip().lower())
        if not sep or canonical is None:
            allowed = ", ".join(sorted(set(aliases.values())))
            raise SettingsError(f"Unknown argument {token!r}. Expected one of: {allowed}.")
        values[canonical] = value.strip()
    return values


@dataclass(frozen=True)
class AgentSettings:
    """Connection settings for the agent service."""

    server: str
    api_key: str
    dns: tuple[str, ...] = DEFAULT_DNS

    def __post_init__(self) -> None:
        """Validate the server address and credential."""
        if not self.server.strip():
            raise SettingsError("Server address must not be empty.")
        parse_host_port(self.server, label="server")
        if not self.api_key.strip():
            raise SettingsError("API key must not be empty.")
        reject_control_chars(self.api_key, label="API key")
        object.__setattr__(self, "dns", parse_dns_list(self.dns))

    @property
    def ports(self) -> tuple[int, ...]:
        """The agent does not bind listening ports of its own."""
        return ()

    @property
    def masked_api_key(self) -> str:
        """Return the API key truncated for display."""
        return f"{self.api_key[:10]}..." if len(self.api_key) > 10 else "***"

    def describe(self) -> dict[str, object]:
        """Return a display/registry-safe summary (credential redacted)."""
        return {"server": self.server, "apikey": self.masked_api_key, "dns": list(self.dns)}

    @classmethod
    def from_tokens(cls, tokens: Iterable[str]) -> AgentSettings:
        """Build settings from ``key=value`` tokens; all keys required except ``dns``."""
        values = parse_key_values(tokens, _AGENT_KEYS)
        return cls(
            server=values.get("server", ""),
            api_key=values.get("apikey", ""),
            dns=parse_dns_list(values.get("dns") or None),
        )

    @staticmethod
    def partial_from_tokens(tokens: Iterable[str]) -> dict[str, str]:
        """Return the raw agent values present in *tokens* (for interactive fill-in)."""
        return parse_key_values(tokens, _AGENT_KEYS)


@dataclass(frozen=True)
class ManagerSettings:
    """Listening ports and data directory for the manager service."""

    web_port: int = DEFAULT_WEB_PORT
    agent_port: int = DEFAULT_AGENT_PORT
    data_dir: Path | None = None

    def __post_init__(self) -> None:
        """Validate ports and the data directory."""
        parse_port(self.web_port, label="webport")
        parse_port(self.agent_port, label="agentport")
        if self.web_port == self.agent_port:
            raise SettingsError("webport and agentport must differ.")
        if self.data_dir is not None:
            reject_control_chars(str(self.data_dir), label="datadir")

    @property
    def ports(self) -> tuple[int, ...]:
        """Return the ports the manager listens on."""
        return (self.web_port, self.agent_port)

    def resolve_data_dir(self, install_dir: Path) -> Path:
        """Return the data directory, defaulting to ``<install_dir>/data``."""
        return self.data_dir if self.data_dir is not None else install_dir / "data"

    def describe(self) -> dict[str, object]:
        """Return a display/registry-safe summary."""
        return {
            "webport": self.web_port,
            "agentport": self.agent_port,
            "datadir": str(self.data_dir) if self.data_dir is not None else None,
        }

    @classmethod
    def from_tokens(cls, tokens: Iterable[str]) -> ManagerSettings:
        """Build settings from ``key=value`` tokens, applying defaults."""
        values = parse_key_values(tokens, _MANAGER_KEYS)
        data_dir_raw = values.get("datadir")
        return cls(
            web_port=parse_port(values.get("webport", DEFAULT_WEB_PORT), label="webport"),
            agent_port=parse_port(values.get("agentport", DEFAULT_AGENT_PORT), label="agentport"),
            data_dir=Path(data_dir_raw).expanduser() if data_dir_raw else None,
        )


ServiceSettings = AgentSettings | ManagerSettings


__all__ = [
    "DEFAULT_AGENT_PORT",
    "DEFAULT_DNS",
    "DEFAULT_WEB_PORT",
    "AgentSettings",
    "ManagerSettings",
    "ServiceSettings",
    "parse_dns_list",
    "parse_host_port",
    "parse_key_values",
    "parse_port",
    "reject_control_chars",
]
