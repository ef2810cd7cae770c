"""Agent configuration document (``zelay.conf``).

The agent reads a JSON document describing its DNS policy, network timeouts
and forwarding endpoints. The document is generated from typed settings on
install and written atomically; updates never touch it.
"""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .settings import DEFAULT_DNS, AgentSettings


class ServiceConfigError(RuntimeError):
    """Raised when the configuration document cannot be written."""


@dataclass(frozen=True)
class DnsSettings:
    """Resolver behaviour for the agent."""

    nameservers: tuple[str, ...] = DEFAULT_DNS
    mode: str = "ipv4_then_ipv6"
    timeout: int = 5
    cache_size: int = 256

    def to_dict(self) -> dict[str, object]:
        """Return the JSON representation."""
        return {
            "mode": self.mode,
            "nameservers": list(self.nameservers),
            "timeout": self.timeout,
            "cache_size": self.cache_size,
        }


@dataclass(frozen=True)
class NetworkSettings:
    """Socket timeouts and proxy-protocol flags."""

    tcp_keepalive: int = 60
    tcp_timeout: int = 10
    udp_timeout: int = 30
    send_proxy: bool = False
    accept_proxy: bool = False
    no_tcp: bool = False
    use_udp: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return the JSON representation."""
        return {
            "tcp_keepalive": self.tcp_keepalive,
            "tcp_timeout": self.tcp_timeout,
            "udp_timeout": self.udp_timeout,
            "send_proxy": self.send_proxy,
            "accept_proxy": self.accept_proxy,
            "no_tcp": self.no_tcp,
            "use_udp": self.use_udp,
        }


@dataclass(frozen=True)
class AgentConfigDocument:
    """The complete ``zelay.conf`` document."""

    dns: DnsSettings = field(default_factory=DnsSettings)
    network: NetworkSettings = field(default_factory=NetworkSettings)
    endpoints: tuple[Mapping[str, Any], ...] = ()

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> AgentConfigDocument:
        """Build the document for *settings*; endpoints start empty."""
        return cls(dns=DnsSettings(nameservers=tuple(settings.dns)))

    def render(self) -> dict[str, object]:
        """Return the document as plain JSON-ready data."""
        return {
            "dns": self.dns.to_dict(),
            "network": self.network.to_dict(),
            "endpoints": [dict(endpoint) for endpoint in self.endpoints],
        }

    def dumps(self) -> str:
        """Return the document serialised as indented JSON."""
        return json.dumps(self.render(), indent=2) + "\n"

    def write(self, path: Path, *, mode: int = 0o600) -> None:
        """Atomically write the document to *path*, replacing any previous copy."""
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(self.dumps())
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(tmp_path, mode)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise ServiceConfigError(f"Failed to write configuration {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


def load_document(path: Path) -> dict[str, object]:
    """Read an existing configuration document for display."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ServiceConfigError(f"Failed to read configuration {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ServiceConfigError(f"Configuration {path} must contain a JSON object.")
    return data


def nameservers_of(document: Mapping[str, object]) -> Sequence[str]:
    """Return ``dns.nameservers`` from a rendered document."""
    dns = document.get("dns")
    if isinstance(dns, Mapping):
        servers = dns.get("nameservers")
        if isinstance(servers, list):
            return [str(item) for item in servers]
    return []


__all__ = [
    "AgentConfigDocument",
    "DnsSettings",
    "NetworkSettings",
    "ServiceConfigError",
    "load_document",
    "nameservers_of",
]
