"""Host checks run before an install touches the system."""
from __future__ import annotations

import errno
import os
import platform
import socket
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .errors import InsufficientPrivilegeError, UnsupportedPlatformError

ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


@dataclass(frozen=True)
class PlatformInfo:
    """Operating system and normalised CPU architecture."""

    os_id: str
    os_name: str
    version_id: str
    machine: str
    arch: str

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {
            "os_id": self.os_id,
            "os_name": self.os_name,
            "version_id": self.version_id,
            "machine": self.machine,
            "arch": self.arch,
        }


def require_root(geteuid: Callable[[], int] = os.geteuid) -> None:
    """Raise :class:`InsufficientPrivilegeError` unless running as root."""
    if geteuid() != 0:
        raise InsufficientPrivilegeError(
            "This command must be run as root.",
            hints=["Re-run with sudo."],
        )


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``/etc/os-release`` style ``KEY=value`` lines."""
    values: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        values[key.strip()] = value.strip().strip('"').strip("'")
    return values


def detect_platform(
    os_release_path: Path,
    *,
    machine: Callable[[], str] = platform.machine,
) -> PlatformInfo:
    """Return the host :class:`PlatformInfo` or raise :class:`UnsupportedPlatformError`."""
    try:
        release = parse_os_release(os_release_path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise UnsupportedPlatformError(
            f"Cannot identify the operating system: {os_release_path} is unreadable ({exc})."
        ) from exc
    os_id = release.get("ID", "").lower()
    if not os_id:
        raise UnsupportedPlatformError(f"{os_release_path} does not define ID.")

    raw_machine = machine().strip().lower()
    arch = ARCH_ALIASES.get(raw_machine)
    if arch is None:
        supported = ", ".join(sorted(ARCH_ALIASES))
        raise UnsupportedPlatformError(
            f"Unsupported CPU architecture '{raw_machine or 'unknown'}' (supported: {supported})."
        )
    return PlatformInfo(
        os_id=os_id,
        os_name=release.get("PRETTY_NAME") or release.get("NAME") or os_id,
        version_id=release.get("VERSION_ID", ""),
        machine=raw_machine,
        arch=arch,
    )


def port_in_use(port: int, *, host: str = "") -> bool:
    """Return ``True`` when binding *port* on all interfaces fails with ``EADDRINUSE``."""
    for family, kind in ((socket.AF_INET, socket.SOCK_STREAM), (socket.AF_INET, socket.SOCK_DGRAM)):
        with socket.socket(family, kind) as sock:
            try:
                sock.bind((host, port))
            except OSError as exc:
                if exc.errno == errno.EADDRINUSE:
                    return True
                raise
    return False


def ports_in_use(
    ports: Iterable[int],
    *,
    probe: Callable[[int], bool] = port_in_use,
) -> list[int]:
    """Return the subset of *ports* that are already bound."""
    return [port for port in ports if probe(port)]


__all__ = [
    "ARCH_ALIASES",
    "PlatformInfo",
    "detect_platform",
    "parse_os_release",
    "port_in_use",
    "ports_in_use",
    "require_root",
]
