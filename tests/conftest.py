"""Shared fixtures: fake service controller, fake fetcher and lifecycle wiring."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

import pytest

from zelayctl.config import AppConfig, load_config
from zelayctl.errors import FetchError
from zelayctl.lifecycle import LifecycleManager, UnitDescriptor, profile_for
from zelayctl.logging import OperationScope
from zelayctl.state import StateRegistry

GOOD_V1 = b"ZELAY-BINARY v1\n"
GOOD_V2 = b"ZELAY-BINARY v2\n"
BROKEN = b"BROKEN ZELAY-BINARY\n"

OS_RELEASE = (
    'NAME="Debian GNU/Linux"\nID=debian\nVERSION_ID="12"\nPRETTY_NAME="Debian GNU/Linux 12"\n'
)


class FakeServiceController:
    """In-memory stand-in for :class:`SystemdProvider`.

    A started unit is active only when its artifact exists and does not
    contain the ``BROKEN`` marker, so tests steer health checks through the
    bytes the fetcher hands out.
    """

    def __init__(self, unit_dir: Path) -> None:
        """Track unit files under *unit_dir*."""
        self.unit_dir = unit_dir
        self.artifacts: dict[str, Path] = {}
        self.active: set[str] = set()
        self.enabled: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self.descriptors: dict[str, UnitDescriptor] = {}
        self.fail_all_starts = False

    def unit_name(self, name: str) -> str:
        """Return ``<name>.service``."""
        return f"{name}.service"

    def unit_path(self, name: str) -> Path:
        """Return the unit path under the fake unit dir."""
        return self.unit_dir / self.unit_name(name)

    def unit_exists(self, name: str) -> bool:
        """Return ``True`` when the unit file exists."""
        return self.unit_path(name).exists()

    def register_unit(self, descriptor: UnitDescriptor) -> bool:
        """Record the descriptor and write a marker unit file."""
        self.calls.append(("register", descriptor.name))
        self.descriptors[descriptor.name] = descriptor
        path = self.unit_path(descriptor.name)
        content = str(descriptor.to_context())
        changed = not path.exists() or path.read_text(encoding="utf-8") != content
        self.unit_dir.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
        return changed

    def reload_units(self) -> None:
        """Record a daemon reload."""
        self.calls.append(("daemon-reload", ""))

    def is_active(self, name: str) -> bool:
        """Return whether *name* is running."""
        return name in self.active

    def is_enabled(self, name: str) -> bool:
        """Return whether *name* is enabled."""
        return name in self.enabled

    def start(self, name: str) -> None:
        """Start *name*; it stays up only with a healthy artifact."""
        self.calls.append(("start", name))
        if self._healthy(name):
            self.active.add(name)
        else:
            self.active.discard(name)

    def stop(self, name: str) -> bool:
        """Stop *name* when running."""
        if name not in self.active:
            return False
        self.calls.append(("stop", name))
        self.active.discard(name)
        return True

    def enable(self, name: str) -> None:
        """Enable *name*."""
        self.calls.append(("enable", name))
        self.enabled.add(name)

    def disable(self, name: str) -> bool:
        """Disable *name* when enabled."""
        if name not in self.enabled:
            return False
        self.calls.append(("disable", name))
        self.enabled.discard(name)
        return True

    def remove(self, name: str) -> bool:
        """Delete the unit file when present."""
        path = self.unit_path(name)
        if not path.exists():
            return False
        path.unlink()
        self.calls.append(("remove", name))
        return True

    def _healthy(self, name: str) -> bool:
        if self.fail_all_starts:
            return False
        artifact = self.artifacts.get(name)
        if artifact is None or not artifact.exists():
            return False
        return b"BROKEN" not in artifact.read_bytes()


@dataclass
class FakeFetcher:
    """Serve a fixed payload, or fail the way a broken download does."""

    payload: bytes = GOOD_V1
    error: Exception | None = None
    chunk_size: int = 4

    def __post_init__(self) -> None:
        """Initialise the URL log."""
        self.urls: list[str] = []

    def fetch(self, url: str) -> Iterator[bytes]:
        """Yield the payload in small chunks."""
        self.urls.append(url)
        if self.error is not None:
            raise self.error
        for index in range(0, len(self.payload), self.chunk_size):
            yield self.payload[index : index + self.chunk_size]


class FakeResponse:
    """Minimal ``urlopen`` response: a context manager with ``read``."""

    def __init__(
        self,
        body: bytes,
        *,
        status: int = 200,
        fail_after: int | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Serve *body*; raise after *fail_after* reads when given."""
        self.body = body
        self.status = status
        self.fail_after = fail_after
        self.headers = headers or {}
        self.reads = 0
        self.offset = 0

    def __enter__(self) -> FakeResponse:
        return self

    def __exit__(self, *exc: object) -> None:
        return None

    def read(self, size: int) -> bytes:
        if self.fail_after is not None and self.reads >= self.fail_after:
            raise ConnectionResetError("connection reset by peer")
        self.reads += 1
        chunk = self.body[self.offset : self.offset + size]
        self.offset += len(chunk)
        return chunk


@dataclass
class LifecycleEnv:
    """Everything a lifecycle test needs, rooted under ``tmp_path``."""

    tmp_path: Path
    config: AppConfig
    controller: FakeServiceController
    fetcher: FakeFetcher
    registry: StateRegistry
    busy_ports: set[int]
    euid: int = 0
    machine: str = "x86_64"

    def manager(self, profile: str = "agent") -> LifecycleManager:
        """Return a manager for *profile* wired to the fakes."""
        service = self.config.service(profile)
        self.controller.artifacts[service.service_name] = service.install_dir / service.binary_name
        return LifecycleManager(
            profile=profile_for(profile, service),
            controller=self.controller,
            fetcher=self.fetcher,
            registry=self.registry,
            health=self.config.health,
            os_release_file=self.config.os_release_file,
            sleep=lambda _seconds: None,
            geteuid=lambda: self.euid,
            machine=lambda: self.machine,
            port_probe=lambda port: port in self.busy_ports,
        )


def build_config(tmp_path: Path) -> AppConfig:
    """Return a configuration whose every path lives under *tmp_path*."""
    os_release = tmp_path / "os-release"
    os_release.write_text(OS_RELEASE, encoding="utf-8")
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "os_release_file": str(os_release),
            "agent": {"install_dir": str(tmp_path / "etc" / "zelay")},
            "manager": {"install_dir": str(tmp_path / "etc" / "zelay-manager")},
            "systemd": {"unit_dir": str(tmp_path / "systemd")},
            "health": {"grace_seconds": 0, "attempts": 2},
        },
    )


@pytest.fixture
def lifecycle_env(tmp_path: Path) -> LifecycleEnv:
    """Return fakes and config rooted in a temporary directory."""
    config = build_config(tmp_path)
    return LifecycleEnv(
        tmp_path=tmp_path,
        config=config,
        controller=FakeServiceController(config.systemd.unit_dir),
        fetcher=FakeFetcher(),
        registry=StateRegistry(config.registry_dir),
        busy_ports=set(),
    )


@pytest.fixture
def op() -> OperationScope:
    """Return a standalone operation scope for recording steps."""
    return OperationScope("test", args=None, target=None)


@pytest.fixture
def agent_tokens() -> list[str]:
    """Return the canonical agent install tokens."""
    return ["server=1.2.3.4:13001", "apikey=K1"]


def fetch_error(message: str = "connection reset") -> FetchError:
    """Return a :class:`FetchError` for fakes to raise."""
    return FetchError(message)


def step_names(scope: OperationScope) -> list[str]:
    """Return the names of the steps recorded on *scope*."""
    return [str(step["name"]) for step in scope.steps]
