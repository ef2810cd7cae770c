"""Configuration loader for zelayctl.

Configuration values are merged from several sources, lowest precedence
first:

1. Built-in defaults.
2. ``/etc/zelayctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``ZELAYCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export ZELAYCTL_HEALTH__GRACE_SECONDS=5
    export ZELAYCTL_AGENT__DOWNLOAD_URL=https://mirror.example/zelay

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The result is exposed as frozen dataclasses.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load zelayctl configuration. Install with "
        "`pip install zelayctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "ZELAYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

SERVICE_PROFILES = ("agent", "manager")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class ServiceConfig:
    """Where a service profile lives on disk and where its binary comes from."""

    service_name: str
    install_dir: Path
    binary_name: str
    download_url: str
    config_name: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "service_name": self.service_name,
            "install_dir": str(self.install_dir),
            "binary_name": self.binary_name,
            "download_url": self.download_url,
            "config_name": self.config_name,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class HealthConfig:
    """Post-start health check timing."""

    grace_seconds: float = 2.0
    attempts: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"grace_seconds": self.grace_seconds, "attempts": self.attempts}


@dataclass(frozen=True)
class FetchConfig:
    """Artifact download behaviour."""

    timeout: float = 60.0
    retries: int = 2
    backoff_seconds: float = 1.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "timeout": self.timeout,
            "retries": self.retries,
            "backoff_seconds": self.backoff_seconds,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for zelayctl."""

    config_file: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    os_release_file: Path
    lock_timeout: float
    agent: ServiceConfig
    manager: ServiceConfig
    systemd: SystemdConfig
    health: HealthConfig
    fetch: FetchConfig

    def service(self, profile: str) -> ServiceConfig:
        """Return the :class:`ServiceConfig` for *profile*."""
        if profile == "agent":
            return self.agent
        if profile == "manager":
            return self.manager
        raise ConfigError(f"Unknown service profile '{profile}'.")

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "os_release_file": str(self.os_release_file),
            "lock_timeout": self.lock_timeout,
            "agent": self.agent.to_dict(),
            "manager": self.manager.to_dict(),
            "systemd": self.systemd.to_dict(),
            "health": self.health.to_dict(),
            "fetch": self.fetch.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/zelayctl/config.yml",
    "state_dir": "/var/lib/zelayctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/zelayctl",
    "runtime_dir": "/run/zelayctl",
    "templates_dir": "/etc/zelayctl/templates",
    "os_release_file": "/etc/os-release",
    "lock_timeout": 30.0,
    "agent": {
        "service_name": "zelay-agent",
        "install_dir": "/etc/zelay",
        "binary_name": "zelay",
        "download_url": "https://raw.githubusercontent.com/enp6/Zelay/main/zelay",
        "config_name": "zelay.conf",
    },
    "manager": {
        "service_name": "zelay-manager",
        "install_dir": "/etc/zelay-manager",
        "binary_name": "zelay-manager",
        "download_url": "https://raw.githubusercontent.com/enp6/Zelay/main/zelay-manager",
        "config_name": None,
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
    "health": {
        "grace_seconds": 2.0,
        "attempts": 1,
    },
    "fetch": {
        "timeout": 60.0,
        "retries": 2,
        "backoff_seconds": 1.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "agent": {"service_name", "install_dir", "binary_name", "download_url", "config_name"},
    "manager": {"service_name", "install_dir", "binary_name", "download_url", "config_name"},
    "systemd": {"unit_dir", "systemctl_bin", "journalctl_bin"},
    "health": {"grace_seconds", "attempts"},
    "fetch": {"timeout", "retries", "backoff_seconds"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_service(raw: Mapping[str, object], profile: str) -> ServiceConfig:
    mapping = _as_dict(raw.get(profile), profile)
    defaults = _as_dict(DEFAULTS[profile], profile)

    def _text(key: str) -> str:
        value = mapping.get(key, defaults.get(key))
        text = str(value).strip() if value is not None else ""
        if not text:
            raise ConfigError(f"{profile}.{key} must be a non-empty string.")
        return text

    config_name_raw = mapping.get("config_name", defaults.get("config_name"))
    config_name = str(config_name_raw).strip() if config_name_raw else None
    binary_name = _text("binary_name")
    if "/" in binary_name:
        raise ConfigError(f"{profile}.binary_name must be a bare file name.")

    return ServiceConfig(
        service_name=_text("service_name"),
        install_dir=_to_path(_text("install_dir")),
        binary_name=binary_name,
        download_url=_text("download_url"),
        config_name=config_name or None,
    )


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    health_mapping = _as_dict(raw.get("health"), "health")
    attempts = _expect_int(health_mapping.get("attempts"), "health.attempts", default=1)
    if attempts < 1:
        raise ConfigError("health.attempts must be at least 1.")
    health = HealthConfig(
        grace_seconds=_expect_non_negative_float(
            health_mapping.get("grace_seconds"), "health.grace_seconds", default=2.0
        ),
        attempts=attempts,
    )

    fetch_mapping = _as_dict(raw.get("fetch"), "fetch")
    retries = _expect_int(fetch_mapping.get("retries"), "fetch.retries", default=2)
    if retries < 0:
        raise ConfigError("fetch.retries must be non-negative.")
    fetch = FetchConfig(
        timeout=_expect_positive_float(fetch_mapping.get("timeout"), "fetch.timeout", default=60.0),
        retries=retries,
        backoff_seconds=_expect_non_negative_float(
            fetch_mapping.get("backoff_seconds"), "fetch.backoff_seconds", default=1.0
        ),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        os_release_file=_to_path(raw.get("os_release_file")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        agent=_build_service(raw, "agent"),
        manager=_build_service(raw, "manager"),
        systemd=systemd,
        health=health,
        fetch=fetch,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                "Environment overrides conflict with existing scalar value at "
                f"{'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be non-negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "FetchConfig",
    "HealthConfig",
    "SERVICE_PROFILES",
    "ServiceConfig",
    "SystemdConfig",
    "load_config",
]
