"""Helpers for interacting with the zelayctl state registry.

The registry directory (``/var/lib/zelayctl/registry`` by default) stores YAML
files. ``installations.yml`` holds one record per managed service so that
"is it installed?" never depends on probing the filesystem. Files are written
atomically through a temporary file and ``os.replace``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage zelayctl state. Install with `pip install zelayctl`."
    ) from exc

INSTALLATIONS_FILE = "installations.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StateRegistryError(f"Failed to prepare registry {self.root}: {exc}") from exc

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        except OSError as exc:
            raise StateRegistryError(f"Failed to read registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, path)
            os.chmod(path, 0o600)
        except OSError as exc:
            raise StateRegistryError(f"Failed to write registry file {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    # Installation helpers -------------------------------------------------
    def read_installations(self) -> list[dict[str, Any]]:
        """Return installation records from ``installations.yml``."""
        value = self.read(INSTALLATIONS_FILE, default={"installations": []})
        raw = value.get("installations", []) if isinstance(value, Mapping) else []
        entries: list[dict[str, Any]] = []
        if isinstance(raw, list):
            for item in raw:
                if isinstance(item, Mapping) and str(item.get("service", "")).strip():
                    entries.append(dict(item))
        return entries

    def write_installations(self, entries: Iterable[Mapping[str, object]]) -> None:
        """Persist installation records to ``installations.yml``."""
        self.write(INSTALLATIONS_FILE, {"installations": [dict(entry) for entry in entries]})

    def get_installation(self, service: str) -> dict[str, Any] | None:
        """Return the record for *service* if present."""
        normalized = _normalize_service(service)
        for entry in self.read_installations():
            if entry.get("service") == normalized:
                return deepcopy(entry)
        return None

    def upsert_installation(self, entry: Mapping[str, object]) -> None:
        """Add or replace the record keyed by ``entry['service']``."""
        normalized = _normalize_service(str(entry.get("service", "")))
        record = dict(entry)
        record["service"] = normalized
        entries = self.read_installations()
        replaced = False
        for index, existing in enumerate(entries):
            if existing.get("service") == normalized:
                entries[index] = record
                replaced = True
                break
        if not replaced:
            entries.append(record)
        self.write_installations(entries)

    def update_installation(self, service: str, updates: Mapping[str, object]) -> dict[str, Any]:
        """Merge *updates* into the record for *service* and return the result."""
        normalized = _normalize_service(service)
        entries = self.read_installations()
        for index, existing in enumerate(entries):
            if existing.get("service") == normalized:
                merged = dict(existing)
                merged.update(updates)
                entries[index] = merged
                self.write_installations(entries)
                return deepcopy(merged)
        raise StateRegistryError(f"Installation '{normalized}' not found in registry")

    def remove_installation(self, service: str) -> bool:
        """Remove the record for *service*; return ``False`` when absent."""
        normalized = _normalize_service(service)
        entries = self.read_installations()
        filtered = [entry for entry in entries if entry.get("service") != normalized]
        if len(filtered) == len(entries):
            return False
        self.write_installations(filtered)
        return True


def _normalize_service(service: str) -> str:
    normalized = service.strip()
    if not normalized:
        raise StateRegistryError("Service name must be a non-empty string.")
    return normalized


__all__ = ["INSTALLATIONS_FILE", "StateRegistry", "StateRegistryError"]
