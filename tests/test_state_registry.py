"""Tests for the state registry helpers."""
from __future__ import annotations

import stat
from pathlib import Path

import pytest

from zelayctl.state import StateRegistry, StateRegistryError


def _entry(service: str, **extra: object) -> dict[str, object]:
    return {"service": service, "state": "installed", **extra}


def test_read_missing_returns_default(tmp_path: Path) -> None:
    """Reading before anything was written yields empty results."""
    registry = StateRegistry(tmp_path / "registry")

    assert registry.read_installations() == []
    assert registry.get_installation("zelay-agent") is None
    assert not registry.root.exists()


def test_upsert_get_update_remove(tmp_path: Path) -> None:
    """Installation records are keyed by service name."""
    registry = StateRegistry(tmp_path / "registry")

    registry.upsert_installation(_entry("zelay-agent", profile="agent"))
    registry.upsert_installation(_entry("zelay-manager", profile="manager"))
    registry.upsert_installation(_entry("zelay-agent", profile="agent", state="failed"))

    entries = registry.read_installations()
    assert [entry["service"] for entry in entries] == ["zelay-agent", "zelay-manager"]
    assert registry.get_installation("zelay-agent")["state"] == "failed"

    merged = registry.update_installation("zelay-manager", {"last_outcome": "updated"})
    assert merged["last_outcome"] == "updated"
    assert merged["profile"] == "manager"

    assert registry.remove_installation("zelay-agent") is True
    assert registry.remove_installation("zelay-agent") is False
    assert [entry["service"] for entry in registry.read_installations()] == ["zelay-manager"]


def test_update_missing_installation_raises(tmp_path: Path) -> None:
    """Updating an unknown service is an error rather than an implicit insert."""
    registry = StateRegistry(tmp_path / "registry")

    with pytest.raises(StateRegistryError, match="not found"):
        registry.update_installation("zelay-agent", {"state": "failed"})


def test_writes_are_private(tmp_path: Path) -> None:
    """Registry files are readable by root only and no temp files linger."""
    registry = StateRegistry(tmp_path / "registry")

    registry.upsert_installation(_entry("zelay-agent"))

    path = registry.path_for("installations.yml")
    assert stat.S_IMODE(path.stat().st_mode) == 0o600
    assert [entry.name for entry in registry.root.iterdir()] == ["installations.yml"]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Corrupt registry files surface as :class:`StateRegistryError`."""
    registry = StateRegistry(tmp_path / "registry")
    registry.ensure_root()
    registry.path_for("installations.yml").write_text("key: [unclosed\n", encoding="utf-8")

    with pytest.raises(StateRegistryError, match="Failed to parse"):
        registry.read_installations()


def test_blank_service_names_are_rejected(tmp_path: Path) -> None:
    """Records need a service name."""
    registry = StateRegistry(tmp_path / "registry")

    with pytest.raises(StateRegistryError):
        registry.upsert_installation({"service": "  "})
