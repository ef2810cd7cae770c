"""Uninstall and status behaviour of the lifecycle manager."""
from __future__ import annotations

import pytest
from conftest import GOOD_V1, LifecycleEnv

from zelayctl.errors import InsufficientPrivilegeError
from zelayctl.lifecycle import InstallationState, LifecycleManager
from zelayctl.logging import OperationScope
from zelayctl.settings import AgentSettings


def _install_agent(env: LifecycleEnv, op: OperationScope) -> LifecycleManager:
    manager = env.manager("agent")
    manager.install(AgentSettings.from_tokens(["server=1.2.3.4:13001", "apikey=K1"]), op)
    return manager


def test_uninstall_declined_changes_nothing(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Declining the confirmation leaves the service, files and record alone."""
    manager = _install_agent(lifecycle_env, op)

    outcome = manager.uninstall(op, confirm=lambda: False)

    assert outcome.details["cancelled"] is True
    assert outcome.changed == 0
    assert outcome.state is InstallationState.INSTALLED
    assert lifecycle_env.controller.is_active("zelay-agent")
    assert lifecycle_env.controller.unit_exists("zelay-agent")
    assert (lifecycle_env.config.agent.install_dir / "zelay").exists()
    assert lifecycle_env.registry.get_installation("zelay-agent") is not None


def test_uninstall_removes_service_files_and_record(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """A confirmed uninstall stops, disables and removes everything it created."""
    manager = _install_agent(lifecycle_env, op)

    outcome = manager.uninstall(op, confirm=lambda: True)

    assert outcome.state is InstallationState.ABSENT
    assert outcome.changed > 0
    assert not lifecycle_env.controller.is_active("zelay-agent")
    assert not lifecycle_env.controller.is_enabled("zelay-agent")
    assert not lifecycle_env.controller.unit_exists("zelay-agent")
    assert not lifecycle_env.config.agent.install_dir.exists()
    assert lifecycle_env.registry.get_installation("zelay-agent") is None


def test_uninstall_keep_data_preserves_install_dir(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """``keep_data`` removes the unit but leaves the install directory in place."""
    manager = _install_agent(lifecycle_env, op)

    manager.uninstall(op, confirm=lambda: True, keep_data=True)

    assert not lifecycle_env.controller.unit_exists("zelay-agent")
    assert (lifecycle_env.config.agent.install_dir / "zelay").read_bytes() == GOOD_V1
    assert lifecycle_env.registry.get_installation("zelay-agent") is None


def test_uninstall_when_nothing_installed_is_noop(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Uninstalling an absent service succeeds without changes."""
    manager = lifecycle_env.manager("manager")

    outcome = manager.uninstall(op, confirm=lambda: True)

    assert outcome.changed == 0
    assert "nothing to do" in outcome.message
    assert lifecycle_env.controller.calls == []


def test_uninstall_failed_installation(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """A failed installation can still be removed."""
    manager = _install_agent(lifecycle_env, op)
    lifecycle_env.registry.update_installation("zelay-agent", {"state": "failed"})

    outcome = manager.uninstall(op, confirm=lambda: True)

    assert outcome.state is InstallationState.ABSENT
    assert lifecycle_env.registry.read_installations() == []


def test_uninstall_requires_root(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Non-root callers are rejected before the confirmation prompt."""
    manager = _install_agent(lifecycle_env, op)
    lifecycle_env.euid = 1000
    asked: list[bool] = []

    def confirm() -> bool:
        asked.append(True)
        return True

    with pytest.raises(InsufficientPrivilegeError):
        manager.uninstall(op, confirm=confirm)

    assert asked == []
    assert lifecycle_env.controller.is_active("zelay-agent")


def test_status_reports_installed_service(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Status combines the registry record with live unit state."""
    manager = _install_agent(lifecycle_env, op)

    report = manager.status().to_dict()

    assert report["service"] == "zelay-agent"
    assert report["unit"] == "zelay-agent.service"
    assert report["state"] == "installed"
    assert report["active"] is True
    assert report["enabled"] is True
    assert report["backup_present"] is False
    assert report["last_outcome"] == "installed"
    assert report["dns"] == ["223.5.5.5:53", "119.29.29.29:53"]


def test_status_reports_absent_service(lifecycle_env: LifecycleEnv) -> None:
    """A service that was never installed reports ``absent`` and inactive."""
    report = lifecycle_env.manager("manager").status()

    assert report.state is InstallationState.ABSENT
    assert report.active is False
    assert report.version_marker is None


def test_status_flags_legacy_installation(lifecycle_env: LifecycleEnv) -> None:
    """A unit plus binary without a record is reported as a legacy install."""
    manager = lifecycle_env.manager("manager")
    install_dir = lifecycle_env.config.manager.install_dir
    install_dir.mkdir(parents=True)
    (install_dir / "zelay-manager").write_bytes(GOOD_V1)
    lifecycle_env.controller.unit_dir.mkdir(parents=True)
    lifecycle_env.controller.unit_path("zelay-manager").write_text("[Unit]\n", encoding="utf-8")

    report = manager.status()

    assert report.state is InstallationState.INSTALLED
    assert report.details["legacy"] is True
    assert lifecycle_env.registry.read_installations() == []


def test_iter_commands_lists_operator_commands(lifecycle_env: LifecycleEnv) -> None:
    """The post-install summary names the unit in every command."""
    manager = lifecycle_env.manager("manager")

    commands = list(manager.iter_commands())

    assert commands[0] == "systemctl status zelay-manager.service"
    assert commands[-1] == "journalctl -u zelay-manager.service -f"
