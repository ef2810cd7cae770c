"""Install behaviour of the lifecycle manager."""
from __future__ import annotations

import hashlib
import json
import os

import pytest
from conftest import BROKEN, GOOD_V1, GOOD_V2, LifecycleEnv, fetch_error, step_names

from zelayctl.errors import (
    FetchError,
    InstallCancelled,
    InsufficientPrivilegeError,
    ServiceStartError,
    SettingsError,
    UnsupportedPlatformError,
)
from zelayctl.lifecycle import InstallationState
from zelayctl.logging import OperationScope
from zelayctl.settings import AgentSettings, ManagerSettings
from zelayctl.templates import TemplateEngine


def _agent_settings(tokens: list[str]) -> AgentSettings:
    return AgentSettings.from_tokens(tokens)


def test_install_agent_starts_service_and_writes_config(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """Install with server/apikey yields a running service and default DNS config."""
    manager = lifecycle_env.manager("agent")

    outcome = manager.install(_agent_settings(agent_tokens), op)

    assert outcome.state is InstallationState.INSTALLED
    assert lifecycle_env.controller.is_active("zelay-agent")
    assert lifecycle_env.controller.is_enabled("zelay-agent")

    install_dir = lifecycle_env.config.agent.install_dir
    active = install_dir / "zelay"
    assert active.read_bytes() == GOOD_V1
    assert os.access(active, os.X_OK)
    assert (install_dir / "instances").is_dir()

    document = json.loads((install_dir / "zelay.conf").read_text(encoding="utf-8"))
    assert document["dns"]["nameservers"] == ["223.5.5.5:53", "119.29.29.29:53"]
    assert document["dns"]["mode"] == "ipv4_then_ipv6"
    assert document["network"]["use_udp"] is True
    assert document["endpoints"] == []

    record = lifecycle_env.registry.get_installation("zelay-agent")
    assert record is not None
    assert record["state"] == "installed"
    assert record["version_marker"] == hashlib.sha256(GOOD_V1).hexdigest()
    assert record["settings"]["apikey"] != "K1"
    assert lifecycle_env.fetcher.urls == [lifecycle_env.config.agent.download_url]


def test_install_agent_unit_descriptor(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """The agent unit runs ``zelay api`` with the generated config."""
    manager = lifecycle_env.manager("agent")
    manager.install(_agent_settings(agent_tokens), op)

    descriptor = lifecycle_env.controller.descriptors["zelay-agent"]
    install_dir = lifecycle_env.config.agent.install_dir
    assert list(descriptor.exec_start) == [
        str(install_dir / "zelay"),
        "api",
        "-c",
        str(install_dir / "zelay.conf"),
        "--server",
        "1.2.3.4:13001",
        "--key",
        "K1",
    ]
    assert descriptor.restart == "on-failure"
    assert descriptor.restart_prevent_exit_status == 23
    assert descriptor.exec_reload == "/bin/kill -HUP $MAINPID"


def test_install_agent_unit_escapes_api_key(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Specifier and variable characters in the API key reach the unit escaped."""
    manager = lifecycle_env.manager("agent")
    manager.install(_agent_settings(["server=1.2.3.4:13001", "apikey=ab%hcd$HOME"]), op)

    descriptor = lifecycle_env.controller.descriptors["zelay-agent"]
    rendered = TemplateEngine.with_overrides(None).render_to_string(
        "systemd/service.j2", descriptor.to_context()
    )

    exec_lines = [line for line in rendered.splitlines() if line.startswith("ExecStart=")]
    assert len(exec_lines) == 1
    assert exec_lines[0].endswith("--key 'ab%%hcd$$HOME'")
    assert "ExecReload=/bin/kill -HUP $MAINPID" in rendered


def test_install_rejects_api_key_with_newline(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """A newline in the API key is refused before anything is written."""
    manager = lifecycle_env.manager("agent")

    with pytest.raises(SettingsError, match="control characters"):
        manager.install(
            AgentSettings(server="1.2.3.4:13001", api_key="K1\nExecStartPre=/bin/false"), op
        )

    assert not lifecycle_env.config.agent.install_dir.exists()
    assert lifecycle_env.registry.get_installation("zelay-agent") is None


def test_install_manager_uses_ports_and_data_dir(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Manager install wires ports and the default data directory into the unit."""
    manager = lifecycle_env.manager("manager")

    outcome = manager.install(ManagerSettings.from_tokens(["web-port=8080"]), op)

    install_dir = lifecycle_env.config.manager.install_dir
    data_dir = install_dir / "data"
    assert data_dir.is_dir()
    assert outcome.details["data_dir"] == data_dir
    descriptor = lifecycle_env.controller.descriptors["zelay-manager"]
    assert list(descriptor.exec_start)[1:] == [
        "--webport",
        "8080",
        "--agentport",
        "3001",
        "--data-dir",
        str(data_dir),
    ]
    assert descriptor.restart == "always"
    assert descriptor.syslog_identifier == "zelay-manager"
    assert not (install_dir / "zelay.conf").exists()


def test_install_twice_keeps_single_installation(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """Repeating an install with identical settings leaves exactly one record."""
    manager = lifecycle_env.manager("agent")
    manager.install(_agent_settings(agent_tokens), op)
    first = lifecycle_env.registry.get_installation("zelay-agent")

    manager.install(_agent_settings(agent_tokens), op)

    entries = lifecycle_env.registry.read_installations()
    assert [entry["service"] for entry in entries] == ["zelay-agent"]
    assert entries[0]["state"] == "installed"
    assert first is not None
    assert entries[0]["installed_at"] == first["installed_at"]
    assert lifecycle_env.controller.is_active("zelay-agent")


def test_install_requires_root(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """Non-root callers are rejected before anything is written."""
    lifecycle_env.euid = 1000
    manager = lifecycle_env.manager("agent")

    with pytest.raises(InsufficientPrivilegeError) as excinfo:
        manager.install(_agent_settings(agent_tokens), op)

    assert isinstance(excinfo.value, PermissionError)
    assert not lifecycle_env.config.agent.install_dir.exists()
    assert lifecycle_env.registry.read_installations() == []


def test_install_rejects_unsupported_architecture(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """Only amd64 and arm64 hosts are accepted."""
    lifecycle_env.machine = "mips64"
    manager = lifecycle_env.manager("agent")

    with pytest.raises(UnsupportedPlatformError):
        manager.install(_agent_settings(agent_tokens), op)

    assert lifecycle_env.fetcher.urls == []


def test_install_accepts_arm64(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """``aarch64`` hosts install normally."""
    lifecycle_env.machine = "aarch64"
    manager = lifecycle_env.manager("agent")

    outcome = manager.install(_agent_settings(agent_tokens), op)

    assert outcome.state is InstallationState.INSTALLED


def test_install_requires_os_release(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A missing os-release file means the platform cannot be identified."""
    lifecycle_env.config.os_release_file.unlink()
    manager = lifecycle_env.manager("agent")

    with pytest.raises(UnsupportedPlatformError):
        manager.install(_agent_settings(agent_tokens), op)


def test_install_rejects_settings_for_other_profile(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Manager settings cannot install the agent."""
    manager = lifecycle_env.manager("agent")

    with pytest.raises(SettingsError):
        manager.install(ManagerSettings(), op)


def test_install_busy_port_declined_cancels(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Declining the port warning cancels without touching the host."""
    lifecycle_env.busy_ports.add(3000)
    manager = lifecycle_env.manager("manager")
    seen: list[list[int]] = []

    def decline(ports: list[int]) -> bool:
        seen.append(list(ports))
        return False

    with pytest.raises(InstallCancelled):
        manager.install(ManagerSettings(), op, confirm_ports=decline)

    assert seen == [[3000]]
    assert not lifecycle_env.config.manager.install_dir.exists()
    assert lifecycle_env.registry.read_installations() == []


def test_install_busy_port_accepted_continues(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
) -> None:
    """Accepting the port warning proceeds with the install."""
    lifecycle_env.busy_ports.update({3000, 3001})
    manager = lifecycle_env.manager("manager")

    outcome = manager.install(ManagerSettings(), op, confirm_ports=lambda ports: True)

    assert outcome.state is InstallationState.INSTALLED
    assert "preflight.ports" in step_names(op)


def test_install_start_failure_marks_failed(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A service that never becomes active fails the install with a journal hint."""
    lifecycle_env.fetcher.payload = BROKEN
    manager = lifecycle_env.manager("agent")

    with pytest.raises(ServiceStartError) as excinfo:
        manager.install(_agent_settings(agent_tokens), op)

    assert "journalctl -u zelay-agent.service -n 50" in excinfo.value.hints
    record = lifecycle_env.registry.get_installation("zelay-agent")
    assert record is not None
    assert record["state"] == "failed"
    # First installs are not rolled back.
    assert (lifecycle_env.config.agent.install_dir / "zelay").read_bytes() == BROKEN


def test_install_can_retry_after_failure(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A failed installation can be installed again."""
    lifecycle_env.fetcher.payload = BROKEN
    manager = lifecycle_env.manager("agent")
    with pytest.raises(ServiceStartError):
        manager.install(_agent_settings(agent_tokens), op)

    lifecycle_env.fetcher.payload = GOOD_V1
    outcome = manager.install(_agent_settings(agent_tokens), op)

    assert outcome.state is InstallationState.INSTALLED
    assert lifecycle_env.controller.is_active("zelay-agent")


def test_first_install_fetch_failure_marks_failed(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A failed download on a fresh host leaves no artifact and a failed record."""
    lifecycle_env.fetcher.error = fetch_error()
    manager = lifecycle_env.manager("agent")

    with pytest.raises(FetchError):
        manager.install(_agent_settings(agent_tokens), op)

    install_dir = lifecycle_env.config.agent.install_dir
    assert not (install_dir / "zelay").exists()
    assert [path.name for path in install_dir.iterdir() if path.name.startswith(".")] == []
    record = lifecycle_env.registry.get_installation("zelay-agent")
    assert record is not None
    assert record["state"] == "failed"


def test_reinstall_fetch_failure_keeps_healthy_service(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A reinstall whose download fails restarts the old service and stays installed."""
    manager = lifecycle_env.manager("agent")
    manager.install(_agent_settings(agent_tokens), op)

    lifecycle_env.fetcher.payload = GOOD_V2
    lifecycle_env.fetcher.error = fetch_error()
    with pytest.raises(FetchError):
        manager.install(_agent_settings(agent_tokens), op)

    assert (lifecycle_env.config.agent.install_dir / "zelay").read_bytes() == GOOD_V1
    assert lifecycle_env.controller.is_active("zelay-agent")
    record = lifecycle_env.registry.get_installation("zelay-agent")
    assert record is not None
    assert record["state"] == "installed"


def test_interrupted_state_is_treated_as_failed(
    lifecycle_env: LifecycleEnv,
    op: OperationScope,
    agent_tokens: list[str],
) -> None:
    """A record left in an intermediate state is loaded as failed and can be reinstalled."""
    manager = lifecycle_env.manager("agent")
    manager.install(_agent_settings(agent_tokens), op)
    lifecycle_env.registry.update_installation("zelay-agent", {"state": "updating"})

    installation = manager.load_installation()

    assert installation is not None
    assert installation.state is InstallationState.FAILED
    record = lifecycle_env.registry.get_installation("zelay-agent")
    assert record is not None
    assert record["state"] == "failed"

    outcome = manager.install(_agent_settings(agent_tokens), op)
    assert outcome.state is InstallationState.INSTALLED
