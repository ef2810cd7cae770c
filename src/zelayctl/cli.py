"""Typer-powered command line interface for ``zelayctl``.

``zelayctl agent ...`` and ``zelayctl manager ...`` expose the same lifecycle
commands (``install``, ``update``, ``uninstall``, ``status``, ``logs`` and
``help``) for the two service profiles. Install settings are given as
``key=value`` tokens, the same form the shell installers accepted.
"""
from __future__ import annotations

import os
import platform
import socket
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import InstallCancelled, LifecycleError, SettingsError
from .exit_codes import ExitCode
from .lifecycle import LifecycleManager, LifecycleOutcome, profile_for
from .lifecycle.manager import PortConfirm
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .preflight import port_in_use
from .providers import HttpArtifactFetcher, SystemdError, SystemdProvider
from .service_config import ServiceConfigError
from .settings import AgentSettings, ManagerSettings, ServiceSettings, parse_dns_list
from .state import StateRegistry, StateRegistryError
from .templates import TemplateEngine, TemplateError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to zelayctl's YAML config file.",
)

SETTINGS_ARGUMENT = typer.Argument(
    None,
    help="Install settings as key=value tokens.",
    show_default=False,
)

YES_OPTION = typer.Option(
    False,
    "--yes",
    "-y",
    help="Assume yes for confirmation prompts (non-interactive mode).",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit structured JSON instead of human-readable output.",
)

app = typer.Typer(help="Deploy, update and remove Zelay agent and manager services.")
agent_app = typer.Typer(help="Manage the Zelay agent (zelay-agent.service).")
manager_app = typer.Typer(help="Manage the Zelay manager (zelay-manager.service).")
app.add_typer(agent_app, name="agent")
app.add_typer(manager_app, name="manager")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    systemd_provider: SystemdProvider
    fetcher: HttpArtifactFetcher

    def lifecycle(self, profile: str) -> LifecycleManager:
        """Return a :class:`LifecycleManager` for *profile*."""
        return LifecycleManager(
            profile=profile_for(profile, self.config.service(profile)),
            controller=self.systemd_provider,
            fetcher=self.fetcher,
            registry=self.registry,
            health=self.config.health,
            os_release_file=self.config.os_release_file,
            geteuid=os.geteuid,
            machine=platform.machine,
            port_probe=port_in_use,
        )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.ENVIRONMENT)) from exc

    templates = TemplateEngine.with_overrides(config.templates_dir)
    runtime = RuntimeContext(
        config=config,
        registry=StateRegistry(config.registry_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        logger=StructuredLogger(config.logs_dir),
        templates=templates,
        systemd_provider=SystemdProvider(
            templates=templates,
            systemd_dir=config.systemd.unit_dir,
            systemctl_bin=config.systemd.systemctl_bin,
            journalctl_bin=config.systemd.journalctl_bin,
        ),
        fetcher=HttpArtifactFetcher(
            timeout=config.fetch.timeout,
            retries=config.fetch.retries,
            backoff_seconds=config.fetch.backoff_seconds,
        ),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the zelayctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"zelayctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _info(message: str) -> None:
    console.print(f"[blue][INFO][/blue] {message}")


def _success(message: str) -> None:
    console.print(f"[green][SUCCESS][/green] {message}")


def _warning(message: str) -> None:
    console.print(f"[yellow][WARNING][/yellow] {message}")


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
    hints: Sequence[str] = (),
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red][ERROR] {message}[/red]")
    for hint in hints:
        console.print(f"  [dim]{hint}[/dim]")
    op.error(message, errors=list(errors or [message, *hints]), rc=rc)
    raise typer.Exit(code=rc)


@contextmanager
def _guard(op: OperationScope) -> Iterator[None]:
    """Translate lifecycle and provider failures into exit codes."""
    try:
        yield
    except InstallCancelled as exc:
        _warning(str(exc))
        op.warning(str(exc), warnings=[str(exc)])
        raise typer.Exit(code=int(ExitCode.OK)) from exc
    except LifecycleError as exc:
        _command_error(op, str(exc), rc=int(exc.exit_code), hints=exc.hints)
    except LockTimeoutError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except SystemdError as exc:
        _command_error(op, f"systemd error: {exc}", rc=int(ExitCode.PROVIDER))
    except (StateRegistryError, ServiceConfigError, TemplateError, ConfigError) as exc:
        _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
    except OSError as exc:
        _command_error(op, f"Filesystem error: {exc}", rc=int(ExitCode.ENVIRONMENT))


def _confirm_busy_ports(yes: bool) -> PortConfirm:
    def _confirm(ports: Sequence[int]) -> bool:
        joined = ", ".join(str(port) for port in ports)
        _warning(f"Port(s) {joined} already in use.")
        if yes:
            return True
        return typer.confirm("Continue with the installation anyway?", default=False)

    return _confirm


def _prompt_agent_settings(tokens: Sequence[str], yes: bool) -> AgentSettings:
    values = AgentSettings.partial_from_tokens(tokens)
    server = values.get("server", "")
    api_key = values.get("apikey", "")
    dns_raw = values.get("dns", "")

    if server and api_key:
        settings = AgentSettings(
            server=server, api_key=api_key, dns=parse_dns_list(dns_raw or None)
        )
        _info("Non-interactive install.")
        _info(f"Server: {settings.server}")
        _info(f"DNS: {','.join(settings.dns)}")
        return settings

    if yes:
        raise SettingsError(
            "server and apikey are required with --yes.",
            hints=["zelayctl agent install server=IP:PORT apikey=YOUR_KEY --yes"],
        )

    while not server.strip():
        server = typer.prompt("Server address (HOST:PORT)", default="", show_default=False)
        if not server.strip():
            _warning("Server address must not be empty.")
    while not api_key.strip():
        api_key = typer.prompt("API key", default="", show_default=False)
        if not api_key.strip():
            _warning("API key must not be empty.")
    if not dns_raw:
        dns_raw = typer.prompt(
            "DNS servers (comma separated)",
            default=",".join(parse_dns_list(None)),
        )
    settings = AgentSettings(
        server=server.strip(), api_key=api_key.strip(), dns=parse_dns_list(dns_raw)
    )

    _info("Configuration:")
    _info(f"  Server: {settings.server}")
    _info(f"  API key: {settings.masked_api_key}")
    _info(f"  DNS: {','.join(settings.dns)}")
    if not typer.confirm("Is this configuration correct?", default=True):
        raise InstallCancelled("Install cancelled by operator.")
    return settings


def _print_install_summary(manager: LifecycleManager, outcome: LifecycleOutcome) -> None:
    details = outcome.details
    table = Table(show_header=False, title=f"{manager.profile.description} installed")
    table.add_row("Service", manager.unit_name)
    table.add_row("Install dir", str(details.get("install_dir")))
    if details.get("config_path"):
        table.add_row("Config", str(details.get("config_path")))
    table.add_row("Data dir", str(details.get("data_dir")))
    settings = details.get("settings")
    if isinstance(settings, dict):
        for key, value in settings.items():
            if value is None:
                continue
            shown = ",".join(value) if isinstance(value, list) else str(value)
            table.add_row(key, shown)
    if outcome.version_string:
        table.add_row("Version", outcome.version_string)
    access_url = _access_url(details)
    if access_url:
        table.add_row("Access URL", access_url)
    table.add_row("sha256", (outcome.version_marker or "")[:16])
    console.print(table)
    if access_url:
        console.print("Next steps:")
        console.print(f"  1. Open the web panel at {access_url}")
        console.print("  2. Create the administrator account")
        console.print("  3. Sign in and start managing agents")
    console.print("Common commands:")
    for command in manager.iter_commands():
        console.print(f"  {command}")


# ---------------------------------------------------------------------------
# Shared command bodies
# ---------------------------------------------------------------------------
def _install(
    ctx: typer.Context,
    profile: str,
    tokens: Sequence[str],
    yes: bool,
) -> None:
    runtime = _get_runtime(ctx)
    manager = runtime.lifecycle(profile)
    with runtime.logger.operation(
        f"{profile} install",
        args={"tokens": _token_map(tokens), "yes": yes},
        target={"kind": "service", "name": manager.service_name},
    ) as op:
        with _guard(op):
            settings: ServiceSettings
            if profile == "agent":
                settings = _prompt_agent_settings(tokens, yes)
            else:
                settings = ManagerSettings.from_tokens(tokens)
            _info(f"Installing {manager.service_name}...")
            with runtime.locks.mutate_services([manager.service_name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = manager.install(settings, op, confirm_ports=_confirm_busy_ports(yes))
        _success(outcome.message)
        _print_install_summary(manager, outcome)
        op.success(outcome.message, changed=outcome.changed, context=outcome.to_context())


def _update(ctx: typer.Context, profile: str) -> None:
    runtime = _get_runtime(ctx)
    manager = runtime.lifecycle(profile)
    with runtime.logger.operation(
        f"{profile} update",
        target={"kind": "service", "name": manager.service_name},
    ) as op:
        with _guard(op):
            _info(f"Updating {manager.service_name}...")
            with runtime.locks.mutate_services([manager.service_name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = manager.update(op)
        if outcome.previous_version or outcome.version_string:
            _info(f"Old version: {outcome.previous_version or 'unknown'}")
            _info(f"New version: {outcome.version_string or 'unknown'}")
        if outcome.changed == 0:
            _info("Downloaded artifact is identical to the installed one.")
        _success(outcome.message)
        op.success(
            outcome.message,
            changed=outcome.changed,
            backups=[str(manager.store.backup_path)],
            context=outcome.to_context(),
        )


def _uninstall(ctx: typer.Context, profile: str, yes: bool, keep_data: bool) -> None:
    runtime = _get_runtime(ctx)
    manager = runtime.lifecycle(profile)

    def _confirm() -> bool:
        if yes:
            return True
        if keep_data:
            _warning(f"This removes {manager.service_name}; {manager.profile.install_dir} is kept.")
        else:
            _warning(f"This removes {manager.service_name} and all data under "
                     f"{manager.profile.install_dir}.")
        reply = typer.prompt("Type 'yes' to confirm uninstall", default="", show_default=False)
        return reply.strip().lower() == "yes"

    with runtime.logger.operation(
        f"{profile} uninstall",
        args={"yes": yes, "keep_data": keep_data},
        target={"kind": "service", "name": manager.service_name},
    ) as op:
        with _guard(op):
            with runtime.locks.mutate_services([manager.service_name]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                outcome = manager.uninstall(op, confirm=_confirm, keep_data=keep_data)
        if outcome.details.get("cancelled"):
            _info(outcome.message)
        else:
            _success(outcome.message)
            if keep_data:
                _info(f"Kept configuration and data: {manager.profile.install_dir}")
        op.success(outcome.message, changed=outcome.changed, context=outcome.to_context())


def _status(ctx: typer.Context, profile: str, json_output: bool) -> None:
    runtime = _get_runtime(ctx)
    manager = runtime.lifecycle(profile)
    with runtime.logger.operation(
        f"{profile} status",
        args={"json": json_output},
        target={"kind": "service", "name": manager.service_name},
    ) as op:
        with _guard(op):
            report = manager.status()
        payload = report.to_dict()
        if json_output:
            console.print_json(data=payload)
        else:
            table = Table(show_header=False)
            table.add_row("Service", report.unit_name)
            table.add_row("State", report.state.value)
            table.add_row("Active", "yes" if report.active else "no")
            table.add_row("Enabled", "yes" if report.enabled else "no")
            table.add_row("Install dir", str(report.install_dir))
            if report.version_string:
                table.add_row("Version", report.version_string)
            if report.version_marker:
                table.add_row("sha256", report.version_marker[:16])
            table.add_row("Backup", "present" if report.backup_present else "none")
            dns = report.details.get("dns")
            if isinstance(dns, list) and dns:
                table.add_row("DNS", ",".join(dns))
            if report.details.get("legacy"):
                table.add_row("Registry", "not recorded (installed by script)")
            console.print(table)
        op.success("Reported service status.", context=payload)


def _logs(
    ctx: typer.Context,
    profile: str,
    lines: int,
    follow: bool,
    since: str | None,
) -> None:
    runtime = _get_runtime(ctx)
    manager = runtime.lifecycle(profile)
    with runtime.logger.operation(
        f"{profile} logs",
        args={"lines": lines, "follow": follow, "since": since},
        target={"kind": "service", "name": manager.service_name},
    ) as op:
        with _guard(op):
            result = runtime.systemd_provider.logs(
                manager.service_name, lines=lines, since=since, follow=follow
            )
        output = (getattr(result, "stdout", "") or "").rstrip()
        if output:
            console.print(output, markup=False, highlight=False)
        op.success("Displayed service logs.")


def _access_url(details: Mapping[str, object]) -> str | None:
    settings = details.get("settings")
    if not isinstance(settings, dict) or settings.get("webport") is None:
        return None
    return f"http://{socket.gethostname()}:{settings['webport']}"


def _token_map(tokens: Sequence[str]) -> dict[str, str]:
    values: dict[str, str] = {}
    for token in tokens:
        key, _, value = token.partition("=")
        values[key] = value
    return values


# ---------------------------------------------------------------------------
# Agent commands
# ---------------------------------------------------------------------------
@agent_app.command("install")
def agent_install(
    ctx: typer.Context,
    tokens: list[str] | None = SETTINGS_ARGUMENT,
    yes: bool = YES_OPTION,
) -> None:
    """Install the agent: server=IP:PORT apikey=KEY [dns=HOST:PORT,...]."""
    _install(ctx, "agent", tokens or [], yes)


@agent_app.command("update")
def agent_update(ctx: typer.Context) -> None:
    """Download the latest agent binary, rolling back if it fails to start."""
    _update(ctx, "agent")


@agent_app.command("upgrade", hidden=True)
def agent_upgrade(ctx: typer.Context) -> None:
    """Alias for ``update``."""
    _update(ctx, "agent")


@agent_app.command("uninstall")
def agent_uninstall(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    keep_data: bool = typer.Option(
        False,
        "--keep-data",
        help="Keep the configuration file and instance data.",
    ),
) -> None:
    """Stop and remove the agent service."""
    _uninstall(ctx, "agent", yes, keep_data)


@agent_app.command("remove", hidden=True)
def agent_remove(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    keep_data: bool = typer.Option(False, "--keep-data"),
) -> None:
    """Alias for ``uninstall``."""
    _uninstall(ctx, "agent", yes, keep_data)


@agent_app.command("status")
def agent_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the recorded and live state of the agent."""
    _status(ctx, "agent", json_output)


@agent_app.command("logs")
def agent_logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", help="Number of journal lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow the journal."),
    since: str | None = typer.Option(None, "--since", help="Show entries since this time."),
) -> None:
    """Show journal output for the agent."""
    _logs(ctx, "agent", lines, follow, since)


@agent_app.command("help")
def agent_help(ctx: typer.Context) -> None:
    """Show agent usage."""
    parent = ctx.parent or ctx
    console.print(parent.get_help())
    console.print("\nExamples:")
    console.print("  zelayctl agent install server=103.73.220.3:13001 apikey=abc123xyz")
    console.print("  zelayctl agent install server=1.2.3.4:13001 apikey=KEY dns=8.8.8.8:53")


# ---------------------------------------------------------------------------
# Manager commands
# ---------------------------------------------------------------------------
@manager_app.command("install")
def manager_install(
    ctx: typer.Context,
    tokens: list[str] | None = SETTINGS_ARGUMENT,
    yes: bool = YES_OPTION,
) -> None:
    """Install the manager: [webport=3000] [agentport=3001] [datadir=PATH]."""
    _install(ctx, "manager", tokens or [], yes)


@manager_app.command("update")
def manager_update(ctx: typer.Context) -> None:
    """Download the latest manager binary, rolling back if it fails to start."""
    _update(ctx, "manager")


@manager_app.command("upgrade", hidden=True)
def manager_upgrade(ctx: typer.Context) -> None:
    """Alias for ``update``."""
    _update(ctx, "manager")


@manager_app.command("uninstall")
def manager_uninstall(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    keep_data: bool = typer.Option(
        False,
        "--keep-data",
        help="Keep the install directory and its data.",
    ),
) -> None:
    """Stop and remove the manager service and its data."""
    _uninstall(ctx, "manager", yes, keep_data)


@manager_app.command("remove", hidden=True)
def manager_remove(
    ctx: typer.Context,
    yes: bool = YES_OPTION,
    keep_data: bool = typer.Option(False, "--keep-data"),
) -> None:
    """Alias for ``uninstall``."""
    _uninstall(ctx, "manager", yes, keep_data)


@manager_app.command("status")
def manager_status(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Show the recorded and live state of the manager."""
    _status(ctx, "manager", json_output)


@manager_app.command("logs")
def manager_logs(
    ctx: typer.Context,
    lines: int = typer.Option(50, "--lines", "-n", help="Number of journal lines to show."),
    follow: bool = typer.Option(False, "--follow", "-f", help="Follow the journal."),
    since: str | None = typer.Option(None, "--since", help="Show entries since this time."),
) -> None:
    """Show journal output for the manager."""
    _logs(ctx, "manager", lines, follow, since)


@manager_app.command("help")
def manager_help(ctx: typer.Context) -> None:
    """Show manager usage."""
    parent = ctx.parent or ctx
    console.print(parent.get_help())
    console.print("\nExamples:")
    console.print("  zelayctl manager install")
    console.print("  zelayctl manager install webport=8080 agentport=8081 datadir=/data/zelay")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
