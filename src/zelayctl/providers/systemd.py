"""Systemd provider for managing zelay service units."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from ..templates import TemplateEngine

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..lifecycle.models import UnitDescriptor

UNIT_TEMPLATE = "systemd/service.j2"


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and drive systemd units for zelay services.

    Every state-changing call is idempotent: ``stop`` on a stopped unit,
    ``disable`` on a disabled unit and ``remove`` on a missing unit file are
    no-ops that report ``False``.
    """

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def unit_name(self, name: str) -> str:
        """Return the systemd unit name for service *name*."""
        safe = name.replace("/", "-")
        return safe if safe.endswith(".service") else f"{safe}.service"

    def unit_path(self, name: str) -> Path:
        """Return the full path for the service unit file."""
        return self.systemd_dir / self.unit_name(name)

    def unit_exists(self, name: str) -> bool:
        """Return ``True`` when a unit file for *name* is present."""
        return self.unit_path(name).exists()

    def register_unit(self, descriptor: UnitDescriptor) -> bool:
        """Render *descriptor* into the unit directory and reload on change."""
        path = self.unit_path(descriptor.name)
        changed = self.templates.render_to_path(
            UNIT_TEMPLATE, path, descriptor.to_context(), mode=descriptor.unit_mode
        )
        if changed:
            self.reload_units()
        return changed

    def reload_units(self) -> None:
        """Ask systemd to re-read unit files."""
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def is_active(self, name: str) -> bool:
        """Return ``True`` when the unit is currently active."""
        result = self._systemctl("is-active", self.unit_name(name), "--quiet", check=False)
        return result.returncode == 0

    def is_enabled(self, name: str) -> bool:
        """Return ``True`` when the unit is enabled at boot."""
        result = self._systemctl("is-enabled", self.unit_name(name), "--quiet", check=False)
        return result.returncode == 0

    def enable(self, name: str) -> subprocess.CompletedProcess[str]:
        """Enable the unit."""
        return self._systemctl("enable", self.unit_name(name))

    def disable(self, name: str) -> bool:
        """Disable the unit when enabled; return whether anything changed."""
        if not self.is_enabled(name):
            return False
        self._systemctl("disable", self.unit_name(name))
        return True

    def start(self, name: str) -> subprocess.CompletedProcess[str]:
        """Start the unit."""
        return self._systemctl("start", self.unit_name(name))

    def stop(self, name: str) -> bool:
        """Stop the unit; return whether it was active beforehand.

        ``stop`` is issued whenever the unit file exists, since a unit waiting
        in ``activating (auto-restart)`` is not reported as active.
        """
        was_active = self.is_active(name)
        if not was_active and not self.unit_exists(name):
            return False
        self._systemctl("stop", self.unit_name(name))
        return was_active

    def logs(
        self,
        name: str,
        *,
        lines: int | None = None,
        since: str | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", self.unit_name(name), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    def remove(self, name: str) -> bool:
        """Remove the unit file for *name*; return ``False`` when it was absent."""
        path = self.unit_path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self.reload_units()
        return True

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *extra: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command, *extra]
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=capture_output,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["UNIT_TEMPLATE", "SystemdError", "SystemdProvider"]
