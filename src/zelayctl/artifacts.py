"""Artifact store: the active executable, its single backup and staged downloads.

All writes land in the install directory first (a hidden temporary file) and
are moved into place with :func:`os.replace`, so the active path always names
either the previous or the new complete binary and never a partial download.
"""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
import tempfile
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from .errors import BackupError, FetchError

BACKUP_SUFFIX = ".bak"
EXECUTABLE_MODE = 0o755


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class ArtifactStore:
    """Manage the binary for one service under *install_dir*."""

    install_dir: Path
    binary_name: str

    @property
    def active_path(self) -> Path:
        """Return the path systemd executes."""
        return self.install_dir / self.binary_name

    @property
    def backup_path(self) -> Path:
        """Return the path of the last-known-good copy."""
        return self.install_dir / f"{self.binary_name}{BACKUP_SUFFIX}"

    def has_active(self) -> bool:
        """Return ``True`` when an active artifact is present."""
        return self.active_path.is_file()

    def has_backup(self) -> bool:
        """Return ``True`` when a backup artifact is present."""
        return self.backup_path.is_file()

    def version_marker(self) -> str | None:
        """Return the checksum of the active artifact, or ``None`` if absent."""
        if not self.has_active():
            return None
        return compute_checksum(self.active_path)

    def stage(self, chunks: Iterable[bytes]) -> Path:
        """Write *chunks* to a staging file beside the active path.

        Raises :class:`FetchError` when the payload is empty or the transfer
        fails mid-stream; the staging file is removed in both cases.
        """
        self.install_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(self.install_dir), prefix=f".{self.binary_name}.")
        staged = Path(tmp_name)
        size = 0
        try:
            with os.fdopen(fd, "wb") as handle:
                for chunk in chunks:
                    handle.write(chunk)
                    size += len(chunk)
                handle.flush()
                os.fsync(handle.fileno())
        except FetchError:
            staged.unlink(missing_ok=True)
            raise
        except OSError as exc:
            staged.unlink(missing_ok=True)
            raise FetchError(f"Failed to stage download into {self.install_dir}: {exc}") from exc
        if size == 0:
            staged.unlink(missing_ok=True)
            raise FetchError("Downloaded artifact is empty.")
        return staged

    def activate(self, staged: Path) -> str:
        """Move *staged* over the active path, mark it executable, return its checksum."""
        os.chmod(staged, EXECUTABLE_MODE)
        os.replace(staged, self.active_path)
        os.chmod(self.active_path, EXECUTABLE_MODE)
        return compute_checksum(self.active_path)

    def discard(self, staged: Path | None) -> None:
        """Remove a staging file left over from a failed transfer."""
        if staged is not None:
            staged.unlink(missing_ok=True)

    def create_backup(self) -> str:
        """Copy the active artifact to the backup path and verify it.

        Returns the verified checksum. Raises :class:`BackupError` when the
        copy fails or does not match the active artifact.
        """
        if not self.has_active():
            raise BackupError(f"No active artifact at {self.active_path} to back up.")
        try:
            expected = compute_checksum(self.active_path)
            self._copy_atomic(self.active_path, self.backup_path)
            actual = compute_checksum(self.backup_path)
        except OSError as exc:
            raise BackupError(f"Failed to back up {self.active_path}: {exc}") from exc
        if actual != expected:
            raise BackupError(
                f"Backup verification failed for {self.backup_path} "
                f"(expected {expected[:12]}, found {actual[:12]})."
            )
        return actual

    def restore_backup(self) -> str:
        """Copy the backup over the active artifact; the backup itself is left as is."""
        if not self.has_backup():
            raise BackupError(f"No backup artifact at {self.backup_path} to restore.")
        try:
            self._copy_atomic(self.backup_path, self.active_path)
            os.chmod(self.active_path, EXECUTABLE_MODE)
            return compute_checksum(self.active_path)
        except OSError as exc:
            raise BackupError(f"Failed to restore {self.backup_path}: {exc}") from exc

    def probe_version(self, path: Path | None = None, *, timeout: float = 5.0) -> str | None:
        """Return the first line of ``<binary> --version`` when the binary supports it."""
        target = path or self.active_path
        if not target.is_file():
            return None
        try:
            result = subprocess.run(  # noqa: S603
                [str(target), "--version"],
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
            )
        except (OSError, subprocess.SubprocessError):
            return None
        if result.returncode != 0:
            return None
        output = (result.stdout or "").strip().splitlines()
        return output[0].strip() if output else None

    def _copy_atomic(self, source: Path, destination: Path) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=str(destination.parent), prefix=f".{destination.name}.")
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            shutil.copy2(source, tmp_path)
            with tmp_path.open("rb") as handle:
                os.fsync(handle.fileno())
            os.replace(tmp_path, destination)
        finally:
            tmp_path.unlink(missing_ok=True)


__all__ = ["BACKUP_SUFFIX", "EXECUTABLE_MODE", "ArtifactStore", "compute_checksum"]
