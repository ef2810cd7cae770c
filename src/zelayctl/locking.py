"""Advisory file locks guarding mutating zelayctl commands.

Locks are ``fcntl.flock`` exclusive locks on files under the runtime
directory. A global ``zelayctl.lock`` serialises mutating commands and a
per-service lock (``<service>.lock``) guards the installation itself. Lock
files are left behind after release so operators can inspect the metadata of
the last holder.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "zelayctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(TimeoutError):
    """Raised when a lock cannot be acquired before the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long it took to acquire."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A group of locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for all locks."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-service locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Initialise the manager with the lock directory and default timeout."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = "".join(char if char.isalnum() or char in "-_." else "-" for char in name)
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def service_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for service *name* for the duration of the block."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_services(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock (optionally) then each service lock in sorted order."""
        bundle = LockBundle()
        with ExitStack() as stack:
            if include_global:
                bundle.handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                bundle.handles.append(
                    stack.enter_context(self.service_lock(name, timeout=timeout))
                )
            yield bundle

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    data = (json.dumps(payload) + "\n").encode("utf-8")
    os.ftruncate(fd, 0)
    os.pwrite(fd, data, 0)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
