"""Provider interfaces for zelayctl."""
from __future__ import annotations

from .fetcher import ArtifactFetcher, HttpArtifactFetcher
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ArtifactFetcher",
    "HttpArtifactFetcher",
    "SystemdError",
    "SystemdProvider",
]
