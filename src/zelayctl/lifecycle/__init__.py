"""Lifecycle management for zelay services."""
from __future__ import annotations

from .manager import LifecycleManager, ServiceController
from .models import (
    Installation,
    InstallationState,
    LifecycleOutcome,
    StatusReport,
    UnitDescriptor,
)
from .profiles import AgentProfile, ManagerProfile, ServiceProfile, profile_for

__all__ = [
    "AgentProfile",
    "Installation",
    "InstallationState",
    "LifecycleManager",
    "LifecycleOutcome",
    "ManagerProfile",
    "ServiceController",
    "ServiceProfile",
    "StatusReport",
    "UnitDescriptor",
    "profile_for",
]
