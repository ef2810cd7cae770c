"""State registry helpers."""
from __future__ import annotations

from .registry import INSTALLATIONS_FILE, StateRegistry, StateRegistryError

__all__ = ["INSTALLATIONS_FILE", "StateRegistry", "StateRegistryError"]
