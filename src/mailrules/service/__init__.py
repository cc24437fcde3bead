"""Persistence, scheduled actions and automation jobs."""

from .state import AutomationState

__all__ = ["AutomationState"]
