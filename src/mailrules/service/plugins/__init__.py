"""Automation job type plugins."""

from .base import AutomationJobPlugin, JobPluginRegistry, UnknownJobTypeError
from .summary import ActivitySummaryPlugin

__all__ = [
    "ActivitySummaryPlugin",
    "AutomationJobPlugin",
    "JobPluginRegistry",
    "UnknownJobTypeError",
]
