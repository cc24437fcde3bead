"""Base classes for automation job type plugins."""

from abc import ABC, abstractmethod

from ...models import AutomationJob, AutomationJobRun
from ..state import AutomationState


class UnknownJobTypeError(LookupError):
    """Raised when no plugin is registered for a job type."""


class AutomationJobPlugin(ABC):
    """Base class for automation job plugins.

    A plugin implements the body of one job type. It runs once per claimed
    AutomationJobRun and returns a short textual output for the run record.
    """

    @property
    @abstractmethod
    def job_type(self) -> str:
        """The job type identifier stored on AutomationJob.job_type."""
        ...

    @property
    def description(self) -> str:
        """Human-readable description of this job type."""
        return ""

    @abstractmethod
    async def run(
        self,
        job: AutomationJob,
        run: AutomationJobRun,
        state: AutomationState,
    ) -> str | None:
        """Execute one run of a job.

        Args:
            job: The job definition.
            run: The claimed run, with `scheduled_for` set.
            state: Store for reading the account's history.

        Returns:
            Optional output recorded on the run.

        Raises:
            Exception: Any error marks the run FAILED with its message.
        """
        ...


class JobPluginRegistry:
    """Registry mapping job types to their plugins."""

    def __init__(self) -> None:
        self._plugins: dict[str, AutomationJobPlugin] = {}

    def register(self, plugin: AutomationJobPlugin) -> None:
        """Register a job plugin, replacing any plugin for the same type."""
        self._plugins[plugin.job_type] = plugin

    def get(self, job_type: str) -> AutomationJobPlugin:
        try:
            return self._plugins[job_type]
        except KeyError:
            raise UnknownJobTypeError(f"Unknown automation job type: {job_type}") from None

    def list_job_types(self) -> list[str]:
        """List all registered job types."""
        return list(self._plugins.keys())
