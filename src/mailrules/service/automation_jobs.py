"""Recurring automation jobs: claim due occurrences and run them.

Any number of schedulers may poll at the same time. Each due occurrence is
claimed by advancing `next_run_at` with a conditional update, and the run
row created in the same transaction is unique on (job, scheduled_for), so
at most one run exists per occurrence.
"""

import logging
from datetime import datetime
from typing import Any

from ..config import AutomationConfig
from ..cron import InvalidCronExpression, next_run_after
from ..models import AutomationJobRun, AutomationJobRunStatus, SchedulerStats, utc_now
from ..queue import TaskQueue
from .plugins.base import JobPluginRegistry, UnknownJobTypeError
from .state import AutomationState

logger = logging.getLogger(__name__)

PAYLOAD_KEY = "automationJobRunId"


class AutomationJobScheduler:
    """Finds due jobs, claims each occurrence once and enqueues its run."""

    def __init__(
        self,
        state: AutomationState,
        queue: TaskQueue,
        config: AutomationConfig | None = None,
    ) -> None:
        self.state = state
        self.queue = queue
        self.config = config or AutomationConfig()

    async def run_due(self, now: datetime | None = None) -> SchedulerStats:
        """One scheduler invocation.

        Args:
            now: Current time; defaults to the wall clock.

        Returns:
            Counters for this invocation only.
        """
        now = now or utc_now()
        jobs = self.state.list_due_automation_jobs(now, self.config.batch_size)
        stats = SchedulerStats(due=len(jobs))

        for job in jobs:
            scheduled_for = job.next_run_at
            try:
                next_run = next_run_after(
                    job.cron_expression, scheduled_for, now, self.config.timezone
                )
            except InvalidCronExpression as e:
                logger.error(f"Automation job {job.id} has an invalid schedule: {e}")
                stats.failed += 1
                continue

            run = self.state.claim_automation_job(job.id, scheduled_for, next_run)
            if run is None:
                logger.info(
                    f"Automation job {job.id} at {scheduled_for.isoformat()} already claimed"
                )
                stats.skipped += 1
                continue

            stats.claimed += 1
            logger.debug(
                f"Claimed automation job {job.id} for {scheduled_for.isoformat()}, "
                f"next run {next_run.isoformat()}"
            )

            try:
                await self.enqueue_run(run)
            except Exception as e:
                logger.error(f"Failed to enqueue run {run.id} of job {job.id}: {e}")
                self.state.finish_automation_job_run(
                    run.id,
                    AutomationJobRunStatus.FAILED,
                    error=f"Failed to enqueue automation job run: {e}",
                )
                stats.failed += 1
                continue

            stats.queued += 1

        if stats.due:
            logger.info(
                f"Automation scheduler: due={stats.due} claimed={stats.claimed} "
                f"queued={stats.queued} skipped={stats.skipped} failed={stats.failed}"
            )
        return stats

    async def enqueue_run(self, run: AutomationJobRun) -> str:
        return await self.queue.enqueue(
            self.config.queue_name,
            {PAYLOAD_KEY: run.id},
            parallelism=self.config.parallelism,
        )

    async def recover_pending(self) -> int:
        """Re-enqueue runs that were claimed but never started."""
        runs = self.state.list_automation_job_runs(
            status=AutomationJobRunStatus.PENDING, limit=self.config.batch_size
        )
        for run in runs:
            await self.enqueue_run(run)
        if runs:
            logger.info(f"Re-enqueued {len(runs)} pending automation job runs")
        return len(runs)


class AutomationJobRunner:
    """Queue handler that executes one claimed AutomationJobRun."""

    def __init__(self, state: AutomationState, registry: JobPluginRegistry) -> None:
        self.state = state
        self.registry = registry

    async def handle_delivery(self, payload: dict[str, Any]) -> None:
        run_id = payload.get(PAYLOAD_KEY)
        if not run_id:
            logger.error(f"Automation job delivery without {PAYLOAD_KEY}: {payload}")
            return
        await self.execute_run(run_id)

    async def execute_run(self, run_id: str) -> AutomationJobRun | None:
        """Run a PENDING job run to completion.

        Returns:
            The finalized run, or None if it was missing or already started.
        """
        run = self.state.get_automation_job_run(run_id)
        if run is None:
            logger.warning(f"Automation job run {run_id} not found")
            return None

        if not self.state.start_automation_job_run(run_id):
            logger.info(f"Automation job run {run_id} is {run.status.value}, skipping")
            return None

        job = self.state.get_automation_job(run.job_id)
        if job is None:
            return self._fail(run_id, f"Automation job {run.job_id} no longer exists")
        if not job.enabled:
            return self._fail(run_id, "Automation job is disabled")

        try:
            plugin = self.registry.get(job.job_type)
        except UnknownJobTypeError as e:
            return self._fail(run_id, str(e))

        try:
            output = await plugin.run(job, run, self.state)
        except Exception as e:
            logger.error(f"Automation job {job.id} run {run_id} failed: {e}")
            return self._fail(run_id, str(e) or type(e).__name__)

        self.state.finish_automation_job_run(run_id, AutomationJobRunStatus.DONE, output=output)
        logger.info(f"Automation job {job.id} run {run_id} done")
        return self.state.get_automation_job_run(run_id)

    def _fail(self, run_id: str, error: str) -> AutomationJobRun | None:
        self.state.finish_automation_job_run(run_id, AutomationJobRunStatus.FAILED, error=error)
        logger.warning(f"Automation job run {run_id} failed: {error}")
        return self.state.get_automation_job_run(run_id)
