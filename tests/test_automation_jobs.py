"""Tests for the automation job scheduler, runner and summary plugin."""

import uuid
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from conftest import FakeQueue, make_email, make_rule, record_for

from mailrules.config import AutomationConfig
from mailrules.models import (
    AutomationJob,
    AutomationJobRun,
    AutomationJobRunStatus,
    ExecutedRuleStatus,
)
from mailrules.service.automation_jobs import (
    PAYLOAD_KEY,
    AutomationJobRunner,
    AutomationJobScheduler,
)
from mailrules.service.plugins import (
    ActivitySummaryPlugin,
    AutomationJobPlugin,
    JobPluginRegistry,
    UnknownJobTypeError,
)
from mailrules.service.state import AutomationState

NOW = datetime(2024, 1, 8, 12, 0, 30, tzinfo=timezone.utc)


class EchoPlugin(AutomationJobPlugin):
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.runs: list[str] = []

    @property
    def job_type(self) -> str:
        return "echo"

    async def run(self, job: AutomationJob, run: AutomationJobRun, state: AutomationState) -> str | None:
        self.runs.append(run.id)
        if self.error:
            raise self.error
        return f"echo {job.prompt}"


def _job(state: AutomationState, **overrides) -> AutomationJob:
    fields = {
        "id": str(uuid.uuid4()),
        "account_id": "acct",
        "name": "Hourly echo",
        "job_type": "echo",
        "cron_expression": "0 * * * *",
        "next_run_at": datetime(2024, 1, 8, 12, 0, tzinfo=timezone.utc),
        "prompt": "hello",
    }
    fields.update(overrides)
    return state.save_automation_job(AutomationJob(**fields))


@pytest.fixture
def scheduler(state: AutomationState, queue: FakeQueue) -> AutomationJobScheduler:
    return AutomationJobScheduler(state, queue, AutomationConfig(parallelism=2))


@pytest.fixture
def plugin() -> EchoPlugin:
    return EchoPlugin()


@pytest.fixture
def runner(state: AutomationState, plugin: EchoPlugin) -> AutomationJobRunner:
    registry = JobPluginRegistry()
    registry.register(plugin)
    return AutomationJobRunner(state, registry)


class TestScheduler:
    @pytest.mark.asyncio
    async def test_claims_and_enqueues_due_job(
        self, state: AutomationState, queue: FakeQueue, scheduler: AutomationJobScheduler
    ):
        job = _job(state)

        stats = await scheduler.run_due(NOW)

        assert (stats.due, stats.claimed, stats.queued, stats.skipped, stats.failed) == (1, 1, 1, 0, 0)
        runs = state.list_automation_job_runs(job_id=job.id)
        assert len(runs) == 1
        assert runs[0].status == AutomationJobRunStatus.PENDING
        assert runs[0].scheduled_for == job.next_run_at
        assert queue.messages == [("automation-jobs", {PAYLOAD_KEY: runs[0].id}, None)]
        assert state.get_automation_job(job.id).next_run_at == datetime(
            2024, 1, 8, 13, 0, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_second_invocation_finds_nothing(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        _job(state)
        await scheduler.run_due(NOW)

        stats = await scheduler.run_due(NOW)

        assert stats.due == 0

    @pytest.mark.asyncio
    async def test_not_due_and_disabled_jobs(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        _job(state, next_run_at=NOW + timedelta(minutes=5))
        _job(state, enabled=False)

        stats = await scheduler.run_due(NOW)

        assert stats.due == 0

    @pytest.mark.asyncio
    async def test_missed_occurrences_are_skipped(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        job = _job(state, next_run_at=NOW - timedelta(days=3))

        stats = await scheduler.run_due(NOW)

        assert stats.claimed == 1
        assert len(state.list_automation_job_runs(job_id=job.id)) == 1
        assert state.get_automation_job(job.id).next_run_at == datetime(
            2024, 1, 8, 13, 0, tzinfo=timezone.utc
        )

    @pytest.mark.asyncio
    async def test_invalid_cron_counts_as_failed(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        job = _job(state, cron_expression="every tuesday")

        stats = await scheduler.run_due(NOW)

        assert (stats.due, stats.claimed, stats.failed) == (1, 0, 1)
        assert state.list_automation_job_runs(job_id=job.id) == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_fails_run(self, state: AutomationState):
        job = _job(state)
        scheduler = AutomationJobScheduler(state, FakeQueue(fail=True))

        stats = await scheduler.run_due(NOW)

        assert (stats.claimed, stats.queued, stats.failed) == (1, 0, 1)
        run = state.list_automation_job_runs(job_id=job.id)[0]
        assert run.status == AutomationJobRunStatus.FAILED
        assert run.error == "Failed to enqueue automation job run: queue unavailable"

    @pytest.mark.asyncio
    async def test_stale_read_is_skipped(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        job = _job(state)
        next_run = datetime(2024, 1, 8, 13, 0, tzinfo=timezone.utc)
        assert state.claim_automation_job(job.id, job.next_run_at, next_run) is not None

        # A scheduler that read the job before the claim above
        scheduler.state = _StaleState(state, job)
        stats = await scheduler.run_due(NOW)

        assert (stats.due, stats.claimed, stats.skipped) == (1, 0, 1)
        assert len(state.list_automation_job_runs(job_id=job.id)) == 1

    def test_concurrent_claims_create_one_run(self, state: AutomationState):
        job = _job(state)
        next_run = datetime(2024, 1, 8, 13, 0, tzinfo=timezone.utc)
        db_path: Path = state.db_path

        def claim(_: int) -> bool:
            return AutomationState(db_path).claim_automation_job(job.id, job.next_run_at, next_run) is not None

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(claim, range(8)))

        assert results.count(True) == 1
        assert len(state.list_automation_job_runs(job_id=job.id)) == 1

    @pytest.mark.asyncio
    async def test_recover_pending_runs(
        self, state: AutomationState, queue: FakeQueue, scheduler: AutomationJobScheduler
    ):
        _job(state)
        await scheduler.run_due(NOW)
        queue.messages.clear()

        assert await scheduler.recover_pending() == 1
        assert len(queue.messages) == 1


class _StaleState:
    """Serves a due-job list read before another worker's claim."""

    def __init__(self, state: AutomationState, job: AutomationJob) -> None:
        self._state = state
        self._job = job

    def list_due_automation_jobs(self, now, limit=100):
        return [self._job]

    def __getattr__(self, name):
        return getattr(self._state, name)


class TestRunner:
    @pytest.mark.asyncio
    async def test_runs_plugin(
        self,
        state: AutomationState,
        scheduler: AutomationJobScheduler,
        runner: AutomationJobRunner,
        plugin: EchoPlugin,
    ):
        job = _job(state)
        await scheduler.run_due(NOW)
        run = state.list_automation_job_runs(job_id=job.id)[0]

        await runner.handle_delivery({PAYLOAD_KEY: run.id})

        finished = state.get_automation_job_run(run.id)
        assert finished.status == AutomationJobRunStatus.DONE
        assert finished.output == "echo hello"
        assert finished.processed_at is not None
        assert plugin.runs == [run.id]

    @pytest.mark.asyncio
    async def test_run_executes_once(
        self,
        state: AutomationState,
        scheduler: AutomationJobScheduler,
        runner: AutomationJobRunner,
        plugin: EchoPlugin,
    ):
        job = _job(state)
        await scheduler.run_due(NOW)
        run = state.list_automation_job_runs(job_id=job.id)[0]

        await runner.execute_run(run.id)
        assert await runner.execute_run(run.id) is None
        assert plugin.runs == [run.id]

    @pytest.mark.asyncio
    async def test_disabled_job_fails_run(
        self, state: AutomationState, scheduler: AutomationJobScheduler, runner: AutomationJobRunner
    ):
        job = _job(state)
        await scheduler.run_due(NOW)
        state.set_automation_job_enabled(job.id, False)
        run = state.list_automation_job_runs(job_id=job.id)[0]

        finished = await runner.execute_run(run.id)

        assert finished.status == AutomationJobRunStatus.FAILED
        assert finished.error == "Automation job is disabled"

    @pytest.mark.asyncio
    async def test_unknown_job_type_fails_run(
        self, state: AutomationState, scheduler: AutomationJobScheduler, runner: AutomationJobRunner
    ):
        job = _job(state, job_type="mystery")
        await scheduler.run_due(NOW)
        run = state.list_automation_job_runs(job_id=job.id)[0]

        finished = await runner.execute_run(run.id)

        assert finished.status == AutomationJobRunStatus.FAILED
        assert "mystery" in finished.error

    @pytest.mark.asyncio
    async def test_plugin_error_fails_run(
        self, state: AutomationState, scheduler: AutomationJobScheduler
    ):
        registry = JobPluginRegistry()
        registry.register(EchoPlugin(error=RuntimeError("upstream timeout")))
        runner = AutomationJobRunner(state, registry)
        job = _job(state)
        await scheduler.run_due(NOW)
        run = state.list_automation_job_runs(job_id=job.id)[0]

        finished = await runner.execute_run(run.id)

        assert finished.status == AutomationJobRunStatus.FAILED
        assert finished.error == "upstream timeout"

    def test_registry_unknown_type(self):
        with pytest.raises(UnknownJobTypeError):
            JobPluginRegistry().get("missing")


class TestActivitySummary:
    @pytest.mark.asyncio
    async def test_writes_summary(self, state: AutomationState, temp_dir: Path, account):
        rule = make_rule()
        record_for(state, rule, make_email(), status=ExecutedRuleStatus.APPLIED)
        state.create_executed_rule(
            account_id="acct",
            message_id="INBOX:2",
            thread_id=None,
            rule=None,
            reason="No rule matched",
            status=ExecutedRuleStatus.SKIPPED,
        )
        job = _job(state, job_type="activity_summary", name="Daily summary")
        run = AutomationJobRun(id="run-1", job_id=job.id, scheduled_for=datetime.now(timezone.utc))

        plugin = ActivitySummaryPlugin(temp_dir / "summaries")
        output = await plugin.run(job, run, state)

        files = list((temp_dir / "summaries").glob("summary_*.md"))
        assert len(files) == 1
        content = files[0].read_text()
        assert content.startswith("# Daily summary")
        assert "- **APPLIED**: 1" in content
        assert "- **SKIPPED**: 1" in content
        assert "- Archive newsletters: 1" in content
        assert "- (no rule): 1" in content
        assert output.startswith("2 executed rules summarized")

    @pytest.mark.asyncio
    async def test_empty_period(self, state: AutomationState, temp_dir: Path):
        job = _job(state, job_type="activity_summary", config={"output_dir": str(temp_dir / "out")})
        run = AutomationJobRun(id="run-1", job_id=job.id, scheduled_for=datetime.now(timezone.utc))

        await ActivitySummaryPlugin(temp_dir / "unused").run(job, run, state)

        content = next((temp_dir / "out").glob("*.md")).read_text()
        assert "No rule activity in this period." in content
