"""mailrules service daemon with APScheduler."""

import asyncio
import logging
import signal
from datetime import datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings
from ..models import Account
from ..processors.classifier import LLMRuleClassifier
from ..processors.llm import LLMClient, create_llm_client
from ..processors.runner import RuleRunner
from ..providers.base import EmailProvider
from ..providers.imap import ImapProvider
from ..queue import SchedulerTaskQueue
from .automation_jobs import AutomationJobRunner, AutomationJobScheduler
from .plugins import ActivitySummaryPlugin, JobPluginRegistry
from .scheduled_actions import ScheduledActionService
from .state import AutomationState

logger = logging.getLogger(__name__)


class AutomationService:
    """Background service running delayed actions and recurring automation jobs."""

    def __init__(
        self,
        settings: Settings,
        *,
        providers: dict[str, EmailProvider] | None = None,
        registry: JobPluginRegistry | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            settings: Application settings.
            providers: Email providers by account id. Default: one IMAP
                provider per configured IMAP account.
            registry: Job plugins. Default: the built-in job types.
        """
        self.settings = settings
        self.scheduler = AsyncIOScheduler()
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._last_tick: datetime | None = None

        assert settings.db_path is not None
        self.state = AutomationState(settings.db_path, settings.db_busy_timeout)

        self.queue = SchedulerTaskQueue(
            self.scheduler,
            max_delivery_attempts=settings.queue.max_delivery_attempts,
            redelivery_delay_seconds=settings.queue.redelivery_delay_seconds,
        )

        self.providers: dict[str, EmailProvider] = providers or {
            name: ImapProvider(cfg, name=name) for name, cfg in settings.imap_accounts.items()
        }
        for name, cfg in settings.imap_accounts.items():
            if self.state.get_account(name) is None:
                self.state.save_account(Account(id=name, email=cfg.username))

        # LLM client is optional; without it AI matching and summaries are skipped
        self.llm_client: LLMClient | None = None
        try:
            api_key = settings.anthropic_api_key if settings.llm.provider == "anthropic" else None
            self.llm_client = create_llm_client(settings.llm, api_key)
        except Exception as e:
            logger.warning(f"Could not initialize LLM client: {e}")

        self.classifier = (
            LLMRuleClassifier(self.llm_client, settings.llm) if self.llm_client else None
        )

        self.scheduled_actions = ScheduledActionService(
            self.state,
            self.queue,
            self.provider_for,
            settings.scheduled_actions,
        )
        self.job_scheduler = AutomationJobScheduler(self.state, self.queue, settings.automation)

        if registry is None:
            registry = JobPluginRegistry()
            registry.register(ActivitySummaryPlugin(settings.summary_dir, self.llm_client))
        self.registry = registry
        self.job_runner = AutomationJobRunner(self.state, self.registry)

        self.queue.register(
            settings.scheduled_actions.queue_name,
            self.scheduled_actions.handle_delivery,
            parallelism=settings.automation.parallelism,
        )
        self.queue.register(
            settings.automation.queue_name,
            self.job_runner.handle_delivery,
            parallelism=settings.automation.parallelism,
        )

    def provider_for(self, account_id: str) -> EmailProvider:
        try:
            return self.providers[account_id]
        except KeyError:
            raise LookupError(f"No email provider configured for account {account_id}") from None

    def runner_for(self, account_id: str) -> RuleRunner:
        """Rule runner bound to an account's provider."""
        return RuleRunner(
            self.state,
            self.provider_for(account_id),
            self.scheduled_actions,
            self.classifier,
            confidence_threshold=self.settings.matching.ai_confidence_threshold,
        )

    def _setup_jobs(self) -> None:
        """Set up scheduled jobs."""
        interval = self.settings.automation.poll_interval_seconds
        self.scheduler.add_job(
            self._run_scheduler_tick,
            trigger=IntervalTrigger(seconds=interval),
            id="automation_scheduler",
            name="Automation Job Scheduler",
            replace_existing=True,
            max_instances=1,
        )
        logger.info(f"Scheduled automation job scheduler every {interval} seconds")

    async def _run_scheduler_tick(self) -> None:
        """Execute one automation scheduler invocation."""
        try:
            stats = await self.job_scheduler.run_due()
            self._last_tick = datetime.now()
            logger.debug(f"Scheduler tick complete: {stats.model_dump()}")
        except Exception as e:
            logger.error(f"Scheduler tick failed: {e}")

    async def _recover(self) -> None:
        try:
            await self.scheduled_actions.recover_pending()
            await self.job_scheduler.recover_pending()
        except Exception as e:
            logger.error(f"Could not re-enqueue pending work: {e}")

    async def start(self) -> None:
        """Start the service daemon."""
        if self._running:
            logger.warning("Service is already running")
            return

        logger.info("Starting mailrules service")
        self._running = True
        self._shutdown_event.clear()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda: asyncio.create_task(self.stop()))

        self._setup_jobs()
        self.queue.start()
        await self._recover()
        await self._run_scheduler_tick()

        logger.info("mailrules service started")
        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop the service daemon gracefully."""
        if not self._running:
            return

        logger.info("Stopping mailrules service")
        self._running = False

        await self.queue.shutdown()
        for provider in self.providers.values():
            await provider.disconnect()

        self._shutdown_event.set()
        logger.info("mailrules service stopped")

    async def run_once(self, *, wait_seconds: float = 60.0) -> dict[str, Any]:
        """Run one scheduler tick and wait for the work it queued.

        Delayed actions that are not yet due stay PENDING in the database
        and are picked up by the next `start()`.

        Returns:
            Scheduler counters plus whether the queue drained in time.
        """
        self.queue.start()
        try:
            await self._recover()
            stats = await self.job_scheduler.run_due()
            drained = await self.queue.wait_idle(timeout=wait_seconds)
        finally:
            await self.queue.shutdown()
            for provider in self.providers.values():
                await provider.disconnect()

        return {**stats.model_dump(), "drained": drained}

    def get_status(self) -> dict[str, Any]:
        """Get the current service status."""
        status: dict[str, Any] = {
            "running": self._running,
            "scheduler_running": self.scheduler.running,
            "last_tick": self._last_tick.isoformat() if self._last_tick else None,
            "queued_messages": self.queue.pending_count,
            "job_types": self.registry.list_job_types(),
            "config": {
                "poll_interval_seconds": self.settings.automation.poll_interval_seconds,
                "parallelism": self.settings.automation.parallelism,
                "llm_provider": self.settings.llm.provider if self.llm_client else None,
            },
        }

        if self._running and self.scheduler.running:
            status["next_jobs"] = {
                job.id: job.next_run_time.isoformat()
                for job in self.scheduler.get_jobs()
                if job.next_run_time and job.id == "automation_scheduler"
            }

        status["stats"] = self.state.get_stats()
        return status
