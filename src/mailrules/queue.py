"""Outbound task queue used for delayed actions and automation job runs.

Delivery is at-least-once: a handler that raises is redelivered a limited
number of times, and handlers must treat repeated deliveries as no-ops.
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from .models import utc_now

logger = logging.getLogger(__name__)

QueueHandler = Callable[[dict[str, Any]], Awaitable[None]]


class QueueError(RuntimeError):
    """Raised when a message cannot be accepted by the queue."""


class TaskQueue(ABC):
    """Push-based queue with optional not-before time and per-queue parallelism."""

    @abstractmethod
    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float | None = None,
        parallelism: int | None = None,
    ) -> str:
        """Accept a message for later delivery.

        Returns:
            The message id.

        Raises:
            QueueError: If the message could not be accepted.
        """
        ...


class SchedulerTaskQueue(TaskQueue):
    """In-process queue delivering messages through APScheduler date triggers.

    Messages live only in memory. Durable state is in the database, and
    callers re-enqueue outstanding work on startup.
    """

    def __init__(
        self,
        scheduler: AsyncIOScheduler | None = None,
        *,
        max_delivery_attempts: int = 3,
        redelivery_delay_seconds: float = 30,
    ) -> None:
        self.scheduler = scheduler or AsyncIOScheduler()
        self.max_delivery_attempts = max_delivery_attempts
        self.redelivery_delay_seconds = redelivery_delay_seconds
        self._handlers: dict[str, QueueHandler] = {}
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._outstanding: dict[str, datetime] = {}

    def register(self, queue_name: str, handler: QueueHandler, *, parallelism: int = 1) -> None:
        """Register the handler for a queue and its maximum concurrent deliveries."""
        self._handlers[queue_name] = handler
        self._semaphores[queue_name] = asyncio.Semaphore(parallelism)
        logger.debug(f"Registered handler for queue '{queue_name}' (parallelism {parallelism})")

    def start(self) -> None:
        """Start delivering. Must be called from inside the running event loop."""
        if not self.scheduler.running:
            self.scheduler.start()

    async def shutdown(self) -> None:
        """Stop delivering and drop undelivered messages.

        Outstanding work lives in the database and is re-enqueued by the
        caller on the next start.
        """
        for job in self.scheduler.get_jobs():
            if job.func == self._deliver:
                job.remove()
        self._outstanding.clear()

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            # AsyncIOScheduler applies the shutdown on the next loop iteration
            await asyncio.sleep(0)

    @property
    def pending_count(self) -> int:
        return len(self._outstanding)

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float | None = None,
        parallelism: int | None = None,
    ) -> str:
        if queue_name not in self._handlers:
            raise QueueError(f"No handler registered for queue '{queue_name}'")
        if not self.scheduler.running:
            raise QueueError("Task queue is not running")

        if parallelism and queue_name not in self._semaphores:
            self._semaphores[queue_name] = asyncio.Semaphore(parallelism)

        message_id = str(uuid.uuid4())
        self._schedule_delivery(queue_name, message_id, payload, 1, delay_seconds or 0)
        logger.debug(
            f"Enqueued message {message_id} on '{queue_name}' (delay {delay_seconds or 0:.0f}s)"
        )
        return message_id

    def _schedule_delivery(
        self,
        queue_name: str,
        message_id: str,
        payload: dict[str, Any],
        attempt: int,
        delay_seconds: float,
    ) -> None:
        run_at = utc_now() + timedelta(seconds=max(delay_seconds, 0))
        self._outstanding[message_id] = run_at
        self.scheduler.add_job(
            self._deliver,
            trigger=DateTrigger(run_date=run_at),
            args=[queue_name, message_id, payload, attempt],
            id=f"{message_id}:{attempt}",
            name=f"{queue_name} delivery",
            misfire_grace_time=None,
        )

    async def _deliver(
        self,
        queue_name: str,
        message_id: str,
        payload: dict[str, Any],
        attempt: int,
    ) -> None:
        handler = self._handlers[queue_name]
        semaphore = self._semaphores[queue_name]

        async with semaphore:
            try:
                await handler(payload)
            except Exception as e:
                if attempt < self.max_delivery_attempts:
                    logger.warning(
                        f"Delivery {attempt} of message {message_id} on '{queue_name}' "
                        f"failed, redelivering: {e}"
                    )
                    self._schedule_delivery(
                        queue_name,
                        message_id,
                        payload,
                        attempt + 1,
                        self.redelivery_delay_seconds,
                    )
                    return
                logger.error(
                    f"Dropping message {message_id} on '{queue_name}' after {attempt} attempts: {e}"
                )

        self._outstanding.pop(message_id, None)

    async def wait_idle(self, timeout: float = 30.0) -> bool:
        """Wait until no message that is already due remains undelivered.

        Messages delayed into the future are not waited for.

        Returns:
            False if the timeout expired first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while any(run_at <= utc_now() for run_at in self._outstanding.values()):
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True
