"""Delayed actions: persist, enqueue, cancel, and execute at most once."""

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any

from ..config import ScheduledActionConfig
from ..models import (
    ActionItem,
    ExecutedRule,
    ExecutedRuleStatus,
    ScheduledAction,
    ScheduledActionStatus,
    utc_now,
)
from ..processors.executor import ActionExecutor, format_failure_reason
from ..processors.labels import LabelResolver
from ..providers.base import EmailProvider, is_permanent_error
from ..queue import TaskQueue
from .state import AutomationState

logger = logging.getLogger(__name__)

PAYLOAD_KEY = "scheduledActionId"


class ScheduledActionService:
    """Owns the lifecycle of ScheduledActions.

    PENDING -> EXECUTING is claimed with a conditional update, so duplicate
    queue deliveries and lost races are no-ops. Cancellation only succeeds
    while the action is still PENDING.
    """

    def __init__(
        self,
        state: AutomationState,
        queue: TaskQueue,
        providers: Callable[[str], EmailProvider],
        config: ScheduledActionConfig | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            state: Persistence for scheduled actions and executed rules.
            queue: Queue that delivers the action when it is due.
            providers: Returns the email provider for an account id.
            config: Queue name and retry settings.
        """
        self.state = state
        self.queue = queue
        self.providers = providers
        self.config = config or ScheduledActionConfig()

    async def schedule(self, executed_rule: ExecutedRule, item: ActionItem) -> ScheduledAction:
        """Persist a delayed action item and enqueue its delivery.

        If the queue refuses the message the action is finalized FAILED and
        returned with that status.
        """
        scheduled_for = utc_now() + timedelta(minutes=item.delay_in_minutes or 0)
        scheduled = self.state.create_scheduled_action(executed_rule, item, scheduled_for)
        logger.info(
            f"Scheduled {item.type.value} for {executed_rule.message_id} at "
            f"{scheduled_for.isoformat()} ({scheduled.id})"
        )

        try:
            await self._enqueue(scheduled)
        except Exception as e:
            logger.error(f"Failed to enqueue scheduled action {scheduled.id}: {e}")
            self.state.finish_scheduled_action(
                scheduled.id,
                ScheduledActionStatus.FAILED,
                error_message=f"Failed to enqueue: {e}",
                from_status=ScheduledActionStatus.PENDING,
            )
            scheduled.status = ScheduledActionStatus.FAILED
        return scheduled

    async def _enqueue(self, scheduled: ScheduledAction) -> str:
        delay = max((scheduled.scheduled_for - utc_now()).total_seconds(), 0)
        return await self.queue.enqueue(
            self.config.queue_name,
            {PAYLOAD_KEY: scheduled.id},
            delay_seconds=delay,
        )

    async def recover_pending(self) -> int:
        """Re-enqueue every PENDING action, e.g. after a restart lost the queue."""
        count = 0
        for scheduled in self.state.list_scheduled_actions(
            status=ScheduledActionStatus.PENDING, limit=10_000
        ):
            await self._enqueue(scheduled)
            count += 1
        if count:
            logger.info(f"Re-enqueued {count} pending scheduled actions")
        return count

    def cancel(self, scheduled_action_id: str, reason: str = "Cancelled") -> bool:
        """Cancel an action that has not started executing."""
        scheduled = self.state.get_scheduled_action(scheduled_action_id)
        if scheduled is None:
            return False
        if not self.state.cancel_scheduled_action(scheduled_action_id, reason):
            logger.info(f"Scheduled action {scheduled_action_id} is {scheduled.status.value}, not cancelling")
            return False
        logger.info(f"Cancelled scheduled action {scheduled_action_id}")
        self.complete_executed_rule(scheduled.executed_rule_id)
        return True

    def cancel_for_message(self, account_id: str, message_id: str, reason: str) -> int:
        """Cancel a message's pending actions and finalize the records that owned them."""
        executed_rule_ids = self.state.cancel_pending_scheduled_actions(
            reason=reason, account_id=account_id, message_id=message_id
        )
        if executed_rule_ids:
            logger.info(
                f"Cancelled {len(executed_rule_ids)} scheduled actions for {message_id}: {reason}"
            )
        for executed_rule_id in dict.fromkeys(executed_rule_ids):
            self.complete_executed_rule(executed_rule_id)
        return len(executed_rule_ids)

    def cancel_for_executed_rule(self, executed_rule_id: str, reason: str) -> int:
        executed_rule_ids = self.state.cancel_pending_scheduled_actions(
            reason=reason, executed_rule_id=executed_rule_id
        )
        if executed_rule_ids:
            self.complete_executed_rule(executed_rule_id)
        return len(executed_rule_ids)

    async def handle_delivery(self, payload: dict[str, Any]) -> None:
        """Queue handler. Safe to call any number of times for the same message."""
        scheduled_action_id = payload.get(PAYLOAD_KEY)
        if not scheduled_action_id:
            logger.error(f"Scheduled action delivery without {PAYLOAD_KEY}: {payload}")
            return

        scheduled = self.state.get_scheduled_action(scheduled_action_id)
        if scheduled is None:
            logger.warning(f"Scheduled action {scheduled_action_id} not found")
            return

        if scheduled.status == ScheduledActionStatus.CANCELLED:
            logger.info(f"Scheduled action {scheduled_action_id} was cancelled, skipping")
            return

        if scheduled.status != ScheduledActionStatus.PENDING:
            logger.info(
                f"Scheduled action {scheduled_action_id} is {scheduled.status.value}, skipping"
            )
            return

        if not self.state.claim_scheduled_action(scheduled_action_id):
            logger.info(f"Scheduled action {scheduled_action_id} was claimed elsewhere")
            return

        await self._execute(scheduled)

    async def _execute(self, scheduled: ScheduledAction) -> None:
        try:
            provider = self.providers(scheduled.account_id)
            email = await provider.get_message(scheduled.message_id)
            if email is None:
                logger.info(
                    f"Message {scheduled.message_id} no longer exists, "
                    f"completing scheduled action {scheduled.id}"
                )
                self.state.finish_scheduled_action(
                    scheduled.id,
                    ScheduledActionStatus.APPLIED,
                    error_message="Email no longer exists",
                )
                self.complete_executed_rule(scheduled.executed_rule_id)
                return

            executor = ActionExecutor(self.state, provider, self)
            result = await executor.run_item(email, scheduled.action, LabelResolver(provider))
        except Exception as e:
            self._handle_crash(scheduled, e)
            await self._maybe_requeue(scheduled.id)
            return

        if result.success:
            self.state.finish_scheduled_action(scheduled.id, ScheduledActionStatus.APPLIED)
            logger.info(f"Scheduled action {scheduled.id} applied")
        else:
            code = result.error_code or "UNKNOWN"
            self.state.finish_scheduled_action(
                scheduled.id,
                ScheduledActionStatus.FAILED,
                error_message=f"{scheduled.action.type.value}:{code}",
            )
            logger.warning(f"Scheduled action {scheduled.id} failed with {code}")

        self.complete_executed_rule(scheduled.executed_rule_id)

    def _handle_crash(self, scheduled: ScheduledAction, error: Exception) -> None:
        message = str(error) or type(error).__name__

        if is_permanent_error(error):
            logger.error(f"Scheduled action {scheduled.id} failed permanently: {message}")
            self.state.finish_scheduled_action(
                scheduled.id,
                ScheduledActionStatus.FAILED,
                error_message=f"[PERMANENT] {message}",
            )
            self.complete_executed_rule(scheduled.executed_rule_id)
            return

        if scheduled.retry_count < self.config.max_retry_attempts:
            retry_at = utc_now() + timedelta(minutes=self.config.retry_delay_minutes)
            self.state.reschedule_scheduled_action(scheduled.id, retry_at, error_message=message)
            logger.warning(
                f"Scheduled action {scheduled.id} failed (attempt {scheduled.retry_count + 1}), "
                f"retrying at {retry_at.isoformat()}: {message}"
            )
            return

        logger.error(
            f"Scheduled action {scheduled.id} failed after {scheduled.retry_count + 1} attempts: {message}"
        )
        self.state.finish_scheduled_action(
            scheduled.id,
            ScheduledActionStatus.FAILED,
            error_message=f"[PERMANENT] Failed after {scheduled.retry_count + 1} attempts: {message}",
        )
        self.complete_executed_rule(scheduled.executed_rule_id)

    async def _maybe_requeue(self, scheduled_action_id: str) -> None:
        scheduled = self.state.get_scheduled_action(scheduled_action_id)
        if scheduled is None or scheduled.status != ScheduledActionStatus.PENDING:
            return
        try:
            await self._enqueue(scheduled)
        except Exception as e:
            logger.error(f"Failed to re-enqueue scheduled action {scheduled_action_id}: {e}")

    def complete_executed_rule(self, executed_rule_id: str) -> ExecutedRuleStatus | None:
        """Finalize an APPLYING record once none of its scheduled actions is open.

        Returns:
            The new status, or None if the record was left as it was.
        """
        actions = self.state.list_scheduled_actions(executed_rule_id=executed_rule_id, limit=1000)
        open_statuses = (ScheduledActionStatus.PENDING, ScheduledActionStatus.EXECUTING)
        if any(action.status in open_statuses for action in actions):
            return None

        executed = self.state.get_executed_rule(executed_rule_id)
        if executed is None or executed.status != ExecutedRuleStatus.APPLYING:
            return None

        items = {item.id: item for item in executed.action_items}
        failures = []
        for action in actions:
            if action.status != ScheduledActionStatus.FAILED:
                continue
            item = items.get(action.action_item_id)
            code = (item.error_code if item else None) or "FAILED"
            failures.append(f"{action.action.type.value}:{code}")

        if failures:
            self.state.transition_executed_rule(
                executed_rule_id,
                [ExecutedRuleStatus.APPLYING],
                ExecutedRuleStatus.ERROR,
                reason=format_failure_reason(executed.reason, failures),
            )
            logger.warning(f"Executed rule {executed_rule_id} finished with failures")
            return ExecutedRuleStatus.ERROR

        self.state.transition_executed_rule(
            executed_rule_id,
            [ExecutedRuleStatus.APPLYING],
            ExecutedRuleStatus.APPLIED,
        )
        logger.info(f"Executed rule {executed_rule_id} applied after scheduled actions")
        return ExecutedRuleStatus.APPLIED
