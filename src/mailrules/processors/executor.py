"""Execute the actions of a matched rule and drive the ExecutedRule state machine.

    PENDING -> APPLYING -> APPLIED | ERROR

Structured action failures are recorded and do not stop later actions;
an exception raised by an action call marks the record ERROR and propagates.
"""

import logging
from typing import TYPE_CHECKING, Any

from mailrules.models import (
    ActionItem,
    ActionResult,
    ActionType,
    Email,
    ExecutedRule,
    ExecutedRuleStatus,
    ScheduledActionStatus,
)
from mailrules.providers.base import EmailProvider
from mailrules.service.state import AutomationState

from .labels import LabelResolver

if TYPE_CHECKING:
    from mailrules.service.scheduled_actions import ScheduledActionService

logger = logging.getLogger(__name__)


def format_failure_reason(reason: str, failures: list[str]) -> str:
    """Append the failed actions to an ExecutedRule reason.

    >>> format_failure_reason("Matched", ["LABEL:X", "ARCHIVE:Y"])
    'Matched\\nAction failures: LABEL:X, ARCHIVE:Y'
    """
    return f"{reason}\nAction failures: {', '.join(failures)}"


class ActionExecutor:
    """Runs an ExecutedRule's action items against an email provider."""

    def __init__(
        self,
        state: AutomationState,
        provider: EmailProvider,
        scheduled_actions: "ScheduledActionService",
    ) -> None:
        """Initialize the executor.

        Args:
            state: Persistence for executed rules and action results.
            provider: Mailbox the actions are performed on.
            scheduled_actions: Receives action items that carry a delay.
        """
        self.state = state
        self.provider = provider
        self.scheduled_actions = scheduled_actions

    async def apply(self, executed_rule: ExecutedRule, email: Email) -> ExecutedRuleStatus | None:
        """Claim a PENDING record and execute it.

        Returns:
            The resulting status, or None if another caller already claimed it.
        """
        claimed = self.state.transition_executed_rule(
            executed_rule.id,
            [ExecutedRuleStatus.PENDING],
            ExecutedRuleStatus.APPLYING,
        )
        if not claimed:
            logger.info(f"Executed rule {executed_rule.id} is no longer pending, not applying")
            return None
        return await self.execute(executed_rule, email)

    async def execute(self, executed_rule: ExecutedRule, email: Email) -> ExecutedRuleStatus:
        """Run every action item of a record that is already APPLYING.

        Delayed items are handed to the scheduled action service. While any
        of them is outstanding the record stays APPLYING.
        """
        resolver = LabelResolver(self.provider)
        failures: list[str] = []
        scheduled = 0

        try:
            for item in executed_rule.action_items:
                if item.is_delayed:
                    scheduled_action = await self.scheduled_actions.schedule(executed_rule, item)
                    if scheduled_action.status == ScheduledActionStatus.FAILED:
                        failures.append(f"{item.type.value}:ENQUEUE_FAILED")
                    else:
                        scheduled += 1
                    continue

                result = await self.run_item(email, item, resolver)
                if not result.success:
                    failures.append(f"{item.type.value}:{result.error_code or 'UNKNOWN'}")
        except Exception as e:
            logger.error(f"Executing rule {executed_rule.id} on {email.id} crashed: {e}")
            self.state.transition_executed_rule(
                executed_rule.id,
                [ExecutedRuleStatus.APPLYING],
                ExecutedRuleStatus.ERROR,
            )
            raise

        if failures:
            logger.warning(f"Executed rule {executed_rule.id} had failures: {', '.join(failures)}")
            self.state.transition_executed_rule(
                executed_rule.id,
                [ExecutedRuleStatus.APPLYING],
                ExecutedRuleStatus.ERROR,
                reason=format_failure_reason(executed_rule.reason, failures),
            )
            return ExecutedRuleStatus.ERROR

        if scheduled:
            logger.info(
                f"Executed rule {executed_rule.id} waiting on {scheduled} scheduled action(s)"
            )
            return ExecutedRuleStatus.APPLYING

        self.state.transition_executed_rule(
            executed_rule.id,
            [ExecutedRuleStatus.APPLYING],
            ExecutedRuleStatus.APPLIED,
        )
        logger.info(f"Executed rule {executed_rule.id} applied to {email.id}")
        return ExecutedRuleStatus.APPLIED

    async def run_item(self, email: Email, item: ActionItem, resolver: LabelResolver) -> ActionResult:
        """Run one action item and record its outcome.

        Exceptions from the provider are not caught here.
        """
        params = await self._resolve_params(item, resolver)
        if params is None:
            result = ActionResult(success=False, error_code="DESTINATION_NOT_FOUND")
        else:
            logger.debug(f"Running {item.type.value} on {email.id} with {params}")
            result = await self.provider.run_action(email, item.type, params)

        self.state.record_action_result(item.id, result)
        return result

    async def _resolve_params(self, item: ActionItem, resolver: LabelResolver) -> dict[str, Any] | None:
        """Fill in provider ids for label and folder names.

        Returns None when a destination name could not be resolved.
        """
        params = item.params()
        try:
            if item.type == ActionType.LABEL and item.label and not item.label_id:
                params["label_id"] = await resolver.resolve_label(item.label)
            elif item.type == ActionType.MOVE_FOLDER and item.folder_name and not item.folder_id:
                params["folder_id"] = await resolver.resolve_folder(item.folder_name)
        except Exception as e:
            logger.warning(f"Could not resolve destination for {item.type.value} item {item.id}: {e}")
            return None
        return params
