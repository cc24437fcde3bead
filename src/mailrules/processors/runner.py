"""End-to-end processing of one incoming email."""

import logging

from mailrules.models import (
    Account,
    Email,
    ExecutedRule,
    ExecutedRuleStatus,
)
from mailrules.providers.base import EmailProvider
from mailrules.service.scheduled_actions import ScheduledActionService
from mailrules.service.state import AutomationState

from .classifier import RuleClassifier
from .conditions import ConditionEvaluator
from .executor import ActionExecutor
from .matcher import RuleMatcher

logger = logging.getLogger(__name__)


class RuleRunner:
    """Matches an email to a rule, records the decision and applies it when allowed.

    Rules that send mail on the user's behalf, or that are not automated,
    are left PENDING for a human to approve or reject.
    """

    def __init__(
        self,
        state: AutomationState,
        provider: EmailProvider,
        scheduled_actions: ScheduledActionService,
        classifier: RuleClassifier | None = None,
        *,
        confidence_threshold: float = 0.8,
    ) -> None:
        self.state = state
        self.provider = provider
        self.scheduled_actions = scheduled_actions
        self.matcher = RuleMatcher(
            ConditionEvaluator(provider),
            classifier,
            confidence_threshold=confidence_threshold,
        )
        self.executor = ActionExecutor(state, provider, scheduled_actions)

    async def process_email(self, account: Account, email: Email) -> ExecutedRule:
        """Run the rule engine over one email.

        Returns:
            The ExecutedRule recording the decision, reloaded after any
            execution so its status is current.
        """
        self.scheduled_actions.cancel_for_message(
            account.id, email.id, reason="Superseded by reprocessing the message"
        )

        rules = self.state.list_rules(account.id, enabled_only=True)
        learned = self.state.get_learned_patterns(rule.id for rule in rules)
        previously_applied = (
            self.state.get_previously_applied_rule_ids(account.id, email.thread_id)
            if email.thread_id
            else set()
        )

        result = await self.matcher.match(
            email,
            account,
            rules,
            learned_patterns=learned,
            previously_applied=previously_applied,
        )

        if result.rule is None:
            logger.info(f"No rule matched {email.id}: {result.reason}")
            return self.state.create_executed_rule(
                account_id=account.id,
                message_id=email.id,
                thread_id=email.thread_id,
                rule=None,
                reason=result.reason,
                status=ExecutedRuleStatus.SKIPPED,
            )

        rule = result.rule
        if not result.conditions_passed:
            failed = "; ".join(r.reason for r in result.condition_results if not r.passed)
            logger.info(f"Rule '{rule.name}' matched {email.id} but conditions failed: {failed}")
            return self.state.create_executed_rule(
                account_id=account.id,
                message_id=email.id,
                thread_id=email.thread_id,
                rule=rule,
                reason=f"{result.reason}\nConditions not met: {failed}",
                status=ExecutedRuleStatus.SKIPPED,
            )

        automated = rule.can_automate
        executed = self.state.create_executed_rule(
            account_id=account.id,
            message_id=email.id,
            thread_id=email.thread_id,
            rule=rule,
            reason=result.reason,
            status=ExecutedRuleStatus.PENDING,
            automated=automated,
        )

        if not automated:
            logger.info(f"Rule '{rule.name}' for {email.id} awaits approval ({executed.id})")
            return executed

        await self.executor.apply(executed, email)
        return self.state.get_executed_rule(executed.id) or executed

    async def approve(self, executed_rule_id: str, email: Email) -> ExecutedRuleStatus | None:
        """Apply a PENDING record after human approval.

        Returns:
            The resulting status, or None if the record was not pending.
        """
        executed = self.state.get_executed_rule(executed_rule_id)
        if executed is None:
            logger.warning(f"Executed rule {executed_rule_id} not found")
            return None
        return await self.executor.apply(executed, email)

    def reject(self, executed_rule_id: str) -> bool:
        """Reject a PENDING or APPLYING record and cancel its outstanding actions."""
        rejected = self.state.transition_executed_rule(
            executed_rule_id,
            [ExecutedRuleStatus.PENDING, ExecutedRuleStatus.APPLYING],
            ExecutedRuleStatus.REJECTED,
        )
        if not rejected:
            logger.info(f"Executed rule {executed_rule_id} cannot be rejected in its current state")
            return False

        cancelled = self.scheduled_actions.cancel_for_executed_rule(
            executed_rule_id, reason="Executed rule rejected"
        )
        logger.info(f"Rejected executed rule {executed_rule_id}, cancelled {cancelled} scheduled actions")
        return True
