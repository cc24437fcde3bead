"""Gate conditions evaluated against one email before a rule runs."""

import logging

from mailrules.models import Account, Condition, ConditionResult, ConditionType, Email
from mailrules.providers.base import EmailProvider
from mailrules.utils.text import normalize_sender

logger = logging.getLogger(__name__)


class ConditionEvaluator:
    """Evaluates declarative conditions, failing closed whenever a lookup fails.

    Never raises: an unknown condition type or a provider error produces a
    failed result with a reason instead.
    """

    def __init__(self, provider: EmailProvider) -> None:
        self.provider = provider

    async def evaluate(self, condition: Condition, email: Email, account: Account) -> ConditionResult:
        """Evaluate a single condition against an email."""
        condition_type = condition.type

        if condition_type == ConditionType.REQUIRES_FIRST_CONTACT.value:
            return await self._first_contact(email)

        elif condition_type == ConditionType.REQUIRES_THREAD_EXISTS.value:
            passed = email.is_reply
            return ConditionResult(
                type=condition_type,
                passed=passed,
                reason="Email belongs to an existing thread"
                if passed
                else "Email does not belong to an existing thread",
            )

        elif condition_type == ConditionType.REQUIRES_MIN_MESSAGES.value:
            return await self._min_messages(email, condition.min_count or 0)

        elif condition_type == ConditionType.REQUIRES_OPT_IN.value:
            feature = condition.feature or ""
            passed = bool(feature) and account.has_opted_in(feature)
            return ConditionResult(
                type=condition_type,
                passed=passed,
                reason=f"Account opted in to '{feature}'"
                if passed
                else f"Account has not opted in to '{feature}'",
                value=feature,
            )

        logger.error(f"Unknown condition type '{condition_type}', failing closed")
        return ConditionResult(
            type=condition_type,
            passed=False,
            reason=f"Unknown condition type: {condition_type}",
        )

    async def evaluate_all(
        self,
        conditions: list[Condition],
        email: Email,
        account: Account,
    ) -> list[ConditionResult]:
        """Evaluate every condition, in order."""
        return [await self.evaluate(condition, email, account) for condition in conditions]

    async def _first_contact(self, email: Email) -> ConditionResult:
        condition_type = ConditionType.REQUIRES_FIRST_CONTACT.value
        sender = normalize_sender(email.from_addr)
        if not sender:
            return ConditionResult(
                type=condition_type, passed=False, reason="Email has no sender address"
            )

        try:
            seen_before = await self.provider.has_previous_communication(
                sender, email.date, exclude_message_id=email.id
            )
        except Exception as e:
            logger.warning(f"Previous communication lookup for {sender} failed: {e}")
            return ConditionResult(
                type=condition_type,
                passed=False,
                reason=f"Could not check previous communication with {sender}",
                value=sender,
            )

        return ConditionResult(
            type=condition_type,
            passed=not seen_before,
            reason=f"Previous communication with {sender} exists"
            if seen_before
            else f"First contact from {sender}",
            value=sender,
        )

    async def _min_messages(self, email: Email, min_count: int) -> ConditionResult:
        condition_type = ConditionType.REQUIRES_MIN_MESSAGES.value
        count = 0
        if email.thread_id:
            try:
                count = len(await self.provider.get_thread_messages(email.thread_id))
            except Exception as e:
                logger.warning(f"Could not fetch thread {email.thread_id}, counting 0 messages: {e}")
                count = 0

        passed = count >= min_count
        return ConditionResult(
            type=condition_type,
            passed=passed,
            reason=f"Thread has {count} messages (minimum {min_count})",
            value=count,
        )
