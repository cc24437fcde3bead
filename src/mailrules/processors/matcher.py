"""Select the single rule that governs an email.

Precedence is static match, then learned pattern, then AI classification.
A matching learned exclusion removes a rule from every stage.
"""

import logging
from collections.abc import Iterable

from mailrules.models import (
    Account,
    CategoryFilterType,
    Email,
    LearnedPattern,
    LogicalOperator,
    MatchReason,
    MatchReasonType,
    MatchResult,
    Rule,
)

from .classifier import RuleClassifier
from .conditions import ConditionEvaluator
from .patterns import find_learned_match, matches_static

logger = logging.getLogger(__name__)


def passes_category_filter(rule: Rule, email: Email) -> bool:
    """Category filters only apply when the sender has been categorized."""
    if not rule.category_filter_type or not email.sender_category:
        return True
    categories = {category.lower() for category in rule.category_filters}
    member = email.sender_category.lower() in categories
    if rule.category_filter_type == CategoryFilterType.INCLUDE:
        return member
    return not member


class RuleMatcher:
    """Combines static conditions, learned patterns and AI classification."""

    def __init__(
        self,
        evaluator: ConditionEvaluator,
        classifier: RuleClassifier | None = None,
        *,
        confidence_threshold: float = 0.8,
    ) -> None:
        """Initialize the matcher.

        Args:
            evaluator: Evaluates the winning rule's gate conditions.
            classifier: AI classifier; without one only static and learned
                matches are possible.
            confidence_threshold: Classifications below this count as no match.
        """
        self.evaluator = evaluator
        self.classifier = classifier
        self.confidence_threshold = confidence_threshold

    def _eligible(self, rules: Iterable[Rule], email: Email) -> list[Rule]:
        eligible = []
        for rule in rules:
            if not rule.enabled:
                continue
            if not passes_category_filter(rule, email):
                logger.debug(f"Rule '{rule.name}' filtered out by sender category")
                continue
            eligible.append(rule)
        return eligible

    async def match(
        self,
        email: Email,
        account: Account,
        rules: list[Rule],
        *,
        learned_patterns: dict[str, list[LearnedPattern]] | None = None,
        previously_applied: set[str] | None = None,
    ) -> MatchResult:
        """Find the rule for an email and evaluate its gate conditions.

        Args:
            email: The email to match.
            account: Owner of the rules.
            rules: Candidate rules in their configured order.
            learned_patterns: Learned patterns per rule id.
            previously_applied: Ids of rules already applied in this thread.

        Returns:
            A MatchResult whose `rule` is None when nothing matched.
        """
        learned_patterns = learned_patterns or {}
        previously_applied = previously_applied or set()
        candidates = self._eligible(rules, email)

        static_matches: list[Rule] = []
        learned_matches: list[tuple[Rule, LearnedPattern]] = []
        ai_candidates: list[Rule] = []

        for rule in candidates:
            pattern = find_learned_match(learned_patterns.get(rule.id, []), email)
            if pattern and pattern.exclude:
                logger.info(
                    f"Rule '{rule.name}' excluded for {email.id} by learned "
                    f"{pattern.type.value} pattern '{pattern.value}'"
                )
                continue
            if pattern:
                learned_matches.append((rule, pattern))

            # Thread continuity only gates static and AI matching
            if email.is_reply and not rule.run_on_threads and rule.id not in previously_applied:
                logger.debug(f"Rule '{rule.name}' does not run on threads, skipping {email.id}")
                continue

            if rule.has_static_conditions:
                static_ok = matches_static(rule, email)
                if static_ok and (
                    rule.conditional_operator == LogicalOperator.OR or not rule.has_ai_instructions
                ):
                    static_matches.append(rule)
                elif rule.has_ai_instructions and (
                    static_ok or rule.conditional_operator == LogicalOperator.OR
                ):
                    ai_candidates.append(rule)
            elif rule.has_ai_instructions:
                ai_candidates.append(rule)

        if static_matches:
            rule = static_matches[0]
            reasons = [MatchReason(type=MatchReasonType.STATIC, detail="Static conditions matched")]
            for learned_rule, pattern in learned_matches:
                if learned_rule.id == rule.id:
                    reasons.append(self._learned_reason(pattern))
            return await self._result(rule, email, account, reasons)

        if learned_matches:
            rule, pattern = learned_matches[0]
            return await self._result(rule, email, account, [self._learned_reason(pattern)])

        if ai_candidates:
            return await self._classify(email, account, ai_candidates)

        return MatchResult(reason="No rule matched")

    def _learned_reason(self, pattern: LearnedPattern) -> MatchReason:
        return MatchReason(
            type=MatchReasonType.LEARNED_PATTERN,
            detail=f"{pattern.type.value} matches '{pattern.value}'",
        )

    async def _classify(
        self,
        email: Email,
        account: Account,
        candidates: list[Rule],
    ) -> MatchResult:
        if self.classifier is None:
            return MatchResult(reason="No rule matched (AI classification unavailable)")
        if not account.has_ai_access():
            logger.debug(f"Account {account.id} has no AI access, skipping classification")
            return MatchResult(reason="No rule matched (account has no AI access)")

        try:
            classification = await self.classifier.classify(email, candidates)
        except Exception as e:
            logger.warning(f"AI classification of {email.id} failed: {e}")
            return MatchResult(reason="No rule matched (AI classification failed)")

        if not classification.matched_rule_name:
            reason = "No rule matched"
            if classification.explanation:
                reason += f": {classification.explanation}"
            return MatchResult(reason=reason)

        if classification.confidence < self.confidence_threshold:
            logger.info(
                f"AI picked '{classification.matched_rule_name}' for {email.id} with "
                f"confidence {classification.confidence:.2f}, below threshold"
            )
            return MatchResult(reason="No rule matched: AI classification was not confident")

        for rule in candidates:
            if rule.name == classification.matched_rule_name:
                reason = MatchReason(type=MatchReasonType.AI, detail=classification.explanation)
                return await self._result(rule, email, account, [reason])

        logger.warning(
            f"AI picked '{classification.matched_rule_name}' which is not a candidate rule"
        )
        return MatchResult(reason="No rule matched")

    async def _result(
        self,
        rule: Rule,
        email: Email,
        account: Account,
        reasons: list[MatchReason],
    ) -> MatchResult:
        condition_results = await self.evaluator.evaluate_all(rule.conditions, email, account)
        summary = "; ".join(f"{r.type.value}: {r.detail}" if r.detail else r.type.value for r in reasons)
        logger.info(f"Rule '{rule.name}' matched {email.id} ({summary})")
        return MatchResult(
            rule=rule,
            reason=summary,
            match_reasons=reasons,
            condition_results=condition_results,
        )
