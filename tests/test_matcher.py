"""Tests for rule selection."""

import pytest
from conftest import FakeProvider, make_email, make_rule

from mailrules.models import (
    Account,
    CategoryFilterType,
    ClassificationResult,
    Condition,
    Email,
    LearnedPattern,
    LearnedPatternType,
    LogicalOperator,
    MatchReasonType,
    Rule,
)
from mailrules.processors.classifier import RuleClassifier
from mailrules.processors.conditions import ConditionEvaluator
from mailrules.processors.matcher import RuleMatcher, passes_category_filter


class StubClassifier(RuleClassifier):
    def __init__(self, result: ClassificationResult | None = None, error: Exception | None = None):
        self.result = result or ClassificationResult()
        self.error = error
        self.calls: list[list[str]] = []

    async def classify(self, email: Email, rules: list[Rule]) -> ClassificationResult:
        self.calls.append([rule.name for rule in rules])
        if self.error:
            raise self.error
        return self.result


@pytest.fixture
def account() -> Account:
    return Account(id="acct", email="me@example.com")


def _matcher(provider: FakeProvider, classifier: RuleClassifier | None = None) -> RuleMatcher:
    return RuleMatcher(ConditionEvaluator(provider), classifier, confidence_threshold=0.8)


def _learned(rule: Rule, pattern_type: LearnedPatternType, value: str, exclude: bool = False):
    return {
        rule.id: [
            LearnedPattern(
                id="p1", rule_id=rule.id, type=pattern_type, value=value, exclude=exclude
            )
        ]
    }


class TestStaticMatching:
    @pytest.mark.asyncio
    async def test_static_match(self, provider: FakeProvider, account: Account):
        rule = make_rule()
        result = await _matcher(provider).match(make_email(), account, [rule])
        assert result.rule is rule
        assert result.match_reasons[0].type == MatchReasonType.STATIC

    @pytest.mark.asyncio
    async def test_first_static_rule_in_order_wins(self, provider: FakeProvider, account: Account):
        first = make_rule(name="First", subject_pattern="digest")
        second = make_rule(name="Second")
        result = await _matcher(provider).match(make_email(), account, [first, second])
        assert result.rule is first

    @pytest.mark.asyncio
    async def test_static_beats_ai(self, provider: FakeProvider, account: Account):
        ai_rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        static_rule = make_rule(name="Substack")
        classifier = StubClassifier(ClassificationResult(matched_rule_name="Newsletters", confidence=1.0))

        result = await _matcher(provider, classifier).match(
            make_email(), account, [ai_rule, static_rule]
        )
        assert result.rule is static_rule
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_no_match(self, provider: FakeProvider, account: Account):
        rule = make_rule(from_pattern="@acme.com")
        result = await _matcher(provider).match(make_email(), account, [rule])
        assert result.rule is None
        assert result.reason == "No rule matched"

    @pytest.mark.asyncio
    async def test_disabled_rule_ignored(self, provider: FakeProvider, account: Account):
        rule = make_rule(enabled=False)
        result = await _matcher(provider).match(make_email(), account, [rule])
        assert result.rule is None


class TestLearnedPatterns:
    @pytest.mark.asyncio
    async def test_learned_include(self, provider: FakeProvider, account: Account):
        rule = make_rule(from_pattern="@acme.com")
        result = await _matcher(provider).match(
            make_email(),
            account,
            [rule],
            learned_patterns=_learned(rule, LearnedPatternType.FROM, "substack.com"),
        )
        assert result.rule is rule
        assert result.match_reasons[0].type == MatchReasonType.LEARNED_PATTERN

    @pytest.mark.asyncio
    async def test_learned_exclude_overrides_static(self, provider: FakeProvider, account: Account):
        rule = make_rule()
        result = await _matcher(provider).match(
            make_email(),
            account,
            [rule],
            learned_patterns=_learned(rule, LearnedPatternType.SUBJECT, "Weekly digest", exclude=True),
        )
        assert result.rule is None

    @pytest.mark.asyncio
    async def test_learned_exclude_only_affects_its_rule(
        self, provider: FakeProvider, account: Account
    ):
        excluded = make_rule(name="Excluded")
        fallback = make_rule(name="Fallback", from_pattern="writer@*")
        result = await _matcher(provider).match(
            make_email(),
            account,
            [excluded, fallback],
            learned_patterns=_learned(excluded, LearnedPatternType.FROM, "substack.com", exclude=True),
        )
        assert result.rule is fallback


class TestAIMatching:
    @pytest.mark.asyncio
    async def test_ai_match(self, provider: FakeProvider, account: Account):
        rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        classifier = StubClassifier(
            ClassificationResult(matched_rule_name="Newsletters", confidence=0.9, explanation="A newsletter")
        )
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is rule
        assert result.match_reasons[0].type == MatchReasonType.AI
        assert "A newsletter" in result.reason

    @pytest.mark.asyncio
    async def test_low_confidence_is_no_match(self, provider: FakeProvider, account: Account):
        rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        classifier = StubClassifier(ClassificationResult(matched_rule_name="Newsletters", confidence=0.5))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is None
        assert "not confident" in result.reason

    @pytest.mark.asyncio
    async def test_no_rule_named(self, provider: FakeProvider, account: Account):
        rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        classifier = StubClassifier(ClassificationResult(explanation="Personal email"))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is None
        assert result.reason == "No rule matched: Personal email"

    @pytest.mark.asyncio
    async def test_classifier_error_is_no_match(self, provider: FakeProvider, account: Account):
        rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        classifier = StubClassifier(error=RuntimeError("model offline"))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is None

    @pytest.mark.asyncio
    async def test_account_without_ai_access(self, provider: FakeProvider):
        account = Account(id="acct", email="me@example.com", ai_enabled=False)
        rule = make_rule(name="Newsletters", from_pattern=None, instructions="Newsletters")
        classifier = StubClassifier(ClassificationResult(matched_rule_name="Newsletters", confidence=1.0))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is None
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_and_rule_needs_static_match_before_ai(
        self, provider: FakeProvider, account: Account
    ):
        rule = make_rule(
            name="Acme newsletters", from_pattern="@acme.com", instructions="Newsletters"
        )
        classifier = StubClassifier(
            ClassificationResult(matched_rule_name="Acme newsletters", confidence=1.0)
        )
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is None
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_and_rule_with_static_match_is_confirmed_by_ai(
        self, provider: FakeProvider, account: Account
    ):
        rule = make_rule(name="Substack", instructions="Paid newsletters")
        classifier = StubClassifier(ClassificationResult(matched_rule_name="Substack", confidence=0.95))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is rule
        assert classifier.calls == [["Substack"]]

    @pytest.mark.asyncio
    async def test_or_rule_static_match_skips_ai(self, provider: FakeProvider, account: Account):
        rule = make_rule(
            name="Substack",
            instructions="Paid newsletters",
            conditional_operator=LogicalOperator.OR,
        )
        classifier = StubClassifier()
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is rule
        assert classifier.calls == []

    @pytest.mark.asyncio
    async def test_or_rule_static_miss_goes_to_ai(self, provider: FakeProvider, account: Account):
        rule = make_rule(
            name="Newsletters",
            from_pattern="@acme.com",
            instructions="Newsletters",
            conditional_operator=LogicalOperator.OR,
        )
        classifier = StubClassifier(ClassificationResult(matched_rule_name="Newsletters", confidence=0.85))
        result = await _matcher(provider, classifier).match(make_email(), account, [rule])
        assert result.rule is rule


class TestEligibility:
    @pytest.mark.asyncio
    async def test_reply_skips_rules_not_running_on_threads(
        self, provider: FakeProvider, account: Account
    ):
        reply = make_email(headers={"In-Reply-To": "<root@example.com>"}, thread_id="<root@example.com>")
        rule = make_rule()
        result = await _matcher(provider).match(reply, account, [rule])
        assert result.rule is None

    @pytest.mark.asyncio
    async def test_reply_continues_previously_applied_rule(
        self, provider: FakeProvider, account: Account
    ):
        reply = make_email(headers={"In-Reply-To": "<root@example.com>"}, thread_id="<root@example.com>")
        rule = make_rule()
        result = await _matcher(provider).match(
            reply, account, [rule], previously_applied={rule.id}
        )
        assert result.rule is rule

    @pytest.mark.asyncio
    async def test_reply_matches_rule_running_on_threads(
        self, provider: FakeProvider, account: Account
    ):
        reply = make_email(headers={"References": "<root@example.com>"})
        rule = make_rule(run_on_threads=True)
        result = await _matcher(provider).match(reply, account, [rule])
        assert result.rule is rule

    @pytest.mark.asyncio
    async def test_reply_matches_learned_include_without_thread_flag(
        self, provider: FakeProvider, account: Account
    ):
        reply = make_email(headers={"In-Reply-To": "<root@example.com>"}, thread_id="<root@example.com>")
        rule = make_rule(from_pattern="@acme.com")
        result = await _matcher(provider).match(
            reply,
            account,
            [rule],
            learned_patterns=_learned(rule, LearnedPatternType.FROM, "substack.com"),
        )
        assert result.rule is rule
        assert [r.type for r in result.match_reasons] == [MatchReasonType.LEARNED_PATTERN]

    @pytest.mark.asyncio
    async def test_reply_static_match_still_needs_thread_flag(
        self, provider: FakeProvider, account: Account
    ):
        reply = make_email(headers={"In-Reply-To": "<root@example.com>"}, thread_id="<root@example.com>")
        rule = make_rule()
        result = await _matcher(provider).match(
            reply,
            account,
            [rule],
            learned_patterns=_learned(rule, LearnedPatternType.SUBJECT, "Unrelated subject"),
        )
        assert result.rule is None

    def test_category_filter(self):
        include = make_rule(
            category_filter_type=CategoryFilterType.INCLUDE, category_filters=["Newsletter"]
        )
        exclude = make_rule(
            category_filter_type=CategoryFilterType.EXCLUDE, category_filters=["newsletter"]
        )
        categorized = make_email(sender_category="newsletter")

        assert passes_category_filter(include, categorized)
        assert not passes_category_filter(exclude, categorized)
        assert passes_category_filter(exclude, make_email())

    @pytest.mark.asyncio
    async def test_conditions_are_evaluated_for_winner(
        self, provider: FakeProvider, account: Account
    ):
        provider.known_senders.add("writer@substack.com")
        provider.known_senders.add("substack.com")
        rule = make_rule(conditions=[Condition(type="requires_first_contact")])

        result = await _matcher(provider).match(make_email(), account, [rule])
        assert result.rule is rule
        assert len(result.condition_results) == 1
        assert not result.conditions_passed
