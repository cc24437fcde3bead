"""Tests for action execution and the ExecutedRule state machine."""

from datetime import timedelta

import pytest
from conftest import FakeProvider, FakeQueue, action, make_email, make_rule, record_for

from mailrules.models import (
    ActionResult,
    ActionType,
    ExecutedRuleStatus,
    ScheduledActionStatus,
    utc_now,
)
from mailrules.processors.executor import ActionExecutor, format_failure_reason
from mailrules.providers.base import ProviderError
from mailrules.service.scheduled_actions import ScheduledActionService
from mailrules.service.state import AutomationState


@pytest.fixture
def executor(
    state: AutomationState,
    provider: FakeProvider,
    scheduled_actions: ScheduledActionService,
) -> ActionExecutor:
    return ActionExecutor(state, provider, scheduled_actions)


def test_format_failure_reason():
    assert (
        format_failure_reason("Matched", ["LABEL:X", "ARCHIVE:Y"])
        == "Matched\nAction failures: LABEL:X, ARCHIVE:Y"
    )


class TestApply:
    @pytest.mark.asyncio
    async def test_applies_all_actions(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        rule = make_rule(
            actions=[action(ActionType.LABEL, label="Newsletters"), action(ActionType.ARCHIVE)]
        )
        email = provider.add(make_email())
        executed = record_for(state, rule, email)

        status = await executor.apply(executed, email)

        assert status == ExecutedRuleStatus.APPLIED
        assert provider.action_types() == [ActionType.LABEL, ActionType.ARCHIVE]
        assert provider.calls[0][2] == {"label": "Newsletters", "label_id": "Label_1"}

        stored = state.get_executed_rule(executed.id)
        assert stored.status == ExecutedRuleStatus.APPLIED
        assert all(item.success for item in stored.action_items)
        assert all(item.executed_at is not None for item in stored.action_items)

    @pytest.mark.asyncio
    async def test_second_apply_loses_claim(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        email = provider.add(make_email())
        executed = record_for(state, make_rule(), email)

        assert await executor.apply(executed, email) == ExecutedRuleStatus.APPLIED
        assert await executor.apply(executed, email) is None
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_partial_failure_continues(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        provider.results[ActionType.MARK_READ] = ActionResult(
            success=False, error_code="QUOTA_EXCEEDED"
        )
        rule = make_rule(
            actions=[
                action(ActionType.LABEL, label="Newsletters"),
                action(ActionType.MARK_READ),
                action(ActionType.ARCHIVE),
            ]
        )
        email = provider.add(make_email())
        executed = record_for(state, rule, email)

        status = await executor.apply(executed, email)

        assert status == ExecutedRuleStatus.ERROR
        assert provider.action_types() == [
            ActionType.LABEL,
            ActionType.MARK_READ,
            ActionType.ARCHIVE,
        ]
        stored = state.get_executed_rule(executed.id)
        assert stored.status == ExecutedRuleStatus.ERROR
        assert stored.reason == (
            "Static conditions matched\nAction failures: MARK_READ:QUOTA_EXCEEDED"
        )
        assert [item.error_code for item in stored.action_items] == [None, "QUOTA_EXCEEDED", None]
        assert [item.success for item in stored.action_items] == [True, False, True]

    @pytest.mark.asyncio
    async def test_exception_marks_error_and_propagates(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        provider.errors[ActionType.ARCHIVE] = ProviderError("connection reset")
        email = provider.add(make_email())
        executed = record_for(state, make_rule(), email)

        with pytest.raises(ProviderError):
            await executor.apply(executed, email)

        stored = state.get_executed_rule(executed.id)
        assert stored.status == ExecutedRuleStatus.ERROR
        assert stored.reason == executed.reason == "Static conditions matched"


class TestDestinations:
    @pytest.mark.asyncio
    async def test_labels_resolved_once_per_execution(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        rule = make_rule(
            actions=[
                action(ActionType.LABEL, label="Newsletters"),
                action(ActionType.LABEL, label="newsletters"),
            ]
        )
        email = provider.add(make_email())
        await executor.apply(record_for(state, rule, email), email)

        assert provider.label_lookups == 1
        assert provider.calls[0][2]["label_id"] == provider.calls[1][2]["label_id"]

    @pytest.mark.asyncio
    async def test_preset_label_id_not_resolved(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        rule = make_rule(actions=[action(ActionType.LABEL, label="Work", label_id="Label_42")])
        email = provider.add(make_email())
        await executor.apply(record_for(state, rule, email), email)

        assert provider.label_lookups == 0
        assert provider.calls[0][2]["label_id"] == "Label_42"

    @pytest.mark.asyncio
    async def test_unresolvable_destination(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        provider.unresolvable.add("receipts")
        rule = make_rule(
            actions=[action(ActionType.LABEL, label="Receipts"), action(ActionType.ARCHIVE)]
        )
        email = provider.add(make_email())
        executed = record_for(state, rule, email)

        status = await executor.apply(executed, email)

        assert status == ExecutedRuleStatus.ERROR
        assert provider.action_types() == [ActionType.ARCHIVE]
        stored = state.get_executed_rule(executed.id)
        assert stored.reason.endswith("Action failures: LABEL:DESTINATION_NOT_FOUND")

    @pytest.mark.asyncio
    async def test_move_folder_resolves_folder(
        self, state: AutomationState, provider: FakeProvider, executor: ActionExecutor, account
    ):
        rule = make_rule(actions=[action(ActionType.MOVE_FOLDER, folder_name="Receipts")])
        email = provider.add(make_email())
        await executor.apply(record_for(state, rule, email), email)

        assert provider.calls[0][2] == {"folder_name": "Receipts", "folder_id": "Label_1"}


class TestDelayedActions:
    @pytest.mark.asyncio
    async def test_delayed_label_is_scheduled(
        self,
        state: AutomationState,
        provider: FakeProvider,
        queue: FakeQueue,
        executor: ActionExecutor,
        account,
    ):
        rule = make_rule(
            actions=[
                action(ActionType.ARCHIVE),
                action(ActionType.LABEL, label="Read later", delay_in_minutes=30),
            ]
        )
        email = provider.add(make_email())
        executed = record_for(state, rule, email)

        before = utc_now()
        status = await executor.apply(executed, email)

        assert status == ExecutedRuleStatus.APPLYING
        assert provider.action_types() == [ActionType.ARCHIVE]
        assert state.get_executed_rule(executed.id).status == ExecutedRuleStatus.APPLYING

        scheduled = state.list_scheduled_actions(executed_rule_id=executed.id)
        assert len(scheduled) == 1
        assert scheduled[0].status == ScheduledActionStatus.PENDING
        assert scheduled[0].action.type == ActionType.LABEL
        assert scheduled[0].action.label == "Read later"
        assert before + timedelta(minutes=29) < scheduled[0].scheduled_for
        assert scheduled[0].scheduled_for <= utc_now() + timedelta(minutes=30)

        assert len(queue.messages) == 1
        queue_name, payload, delay = queue.messages[0]
        assert queue_name == "scheduled-actions"
        assert payload == {"scheduledActionId": scheduled[0].id}
        assert 1790 < delay <= 1800

        item = state.get_executed_rule(executed.id).action_items[1]
        assert item.scheduled_action_id == scheduled[0].id

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_recorded(
        self, state: AutomationState, provider: FakeProvider, account
    ):
        service = ScheduledActionService(state, FakeQueue(fail=True), lambda _: provider)
        executor = ActionExecutor(state, provider, service)
        rule = make_rule(
            actions=[
                action(ActionType.ARCHIVE),
                action(ActionType.LABEL, label="Later", delay_in_minutes=10),
            ]
        )
        email = provider.add(make_email())
        executed = record_for(state, rule, email)

        status = await executor.apply(executed, email)

        assert status == ExecutedRuleStatus.ERROR
        stored = state.get_executed_rule(executed.id)
        assert stored.reason.endswith("Action failures: LABEL:ENQUEUE_FAILED")
        scheduled = state.list_scheduled_actions(executed_rule_id=executed.id)
        assert scheduled[0].status == ScheduledActionStatus.FAILED
        assert "Failed to enqueue" in scheduled[0].error_message
