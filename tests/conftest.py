"""Shared fixtures and fakes for mailrules tests."""

import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import pytest

from mailrules.models import (
    Account,
    Action,
    ActionResult,
    ActionType,
    Email,
    ExecutedRule,
    ExecutedRuleStatus,
    Rule,
)
from mailrules.providers.base import EmailProvider, ProviderError
from mailrules.queue import QueueError, TaskQueue
from mailrules.service.scheduled_actions import ScheduledActionService
from mailrules.service.state import AutomationState


class FakeProvider(EmailProvider):
    """In-memory mailbox recording every action it is asked to perform."""

    name = "fake"

    def __init__(self) -> None:
        self.messages: dict[str, Email] = {}
        self.threads: dict[str, list[Email]] = {}
        self.known_senders: set[str] = set()
        self.calls: list[tuple[str, ActionType, dict[str, Any]]] = []
        self.results: dict[ActionType, ActionResult] = {}
        self.errors: dict[ActionType, Exception] = {}
        self.labels: dict[str, str] = {}
        self.unresolvable: set[str] = set()
        self.label_lookups = 0
        self.lookup_error: Exception | None = None
        self.thread_error: Exception | None = None

    def add(self, email: Email) -> Email:
        self.messages[email.id] = email
        return email

    async def get_message(self, message_id: str) -> Email | None:
        return self.messages.get(message_id)

    async def get_thread_messages(self, thread_id: str) -> list[Email]:
        if self.thread_error:
            raise self.thread_error
        return self.threads.get(thread_id, [])

    async def has_previous_communication(
        self,
        sender: str,
        before: datetime | None,
        exclude_message_id: str | None = None,
    ) -> bool:
        if self.lookup_error:
            raise self.lookup_error
        return sender in self.known_senders

    async def run_action(
        self,
        email: Email,
        action_type: ActionType,
        params: dict[str, Any],
    ) -> ActionResult:
        self.calls.append((email.id, action_type, params))
        if action_type in self.errors:
            raise self.errors[action_type]
        return self.results.get(action_type, ActionResult(success=True))

    async def resolve_or_create_label(self, name: str) -> str:
        self.label_lookups += 1
        if name.lower() in self.unresolvable:
            raise ProviderError(f"Could not create label {name}")
        return self.labels.setdefault(name.lower(), f"Label_{len(self.labels) + 1}")

    def action_types(self) -> list[ActionType]:
        return [call[1] for call in self.calls]


class FakeQueue(TaskQueue):
    """Queue that records messages instead of delivering them."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.messages: list[tuple[str, dict[str, Any], float | None]] = []

    async def enqueue(
        self,
        queue_name: str,
        payload: dict[str, Any],
        *,
        delay_seconds: float | None = None,
        parallelism: int | None = None,
    ) -> str:
        if self.fail:
            raise QueueError("queue unavailable")
        self.messages.append((queue_name, payload, delay_seconds))
        return f"msg-{len(self.messages)}"


def make_email(**overrides: Any) -> Email:
    fields: dict[str, Any] = {
        "id": "INBOX:1",
        "message_id": "<msg1@example.com>",
        "thread_id": "<msg1@example.com>",
        "subject": "Weekly digest",
        "from_addr": "Writer <writer@substack.com>",
        "to_addrs": ["me@example.com"],
        "body_text": "This week in newsletters.",
        "date": datetime(2024, 1, 8, 9, 0, tzinfo=timezone.utc),
    }
    fields.update(overrides)
    return Email(**fields)


def make_rule(account_id: str = "acct", **overrides: Any) -> Rule:
    fields: dict[str, Any] = {
        "id": str(uuid.uuid4()),
        "account_id": account_id,
        "name": "Archive newsletters",
        "from_pattern": "@substack.com",
        "automate": True,
        "actions": [Action(id=str(uuid.uuid4()), type=ActionType.ARCHIVE)],
    }
    fields.update(overrides)
    return Rule(**fields)


def action(action_type: ActionType, **params: Any) -> Action:
    return Action(id=str(uuid.uuid4()), type=action_type, **params)


def record_for(
    state: AutomationState,
    rule: Rule,
    email: Email,
    status: ExecutedRuleStatus = ExecutedRuleStatus.PENDING,
) -> ExecutedRule:
    """Persist a rule and an ExecutedRule for it, as the runner would."""
    state.save_rule(rule)
    return state.create_executed_rule(
        account_id=rule.account_id,
        message_id=email.id,
        thread_id=email.thread_id,
        rule=rule,
        reason="Static conditions matched",
        status=status,
        automated=True,
    )


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def state(temp_dir: Path) -> AutomationState:
    """Create a temporary AutomationState for testing."""
    return AutomationState(temp_dir / "test.db")


@pytest.fixture
def account(state: AutomationState) -> Account:
    return state.save_account(Account(id="acct", email="me@example.com"))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def scheduled_actions(
    state: AutomationState,
    queue: FakeQueue,
    provider: FakeProvider,
) -> ScheduledActionService:
    return ScheduledActionService(state, queue, lambda account_id: provider)
