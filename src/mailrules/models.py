"""Core data models for rule matching and automated actions."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ActionType(str, Enum):
    """Types of actions a rule can perform."""

    ARCHIVE = "ARCHIVE"
    LABEL = "LABEL"
    FORWARD = "FORWARD"
    REPLY = "REPLY"
    DRAFT_EMAIL = "DRAFT_EMAIL"
    SEND_EMAIL = "SEND_EMAIL"
    NOTIFY_SENDER = "NOTIFY_SENDER"
    DIGEST = "DIGEST"
    MARK_READ = "MARK_READ"
    MARK_SPAM = "MARK_SPAM"
    MOVE_FOLDER = "MOVE_FOLDER"
    CALL_WEBHOOK = "CALL_WEBHOOK"


# Actions that send mail on the user's behalf always need a human approval
APPROVAL_REQUIRED_ACTIONS = frozenset(
    {ActionType.REPLY, ActionType.FORWARD, ActionType.SEND_EMAIL}
)


class LogicalOperator(str, Enum):
    """How static and AI conditions combine."""

    AND = "AND"
    OR = "OR"


class CategoryFilterType(str, Enum):
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"


class ConditionType(str, Enum):
    """Gate conditions understood by the condition evaluator."""

    REQUIRES_FIRST_CONTACT = "requires_first_contact"
    REQUIRES_THREAD_EXISTS = "requires_thread_exists"
    REQUIRES_MIN_MESSAGES = "requires_min_messages"
    REQUIRES_OPT_IN = "requires_opt_in"


class LearnedPatternType(str, Enum):
    FROM = "FROM"
    SUBJECT = "SUBJECT"
    BODY = "BODY"


class MatchReasonType(str, Enum):
    STATIC = "STATIC"
    LEARNED_PATTERN = "LEARNED_PATTERN"
    AI = "AI"


class ExecutedRuleStatus(str, Enum):
    """Lifecycle of an executed rule."""

    PENDING = "PENDING"
    APPLYING = "APPLYING"
    APPLIED = "APPLIED"
    ERROR = "ERROR"
    REJECTED = "REJECTED"
    SKIPPED = "SKIPPED"


class ScheduledActionStatus(str, Enum):
    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    APPLIED = "APPLIED"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"


class AutomationJobRunStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class Attachment(BaseModel):
    """Email attachment metadata."""

    filename: str
    content_type: str
    size: int
    content_id: str | None = None


class Email(BaseModel):
    """A parsed email message as handed to the rule engine."""

    id: str  # Provider message id
    thread_id: str | None = None
    source: str = ""
    message_id: str | None = None  # RFC 5322 Message-ID header
    subject: str = ""
    from_addr: str = ""
    to_addrs: list[str] = Field(default_factory=list)
    cc_addrs: list[str] = Field(default_factory=list)
    date: datetime | None = None
    body_text: str = ""
    body_html: str | None = None
    headers: dict[str, str] = Field(default_factory=dict)
    folder: str = "INBOX"
    flags: list[str] = Field(default_factory=list)
    attachments: list[Attachment] = Field(default_factory=list)

    # Sender category assigned by an upstream categorizer, if any
    sender_category: str | None = None

    @property
    def is_reply(self) -> bool:
        """Whether this message continues an existing thread."""
        headers = {key.lower() for key in self.headers}
        if {"in-reply-to", "references"} & headers:
            return True
        return bool(self.thread_id) and self.thread_id not in (self.id, self.message_id)


class Account(BaseModel):
    """The mailbox owner that rules, jobs and history are scoped to."""

    id: str
    email: str
    ai_enabled: bool = True
    feature_opt_ins: list[str] = Field(default_factory=list)

    def has_ai_access(self) -> bool:
        return self.ai_enabled

    def has_opted_in(self, feature: str) -> bool:
        return feature in self.feature_opt_ins


class ActionFields(BaseModel):
    """Typed parameters shared by rule actions and their materialized copies."""

    label: str | None = None
    label_id: str | None = None
    folder_name: str | None = None
    folder_id: str | None = None
    to: str | None = None
    cc: str | None = None
    bcc: str | None = None
    subject: str | None = None
    content: str | None = None
    url: str | None = None
    delay_in_minutes: int | None = None

    def params(self) -> dict[str, Any]:
        """Parameters handed to the email provider (only the ones that are set)."""
        return self.model_dump(
            include=set(ActionFields.model_fields) - {"delay_in_minutes"},
            exclude_none=True,
        )

    @property
    def is_delayed(self) -> bool:
        return bool(self.delay_in_minutes and self.delay_in_minutes > 0)


class Action(ActionFields):
    """One step of a rule."""

    id: str
    type: ActionType


class Condition(BaseModel):
    """A gate condition attached to a rule.

    `type` is kept as a plain string so records written by a newer authoring
    schema still load; the evaluator fails unknown types closed.
    """

    type: str
    min_count: int | None = None
    feature: str | None = None


class Rule(BaseModel):
    """User-defined automation rule."""

    id: str
    account_id: str
    name: str
    enabled: bool = True

    # Static conditions
    from_pattern: str | None = None
    to_pattern: str | None = None
    subject_pattern: str | None = None
    body_pattern: str | None = None

    # Natural-language instructions for the AI classifier
    instructions: str | None = None
    conditional_operator: LogicalOperator = LogicalOperator.AND

    category_filter_type: CategoryFilterType | None = None
    category_filters: list[str] = Field(default_factory=list)

    conditions: list[Condition] = Field(default_factory=list)
    actions: list[Action] = Field(default_factory=list)

    automate: bool = False
    run_on_threads: bool = False
    created_at: datetime = Field(default_factory=utc_now)

    @property
    def has_static_conditions(self) -> bool:
        return any(
            (self.from_pattern, self.to_pattern, self.subject_pattern, self.body_pattern)
        )

    @property
    def has_ai_instructions(self) -> bool:
        return bool(self.instructions and self.instructions.strip())

    @property
    def requires_approval(self) -> bool:
        return any(action.type in APPROVAL_REQUIRED_ACTIONS for action in self.actions)

    @property
    def can_automate(self) -> bool:
        """Whether matches may run without a human approving them first."""
        return self.automate and not self.requires_approval


class LearnedPattern(BaseModel):
    """A sender/subject/body pattern learned for a rule."""

    id: str
    rule_id: str
    type: LearnedPatternType
    value: str
    exclude: bool = False


class ConditionResult(BaseModel):
    """Outcome of evaluating one gate condition."""

    type: str
    passed: bool
    reason: str
    value: Any = None


class MatchReason(BaseModel):
    type: MatchReasonType
    detail: str = ""


class ClassificationResult(BaseModel):
    """What the AI classifier picked among the candidate rules."""

    matched_rule_name: str | None = None
    confidence: float = 0.0
    explanation: str = ""


class MatchResult(BaseModel):
    """The rule selected for an email, or none."""

    rule: Rule | None = None
    reason: str = ""
    match_reasons: list[MatchReason] = Field(default_factory=list)
    condition_results: list[ConditionResult] = Field(default_factory=list)

    @property
    def conditions_passed(self) -> bool:
        return all(result.passed for result in self.condition_results)


class ActionResult(BaseModel):
    """Structured result reported by the email provider for one action."""

    success: bool
    error_code: str | None = None


class ActionItem(ActionFields):
    """A point-in-time copy of a rule action attached to an executed rule."""

    id: str
    executed_rule_id: str
    type: ActionType
    success: bool | None = None
    error_code: str | None = None
    executed_at: datetime | None = None
    scheduled_action_id: str | None = None


class ExecutedRule(BaseModel):
    """Audit and execution record for a rule matched against one email."""

    id: str
    account_id: str
    rule_id: str | None = None
    thread_id: str | None = None
    message_id: str
    automated: bool = False
    reason: str = ""
    status: ExecutedRuleStatus = ExecutedRuleStatus.PENDING
    action_items: list[ActionItem] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class ScheduledAction(BaseModel):
    """A deferred action waiting for its fire time."""

    id: str
    account_id: str
    executed_rule_id: str
    action_item_id: str
    message_id: str
    thread_id: str | None = None
    action: ActionItem
    scheduled_for: datetime
    status: ScheduledActionStatus = ScheduledActionStatus.PENDING
    retry_count: int = 0
    error_message: str | None = None
    executed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)


class AutomationJob(BaseModel):
    """A recurring, user-configured trigger."""

    id: str
    account_id: str
    name: str = ""
    job_type: str
    cron_expression: str
    enabled: bool = True
    next_run_at: datetime
    prompt: str | None = None
    config: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)


class AutomationJobRun(BaseModel):
    """One materialized due occurrence of an automation job."""

    id: str
    job_id: str
    status: AutomationJobRunStatus = AutomationJobRunStatus.PENDING
    scheduled_for: datetime
    processed_at: datetime | None = None
    error: str | None = None
    output: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class SchedulerStats(BaseModel):
    """Counters returned by one automation scheduler invocation."""

    due: int = 0
    claimed: int = 0
    queued: int = 0
    skipped: int = 0
    failed: int = 0
