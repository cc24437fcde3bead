"""Automation state management with SQLite persistence.

Every mutation that can race with another worker is a single conditional
UPDATE whose `rowcount` tells the caller whether it won. The automation job
claim is the only multi-statement write and runs in one IMMEDIATE
transaction.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from ..models import (
    Account,
    Action,
    ActionItem,
    ActionResult,
    AutomationJob,
    AutomationJobRun,
    AutomationJobRunStatus,
    Condition,
    ExecutedRule,
    ExecutedRuleStatus,
    LearnedPattern,
    LearnedPatternType,
    Rule,
    ScheduledAction,
    ScheduledActionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


def _iso(value: datetime) -> str:
    """Serialize a datetime as fixed-width UTC ISO-8601 so strings sort by time."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _iso_or_none(value: datetime | None) -> str | None:
    return _iso(value) if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _new_id() -> str:
    return str(uuid.uuid4())


class AutomationState:
    """Persists rules, execution history, scheduled actions and automation jobs."""

    def __init__(self, db_path: Path, busy_timeout: float = 10.0) -> None:
        """Initialize the state store.

        Args:
            db_path: Path to the SQLite database file.
            busy_timeout: Seconds to wait for a competing writer's lock.
        """
        self.db_path = db_path
        self.busy_timeout = busy_timeout
        self._ensure_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_db(self) -> None:
        """Ensure the database and tables exist."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    ai_enabled INTEGER NOT NULL DEFAULT 1,
                    feature_opt_ins TEXT NOT NULL DEFAULT '[]'
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS rules (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    from_pattern TEXT,
                    to_pattern TEXT,
                    subject_pattern TEXT,
                    body_pattern TEXT,
                    instructions TEXT,
                    conditional_operator TEXT NOT NULL DEFAULT 'AND',
                    category_filter_type TEXT,
                    category_filters TEXT NOT NULL DEFAULT '[]',
                    conditions TEXT NOT NULL DEFAULT '[]',
                    automate INTEGER NOT NULL DEFAULT 0,
                    run_on_threads INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    UNIQUE (account_id, name)
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS actions (
                    id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    params TEXT NOT NULL DEFAULT '{}',
                    delay_in_minutes INTEGER
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_actions_rule
                ON actions (rule_id, position)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS learned_patterns (
                    id TEXT PRIMARY KEY,
                    rule_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    value TEXT NOT NULL,
                    exclude INTEGER NOT NULL DEFAULT 0,
                    UNIQUE (rule_id, type, value)
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS executed_rules (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    rule_id TEXT,
                    thread_id TEXT,
                    message_id TEXT NOT NULL,
                    automated INTEGER NOT NULL DEFAULT 0,
                    reason TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executed_thread
                ON executed_rules (account_id, thread_id, status)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_executed_created
                ON executed_rules (account_id, created_at DESC)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS action_items (
                    id TEXT PRIMARY KEY,
                    executed_rule_id TEXT NOT NULL,
                    position INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    params TEXT NOT NULL DEFAULT '{}',
                    delay_in_minutes INTEGER,
                    success INTEGER,
                    error_code TEXT,
                    executed_at TEXT,
                    scheduled_action_id TEXT
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_action_items_executed
                ON action_items (executed_rule_id, position)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS scheduled_actions (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    executed_rule_id TEXT NOT NULL,
                    action_item_id TEXT NOT NULL,
                    message_id TEXT NOT NULL,
                    thread_id TEXT,
                    payload TEXT NOT NULL,
                    scheduled_for TEXT NOT NULL,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    executed_at TEXT,
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scheduled_status
                ON scheduled_actions (status, scheduled_for)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_scheduled_message
                ON scheduled_actions (account_id, message_id)
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_jobs (
                    id TEXT PRIMARY KEY,
                    account_id TEXT NOT NULL,
                    name TEXT NOT NULL DEFAULT '',
                    job_type TEXT NOT NULL,
                    cron_expression TEXT NOT NULL,
                    enabled INTEGER NOT NULL DEFAULT 1,
                    next_run_at TEXT NOT NULL,
                    prompt TEXT,
                    config TEXT NOT NULL DEFAULT '{}',
                    created_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_jobs_due
                ON automation_jobs (enabled, next_run_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS automation_job_runs (
                    id TEXT PRIMARY KEY,
                    job_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    scheduled_for TEXT NOT NULL,
                    processed_at TEXT,
                    error TEXT,
                    output TEXT,
                    created_at TEXT NOT NULL,
                    UNIQUE (job_id, scheduled_for)
                )
            """)

            conn.commit()

    # ========== Accounts ==========

    def save_account(self, account: Account) -> Account:
        """Insert or replace an account."""
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO accounts (id, email, ai_enabled, feature_opt_ins)
                VALUES (?, ?, ?, ?)
                """,
                (
                    account.id,
                    account.email,
                    1 if account.ai_enabled else 0,
                    json.dumps(account.feature_opt_ins),
                ),
            )
            conn.commit()
        return account

    def get_account(self, account_id: str) -> Account | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM accounts WHERE id = ?", (account_id,)).fetchone()
        if row is None:
            return None
        return Account(
            id=row["id"],
            email=row["email"],
            ai_enabled=bool(row["ai_enabled"]),
            feature_opt_ins=json.loads(row["feature_opt_ins"]),
        )

    def list_accounts(self) -> list[Account]:
        with self._connect() as conn:
            ids = [row["id"] for row in conn.execute("SELECT id FROM accounts ORDER BY email")]
        return [account for account in map(self.get_account, ids) if account]

    # ========== Rules ==========

    def save_rule(self, rule: Rule) -> Rule:
        """Create or update a rule.

        Actions are replaced wholesale: all existing actions of the rule are
        deleted and the new list is inserted in the same transaction.
        """
        fields = (
            rule.name,
            1 if rule.enabled else 0,
            rule.from_pattern,
            rule.to_pattern,
            rule.subject_pattern,
            rule.body_pattern,
            rule.instructions,
            rule.conditional_operator.value,
            rule.category_filter_type.value if rule.category_filter_type else None,
            json.dumps(rule.category_filters),
            json.dumps([c.model_dump(exclude_none=True) for c in rule.conditions]),
            1 if rule.automate else 0,
            1 if rule.run_on_threads else 0,
        )
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE rules SET
                    name = ?, enabled = ?, from_pattern = ?, to_pattern = ?,
                    subject_pattern = ?, body_pattern = ?, instructions = ?,
                    conditional_operator = ?, category_filter_type = ?,
                    category_filters = ?, conditions = ?, automate = ?, run_on_threads = ?
                WHERE id = ?
                """,
                (*fields, rule.id),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    """
                    INSERT INTO rules (
                        name, enabled, from_pattern, to_pattern, subject_pattern,
                        body_pattern, instructions, conditional_operator,
                        category_filter_type, category_filters, conditions, automate,
                        run_on_threads, id, account_id, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (*fields, rule.id, rule.account_id, _iso(rule.created_at)),
                )
            conn.execute("DELETE FROM actions WHERE rule_id = ?", (rule.id,))
            conn.executemany(
                """
                INSERT INTO actions (id, rule_id, position, type, params, delay_in_minutes)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        action.id,
                        rule.id,
                        position,
                        action.type.value,
                        json.dumps(action.params()),
                        action.delay_in_minutes,
                    )
                    for position, action in enumerate(rule.actions)
                ],
            )
            conn.commit()
        return rule

    def get_rule(self, rule_id: str) -> Rule | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM rules WHERE id = ?", (rule_id,)).fetchone()
            if row is None:
                return None
            return self._row_to_rule(conn, row)

    def get_rule_by_name(self, account_id: str, name: str) -> Rule | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM rules WHERE account_id = ? AND name = ?",
                (account_id, name),
            ).fetchone()
            if row is None:
                return None
            return self._row_to_rule(conn, row)

    def list_rules(self, account_id: str, *, enabled_only: bool = False) -> list[Rule]:
        """List an account's rules in creation order."""
        query = "SELECT * FROM rules WHERE account_id = ?"
        if enabled_only:
            query += " AND enabled = 1"
        query += " ORDER BY created_at ASC, rowid ASC"
        with self._connect() as conn:
            rows = conn.execute(query, (account_id,)).fetchall()
            return [self._row_to_rule(conn, row) for row in rows]

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE rules SET enabled = ? WHERE id = ?",
                (1 if enabled else 0, rule_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def delete_rule(self, rule_id: str) -> bool:
        """Delete a rule with its actions and learned patterns.

        Executed rules keep their reference so history stays intact.
        """
        with self._connect() as conn:
            conn.execute("DELETE FROM actions WHERE rule_id = ?", (rule_id,))
            conn.execute("DELETE FROM learned_patterns WHERE rule_id = ?", (rule_id,))
            cursor = conn.execute("DELETE FROM rules WHERE id = ?", (rule_id,))
            conn.commit()
            return cursor.rowcount > 0

    # ========== Learned Patterns ==========

    def add_learned_pattern(
        self,
        rule_id: str,
        pattern_type: LearnedPatternType,
        value: str,
        *,
        exclude: bool = False,
    ) -> LearnedPattern:
        """Add a learned pattern, or flip the exclude flag of an existing one.

        New patterns go to the end of the rule's list; updating an existing
        pattern keeps its position.
        """
        with self._connect() as conn:
            existing = conn.execute(
                "SELECT id FROM learned_patterns WHERE rule_id = ? AND type = ? AND value = ?",
                (rule_id, pattern_type.value, value),
            ).fetchone()
            if existing:
                pattern_id = existing["id"]
                conn.execute(
                    "UPDATE learned_patterns SET exclude = ? WHERE id = ?",
                    (1 if exclude else 0, pattern_id),
                )
            else:
                pattern_id = _new_id()
                position = conn.execute(
                    "SELECT COALESCE(MAX(position) + 1, 0) FROM learned_patterns WHERE rule_id = ?",
                    (rule_id,),
                ).fetchone()[0]
                conn.execute(
                    """
                    INSERT INTO learned_patterns (id, rule_id, position, type, value, exclude)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (pattern_id, rule_id, position, pattern_type.value, value, 1 if exclude else 0),
                )
            conn.commit()

        return LearnedPattern(
            id=pattern_id, rule_id=rule_id, type=pattern_type, value=value, exclude=exclude
        )

    def get_learned_patterns(self, rule_ids: Iterable[str]) -> dict[str, list[LearnedPattern]]:
        """Learned patterns per rule, in the order they were learned."""
        rule_ids = list(rule_ids)
        patterns: dict[str, list[LearnedPattern]] = {rule_id: [] for rule_id in rule_ids}
        if not rule_ids:
            return patterns

        placeholders = ", ".join("?" for _ in rule_ids)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM learned_patterns
                WHERE rule_id IN ({placeholders})
                ORDER BY rule_id, position ASC
                """,
                rule_ids,
            ).fetchall()

        for row in rows:
            patterns[row["rule_id"]].append(
                LearnedPattern(
                    id=row["id"],
                    rule_id=row["rule_id"],
                    type=LearnedPatternType(row["type"]),
                    value=row["value"],
                    exclude=bool(row["exclude"]),
                )
            )
        return patterns

    # ========== Executed Rules ==========

    def create_executed_rule(
        self,
        *,
        account_id: str,
        message_id: str,
        thread_id: str | None,
        rule: Rule | None,
        reason: str,
        status: ExecutedRuleStatus,
        automated: bool = False,
    ) -> ExecutedRule:
        """Record a matching decision, materializing the rule's actions.

        The action items are copies, so editing the rule later does not
        rewrite history.
        """
        now = utc_now()
        executed_id = _new_id()
        items = [
            ActionItem(
                id=_new_id(),
                executed_rule_id=executed_id,
                type=action.type,
                **action.model_dump(exclude={"id", "type"}),
            )
            for action in (rule.actions if rule else [])
        ]
        executed = ExecutedRule(
            id=executed_id,
            account_id=account_id,
            rule_id=rule.id if rule else None,
            thread_id=thread_id,
            message_id=message_id,
            automated=automated,
            reason=reason,
            status=status,
            action_items=items,
            created_at=now,
            updated_at=now,
        )

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO executed_rules (
                    id, account_id, rule_id, thread_id, message_id, automated,
                    reason, status, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    executed.id,
                    executed.account_id,
                    executed.rule_id,
                    executed.thread_id,
                    executed.message_id,
                    1 if executed.automated else 0,
                    executed.reason,
                    executed.status.value,
                    _iso(now),
                    _iso(now),
                ),
            )
            conn.executemany(
                """
                INSERT INTO action_items (
                    id, executed_rule_id, position, type, params, delay_in_minutes
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        item.id,
                        executed.id,
                        position,
                        item.type.value,
                        json.dumps(item.params()),
                        item.delay_in_minutes,
                    )
                    for position, item in enumerate(items)
                ],
            )
            conn.commit()

        return executed

    def get_executed_rule(self, executed_rule_id: str) -> ExecutedRule | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM executed_rules WHERE id = ?", (executed_rule_id,)
            ).fetchone()
            if row is None:
                return None
            return self._row_to_executed_rule(conn, row)

    def list_executed_rules(
        self,
        *,
        account_id: str | None = None,
        status: ExecutedRuleStatus | None = None,
        message_id: str | None = None,
        since: datetime | None = None,
        limit: int = 50,
    ) -> list[ExecutedRule]:
        """List executed rules, newest first."""
        query = "SELECT * FROM executed_rules WHERE 1=1"
        params: list = []

        if account_id:
            query += " AND account_id = ?"
            params.append(account_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        if message_id:
            query += " AND message_id = ?"
            params.append(message_id)

        if since:
            query += " AND created_at >= ?"
            params.append(_iso(since))

        query += " ORDER BY created_at DESC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            return [self._row_to_executed_rule(conn, row) for row in rows]

    def transition_executed_rule(
        self,
        executed_rule_id: str,
        from_statuses: Iterable[ExecutedRuleStatus],
        to_status: ExecutedRuleStatus,
        *,
        reason: str | None = None,
    ) -> bool:
        """Move an executed rule to `to_status` if it is currently in one of `from_statuses`.

        Returns:
            True if this caller performed the transition, False if the record
            was missing or already in another state.
        """
        allowed = [status.value for status in from_statuses]
        placeholders = ", ".join("?" for _ in allowed)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""
                UPDATE executed_rules
                SET status = ?, reason = COALESCE(?, reason), updated_at = ?
                WHERE id = ? AND status IN ({placeholders})
                """,
                (to_status.value, reason, _iso(utc_now()), executed_rule_id, *allowed),
            )
            conn.commit()
            return cursor.rowcount > 0

    def record_action_result(self, action_item_id: str, result: ActionResult) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE action_items
                SET success = ?, error_code = ?, executed_at = ?
                WHERE id = ?
                """,
                (
                    1 if result.success else 0,
                    result.error_code,
                    _iso(utc_now()),
                    action_item_id,
                ),
            )
            conn.commit()

    def get_previously_applied_rule_ids(self, account_id: str, thread_id: str) -> set[str]:
        """Rules that were already APPLIED somewhere in this thread."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT DISTINCT rule_id FROM executed_rules
                WHERE account_id = ? AND thread_id = ? AND status = ? AND rule_id IS NOT NULL
                """,
                (account_id, thread_id, ExecutedRuleStatus.APPLIED.value),
            ).fetchall()
        return {row["rule_id"] for row in rows}

    # ========== Scheduled Actions ==========

    def create_scheduled_action(
        self,
        executed_rule: ExecutedRule,
        item: ActionItem,
        scheduled_for: datetime,
    ) -> ScheduledAction:
        """Persist a delayed action and link it to its action item."""
        scheduled = ScheduledAction(
            id=_new_id(),
            account_id=executed_rule.account_id,
            executed_rule_id=executed_rule.id,
            action_item_id=item.id,
            message_id=executed_rule.message_id,
            thread_id=executed_rule.thread_id,
            action=item,
            scheduled_for=scheduled_for,
            status=ScheduledActionStatus.PENDING,
            created_at=utc_now(),
        )

        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO scheduled_actions (
                    id, account_id, executed_rule_id, action_item_id, message_id,
                    thread_id, payload, scheduled_for, status, retry_count, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scheduled.id,
                    scheduled.account_id,
                    scheduled.executed_rule_id,
                    scheduled.action_item_id,
                    scheduled.message_id,
                    scheduled.thread_id,
                    item.model_dump_json(),
                    _iso(scheduled.scheduled_for),
                    scheduled.status.value,
                    0,
                    _iso(scheduled.created_at),
                ),
            )
            conn.execute(
                "UPDATE action_items SET scheduled_action_id = ? WHERE id = ?",
                (scheduled.id, item.id),
            )
            conn.commit()

        return scheduled

    def get_scheduled_action(self, scheduled_action_id: str) -> ScheduledAction | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM scheduled_actions WHERE id = ?", (scheduled_action_id,)
            ).fetchone()
        return self._row_to_scheduled_action(row) if row else None

    def list_scheduled_actions(
        self,
        *,
        account_id: str | None = None,
        executed_rule_id: str | None = None,
        status: ScheduledActionStatus | None = None,
        limit: int = 100,
    ) -> list[ScheduledAction]:
        """List scheduled actions, soonest first."""
        query = "SELECT * FROM scheduled_actions WHERE 1=1"
        params: list = []

        if account_id:
            query += " AND account_id = ?"
            params.append(account_id)

        if executed_rule_id:
            query += " AND executed_rule_id = ?"
            params.append(executed_rule_id)

        if status:
            query += " AND status = ?"
            params.append(status.value)

        query += " ORDER BY scheduled_for ASC LIMIT ?"
        params.append(limit)

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_scheduled_action(row) for row in rows]

    def claim_scheduled_action(self, scheduled_action_id: str) -> bool:
        """PENDING -> EXECUTING. Only one caller can ever see True for a given attempt."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE scheduled_actions SET status = ? WHERE id = ? AND status = ?",
                (
                    ScheduledActionStatus.EXECUTING.value,
                    scheduled_action_id,
                    ScheduledActionStatus.PENDING.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def cancel_scheduled_action(self, scheduled_action_id: str, reason: str | None = None) -> bool:
        """PENDING -> CANCELLED. Returns False once execution has been claimed."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_actions SET status = ?, error_message = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ScheduledActionStatus.CANCELLED.value,
                    reason,
                    scheduled_action_id,
                    ScheduledActionStatus.PENDING.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def cancel_pending_scheduled_actions(
        self,
        *,
        reason: str,
        account_id: str | None = None,
        message_id: str | None = None,
        executed_rule_id: str | None = None,
    ) -> list[str]:
        """Cancel every still-PENDING action for a message or executed rule.

        Returns:
            The executed rule ids of the cancelled actions, one per action.
        """
        if not message_id and not executed_rule_id:
            raise ValueError("message_id or executed_rule_id is required")

        query = "SELECT id, executed_rule_id FROM scheduled_actions WHERE status = ?"
        params: list = [ScheduledActionStatus.PENDING.value]
        if account_id:
            query += " AND account_id = ?"
            params.append(account_id)
        if message_id:
            query += " AND message_id = ?"
            params.append(message_id)
        if executed_rule_id:
            query += " AND executed_rule_id = ?"
            params.append(executed_rule_id)

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(query, params).fetchall()
            conn.executemany(
                "UPDATE scheduled_actions SET status = ?, error_message = ? WHERE id = ? AND status = ?",
                [
                    (
                        ScheduledActionStatus.CANCELLED.value,
                        reason,
                        row["id"],
                        ScheduledActionStatus.PENDING.value,
                    )
                    for row in rows
                ],
            )
            conn.commit()
        return [row["executed_rule_id"] for row in rows]

    def finish_scheduled_action(
        self,
        scheduled_action_id: str,
        status: ScheduledActionStatus,
        *,
        error_message: str | None = None,
        from_status: ScheduledActionStatus = ScheduledActionStatus.EXECUTING,
    ) -> bool:
        """EXECUTING -> APPLIED or FAILED.

        `from_status=PENDING` is used when the action never reached the queue.
        """
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_actions
                SET status = ?, error_message = ?, executed_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    status.value,
                    error_message,
                    _iso(utc_now()),
                    scheduled_action_id,
                    from_status.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def reschedule_scheduled_action(
        self,
        scheduled_action_id: str,
        scheduled_for: datetime,
        *,
        error_message: str,
    ) -> bool:
        """EXECUTING -> PENDING at a later time, counting one more retry."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduled_actions
                SET status = ?, scheduled_for = ?, retry_count = retry_count + 1,
                    error_message = ?
                WHERE id = ? AND status = ?
                """,
                (
                    ScheduledActionStatus.PENDING.value,
                    _iso(scheduled_for),
                    error_message,
                    scheduled_action_id,
                    ScheduledActionStatus.EXECUTING.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    # ========== Automation Jobs ==========

    def save_automation_job(self, job: AutomationJob) -> AutomationJob:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO automation_jobs (
                    id, account_id, name, job_type, cron_expression, enabled,
                    next_run_at, prompt, config, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    job.id,
                    job.account_id,
                    job.name,
                    job.job_type,
                    job.cron_expression,
                    1 if job.enabled else 0,
                    _iso(job.next_run_at),
                    job.prompt,
                    json.dumps(job.config),
                    _iso(job.created_at),
                ),
            )
            conn.commit()
        return job

    def get_automation_job(self, job_id: str) -> AutomationJob | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM automation_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_automation_job(row) if row else None

    def list_automation_jobs(self, *, account_id: str | None = None) -> list[AutomationJob]:
        query = "SELECT * FROM automation_jobs"
        params: list = []
        if account_id:
            query += " WHERE account_id = ?"
            params.append(account_id)
        query += " ORDER BY next_run_at ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_automation_job(row) for row in rows]

    def set_automation_job_enabled(
        self,
        job_id: str,
        enabled: bool,
        *,
        next_run_at: datetime | None = None,
    ) -> bool:
        """Enable or disable a job, optionally rescheduling it."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE automation_jobs
                SET enabled = ?, next_run_at = COALESCE(?, next_run_at)
                WHERE id = ?
                """,
                (1 if enabled else 0, _iso_or_none(next_run_at), job_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def list_due_automation_jobs(self, now: datetime, limit: int = 100) -> list[AutomationJob]:
        """Enabled jobs whose next run is at or before `now`, oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM automation_jobs
                WHERE enabled = 1 AND next_run_at <= ?
                ORDER BY next_run_at ASC
                LIMIT ?
                """,
                (_iso(now), limit),
            ).fetchall()
        return [self._row_to_automation_job(row) for row in rows]

    def claim_automation_job(
        self,
        job_id: str,
        scheduled_for: datetime,
        next_run_at: datetime,
    ) -> AutomationJobRun | None:
        """Claim one due occurrence of a job.

        Advances `next_run_at` only if it still equals `scheduled_for` (the
        value the caller read) and creates the run in the same transaction.

        Returns:
            The new PENDING run, or None if another worker claimed the
            occurrence first.
        """
        now = utc_now()
        run = AutomationJobRun(
            id=_new_id(),
            job_id=job_id,
            status=AutomationJobRunStatus.PENDING,
            scheduled_for=scheduled_for,
            created_at=now,
        )

        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE automation_jobs SET next_run_at = ?
                WHERE id = ? AND enabled = 1 AND next_run_at = ?
                """,
                (_iso(next_run_at), job_id, _iso(scheduled_for)),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                return None

            try:
                conn.execute(
                    """
                    INSERT INTO automation_job_runs (id, job_id, status, scheduled_for, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (run.id, job_id, run.status.value, _iso(scheduled_for), _iso(now)),
                )
            except sqlite3.IntegrityError:
                conn.rollback()
                logger.warning(
                    f"Run for job {job_id} at {_iso(scheduled_for)} already exists, not claiming"
                )
                return None

            conn.commit()

        return run

    def get_automation_job_run(self, run_id: str) -> AutomationJobRun | None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM automation_job_runs WHERE id = ?", (run_id,)
            ).fetchone()
        return self._row_to_automation_job_run(row) if row else None

    def list_automation_job_runs(
        self,
        *,
        job_id: str | None = None,
        status: AutomationJobRunStatus | None = None,
        limit: int = 50,
    ) -> list[AutomationJobRun]:
        """List job runs, most recent occurrence first."""
        query = "SELECT * FROM automation_job_runs WHERE 1=1"
        params: list = []
        if job_id:
            query += " AND job_id = ?"
            params.append(job_id)
        if status:
            query += " AND status = ?"
            params.append(status.value)
        query += " ORDER BY scheduled_for DESC LIMIT ?"
        params.append(limit)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_automation_job_run(row) for row in rows]

    def start_automation_job_run(self, run_id: str) -> bool:
        """PENDING -> PROCESSING."""
        with self._connect() as conn:
            cursor = conn.execute(
                "UPDATE automation_job_runs SET status = ? WHERE id = ? AND status = ?",
                (
                    AutomationJobRunStatus.PROCESSING.value,
                    run_id,
                    AutomationJobRunStatus.PENDING.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def finish_automation_job_run(
        self,
        run_id: str,
        status: AutomationJobRunStatus,
        *,
        error: str | None = None,
        output: str | None = None,
    ) -> bool:
        """Finalize a run that is PENDING or PROCESSING as DONE or FAILED."""
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE automation_job_runs
                SET status = ?, error = ?, output = ?, processed_at = ?
                WHERE id = ? AND status IN (?, ?)
                """,
                (
                    status.value,
                    error,
                    output,
                    _iso(utc_now()),
                    run_id,
                    AutomationJobRunStatus.PENDING.value,
                    AutomationJobRunStatus.PROCESSING.value,
                ),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_previous_job_run(self, job_id: str, before: datetime) -> AutomationJobRun | None:
        """The latest run of a job that was due strictly before `before`."""
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM automation_job_runs
                WHERE job_id = ? AND scheduled_for < ?
                ORDER BY scheduled_for DESC LIMIT 1
                """,
                (job_id, _iso(before)),
            ).fetchone()
        return self._row_to_automation_job_run(row) if row else None

    # ========== Stats ==========

    def get_stats(self) -> dict:
        """Counts per status for executed rules, scheduled actions and job runs."""
        with self._connect() as conn:
            stats = {}
            for table in ("executed_rules", "scheduled_actions", "automation_job_runs"):
                cursor = conn.execute(f"SELECT status, COUNT(*) FROM {table} GROUP BY status")
                stats[table] = {row[0]: row[1] for row in cursor.fetchall()}

            stats["rules"] = conn.execute("SELECT COUNT(*) FROM rules").fetchone()[0]
            stats["automation_jobs"] = conn.execute(
                "SELECT COUNT(*) FROM automation_jobs WHERE enabled = 1"
            ).fetchone()[0]
            return stats

    # ========== Row Converters ==========

    def _row_to_rule(self, conn: sqlite3.Connection, row: sqlite3.Row) -> Rule:
        action_rows = conn.execute(
            "SELECT * FROM actions WHERE rule_id = ? ORDER BY position ASC",
            (row["id"],),
        ).fetchall()
        return Rule(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            enabled=bool(row["enabled"]),
            from_pattern=row["from_pattern"],
            to_pattern=row["to_pattern"],
            subject_pattern=row["subject_pattern"],
            body_pattern=row["body_pattern"],
            instructions=row["instructions"],
            conditional_operator=row["conditional_operator"],
            category_filter_type=row["category_filter_type"],
            category_filters=json.loads(row["category_filters"]),
            conditions=[Condition(**c) for c in json.loads(row["conditions"])],
            actions=[
                Action(
                    id=action["id"],
                    type=action["type"],
                    delay_in_minutes=action["delay_in_minutes"],
                    **json.loads(action["params"]),
                )
                for action in action_rows
            ],
            automate=bool(row["automate"]),
            run_on_threads=bool(row["run_on_threads"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_executed_rule(self, conn: sqlite3.Connection, row: sqlite3.Row) -> ExecutedRule:
        item_rows = conn.execute(
            "SELECT * FROM action_items WHERE executed_rule_id = ? ORDER BY position ASC",
            (row["id"],),
        ).fetchall()
        return ExecutedRule(
            id=row["id"],
            account_id=row["account_id"],
            rule_id=row["rule_id"],
            thread_id=row["thread_id"],
            message_id=row["message_id"],
            automated=bool(row["automated"]),
            reason=row["reason"],
            status=ExecutedRuleStatus(row["status"]),
            action_items=[self._row_to_action_item(item) for item in item_rows],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_action_item(self, row: sqlite3.Row) -> ActionItem:
        return ActionItem(
            id=row["id"],
            executed_rule_id=row["executed_rule_id"],
            type=row["type"],
            delay_in_minutes=row["delay_in_minutes"],
            success=None if row["success"] is None else bool(row["success"]),
            error_code=row["error_code"],
            executed_at=_dt(row["executed_at"]),
            scheduled_action_id=row["scheduled_action_id"],
            **json.loads(row["params"]),
        )

    def _row_to_scheduled_action(self, row: sqlite3.Row) -> ScheduledAction:
        return ScheduledAction(
            id=row["id"],
            account_id=row["account_id"],
            executed_rule_id=row["executed_rule_id"],
            action_item_id=row["action_item_id"],
            message_id=row["message_id"],
            thread_id=row["thread_id"],
            action=ActionItem.model_validate_json(row["payload"]),
            scheduled_for=datetime.fromisoformat(row["scheduled_for"]),
            status=ScheduledActionStatus(row["status"]),
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            executed_at=_dt(row["executed_at"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_automation_job(self, row: sqlite3.Row) -> AutomationJob:
        return AutomationJob(
            id=row["id"],
            account_id=row["account_id"],
            name=row["name"],
            job_type=row["job_type"],
            cron_expression=row["cron_expression"],
            enabled=bool(row["enabled"]),
            next_run_at=datetime.fromisoformat(row["next_run_at"]),
            prompt=row["prompt"],
            config=json.loads(row["config"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_automation_job_run(self, row: sqlite3.Row) -> AutomationJobRun:
        return AutomationJobRun(
            id=row["id"],
            job_id=row["job_id"],
            status=AutomationJobRunStatus(row["status"]),
            scheduled_for=datetime.fromisoformat(row["scheduled_for"]),
            processed_at=_dt(row["processed_at"]),
            error=row["error"],
            output=row["output"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )
