"""Load rule definitions from YAML.

Example::

    rules:
      - name: Archive newsletters
        from: "@substack.com"
        automate: true
        actions:
          - type: ARCHIVE
      - name: Label receipts later
        instructions: Purchase receipts and order confirmations
        actions:
          - type: LABEL
            label: Receipts
            delay_in_minutes: 30
        learned_patterns:
          - {type: FROM, value: "@shop.example.com"}
"""

import logging
import uuid
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

from .models import (
    Action,
    ActionFields,
    ActionType,
    CategoryFilterType,
    Condition,
    LearnedPatternType,
    LogicalOperator,
    Rule,
)
from .service.state import AutomationState

logger = logging.getLogger(__name__)


class ActionEntry(ActionFields):
    type: ActionType


class LearnedPatternEntry(BaseModel):
    type: LearnedPatternType
    value: str
    exclude: bool = False


class RuleEntry(BaseModel):
    """One rule as written in a rules file."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    enabled: bool = True
    from_pattern: str | None = Field(default=None, alias="from")
    to_pattern: str | None = Field(default=None, alias="to")
    subject_pattern: str | None = Field(default=None, alias="subject")
    body_pattern: str | None = Field(default=None, alias="body")
    instructions: str | None = None
    operator: LogicalOperator = LogicalOperator.AND
    category_filter_type: CategoryFilterType | None = None
    category_filters: list[str] = Field(default_factory=list)
    conditions: list[Condition] = Field(default_factory=list)
    actions: list[ActionEntry] = Field(default_factory=list)
    automate: bool = False
    run_on_threads: bool = False
    learned_patterns: list[LearnedPatternEntry] = Field(default_factory=list)

    def to_rule(self, account_id: str, rule_id: str | None = None) -> Rule:
        return Rule(
            id=rule_id or str(uuid.uuid4()),
            account_id=account_id,
            name=self.name,
            enabled=self.enabled,
            from_pattern=self.from_pattern,
            to_pattern=self.to_pattern,
            subject_pattern=self.subject_pattern,
            body_pattern=self.body_pattern,
            instructions=self.instructions,
            conditional_operator=self.operator,
            category_filter_type=self.category_filter_type,
            category_filters=self.category_filters,
            conditions=self.conditions,
            actions=[
                Action(id=str(uuid.uuid4()), **entry.model_dump(exclude_none=True))
                for entry in self.actions
            ],
            automate=self.automate,
            run_on_threads=self.run_on_threads,
        )


def parse_rules(data: dict[str, Any] | None) -> list[RuleEntry]:
    """Validate the `rules` list of a loaded rules document."""
    entries = (data or {}).get("rules") or []
    return [RuleEntry.model_validate(entry) for entry in entries]


def import_rules(path: Path, account_id: str, state: AutomationState) -> list[Rule]:
    """Create or update the rules in a YAML file.

    Rules are matched to existing ones by name within the account; an
    updated rule keeps its id and has its actions replaced.
    """
    with open(path) as f:
        entries = parse_rules(yaml.safe_load(f))

    saved = []
    for entry in entries:
        existing = state.get_rule_by_name(account_id, entry.name)
        rule = entry.to_rule(account_id, existing.id if existing else None)
        if existing:
            rule.created_at = existing.created_at
        state.save_rule(rule)

        for pattern in entry.learned_patterns:
            state.add_learned_pattern(rule.id, pattern.type, pattern.value, exclude=pattern.exclude)

        logger.info(f"{'Updated' if existing else 'Created'} rule '{rule.name}' ({rule.id})")
        saved.append(rule)
    return saved
