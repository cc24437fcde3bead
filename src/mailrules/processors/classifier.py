"""AI classification of an email against rule instructions."""

import logging
from abc import ABC, abstractmethod

from mailrules.config import LLMConfig
from mailrules.models import ClassificationResult, Email, Rule
from mailrules.utils.text import prepare_body

from .llm import LLMClient, create_llm_client, parse_json_response

logger = logging.getLogger(__name__)


class RuleClassifier(ABC):
    """Picks the rule whose instructions best describe an email."""

    @abstractmethod
    async def classify(self, email: Email, rules: list[Rule]) -> ClassificationResult:
        """Return the chosen rule name, or no name when nothing fits confidently."""
        ...


class LLMRuleClassifier(RuleClassifier):
    """Rule classifier backed by a chat LLM."""

    def __init__(self, client: LLMClient, config: LLMConfig) -> None:
        self.client = client
        self.config = config

    @classmethod
    def from_config(cls, config: LLMConfig, api_key: str | None = None) -> "LLMRuleClassifier":
        return cls(create_llm_client(config, api_key), config)

    def _build_prompt(self, email: Email, rules: list[Rule]) -> str:
        rule_lines = "\n".join(
            f"- name: {rule.name}\n  instructions: {rule.instructions.strip()}"
            for rule in rules
            if rule.instructions
        )
        recipients = ", ".join(email.to_addrs + email.cc_addrs)
        body = prepare_body(email.body_text, max_chars=1500)

        return f"""Decide which rule applies to this email.

Rules:
{rule_lines}

Email:
From: {email.from_addr}
To: {recipients}
Subject: {email.subject}

Body:
{body}

Pick at most one rule. If no rule clearly applies, or several apply equally, answer with null.

Return JSON:
{{"rule_name": "<exact rule name or null>", "confidence": <0.0-1.0>, "explanation": "<one sentence>"}}"""

    async def classify(self, email: Email, rules: list[Rule]) -> ClassificationResult:
        if not rules:
            return ClassificationResult(explanation="No candidate rules")

        response = self.client.chat(
            messages=[{"role": "user", "content": self._build_prompt(email, rules)}],
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
        )

        try:
            result = parse_json_response(response)
        except ValueError:
            logger.warning(f"Unparseable classifier response for {email.id}: {response[:200]}")
            return ClassificationResult(explanation="Classifier response could not be parsed")

        if not isinstance(result, dict):
            return ClassificationResult(explanation="Classifier returned no object")

        name = result.get("rule_name")
        names = {rule.name.lower(): rule.name for rule in rules}
        matched = names.get(str(name).strip().lower()) if name else None
        if name and matched is None:
            logger.warning(f"Classifier picked unknown rule '{name}' for {email.id}")

        try:
            confidence = float(result.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0

        return ClassificationResult(
            matched_rule_name=matched,
            confidence=max(0.0, min(confidence, 1.0)),
            explanation=str(result.get("explanation") or ""),
        )
