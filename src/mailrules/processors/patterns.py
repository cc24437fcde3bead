"""Static field matching and learned pattern lookup."""

import re
from functools import lru_cache

from mailrules.models import Email, LearnedPattern, LearnedPatternType, Rule
from mailrules.utils.text import extract_email_address, normalize_subject

# Separators between alternatives in a from/to pattern
_ALTERNATIVES = re.compile(r"\s*\|\s*|\s*,\s*|\s+OR\s+")


@lru_cache(maxsize=512)
def _wildcard_regex(pattern: str) -> re.Pattern[str]:
    """Compile a pattern where `*` matches anything and everything else is literal."""
    parts = [re.escape(part) for part in pattern.strip().split("*")]
    return re.compile(".*".join(parts), re.IGNORECASE)


def matches_wildcard(pattern: str, value: str) -> bool:
    return bool(_wildcard_regex(pattern).search(value or ""))


def split_alternatives(pattern: str) -> list[str]:
    """Split `a@x.com | b@y.com, c OR d` into its alternatives."""
    return [part for part in _ALTERNATIVES.split(pattern.strip()) if part]


def _matches_addresses(pattern: str, values: list[str]) -> bool:
    return any(
        matches_wildcard(alternative, value)
        for alternative in split_alternatives(pattern)
        for value in values
    )


def matches_static(rule: Rule, email: Email) -> bool:
    """Whether every configured static field of a rule matches the email.

    A rule without static fields never matches statically.
    """
    if not rule.has_static_conditions:
        return False

    if rule.from_pattern and not _matches_addresses(rule.from_pattern, [email.from_addr]):
        return False

    if rule.to_pattern and not _matches_addresses(
        rule.to_pattern, email.to_addrs + email.cc_addrs
    ):
        return False

    if rule.subject_pattern and not matches_wildcard(rule.subject_pattern, email.subject):
        return False

    if rule.body_pattern and not matches_wildcard(rule.body_pattern, email.body_text):
        return False

    return True


def _contains_either_way(a: str, b: str) -> bool:
    if not a or not b:
        return False
    return a in b or b in a


def pattern_matches(pattern: LearnedPattern, email: Email) -> bool:
    """Whether a single learned pattern applies to the email."""
    if pattern.type == LearnedPatternType.FROM:
        value = pattern.value.strip().lower()
        address = extract_email_address(email.from_addr)
        return _contains_either_way(value, address)

    if pattern.type == LearnedPatternType.SUBJECT:
        return _contains_either_way(
            normalize_subject(pattern.value), normalize_subject(email.subject)
        )

    if pattern.type == LearnedPatternType.BODY:
        value = pattern.value.strip().lower()
        return bool(value) and value in (email.body_text or "").lower()

    return False


def find_learned_match(
    patterns: list[LearnedPattern],
    email: Email,
) -> LearnedPattern | None:
    """The pattern that decides a rule's learned outcome for this email.

    The first matching pattern in list order wins, include or exclude.
    """
    for pattern in patterns:
        if pattern_matches(pattern, email):
            return pattern
    return None
