"""Rule matching components."""

from .classifier import LLMRuleClassifier, RuleClassifier
from .conditions import ConditionEvaluator
from .labels import LabelResolver
from .matcher import RuleMatcher

__all__ = [
    "ConditionEvaluator",
    "LabelResolver",
    "LLMRuleClassifier",
    "RuleClassifier",
    "RuleMatcher",
]
