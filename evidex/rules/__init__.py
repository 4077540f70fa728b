"""
Evidex Rules Package

Rule match models and the default pattern rule engine.
"""

from .models import MatchDetail, RuleMatchResult, SEVERITY_LEVELS
from .pattern_engine import PatternRule, PatternRuleEngine

__all__ = [
    "MatchDetail",
    "RuleMatchResult",
    "SEVERITY_LEVELS",
    "PatternRule",
    "PatternRuleEngine",
]
