"""
Evidex Threat Scorer

Aggregates rule matches into a bounded 0-100 threat score.
"""

from typing import Iterable, Tuple

from ..rules.models import RuleMatchResult


class ThreatScorer:
    """
    Calculates the threat score of an analysis from its rule matches.

    Each match contributes its severity base score weighted by match count
    and confidence; the total is normalized by the overall match count.
    """

    # Base score per severity
    SEVERITY_SCORES = {
        "critical": 100,
        "high": 75,
        "medium": 50,
        "low": 25,
    }

    UNKNOWN_SEVERITY_SCORE = 10

    # Minimum score for each label, highest first
    SEVERITY_THRESHOLDS = (
        (80, "critical"),
        (60, "high"),
        (30, "medium"),
    )

    def base_score(self, severity: str) -> int:
        """Base score for a severity name."""
        return self.SEVERITY_SCORES.get(severity.lower(), self.UNKNOWN_SEVERITY_SCORE)

    def calculate_score(self, matches: Iterable[RuleMatchResult]) -> int:
        """
        Calculate the threat score for a set of rule matches.

        Args:
            matches: Rule matches of one analysis

        Returns:
            Threat score (0-100); 0 for no matches
        """
        weighted_total = 0.0
        total_matches = 0

        for match in matches:
            count = max(match.match_count, 1)
            confidence = min(max(match.confidence, 0.0), 1.0)
            weighted_total += self.base_score(match.severity) * count * confidence
            total_matches += count

        score = int(weighted_total / max(1, total_matches))
        return min(max(score, 0), 100)

    def classify_severity(self, score: float) -> str:
        """
        Classify threat score into severity level.

        Args:
            score: Threat score (0-100)

        Returns:
            critical, high, medium or low
        """
        for threshold, label in self.SEVERITY_THRESHOLDS:
            if score >= threshold:
                return label
        return "low"

    def assess(self, matches: Iterable[RuleMatchResult]) -> Tuple[int, str]:
        """Score and label in one call."""
        score = self.calculate_score(matches)
        return score, self.classify_severity(score)
