"""
Evidex MITRE ATT&CK Mapper

Maps rule matches to MITRE ATT&CK techniques and tactics.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional

from .reference import DEFAULT_TACTIC_SEVERITY, ReferenceData, embedded_reference_data
from ..cancellation import CancellationToken, check_cancelled
from ..models import (
    MitreMappingResult,
    MitreStatistics,
    SubTechnique,
    Tactic,
    Technique,
)
from ...rules.models import RuleMatchResult

logger = logging.getLogger(__name__)


# Underscores and punctuation may border an id; letters and digits may not
TECHNIQUE_ID_PATTERN = re.compile(
    r"(?<![A-Za-z0-9])T\d{4}(?:\.\d{3})?(?![A-Za-z0-9])", re.IGNORECASE
)

HIGH_CONFIDENCE = 0.8
TOP_TECHNIQUES = 5


class _MappingState:
    """Working tables for one map_matches() call."""

    def __init__(self):
        self.techniques: Dict[str, Technique] = {}
        self.tactics: Dict[str, Tactic] = {}
        self.technique_frequency: Dict[str, int] = {}
        self.tactic_frequency: Dict[str, int] = {}


class MitreMapper:
    """
    Maps rule matches to the MITRE ATT&CK framework.

    Technique ids come from the ids attached to each match and from any
    T#### / T####.### strings found in its metadata, matched content and
    context.
    """

    def __init__(self, reference: Optional[ReferenceData] = None):
        """
        Args:
            reference: ATT&CK lookup tables; defaults to the embedded set
        """
        self.reference = reference or embedded_reference_data()

    def map_matches(
        self,
        matches: Iterable[RuleMatchResult],
        cancel_token: Optional[CancellationToken] = None,
    ) -> MitreMappingResult:
        """
        Map rule matches to techniques and tactics.

        Args:
            matches: Rule matches of one analysis
            cancel_token: Checked before each match

        Returns:
            MitreMappingResult with statistics

        Raises:
            AnalysisCancelled: If the token fires during mapping
        """
        matches = list(matches)
        logger.info(f"Mapping {len(matches)} rule matches to MITRE ATT&CK")

        state = _MappingState()
        for match in matches:
            check_cancelled(cancel_token)
            for technique_id in self.extract_technique_ids(match):
                self._process_technique_id(technique_id, match, state)

        tactics = list(state.tactics.values())
        for tactic in tactics:
            reference_count = self.reference.technique_count_for_tactic(tactic.name)
            if reference_count:
                tactic.coverage = min(1.0, tactic.technique_count / reference_count)

        result = MitreMappingResult(
            techniques=list(state.techniques.values()),
            tactics=tactics,
            kill_chain_phases=sorted(
                (tactic.name for tactic in tactics),
                key=self.reference.tactic_rank,
            ),
            technique_frequency=state.technique_frequency,
            tactic_frequency=state.tactic_frequency,
        )
        result.statistics = self.calculate_statistics(result)

        logger.info(
            f"Mapped {len(result.techniques)} techniques and {len(result.tactics)} tactics"
        )
        return result

    def extract_technique_ids(self, match: RuleMatchResult) -> List[str]:
        """
        All technique ids referenced by a match, in discovery order.

        Duplicates are kept; each occurrence counts towards frequency.
        """
        ids = [technique_id.upper() for technique_id in match.mitre_attack_ids]

        for value in match.metadata.values():
            if isinstance(value, str):
                ids.extend(found.upper() for found in TECHNIQUE_ID_PATTERN.findall(value))

        for detail in match.matches:
            if detail.matched_content:
                ids.extend(found.upper() for found in TECHNIQUE_ID_PATTERN.findall(detail.matched_content))
            if detail.context:
                ids.extend(found.upper() for found in TECHNIQUE_ID_PATTERN.findall(detail.context))

        return ids

    def _process_technique_id(self, technique_id: str, match: RuleMatchResult, state: _MappingState):
        is_sub_technique = "." in technique_id
        parent_id = technique_id.split(".")[0]

        state.technique_frequency[technique_id] = state.technique_frequency.get(technique_id, 0) + 1

        evidence = None
        if match.matches:
            evidence = f"Rule '{match.rule_name}' matched: {match.matches[0].matched_content}"

        technique = state.techniques.get(parent_id)
        if technique is None:
            if self.reference.get_technique(parent_id) is None:
                logger.debug(f"Technique {parent_id} is not in the reference data")
            technique = Technique(
                id=parent_id,
                name=self.reference.technique_name(parent_id),
                description=self.reference.technique_description(parent_id),
                tactics=list(self.reference.tactics_for(parent_id)),
            )
            state.techniques[parent_id] = technique

        technique.match_count += 1
        technique.confidence = max(technique.confidence, match.confidence)
        if evidence and evidence not in technique.evidence:
            technique.evidence.append(evidence)

        if is_sub_technique:
            sub_technique = next(
                (sub for sub in technique.sub_techniques if sub.id == technique_id),
                None,
            )
            if sub_technique is None:
                sub_technique = SubTechnique(
                    id=technique_id,
                    name=self.reference.technique_name(technique_id),
                )
                technique.sub_techniques.append(sub_technique)
            sub_technique.match_count += 1
            sub_technique.confidence = max(sub_technique.confidence, match.confidence)
            if evidence and evidence not in sub_technique.evidence:
                sub_technique.evidence.append(evidence)

        for tactic_name in technique.tactics:
            state.tactic_frequency[tactic_name] = state.tactic_frequency.get(tactic_name, 0) + 1

            tactic = state.tactics.get(tactic_name)
            if tactic is None:
                tactic = Tactic(id=self.reference.tactic_id(tactic_name), name=tactic_name)
                state.tactics[tactic_name] = tactic

            if parent_id not in tactic.technique_ids:
                tactic.technique_ids.append(parent_id)
                tactic.technique_count += 1

    def calculate_statistics(self, result: MitreMappingResult) -> MitreStatistics:
        """
        Summarize a mapping result.

        Args:
            result: Mapping result with techniques and tactics filled in

        Returns:
            MitreStatistics including the overall tactic-weighted threat score
        """
        techniques_by_id = {technique.id: technique for technique in result.techniques}

        techniques_by_tactic: Dict[str, int] = {}
        confidence_by_tactic: Dict[str, float] = {}
        for tactic in result.tactics:
            techniques_by_tactic[tactic.name] = tactic.technique_count
            confidences = [
                techniques_by_id[technique_id].confidence
                for technique_id in tactic.technique_ids
                if technique_id in techniques_by_id
            ]
            confidence_by_tactic[tactic.name] = (
                sum(confidences) / len(confidences) if confidences else 0.0
            )

        # sorted() is stable, so equal frequencies keep discovery order
        most_common = [
            technique_id for technique_id, _ in sorted(
                result.technique_frequency.items(),
                key=lambda item: item[1],
                reverse=True,
            )
        ][:TOP_TECHNIQUES]

        high_confidence = [
            technique.id for technique in sorted(
                (t for t in result.techniques if t.confidence >= HIGH_CONFIDENCE),
                key=lambda t: t.confidence,
                reverse=True,
            )
        ][:TOP_TECHNIQUES]

        return MitreStatistics(
            total_techniques=len(result.techniques),
            total_tactics=len(result.tactics),
            total_sub_techniques=sum(len(t.sub_techniques) for t in result.techniques),
            techniques_by_tactic=techniques_by_tactic,
            confidence_by_tactic=confidence_by_tactic,
            most_common_techniques=most_common,
            high_confidence_techniques=high_confidence,
            overall_threat_score=self._overall_score(result.techniques),
        )

    def _overall_score(self, techniques: List[Technique]) -> float:
        total_weight = 0.0
        weighted_score = 0.0

        for technique in techniques:
            weight = technique.match_count * technique.confidence
            if technique.tactics:
                base = sum(
                    self.reference.tactic_severity(tactic) for tactic in technique.tactics
                ) / len(technique.tactics)
            else:
                base = DEFAULT_TACTIC_SEVERITY
            total_weight += weight
            weighted_score += base * weight

        if total_weight <= 0:
            return 0.0
        return min(max(weighted_score / total_weight, 0.0), 100.0)
