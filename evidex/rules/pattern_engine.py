"""
Evidex Pattern Rule Engine

Default rule engine: regular-expression rules loaded from YAML files.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple

from ruamel.yaml import YAML

from .models import RuleMatchResult, MatchDetail, SEVERITY_LEVELS, TECHNIQUE_ID_FORMAT
from ..parsers.base_parser import LogEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PatternRule:
    """A compiled pattern rule."""
    rule_id: str
    title: str
    patterns: Tuple[Pattern, ...]
    description: str = ""
    severity: str = "medium"
    confidence: float = 1.0
    target: str = "message"  # message, raw, or an event field name
    threshold: int = 1
    techniques: Tuple[str, ...] = ()
    source_file: str = ""
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def search(self, event: LogEvent) -> Optional[re.Match]:
        """Return the first pattern match against the rule's target value."""
        if self.target == "message":
            value = event.message
        elif self.target == "raw":
            value = event.raw_data
        else:
            raw_value = event.fields.get(self.target)
            if raw_value is None:
                return None
            value = str(raw_value)

        for pattern in self.patterns:
            match = pattern.search(value)
            if match:
                return match
        return None


class PatternRuleEngine:
    """
    Matches LogEvents against regex rules.

    The loaded rule set is an immutable tuple. reload() builds a new tuple
    and swaps the reference, so a run in progress keeps the snapshot it
    started with.
    """

    rule_type = "pattern"

    def __init__(self, rules_path: str, context_chars: int = 200):
        """
        Initialize the engine.

        Args:
            rules_path: Directory containing *.yml / *.yaml rule files
            context_chars: Maximum characters of context kept per match
        """
        self.rules_path = Path(rules_path)
        self.context_chars = context_chars
        self._rules: Tuple[PatternRule, ...] = ()
        self._yaml = YAML(typ="safe")

    @property
    def rule_count(self) -> int:
        return len(self._rules)

    @property
    def rules(self) -> Tuple[PatternRule, ...]:
        return self._rules

    def reload(self) -> int:
        """
        Load all rules from disk and swap them in.

        Returns:
            Number of rules loaded
        """
        rules: List[PatternRule] = []

        if not self.rules_path.exists():
            logger.warning(f"Rules path does not exist: {self.rules_path}")
            self._rules = ()
            return 0

        rule_files = sorted(self.rules_path.rglob("*.yml"))
        rule_files.extend(sorted(self.rules_path.rglob("*.yaml")))

        for rule_file in rule_files:
            try:
                rule = self._load_rule_file(rule_file)
            except Exception as e:
                logger.warning(f"Failed to load rule {rule_file}: {e}")
                continue
            if rule:
                rules.append(rule)

        self._rules = tuple(rules)
        logger.info(f"Loaded {len(rules)} pattern rules from {self.rules_path}")
        return len(rules)

    def load_rule(self, data: Dict[str, Any], source_file: str = "") -> Optional[PatternRule]:
        """
        Build a PatternRule from a parsed YAML document.

        Returns:
            The compiled rule, or None when required keys are missing
        """
        if not data or "title" not in data or not data.get("patterns"):
            return None

        patterns = data["patterns"]
        if isinstance(patterns, str):
            patterns = [patterns]

        flags = 0 if data.get("case_sensitive") else re.IGNORECASE
        compiled = tuple(re.compile(str(p), flags) for p in patterns)

        severity = str(data.get("level", "medium")).lower()
        if severity not in SEVERITY_LEVELS:
            logger.debug(f"Rule {data['title']} has non-standard level {severity}")

        techniques = []
        for tag in data.get("tags", []) or []:
            tag = str(tag)
            technique_id = tag[len("attack."):].upper() if tag.lower().startswith("attack.") else ""
            if TECHNIQUE_ID_FORMAT.fullmatch(technique_id):
                techniques.append(technique_id)

        return PatternRule(
            rule_id=str(data.get("id") or Path(source_file).stem or data["title"]),
            title=str(data["title"]),
            patterns=compiled,
            description=str(data.get("description", "")),
            severity=severity,
            confidence=float(data.get("confidence", 1.0)),
            target=str(data.get("field", "message")),
            threshold=max(1, int(data.get("threshold", 1))),
            techniques=tuple(techniques),
            source_file=source_file,
            metadata=tuple(
                (str(k), str(v)) for k, v in (data.get("metadata") or {}).items()
            ),
        )

    def _load_rule_file(self, path: Path) -> Optional[PatternRule]:
        with open(path, "r", encoding="utf-8") as f:
            docs = list(self._yaml.load_all(f))
        if not docs:
            return None
        return self.load_rule(docs[0], source_file=str(path))

    async def process(
        self,
        analysis_id: str,
        events: List[LogEvent],
        raw_content: str,
    ) -> List[RuleMatchResult]:
        """
        Run every rule of the current snapshot against the events.

        Matching runs in a worker thread.

        Args:
            analysis_id: Analysis being processed (for logging)
            events: Parsed events
            raw_content: Decoded file content

        Returns:
            One RuleMatchResult per rule that reached its threshold
        """
        rules = self._rules
        results = await asyncio.to_thread(self._match_rules, rules, events)

        logger.info(
            f"Analysis {analysis_id}: {len(results)} of {len(rules)} rules matched "
            f"across {len(events)} events"
        )
        return results

    def _match_rules(
        self,
        rules: Tuple[PatternRule, ...],
        events: List[LogEvent],
    ) -> List[RuleMatchResult]:
        results: List[RuleMatchResult] = []

        for rule in rules:
            details: List[MatchDetail] = []
            for event in events:
                match = rule.search(event)
                if match is None:
                    continue
                details.append(MatchDetail(
                    matched_content=match.group(0),
                    file_offset=event.offset,
                    line_number=event.line_number,
                    context=event.message[: self.context_chars],
                    fields=dict(event.fields),
                    timestamp=event.timestamp,
                    confidence=rule.confidence,
                ))

            if len(details) < rule.threshold:
                continue

            metadata: Dict[str, Any] = dict(rule.metadata)
            if rule.description:
                metadata["description"] = rule.description
            if rule.source_file:
                metadata["rule_file"] = rule.source_file

            results.append(RuleMatchResult(
                rule_id=rule.rule_id,
                rule_name=rule.title,
                rule_type=self.rule_type,
                severity=rule.severity,
                match_count=len(details),
                confidence=rule.confidence,
                matches=details,
                mitre_attack_ids=list(rule.techniques),
                metadata=metadata,
            ))

        return results
