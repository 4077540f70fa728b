"""
Evidex Timeline Builder

Merges parsed log events and rule matches into one chronological timeline.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional

from .cancellation import CancellationToken, check_cancelled
from .models import TimelineEvent, TimelineStatistics
from ..parsers.base_parser import LogEvent
from ..rules.models import MatchDetail, RuleMatchResult
from ..utils.helpers import ensure_utc, get_current_timestamp, truncate_string

logger = logging.getLogger(__name__)


# Log level to timeline severity
LEVEL_SEVERITY = {
    "CRITICAL": "critical",
    "FATAL": "critical",
    "ERROR": "high",
    "WARNING": "medium",
    "WARN": "medium",
    "INFO": "low",
    "DEBUG": "info",
    "TRACE": "info",
}

TITLE_MAX_LENGTH = 120
TOP_TAGS = 10


def map_level_to_severity(level: Optional[str]) -> str:
    return LEVEL_SEVERITY.get((level or "").strip().upper(), "info")


class TimelineBuilder:
    """Builds timelines and timeline statistics."""

    def build(
        self,
        events: Iterable[LogEvent],
        matches: Iterable[RuleMatchResult],
        cancel_token: Optional[CancellationToken] = None,
    ) -> List[TimelineEvent]:
        """
        Build a sorted timeline.

        Args:
            events: Parsed log events
            matches: Rule matches of the same analysis
            cancel_token: Checked before every conversion

        Returns:
            Timeline sorted ascending by timestamp; log events come before
            rule matches that share a timestamp

        Raises:
            AnalysisCancelled: If the token fires; no partial timeline is returned
        """
        # Timestamp for match details that carry none
        started = get_current_timestamp()
        timeline: List[TimelineEvent] = []

        for event in events:
            check_cancelled(cancel_token)
            timeline.append(self._from_log_event(event))

        for match in matches:
            for detail in match.matches:
                check_cancelled(cancel_token)
                timeline.append(self._from_match_detail(match, detail, started))

        timeline.sort(key=lambda e: e.timestamp)

        logger.info(f"Built timeline with {len(timeline)} events")
        return timeline

    def _from_log_event(self, event: LogEvent) -> TimelineEvent:
        return TimelineEvent(
            timestamp=ensure_utc(event.timestamp),
            event_type="log_event",
            title=truncate_string(event.message, TITLE_MAX_LENGTH),
            description=event.message,
            severity=map_level_to_severity(event.level),
            source=event.source,
            category="log",
            details=dict(event.fields),
            line_number=event.line_number,
            file_offset=event.offset,
            raw_data=event.raw_data,
        )

    def _from_match_detail(
        self,
        match: RuleMatchResult,
        detail: MatchDetail,
        started: datetime,
    ) -> TimelineEvent:
        timestamp = ensure_utc(detail.timestamp) if detail.timestamp else started
        return TimelineEvent(
            timestamp=timestamp,
            event_type="rule_match",
            title=f"Rule Match: {match.rule_name}",
            description=detail.matched_content,
            severity=match.severity.lower(),
            source="rule_engine",
            category="detection",
            details={
                "rule_id": match.rule_id,
                "rule_name": match.rule_name,
                "rule_type": match.rule_type,
                "confidence": match.confidence,
                "context": detail.context or "",
            },
            tags=[match.rule_type, *match.mitre_attack_ids],
            mitre_attack_ids=list(match.mitre_attack_ids),
            line_number=detail.line_number,
            file_offset=detail.file_offset,
            raw_data=detail.matched_content,
            confidence=match.confidence,
            is_anomalous=True,
        )

    def calculate_statistics(self, timeline: List[TimelineEvent]) -> TimelineStatistics:
        """
        Calculate statistics over a timeline.

        Args:
            timeline: Timeline events (any order)

        Returns:
            TimelineStatistics; zeroed for an empty timeline
        """
        if not timeline:
            return TimelineStatistics()

        first_event = min(e.timestamp for e in timeline)
        last_event = max(e.timestamp for e in timeline)

        events_by_hour: Dict[str, int] = {}
        for event in timeline:
            hour = event.timestamp.replace(minute=0, second=0, microsecond=0).isoformat()
            events_by_hour[hour] = events_by_hour.get(hour, 0) + 1

        tag_counts = Counter(tag for event in timeline for tag in event.tags)

        return TimelineStatistics(
            total_events=len(timeline),
            first_event=first_event,
            last_event=last_event,
            time_range=last_event - first_event if last_event > first_event else timedelta(0),
            events_by_type=dict(Counter(e.event_type for e in timeline)),
            events_by_severity=dict(Counter(e.severity for e in timeline)),
            events_by_source=dict(Counter(e.source for e in timeline if e.source)),
            events_by_category=dict(Counter(e.category for e in timeline if e.category)),
            events_by_hour=events_by_hour,
            top_tags=[tag for tag, _ in tag_counts.most_common(TOP_TAGS)],
            anomalous_events=sum(1 for e in timeline if e.is_anomalous),
        )
