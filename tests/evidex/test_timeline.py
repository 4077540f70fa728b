"""
Tests for timeline building.
"""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_event, make_match
from evidex.analysis.cancellation import AnalysisCancelled, CancellationToken
from evidex.analysis.timeline import TimelineBuilder, map_level_to_severity


def at(hour, minute=0):
    return datetime(2024, 1, 15, hour, minute, tzinfo=timezone.utc)


class TestTimelineBuild:
    """Tests for TimelineBuilder.build()."""

    @pytest.fixture
    def builder(self):
        return TimelineBuilder()

    def test_empty(self, builder):
        assert builder.build([], []) == []

    def test_length_is_events_plus_match_details(self, builder, sample_events, sample_matches):
        timeline = builder.build(sample_events, sample_matches)
        # 3 log events + 3 brute force details + 1 shadow read detail
        assert len(timeline) == 7

    def test_sorted_for_any_input_order(self, builder):
        events = [
            make_event("third", hour=12),
            make_event("first", hour=8),
            make_event("second", hour=10),
        ]
        matches = [make_match("Late", timestamp=at(11)), make_match("Early", timestamp=at(9))]

        forward = builder.build(events, matches)
        backward = builder.build(list(reversed(events)), list(reversed(matches)))

        for timeline in (forward, backward):
            timestamps = [e.timestamp for e in timeline]
            assert timestamps == sorted(timestamps)
        assert [e.title for e in forward] == [e.title for e in backward]
        assert [e.title for e in forward] == [
            "first", "Rule Match: Early", "second", "Rule Match: Late", "third",
        ]

    def test_log_events_before_matches_at_same_time(self, builder):
        events = [make_event("log line", hour=10)]
        matches = [make_match("Same Time", timestamp=at(10))]

        timeline = builder.build(events, matches)
        assert [e.event_type for e in timeline] == ["log_event", "rule_match"]

    def test_equal_timestamps_keep_input_order(self, builder):
        events = [make_event(f"event {i}", hour=10, line_number=i) for i in range(5)]
        timeline = builder.build(events, [])
        assert [e.line_number for e in timeline] == [0, 1, 2, 3, 4]

    def test_log_event_conversion(self, builder):
        event = make_event("x" * 300, level="ERROR", source="kernel", line_number=7)
        converted = builder.build([event], [])[0]

        assert converted.event_type == "log_event"
        assert converted.severity == "high"
        assert converted.source == "kernel"
        assert converted.category == "log"
        assert converted.description == "x" * 300
        assert len(converted.title) <= 120
        assert converted.title.endswith("...")
        assert converted.line_number == 7
        assert converted.is_anomalous is False

    def test_match_conversion(self, builder):
        match = make_match(
            "Brute Force",
            severity="HIGH",
            confidence=0.8,
            techniques=["T1110.001"],
            content="Failed password for root",
            context="sshd[1001]",
            timestamp=at(10),
        )
        converted = builder.build([], [match])[0]

        assert converted.event_type == "rule_match"
        assert converted.title == "Rule Match: Brute Force"
        assert converted.description == "Failed password for root"
        assert converted.severity == "high"
        assert converted.source == "rule_engine"
        assert converted.category == "detection"
        assert converted.tags == ["pattern", "T1110.001"]
        assert converted.mitre_attack_ids == ["T1110.001"]
        assert converted.details["rule_id"] == "brute-force"
        assert converted.details["context"] == "sshd[1001]"
        assert converted.confidence == pytest.approx(0.8)
        assert converted.is_anomalous is True
        assert converted.timestamp == at(10)

    def test_match_without_timestamp_uses_build_time(self, builder):
        before = datetime.now(timezone.utc)
        converted = builder.build([], [make_match("No Time")])[0]
        assert converted.timestamp >= before - timedelta(seconds=1)

    def test_naive_timestamps_become_utc(self, builder):
        match = make_match("Naive", timestamp=datetime(2024, 1, 15, 10, 0))
        converted = builder.build([], [match])[0]
        assert converted.timestamp.tzinfo is not None
        assert converted.timestamp == at(10)

    def test_cancelled_token_raises(self, builder, sample_events, sample_matches):
        token = CancellationToken()
        token.cancel()

        with pytest.raises(AnalysisCancelled):
            builder.build(sample_events, sample_matches, token)


class TestLevelSeverity:

    @pytest.mark.parametrize("level,severity", [
        ("CRITICAL", "critical"),
        ("fatal", "critical"),
        ("ERROR", "high"),
        ("Warning", "medium"),
        ("WARN", "medium"),
        ("INFO", "low"),
        ("DEBUG", "info"),
        ("TRACE", "info"),
        ("NOTICE", "info"),
        ("", "info"),
        (None, "info"),
    ])
    def test_mapping(self, level, severity):
        assert map_level_to_severity(level) == severity


class TestTimelineStatistics:
    """Tests for TimelineBuilder.calculate_statistics()."""

    @pytest.fixture
    def builder(self):
        return TimelineBuilder()

    def test_empty(self, builder):
        stats = builder.calculate_statistics([])

        assert stats.total_events == 0
        assert stats.first_event is None
        assert stats.last_event is None
        assert stats.time_range == timedelta(0)
        assert stats.events_by_type == {}
        assert stats.top_tags == []

    def test_counts(self, builder, sample_events):
        matches = [
            make_match("Brute Force", severity="high", match_count=2, techniques=["T1110"], timestamp=at(10, 15)),
        ]
        timeline = builder.build(sample_events, matches)
        stats = builder.calculate_statistics(timeline)

        assert stats.total_events == 5
        assert stats.first_event == at(9)
        assert stats.last_event == at(10, 30)
        assert stats.time_range == timedelta(hours=1, minutes=30)
        assert stats.events_by_type == {"log_event": 3, "rule_match": 2}
        assert stats.events_by_severity == {"low": 1, "medium": 1, "high": 3}
        assert stats.events_by_source == {"app": 3, "rule_engine": 2}
        assert stats.events_by_category == {"log": 3, "detection": 2}
        assert stats.events_by_hour == {
            at(9).isoformat(): 1,
            at(10).isoformat(): 4,
        }
        assert stats.top_tags == ["pattern", "T1110"]
        assert stats.anomalous_events == 2

    def test_single_event_has_zero_range(self, builder):
        timeline = builder.build([make_event("only")], [])
        stats = builder.calculate_statistics(timeline)
        assert stats.time_range == timedelta(0)
        assert stats.first_event == stats.last_event
