"""
Tests for the pattern rule engine.
"""

import asyncio

import pytest

from conftest import AUTH_LOG, RULES_PATH, make_event
from evidex.parsers.formats.text_log import TextLogParser
from evidex.rules import PatternRuleEngine, RuleMatchResult


def process(engine, events, raw=""):
    return asyncio.run(engine.process("test-analysis", events, raw))


class TestRuleLoading:

    def test_loads_bundled_rules(self, rule_engine):
        assert rule_engine.rule_count == 4
        ids = {rule.rule_id for rule in rule_engine.rules}
        assert ids == {
            "ssh-brute-force",
            "sudo-shadow-access",
            "encoded-powershell",
            "security-log-cleared",
        }

    def test_missing_directory(self, tmp_path):
        engine = PatternRuleEngine(str(tmp_path / "missing"))
        assert engine.reload() == 0
        assert engine.rules == ()

    def test_load_rule_tags(self):
        engine = PatternRuleEngine(str(RULES_PATH))
        rule = engine.load_rule({
            "title": "Test",
            "level": "HIGH",
            "patterns": "needle",
            "tags": ["attack.execution", "attack.t1059.004", "custom"],
        }, source_file="rules/test.yml")

        assert rule.rule_id == "test"
        assert rule.severity == "high"
        assert rule.techniques == ("T1059.004",)
        assert len(rule.patterns) == 1

    def test_load_rule_skips_malformed_technique_tags(self):
        engine = PatternRuleEngine(str(RULES_PATH))
        rule = engine.load_rule({
            "title": "Test",
            "patterns": "needle",
            "tags": ["attack.ta0002", "attack.t1059.1", "attack.t1059.", "attack.t1003"],
        })

        assert rule.techniques == ("T1003",)

    def test_load_rule_requires_title_and_patterns(self):
        engine = PatternRuleEngine(str(RULES_PATH))
        assert engine.load_rule({"title": "No patterns"}) is None
        assert engine.load_rule({"patterns": ["x"]}) is None
        assert engine.load_rule({}) is None

    def test_invalid_rule_file_is_skipped(self, tmp_path):
        (tmp_path / "good.yml").write_text("title: Good\npatterns:\n  - good\n")
        (tmp_path / "bad.yml").write_text("title: Bad\npatterns:\n  - '(unclosed'\n")
        engine = PatternRuleEngine(str(tmp_path))

        assert engine.reload() == 1
        assert engine.rules[0].title == "Good"

    def test_reload_swaps_snapshot(self, tmp_path):
        (tmp_path / "one.yml").write_text("title: One\npatterns:\n  - one\n")
        engine = PatternRuleEngine(str(tmp_path))
        engine.reload()
        snapshot = engine.rules

        (tmp_path / "two.yml").write_text("title: Two\npatterns:\n  - two\n")
        assert engine.reload() == 2

        assert len(snapshot) == 1
        assert engine.rule_count == 2
        assert engine.rules is not snapshot


class TestRuleMatching:

    def test_auth_log(self, rule_engine):
        events = TextLogParser().parse("auth.log", AUTH_LOG).events
        results = process(rule_engine, events, AUTH_LOG)
        by_id = {r.rule_id: r for r in results}

        assert set(by_id) == {"ssh-brute-force", "sudo-shadow-access"}

        brute = by_id["ssh-brute-force"]
        assert isinstance(brute, RuleMatchResult)
        assert brute.match_count == 3
        assert brute.severity == "high"
        assert brute.confidence == pytest.approx(0.8)
        assert brute.mitre_attack_ids == ["T1110.001"]
        assert [d.line_number for d in brute.matches] == [1, 2, 3]
        assert brute.matches[0].matched_content == "Failed password for root"
        assert brute.matches[2].matched_content == "Failed password for invalid user admin"
        assert brute.metadata["description"] == "Repeated failed SSH password authentication"
        assert brute.metadata["rule_file"].endswith("ssh_brute_force.yml")

        shadow = by_id["sudo-shadow-access"]
        assert shadow.match_count == 1
        assert shadow.matches[0].matched_content == "COMMAND=/bin/cat /etc/shadow"
        assert shadow.matches[0].timestamp == events[3].timestamp

    def test_threshold_not_reached(self, rule_engine):
        events = [
            make_event("Failed password for root from 10.0.0.5", line_number=1),
            make_event("Failed password for root from 10.0.0.5", line_number=2),
        ]
        assert process(rule_engine, events) == []

    def test_raw_field_target(self, rule_engine):
        line = "proc: powershell.exe -enc SQBFAFgAIAAoAE4AZQB3AC0ATwBiAGoA"
        events = [make_event(line)]
        results = process(rule_engine, events, line)

        assert [r.rule_id for r in results] == ["encoded-powershell"]
        assert results[0].severity == "critical"

    def test_event_field_target(self, tmp_path):
        (tmp_path / "user.yml").write_text(
            "title: Root Login\nfield: user\npatterns:\n  - '^root$'\n"
        )
        engine = PatternRuleEngine(str(tmp_path))
        engine.reload()

        from evidex.parsers import LogEvent
        from datetime import datetime, timezone
        ts = datetime(2024, 1, 15, tzinfo=timezone.utc)
        events = [
            LogEvent(timestamp=ts, message="login", fields={"user": "root"}, line_number=1),
            LogEvent(timestamp=ts, message="login", fields={"user": "bob"}, line_number=2),
            LogEvent(timestamp=ts, message="login", line_number=3),
        ]
        results = process(engine, events)

        assert len(results) == 1
        assert [d.line_number for d in results[0].matches] == [1]
        assert results[0].matches[0].fields == {"user": "root"}

    def test_context_is_capped(self, tmp_path):
        (tmp_path / "x.yml").write_text("title: X\npatterns:\n  - needle\n")
        engine = PatternRuleEngine(str(tmp_path), context_chars=10)
        engine.reload()

        results = process(engine, [make_event("needle " + "y" * 100)])
        assert len(results[0].matches[0].context) == 10

    def test_no_events(self, rule_engine):
        assert process(rule_engine, []) == []
