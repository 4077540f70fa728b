"""
Tests for the analysis orchestrator.
"""

import asyncio
import hashlib
import json
import threading
from datetime import datetime, timezone

import pytest

from conftest import (
    AUTH_LOG,
    ExplodingRuleEngine,
    FailingNotifier,
    FakeStorage,
    RecordingNotifier,
    make_match,
)
from evidex.analysis import (
    Analysis,
    AnalysisCancelled,
    AnalysisFinalizedError,
    AnalysisOptions,
    AnalysisOrchestrator,
    AnalysisStatus,
    CancellationToken,
    ErrorKind,
    InvalidStatusTransition,
    MitreMapper,
    RESULT_ANALYSIS,
    RESULT_EVENTS,
)
from evidex.parsers import ParserRegistry
from evidex.parsers.base_parser import BaseParser, ParseResult
from evidex.parsers.formats.text_log import TextLogParser


class BrokenHeaderParser(BaseParser):
    """Accepts everything and then rejects it while parsing."""

    parser_id = "broken_header"
    parser_name = "Broken Header Parser"

    def matches(self, filename, content):
        return True

    def parse(self, filename, content):
        return ParseResult.failure("unexpected header", self.parser_id)


class SlowRuleEngine:
    def __init__(self, delay):
        self.delay = delay

    async def process(self, analysis_id, events, raw_content):
        await asyncio.sleep(self.delay)
        return []

    def reload(self):
        return 0


class GatedMapper(MitreMapper):
    """Holds the first match until released and records how mapping ended."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()
        self.stopped_by_token = False

    def extract_technique_ids(self, match):
        if not self.entered.is_set():
            self.entered.set()
            self.release.wait(timeout=5)
        return super().extract_technique_ids(match)

    def map_matches(self, matches, cancel_token=None):
        try:
            return super().map_matches(matches, cancel_token)
        except AnalysisCancelled:
            self.stopped_by_token = True
            raise


def run(orchestrator, upload_id="upload-1", **kwargs):
    return asyncio.run(orchestrator.run(upload_id, **kwargs))


@pytest.fixture
def orchestrator(storage, parsers, rule_engine, notifier):
    return AnalysisOrchestrator(storage, parsers, rule_engine, notifier)


class TestCompletedRun:
    """A full run over a small auth log."""

    @pytest.fixture
    def outcome(self, orchestrator):
        return run(orchestrator)

    def test_outcome(self, outcome):
        assert outcome.succeeded
        assert outcome.error_kind is None
        assert outcome.persisted
        assert outcome.message is None

    def test_file_metadata(self, outcome):
        analysis = outcome.analysis
        data = AUTH_LOG.encode("utf-8")

        assert analysis.status == AnalysisStatus.COMPLETED
        assert analysis.file_name == "auth.log"
        assert analysis.file_size == len(data)
        assert analysis.file_type == "LOG"
        assert analysis.file_hash == hashlib.sha256(data).hexdigest()
        assert analysis.parser_id == "text_log"
        assert analysis.upload_id == "upload-1"
        assert analysis.progress == 100
        assert analysis.start_time <= analysis.completion_time

    def test_scoring(self, outcome):
        analysis = outcome.analysis

        assert analysis.event_count == 5
        assert {m.rule_id for m in analysis.rule_matches} == {"ssh-brute-force", "sudo-shadow-access"}
        # (75 * 3 * 0.8 + 50 * 1 * 0.7) / 4
        assert analysis.threat_score == 53
        assert analysis.severity == "medium"

    def test_mitre(self, outcome):
        mitre = outcome.analysis.mitre

        assert mitre is not None
        assert {t.id for t in mitre.techniques} == {"T1110", "T1003"}
        assert mitre.kill_chain_phases == ["Credential Access"]
        sub_ids = {s.id for t in mitre.techniques for s in t.sub_techniques}
        assert sub_ids == {"T1110.001", "T1003.008"}

    def test_timeline(self, outcome):
        analysis = outcome.analysis

        assert len(analysis.timeline) == 9
        timestamps = [e.timestamp for e in analysis.timeline]
        assert timestamps == sorted(timestamps)
        assert analysis.timeline_statistics.total_events == 9
        assert analysis.timeline_statistics.anomalous_events == 4

    def test_summary(self, outcome):
        analysis = outcome.analysis
        lines = analysis.summary.split("\n")

        assert lines[0] == "Analysis of auth.log completed."
        assert lines[1] == f"File size: {analysis.file_size} bytes"
        assert lines[2] == f"File hash: {analysis.file_hash}"
        assert "Parsed 5 events." in lines
        assert "Found 2 rule matches:" in lines
        assert "- 1 high severity matches" in lines
        assert "- 1 medium severity matches" in lines
        assert lines[-2] == "Threat score: 53/100"
        assert lines[-1] == "Severity: MEDIUM"

    def test_results_persisted(self, outcome, storage):
        analysis_id = outcome.analysis.id

        assert storage.save_calls == [(analysis_id, RESULT_EVENTS), (analysis_id, RESULT_ANALYSIS)]
        assert len(storage.results[(analysis_id, RESULT_EVENTS)]) == 5
        assert storage.results[(analysis_id, RESULT_ANALYSIS)]["status"] == "completed"

    def test_persisted_analysis_loads_back(self, outcome, storage):
        data = storage.results[(outcome.analysis.id, RESULT_ANALYSIS)]
        loaded = Analysis.model_validate(data)

        assert loaded.id == outcome.analysis.id
        assert loaded.status == AnalysisStatus.COMPLETED
        assert loaded.threat_score == 53
        assert len(loaded.timeline) == 9
        assert [t.id for t in loaded.mitre.techniques] == [t.id for t in outcome.analysis.mitre.techniques]
        assert loaded.timeline_statistics.time_range == outcome.analysis.timeline_statistics.time_range

    def test_progress_reported_in_order(self, outcome, notifier):
        percents = [percent for _, percent, _ in notifier.progress]

        assert percents == sorted(percents)
        assert percents[0] == 5
        assert percents[-1] == 95
        messages = [message for _, _, message in notifier.progress]
        assert "File loaded" in messages
        assert "Parser selected: text_log" in messages
        assert "Parsed 5 events" in messages

    def test_completion_notification(self, outcome, notifier):
        assert len(notifier.completed) == 1
        analysis_id, payload = notifier.completed[0]

        assert analysis_id == outcome.analysis.id
        assert payload["status"] == "completed"
        assert payload["threat_score"] == 53
        assert payload["severity"] == "medium"
        assert payload["rule_matches"] == 2
        assert payload["file_hash"] == outcome.analysis.file_hash

    def test_finalized_analysis_is_read_only(self, outcome):
        analysis = outcome.analysis

        with pytest.raises(AnalysisFinalizedError):
            analysis.threat_score = 0
        with pytest.raises(InvalidStatusTransition):
            analysis.transition_to(AnalysisStatus.PROCESSING)
        with pytest.raises(InvalidStatusTransition):
            analysis.finalize(AnalysisStatus.FAILED)

    def test_not_active_after_run(self, orchestrator, outcome):
        assert orchestrator.get_active(outcome.analysis.id) is None
        assert orchestrator.list_active() == []


class TestRunOptions:

    def test_mitre_and_timeline_disabled(self, orchestrator, notifier):
        options = AnalysisOptions(map_to_mitre=False, generate_timeline=False)
        outcome = run(orchestrator, options=options)
        analysis = outcome.analysis

        assert outcome.succeeded
        assert analysis.mitre is None
        assert analysis.timeline == []
        assert analysis.timeline_statistics is None
        assert analysis.threat_score == 53
        messages = [message for _, _, message in notifier.progress]
        assert "MITRE ATT&CK mapping skipped" in messages
        assert "Timeline skipped" in messages

    def test_max_events_limits_rule_input(self, orchestrator, storage):
        outcome = run(orchestrator, options=AnalysisOptions(max_events=2))
        analysis = outcome.analysis

        assert outcome.succeeded
        assert analysis.event_count == 2
        assert len(storage.results[(analysis.id, RESULT_EVENTS)]) == 2
        # Two failed logins stay under the brute force threshold
        assert analysis.rule_matches == []
        assert analysis.threat_score == 0
        assert analysis.severity == "low"
        assert "No rule matches found." in analysis.summary

    def test_unusable_preferred_parser_falls_back(self, orchestrator):
        outcome = run(orchestrator, options=AnalysisOptions(preferred_parser_id="json_lines"))
        assert outcome.analysis.parser_id == "text_log"

    def test_preferred_parser_wins_over_extension(self, storage, rule_engine, notifier):
        registry = ParserRegistry()
        registry.register(TextLogParser(), priority=10)
        registry.register(BrokenHeaderParser(), priority=50)

        orchestrator = AnalysisOrchestrator(storage, registry, rule_engine, notifier)
        outcome = run(orchestrator, options=AnalysisOptions(preferred_parser_id="broken_header"))

        assert outcome.analysis.parser_id == "broken_header"
        assert outcome.error_kind == ErrorKind.PARSE_FAILURE

    def test_caller_supplied_analysis_id(self, orchestrator):
        outcome = run(orchestrator, analysis_id="case-42")
        assert outcome.analysis.id == "case-42"

    def test_concurrent_runs_are_independent(self, parsers, rule_engine, notifier):
        storage = FakeStorage({
            "a": {"auth.log": AUTH_LOG.encode("utf-8")},
            "b": {"app.log": b"2024-01-15 10:00:00 INFO service started\n"},
        })
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier)

        async def both():
            return await asyncio.gather(orchestrator.run("a"), orchestrator.run("b"))

        first, second = asyncio.run(both())

        assert first.analysis.threat_score == 53
        assert second.analysis.threat_score == 0
        assert second.analysis.event_count == 1
        assert first.analysis.id != second.analysis.id


class TestFailures:

    def test_missing_upload(self, parsers, rule_engine, notifier):
        storage = FakeStorage()
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier)
        outcome = run(orchestrator, upload_id="nope")

        assert outcome.error_kind == ErrorKind.NOT_FOUND
        assert not outcome.succeeded
        assert not outcome.persisted
        assert outcome.analysis.status == AnalysisStatus.FAILED
        assert "nope" in outcome.message
        assert storage.save_calls == []
        assert notifier.completed[0][1]["status"] == "failed"

    def test_unsupported_format(self, parsers, rule_engine, notifier):
        storage = FakeStorage({"upload-1": {"dump.bin": b"\x00\x01\x02\x03"}})
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier)
        outcome = run(orchestrator)

        assert outcome.error_kind == ErrorKind.UNSUPPORTED_FORMAT
        assert outcome.analysis.status == AnalysisStatus.FAILED
        assert outcome.analysis.file_type == "BIN"
        assert outcome.persisted
        assert storage.save_calls == [(outcome.analysis.id, RESULT_ANALYSIS)]

    def test_parse_failure(self, storage, rule_engine, notifier):
        registry = ParserRegistry()
        registry.register(BrokenHeaderParser())
        orchestrator = AnalysisOrchestrator(storage, registry, rule_engine, notifier)
        outcome = run(orchestrator)

        assert outcome.error_kind == ErrorKind.PARSE_FAILURE
        assert outcome.message == "Parsing failed: unexpected header"
        assert outcome.analysis.parser_id == "broken_header"
        assert outcome.analysis.summary is None

    def test_rule_engine_failure(self, storage, parsers, notifier):
        orchestrator = AnalysisOrchestrator(storage, parsers, ExplodingRuleEngine(), notifier)
        outcome = run(orchestrator)

        assert outcome.error_kind == ErrorKind.RULE_ENGINE_FAILURE
        assert outcome.message == "Rule engine failed: rule backend crashed"
        assert outcome.analysis.event_count == 5
        # Events were written before the failure
        assert (outcome.analysis.id, RESULT_EVENTS) in storage.results

    def test_notifier_failures_do_not_fail_the_run(self, storage, parsers, rule_engine):
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, FailingNotifier())
        outcome = run(orchestrator)

        assert outcome.succeeded
        assert outcome.analysis.threat_score == 53

    def test_storage_failure_on_save(self, parsers, rule_engine, notifier):
        class ReadOnlyStorage(FakeStorage):
            async def save_result(self, analysis_id, result_type, data):
                raise PermissionError("read-only volume")

        storage = ReadOnlyStorage({"upload-1": {"auth.log": AUTH_LOG.encode("utf-8")}})
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier)
        outcome = run(orchestrator)

        assert outcome.error_kind == ErrorKind.INTERNAL
        assert outcome.analysis.error_message == "read-only volume"
        assert not outcome.persisted


class TestCancellation:

    def test_cancel_after_file_loaded(self, orchestrator, notifier, storage):
        async def cancel(analysis_id):
            assert await orchestrator.cancel(analysis_id)

        notifier.on_message("File loaded", cancel)
        outcome = run(orchestrator)
        analysis = outcome.analysis

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert analysis.status == AnalysisStatus.CANCELLED
        assert analysis.error_message == "Analysis was cancelled"
        assert analysis.rule_matches == []
        assert analysis.timeline == []
        assert analysis.mitre is None
        assert analysis.summary is None
        assert outcome.persisted
        assert storage.results[(analysis.id, RESULT_ANALYSIS)]["status"] == "cancelled"
        messages = [message for _, _, message in notifier.progress]
        assert messages[-1] == "Analysis cancelled"
        assert notifier.completed[-1][1]["status"] == "cancelled"

    def test_cancel_keeps_results_already_written(self, orchestrator, notifier, storage):
        async def cancel(analysis_id):
            await orchestrator.cancel(analysis_id)

        notifier.on_message("Parsed 5 events", cancel)
        outcome = run(orchestrator)

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.analysis.event_count == 5
        assert outcome.analysis.rule_matches == []
        assert (outcome.analysis.id, RESULT_EVENTS) in storage.results

    def test_active_run_visible_and_not_deletable(self, orchestrator, notifier):
        seen = {}

        async def inspect(analysis_id):
            active = orchestrator.get_active(analysis_id)
            seen["status"] = active.status
            seen["deleted"] = await orchestrator.delete(analysis_id)

        notifier.on_message("Starting analysis", inspect)
        outcome = run(orchestrator)

        assert outcome.succeeded
        assert seen == {"status": AnalysisStatus.PROCESSING, "deleted": False}

    def test_cancel_unknown_or_finished(self, orchestrator):
        outcome = run(orchestrator)

        assert asyncio.run(orchestrator.cancel("does-not-exist")) is False
        assert asyncio.run(orchestrator.cancel(outcome.analysis.id)) is False

    def test_external_token(self, orchestrator, storage):
        token = CancellationToken()
        token.cancel()
        outcome = run(orchestrator, cancel_token=token)

        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.analysis.status == AnalysisStatus.CANCELLED
        assert outcome.analysis.file_name == ""
        assert (outcome.analysis.id, RESULT_ANALYSIS) in storage.results

    def test_submitted_run_visible_before_it_starts(self, orchestrator, storage):
        async def scenario():
            analysis, task = orchestrator.submit("upload-1", analysis_id="queued")
            active = orchestrator.get_active("queued")
            status = active.status
            outcome = await task
            return analysis, active, status, outcome

        analysis, active, status, outcome = asyncio.run(scenario())

        assert active is analysis
        assert status == AnalysisStatus.PENDING
        assert outcome.succeeded
        assert orchestrator.get_active("queued") is None
        assert ("queued", RESULT_ANALYSIS) in storage.results

    def test_cancel_submitted_run_before_it_starts(self, orchestrator, storage):
        async def scenario():
            _, task = orchestrator.submit("upload-1", analysis_id="queued")
            cancelled = await orchestrator.cancel("queued")
            return cancelled, await task

        cancelled, outcome = asyncio.run(scenario())

        assert cancelled
        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.analysis.status == AnalysisStatus.CANCELLED
        assert outcome.analysis.start_time is None
        assert outcome.persisted
        assert storage.results[("queued", RESULT_ANALYSIS)]["status"] == "cancelled"
        assert ("queued", RESULT_EVENTS) not in storage.results

    def test_cancel_reaches_mapping_in_progress(self, storage, parsers, rule_engine, notifier):
        mapper = GatedMapper()
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier, mapper=mapper)

        async def scenario():
            task = asyncio.create_task(orchestrator.run("upload-1", analysis_id="gated"))
            entered = await asyncio.to_thread(mapper.entered.wait, 5)
            cancelled = await orchestrator.cancel("gated")
            mapper.release.set()
            return entered, cancelled, await task

        entered, cancelled, outcome = asyncio.run(scenario())

        assert entered
        assert cancelled
        assert mapper.stopped_by_token
        assert outcome.error_kind == ErrorKind.CANCELLED
        assert outcome.analysis.status == AnalysisStatus.CANCELLED
        assert len(outcome.analysis.rule_matches) == 2
        assert outcome.analysis.mitre is None
        assert outcome.analysis.timeline == []

    def test_event_loop_free_during_mapping(self, storage, parsers, rule_engine, notifier):
        mapper = GatedMapper()
        orchestrator = AnalysisOrchestrator(storage, parsers, rule_engine, notifier, mapper=mapper)

        async def scenario():
            task = asyncio.create_task(orchestrator.run("upload-1"))
            await asyncio.to_thread(mapper.entered.wait, 5)
            ticks = 0
            for _ in range(5):
                await asyncio.sleep(0.01)
                ticks += 1
            mapper.release.set()
            return ticks, await task

        ticks, outcome = asyncio.run(scenario())

        assert ticks == 5
        assert outcome.succeeded
        assert not mapper.stopped_by_token

    def test_timeout(self, storage, parsers, notifier):
        orchestrator = AnalysisOrchestrator(storage, parsers, SlowRuleEngine(0.2), notifier)
        outcome = run(orchestrator, options=AnalysisOptions(timeout_seconds=0.05))

        assert outcome.error_kind == ErrorKind.TIMEOUT
        assert outcome.analysis.status == AnalysisStatus.FAILED
        assert "timed out" in outcome.message
        assert outcome.persisted


class TestAnalysisSerialization:

    def test_value_maps_keep_their_types_through_json(self):
        ts = datetime(2024, 1, 15, 10, 0, tzinfo=timezone.utc)
        match = make_match(metadata={
            "first_seen": ts,
            "host": "2024-01-15T10:00:00Z",
            "count": 3,
            "ratio": 0.5,
            "blocked": True,
        })
        match.matches[0].fields["logged_at"] = ts
        analysis = Analysis(upload_id="upload-1", rule_matches=[match])

        data = json.loads(json.dumps(analysis.model_dump(mode="json")))
        assert data["rule_matches"][0]["metadata"]["first_seen"] == {
            "type": "timestamp",
            "value": ts.isoformat(),
        }

        loaded = Analysis.model_validate(data)
        metadata = loaded.rule_matches[0].metadata
        assert metadata["first_seen"] == ts
        assert isinstance(metadata["first_seen"], datetime)
        assert metadata["host"] == "2024-01-15T10:00:00Z"
        assert metadata["count"] == 3 and type(metadata["count"]) is int
        assert metadata["ratio"] == 0.5 and type(metadata["ratio"]) is float
        assert metadata["blocked"] is True
        assert loaded.rule_matches[0].matches[0].fields["logged_at"] == ts

    def test_unknown_tag_rejected(self):
        data = Analysis(upload_id="upload-1", rule_matches=[make_match()]).model_dump(mode="json")
        data["rule_matches"][0]["metadata"] = {"odd": {"type": "blob", "value": "x"}}

        with pytest.raises(ValueError):
            Analysis.model_validate(data)


class TestDelete:

    def test_delete_finished_analysis(self, orchestrator, storage):
        outcome = run(orchestrator)
        analysis_id = outcome.analysis.id

        assert asyncio.run(orchestrator.delete(analysis_id)) is True
        assert (analysis_id, RESULT_ANALYSIS) not in storage.results
        assert asyncio.run(orchestrator.delete(analysis_id)) is False
