"""
Evidex Analysis Orchestrator

Runs one evidence file through parsing, rule matching, scoring, MITRE
mapping and timeline building, reporting progress along the way.
"""

import asyncio
import logging
from collections import Counter
from pathlib import PurePath
from typing import Dict, List, Optional, Tuple

from .cancellation import AnalysisCancelled, CancellationToken
from .interfaces import ParserResolver, ProgressNotifier, RuleEngine, Storage
from .mitre.mapping import MitreMapper
from .models import (
    Analysis,
    AnalysisOptions,
    AnalysisOutcome,
    AnalysisStatus,
    ErrorKind,
)
from .scorer import ThreatScorer
from .timeline import TimelineBuilder
from ..parsers.base_parser import LogEvent
from ..rules.models import RuleMatchResult
from ..utils.helpers import get_current_timestamp, hash_bytes

logger = logging.getLogger(__name__)


# Result types written through Storage
RESULT_ANALYSIS = "analysis"
RESULT_EVENTS = "events"


class AnalysisOrchestrator:
    """
    Coordinates the analysis pipeline.

    Each run() call is one sequential flow. Runs share no mutable state
    other than the active-run table used by cancel(). CPU-bound phases
    run in worker threads so the event loop keeps serving other runs and
    cancel() requests.
    """

    def __init__(
        self,
        storage: Storage,
        parsers: ParserResolver,
        rule_engine: RuleEngine,
        notifier: ProgressNotifier,
        scorer: Optional[ThreatScorer] = None,
        mapper: Optional[MitreMapper] = None,
        timeline_builder: Optional[TimelineBuilder] = None,
        notify_timeout: float = 5.0,
    ):
        """
        Initialize the orchestrator.

        Args:
            storage: Evidence and result storage
            parsers: Resolves a parser for a file
            rule_engine: Produces rule matches from events
            notifier: Receives progress and completion notifications
            scorer: Threat scorer
            mapper: MITRE ATT&CK mapper
            timeline_builder: Timeline builder
            notify_timeout: Seconds a single notification may take
        """
        self.storage = storage
        self.parsers = parsers
        self.rule_engine = rule_engine
        self.notifier = notifier
        self.scorer = scorer or ThreatScorer()
        self.mapper = mapper or MitreMapper()
        self.timeline_builder = timeline_builder or TimelineBuilder()
        self.notify_timeout = notify_timeout

        self._active: Dict[str, Tuple[Analysis, CancellationToken]] = {}

    def get_active(self, analysis_id: str) -> Optional[Analysis]:
        """The in-flight analysis with this id, if any."""
        entry = self._active.get(analysis_id)
        return entry[0] if entry else None

    def list_active(self) -> List[Analysis]:
        return [analysis for analysis, _ in self._active.values()]

    async def run(
        self,
        upload_id: str,
        options: Optional[AnalysisOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        analysis_id: Optional[str] = None,
    ) -> AnalysisOutcome:
        """
        Analyze the evidence uploaded under upload_id.

        Args:
            upload_id: Upload whose first file is analyzed
            options: Run options; defaults apply when omitted
            cancel_token: External cancellation signal; when omitted a token
                with the options' timeout is created
            analysis_id: Id for the new analysis; generated if None

        Returns:
            AnalysisOutcome with the finalized analysis and its error kind
        """
        options = options or AnalysisOptions()
        analysis, token = self._register(upload_id, options, cancel_token, analysis_id)
        return await self._run_registered(analysis, options, token)

    def submit(
        self,
        upload_id: str,
        options: Optional[AnalysisOptions] = None,
        cancel_token: Optional[CancellationToken] = None,
        analysis_id: Optional[str] = None,
    ) -> Tuple[Analysis, "asyncio.Task[AnalysisOutcome]"]:
        """
        Start a run as a background task.

        The pending analysis is registered before this returns, so
        get_active() and cancel() see it immediately. Takes the same
        arguments as run().

        Returns:
            The pending analysis and the task producing its outcome
        """
        options = options or AnalysisOptions()
        analysis, token = self._register(upload_id, options, cancel_token, analysis_id)
        task = asyncio.create_task(self._run_registered(analysis, options, token))
        return analysis, task

    def _register(
        self,
        upload_id: str,
        options: AnalysisOptions,
        cancel_token: Optional[CancellationToken],
        analysis_id: Optional[str],
    ) -> Tuple[Analysis, CancellationToken]:
        token = cancel_token or CancellationToken(timeout=options.timeout_seconds or None)

        analysis = Analysis(upload_id=upload_id)
        if analysis_id:
            analysis.id = analysis_id
        if analysis.id in self._active:
            raise ValueError(f"Analysis {analysis.id} is already running")
        self._active[analysis.id] = (analysis, token)
        return analysis, token

    async def _run_registered(
        self,
        analysis: Analysis,
        options: AnalysisOptions,
        token: CancellationToken,
    ) -> AnalysisOutcome:
        try:
            if analysis.is_finalized:
                # Cancelled while still pending
                return await self._finish(analysis, analysis.error_kind)
            return await self._execute(analysis, options, token)
        finally:
            self._active.pop(analysis.id, None)

    async def cancel(self, analysis_id: str) -> bool:
        """
        Cancel an in-flight analysis.

        The run stops at its next cancellation check. Results already
        written through Storage are left in place.

        Args:
            analysis_id: Analysis to cancel

        Returns:
            True if the analysis was pending or processing
        """
        entry = self._active.get(analysis_id)
        if entry is None:
            return False

        analysis, token = entry
        if analysis.is_finalized:
            return False

        token.cancel()
        analysis.finalize(
            AnalysisStatus.CANCELLED,
            error_kind=ErrorKind.CANCELLED,
            error_message="Analysis was cancelled",
        )
        logger.info(f"Analysis {analysis_id} cancelled")
        await self._notify_progress(analysis_id, analysis.progress, "Analysis cancelled")
        return True

    async def delete(self, analysis_id: str) -> bool:
        """
        Delete the stored results of a finished analysis.

        Returns:
            False if the analysis is still running or nothing was stored
        """
        if analysis_id in self._active:
            return False
        return await self.storage.delete_analysis_directory(analysis_id)

    async def _execute(
        self,
        analysis: Analysis,
        options: AnalysisOptions,
        token: CancellationToken,
    ) -> AnalysisOutcome:
        upload_id = analysis.upload_id
        logger.info(f"Starting analysis {analysis.id} for upload {upload_id}")

        analysis.start_time = get_current_timestamp()
        analysis.transition_to(AnalysisStatus.PROCESSING)

        try:
            # 1. Locate the evidence
            token.raise_if_cancelled()
            files = await self.storage.list_files(upload_id)
            if not files:
                token.raise_if_cancelled()
                message = f"No files found for upload {upload_id}"
                logger.warning(message)
                analysis.finalize(AnalysisStatus.FAILED, ErrorKind.NOT_FOUND, message)
                await self._notify_completed(analysis)
                return AnalysisOutcome(analysis, ErrorKind.NOT_FOUND, persisted=False)

            file_name = files[0]
            await self._report(analysis, token, 5, "Starting analysis")

            # 2. Load the file
            token.raise_if_cancelled()
            data = await self.storage.open_file(upload_id, file_name)
            token.raise_if_cancelled()
            analysis.file_name = file_name
            analysis.file_size = len(data)
            analysis.file_type = PurePath(file_name).suffix.lstrip(".").upper()
            analysis.file_hash = await asyncio.to_thread(hash_bytes, data)
            content = data.decode("utf-8", errors="replace")
            await self._report(analysis, token, 10, "File loaded")

            # 3. Pick a parser
            token.raise_if_cancelled()
            parser = self.parsers.resolve(file_name, content, options.preferred_parser_id)
            if parser is None:
                return await self._fail(
                    analysis,
                    ErrorKind.UNSUPPORTED_FORMAT,
                    f"No suitable parser found for {file_name}",
                )
            analysis.parser_id = parser.parser_id
            await self._report(analysis, token, 15, f"Parser selected: {parser.parser_id}")

            # 4. Parse
            token.raise_if_cancelled()
            parse_result = await asyncio.to_thread(parser.parse, file_name, content)
            if not parse_result.success:
                return await self._fail(
                    analysis,
                    ErrorKind.PARSE_FAILURE,
                    f"Parsing failed: {parse_result.error_message}",
                )
            for warning in parse_result.warnings:
                logger.debug(f"[{analysis.id}] {warning}")

            events = self._limit_events(parse_result.events, options.max_events)
            await self.storage.save_result(
                analysis.id, RESULT_EVENTS, [event.to_dict() for event in events]
            )
            token.raise_if_cancelled()
            analysis.event_count = len(events)
            await self._report(analysis, token, 30, f"Parsed {len(events)} events")

            # 5. Rules
            token.raise_if_cancelled()
            try:
                matches = await self.rule_engine.process(analysis.id, events, content)
            except AnalysisCancelled:
                raise
            except Exception as e:
                logger.error(f"Rule engine failed for analysis {analysis.id}: {e}", exc_info=True)
                return await self._fail(
                    analysis, ErrorKind.RULE_ENGINE_FAILURE, f"Rule engine failed: {e}"
                )
            token.raise_if_cancelled()
            analysis.rule_matches = list(matches)
            await self._report(analysis, token, 50, f"Rule analysis completed: {len(matches)} matches")

            # 6. Score
            token.raise_if_cancelled()
            threat_score, severity = self.scorer.assess(matches)
            analysis.threat_score = threat_score
            analysis.severity = severity
            await self._report(analysis, token, 60, f"Threat score: {threat_score}/100 ({severity})")

            # 7. MITRE ATT&CK
            if options.map_to_mitre:
                mitre = await asyncio.to_thread(self.mapper.map_matches, matches, token)
                token.raise_if_cancelled()
                analysis.mitre = mitre
                await self._report(analysis, token, 70, "MITRE ATT&CK mapping completed")
            else:
                await self._report(analysis, token, 70, "MITRE ATT&CK mapping skipped")

            # 8. Timeline
            if options.generate_timeline:
                timeline = await asyncio.to_thread(self.timeline_builder.build, events, matches, token)
                statistics = await asyncio.to_thread(self.timeline_builder.calculate_statistics, timeline)
                token.raise_if_cancelled()
                analysis.timeline = timeline
                analysis.timeline_statistics = statistics
                await self._report(analysis, token, 85, "Timeline built")
            else:
                await self._report(analysis, token, 85, "Timeline skipped")

            # 9. Summary, attached only on completion
            token.raise_if_cancelled()
            summary = self.generate_summary(analysis, events, matches)
            await self._report(analysis, token, 95, "Summary generated")

            # 10. Finalize
            token.raise_if_cancelled()
            analysis.summary = summary
            analysis.finalize(AnalysisStatus.COMPLETED)
            logger.info(
                f"Analysis {analysis.id} completed: score {analysis.threat_score} "
                f"({analysis.severity}), {len(analysis.rule_matches)} rule matches"
            )
            return await self._finish(analysis, None)

        except AnalysisCancelled:
            return await self._handle_cancelled(analysis, token, options)
        except Exception as e:
            logger.error(f"Error processing analysis {analysis.id}: {e}", exc_info=True)
            if analysis.is_finalized:
                return await self._finish(analysis, analysis.error_kind)
            return await self._fail(analysis, ErrorKind.INTERNAL, str(e) or type(e).__name__)

    async def _handle_cancelled(
        self,
        analysis: Analysis,
        token: CancellationToken,
        options: AnalysisOptions,
    ) -> AnalysisOutcome:
        if analysis.is_finalized:
            # cancel() already finalized it
            logger.warning(f"Analysis {analysis.id} stopped after cancellation")
            return await self._finish(analysis, analysis.error_kind or ErrorKind.CANCELLED)

        if token.timed_out:
            logger.warning(f"Analysis {analysis.id} timed out")
            return await self._fail(
                analysis,
                ErrorKind.TIMEOUT,
                f"Analysis timed out after {options.timeout_seconds:g} seconds",
            )

        logger.warning(f"Analysis {analysis.id} was cancelled")
        analysis.finalize(
            AnalysisStatus.CANCELLED,
            error_kind=ErrorKind.CANCELLED,
            error_message="Analysis was cancelled",
        )
        return await self._finish(analysis, ErrorKind.CANCELLED)

    async def _fail(self, analysis: Analysis, kind: ErrorKind, message: str) -> AnalysisOutcome:
        if analysis.is_finalized:
            return await self._finish(analysis, analysis.error_kind)
        logger.warning(f"Analysis {analysis.id} failed ({kind.value}): {message}")
        analysis.finalize(AnalysisStatus.FAILED, error_kind=kind, error_message=message)
        return await self._finish(analysis, kind)

    async def _finish(self, analysis: Analysis, kind: Optional[ErrorKind]) -> AnalysisOutcome:
        """Persist a finalized analysis and send the completion notification."""
        persisted = False
        try:
            await self.storage.save_result(
                analysis.id, RESULT_ANALYSIS, analysis.model_dump(mode="json")
            )
            persisted = True
        except Exception as e:
            logger.error(f"Failed to persist analysis {analysis.id}: {e}", exc_info=True)

        await self._notify_completed(analysis)
        return AnalysisOutcome(analysis, kind, persisted=persisted)

    async def _report(
        self,
        analysis: Analysis,
        token: CancellationToken,
        percent: int,
        message: str,
    ):
        token.raise_if_cancelled()
        analysis.progress = percent
        logger.info(f"[{analysis.id}] {percent}% {message}")
        await self._notify_progress(analysis.id, percent, message)

    async def _notify_progress(self, analysis_id: str, percent: int, message: str):
        try:
            await asyncio.wait_for(
                self.notifier.send_progress(analysis_id, percent, message),
                timeout=self.notify_timeout,
            )
        except Exception as e:
            logger.warning(f"Progress notification failed for {analysis_id}: {e!r}")

    async def _notify_completed(self, analysis: Analysis):
        try:
            await asyncio.wait_for(
                self.notifier.send_completed(analysis.id, analysis.completion_payload()),
                timeout=self.notify_timeout,
            )
        except Exception as e:
            logger.warning(f"Completion notification failed for {analysis.id}: {e!r}")

    def _limit_events(self, events: List[LogEvent], max_events: int) -> List[LogEvent]:
        if max_events and len(events) > max_events:
            logger.warning(f"Limiting events from {len(events)} to {max_events}")
            return events[:max_events]
        return events

    def generate_summary(
        self,
        analysis: Analysis,
        events: List[LogEvent],
        matches: List[RuleMatchResult],
    ) -> str:
        """
        Human-readable summary of a run.

        Args:
            analysis: Analysis with file metadata and score filled in
            events: Events that went through the rules
            matches: Rule matches

        Returns:
            Multi-line summary text
        """
        lines = [
            f"Analysis of {analysis.file_name} completed.",
            f"File size: {analysis.file_size} bytes",
            f"File hash: {analysis.file_hash}",
            "",
            f"Parsed {len(events)} events.",
        ]

        if matches:
            lines.append(f"Found {len(matches)} rule matches:")
            by_severity = Counter(match.severity for match in matches)
            for severity in ("critical", "high", "medium", "low"):
                if by_severity.get(severity):
                    lines.append(f"- {by_severity[severity]} {severity} severity matches")
        else:
            lines.append("No rule matches found.")

        lines.append("")
        lines.append(f"Threat score: {analysis.threat_score}/100")
        lines.append(f"Severity: {analysis.severity.upper()}")
        return "\n".join(lines)
