"""Evidex analysis pipeline."""

from .cancellation import AnalysisCancelled, CancellationToken
from .mitre import MitreMapper, ReferenceData, load_reference_data
from .models import (
    Analysis,
    AnalysisFinalizedError,
    AnalysisOptions,
    AnalysisOutcome,
    AnalysisStatus,
    ErrorKind,
    InvalidStatusTransition,
    MitreMappingResult,
    TimelineEvent,
    TimelineStatistics,
)
from .notifier import InMemoryProgressNotifier, LoggingProgressNotifier
from .orchestrator import AnalysisOrchestrator, RESULT_ANALYSIS, RESULT_EVENTS
from .scorer import ThreatScorer
from .timeline import TimelineBuilder

__all__ = [
    "AnalysisCancelled",
    "CancellationToken",
    "MitreMapper",
    "ReferenceData",
    "load_reference_data",
    "Analysis",
    "AnalysisFinalizedError",
    "AnalysisOptions",
    "AnalysisOutcome",
    "AnalysisStatus",
    "ErrorKind",
    "InvalidStatusTransition",
    "MitreMappingResult",
    "TimelineEvent",
    "TimelineStatistics",
    "InMemoryProgressNotifier",
    "LoggingProgressNotifier",
    "AnalysisOrchestrator",
    "RESULT_ANALYSIS",
    "RESULT_EVENTS",
    "ThreatScorer",
    "TimelineBuilder",
]
