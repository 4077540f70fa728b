"""
Evidex Analysis Models

The Analysis aggregate and the result structures attached to it by each phase.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..rules.models import RuleMatchResult
from ..utils.helpers import generate_uuid, get_current_timestamp
from ..utils.values import FieldValue


class AnalysisStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    AnalysisStatus.COMPLETED,
    AnalysisStatus.FAILED,
    AnalysisStatus.CANCELLED,
})

_ALLOWED_TRANSITIONS = {
    AnalysisStatus.PENDING: {
        AnalysisStatus.PROCESSING,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    },
    AnalysisStatus.PROCESSING: {
        AnalysisStatus.COMPLETED,
        AnalysisStatus.FAILED,
        AnalysisStatus.CANCELLED,
    },
}


class ErrorKind(str, Enum):
    """Why an analysis did not complete."""
    NOT_FOUND = "not_found"
    UNSUPPORTED_FORMAT = "unsupported_format"
    PARSE_FAILURE = "parse_failure"
    RULE_ENGINE_FAILURE = "rule_engine_failure"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    INTERNAL = "internal"


class InvalidStatusTransition(Exception):
    """Raised when a status change would move an analysis backwards."""


class AnalysisFinalizedError(Exception):
    """Raised when a finalized analysis is modified."""


# MITRE ATT&CK mapping results

class SubTechnique(BaseModel):
    id: str
    name: str
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    match_count: int = 0
    evidence: List[str] = Field(default_factory=list)


class Technique(BaseModel):
    id: str
    name: str
    description: str = ""
    tactics: List[str] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    match_count: int = 0
    evidence: List[str] = Field(default_factory=list)
    sub_techniques: List[SubTechnique] = Field(default_factory=list)


class Tactic(BaseModel):
    id: str
    name: str
    technique_ids: List[str] = Field(default_factory=list)
    technique_count: int = 0
    coverage: float = Field(default=0.0, ge=0.0, le=1.0)


class MitreStatistics(BaseModel):
    total_techniques: int = 0
    total_tactics: int = 0
    total_sub_techniques: int = 0
    techniques_by_tactic: Dict[str, int] = Field(default_factory=dict)
    confidence_by_tactic: Dict[str, float] = Field(default_factory=dict)
    most_common_techniques: List[str] = Field(default_factory=list)
    high_confidence_techniques: List[str] = Field(default_factory=list)
    overall_threat_score: float = Field(default=0.0, ge=0.0, le=100.0)


class MitreMappingResult(BaseModel):
    techniques: List[Technique] = Field(default_factory=list)
    tactics: List[Tactic] = Field(default_factory=list)
    kill_chain_phases: List[str] = Field(default_factory=list)
    technique_frequency: Dict[str, int] = Field(default_factory=dict)
    tactic_frequency: Dict[str, int] = Field(default_factory=dict)
    statistics: MitreStatistics = Field(default_factory=MitreStatistics)


# Timeline results

class TimelineEvent(BaseModel):
    """One chronologically placed record derived from a log line or a rule match."""
    id: str = Field(default_factory=generate_uuid)
    timestamp: datetime
    event_type: str  # log_event, rule_match
    title: str = ""
    description: str = ""
    severity: str = "info"
    source: str = ""
    category: str = ""
    details: Dict[str, FieldValue] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    mitre_attack_ids: List[str] = Field(default_factory=list)
    line_number: Optional[int] = None
    file_offset: Optional[int] = None
    raw_data: Optional[str] = None
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)
    is_anomalous: bool = False


class TimelineStatistics(BaseModel):
    total_events: int = 0
    first_event: Optional[datetime] = None
    last_event: Optional[datetime] = None
    time_range: timedelta = timedelta(0)
    events_by_type: Dict[str, int] = Field(default_factory=dict)
    events_by_severity: Dict[str, int] = Field(default_factory=dict)
    events_by_source: Dict[str, int] = Field(default_factory=dict)
    events_by_category: Dict[str, int] = Field(default_factory=dict)
    # Keyed by the ISO timestamp of the hour bucket
    events_by_hour: Dict[str, int] = Field(default_factory=dict)
    top_tags: List[str] = Field(default_factory=list)
    anomalous_events: int = 0


# Aggregate root

class AnalysisOptions(BaseModel):
    """Caller options for one analysis run."""
    preferred_parser_id: Optional[str] = None
    map_to_mitre: bool = True
    generate_timeline: bool = True
    max_events: int = Field(default=100000, ge=0)  # 0 = unlimited
    timeout_seconds: float = Field(default=1800.0, ge=0)  # 0 = no timeout


class Analysis(BaseModel):
    """
    Aggregate root for one evidence analysis.

    Created once when a run starts, filled in by each phase, and frozen
    once its status reaches completed, failed or cancelled.
    """
    id: str = Field(default_factory=generate_uuid)
    upload_id: str = ""

    # File metadata
    file_name: str = ""
    file_size: int = 0
    file_type: str = ""
    file_hash: str = ""
    parser_id: Optional[str] = None

    # Lifecycle
    status: AnalysisStatus = AnalysisStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    upload_time: datetime = Field(default_factory=get_current_timestamp)
    start_time: Optional[datetime] = None
    completion_time: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None

    # Results
    threat_score: int = Field(default=0, ge=0, le=100)
    severity: str = "low"
    summary: Optional[str] = None
    event_count: int = 0
    rule_matches: List[RuleMatchResult] = Field(default_factory=list)
    timeline: List[TimelineEvent] = Field(default_factory=list)
    timeline_statistics: Optional[TimelineStatistics] = None
    mitre: Optional[MitreMappingResult] = None

    def __setattr__(self, name: str, value: Any):
        if self.is_finalized:
            raise AnalysisFinalizedError(
                f"Analysis {self.id} is {self.status.value} and can no longer be modified"
            )
        super().__setattr__(name, value)

    @property
    def is_finalized(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def duration(self) -> Optional[timedelta]:
        if self.start_time and self.completion_time:
            return self.completion_time - self.start_time
        return None

    def transition_to(self, status: AnalysisStatus):
        """
        Move to a non-terminal status.

        Raises:
            InvalidStatusTransition: If the move is not forward
        """
        self._check_transition(status)
        if status in TERMINAL_STATUSES:
            raise InvalidStatusTransition(f"Use finalize() to enter {status.value}")
        self.status = status

    def finalize(
        self,
        status: AnalysisStatus,
        error_kind: Optional[ErrorKind] = None,
        error_message: Optional[str] = None,
    ):
        """
        Enter a terminal status, stamping the completion time.

        Raises:
            InvalidStatusTransition: If the analysis is already terminal
        """
        self._check_transition(status)
        if status not in TERMINAL_STATUSES:
            raise InvalidStatusTransition(f"{status.value} is not a terminal status")
        self.completion_time = get_current_timestamp()
        if error_kind is not None:
            self.error_kind = error_kind
        if error_message is not None:
            self.error_message = error_message
        if status == AnalysisStatus.COMPLETED:
            self.progress = 100
        # Status last: assignments are rejected once it is terminal
        self.status = status

    def _check_transition(self, status: AnalysisStatus):
        allowed = _ALLOWED_TRANSITIONS.get(self.status, set())
        if status not in allowed:
            raise InvalidStatusTransition(
                f"Cannot move analysis {self.id} from {self.status.value} to {status.value}"
            )

    def completion_payload(self) -> Dict[str, Any]:
        """Payload pushed to the notifier when a run finishes."""
        return {
            "analysis_id": self.id,
            "file_name": self.file_name,
            "file_hash": self.file_hash,
            "status": self.status.value,
            "threat_score": self.threat_score,
            "severity": self.severity,
            "completion_time": self.completion_time.isoformat() if self.completion_time else None,
            "rule_matches": len(self.rule_matches),
        }


@dataclass
class AnalysisOutcome:
    """
    Result of one orchestrator run.

    error_kind is None when the analysis completed.
    """
    analysis: Analysis
    error_kind: Optional[ErrorKind] = None
    persisted: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None

    @property
    def message(self) -> Optional[str]:
        return self.analysis.error_message
