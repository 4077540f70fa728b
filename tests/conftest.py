"""
Shared fixtures for Evidex tests.
"""

from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pytest

from evidex.parsers import create_default_registry
from evidex.parsers.base_parser import LogEvent
from evidex.rules import MatchDetail, PatternRuleEngine, RuleMatchResult


RULES_PATH = Path(__file__).parent.parent / "rules" / "pattern_rules"

AUTH_LOG = (
    "Jan 15 10:00:01 web01 sshd[1001]: Failed password for root from 10.0.0.5 port 4242 ssh2\n"
    "Jan 15 10:00:03 web01 sshd[1001]: Failed password for root from 10.0.0.5 port 4243 ssh2\n"
    "Jan 15 10:00:05 web01 sshd[1001]: Failed password for invalid user admin from 10.0.0.5 port 4244 ssh2\n"
    "Jan 15 10:01:00 web01 sudo: bob : TTY=pts/0 ; PWD=/home/bob ; USER=root ; COMMAND=/bin/cat /etc/shadow\n"
    "Jan 15 10:02:00 web01 kernel: ERROR disk quota exceeded\n"
)


class FakeStorage:
    """In-memory Storage."""

    def __init__(self, files: Optional[Dict[str, Dict[str, bytes]]] = None):
        self.files = files or {}
        self.results: Dict[Tuple[str, str], Any] = {}
        self.save_calls: List[Tuple[str, str]] = []

    async def list_files(self, upload_id: str) -> List[str]:
        return sorted(self.files.get(upload_id, {}))

    async def open_file(self, upload_id: str, file_name: str) -> bytes:
        return self.files[upload_id][file_name]

    async def save_result(self, analysis_id: str, result_type: str, data: Any):
        self.save_calls.append((analysis_id, result_type))
        self.results[(analysis_id, result_type)] = data

    async def get_result(self, analysis_id: str, result_type: str) -> Optional[Any]:
        return self.results.get((analysis_id, result_type))

    async def delete_result(self, analysis_id: str, result_type: str) -> bool:
        return self.results.pop((analysis_id, result_type), None) is not None

    async def delete_analysis_directory(self, analysis_id: str) -> bool:
        keys = [key for key in self.results if key[0] == analysis_id]
        for key in keys:
            del self.results[key]
        return bool(keys)


class RecordingNotifier:
    """Notifier that records calls and can run a hook on a progress message."""

    def __init__(self):
        self.progress: List[Tuple[str, int, str]] = []
        self.completed: List[Tuple[str, Dict[str, Any]]] = []
        self.hooks = {}

    def on_message(self, message: str, hook):
        self.hooks[message] = hook

    async def send_progress(self, analysis_id: str, percent: int, message: str):
        self.progress.append((analysis_id, percent, message))
        hook = self.hooks.pop(message, None)
        if hook is not None:
            await hook(analysis_id)

    async def send_completed(self, analysis_id: str, payload: Dict[str, Any]):
        self.completed.append((analysis_id, payload))


class FailingNotifier:
    """Notifier whose channel is down."""

    async def send_progress(self, analysis_id: str, percent: int, message: str):
        raise ConnectionError("notification channel unavailable")

    async def send_completed(self, analysis_id: str, payload: Dict[str, Any]):
        raise ConnectionError("notification channel unavailable")


class ExplodingRuleEngine:
    async def process(self, analysis_id, events, raw_content):
        raise RuntimeError("rule backend crashed")

    def reload(self) -> int:
        return 0


def make_match(
    rule_name: str = "Test Rule",
    severity: str = "medium",
    confidence: float = 1.0,
    match_count: int = 1,
    techniques: Optional[List[str]] = None,
    content: str = "suspicious content",
    context: str = "",
    timestamp: Optional[datetime] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> RuleMatchResult:
    details = [
        MatchDetail(
            matched_content=content,
            line_number=i + 1,
            context=context,
            timestamp=timestamp,
            confidence=confidence,
        )
        for i in range(match_count)
    ]
    return RuleMatchResult(
        rule_id=rule_name.lower().replace(" ", "-"),
        rule_name=rule_name,
        severity=severity,
        match_count=match_count,
        confidence=confidence,
        matches=details,
        mitre_attack_ids=techniques or [],
        metadata=metadata or {},
    )


def make_event(
    message: str,
    level: str = "INFO",
    hour: int = 10,
    minute: int = 0,
    source: str = "app",
    line_number: int = 1,
) -> LogEvent:
    return LogEvent(
        timestamp=datetime(2024, 1, 15, hour, minute, tzinfo=timezone.utc),
        level=level,
        source=source,
        message=message,
        line_number=line_number,
        raw_data=message,
    )


@pytest.fixture
def rule_engine():
    engine = PatternRuleEngine(str(RULES_PATH))
    engine.reload()
    return engine


@pytest.fixture
def parsers():
    return create_default_registry()


@pytest.fixture
def storage():
    return FakeStorage({"upload-1": {"auth.log": AUTH_LOG.encode("utf-8")}})


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def sample_events():
    return [
        make_event("Service started", level="INFO", hour=9, line_number=1),
        make_event("Disk usage high", level="WARNING", hour=10, line_number=2),
        make_event("Write failed", level="ERROR", hour=10, minute=30, line_number=3),
    ]


@pytest.fixture
def sample_matches():
    return [
        make_match("Brute Force", severity="high", confidence=0.8, match_count=3, techniques=["T1110.001"]),
        make_match("Shadow Read", severity="medium", confidence=0.7, techniques=["T1003.008"]),
    ]


