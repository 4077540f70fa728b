"""
Evidex Text Log Parser

Generic line-oriented parser used as the fallback for plain-text evidence.
"""

import logging
import re
from typing import List, Optional

from ..base_parser import BaseParser, LogEvent, ParseResult
from ...utils.helpers import get_current_timestamp, parse_timestamp

logger = logging.getLogger(__name__)


class TextLogParser(BaseParser):
    """
    Parses plain-text logs one line per event.

    Recognizes a leading ISO-8601 or syslog timestamp and a level keyword;
    lines without a timestamp inherit the previous event's time.
    """

    parser_id = "text_log"
    parser_name = "Text Log Parser"
    parser_description = "Parses generic line-based text logs"
    supported_extensions = [".log", ".txt", ".out", ""]

    TIMESTAMP_PATTERN = (
        r"^\[?(?P<ts>"
        r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(?:[.,]\d+)?(?:Z|[+-]\d{2}:?\d{2})?"
        r"|[A-Z][a-z]{2}\s+\d{1,2} \d{2}:\d{2}:\d{2}"
        r")\]?\s*"
    )

    LEVEL_PATTERN = r"\b(?P<level>CRITICAL|FATAL|ERROR|WARNING|WARN|INFO|DEBUG|TRACE)\b"

    # Syslog style "host program[pid]:" prefix
    SOURCE_PATTERN = r"^(?:\S+\s+)?(?P<source>[\w./-]+)(?:\[\d+\])?:\s"

    def matches(self, filename: str, content: str) -> bool:
        """Accept any non-empty text content without NUL bytes."""
        return bool(content.strip()) and "\x00" not in content

    def parse(self, filename: str, content: str) -> ParseResult:
        """Parse each non-empty line into a LogEvent."""
        if "\x00" in content:
            return ParseResult.failure("Content appears to be binary", self.parser_id)

        ts_re = self._compile_pattern("timestamp", self.TIMESTAMP_PATTERN)
        level_re = self._compile_pattern("level", self.LEVEL_PATTERN, re.IGNORECASE)
        source_re = self._compile_pattern("source", self.SOURCE_PATTERN)

        events: List[LogEvent] = []
        last_timestamp = None
        parsed_at = get_current_timestamp()

        for line_number, offset, line in self._iter_lines(content):
            timestamp = None
            body = line

            ts_match = ts_re.match(line)
            if ts_match:
                timestamp = parse_timestamp(ts_match.group("ts").replace(",", "."))
                if timestamp is None:
                    timestamp = parse_timestamp(ts_match.group("ts"))
                body = line[ts_match.end():]

            if timestamp is None:
                timestamp = last_timestamp or parsed_at
            last_timestamp = timestamp

            level_match = level_re.search(body)
            level = level_match.group("level").upper() if level_match else ""

            events.append(LogEvent(
                timestamp=timestamp,
                level=level,
                source=self._extract_source(source_re, body) or filename,
                message=body.strip(),
                line_number=line_number,
                offset=offset,
                raw_data=line,
            ))

        if not events:
            return ParseResult.failure("No log lines found", self.parser_id)

        return ParseResult.ok(events, self.parser_id)

    @staticmethod
    def _extract_source(pattern, body: str) -> Optional[str]:
        match = pattern.match(body)
        return match.group("source") if match else None
