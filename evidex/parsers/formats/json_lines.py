"""
Evidex JSON Lines Parser

Parses newline-delimited JSON evidence files.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from ..base_parser import BaseParser, LogEvent, ParseResult
from ...utils.helpers import ensure_utc, get_current_timestamp, parse_timestamp
from ...utils.values import FieldValue

logger = logging.getLogger(__name__)


class JSONLinesParser(BaseParser):
    """
    Parser for JSON and JSON-lines logs.

    Maps common JSON field names onto LogEvent attributes and flattens
    the remaining keys into the event field map.
    """

    parser_id = "json_lines"
    parser_name = "JSON Lines Parser"
    parser_description = "Parses newline-delimited JSON log records"
    supported_extensions = [".json", ".jsonl", ".ndjson"]

    # Common field name mappings
    TIMESTAMP_FIELDS = [
        "@timestamp", "timestamp", "time", "datetime", "date",
        "eventTime", "event_time", "created", "logged_at"
    ]

    MESSAGE_FIELDS = [
        "message", "msg", "log", "text", "description"
    ]

    LEVEL_FIELDS = [
        "level", "severity", "log_level", "loglevel"
    ]

    SOURCE_FIELDS = [
        "source", "logger", "host", "hostname", "provider", "channel"
    ]

    def matches(self, filename: str, content: str) -> bool:
        """Check the first non-empty line for a JSON object."""
        for line in content.splitlines():
            line = line.strip()
            if not line:
                continue
            if not (line.startswith("{") and line.endswith("}")):
                return False
            try:
                return isinstance(json.loads(line), dict)
            except json.JSONDecodeError:
                return False
        return False

    def parse(self, filename: str, content: str) -> ParseResult:
        """Parse every JSON object line into a LogEvent."""
        events: List[LogEvent] = []
        warnings: List[str] = []
        parsed_at = get_current_timestamp()

        for line_number, offset, line in self._iter_lines(content):
            try:
                data = json.loads(line)
            except json.JSONDecodeError as e:
                warnings.append(f"Line {line_number}: invalid JSON ({e.msg})")
                continue

            if not isinstance(data, dict):
                warnings.append(f"Line {line_number}: not a JSON object")
                continue

            events.append(LogEvent(
                timestamp=self._extract_timestamp(data) or parsed_at,
                level=self._extract_field(data, self.LEVEL_FIELDS) or "",
                source=self._extract_field(data, self.SOURCE_FIELDS) or filename,
                message=self._extract_field(data, self.MESSAGE_FIELDS) or line,
                line_number=line_number,
                offset=offset,
                raw_data=line,
                fields=self._flatten(data),
            ))

        if not events:
            detail = warnings[0] if warnings else "file is empty"
            return ParseResult.failure(f"No valid JSON records found: {detail}", self.parser_id)

        if warnings:
            logger.debug(f"{filename}: skipped {len(warnings)} invalid JSON lines")

        result = ParseResult.ok(events, self.parser_id)
        result.warnings = warnings
        return result

    def _extract_timestamp(self, data: Dict[str, Any]) -> Optional[datetime]:
        """Extract timestamp from data."""
        for name in self.TIMESTAMP_FIELDS:
            if name not in data:
                continue
            ts = data[name]
            if isinstance(ts, str):
                try:
                    return ensure_utc(datetime.fromisoformat(ts.replace("Z", "+00:00")))
                except ValueError:
                    parsed = parse_timestamp(ts)
                    if parsed:
                        return parsed
            elif isinstance(ts, (int, float)) and not isinstance(ts, bool):
                # Unix timestamp
                if ts > 1e12:  # Milliseconds
                    ts = ts / 1000
                try:
                    return datetime.fromtimestamp(ts, tz=timezone.utc)
                except (ValueError, OSError, OverflowError):
                    continue
        return None

    def _extract_field(self, data: Dict[str, Any], field_names: list) -> Optional[str]:
        """Extract field by trying multiple possible names."""
        for name in field_names:
            if name in data:
                value = data[name]
                if isinstance(value, str):
                    return value
                elif isinstance(value, dict):
                    for subfield in ["name", "value", "id"]:
                        if subfield in value:
                            return str(value[subfield])
                elif value is not None:
                    return str(value)
        return None

    def _flatten(self, data: Dict[str, Any], prefix: str = "") -> Dict[str, FieldValue]:
        """Flatten nested objects with dot notation, serializing lists."""
        flat: Dict[str, FieldValue] = {}
        for key, value in data.items():
            name = f"{prefix}{key}"
            if isinstance(value, dict):
                flat.update(self._flatten(value, f"{name}."))
            elif isinstance(value, (str, bool, int, float)):
                flat[name] = value
            elif value is not None:
                flat[name] = json.dumps(value, default=str)
        return flat
