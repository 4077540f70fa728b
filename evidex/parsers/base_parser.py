"""
Evidex Base Parser

Abstract base class for evidence parsers and the LogEvent they produce.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import PurePath
from typing import Any, Dict, List, Optional, Pattern
import re

from ..utils.values import FieldValue, check_field_map, to_json_value


@dataclass(frozen=True)
class LogEvent:
    """
    Single event extracted from an evidence file.

    Immutable once produced by a parser.
    """
    timestamp: datetime
    level: str = ""
    source: str = ""
    message: str = ""
    line_number: Optional[int] = None
    offset: Optional[int] = None
    raw_data: str = ""

    # Ordered parser-specific fields
    fields: Dict[str, FieldValue] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "fields", check_field_map(self.fields, "LogEvent.fields"))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "source": self.source,
            "message": self.message,
            "line_number": self.line_number,
            "offset": self.offset,
            "raw_data": self.raw_data,
            "fields": {k: to_json_value(v) for k, v in self.fields.items()},
        }


@dataclass
class ParseResult:
    """Outcome of running a parser over a whole file."""
    success: bool
    events: List[LogEvent] = field(default_factory=list)
    error_message: Optional[str] = None
    parser_id: str = ""
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(cls, events: List[LogEvent], parser_id: str) -> "ParseResult":
        return cls(success=True, events=events, parser_id=parser_id)

    @classmethod
    def failure(cls, error_message: str, parser_id: str) -> "ParseResult":
        return cls(success=False, error_message=error_message, parser_id=parser_id)


class BaseParser(ABC):
    """
    Abstract base class for evidence parsers.

    All parser implementations must inherit from this class and implement
    the required methods.
    """

    # Parser identification
    parser_id: str = "base"
    parser_name: str = "Base Parser"
    parser_description: str = "Base parser class"

    # File extensions this parser prefers, e.g. [".log", ".txt"]
    supported_extensions: List[str] = []

    def __init__(self, max_line_length: int = 65536):
        """
        Initialize parser.

        Args:
            max_line_length: Lines longer than this are truncated before parsing
        """
        self.max_line_length = max_line_length
        self._compiled_patterns: Dict[str, Pattern] = {}

    @abstractmethod
    def matches(self, filename: str, content: str) -> bool:
        """
        Check if this parser can handle the given file.

        Args:
            filename: Original file name
            content: Decoded file content

        Returns:
            True if this parser can handle the file
        """
        pass

    @abstractmethod
    def parse(self, filename: str, content: str) -> ParseResult:
        """
        Parse a whole file into LogEvents.

        Args:
            filename: Original file name
            content: Decoded file content

        Returns:
            ParseResult with events, or a failure carrying an error message
        """
        pass

    def has_supported_extension(self, filename: str) -> bool:
        """Check the file extension against supported_extensions."""
        suffix = PurePath(filename).suffix.lower()
        return suffix in self.supported_extensions

    def _iter_lines(self, content: str):
        """Yield (line_number, offset, line) for non-empty lines."""
        offset = 0
        for line_number, line in enumerate(content.splitlines(keepends=True), start=1):
            stripped = line.rstrip("\r\n")
            if stripped.strip():
                yield line_number, offset, stripped[: self.max_line_length]
            offset += len(line.encode("utf-8"))

    def _compile_pattern(self, name: str, pattern: str, flags: int = 0) -> Pattern:
        """
        Compile and cache a regex pattern.

        Args:
            name: Pattern name for caching
            pattern: Regex pattern string
            flags: Regex flags

        Returns:
            Compiled pattern
        """
        if name not in self._compiled_patterns:
            self._compiled_patterns[name] = re.compile(pattern, flags)
        return self._compiled_patterns[name]
