"""
Evidex Parsers Package

Evidence parsing into LogEvents.
"""

from .base_parser import BaseParser, LogEvent, ParseResult
from .parser_registry import ParserRegistry, create_default_registry

__all__ = [
    "BaseParser",
    "LogEvent",
    "ParseResult",
    "ParserRegistry",
    "create_default_registry",
]
