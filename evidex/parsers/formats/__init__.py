"""
Evidex Format Parsers
"""

from .json_lines import JSONLinesParser
from .text_log import TextLogParser

__all__ = [
    "JSONLinesParser",
    "TextLogParser",
]
