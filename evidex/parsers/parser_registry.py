"""
Evidex Parser Registry

Priority-ordered parser registration and selection.
"""

import logging
from typing import Dict, List, Optional, Tuple

from .base_parser import BaseParser

logger = logging.getLogger(__name__)


class ParserRegistry:
    """
    Registry for evidence parsers.

    Manages parser registration and resolves the parser for an uploaded file.
    """

    def __init__(self):
        """Initialize parser registry."""
        self._parsers: Dict[str, BaseParser] = {}
        self._priority_order: List[Tuple[int, str]] = []

    def register(self, parser: BaseParser, priority: int = 100):
        """
        Register a parser.

        Args:
            parser: Parser instance to register
            priority: Lower number = higher priority for auto-detection
        """
        parser_id = parser.parser_id
        if parser_id in self._parsers:
            self.unregister(parser_id)

        self._parsers[parser_id] = parser

        # Stable insert: equal priorities keep registration order
        index = len(self._priority_order)
        for i, (existing_priority, _) in enumerate(self._priority_order):
            if priority < existing_priority:
                index = i
                break
        self._priority_order.insert(index, (priority, parser_id))

        logger.info(f"Registered parser: {parser_id} ({parser.parser_name}), priority {priority}")

    def unregister(self, parser_id: str):
        """
        Unregister a parser.

        Args:
            parser_id: ID of parser to remove
        """
        if parser_id in self._parsers:
            del self._parsers[parser_id]
            self._priority_order = [p for p in self._priority_order if p[1] != parser_id]
            logger.info(f"Unregistered parser: {parser_id}")

    def get_parser(self, parser_id: str) -> Optional[BaseParser]:
        """Get parser by ID."""
        return self._parsers.get(parser_id)

    def list_parsers(self) -> List[Dict[str, object]]:
        """
        List all registered parsers in priority order.

        Returns:
            List of parser info dictionaries
        """
        return [
            {
                "id": self._parsers[pid].parser_id,
                "name": self._parsers[pid].parser_name,
                "description": self._parsers[pid].parser_description,
                "extensions": self._parsers[pid].supported_extensions,
                "priority": priority,
            }
            for priority, pid in self._priority_order
        ]

    def resolve(
        self,
        filename: str,
        content: str,
        preferred_id: Optional[str] = None,
    ) -> Optional[BaseParser]:
        """
        Select the parser for a file.

        The preferred parser wins when it accepts the content. Otherwise
        parsers declaring the file's extension are tried first, then the
        rest, each group in priority order.

        Args:
            filename: Original file name
            content: Decoded file content
            preferred_id: Optional parser ID requested by the caller

        Returns:
            Matching parser or None
        """
        if preferred_id:
            preferred = self.get_parser(preferred_id)
            if preferred is None:
                logger.warning(f"Preferred parser not found: {preferred_id}")
            elif preferred.matches(filename, content):
                logger.info(f"Using preferred parser {preferred_id} for {filename}")
                return preferred

        ordered = [self._parsers[pid] for _, pid in self._priority_order]
        by_extension = [p for p in ordered if p.has_supported_extension(filename)]
        others = [p for p in ordered if not p.has_supported_extension(filename)]

        for parser in by_extension + others:
            if parser.matches(filename, content):
                logger.info(f"Selected parser {parser.parser_id} for {filename}")
                return parser

        logger.warning(f"No suitable parser found for {filename}")
        return None


def create_default_registry(max_line_length: int = 65536) -> ParserRegistry:
    """A new registry holding the default parsers."""
    registry = ParserRegistry()
    _register_default_parsers(registry, max_line_length)
    return registry


def _register_default_parsers(registry: ParserRegistry, max_line_length: int):
    """Register default parsers."""
    from .formats.json_lines import JSONLinesParser
    from .formats.text_log import TextLogParser

    registry.register(JSONLinesParser(max_line_length=max_line_length), priority=20)
    registry.register(TextLogParser(max_line_length=max_line_length), priority=90)
