"""
Evidex Collaborator Interfaces

Contracts the analysis pipeline consumes. Implementations live elsewhere
(storage, parsers, rules, notifier) and can be swapped in tests.
"""

from typing import Any, Dict, List, Optional, Protocol

from ..parsers.base_parser import BaseParser, LogEvent
from ..rules.models import RuleMatchResult


class Storage(Protocol):
    async def list_files(self, upload_id: str) -> List[str]: ...

    async def open_file(self, upload_id: str, file_name: str) -> bytes: ...

    async def save_result(self, analysis_id: str, result_type: str, data: Any) -> None: ...

    async def get_result(self, analysis_id: str, result_type: str) -> Optional[Any]: ...

    async def delete_result(self, analysis_id: str, result_type: str) -> bool: ...

    async def delete_analysis_directory(self, analysis_id: str) -> bool: ...


class ParserResolver(Protocol):
    def resolve(
        self,
        filename: str,
        content: str,
        preferred_id: Optional[str] = None,
    ) -> Optional[BaseParser]: ...


class RuleEngine(Protocol):
    async def process(
        self,
        analysis_id: str,
        events: List[LogEvent],
        raw_content: str,
    ) -> List[RuleMatchResult]: ...

    def reload(self) -> int: ...


class ProgressNotifier(Protocol):
    async def send_progress(self, analysis_id: str, percent: int, message: str) -> None: ...

    async def send_completed(self, analysis_id: str, payload: Dict[str, Any]) -> None: ...
