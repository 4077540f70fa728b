"""
Evidex Progress Notifiers

Default ProgressNotifier implementations.
"""

import logging
from collections import OrderedDict, deque
from typing import Any, Deque, Dict, List, Optional

from ..utils.helpers import get_current_timestamp

logger = logging.getLogger(__name__)


class LoggingProgressNotifier:
    """Writes progress and completion notifications to the log."""

    async def send_progress(self, analysis_id: str, percent: int, message: str):
        logger.info(f"[{analysis_id}] {percent:3d}% {message}")

    async def send_completed(self, analysis_id: str, payload: Dict[str, Any]):
        logger.info(
            f"[{analysis_id}] finished with status {payload.get('status')}, "
            f"score {payload.get('threat_score')} ({payload.get('severity')})"
        )


class InMemoryProgressNotifier:
    """
    Keeps recent notifications per analysis so callers can poll them.

    Messages are stored in the same shape a push channel would send. Once
    more than max_analyses analyses are tracked, the one updated least
    recently is forgotten.
    """

    def __init__(self, max_messages: int = 100, max_analyses: int = 500):
        """
        Args:
            max_messages: Messages kept per analysis; older ones are dropped
            max_analyses: Analyses tracked at once
        """
        self.max_messages = max_messages
        self.max_analyses = max_analyses
        self._messages: "OrderedDict[str, Deque[Dict[str, Any]]]" = OrderedDict()

    async def send_progress(self, analysis_id: str, percent: int, message: str):
        self._append(analysis_id, {
            "type": "progress",
            "timestamp": get_current_timestamp().isoformat(),
            "data": {"progress": percent, "message": message},
        })

    async def send_completed(self, analysis_id: str, payload: Dict[str, Any]):
        self._append(analysis_id, {
            "type": "completed",
            "timestamp": get_current_timestamp().isoformat(),
            "data": payload,
        })

    def _append(self, analysis_id: str, message: Dict[str, Any]):
        messages = self._messages.get(analysis_id)
        if messages is None:
            messages = deque(maxlen=self.max_messages)
            self._messages[analysis_id] = messages
        else:
            self._messages.move_to_end(analysis_id)
        messages.append(message)

        while len(self._messages) > self.max_analyses:
            evicted, _ = self._messages.popitem(last=False)
            logger.debug(f"Dropped progress history of analysis {evicted}")

    def get_messages(self, analysis_id: str) -> List[Dict[str, Any]]:
        """All retained messages for an analysis, oldest first."""
        return list(self._messages.get(analysis_id, ()))

    def latest_progress(self, analysis_id: str) -> Optional[Dict[str, Any]]:
        """The most recent progress message, if any."""
        for message in reversed(self._messages.get(analysis_id, ())):
            if message["type"] == "progress":
                return message["data"]
        return None

    def tracked_analyses(self) -> List[str]:
        """Ids with retained messages, least recently updated first."""
        return list(self._messages)

    def clear(self, analysis_id: str):
        self._messages.pop(analysis_id, None)
