"""
Evidex Cancellation

Cooperative cancellation signal threaded through an analysis run.
"""

import time
from typing import Optional


class AnalysisCancelled(Exception):
    """Raised inside a phase when its cancellation token has fired."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Analysis {reason}")
        self.reason = reason


class CancellationToken:
    """
    Flag checked between phases and inside per-item loops.

    A token fires either when cancel() is called or, if a timeout was
    given, once the deadline passes.
    """

    def __init__(self, timeout: Optional[float] = None):
        """
        Args:
            timeout: Seconds until the token fires on its own; None or 0 disables it
        """
        self._cancelled = False
        self._reason = "cancelled"
        self._deadline = time.monotonic() + timeout if timeout else None

    def cancel(self):
        """Request cancellation."""
        self._cancelled = True

    @property
    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._cancelled = True
            self._reason = "timed out"
        return self._cancelled

    @property
    def reason(self) -> str:
        """'cancelled' or 'timed out'."""
        return self._reason

    @property
    def timed_out(self) -> bool:
        return self.is_cancelled and self._reason == "timed out"

    def raise_if_cancelled(self):
        """Raise AnalysisCancelled if the token has fired."""
        if self.is_cancelled:
            raise AnalysisCancelled(self._reason)


def check_cancelled(token: Optional[CancellationToken]):
    """raise_if_cancelled() for an optional token."""
    if token is not None:
        token.raise_if_cancelled()
