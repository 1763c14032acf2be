"""
Derivative status state machine.

    PENDING -> PROCESSING -> COMPLETED | FAILED | SKIPPED
    FAILED  -> PROCESSING   (retry)
    FAILED  -> PENDING      (manual reset)

COMPLETED is reachable only through ``complete()`` with a verification
report in which every artifact passed.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from ...db.models import DerivativeStatus
from ...exceptions import InvalidTransitionError
from .verification import VerificationReport

TRANSITIONS = {
    DerivativeStatus.PENDING: {DerivativeStatus.PROCESSING},
    DerivativeStatus.PROCESSING: {DerivativeStatus.COMPLETED, DerivativeStatus.FAILED,
                                  DerivativeStatus.SKIPPED},
    DerivativeStatus.FAILED: {DerivativeStatus.PROCESSING, DerivativeStatus.PENDING},
    DerivativeStatus.COMPLETED: set(),
    DerivativeStatus.SKIPPED: set(),
}


class DerivativeStateMachine:
    """
    Tracks one derivative's status and renders it as column updates.

    Args:
        column: Column prefix on the asset/version row ('thumbnail', 'preview',
            'video_preview')
        status: Current persisted status (None is treated as PENDING)
        track_started_at: Whether the row has a ``{column}_started_at`` column
    """

    def __init__(self, column: str, status: Optional[DerivativeStatus] = None,
                 track_started_at: bool = False):
        self.column = column
        self.status = status or DerivativeStatus.PENDING
        self.track_started_at = track_started_at
        self.started_at: Optional[datetime] = None
        self.error: Optional[str] = None

    def _move(self, target: DerivativeStatus) -> None:
        if target not in TRANSITIONS[self.status]:
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target

    def start(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        self._move(DerivativeStatus.PROCESSING)
        self.started_at = now or datetime.utcnow()
        self.error = None
        return self.fields()

    def skip(self, reason: str) -> Dict[str, Any]:
        self._move(DerivativeStatus.SKIPPED)
        self.started_at = None
        self.error = reason
        return self.fields()

    def complete(self, report: VerificationReport) -> Dict[str, Any]:
        """COMPLETED if every artifact verified, otherwise FAILED with the reason."""
        if not report.ok:
            return self.fail(report.error_message)
        self._move(DerivativeStatus.COMPLETED)
        self.started_at = None
        self.error = None
        return self.fields()

    def fail(self, error: str) -> Dict[str, Any]:
        self._move(DerivativeStatus.FAILED)
        self.started_at = None
        self.error = error
        return self.fields()

    def reset(self) -> Dict[str, Any]:
        self._move(DerivativeStatus.PENDING)
        self.started_at = None
        self.error = None
        return self.fields()

    def fields(self) -> Dict[str, Any]:
        values = {
            f'{self.column}_status': self.status,
            f'{self.column}_error': self.error,
        }
        if self.track_started_at:
            values[f'{self.column}_started_at'] = self.started_at
        return values
