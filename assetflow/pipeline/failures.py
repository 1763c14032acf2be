"""
Centralised failure recording for stages that exhausted their retries.

Failures are written to the entity's extended attributes and the audit log.
Asset visibility is never touched: a failed stage must not remove an asset
from listings.
"""

import re
from datetime import datetime
from typing import Optional, Union

from ..utils.logging import StructuredLogger
from .events import EventType

logger = StructuredLogger(__name__)

MAX_REASON_LENGTH = 200

NON_RETRYABLE_MARKERS = (
    'not found',
    'does not exist',
    'invalid',
    'unauthorized',
    'forbidden',
    'permission denied',
)


def is_retryable(error: Union[BaseException, str]) -> bool:
    """Errors naming a missing, invalid or forbidden resource will not heal by retrying."""
    message = str(error).lower()
    return not any(marker in message for marker in NON_RETRYABLE_MARKERS)


def _clean_message(message: str) -> str:
    message = re.sub(r'\s+', ' ', message or '').strip()
    return message or 'unknown error'


def format_failure_reason(stage: str, error: Union[BaseException, str]) -> str:
    """Human-readable ``"{stage} failed: {message}"`` capped at 200 characters."""
    message = _clean_message(str(error))
    lowered = message.lower()
    suffix = ''
    if 'timeout' in lowered or 'timed out' in lowered:
        suffix = ' (timeout)'
    elif 'connection' in lowered or 'network' in lowered:
        suffix = ' (connection error)'
    reason = f"{stage} failed: {message}"
    if len(reason) + len(suffix) > MAX_REASON_LENGTH:
        reason = reason[:MAX_REASON_LENGTH - len(suffix) - 3] + '...'
    return reason + suffix


class FailureRecorder:
    """Persists a structured failure and emits ``asset.processing.failed``."""

    def __init__(self, repository, events):
        self.repository = repository
        self.events = events

    def record_failure(self, entity, stage: str, error: Union[BaseException, str],
                       attempts: int, retryable: Optional[bool] = None) -> str:
        """
        Record a terminal stage failure.

        Returns:
            The formatted failure reason
        """
        if retryable is None:
            retryable = is_retryable(error)
        reason = format_failure_reason(stage, error)
        self.repository.merge_metadata(entity.ref, {
            'processing_failed': True,
            'failure_reason': reason,
            'failed_job': stage,
            'failure_attempts': attempts,
            'failure_is_retryable': retryable,
            'failed_at': datetime.utcnow().isoformat(),
        })
        self.events.record(entity, EventType.PROCESSING_FAILED, {
            'stage': stage,
            'reason': reason,
            'attempts': attempts,
            'retryable': retryable,
        })
        logger.error("Recorded pipeline failure", entity=str(entity.ref), stage=stage,
                     reason=reason, attempts=attempts, retryable=retryable)
        return reason
