"""
AssetFlow - Digital asset processing pipeline

Coordinates derivative generation, colour analysis and metadata enrichment
for uploaded media, one idempotent stage at a time.
"""

__version__ = "0.1.0"
__author__ = "AssetFlow Team"

from .exceptions import (
    AssetFlowError,
    AssetNotFoundError,
    PreconditionError,
    TransientError,
    TerminalBusinessError,
    VerificationError,
    InvalidTransitionError,
    StageTimeoutError,
    AIQuotaExceededError,
    PlanLimitExceededError,
)

__all__ = [
    'AssetFlowError',
    'AssetNotFoundError',
    'PreconditionError',
    'TransientError',
    'TerminalBusinessError',
    'VerificationError',
    'InvalidTransitionError',
    'StageTimeoutError',
    'AIQuotaExceededError',
    'PlanLimitExceededError',
]
