"""
Asset processing pipeline: stage list, ledger, coordinator and failure
escalation.
"""

from .stages import (
    Success, Skip, Fail, Defer, StageResult, Readiness, PreconditionResult, WaitPolicy,
    RetryPolicy, StageDescriptor
)
from .ledger import StageIdempotencyLedger, PersistentLedger, StageRecord, StageStatus
from .events import ActivityRecorder, EventType
from .failures import FailureRecorder, format_failure_reason, is_retryable
from .escalation import (
    FailureEscalationPolicy, FailureClass, Severity, DiagnosticAnalyzer, TicketSink,
    DatabaseTicketSink, classify
)
from .handlers import STAGES, STAGE_NAMES, PipelineServices, StageContext
from .coordinator import (
    PipelineCoordinator, NextStep, Dispatcher, InlineDispatcher, ThumbnailRetryService,
    build_coordinator, build_services
)

__all__ = [
    'Success', 'Skip', 'Fail', 'Defer', 'StageResult', 'Readiness', 'PreconditionResult',
    'WaitPolicy', 'RetryPolicy', 'StageDescriptor',
    'StageIdempotencyLedger', 'PersistentLedger', 'StageRecord', 'StageStatus',
    'ActivityRecorder', 'EventType',
    'FailureRecorder', 'format_failure_reason', 'is_retryable',
    'FailureEscalationPolicy', 'FailureClass', 'Severity', 'DiagnosticAnalyzer', 'TicketSink',
    'DatabaseTicketSink', 'classify',
    'STAGES', 'STAGE_NAMES', 'PipelineServices', 'StageContext',
    'PipelineCoordinator', 'NextStep', 'Dispatcher', 'InlineDispatcher',
    'ThumbnailRetryService', 'build_coordinator', 'build_services',
]
