"""
Failure escalation: classify exhausted stage failures and decide whether to
run diagnostics and open a human-facing ticket.

``FailureEscalationPolicy.decide`` is a pure function. The policy never
retries anything and never blocks the pipeline: analyzer and ticket sink
errors are logged and dropped.
"""

import hashlib
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Union

from botocore.exceptions import ClientError, EndpointConnectionError

from ..db.models import SupportTicket, TicketStatus
from ..exceptions import StageTimeoutError
from ..storage import StorageError, StorageNotFoundError, StoragePermissionError
from ..utils.logging import StructuredLogger

logger = logging.getLogger(__name__)
decision_log = StructuredLogger(__name__)


class FailureClass(Enum):
    TIMEOUT = "timeout"
    STORAGE_READ_ERROR = "storage_read_error"
    PERMISSION_ERROR = "permission_error"
    RESOURCE_EXHAUSTION = "resource_exhaustion"
    UNKNOWN = "unknown"


class Severity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_TIMEOUT_CODES = {'RequestTimeout', 'ServiceUnavailable', 'SlowDown', '408', '503', '504'}
_PERMISSION_CODES = {'AccessDenied', '403'}
_STORAGE_CODES = {'NoSuchKey', 'NoSuchBucket', '404', '500', '502', 'InternalError'}

_RESOURCE_MARKERS = ('out of memory', 'memoryerror', 'cannot allocate', 'no space left',
                     'disk full', 'too many open files', 'resource exhausted',
                     'decompression bomb')
_PERMISSION_MARKERS = ('permission', 'access denied', 'forbidden', 'unauthorized')
_STORAGE_MARKERS = ('nosuchkey', 'not found', 'storage', 'cannot identify image',
                    'truncated', 'could not read', 'no decodable frames', 'database', 'sql',
                    'connection', 'network')


def _client_error_code(error: BaseException) -> Optional[str]:
    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        status = error.response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        return str(details.get('Code') or status or '')
    return None


def classify(error: Union[BaseException, str, None]) -> FailureClass:
    """Classify an exception (or bare message) into the failure taxonomy."""
    if isinstance(error, BaseException):
        if isinstance(error, (StageTimeoutError, TimeoutError)):
            return FailureClass.TIMEOUT
        if isinstance(error, MemoryError):
            return FailureClass.RESOURCE_EXHAUSTION
        if isinstance(error, (StoragePermissionError, PermissionError)):
            return FailureClass.PERMISSION_ERROR
        code = _client_error_code(error)
        if code in _TIMEOUT_CODES:
            return FailureClass.TIMEOUT
        if code in _PERMISSION_CODES:
            return FailureClass.PERMISSION_ERROR
        if code in _STORAGE_CODES:
            return FailureClass.STORAGE_READ_ERROR
        if isinstance(error, (StorageNotFoundError, StorageError, FileNotFoundError,
                              EndpointConnectionError)):
            return FailureClass.STORAGE_READ_ERROR

    message = str(error or '').lower()
    if any(marker in message for marker in ('timeout', 'timed out', 'timelimit')):
        return FailureClass.TIMEOUT
    if any(marker in message for marker in _RESOURCE_MARKERS):
        return FailureClass.RESOURCE_EXHAUSTION
    if any(marker in message for marker in _PERMISSION_MARKERS):
        return FailureClass.PERMISSION_ERROR
    if any(marker in message for marker in _STORAGE_MARKERS):
        return FailureClass.STORAGE_READ_ERROR
    return FailureClass.UNKNOWN


@dataclass(frozen=True)
class Diagnostic:
    severity: Severity
    summary: str


@dataclass
class EscalationDecision:
    classification: FailureClass
    run_diagnostics: bool
    create_ticket: bool
    diagnostic: Optional[Diagnostic] = None
    ticket_id: Optional[int] = None


class DiagnosticAnalyzer:
    """Rule-based severity assessment of an exhausted stage failure."""

    def analyze(self, entity, stage: str, classification: FailureClass,
                failure_count: int, error_message: str, critical_stage: bool = False) -> Diagnostic:
        if classification == FailureClass.RESOURCE_EXHAUSTION:
            severity = Severity.CRITICAL if failure_count >= 3 else Severity.HIGH
        elif classification == FailureClass.PERMISSION_ERROR:
            severity = Severity.HIGH
        elif classification == FailureClass.TIMEOUT:
            severity = Severity.HIGH if failure_count >= 3 else Severity.MEDIUM
        elif classification == FailureClass.STORAGE_READ_ERROR:
            severity = Severity.HIGH if critical_stage else Severity.MEDIUM
        else:
            severity = Severity.MEDIUM if failure_count >= 3 else Severity.LOW

        summary = (
            f"Stage '{stage}' failed {failure_count} time(s) for asset {entity.asset_id} "
            f"(tenant {entity.tenant_id}). Classification: {classification.value}. "
            f"Severity: {severity.value}. Last error: {error_message}"
        )
        return Diagnostic(severity=severity, summary=summary)


class TicketSink(ABC):
    @abstractmethod
    def create_ticket_if_needed(self, entity, diagnostic_text: str, stage: str = '',
                                classification: str = '',
                                severity: str = '') -> Optional[int]:
        """Open a ticket unless one already covers this failure. Returns its id if created."""
        pass


class DatabaseTicketSink(TicketSink):
    """
    Stores tickets in ``support_tickets``.

    One open ticket per (tenant, asset, stage, classification) fingerprint,
    and at most ``tickets_per_hour`` new tickets across the system.
    """

    def __init__(self, session_scope, tickets_per_hour: int = 50):
        self.session_scope = session_scope
        self.tickets_per_hour = tickets_per_hour

    @staticmethod
    def fingerprint(entity, stage: str, classification: str) -> str:
        raw = f"{entity.tenant_id}|{entity.asset_id}|{stage}|{classification}"
        return hashlib.sha256(raw.encode('utf-8')).hexdigest()[:64]

    def create_ticket_if_needed(self, entity, diagnostic_text: str, stage: str = '',
                                classification: str = '',
                                severity: str = '') -> Optional[int]:
        fingerprint = self.fingerprint(entity, stage, classification)
        with self.session_scope() as session:
            existing = session.query(SupportTicket).filter_by(fingerprint=fingerprint).first()
            if existing is not None:
                logger.info(f"Ticket {existing.id} already covers {fingerprint[:12]}")
                return None

            since = datetime.utcnow() - timedelta(hours=1)
            recent = session.query(SupportTicket).filter(SupportTicket.created_at >= since).count()
            if recent >= self.tickets_per_hour:
                logger.warning(f"Ticket rate cap reached ({recent}/{self.tickets_per_hour} per hour); "
                               f"not escalating asset {entity.asset_id}")
                return None

            ticket = SupportTicket(
                fingerprint=fingerprint,
                tenant_id=entity.tenant_id,
                asset_id=entity.asset_id,
                stage=stage,
                classification=classification,
                severity=severity,
                title=f"Pipeline stage {stage} failing for asset {entity.asset_id}",
                body=diagnostic_text,
                status=TicketStatus.OPEN,
            )
            session.add(ticket)
            session.flush()
            logger.warning(f"Opened ticket {ticket.id} for asset {entity.asset_id} stage {stage}")
            return ticket.id


class FailureEscalationPolicy:
    """
    Args:
        analyzer: Diagnostic analyzer (None disables diagnostics)
        sink: Ticket sink (None disables tickets)
        diagnostic_threshold: Failure count that triggers diagnostics
        ticket_threshold: Failure count that triggers a ticket
    """

    def __init__(self, analyzer: Optional[DiagnosticAnalyzer] = None,
                 sink: Optional[TicketSink] = None,
                 diagnostic_threshold: int = 2, ticket_threshold: int = 3):
        self.analyzer = analyzer
        self.sink = sink
        self.diagnostic_threshold = diagnostic_threshold
        self.ticket_threshold = ticket_threshold

    def decide(self, failure_count: int, classification: FailureClass,
               diagnostic_severity: Optional[Severity] = None) -> EscalationDecision:
        run_diagnostics = (failure_count >= self.diagnostic_threshold
                           or classification == FailureClass.TIMEOUT)
        create_ticket = (failure_count >= self.ticket_threshold
                         or diagnostic_severity == Severity.CRITICAL)
        return EscalationDecision(classification=classification,
                                  run_diagnostics=run_diagnostics,
                                  create_ticket=create_ticket)

    def on_stage_failure_exhausted(self, entity, stage: str,
                                   error: Union[BaseException, str],
                                   failure_count: int,
                                   critical_stage: bool = False) -> EscalationDecision:
        classification = classify(error)
        decision = self.decide(failure_count, classification)
        error_message = str(error)
        log = decision_log.bind(entity=str(entity.ref), stage=stage)

        if decision.run_diagnostics and self.analyzer is not None:
            try:
                decision.diagnostic = self.analyzer.analyze(
                    entity, stage, classification, failure_count, error_message,
                    critical_stage=critical_stage,
                )
            except Exception as e:
                log.error("Diagnostic analysis failed", error=str(e))
            if decision.diagnostic is not None:
                decision.create_ticket = self.decide(
                    failure_count, classification, decision.diagnostic.severity
                ).create_ticket

        if decision.create_ticket and self.sink is not None:
            text = decision.diagnostic.summary if decision.diagnostic else (
                f"Stage '{stage}' failed {failure_count} time(s): {error_message}"
            )
            severity = decision.diagnostic.severity.value if decision.diagnostic else ''
            try:
                decision.ticket_id = self.sink.create_ticket_if_needed(
                    entity, text, stage=stage, classification=classification.value,
                    severity=severity,
                )
            except Exception as e:
                log.error("Ticket creation failed", error=str(e))

        log.info("Escalation decided", classification=classification.value,
                 count=failure_count, diagnostics=decision.run_diagnostics,
                 ticket=decision.create_ticket, ticket_id=decision.ticket_id)
        return decision
