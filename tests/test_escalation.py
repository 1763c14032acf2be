"""
Tests for failure classification, escalation decisions and failure recording.
"""

import json
import logging
from types import SimpleNamespace

import pytest
from botocore.exceptions import ClientError

from assetflow.db import EntityRef, SupportTicket
from assetflow.exceptions import StageTimeoutError
from assetflow.pipeline import (
    DatabaseTicketSink, DiagnosticAnalyzer, EventType, FailureClass, FailureEscalationPolicy,
    FailureRecorder, Severity, TicketSink, classify, format_failure_reason, is_retryable
)
from assetflow.storage import StorageNotFoundError, StoragePermissionError


def fake_entity(asset_id=1, tenant_id='acme'):
    return SimpleNamespace(asset_id=asset_id, tenant_id=tenant_id, ref=EntityRef.asset(asset_id))


def client_error(code, status=400):
    return ClientError({'Error': {'Code': code, 'Message': code},
                        'ResponseMetadata': {'HTTPStatusCode': status}}, 'GetObject')


class ExplodingSink(TicketSink):
    def create_ticket_if_needed(self, entity, diagnostic_text, stage='', classification='',
                                severity=''):
        raise RuntimeError("ticket service down")


class ExplodingAnalyzer(DiagnosticAnalyzer):
    def analyze(self, *args, **kwargs):
        raise RuntimeError("analyzer crashed")


class TestClassify:
    """Test the failure taxonomy."""

    @pytest.mark.parametrize('error,expected', [
        (StageTimeoutError('generate_thumbnails', 300), FailureClass.TIMEOUT),
        (TimeoutError(), FailureClass.TIMEOUT),
        ('SoftTimeLimitExceeded: timed out', FailureClass.TIMEOUT),
        (MemoryError(), FailureClass.RESOURCE_EXHAUSTION),
        ('No space left on device', FailureClass.RESOURCE_EXHAUSTION),
        (StoragePermissionError('outside bucket'), FailureClass.PERMISSION_ERROR),
        (client_error('AccessDenied', 403), FailureClass.PERMISSION_ERROR),
        (client_error('SlowDown', 503), FailureClass.TIMEOUT),
        (client_error('NoSuchKey', 404), FailureClass.STORAGE_READ_ERROR),
        (StorageNotFoundError('Object not found: a/b'), FailureClass.STORAGE_READ_ERROR),
        ('cannot identify image file', FailureClass.STORAGE_READ_ERROR),
        (ValueError('something odd'), FailureClass.UNKNOWN),
        (None, FailureClass.UNKNOWN),
    ])
    def test_classification(self, error, expected):
        assert classify(error) == expected


class TestEscalationDecision:
    """Test the pure threshold decision."""

    def test_first_failure_does_nothing(self):
        decision = FailureEscalationPolicy().decide(1, FailureClass.UNKNOWN)
        assert not decision.run_diagnostics
        assert not decision.create_ticket

    def test_timeout_always_diagnosed(self):
        decision = FailureEscalationPolicy().decide(1, FailureClass.TIMEOUT)
        assert decision.run_diagnostics
        assert not decision.create_ticket

    def test_thresholds(self):
        policy = FailureEscalationPolicy()
        assert policy.decide(2, FailureClass.UNKNOWN).run_diagnostics
        assert not policy.decide(2, FailureClass.UNKNOWN).create_ticket
        assert policy.decide(3, FailureClass.UNKNOWN).create_ticket

    def test_critical_severity_forces_ticket(self):
        decision = FailureEscalationPolicy().decide(2, FailureClass.RESOURCE_EXHAUSTION,
                                                    Severity.CRITICAL)
        assert decision.create_ticket


class TestDiagnosticAnalyzer:
    @pytest.mark.parametrize('classification,count,critical,expected', [
        (FailureClass.RESOURCE_EXHAUSTION, 3, False, Severity.CRITICAL),
        (FailureClass.RESOURCE_EXHAUSTION, 2, False, Severity.HIGH),
        (FailureClass.PERMISSION_ERROR, 1, False, Severity.HIGH),
        (FailureClass.TIMEOUT, 1, False, Severity.MEDIUM),
        (FailureClass.STORAGE_READ_ERROR, 2, True, Severity.HIGH),
        (FailureClass.UNKNOWN, 1, False, Severity.LOW),
    ])
    def test_severity(self, classification, count, critical, expected):
        diagnostic = DiagnosticAnalyzer().analyze(fake_entity(), 'generate_thumbnails',
                                                  classification, count, 'err',
                                                  critical_stage=critical)
        assert diagnostic.severity == expected
        assert 'generate_thumbnails' in diagnostic.summary


class TestFailureEscalationPolicy:
    """Test end-to-end escalation with a database ticket sink."""

    def test_ticket_created_once(self, session_scope):
        policy = FailureEscalationPolicy(DiagnosticAnalyzer(), DatabaseTicketSink(session_scope))
        entity = fake_entity()

        first = policy.on_stage_failure_exhausted(entity, 'generate_thumbnails', 'boom', 3,
                                                  critical_stage=True)
        second = policy.on_stage_failure_exhausted(entity, 'generate_thumbnails', 'boom', 3,
                                                   critical_stage=True)

        assert first.ticket_id is not None
        assert second.create_ticket
        assert second.ticket_id is None
        with session_scope() as session:
            tickets = session.query(SupportTicket).all()
            assert len(tickets) == 1
            assert tickets[0].stage == 'generate_thumbnails'
            assert tickets[0].classification == 'unknown'

    def test_rate_cap(self, session_scope):
        sink = DatabaseTicketSink(session_scope, tickets_per_hour=1)
        policy = FailureEscalationPolicy(sink=sink)
        assert policy.on_stage_failure_exhausted(fake_entity(1), 'finalize', 'x', 3).ticket_id
        assert policy.on_stage_failure_exhausted(fake_entity(2), 'finalize', 'x', 3).ticket_id is None

    def test_sink_errors_do_not_propagate(self):
        policy = FailureEscalationPolicy(DiagnosticAnalyzer(), ExplodingSink())
        decision = policy.on_stage_failure_exhausted(fake_entity(), 'promote', 'boom', 5)
        assert decision.create_ticket
        assert decision.ticket_id is None

    def test_sink_errors_logged_with_context(self, caplog):
        policy = FailureEscalationPolicy(DiagnosticAnalyzer(), ExplodingSink())
        with caplog.at_level(logging.INFO, logger='assetflow.pipeline.escalation'):
            policy.on_stage_failure_exhausted(fake_entity(4), 'promote', 'boom', 5)

        messages = [record.getMessage().split(' | ', 1) for record in caplog.records
                    if ' | ' in record.getMessage()]
        failed = dict(messages)['Ticket creation failed']
        assert json.loads(failed) == {'entity': 'asset:4', 'stage': 'promote',
                                      'error': 'ticket service down'}
        decided = json.loads(dict(messages)['Escalation decided'])
        assert decided['ticket'] is True
        assert decided['ticket_id'] is None

    def test_analyzer_errors_do_not_propagate(self):
        policy = FailureEscalationPolicy(ExplodingAnalyzer())
        decision = policy.on_stage_failure_exhausted(fake_entity(), 'promote', 'timed out', 1)
        assert decision.run_diagnostics
        assert decision.diagnostic is None

    def test_fingerprint_stable(self):
        entity = fake_entity()
        assert (DatabaseTicketSink.fingerprint(entity, 'a', 'timeout')
                == DatabaseTicketSink.fingerprint(entity, 'a', 'timeout'))
        assert (DatabaseTicketSink.fingerprint(entity, 'a', 'timeout')
                != DatabaseTicketSink.fingerprint(entity, 'b', 'timeout'))


class TestFailureFormatting:
    def test_reason_format(self):
        assert format_failure_reason('generate_thumbnails', 'disk\n  full') == \
            'generate_thumbnails failed: disk full'

    def test_timeout_suffix(self):
        assert format_failure_reason('promote', 'Request timed out').endswith('(timeout)')

    def test_connection_suffix(self):
        assert format_failure_reason('promote', 'connection reset').endswith('(connection error)')

    def test_truncated_to_200(self):
        reason = format_failure_reason('finalize', 'x' * 500 + ' timeout')
        assert len(reason) == 200
        assert reason.endswith('... (timeout)')

    def test_empty_message(self):
        assert format_failure_reason('finalize', '') == 'finalize failed: unknown error'

    @pytest.mark.parametrize('message,retryable', [
        ('Object not found: a/b', False),
        ('Invalid image data', False),
        ('403 Forbidden', False),
        ('connection reset by peer', True),
        ('artifact too small: k is 200 bytes (minimum 256)', True),
    ])
    def test_is_retryable(self, message, retryable):
        assert is_retryable(message) is retryable


class TestFailureRecorder:
    """Test structured failure persistence."""

    def test_record_failure(self, repository, events, upload):
        asset_id = upload(b'x' * 10)
        entity = repository.get_snapshot(EntityRef.asset(asset_id))
        reason = FailureRecorder(repository, events).record_failure(
            entity, 'generate_thumbnails', 'artifact too small', attempts=3
        )

        snapshot = repository.get_snapshot(entity.ref)
        assert reason == 'generate_thumbnails failed: artifact too small'
        assert snapshot.meta_data['processing_failed'] is True
        assert snapshot.meta_data['failed_job'] == 'generate_thumbnails'
        assert snapshot.meta_data['failure_attempts'] == 3
        assert snapshot.meta_data['failure_is_retryable'] is True
        assert snapshot.is_visible

        recorded = events.list_for_asset(asset_id)
        assert recorded[-1]['event_type'] == EventType.PROCESSING_FAILED.value
        assert recorded[-1]['payload']['stage'] == 'generate_thumbnails'
