"""
Pipeline coordinator: drives the ordered stage list for one asset or
version.

One loop serves every stage. For each stage the coordinator consults the
ledger, evaluates the stage's condition and precondition, runs the handler
under its time budget, persists the typed result and only then hands the
next step to the dispatcher. Dispatchers decide *when* the next step runs:
``InlineDispatcher`` loops in-process, ``CeleryDispatcher`` enqueues a task.
"""

import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import (
    Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError, wait
)
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Dict, List, Optional

from ..ai.client import create_ai_client
from ..db.connection import SessionScope, configure_database, get_session
from ..db.models import AssetStatus, DerivativeStatus, PipelineStatus
from ..db.operations import AssetRepository, EntityRef, EntitySnapshot
from ..exceptions import InvalidTransitionError, StageTimeoutError, TerminalBusinessError
from ..processing.color import ColorAnalysisEngine, DominantColorExtractor
from ..processing.derivatives import (
    ArtifactVerifier, DerivativeStateMachine, PreviewGenerator, ThumbnailGenerator,
    VideoPreviewGenerator
)
from ..processing.file_types import is_unsupported
from ..storage import create_blob_store
from ..utils.logging import PipelineStats
from .escalation import DatabaseTicketSink, DiagnosticAnalyzer, FailureEscalationPolicy
from .events import ActivityRecorder, EventType
from .failures import FailureRecorder, is_retryable
from .handlers import STAGES, PipelineServices, StageContext
from .ledger import PersistentLedger, StageIdempotencyLedger
from .stages import (
    Defer, Fail, Readiness, Skip, StageDescriptor, StageResult, Success, WaitPolicy,
    apply_stage_overrides
)

logger = logging.getLogger(__name__)

UNSUPPORTED_THUMBNAIL_REASON = 'Thumbnail generation skipped: unsupported file type'


@dataclass(frozen=True)
class NextStep:
    """What the dispatcher should run next; ``stage`` None means the chain is over."""
    stage: Optional[str]
    attempt: int = 1
    deferrals: int = 0
    delay: float = 0

    @classmethod
    def stop(cls) -> 'NextStep':
        return cls(None)

    @property
    def done(self) -> bool:
        return self.stage is None


class Dispatcher(ABC):
    @abstractmethod
    def dispatch(self, coordinator: 'PipelineCoordinator', ref: EntityRef, step: NextStep) -> None:
        pass


class InlineDispatcher(Dispatcher):
    """
    Runs the whole chain synchronously.

    Args:
        sleep: Called with each retry/deferral delay (tests pass a recorder)
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self.sleep = sleep

    def dispatch(self, coordinator: 'PipelineCoordinator', ref: EntityRef, step: NextStep) -> None:
        while not step.done:
            if step.delay:
                self.sleep(step.delay)
            step = coordinator.execute_stage(ref, step.stage, step.attempt, step.deferrals)


class PipelineCoordinator:
    """
    Args:
        services: Repository, blob store, event recorder, generators and AI client
        failure_recorder: Writes structured failures for halted chains
        escalation: Diagnostics and ticketing for exhausted stages
        dispatcher: Schedules the next step (defaults to InlineDispatcher)
        stages: Ordered stage descriptors (defaults to STAGES)
        enforce_timeouts: Run handlers under an in-process wall-clock budget;
            Celery workers disable this and rely on task time limits
        stats: Optional outcome counter for CLI reports
    """

    def __init__(self, services: PipelineServices, failure_recorder: FailureRecorder,
                 escalation: FailureEscalationPolicy, dispatcher: Optional[Dispatcher] = None,
                 stages: Optional[List[StageDescriptor]] = None, enforce_timeouts: bool = True,
                 stats: Optional[PipelineStats] = None):
        self.services = services
        self.repository = services.repository
        self.events = services.events
        self.failure_recorder = failure_recorder
        self.escalation = escalation
        self.dispatcher = dispatcher or InlineDispatcher()
        self.stages = list(stages or STAGES)
        self.enforce_timeouts = enforce_timeouts
        self.stats = stats
        self._index = {stage.name: i for i, stage in enumerate(self.stages)}
        # attempts that outlived their time budget, joined before the entity runs again
        self._abandoned: Dict[EntityRef, List[Future]] = {}

    # -- entry point -----------------------------------------------------

    def run_pipeline(self, entity_id: int, version_aware: bool = False) -> None:
        """
        Start processing an asset (or, with ``version_aware``, an asset version).

        Raises:
            AssetNotFoundError: if the entity does not exist
        """
        ref = EntityRef.version(entity_id) if version_aware else EntityRef.asset(entity_id)
        entity = self.repository.get_snapshot(ref)

        if entity.status == AssetStatus.FAILED:
            logger.info(f"Not processing {ref}: asset is marked failed")
            return
        if not entity.is_visible:
            logger.info(f"Not processing {ref}: asset is {entity.status.value}")
            return
        if version_aware and entity.pipeline_status != PipelineStatus.PROCESSING:
            logger.info(f"Not processing {ref}: version pipeline is {entity.pipeline_status.value}")
            return

        ledger = PersistentLedger(self.repository, ref)
        if not ledger.mark_processing_started():
            logger.debug(f"Pipeline already started for {ref}")
            return

        self.events.record(entity, EventType.PROCESSING_STARTED, {
            'version_aware': version_aware,
            'mime_type': entity.mime_type,
        })
        logger.info(f"Pipeline started for {ref} ({entity.original_filename})")

        if is_unsupported(entity.mime_type, entity.storage_path or entity.original_filename):
            self._short_circuit_unsupported(entity, ledger)
            first = next(s.name for s in self.stages if not s.skip_when_unsupported)
        else:
            first = self.stages[0].name
        self.dispatcher.dispatch(self, ref, NextStep(first))
        self._join_abandoned(ref)

    def _short_circuit_unsupported(self, entity: EntitySnapshot, ledger: PersistentLedger) -> None:
        """Record every derivative stage as skipped and mark the thumbnail SKIPPED."""
        for stage in self.stages:
            if stage.skip_when_unsupported:
                ledger.mark_skipped(stage.name, 'unsupported')

        status = entity.thumbnail_status or DerivativeStatus.PENDING
        if status in (DerivativeStatus.PENDING, DerivativeStatus.FAILED):
            machine = DerivativeStateMachine('thumbnail', status, track_started_at=True)
            machine.start()
            self.repository.update_fields(entity.ref, **machine.skip(UNSUPPORTED_THUMBNAIL_REASON))
            self.events.record(entity, EventType.THUMBNAIL_SKIPPED, {
                'reason': UNSUPPORTED_THUMBNAIL_REASON,
                'mime_type': entity.mime_type,
            })
        logger.info(f"Unsupported file type for {entity.ref} ({entity.mime_type}); "
                    f"skipping to finalisation")

    # -- stage execution -------------------------------------------------

    def get_stage(self, name: str) -> StageDescriptor:
        if name not in self._index:
            raise ValueError(f"Unknown pipeline stage: {name}")
        return self.stages[self._index[name]]

    def next_after(self, stage: StageDescriptor) -> NextStep:
        index = self._index[stage.name] + 1
        if index >= len(self.stages):
            return NextStep.stop()
        return NextStep(self.stages[index].name)

    def execute_stage(self, ref: EntityRef, stage_name: str, attempt: int = 1,
                      deferrals: int = 0) -> NextStep:
        """
        Run one stage attempt and persist its outcome.

        Returns:
            The step the dispatcher should run next
        """
        stage = self.get_stage(stage_name)
        self._join_abandoned(ref)
        entity = self.repository.get_snapshot(ref)
        if entity.status == AssetStatus.FAILED:
            logger.warning(f"Stopping pipeline for {ref}: asset was marked failed")
            return NextStep.stop()

        record = StageIdempotencyLedger(entity.pipeline_state).record(stage.name)
        if record.is_settled:
            logger.debug(f"Stage {stage.name} already {record.status} for {ref}")
            return self.next_after(stage)

        ctx = StageContext(entity, self.services, attempt=attempt, deferrals=deferrals)
        if stage.condition is not None and not stage.condition(ctx):
            result: StageResult = Skip('not_applicable')
        else:
            result = self._check_precondition(stage, ctx)
            if result is None:
                PersistentLedger(self.repository, ref).mark_started(stage.name)
                result = self._run_handler(stage, ctx)
        return self.handle_outcome(ref, stage, result, attempt, deferrals)

    def _check_precondition(self, stage: StageDescriptor,
                            ctx: StageContext) -> Optional[StageResult]:
        if stage.precondition is None:
            return None
        check = stage.precondition(ctx)
        if check.readiness == Readiness.READY:
            return None
        if check.readiness == Readiness.UNAVAILABLE:
            return Skip(check.reason or 'upstream_unavailable')
        if stage.wait_policy == WaitPolicy.RETRY_UNTIL_READY:
            policy = stage.retry_policy
            if ctx.deferrals >= policy.max_deferrals:
                return Fail(f"deferral cap exceeded ({check.reason})", retryable=False)
            return Defer(policy.defer_delay, check.reason or 'upstream_not_ready')
        return Skip(check.reason or 'upstream_not_ready')

    def _run_handler(self, stage: StageDescriptor, ctx: StageContext) -> StageResult:
        try:
            if self.enforce_timeouts and stage.retry_policy.timeout:
                return self._run_with_timeout(stage, ctx)
            return stage.handler(ctx)
        except TerminalBusinessError as e:
            logger.info(f"Stage {stage.name} for {ctx.ref} stopped by business rule: {e}")
            return Skip(e.reason_code)
        except Exception as e:
            logger.exception(f"Stage {stage.name} raised for {ctx.ref}")
            return Fail(str(e) or type(e).__name__, retryable=is_retryable(e), exception=e)

    def _run_with_timeout(self, stage: StageDescriptor, ctx: StageContext) -> StageResult:
        timeout = stage.retry_policy.timeout
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"stage-{stage.name}")
        future = executor.submit(stage.handler, ctx)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError:
            self._abandoned.setdefault(ctx.ref, []).append(future)
            raise StageTimeoutError(stage.name, timeout) from None
        finally:
            executor.shutdown(wait=False)

    def _join_abandoned(self, ref: EntityRef) -> None:
        """Block until timed-out attempts for ``ref`` have returned, so stages never overlap."""
        pending = self._abandoned.pop(ref, None)
        if pending:
            logger.warning(f"Waiting for {len(pending)} timed-out attempt(s) on {ref} to finish")
            wait(pending)

    # -- outcomes --------------------------------------------------------

    def handle_outcome(self, ref: EntityRef, stage: StageDescriptor, result: StageResult,
                       attempt: int, deferrals: int = 0) -> NextStep:
        ledger = PersistentLedger(self.repository, ref)
        entity = self.repository.get_snapshot(ref)
        outcome = type(result).__name__.lower()
        if self.stats is not None:
            self.stats.add_outcome(stage.name, outcome, getattr(result, 'error', None))

        if isinstance(result, Success):
            ledger.mark_completed(stage.name)
            self.events.record(entity, EventType.STAGE_COMPLETED,
                               {'stage': stage.name, 'attempt': attempt})
            logger.info(f"Stage {stage.name} completed for {ref} (attempt {attempt})")
            return self.next_after(stage)

        if isinstance(result, Skip):
            ledger.mark_skipped(stage.name, result.reason)
            self.events.record(entity, EventType.STAGE_SKIPPED,
                               {'stage': stage.name, 'reason': result.reason})
            logger.info(f"Stage {stage.name} skipped for {ref}: {result.reason}")
            return self.next_after(stage)

        if isinstance(result, Defer):
            ledger.mark_deferred(stage.name, result.reason)
            logger.info(f"Stage {stage.name} deferred for {ref} ({deferrals + 1}): "
                        f"{result.reason}; retrying in {result.delay}s")
            return NextStep(stage.name, attempt, deferrals + 1, result.delay)

        return self._handle_failure(ref, entity, ledger, stage, result, attempt, deferrals)

    def _handle_failure(self, ref: EntityRef, entity: EntitySnapshot, ledger: PersistentLedger,
                        stage: StageDescriptor, result: Fail, attempt: int,
                        deferrals: int) -> NextStep:
        ledger.mark_failed(stage.name, result.error)
        policy = stage.retry_policy
        if result.retryable and attempt < policy.max_attempts:
            delay = policy.delay_for(attempt)
            logger.warning(f"Stage {stage.name} failed for {ref} (attempt {attempt}/"
                           f"{policy.max_attempts}): {result.error}; retrying in {delay}s")
            return NextStep(stage.name, attempt + 1, deferrals, delay)

        error = result.exception if result.exception is not None else result.error
        logger.error(f"Stage {stage.name} exhausted for {ref} after {attempt} attempt(s): "
                     f"{result.error}")
        self.events.record(entity, EventType.STAGE_FAILED, {
            'stage': stage.name,
            'error': result.error,
            'attempts': attempt,
            'retryable': result.retryable,
            'critical': stage.critical,
        })
        self.escalation.on_stage_failure_exhausted(entity, stage.name, error, attempt,
                                                   critical_stage=stage.critical)
        if not stage.critical:
            return self.next_after(stage)

        self.failure_recorder.record_failure(entity, stage.name, error, attempt,
                                             retryable=result.retryable)
        if ref.is_version:
            try:
                self.repository.transition_version(ref.id, PipelineStatus.FAILED)
            except InvalidTransitionError as e:
                logger.warning(f"Could not mark {ref} failed: {e}")
        logger.error(f"Pipeline halted for {ref} at critical stage {stage.name}")
        return NextStep.stop()

    def status(self, entity_id: int, version_aware: bool = False) -> Dict[str, Any]:
        """Ledger view for reporting: processing flag plus per-stage records."""
        ref = EntityRef.version(entity_id) if version_aware else EntityRef.asset(entity_id)
        ledger = StageIdempotencyLedger(self.repository.get_snapshot(ref).pipeline_state)
        records = ledger.stage_records()
        return {
            'entity': str(ref),
            'processing_started': ledger.is_processing_started(),
            'stages': {
                stage.name: records[stage.name].to_dict() if stage.name in records else None
                for stage in self.stages
            },
        }


class ThumbnailRetryService:
    """
    Re-queues assets whose thumbnails ended FAILED.

    A thumbnail is retried at most ``max_retries`` times and never while it
    is PROCESSING. Resetting clears the thumbnail stage records and the
    ``processing_started`` flag so the next run starts a fresh chain.
    """

    def __init__(self, coordinator: PipelineCoordinator, max_retries: int = 3):
        self.coordinator = coordinator
        self.repository = coordinator.repository
        self.max_retries = max_retries

    def reset(self, ref: EntityRef) -> bool:
        entity = self.repository.get_snapshot(ref)
        if entity.thumbnail_status != DerivativeStatus.FAILED:
            return False
        if entity.thumbnail_retry_count >= self.max_retries:
            logger.info(f"Thumbnail retries exhausted for {ref} ({entity.thumbnail_retry_count})")
            return False

        machine = DerivativeStateMachine('thumbnail', entity.thumbnail_status, track_started_at=True)
        self.repository.update_fields(ref, thumbnail_retry_count=entity.thumbnail_retry_count + 1,
                                      **machine.reset())
        ledger = StageIdempotencyLedger(entity.pipeline_state)
        unsettled = [name for name, record in ledger.stage_records().items()
                     if not record.is_completed]
        PersistentLedger(self.repository, ref).reset(unsettled, clear_started=True)
        logger.info(f"Reset thumbnails for {ref} (retry {entity.thumbnail_retry_count + 1})")
        return True

    def retry_failed(self, limit: int = 100, older_than: Optional[timedelta] = None) -> List[int]:
        """Reset and rerun failed thumbnails. Returns the asset ids restarted."""
        restarted = []
        for ref in self.repository.find_failed_thumbnails(limit=limit, older_than=older_than):
            if self.reset(ref):
                self.coordinator.run_pipeline(ref.id)
                restarted.append(ref.id)
        return restarted


def build_services(config: Dict[str, Any], session_scope: SessionScope, store=None,
                   ai_client=None) -> PipelineServices:
    repository = AssetRepository(session_scope)
    store = store or create_blob_store(config.get('storage', {}))
    pipeline_config = config.get('pipeline', {})
    preview_config = config.get('previews', {})
    return PipelineServices(
        repository=repository,
        store=store,
        events=ActivityRecorder(session_scope),
        verifier=ArtifactVerifier(
            store, min_bytes=pipeline_config.get('verification', {}).get('min_bytes', 256)
        ),
        thumbnails=ThumbnailGenerator.from_config(config),
        previews=PreviewGenerator(max_size=preview_config.get('max_size', 1600)),
        video_previews=VideoPreviewGenerator(
            frames=preview_config.get('video_frames', 8),
            frame_size=preview_config.get('video_frame_size', 480),
            frame_duration=preview_config.get('gif_frame_duration', 250),
        ),
        color_engine=ColorAnalysisEngine.from_config(config),
        dominant_colors=DominantColorExtractor(repository, **config.get('dominant_colors', {})),
        ai_client=ai_client if ai_client is not None else create_ai_client(config),
        config=config,
    )


def build_coordinator(config: Dict[str, Any], session_scope: Optional[SessionScope] = None,
                      dispatcher: Optional[Dispatcher] = None, store=None, ai_client=None,
                      enforce_timeouts: bool = True,
                      stats: Optional[PipelineStats] = None) -> PipelineCoordinator:
    """
    Wire a coordinator from configuration.

    Without ``session_scope`` the global database from ``configure_database``
    is used (configured here on first use).
    """
    if session_scope is None:
        configure_database(config)
        session_scope = get_session

    services = build_services(config, session_scope, store=store, ai_client=ai_client)
    escalation_config = config.get('escalation', {})
    escalation = FailureEscalationPolicy(
        analyzer=DiagnosticAnalyzer(),
        sink=DatabaseTicketSink(session_scope,
                                tickets_per_hour=escalation_config.get('tickets_per_hour', 50)),
        diagnostic_threshold=escalation_config.get('diagnostic_failure_threshold', 2),
        ticket_threshold=escalation_config.get('ticket_failure_threshold', 3),
    )
    return PipelineCoordinator(
        services=services,
        failure_recorder=FailureRecorder(services.repository, services.events),
        escalation=escalation,
        dispatcher=dispatcher,
        stages=apply_stage_overrides(STAGES, config.get('pipeline', {})),
        enforce_timeouts=enforce_timeouts,
        stats=stats,
    )
