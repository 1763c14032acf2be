"""
Celery tasks for the asset pipeline.

Each stage runs as its own ``run_stage`` task. The next task is enqueued
only after the current stage's result has been written to the ledger, so a
worker crash replays at most one stage.
"""

import logging
import os
from datetime import timedelta
from typing import List, Optional

from celery import Task

from ..config import load_config
from ..db.operations import EntityRef
from ..pipeline.coordinator import (
    Dispatcher, NextStep, PipelineCoordinator, ThumbnailRetryService, build_coordinator
)
from .celery_app import celery_app

logger = logging.getLogger(__name__)

# Extra seconds between a stage's soft and hard time limit
HARD_LIMIT_GRACE = 30

_coordinator: Optional[PipelineCoordinator] = None


class CeleryDispatcher(Dispatcher):
    """Enqueues the next step as a ``run_stage`` task on the stage's queue."""

    def dispatch(self, coordinator: PipelineCoordinator, ref: EntityRef, step: NextStep) -> None:
        if step.done:
            logger.info(f"Pipeline chain finished for {ref}")
            return
        stage = coordinator.get_stage(step.stage)
        timeout = stage.retry_policy.timeout
        run_stage.apply_async(
            args=[ref.id, step.stage],
            kwargs={
                'attempt': step.attempt,
                'deferrals': step.deferrals,
                'version_aware': ref.is_version,
            },
            countdown=step.delay or None,
            queue=stage.queue,
            soft_time_limit=timeout,
            time_limit=timeout + HARD_LIMIT_GRACE,
        )
        logger.debug(f"Queued {step.stage} for {ref} on {stage.queue} "
                     f"(attempt {step.attempt}, countdown {step.delay}s)")


def get_coordinator() -> PipelineCoordinator:
    """Per-worker coordinator wired from ASSETFLOW_CONFIG (or the packaged defaults)."""
    global _coordinator
    if _coordinator is None:
        config = load_config(os.environ.get('ASSETFLOW_CONFIG'))
        # Celery soft time limits replace the in-process timeout thread
        _coordinator = build_coordinator(config, dispatcher=CeleryDispatcher(),
                                         enforce_timeouts=False)
    return _coordinator


class PipelineTask(Task):
    """Base task that logs lifecycle hooks with the entity being processed."""

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        entity_id = args[0] if args else kwargs.get('entity_id')
        logger.error(f"Task {task_id} ({self.name}) failed for entity {entity_id}: {exc}\n{einfo}")

    def on_retry(self, exc, task_id, args, kwargs, einfo):
        logger.warning(f"Task {task_id} ({self.name}) retrying "
                       f"(attempt {self.request.retries + 1}): {exc}")

    def on_success(self, retval, task_id, args, kwargs):
        logger.debug(f"Task {task_id} ({self.name}) completed")


@celery_app.task(base=PipelineTask, bind=True, name='assetflow.pipeline.run')
def start_pipeline(self, entity_id: int, version_aware: bool = False) -> None:
    """Claim the entity and enqueue its first stage."""
    logger.info(f"Starting pipeline for {'version' if version_aware else 'asset'} {entity_id}")
    get_coordinator().run_pipeline(entity_id, version_aware=version_aware)


@celery_app.task(base=PipelineTask, bind=True, name='assetflow.pipeline.run_stage')
def run_stage(self, entity_id: int, stage_name: str, attempt: int = 1, deferrals: int = 0,
              version_aware: bool = False) -> None:
    """Execute one stage attempt, then enqueue whatever comes next."""
    coordinator = get_coordinator()
    ref = EntityRef.version(entity_id) if version_aware else EntityRef.asset(entity_id)
    step = coordinator.execute_stage(ref, stage_name, attempt=attempt, deferrals=deferrals)
    coordinator.dispatcher.dispatch(coordinator, ref, step)


@celery_app.task(base=PipelineTask, bind=True,
                 name='assetflow.pipeline.retry_failed_thumbnails')
def retry_failed_thumbnails(self, limit: int = 100, older_than_minutes: int = 30) -> List[int]:
    """Reset FAILED thumbnails (bounded retries) and restart their pipelines."""
    service = ThumbnailRetryService(get_coordinator())
    restarted = service.retry_failed(limit=limit,
                                     older_than=timedelta(minutes=older_than_minutes))
    logger.info(f"Restarted {len(restarted)} asset(s) with failed thumbnails")
    return restarted
