"""
Stage idempotency ledger.

Stage progress is stored in the entity's ``pipeline_state`` column as a
typed, versioned record:

    {
        "schema_version": 1,
        "processing_started": true,
        "processing_started_at": "2024-05-01T12:00:00",
        "stages": {
            "generate_thumbnails": {"status": "completed", "attempts": 1, ...},
            ...
        }
    }

Once a stage is marked completed, later runs treat it as a no-op. This is
what makes re-delivered queue messages and re-triggered pipelines safe.
"""

from dataclasses import dataclass, asdict, fields
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, Optional

SCHEMA_VERSION = 1


class StageStatus(Enum):
    PENDING = "pending"
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    DEFERRED = "deferred"


def _now_iso(ts: Optional[datetime] = None) -> str:
    return (ts or datetime.utcnow()).isoformat()


@dataclass
class StageRecord:
    status: str = StageStatus.PENDING.value
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    failed_at: Optional[str] = None
    skipped_reason: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    deferrals: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'StageRecord':
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in (data or {}).items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def is_completed(self) -> bool:
        return self.status == StageStatus.COMPLETED.value

    @property
    def is_settled(self) -> bool:
        """Completed or skipped: nothing left to do for this run."""
        return self.status in (StageStatus.COMPLETED.value, StageStatus.SKIPPED.value)


class StageIdempotencyLedger:
    """
    In-memory view over a ``pipeline_state`` dict. Mutations are applied to
    the dict passed in, so the ledger is meant to run inside
    ``AssetRepository.update_pipeline_state`` (see ``PersistentLedger``).
    """

    def __init__(self, state: Optional[Dict[str, Any]] = None):
        self.state = state if state is not None else {}
        self._migrate()

    def _migrate(self) -> None:
        version = self.state.get('schema_version')
        if version is None:
            self.state['schema_version'] = SCHEMA_VERSION
        elif version > SCHEMA_VERSION:
            raise ValueError(f"Unsupported pipeline_state schema version {version}")
        self.state.setdefault('processing_started', False)
        self.state.setdefault('stages', {})

    # -- run guard -------------------------------------------------------

    def is_processing_started(self) -> bool:
        return bool(self.state.get('processing_started'))

    def mark_processing_started(self, ts: Optional[datetime] = None) -> bool:
        """Claim the entity for a new run. Returns False if already claimed."""
        if self.is_processing_started():
            return False
        self.state['processing_started'] = True
        self.state['processing_started_at'] = _now_iso(ts)
        return True

    def clear_processing_started(self) -> None:
        self.state['processing_started'] = False
        self.state.pop('processing_started_at', None)

    # -- stage records ---------------------------------------------------

    def record(self, stage: str) -> StageRecord:
        return StageRecord.from_dict(self.state['stages'].get(stage))

    def _store(self, stage: str, record: StageRecord) -> StageRecord:
        self.state['stages'][stage] = record.to_dict()
        return record

    def is_completed(self, stage: str) -> bool:
        return self.record(stage).is_completed

    def is_settled(self, stage: str) -> bool:
        return self.record(stage).is_settled

    def mark_started(self, stage: str, ts: Optional[datetime] = None) -> StageRecord:
        record = self.record(stage)
        record.status = StageStatus.STARTED.value
        record.started_at = _now_iso(ts)
        record.attempts += 1
        return self._store(stage, record)

    def mark_completed(self, stage: str, ts: Optional[datetime] = None) -> StageRecord:
        record = self.record(stage)
        record.status = StageStatus.COMPLETED.value
        record.completed_at = _now_iso(ts)
        record.skipped_reason = None
        # failed_at/error of earlier attempts are kept as history
        return self._store(stage, record)

    def mark_skipped(self, stage: str, reason: str, ts: Optional[datetime] = None) -> StageRecord:
        record = self.record(stage)
        record.status = StageStatus.SKIPPED.value
        record.skipped_reason = reason
        record.completed_at = _now_iso(ts)
        return self._store(stage, record)

    def mark_failed(self, stage: str, error: str, ts: Optional[datetime] = None) -> StageRecord:
        record = self.record(stage)
        record.status = StageStatus.FAILED.value
        record.failed_at = _now_iso(ts)
        record.error = error
        return self._store(stage, record)

    def mark_deferred(self, stage: str, reason: str) -> StageRecord:
        record = self.record(stage)
        record.status = StageStatus.DEFERRED.value
        record.deferrals += 1
        record.skipped_reason = reason
        return self._store(stage, record)

    def reset(self, stages: Iterable[str]) -> None:
        for stage in stages:
            self.state['stages'].pop(stage, None)

    def stage_records(self) -> Dict[str, StageRecord]:
        return {name: StageRecord.from_dict(data) for name, data in self.state['stages'].items()}

    def to_dict(self) -> Dict[str, Any]:
        return self.state


class PersistentLedger:
    """
    Ledger operations applied as locked read-modify-write cycles against the
    latest persisted ``pipeline_state`` of one entity.
    """

    def __init__(self, repository, ref):
        self.repository = repository
        self.ref = ref

    def _apply(self, operation, *args):
        return self.repository.update_pipeline_state(
            self.ref, lambda state: operation(StageIdempotencyLedger(state), *args)
        )

    def snapshot(self) -> StageIdempotencyLedger:
        return StageIdempotencyLedger(self.repository.get_snapshot(self.ref).pipeline_state)

    def is_completed(self, stage: str) -> bool:
        return self.snapshot().is_completed(stage)

    def mark_processing_started(self) -> bool:
        return self._apply(StageIdempotencyLedger.mark_processing_started)

    def mark_started(self, stage: str) -> StageRecord:
        return self._apply(StageIdempotencyLedger.mark_started, stage)

    def mark_completed(self, stage: str) -> StageRecord:
        return self._apply(StageIdempotencyLedger.mark_completed, stage)

    def mark_skipped(self, stage: str, reason: str) -> StageRecord:
        return self._apply(StageIdempotencyLedger.mark_skipped, stage, reason)

    def mark_failed(self, stage: str, error: str) -> StageRecord:
        return self._apply(StageIdempotencyLedger.mark_failed, stage, error)

    def mark_deferred(self, stage: str, reason: str) -> StageRecord:
        return self._apply(StageIdempotencyLedger.mark_deferred, stage, reason)

    def reset(self, stages: Iterable[str], clear_started: bool = True) -> None:
        stages = list(stages)

        def operation(ledger):
            ledger.reset(stages)
            if clear_started:
                ledger.clear_processing_started()

        self.repository.update_pipeline_state(
            self.ref, lambda state: operation(StageIdempotencyLedger(state))
        )
