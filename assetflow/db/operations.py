"""
Repository operations for AssetFlow.

Every write is a read-modify-write against the latest persisted row, taken
under ``SELECT ... FOR UPDATE`` where the backend supports it. Callers work
with detached ``EntitySnapshot`` copies and never hold ORM objects across
stages.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import PurePosixPath
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from ..exceptions import AssetNotFoundError
from .connection import SessionScope
from .models import (
    Asset, AssetVersion, AssetStatus, DerivativeStatus, PipelineStatus,
    AssetMetadataValue, AssetMetadataHistory, AssetTag, MetadataCandidate,
    CandidateStatus, Tenant
)

logger = logging.getLogger(__name__)

T = TypeVar('T')

ASSET = 'asset'
VERSION = 'version'


@dataclass(frozen=True)
class EntityRef:
    """Identifies what a pipeline run targets: an asset or one of its versions."""
    kind: str
    id: int

    @classmethod
    def asset(cls, asset_id: int) -> 'EntityRef':
        return cls(ASSET, int(asset_id))

    @classmethod
    def version(cls, version_id: int) -> 'EntityRef':
        return cls(VERSION, int(version_id))

    @property
    def is_version(self) -> bool:
        return self.kind == VERSION

    def __str__(self):
        return f"{self.kind}:{self.id}"


@dataclass
class EntitySnapshot:
    """Detached view of an asset (or version plus parent asset)."""
    ref: EntityRef
    asset_id: int
    tenant_id: str
    original_filename: str
    status: AssetStatus
    storage_bucket: str
    storage_path: Optional[str]
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    category_id: Optional[int] = None
    upload_session_id: Optional[str] = None
    version_id: Optional[int] = None
    version_number: Optional[int] = None
    pipeline_status: Optional[PipelineStatus] = None
    meta_data: Dict[str, Any] = field(default_factory=dict)
    pipeline_state: Dict[str, Any] = field(default_factory=dict)
    thumbnail_status: Optional[DerivativeStatus] = None
    thumbnail_error: Optional[str] = None
    thumbnail_retry_count: int = 0
    preview_status: Optional[DerivativeStatus] = None
    video_preview_status: Optional[DerivativeStatus] = None
    pipeline_completed_at: Optional[datetime] = None

    @property
    def extension(self) -> str:
        name = self.storage_path or self.original_filename or ''
        return PurePosixPath(name).suffix.lstrip('.').lower()

    @property
    def is_visible(self) -> bool:
        return self.status == AssetStatus.VISIBLE

    def thumbnail_path(self, style: str = 'medium') -> Optional[str]:
        return (self.meta_data.get('thumbnails') or {}).get(style)


class AssetRepository:
    """Session-scoped access to asset and version rows."""

    def __init__(self, session_scope: SessionScope):
        self.session_scope = session_scope

    # -- loading ---------------------------------------------------------

    def _load(self, session, ref: EntityRef, lock: bool = False):
        model = AssetVersion if ref.is_version else Asset
        query = session.query(model).filter_by(id=ref.id)
        if lock:
            query = query.with_for_update()
        row = query.first()
        if row is None:
            raise AssetNotFoundError(ref.id, ref.kind)
        return row

    def get_snapshot(self, ref: EntityRef) -> EntitySnapshot:
        """
        Load a detached snapshot of the target entity.

        Raises:
            AssetNotFoundError: if the asset or version does not exist
        """
        with self.session_scope() as session:
            row = self._load(session, ref)
            asset = row.asset if ref.is_version else row
            return EntitySnapshot(
                ref=ref,
                asset_id=asset.id,
                tenant_id=asset.tenant_id,
                original_filename=asset.original_filename,
                status=asset.status,
                storage_bucket=asset.storage_bucket,
                storage_path=row.storage_path,
                mime_type=row.mime_type,
                file_size=row.file_size,
                category_id=asset.category_id,
                upload_session_id=asset.upload_session_id,
                version_id=row.id if ref.is_version else None,
                version_number=row.version_number if ref.is_version else None,
                pipeline_status=row.pipeline_status if ref.is_version else None,
                meta_data=copy.deepcopy(row.meta_data or {}),
                pipeline_state=copy.deepcopy(row.pipeline_state or {}),
                thumbnail_status=row.thumbnail_status,
                thumbnail_error=row.thumbnail_error,
                thumbnail_retry_count=row.thumbnail_retry_count or 0,
                preview_status=row.preview_status,
                video_preview_status=row.video_preview_status,
                pipeline_completed_at=asset.pipeline_completed_at,
            )

    # -- row updates -----------------------------------------------------

    def update_fields(self, ref: EntityRef, **fields) -> None:
        """Set columns on the target row (the version row in version mode)."""
        with self.session_scope() as session:
            row = self._load(session, ref, lock=True)
            for name, value in fields.items():
                setattr(row, name, value)

    def update_asset_fields(self, asset_id: int, **fields) -> None:
        """Set columns on the parent asset row."""
        if 'status' in fields:
            raise ValueError("Asset visibility is not writable through the pipeline")
        self.update_fields(EntityRef.asset(asset_id), **fields)

    def merge_metadata(self, ref: EntityRef, updates: Dict[str, Any],
                       remove: Iterable[str] = ()) -> Dict[str, Any]:
        """Merge keys into the row's extended attributes map and return the result."""
        with self.session_scope() as session:
            row = self._load(session, ref, lock=True)
            merged = dict(row.meta_data or {})
            merged.update(copy.deepcopy(updates))
            for key in remove:
                merged.pop(key, None)
            row.meta_data = merged
            return copy.deepcopy(merged)

    def update_pipeline_state(self, ref: EntityRef,
                              mutator: Callable[[Dict[str, Any]], T]) -> T:
        """
        Apply ``mutator`` to a copy of the locked row's pipeline state and
        persist it.

        Returns:
            Whatever the mutator returns
        """
        with self.session_scope() as session:
            row = self._load(session, ref, lock=True)
            state = copy.deepcopy(row.pipeline_state or {})
            result = mutator(state)
            row.pipeline_state = state
            return result

    def transition_version(self, version_id: int, target: PipelineStatus) -> bool:
        with self.session_scope() as session:
            version = self._load(session, EntityRef.version(version_id), lock=True)
            return version.transition_pipeline_status(target)

    def finalize_version(self, version_id: int, preserved_keys: Iterable[str]) -> Dict[str, Any]:
        """
        Merge a completed version's metadata and derivative state into its
        asset, keeping the asset's own values for ``preserved_keys``.
        """
        with self.session_scope() as session:
            version = self._load(session, EntityRef.version(version_id), lock=True)
            asset = version.asset
            current = dict(asset.meta_data or {})
            merged = dict(current)
            merged.update(copy.deepcopy(version.meta_data or {}))
            for key in preserved_keys:
                if key in current:
                    merged[key] = current[key]
                else:
                    merged.pop(key, None)
            asset.meta_data = merged
            asset.mime_type = version.mime_type
            asset.storage_path = version.storage_path
            asset.file_size = version.file_size
            asset.thumbnail_status = version.thumbnail_status
            asset.thumbnail_error = version.thumbnail_error
            asset.preview_status = version.preview_status
            asset.video_preview_status = version.video_preview_status
            return copy.deepcopy(merged)

    # -- metadata values -------------------------------------------------

    def upsert_metadata_value(self, asset_id: int, field_key: str, value: Any,
                              source: str = 'automatic',
                              confidence: Optional[float] = None) -> bool:
        """
        Insert or overwrite a metadata value, recording history on change.

        Returns:
            True if the stored value changed
        """
        with self.session_scope() as session:
            row = (session.query(AssetMetadataValue)
                   .filter_by(asset_id=asset_id, field_key=field_key, source=source)
                   .with_for_update()
                   .first())
            old_value = row.value if row else None
            if row is not None and old_value == value and row.confidence == confidence:
                return False
            if row is None:
                row = AssetMetadataValue(asset_id=asset_id, field_key=field_key, source=source)
                session.add(row)
            row.value = copy.deepcopy(value)
            row.confidence = confidence
            row.updated_at = datetime.utcnow()
            session.add(AssetMetadataHistory(
                asset_id=asset_id,
                field_key=field_key,
                source=source,
                old_value=old_value,
                new_value=copy.deepcopy(value),
            ))
            return True

    def get_metadata_values(self, asset_id: int, source: Optional[str] = None) -> Dict[str, Any]:
        with self.session_scope() as session:
            query = session.query(AssetMetadataValue).filter_by(asset_id=asset_id)
            if source:
                query = query.filter_by(source=source)
            return {row.field_key: copy.deepcopy(row.value) for row in query.all()}

    # -- tags and candidates ---------------------------------------------

    def apply_tags(self, asset_id: int, tags: List[Tuple[str, float]],
                   source: str = 'ai', auto_apply_limit: Optional[int] = None) -> List[str]:
        """
        Attach tags not already present, highest confidence first.

        Returns:
            The tags that were newly applied
        """
        ordered = sorted(tags, key=lambda item: -(item[1] or 0.0))
        if auto_apply_limit is not None:
            ordered = ordered[:auto_apply_limit]
        applied = []
        with self.session_scope() as session:
            existing = {row.tag for row in session.query(AssetTag).filter_by(asset_id=asset_id)}
            for tag, confidence in ordered:
                normalized = tag.strip().lower()
                if not normalized or normalized in existing:
                    continue
                session.add(AssetTag(asset_id=asset_id, tag=normalized, source=source,
                                     confidence=confidence, auto_applied=True))
                existing.add(normalized)
                applied.append(normalized)
        return applied

    def get_tags(self, asset_id: int) -> List[str]:
        with self.session_scope() as session:
            return sorted(row.tag for row in session.query(AssetTag).filter_by(asset_id=asset_id))

    def add_candidates(self, asset_id: int, candidates: Dict[str, Dict[str, Any]],
                       source: str) -> int:
        """Store proposed values as pending candidates, one per field."""
        with self.session_scope() as session:
            for field_key, proposal in candidates.items():
                session.add(MetadataCandidate(
                    asset_id=asset_id,
                    field_key=field_key,
                    value=copy.deepcopy(proposal.get('value')),
                    confidence=proposal.get('confidence'),
                    source=source,
                ))
        return len(candidates)

    def get_candidates(self, asset_id: int, status: CandidateStatus,
                       source: Optional[str] = None) -> List[Dict[str, Any]]:
        with self.session_scope() as session:
            query = session.query(MetadataCandidate).filter_by(asset_id=asset_id, status=status)
            if source:
                query = query.filter_by(source=source)
            return [
                {'id': row.id, 'field_key': row.field_key, 'value': copy.deepcopy(row.value),
                 'confidence': row.confidence, 'source': row.source}
                for row in query.order_by(MetadataCandidate.id).all()
            ]

    def set_candidate_status(self, candidate_ids: Iterable[int], status: CandidateStatus) -> None:
        ids = list(candidate_ids)
        if not ids:
            return
        now = datetime.utcnow()
        with self.session_scope() as session:
            for row in session.query(MetadataCandidate).filter(MetadataCandidate.id.in_(ids)):
                row.status = status
                row.resolved_at = now

    # -- tenants ---------------------------------------------------------

    def get_tenant_settings(self, tenant_id: str) -> Optional[Dict[str, Any]]:
        with self.session_scope() as session:
            tenant = session.query(Tenant).filter_by(id=tenant_id).first()
            if tenant is None:
                return None
            return copy.deepcopy(tenant.settings or {})

    def ensure_tenant(self, tenant_id: str, name: Optional[str] = None,
                      settings: Optional[Dict[str, Any]] = None) -> bool:
        """Create the tenant if missing. Returns True if it was created."""
        with self.session_scope() as session:
            if session.query(Tenant).filter_by(id=tenant_id).first() is not None:
                return False
            session.add(Tenant(id=tenant_id, name=name or tenant_id, settings=dict(settings or {})))
            return True

    # -- creation and maintenance queries --------------------------------

    def create_asset(self, tenant_id: str, original_filename: str, storage_bucket: str,
                     storage_path: str, mime_type: Optional[str] = None,
                     file_size: Optional[int] = None, upload_session_id: Optional[str] = None,
                     status: AssetStatus = AssetStatus.VISIBLE,
                     category_id: Optional[int] = None,
                     meta_data: Optional[Dict[str, Any]] = None) -> int:
        with self.session_scope() as session:
            asset = Asset(
                tenant_id=tenant_id,
                original_filename=original_filename,
                storage_bucket=storage_bucket,
                storage_path=storage_path,
                mime_type=mime_type,
                file_size=file_size,
                upload_session_id=upload_session_id,
                status=status,
                category_id=category_id,
                meta_data=dict(meta_data or {}),
                pipeline_state={},
                thumbnail_status=DerivativeStatus.PENDING,
            )
            session.add(asset)
            session.flush()
            return asset.id

    def create_version(self, asset_id: int, storage_path: str,
                       mime_type: Optional[str] = None,
                       file_size: Optional[int] = None) -> int:
        with self.session_scope() as session:
            asset = self._load(session, EntityRef.asset(asset_id), lock=True)
            number = max((v.version_number for v in asset.versions), default=0) + 1
            version = AssetVersion(
                asset_id=asset.id,
                version_number=number,
                storage_path=storage_path,
                mime_type=mime_type or asset.mime_type,
                file_size=file_size,
                pipeline_status=PipelineStatus.PROCESSING,
                meta_data={},
                pipeline_state={},
                thumbnail_status=DerivativeStatus.PENDING,
            )
            session.add(version)
            session.flush()
            return version.id

    def find_failed_thumbnails(self, limit: int = 100,
                               older_than: Optional[timedelta] = None) -> List[EntityRef]:
        """Visible assets whose thumbnail generation ended in FAILED."""
        with self.session_scope() as session:
            query = (session.query(Asset.id)
                     .filter(Asset.thumbnail_status == DerivativeStatus.FAILED)
                     .filter(Asset.status == AssetStatus.VISIBLE))
            if older_than is not None:
                query = query.filter(Asset.updated_at <= datetime.utcnow() - older_than)
            return [EntityRef.asset(row.id) for row in query.order_by(Asset.id).limit(limit)]
