"""
Database models for AssetFlow.

Defines the SQLAlchemy ORM models for assets, their versions, audit events,
metadata values and candidates, tags, tenants and escalation tickets.

Pipeline progress lives in ``pipeline_state`` (a typed, versioned stage
record, see ``assetflow.pipeline.ledger``); free-form extended attributes
live in ``meta_data``. The two are never mixed.
"""

from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, Float, Boolean, DateTime, Text,
    ForeignKey, Index, BigInteger, Enum, JSON, UniqueConstraint, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base
from sqlalchemy.sql import func
import enum

from ..exceptions import InvalidTransitionError

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


class AssetStatus(enum.Enum):
    """Grid visibility. Orthogonal to processing progress."""
    VISIBLE = "visible"
    HIDDEN = "hidden"
    FAILED = "failed"


class DerivativeStatus(enum.Enum):
    """Lifecycle of a generated derivative (thumbnails, previews)."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PipelineStatus(enum.Enum):
    """Per-version pipeline status."""
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"


class CandidateStatus(enum.Enum):
    """Metadata candidate resolution state."""
    PENDING = "pending"
    RESOLVED = "resolved"
    REJECTED = "rejected"
    SUGGESTED = "suggested"


class TicketStatus(enum.Enum):
    OPEN = "open"
    RESOLVED = "resolved"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class PipelineTrackedMixin:
    """Columns shared by every entity the pipeline can run against."""

    mime_type = Column(String(127))
    storage_path = Column(String(1024))
    file_size = Column(BigInteger)

    meta_data = Column('metadata', JSONType, default=dict)
    pipeline_state = Column(JSONType, default=dict)

    thumbnail_status = Column(Enum(DerivativeStatus, values_callable=_enum_values),
                              default=DerivativeStatus.PENDING)
    thumbnail_error = Column(Text)
    thumbnail_started_at = Column(DateTime)
    thumbnail_retry_count = Column(Integer, default=0)

    preview_status = Column(Enum(DerivativeStatus, values_callable=_enum_values),
                            default=DerivativeStatus.PENDING)
    preview_error = Column(Text)
    video_preview_status = Column(Enum(DerivativeStatus, values_callable=_enum_values),
                                  default=DerivativeStatus.PENDING)
    video_preview_error = Column(Text)


class Tenant(Base):
    """Tenant settings consulted by pipeline policy gates."""
    __tablename__ = 'tenants'

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    settings = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=func.now())


class Asset(PipelineTrackedMixin, Base):
    """Logical media item."""
    __tablename__ = 'assets'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False, index=True)
    original_filename = Column(String(512), nullable=False)
    status = Column(Enum(AssetStatus, values_callable=_enum_values),
                    default=AssetStatus.VISIBLE, nullable=False)
    category_id = Column(Integer)

    storage_bucket = Column(String(255), nullable=False)
    upload_session_id = Column(String(64))

    dominant_hue_group = Column(String(32))
    dominant_color_bucket = Column(String(32))
    analysis_status = Column(String(64))
    pipeline_completed_at = Column(DateTime)

    created_at = Column(DateTime, default=func.now())
    updated_at = Column(DateTime, default=func.now(), onupdate=func.now())

    versions = relationship("AssetVersion", back_populates="asset",
                            order_by="AssetVersion.version_number",
                            cascade="all, delete-orphan")
    tags = relationship("AssetTag", back_populates="asset", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_asset_tenant_status', 'tenant_id', 'status'),
        Index('idx_asset_thumbnail_status', 'thumbnail_status'),
    )

    def __repr__(self):
        return f"<Asset(id={self.id}, filename='{self.original_filename}', status={self.status})>"


class AssetVersion(PipelineTrackedMixin, Base):
    """Immutable version of an asset with its own pipeline status."""
    __tablename__ = 'asset_versions'

    # Forward-only pipeline transitions
    ALLOWED_TRANSITIONS = {
        PipelineStatus.PROCESSING: {PipelineStatus.COMPLETE, PipelineStatus.FAILED},
        PipelineStatus.COMPLETE: set(),
        PipelineStatus.FAILED: set(),
    }

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey('assets.id'), nullable=False)
    version_number = Column(Integer, nullable=False)
    pipeline_status = Column(Enum(PipelineStatus, values_callable=_enum_values),
                             default=PipelineStatus.PROCESSING, nullable=False)
    created_at = Column(DateTime, default=func.now())

    asset = relationship("Asset", back_populates="versions")

    __table_args__ = (
        UniqueConstraint('asset_id', 'version_number', name='uq_asset_version_number'),
    )

    def transition_pipeline_status(self, target: PipelineStatus) -> bool:
        """
        Move the version's pipeline status forward.

        Returns False when the version is already in ``target``.

        Raises:
            InvalidTransitionError: for any backward or sideways move
        """
        current = self.pipeline_status or PipelineStatus.PROCESSING
        if current == target:
            return False
        if target not in self.ALLOWED_TRANSITIONS[current]:
            raise InvalidTransitionError(current.value, target.value)
        self.pipeline_status = target
        return True

    def __repr__(self):
        return f"<AssetVersion(asset_id={self.asset_id}, v={self.version_number}, status={self.pipeline_status})>"


class AssetEvent(Base):
    """Immutable, tenant-scoped audit event."""
    __tablename__ = 'asset_events'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(String(64), nullable=False)
    asset_id = Column(Integer, ForeignKey('assets.id'), index=True)
    version_id = Column(Integer, ForeignKey('asset_versions.id'))
    event_type = Column(String(64), nullable=False)
    payload = Column(JSONType, default=dict)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index('idx_event_tenant_type', 'tenant_id', 'event_type'),
    )


@event.listens_for(AssetEvent, 'before_update')
def _reject_event_update(mapper, connection, target):
    raise ValueError("Asset events are immutable")


class AssetMetadataValue(Base):
    """Current value of a metadata field, one row per field and source."""
    __tablename__ = 'asset_metadata_values'

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey('assets.id'), nullable=False)
    field_key = Column(String(128), nullable=False)
    source = Column(String(32), nullable=False, default='automatic')
    value = Column(JSONType)
    confidence = Column(Float)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint('asset_id', 'field_key', 'source', name='uq_metadata_value'),
    )


class AssetMetadataHistory(Base):
    """Append-only change log for metadata values."""
    __tablename__ = 'asset_metadata_history'

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey('assets.id'), nullable=False, index=True)
    field_key = Column(String(128), nullable=False)
    source = Column(String(32), nullable=False)
    old_value = Column(JSONType)
    new_value = Column(JSONType)
    changed_at = Column(DateTime, default=datetime.utcnow)


class AssetTag(Base):
    __tablename__ = 'asset_tags'

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey('assets.id'), nullable=False)
    tag = Column(String(128), nullable=False)
    source = Column(String(32), default='ai')
    confidence = Column(Float)
    auto_applied = Column(Boolean, default=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    asset = relationship("Asset", back_populates="tags")

    __table_args__ = (
        UniqueConstraint('asset_id', 'tag', name='uq_asset_tag'),
    )


class MetadataCandidate(Base):
    """A proposed metadata value awaiting resolution."""
    __tablename__ = 'metadata_candidates'

    id = Column(Integer, primary_key=True)
    asset_id = Column(Integer, ForeignKey('assets.id'), nullable=False, index=True)
    field_key = Column(String(128), nullable=False)
    value = Column(JSONType)
    confidence = Column(Float)
    source = Column(String(32), nullable=False, default='automatic')
    status = Column(Enum(CandidateStatus, values_callable=_enum_values),
                    default=CandidateStatus.PENDING, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime)


class SupportTicket(Base):
    """Human-facing escalation ticket, deduplicated by fingerprint."""
    __tablename__ = 'support_tickets'

    id = Column(Integer, primary_key=True)
    fingerprint = Column(String(64), nullable=False, unique=True)
    tenant_id = Column(String(64))
    asset_id = Column(Integer)
    stage = Column(String(64))
    classification = Column(String(32))
    severity = Column(String(16))
    title = Column(String(255), nullable=False)
    body = Column(Text)
    status = Column(Enum(TicketStatus, values_callable=_enum_values),
                    default=TicketStatus.OPEN, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, index=True)
