"""
Immutable, tenant-scoped audit events for pipeline transitions.

Events feed timelines and observability only; nothing reads them for
control flow.
"""

import copy
import logging
from enum import Enum
from typing import Any, Dict, List, Optional

from ..db.models import AssetEvent

logger = logging.getLogger(__name__)


class EventType(Enum):
    PROCESSING_STARTED = "asset.processing.started"
    PROCESSING_FAILED = "asset.processing.failed"
    STAGE_COMPLETED = "asset.stage.completed"
    STAGE_SKIPPED = "asset.stage.skipped"
    STAGE_FAILED = "asset.stage.failed"
    THUMBNAIL_STARTED = "asset.thumbnail.started"
    THUMBNAIL_COMPLETED = "asset.thumbnail.completed"
    THUMBNAIL_FAILED = "asset.thumbnail.failed"
    THUMBNAIL_SKIPPED = "asset.thumbnail.skipped"
    COLOR_ANALYSIS_COMPLETED = "asset.color_analysis.completed"
    METADATA_POPULATED = "asset.metadata.populated"
    AI_TAGGING_COMPLETED = "asset.ai_tagging.completed"
    AI_METADATA_GENERATED = "asset.ai_metadata.generated"
    AI_METADATA_FAILED = "asset.ai_metadata.failed"
    AI_SUGGESTIONS_GENERATED = "asset.ai_suggestions.generated"
    FINALIZED = "asset.finalized"
    PROMOTED = "asset.promoted"


class ActivityRecorder:
    """Writes AssetEvent rows through an injected session scope."""

    def __init__(self, session_scope):
        self.session_scope = session_scope

    def record(self, entity, event_type: EventType,
               payload: Optional[Dict[str, Any]] = None) -> None:
        """
        Record an event for an entity snapshot.

        Args:
            entity: EntitySnapshot the event belongs to
            event_type: Event type tag
            payload: Small structured payload
        """
        with self.session_scope() as session:
            session.add(AssetEvent(
                tenant_id=entity.tenant_id,
                asset_id=entity.asset_id,
                version_id=entity.version_id,
                event_type=event_type.value,
                payload=copy.deepcopy(payload or {}),
            ))
        logger.debug(f"Event {event_type.value} for asset {entity.asset_id}")

    def list_for_asset(self, asset_id: int) -> List[Dict[str, Any]]:
        with self.session_scope() as session:
            rows = (session.query(AssetEvent)
                    .filter_by(asset_id=asset_id)
                    .order_by(AssetEvent.id)
                    .all())
            return [
                {'event_type': row.event_type, 'payload': copy.deepcopy(row.payload or {}),
                 'version_id': row.version_id, 'created_at': row.created_at}
                for row in rows
            ]
