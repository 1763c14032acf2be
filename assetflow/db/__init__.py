"""
Database package for AssetFlow.
"""

from .connection import (
    configure_database, get_session, get_engine, get_session_factory,
    init_database, create_db_engine, make_session_scope
)
from .models import (
    Base, Asset, AssetVersion, AssetEvent, AssetMetadataValue, AssetMetadataHistory,
    AssetTag, MetadataCandidate, SupportTicket, Tenant,
    AssetStatus, DerivativeStatus, PipelineStatus, CandidateStatus, TicketStatus
)
from .operations import AssetRepository, EntityRef, EntitySnapshot

__all__ = [
    'configure_database', 'get_session', 'get_engine', 'get_session_factory',
    'init_database', 'create_db_engine', 'make_session_scope',
    'Base', 'Asset', 'AssetVersion', 'AssetEvent', 'AssetMetadataValue',
    'AssetMetadataHistory', 'AssetTag', 'MetadataCandidate', 'SupportTicket', 'Tenant',
    'AssetStatus', 'DerivativeStatus', 'PipelineStatus', 'CandidateStatus', 'TicketStatus',
    'AssetRepository', 'EntityRef', 'EntitySnapshot',
]
