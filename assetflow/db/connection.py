"""
Database connection management for AssetFlow.

A module-level engine and session factory serve the CLI and Celery workers.
Components that touch the database receive a session scope callable instead
of reaching for these globals, so tests can hand them an isolated engine.
"""

import logging
from typing import Optional, Dict, Any, Callable, ContextManager
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def create_db_engine(url: str, echo: bool = False, pool_size: int = 5,
                     max_overflow: int = 10) -> Engine:
    """
    Create an engine with pooling appropriate to the backend.

    In-memory SQLite gets a StaticPool so every session shares the one
    connection that holds the database.
    """
    if url.startswith('sqlite'):
        kwargs: Dict[str, Any] = {'connect_args': {'check_same_thread': False}}
        if url in ('sqlite://', 'sqlite:///:memory:'):
            kwargs['poolclass'] = StaticPool
        return create_engine(url, echo=echo, **kwargs)

    return create_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )


def make_session_scope(session_factory: sessionmaker) -> SessionScope:
    """Build a transactional session context manager around a factory."""

    @contextmanager
    def session_scope():
        session = session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database session error: {e}")
            raise
        finally:
            session.close()

    return session_scope


def configure_database(config: Dict[str, Any]) -> None:
    """
    Configure the global database connection.

    Args:
        config: AssetFlow configuration dictionary
    """
    global _engine, _session_factory

    db_config = config.get('database', {})
    url = db_config.get('url') or 'sqlite:///assetflow.db'

    _engine = create_db_engine(
        url,
        echo=db_config.get('echo', False),
        pool_size=db_config.get('pool_size', 5),
        max_overflow=db_config.get('max_overflow', 10),
    )
    _session_factory = sessionmaker(bind=_engine, expire_on_commit=False)

    with _engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info(f"Database configured: {_engine.url.render_as_string(hide_password=True)}")

    if db_config.get('auto_init', True):
        init_database()


def get_engine() -> Optional[Engine]:
    """Get the SQLAlchemy engine instance."""
    return _engine


def get_session_factory() -> Optional[sessionmaker]:
    """Get the session factory."""
    return _session_factory


@contextmanager
def get_session():
    """
    Context manager for database sessions.

    Yields:
        Session: SQLAlchemy session, committed on clean exit

    Usage:
        with get_session() as session:
            session.add(asset)
    """
    if not _session_factory:
        raise RuntimeError("Database not configured. Call configure_database() first.")

    with make_session_scope(_session_factory)() as session:
        yield session


def init_database(engine: Optional[Engine] = None) -> None:
    """Create all tables that do not exist yet."""
    engine = engine or _engine
    if engine is None:
        raise RuntimeError("Database not configured. Call configure_database() first.")
    Base.metadata.create_all(engine)
    logger.info("Database tables initialized")
