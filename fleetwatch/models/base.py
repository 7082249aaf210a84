"""
SQLAlchemy base configuration and session management.

Uses SQLAlchemy 2.0 style with type hints and declarative base.
Designed to be portable between SQLite (dev) and PostgreSQL (prod).

Engines are built explicitly rather than at import time so the ingestion
job, the read path and the tests can each point at their own database.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker, Session

from fleetwatch.config import DatabaseConfig, config


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


def build_engine(database: Optional[DatabaseConfig] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create an engine with settings appropriate for the database type.

    Statement timeouts come from the database config so that every store
    operation inherits the same bound.
    """
    database = database or config.database
    engine_kwargs = {
        'echo': config.debug if echo is None else echo,  # Log SQL in debug mode
    }

    if database.is_sqlite:
        engine_kwargs['connect_args'] = {
            'check_same_thread': False,
            'timeout': database.timeout_seconds,
        }
    else:
        timeout_ms = int(database.timeout_seconds * 1000)
        engine_kwargs['connect_args'] = {
            'options': f'-c statement_timeout={timeout_ms}',
        }
        engine_kwargs['pool_pre_ping'] = True

    engine = create_engine(database.url, **engine_kwargs)

    if database.is_sqlite:
        event.listen(engine, 'connect', _set_sqlite_pragma)

    return engine


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """
    Configure SQLite for concurrent ingestion and reads.

    WAL mode allows concurrent reads during writes - the ingestion job
    writes while readers keep querying.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute('PRAGMA journal_mode=WAL')
    cursor.execute('PRAGMA synchronous=NORMAL')
    cursor.execute('PRAGMA cache_size=-64000')  # 64MB
    # Position samples reference vessels
    cursor.execute('PRAGMA foreign_keys=ON')
    cursor.close()


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to one engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Avoid lazy loading issues
    )


@contextmanager
def session_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with session_scope(factory) as session:
            session.execute(...)

    Automatically handles commit/rollback and session cleanup.
    """
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def init_db(engine: Engine) -> None:
    """
    Initialize database schema.

    Creates all tables if they don't exist. For production,
    use Alembic migrations instead.
    """
    # Import models so they register on Base.metadata
    from fleetwatch.models import vessel, vessel_position  # noqa: F401

    Base.metadata.create_all(bind=engine)


def utc_now() -> datetime:
    """Current UTC time as a naive datetime, the form every column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
