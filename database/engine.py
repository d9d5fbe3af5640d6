"""
Database Persistence Layer - Core Engine.

============================================================
RESPONSIBILITY
============================================================
Engine, session factory and transaction scope for the SQL
backed job, model and audit stores.

- SQLAlchemy 2.x ORM, any URL SQLAlchemy accepts
- In-memory SQLite shares one connection across sessions
- Explicit transaction boundaries
- Hard failures on persistence errors

============================================================
"""

import os
import logging
from typing import Generator, Optional
from contextlib import contextmanager

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///training_engine.db"


# =============================================================
# DECLARATIVE BASE
# =============================================================

class Base(DeclarativeBase):
    """Declarative base for all orchestrator tables."""
    pass


# =============================================================
# DATABASE ENGINE
# =============================================================

def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("DATABASE_URL")
    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")
    return url


def _is_sqlite_memory(url: str) -> bool:
    return url.startswith("sqlite") and (":memory:" in url or url.rstrip("/") == "sqlite:")


def create_database_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy URL, defaults to DATABASE_URL
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    url = database_url or get_database_url()
    logger.info(f"Creating database engine for: {url.split('@')[-1]}")

    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if _is_sqlite_memory(url):
            # Every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool

    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Build a session factory bound to the engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# SESSION MANAGEMENT
# =============================================================

@contextmanager
def get_db_session(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Read-only session with automatic cleanup.

    Usage:
        with get_db_session(factory) as session:
            session.get(TrainingJobRecord, job_id)
    """
    session = factory()
    try:
        yield session
    except SQLAlchemyError as e:
        logger.error(f"Database error, rolling back: {e}")
        session.rollback()
        raise PersistenceError(f"Query failed: {e}", cause=e) from e
    finally:
        session.close()


@contextmanager
def transaction_scope(factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    Usage:
        with transaction_scope(factory) as session:
            session.merge(previous_record)
            session.merge(deployed_record)
            # Commits automatically at end
    """
    session = factory()
    try:
        yield session
        session.commit()
        logger.debug("Database transaction committed successfully")
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise PersistenceError(f"Transaction failed: {e}", cause=e) from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================

def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        PersistenceError if connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise PersistenceError(f"Cannot connect to database: {e}", cause=e) from e


def create_all_tables(engine: Engine) -> None:
    """
    Create all tables defined in ORM models.

    Raises:
        PersistenceError if table creation fails
    """
    # Register the records with Base before create_all
    from . import models  # noqa: F401

    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise PersistenceError(f"Table creation failed: {e}", cause=e) from e


def initialize_database(database_url: Optional[str] = None) -> sessionmaker:
    """
    Full database initialization sequence.

    1. Create engine
    2. Verify connection
    3. Create tables if not exist

    Returns:
        Session factory bound to the initialized engine
    """
    logger.info("=" * 60)
    logger.info("INITIALIZING DATABASE PERSISTENCE LAYER")
    logger.info("=" * 60)

    engine = create_database_engine(database_url)
    verify_database_connection(engine)
    create_all_tables(engine)
    return get_session_factory(engine)


__all__ = [
    "Base",
    "DEFAULT_DATABASE_URL",
    "get_database_url",
    "create_database_engine",
    "get_session_factory",
    "get_db_session",
    "transaction_scope",
    "verify_database_connection",
    "create_all_tables",
    "initialize_database",
]
