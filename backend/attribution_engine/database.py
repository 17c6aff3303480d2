"""Database session and base configuration.

WHAT:
    Provides the SQLAlchemy engine and session factory.
    Exposes a FastAPI dependency and a context manager for database access.

WHY:
    - API requests get one session per request (get_db)
    - Workers and scripts open sessions explicitly (get_sync_session)
    - Attribution runs open one session per worker thread (SessionLocal)

USAGE:
    from attribution_engine.database import SessionLocal, get_db, get_sync_session

    @router.get("/items")
    def get_items(db: Session = Depends(get_db)):
        return db.query(Item).all()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - attribution_engine/routers/ (consumers of these sessions)
"""

import os
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Returns:
        Database connection string

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        # Attempt to load from local .env for developer convenience
        from attribution_engine.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    # Heroku-style URL
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)

    return database_url


DATABASE_URL = _get_database_url()


# =============================================================================
# ENGINE
# =============================================================================

def build_engine(database_url: str, sqlite_immediate: bool = False):
    """Create an engine with pool settings suited to the backend.

    SQLite engines (tests/dev) do not support pool_size/max_overflow and need
    check_same_thread disabled because attribution runs use worker threads.
    pysqlite's own transaction handling is switched off so SQLAlchemy emits
    BEGIN itself; without that SAVEPOINT (identity resolution) misbehaves.

    sqlite_immediate takes the write lock at BEGIN, so concurrent SQLite
    writers queue on the busy timeout instead of failing when a read
    transaction upgrades to a write.
    """
    if database_url.startswith("sqlite"):
        sqlite_engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _configure_sqlite_connection(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            if ":memory:" not in database_url:
                # Readers must not block per-conversion writers
                cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

        @event.listens_for(sqlite_engine, "begin")
        def _emit_sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE" if sqlite_immediate else "BEGIN")

        return sqlite_engine

    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


engine = build_engine(DATABASE_URL)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

# Base is defined in attribution_engine.models to ensure a single registry
from .models import Base  # noqa: E402


# =============================================================================
# FASTAPI DEPENDENCIES
# =============================================================================

def get_db() -> Generator[Session, None, None]:
    """Yield a database session for FastAPI dependency injection.

    Yields:
        SQLAlchemy Session instance
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_session_factory() -> sessionmaker:
    """Session factory for services that open their own sessions (attribution runs)."""
    return SessionLocal


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Example:
        with get_sync_session() as db:
            runs = db.query(AttributionRun).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
