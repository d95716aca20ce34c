"""Database connection management for the A2P registry.

Provides synchronous database access using SQLAlchemy. SQLite is the
default for development; any SQLAlchemy URL (e.g. PostgreSQL) works in
production since the schema only relies on portable constructs plus
partial unique indexes.

Usage:
    # Sync (for FastAPI Depends)
    from a2p_registry.db.connection import get_db, init_db

    init_db()  # Create tables
    db = next(get_db())
    # ... use db session
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from a2p_registry.db.models import Base

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./a2p_registry.db"


# Configuration
def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. A2P_DATABASE_URL (also set by the config layer's env overrides)
    3. sqlite:///./a2p_registry.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    database_url = os.environ.get("A2P_DATABASE_URL", "").strip()
    if database_url:
        return database_url

    return DEFAULT_DATABASE_URL


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with the SQLite pragmas this service relies on.

    Args:
        url: SQLAlchemy database URL.
        echo: Log every SQL statement.

    Returns:
        Configured Engine.
    """
    is_sqlite = url.startswith("sqlite")
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )
    if is_sqlite:
        event.listen(new_engine, "connect", set_sqlite_pragma)
    return new_engine


def set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers plus a single writer, so the
      API, the poller and the CLI can share one database file.
    - busy_timeout: Wait for the writer lock instead of failing immediately.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


# Engine creation
DATABASE_URL = get_database_url()

engine = build_engine(
    DATABASE_URL,
    echo=os.environ.get("SQL_ECHO", "").lower() == "true",
)

# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Dependency functions for FastAPI


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for synchronous operations.

    Intended for use with FastAPI's Depends() for request-scoped sessions.

    Usage:
        @app.get("/registrations/{registration_id}")
        def get_registration(registration_id: str, db: Session = Depends(get_db)):
            return db.get(A2PRegistration, registration_id)

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# Context managers for manual session management


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside of FastAPI.

    Usage:
        with get_db_context() as db:
            registration = db.query(A2PRegistration).first()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# Initialization functions


def init_db(bind: Engine | None = None) -> None:
    """Create all database tables.

    Uses the Base.metadata from models.py to create all defined tables.
    Safe to call multiple times - will not recreate existing tables.

    Args:
        bind: Engine to initialize. Defaults to the module engine.
    """
    target = bind or engine
    Base.metadata.create_all(bind=target)
    logger.info("Database initialized at %s", target.url.render_as_string(hide_password=True))


# Cleanup functions


def close_db() -> None:
    """Close the engine and dispose of connection pool."""
    engine.dispose()
