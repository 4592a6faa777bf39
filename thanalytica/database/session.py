"""
Database Session Management

Engines, session factories and transactional scopes for the cache store.

The container owns the engine; nothing here is process-global. Every cache
operation opens its own short session through ``session_scope`` so request
handlers, recompute workers and batch jobs never share one.
"""

import os
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool, StaticPool

from .models import Base

logger = logging.getLogger(__name__)

DEFAULT_SQLITE_PATH = "thanalytica_dev.db"

# Connection pool for hosted PostgreSQL
POSTGRES_POOL: Dict[str, Any] = {
    "poolclass": QueuePool,
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

# Seconds SQLite waits on a locked file before raising
SQLITE_BUSY_TIMEOUT = 30


# =============================================================================
# URLS
# =============================================================================

def get_database_url(url: Optional[str] = None) -> str:
    """
    Resolve the database URL: explicit argument, then DATABASE_URL, then a
    local SQLite file.
    """
    resolved = url or os.getenv("DATABASE_URL")
    if not resolved:
        path = os.getenv("SQLITE_PATH", DEFAULT_SQLITE_PATH)
        logger.warning(f"DATABASE_URL not set, falling back to SQLite at {path}")
        return f"sqlite:///{path}"

    # SQLAlchemy only accepts the postgresql:// scheme
    scheme, sep, rest = resolved.partition("://")
    if scheme == "postgres":
        return f"postgresql{sep}{rest}"
    return resolved


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


# =============================================================================
# ENGINES
# =============================================================================

def _enable_foreign_keys(dbapi_conn, connection_record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute("PRAGMA foreign_keys=ON")
    finally:
        cursor.close()


def _sqlite_engine(url: str, echo: bool) -> Engine:
    options: Dict[str, Any] = {
        # Recompute workers and batch jobs run on other threads
        "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
        "echo": echo,
    }
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise each checkout sees an empty database
        options["poolclass"] = StaticPool

    engine = create_engine(url, **options)
    event.listen(engine, "connect", _enable_foreign_keys)
    return engine


def create_db_engine(url: Optional[str] = None, echo: bool = False) -> Engine:
    """
    Engine for ``url`` (resolved through ``get_database_url``).

    PostgreSQL gets a pre-pinged QueuePool; SQLite gets cross-thread access,
    a busy timeout and foreign key enforcement.
    """
    url = get_database_url(url)

    if is_postgres_url(url):
        engine = create_engine(url, echo=echo, **POSTGRES_POOL)
        backend = "PostgreSQL"
    else:
        engine = _sqlite_engine(url, echo)
        backend = "SQLite"

    logger.info(f"Created {backend} engine")
    return engine


# =============================================================================
# SESSIONS
# =============================================================================

def create_session_factory(engine: Engine) -> sessionmaker:
    # Rows are read after commit by callers that have already closed the session
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    One unit of work: commit on success, roll back on any exception.

    Usage:
        with session_scope(factory) as db:
            db.add(row)
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# SCHEMA
# =============================================================================

def init_db(engine: Engine) -> None:
    """Create any missing tables."""
    Base.metadata.create_all(bind=engine)
    logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")
