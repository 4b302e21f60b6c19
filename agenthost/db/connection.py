"""Database connection management for agenthost.

Synchronous SQLAlchemy access. SQLite for local use with a PostgreSQL
path for shared deployments; every orchestration decision reads the
instance row, so all processes must point at the same database.

Usage:
    from agenthost.db.connection import get_db, init_db

    init_db()  # Create tables
    with get_db_context() as db:
        ...
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from agenthost.db.models import Base
from agenthost.utils.redaction import redact_url

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """Get database URL from environment or use default SQLite.

    Precedence:
    1. DATABASE_URL (canonical)
    2. AGENTHOST_DB_PATH (converted to sqlite URL)
    3. sqlite:///<user data dir>/agenthost.db
    """
    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("AGENTHOST_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from agenthost.utils.paths import ensure_dirs_exist, get_default_db_path

    ensure_dirs_exist()
    return f"sqlite:///{get_default_db_path()}"


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers + a single writer, so a poller
      and the API can share one file.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.close()


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine for url, with SQLite pragmas when applicable."""
    is_sqlite = url.startswith("sqlite")
    new_engine = create_engine(
        url,
        connect_args={"check_same_thread": False} if is_sqlite else {},
        echo=echo,
    )
    if is_sqlite:
        event.listen(new_engine, "connect", _set_sqlite_pragma)
    return new_engine


DATABASE_URL = get_database_url()
engine = build_engine(
    DATABASE_URL, echo=os.environ.get("SQL_ECHO", "").lower() == "true"
)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


def configure_database(url: str | None, echo: bool = False) -> None:
    """Rebind the session factory to url (no-op when url is None or unchanged).

    Called once by the CLI and API entrypoints with AppConfig.database.url.
    """
    global engine, DATABASE_URL
    if not url or url == DATABASE_URL:
        return
    logger.info("Binding database to %s", redact_url(url))
    engine = build_engine(url, echo=echo)
    DATABASE_URL = url
    SessionLocal.configure(bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Yield a database session for request-scoped use with FastAPI Depends().

    Yields:
        Session: SQLAlchemy session that will be closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database sessions outside FastAPI.

    Commits on success, rolls back on exception.

    Yields:
        Session: SQLAlchemy session.
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


def init_db() -> None:
    """Create all tables that do not exist yet."""
    Base.metadata.create_all(bind=engine)
