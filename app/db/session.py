"""Database session management for the redemption ledger.

- build_engine(): SQLAlchemy engine for a database URL
- build_session_factory(): sessionmaker bound to an engine
- get_db_session(): context manager committing on success, rolling back on error
- init_database(): create tables idempotently

PostgreSQL gets connection pooling; SQLite is supported for local
development and tests.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

log = logging.getLogger(__name__)


def build_engine(database_url: str) -> Engine:
    """Create an engine configured for the database type."""
    if database_url.startswith("sqlite"):
        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,
            "connect_args": {"check_same_thread": False},
        }
        if ":memory:" in database_url or database_url == "sqlite://":
            # In-memory databases only exist on one connection
            from sqlalchemy.pool import StaticPool

            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs = {
            "echo": False,
            "pool_pre_ping": True,      # Verify connections before use
            "pool_size": 5,
            "max_overflow": 10,
            "pool_recycle": 1800,       # Recycle connections every 30 min
        }

    engine = create_engine(database_url, **engine_kwargs)

    if database_url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            """busy_timeout lets concurrent conditional updates wait for the write lock."""
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def build_session_factory(engine: Engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def get_db_session(session_factory: Callable[[], Session]) -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with get_db_session(factory) as db:
            row = db.query(TicketRecord).filter(...).first()

    The session is committed on success and rolled back on exception.
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


def init_database(engine: Engine) -> None:
    """Create all tables (CREATE IF NOT EXISTS).

    For file-backed SQLite, also ensures the database directory exists.
    """
    from app.db.models import Base

    url = engine.url.render_as_string(hide_password=True)
    log.info(f"Initializing database at {url.split('@')[-1]}")

    if engine.url.drivername.startswith("sqlite"):
        db_path = engine.url.database
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    Base.metadata.create_all(bind=engine)
    log.info("Database tables created successfully")
