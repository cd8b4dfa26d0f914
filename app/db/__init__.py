"""Persistence for the redemption ledger.

SQLAlchemy ORM model and session management for the tickets table.
"""

from app.db.models import Base, TicketRecord
from app.db.session import (
    build_engine,
    build_session_factory,
    get_db_session,
    init_database,
)

__all__ = [
    "Base",
    "TicketRecord",
    "build_engine",
    "build_session_factory",
    "get_db_session",
    "init_database",
]
