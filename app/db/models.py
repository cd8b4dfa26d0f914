"""SQLAlchemy ORM models for the redemption ledger.

One row per issued ticket, keyed by (token_id, event_id). The row is the
authoritative record of whether the ticket has been used for entry.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class TicketRecord(Base):
    """Redemption state of one ticket within one event.

    is_used only ever moves from False to True, through the conditional
    update in SqlRedemptionLedger.mark_used.
    """

    __tablename__ = "tickets"
    __table_args__ = (
        UniqueConstraint("token_id", "event_id", name="uq_ticket_token_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_id = Column(BigInteger, nullable=False, index=True)
    event_id = Column(String(64), nullable=False, index=True)
    owner_id = Column(String(128), nullable=True)  # Display only
    contract_ref = Column(String(64), nullable=True)  # Event's ticket contract
    is_used = Column(Boolean, default=False, nullable=False)
    used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<TicketRecord(token_id={self.token_id!r}, event_id={self.event_id!r}, "
            f"is_used={self.is_used!r})>"
        )
