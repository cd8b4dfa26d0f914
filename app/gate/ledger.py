"""Redemption ledger client.

The ledger is the authoritative record of ticket usage, keyed by
(ticket_id, scope_id). Its one mutable transition, unused -> used, is a
conditional write owned by the backing store: concurrent callers racing
on the same key are serialized there, exactly one wins, and every other
caller observes ALREADY_USED.

Results are discriminated values. Storage faults are reported as
StorageFailure / STORAGE_ERROR and never raised to the caller.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, Optional, Tuple, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.config import MAX_TICKET_ID
from app.db.models import TicketRecord
from app.db.session import get_db_session

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class TicketRedemptionRecord:
    """Ledger-side state of one ticket.

    Attributes:
        ticket_id: Token id of the ticket.
        scope_id: Event the ticket belongs to.
        is_used: Starts False, becomes True exactly once.
        used_at: Set together with is_used.
        owner_ref: Current holder, for display only.
        contract_ref: Event's ticket contract, for the ownership cross-check.
    """
    ticket_id: int
    scope_id: str
    is_used: bool = False
    used_at: Optional[datetime] = None
    owner_ref: Optional[str] = None
    contract_ref: Optional[str] = None


@dataclass(frozen=True)
class NotFound:
    ticket_id: int
    scope_id: str


@dataclass(frozen=True)
class StorageFailure:
    detail: str


LookupResult = Union[TicketRedemptionRecord, NotFound, StorageFailure]


class RedeemOutcome(str, Enum):
    OK = "ok"
    ALREADY_USED = "already_used"
    NOT_FOUND = "not_found"
    STORAGE_ERROR = "storage_error"


@dataclass(frozen=True)
class RedeemResult:
    """Result of mark_used.

    record is the state after the call when known: the freshly committed
    record for OK, the winner's record for ALREADY_USED.
    """
    outcome: RedeemOutcome
    record: Optional[TicketRedemptionRecord] = None
    detail: Optional[str] = None

    @property
    def used_at(self) -> Optional[datetime]:
        return self.record.used_at if self.record else None


class LedgerError(Exception):
    """Raised by register_ticket when the store cannot create the record."""


class RedemptionLedger(ABC):
    """Interface the verification core uses to read and redeem tickets."""

    @abstractmethod
    async def lookup(self, ticket_id: int, scope_id: str) -> LookupResult:
        """Current record for (ticket_id, scope_id)."""

    @abstractmethod
    async def mark_used(
        self, ticket_id: int, scope_id: str, used_at: datetime
    ) -> RedeemResult:
        """Atomically set is_used=True, used_at=used_at where is_used is False."""

    @abstractmethod
    async def register_ticket(
        self,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str] = None,
        contract_ref: Optional[str] = None,
    ) -> TicketRedemptionRecord:
        """Create the record for an issued ticket. Idempotent per key.

        Raises:
            LedgerError: If the store fails.
        """


# =============================================================================
# In-memory ledger
# =============================================================================


class InMemoryRedemptionLedger(RedemptionLedger):
    """Process-local ledger for tests and local demos.

    The asyncio lock stands in for the store's conditional-write
    primitive; it is only correct within a single event loop.
    """

    def __init__(self):
        self._records: Dict[Tuple[int, str], TicketRedemptionRecord] = {}
        self._lock = asyncio.Lock()

    async def lookup(self, ticket_id: int, scope_id: str) -> LookupResult:
        async with self._lock:
            record = self._records.get((ticket_id, scope_id))
        return record if record is not None else NotFound(ticket_id, scope_id)

    async def mark_used(
        self, ticket_id: int, scope_id: str, used_at: datetime
    ) -> RedeemResult:
        async with self._lock:
            key = (ticket_id, scope_id)
            record = self._records.get(key)
            if record is None:
                return RedeemResult(RedeemOutcome.NOT_FOUND)
            if record.is_used:
                return RedeemResult(RedeemOutcome.ALREADY_USED, record)
            record = replace(record, is_used=True, used_at=used_at)
            self._records[key] = record
            return RedeemResult(RedeemOutcome.OK, record)

    async def register_ticket(
        self,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str] = None,
        contract_ref: Optional[str] = None,
    ) -> TicketRedemptionRecord:
        async with self._lock:
            key = (ticket_id, scope_id)
            if key not in self._records:
                self._records[key] = TicketRedemptionRecord(
                    ticket_id, scope_id, owner_ref=owner_ref, contract_ref=contract_ref
                )
            return self._records[key]


# =============================================================================
# SQL ledger
# =============================================================================


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_record(row: TicketRecord) -> TicketRedemptionRecord:
    return TicketRedemptionRecord(
        ticket_id=row.token_id,
        scope_id=row.event_id,
        is_used=bool(row.is_used),
        used_at=_aware(row.used_at),
        owner_ref=row.owner_id,
        contract_ref=row.contract_ref,
    )


class SqlRedemptionLedger(RedemptionLedger):
    """Ledger backed by the tickets table via SQLAlchemy.

    mark_used issues a single conditional UPDATE ... WHERE is_used = false
    and decides the outcome from the affected row count, so the database
    serializes racing scanners. Blocking driver calls run in a worker
    thread to keep the event loop free.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _key_filter(ticket_id: int, scope_id: str):
        return (TicketRecord.token_id == ticket_id, TicketRecord.event_id == scope_id)

    async def lookup(self, ticket_id: int, scope_id: str) -> LookupResult:
        if ticket_id > MAX_TICKET_ID:
            # outside the BIGINT column, so no row can match
            return NotFound(ticket_id, scope_id)
        return await asyncio.to_thread(self._lookup_sync, ticket_id, scope_id)

    def _lookup_sync(self, ticket_id: int, scope_id: str) -> LookupResult:
        try:
            with get_db_session(self._session_factory) as session:
                row = session.execute(
                    select(TicketRecord).where(*self._key_filter(ticket_id, scope_id))
                ).scalar_one_or_none()
                if row is None:
                    return NotFound(ticket_id, scope_id)
                return _to_record(row)
        except SQLAlchemyError as e:
            log.error(f"Ledger lookup failed for ticket {ticket_id} in {scope_id}: {e}")
            return StorageFailure(f"lookup failed: {e.__class__.__name__}")

    async def mark_used(
        self, ticket_id: int, scope_id: str, used_at: datetime
    ) -> RedeemResult:
        if ticket_id > MAX_TICKET_ID:
            return RedeemResult(RedeemOutcome.NOT_FOUND)
        return await asyncio.to_thread(self._mark_used_sync, ticket_id, scope_id, used_at)

    def _mark_used_sync(
        self, ticket_id: int, scope_id: str, used_at: datetime
    ) -> RedeemResult:
        key_filter = self._key_filter(ticket_id, scope_id)
        try:
            with get_db_session(self._session_factory) as session:
                result = session.execute(
                    update(TicketRecord)
                    .where(*key_filter, TicketRecord.is_used.is_(False))
                    .values(is_used=True, used_at=used_at)
                    .execution_options(synchronize_session=False)
                )
                won = result.rowcount == 1

                row = session.execute(
                    select(TicketRecord).where(*key_filter)
                ).scalar_one_or_none()
                if row is None:
                    return RedeemResult(RedeemOutcome.NOT_FOUND)
                outcome = RedeemOutcome.OK if won else RedeemOutcome.ALREADY_USED
                return RedeemResult(outcome, _to_record(row))
        except SQLAlchemyError as e:
            log.error(f"Ledger mark_used failed for ticket {ticket_id} in {scope_id}: {e}")
            return RedeemResult(
                RedeemOutcome.STORAGE_ERROR, detail=f"update failed: {e.__class__.__name__}"
            )

    async def register_ticket(
        self,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str] = None,
        contract_ref: Optional[str] = None,
    ) -> TicketRedemptionRecord:
        if ticket_id > MAX_TICKET_ID:
            raise LedgerError(f"ticket_id exceeds {MAX_TICKET_ID}")
        return await asyncio.to_thread(
            self._register_sync, ticket_id, scope_id, owner_ref, contract_ref
        )

    def _register_sync(
        self,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str],
        contract_ref: Optional[str],
    ) -> TicketRedemptionRecord:
        key_filter = self._key_filter(ticket_id, scope_id)
        try:
            with self._session_factory() as session:
                row = session.execute(select(TicketRecord).where(*key_filter)).scalar_one_or_none()
                if row is not None:
                    return _to_record(row)
                row = TicketRecord(
                    token_id=ticket_id,
                    event_id=scope_id,
                    owner_id=owner_ref,
                    contract_ref=contract_ref,
                    is_used=False,
                )
                session.add(row)
                try:
                    session.commit()
                except IntegrityError:
                    # Another issuer created it first
                    session.rollback()
                    row = session.execute(select(TicketRecord).where(*key_filter)).scalar_one()
                return _to_record(row)
        except SQLAlchemyError as e:
            raise LedgerError(f"Could not register ticket {ticket_id} in {scope_id}: {e}") from e
