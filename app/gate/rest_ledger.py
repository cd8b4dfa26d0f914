"""Redemption ledger backed by a hosted record store over HTTP.

Speaks the PostgREST dialect used by hosted Postgres backends:

- lookup:    GET   /tickets?token_id=eq.{id}&event_id=eq.{scope}
- mark_used: PATCH /tickets?token_id=eq.{id}&event_id=eq.{scope}&is_used=eq.false
             with Prefer: return=representation

The PATCH filter on is_used=eq.false is the conditional write: Postgres
applies it under a row lock, so only one racing request gets a row back.
An empty representation means the caller lost the race or the ticket does
not exist; a follow-up lookup tells the two apart.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from .ledger import (
    LedgerError,
    LookupResult,
    NotFound,
    RedeemOutcome,
    RedeemResult,
    RedemptionLedger,
    StorageFailure,
    TicketRedemptionRecord,
)

log = logging.getLogger(__name__)

_SELECT = "token_id,event_id,is_used,used_at,owner_id,contract_ref"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_row(row: dict[str, Any]) -> TicketRedemptionRecord:
    """Parse one table row. token_id may be stored as text."""
    return TicketRedemptionRecord(
        ticket_id=int(row["token_id"]),
        scope_id=str(row["event_id"]),
        is_used=bool(row.get("is_used")),
        used_at=_parse_timestamp(row.get("used_at")),
        owner_ref=row.get("owner_id"),
        contract_ref=row.get("contract_ref"),
    )


class RestRedemptionLedger(RedemptionLedger):
    """Ledger client for a PostgREST-compatible tickets table.

    Args:
        base_url: REST root, e.g. https://project.example.co/rest/v1
        api_key: Service key sent as apikey and bearer token.
        timeout: Per-request timeout in seconds.
        client: Pre-built AsyncClient (tests inject a mock transport here).
        table: Table name.
    """

    def __init__(
        self,
        base_url: str = "",
        api_key: str = "",
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
        table: str = "tickets",
    ):
        self._table = table
        self._owns_client = client is None
        if client is None:
            headers = {"Accept": "application/json"}
            if api_key:
                headers["apikey"] = api_key
                headers["Authorization"] = f"Bearer {api_key}"
            client = httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)
        self._client = client

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @staticmethod
    def _key_params(ticket_id: int, scope_id: str) -> dict[str, str]:
        return {"token_id": f"eq.{ticket_id}", "event_id": f"eq.{scope_id}"}

    async def lookup(self, ticket_id: int, scope_id: str) -> LookupResult:
        params = {"select": _SELECT, **self._key_params(ticket_id, scope_id)}
        try:
            response = await self._client.get(f"/{self._table}", params=params)
            response.raise_for_status()
            rows = response.json()
            if not rows:
                return NotFound(ticket_id, scope_id)
            return _parse_row(rows[0])
        except httpx.TimeoutException:
            log.warning(f"Ledger lookup timeout for ticket {ticket_id} in {scope_id}")
            return StorageFailure("lookup timed out")
        except httpx.HTTPError as e:
            log.warning(f"Ledger lookup HTTP error for ticket {ticket_id} in {scope_id}: {e}")
            return StorageFailure(f"lookup failed: {e.__class__.__name__}")
        except (ValueError, KeyError, TypeError) as e:
            log.error(f"Ledger lookup returned an unreadable row: {e}")
            return StorageFailure("lookup returned an unreadable row")

    async def mark_used(
        self, ticket_id: int, scope_id: str, used_at: datetime
    ) -> RedeemResult:
        params = {**self._key_params(ticket_id, scope_id), "is_used": "eq.false"}
        body = {"is_used": True, "used_at": used_at.isoformat()}
        try:
            response = await self._client.patch(
                f"/{self._table}",
                params=params,
                json=body,
                headers={"Prefer": "return=representation"},
            )
            response.raise_for_status()
            rows = response.json()
        except httpx.HTTPError as e:
            log.warning(f"Ledger mark_used HTTP error for ticket {ticket_id} in {scope_id}: {e}")
            return RedeemResult(
                RedeemOutcome.STORAGE_ERROR, detail=f"update failed: {e.__class__.__name__}"
            )
        except ValueError:
            return RedeemResult(RedeemOutcome.STORAGE_ERROR, detail="update returned invalid JSON")

        if rows:
            try:
                return RedeemResult(RedeemOutcome.OK, _parse_row(rows[0]))
            except (ValueError, KeyError, TypeError):
                # Committed, but the echo is unreadable
                return RedeemResult(
                    RedeemOutcome.OK,
                    TicketRedemptionRecord(ticket_id, scope_id, is_used=True, used_at=used_at),
                )

        current = await self.lookup(ticket_id, scope_id)
        if isinstance(current, NotFound):
            return RedeemResult(RedeemOutcome.NOT_FOUND)
        if isinstance(current, StorageFailure):
            return RedeemResult(RedeemOutcome.STORAGE_ERROR, detail=current.detail)
        return RedeemResult(RedeemOutcome.ALREADY_USED, current)

    async def register_ticket(
        self,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str] = None,
        contract_ref: Optional[str] = None,
    ) -> TicketRedemptionRecord:
        body = {
            "token_id": str(ticket_id),
            "event_id": scope_id,
            "owner_id": owner_ref,
            "contract_ref": contract_ref,
            "is_used": False,
        }
        try:
            response = await self._client.post(
                f"/{self._table}",
                json=body,
                headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise LedgerError(f"Could not register ticket {ticket_id} in {scope_id}: {e}") from e

        current = await self.lookup(ticket_id, scope_id)
        if not isinstance(current, TicketRedemptionRecord):
            raise LedgerError(f"Ticket {ticket_id} in {scope_id} not readable after insert")
        return current
