"""Ticket verification orchestration.

Turns one raw scanned payload into one VerificationVerdict. Stages run
strictly in order and stop at the first failure:

1. Decode         -> InvalidFormat
2. Signature      -> ForgedOrCorrupt
3. Freshness      -> Expired
4. Ledger lookup  -> UnknownTicket / TransientFailure
5. Already used?  -> AlreadyRedeemed
6. Ownership cross-check (optional, advisory unless configured fail-closed)
                  -> OwnershipRejected / TransientFailure
7. Redeem         -> AlreadyRedeemed (race lost) / TransientFailure / valid

Signature is checked before any store access so forged codes cannot discover
which ticket ids exist. Freshness is checked before the lookup so expired
codes never reach the store. The cross-check runs before the redemption
write so a ticket the chain rejects keeps its redemption.

Only the ledger and oracle calls suspend; stages 1-3 are pure. Racing
redemptions of the same ticket are serialized by the ledger's conditional
write; no locking happens here.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from . import signer
from .api_models import ErrorKind, VerificationVerdict
from .codec import DecodeError, RotatingCode, VerificationCode, decode
from .events import EventBus, SecurityAlert, TicketRedeemed, VerificationCompleted
from .freshness import ROTATING, STATIC, FreshnessPolicy
from .ledger import (
    NotFound,
    RedeemOutcome,
    RedemptionLedger,
    StorageFailure,
    TicketRedemptionRecord,
)
from .ownership import OwnershipLookupError, OwnershipOracle

log = logging.getLogger(__name__)


# =============================================================================
# Ownership cross-check result
# =============================================================================


class OwnershipStatus(str, Enum):
    CONFIRMED = "confirmed"      # Oracle says valid
    REJECTED = "rejected"        # Oracle says not valid
    UNAVAILABLE = "unavailable"  # Oracle failed or timed out
    SKIPPED = "skipped"          # Check disabled or record has no contract_ref


@dataclass(frozen=True)
class OwnershipCheck:
    status: OwnershipStatus
    owner: Optional[str] = None
    detail: Optional[str] = None


# =============================================================================
# Verifier
# =============================================================================


class TicketVerifier:
    """Verifies scanned codes and redeems the tickets they prove.

    Args:
        keyring: Scope signing secrets.
        ledger: Redemption ledger client.
        oracle: Ownership oracle; required when ownership_check is True.
        ownership_check: Run the on-chain cross-check before redeeming.
        ownership_required: Fail closed (TransientFailure) when the oracle
            is unreachable instead of falling back to the ledger verdict.
        ownership_timeout: Budget in seconds for the whole cross-check.
        rotating_policy: Freshness policy for codes with a nonce.
        static_policy: Freshness policy for legacy codes.
        clock: Returns current Unix time in seconds.
        bus: Event bus for verification events.
    """

    def __init__(
        self,
        keyring: signer.ScopeKeyring,
        ledger: RedemptionLedger,
        oracle: Optional[OwnershipOracle] = None,
        *,
        ownership_check: bool = False,
        ownership_required: bool = False,
        ownership_timeout: float = 3.0,
        rotating_policy: FreshnessPolicy = ROTATING,
        static_policy: FreshnessPolicy = STATIC,
        clock: Callable[[], float] = time.time,
        bus: Optional[EventBus] = None,
    ):
        if ownership_check and oracle is None:
            raise ValueError("ownership_check requires an ownership oracle")
        self._keyring = keyring
        self._ledger = ledger
        self._oracle = oracle
        self._ownership_check = ownership_check
        self._ownership_required = ownership_required
        self._ownership_timeout = ownership_timeout
        self._rotating_policy = rotating_policy
        self._static_policy = static_policy
        self._clock = clock
        self.bus = bus or EventBus()

    def policy_for(self, code: VerificationCode) -> FreshnessPolicy:
        if isinstance(code, RotatingCode):
            return self._rotating_policy
        return self._static_policy

    async def verify(self, raw: Optional[str]) -> VerificationVerdict:
        """Verify one raw payload and redeem the ticket on success.

        Never raises for bad input or store failures; every outcome is a
        verdict. Unexpected internal errors become TransientFailure.
        """
        context: dict = {}
        try:
            verdict = await self._run(raw, context)
        except Exception as e:
            log.exception("Unexpected error during verification")
            verdict = VerificationVerdict.rejected(
                ErrorKind.TRANSIENT_FAILURE,
                f"Verification error: {e.__class__.__name__}",
                **context,
            )

        log.info(
            "verification_complete",
            extra={
                "ticket_id": verdict.ticket_id,
                "scope_id": verdict.scope_id,
                "error_kind": verdict.error_kind.value if verdict.error_kind else None,
            },
        )
        await self.bus.publish(VerificationCompleted(verdict))
        return verdict

    async def _run(self, raw: Optional[str], context: dict) -> VerificationVerdict:
        """Run the stages, filling context with what is known about the ticket."""
        # ---------------------------------------------------------------------
        # Stage 1: Decode
        # ---------------------------------------------------------------------
        decoded = decode(raw)
        if isinstance(decoded, DecodeError):
            return VerificationVerdict.rejected(ErrorKind.INVALID_FORMAT, decoded.detail)
        code = decoded
        context.update(ticket_id=code.ticket_id, scope_id=code.scope_id)

        # ---------------------------------------------------------------------
        # Stage 2: Signature
        # ---------------------------------------------------------------------
        secret = self._keyring.for_scope(code.scope_id)
        if not signer.verify(code.message(), secret, code.signature):
            detail = "Invalid code signature - possible forgery"
            log.warning(
                f"Signature mismatch for ticket {code.ticket_id} in {code.scope_id}",
                extra={**context, "error_kind": ErrorKind.FORGED_OR_CORRUPT.value},
            )
            await self.bus.publish(SecurityAlert(
                kind=ErrorKind.FORGED_OR_CORRUPT,
                detail=detail,
                ticket_id=code.ticket_id,
                scope_id=code.scope_id,
            ))
            return VerificationVerdict.rejected(ErrorKind.FORGED_OR_CORRUPT, detail, **context)

        # ---------------------------------------------------------------------
        # Stage 3: Freshness
        # ---------------------------------------------------------------------
        now = self._clock()
        policy = self.policy_for(code)
        if policy.is_expired(code.issued_at, now):
            age = int(now - code.issued_at)
            return VerificationVerdict.rejected(
                ErrorKind.EXPIRED,
                f"Code has expired ({age}s old, {policy.name} limit "
                f"{policy.max_age_seconds}s). Please refresh your ticket.",
                **context,
            )

        # ---------------------------------------------------------------------
        # Stage 4: Ledger lookup
        # ---------------------------------------------------------------------
        found = await self._ledger.lookup(code.ticket_id, code.scope_id)
        if isinstance(found, StorageFailure):
            return VerificationVerdict.rejected(
                ErrorKind.TRANSIENT_FAILURE, f"Ledger unavailable: {found.detail}", **context
            )
        if isinstance(found, NotFound):
            return VerificationVerdict.rejected(
                ErrorKind.UNKNOWN_TICKET,
                f"Ticket not found - tokenId: {code.ticket_id}, eventId: {code.scope_id}",
                **context,
            )
        record: TicketRedemptionRecord = found
        context["owner_ref"] = record.owner_ref

        # ---------------------------------------------------------------------
        # Stage 5: Already used?
        # ---------------------------------------------------------------------
        if record.is_used:
            return self._already_redeemed(record.used_at, context)

        # ---------------------------------------------------------------------
        # Stage 6: Ownership cross-check
        # ---------------------------------------------------------------------
        ownership = await self._check_ownership(record)
        if ownership.status == OwnershipStatus.REJECTED:
            return VerificationVerdict.rejected(
                ErrorKind.OWNERSHIP_REJECTED,
                ownership.detail or "Ticket is not valid on chain",
                ownership_checked=True,
                **context,
            )
        if ownership.status == OwnershipStatus.UNAVAILABLE:
            if self._ownership_required:
                return VerificationVerdict.rejected(
                    ErrorKind.TRANSIENT_FAILURE,
                    f"Ownership check unavailable: {ownership.detail}",
                    **context,
                )
            log.warning(
                f"Ownership check unavailable for ticket {code.ticket_id}, "
                f"falling back to ledger-only: {ownership.detail}",
                extra=context,
            )

        # ---------------------------------------------------------------------
        # Stage 7: Redeem
        # ---------------------------------------------------------------------
        used_at = datetime.fromtimestamp(now, tz=timezone.utc)
        result = await self._ledger.mark_used(code.ticket_id, code.scope_id, used_at)

        if result.outcome == RedeemOutcome.ALREADY_USED:
            # Lost the race between stage 5 and the conditional write
            return self._already_redeemed(result.used_at, context)
        if result.outcome == RedeemOutcome.NOT_FOUND:
            return VerificationVerdict.rejected(
                ErrorKind.UNKNOWN_TICKET,
                f"Ticket no longer in ledger - tokenId: {code.ticket_id}, eventId: {code.scope_id}",
                **context,
            )
        if result.outcome == RedeemOutcome.STORAGE_ERROR:
            return VerificationVerdict.rejected(
                ErrorKind.TRANSIENT_FAILURE,
                f"Could not record redemption: {result.detail}",
                **context,
            )

        committed_at = result.used_at or used_at
        owner_ref = ownership.owner or record.owner_ref
        await self.bus.publish(TicketRedeemed(
            ticket_id=code.ticket_id,
            scope_id=code.scope_id,
            used_at=committed_at,
            owner_ref=owner_ref,
        ))
        return VerificationVerdict.accepted(
            ticket_id=code.ticket_id,
            scope_id=code.scope_id,
            owner_ref=owner_ref,
            used_at=committed_at,
            ownership_checked=ownership.status == OwnershipStatus.CONFIRMED,
        )

    @staticmethod
    def _already_redeemed(used_at: Optional[datetime], context: dict) -> VerificationVerdict:
        when = f" on {used_at.isoformat()}" if used_at else ""
        return VerificationVerdict.rejected(
            ErrorKind.ALREADY_REDEEMED,
            f"Ticket already used{when}",
            is_used=True,
            used_at=used_at,
            **context,
        )

    async def _check_ownership(self, record: TicketRedemptionRecord) -> OwnershipCheck:
        """Ask the oracle whether the ticket is valid and who holds it.

        Both calls share one time budget. Any failure or timeout yields
        UNAVAILABLE; the caller decides between fail-open and fail-closed.
        """
        if not self._ownership_check or self._oracle is None:
            return OwnershipCheck(OwnershipStatus.SKIPPED)
        if not record.contract_ref:
            log.debug(f"No contract_ref for ticket {record.ticket_id}; skipping ownership check")
            return OwnershipCheck(OwnershipStatus.SKIPPED)

        oracle = self._oracle

        async def query() -> OwnershipCheck:
            if not await oracle.is_ticket_valid(record.contract_ref, record.ticket_id):
                return OwnershipCheck(
                    OwnershipStatus.REJECTED, detail="Ticket does not exist on chain"
                )
            owner = await oracle.current_owner(record.contract_ref, record.ticket_id)
            return OwnershipCheck(OwnershipStatus.CONFIRMED, owner=owner)

        try:
            return await asyncio.wait_for(query(), timeout=self._ownership_timeout)
        except asyncio.TimeoutError:
            return OwnershipCheck(
                OwnershipStatus.UNAVAILABLE,
                detail=f"timed out after {self._ownership_timeout}s",
            )
        except OwnershipLookupError as e:
            return OwnershipCheck(OwnershipStatus.UNAVAILABLE, detail=str(e))
        except Exception as e:
            # oracle clients may raise their own transport errors
            log.warning(f"Ownership oracle failed for ticket {record.ticket_id}: {e!r}")
            return OwnershipCheck(
                OwnershipStatus.UNAVAILABLE, detail=f"oracle error: {e.__class__.__name__}"
            )
