"""
Ticket gate API models.

Verdict, error taxonomy and HTTP request/response schemas.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from app.core import config


# =============================================================================
# Error taxonomy
# =============================================================================

class ErrorKind(str, Enum):
    """Reason a scan was rejected."""
    INVALID_FORMAT = "InvalidFormat"          # Payload not decodable
    FORGED_OR_CORRUPT = "ForgedOrCorrupt"     # Signature mismatch
    EXPIRED = "Expired"                       # Code aged out
    UNKNOWN_TICKET = "UnknownTicket"          # No ledger record for (ticket, scope)
    ALREADY_REDEEMED = "AlreadyRedeemed"      # Ledger shows prior use
    OWNERSHIP_REJECTED = "OwnershipRejected"  # Oracle says ticket not valid on chain
    TRANSIENT_FAILURE = "TransientFailure"    # Storage or network hiccup


# Retryability per kind. Only transient failures are worth an immediate re-scan;
# an expired code needs a refreshed ticket display first.
ERROR_RETRYABILITY: Dict[ErrorKind, bool] = {
    ErrorKind.INVALID_FORMAT: False,
    ErrorKind.FORGED_OR_CORRUPT: False,
    ErrorKind.EXPIRED: False,
    ErrorKind.UNKNOWN_TICKET: False,
    ErrorKind.ALREADY_REDEEMED: False,
    ErrorKind.OWNERSHIP_REJECTED: False,
    ErrorKind.TRANSIENT_FAILURE: True,
}


# =============================================================================
# Verdict
# =============================================================================

class VerificationVerdict(BaseModel):
    """Outcome of verifying one scanned code.

    ticket_id/scope_id are present whenever the payload was structurally
    decodable, even if the verdict is a rejection. is_used is set only when
    the rejection is AlreadyRedeemed.
    """
    is_valid: bool
    ticket_id: Optional[int] = None
    scope_id: Optional[str] = None
    owner_ref: Optional[str] = None
    is_used: Optional[bool] = None
    used_at: Optional[datetime] = None
    error_kind: Optional[ErrorKind] = None
    detail: Optional[str] = None
    retryable: bool = False
    ownership_checked: bool = False

    @classmethod
    def accepted(
        cls,
        ticket_id: int,
        scope_id: str,
        owner_ref: Optional[str],
        used_at: datetime,
        ownership_checked: bool = False,
    ) -> "VerificationVerdict":
        return cls(
            is_valid=True,
            ticket_id=ticket_id,
            scope_id=scope_id,
            owner_ref=owner_ref,
            used_at=used_at,
            ownership_checked=ownership_checked,
        )

    @classmethod
    def rejected(cls, kind: ErrorKind, detail: str, **context) -> "VerificationVerdict":
        """Build a rejection verdict; context carries any known ticket fields."""
        return cls(
            is_valid=False,
            error_kind=kind,
            detail=detail,
            retryable=ERROR_RETRYABILITY[kind],
            **context,
        )


# =============================================================================
# HTTP Request/Response Models
# =============================================================================

class MintRequest(BaseModel):
    """Request body for POST /codes"""
    ticket_id: int = Field(ge=0, le=config.MAX_TICKET_ID)
    scope_id: str = Field(min_length=1)


class MintResponse(BaseModel):
    code: str
    issued_at: int
    expires_at: int


class VerifyRequest(BaseModel):
    """Request body for POST /verify"""
    code: str


class TicketStatusResponse(BaseModel):
    """Response for GET /tickets/{scope_id}/{ticket_id}"""
    ticket_id: int
    scope_id: str
    is_used: bool
    used_at: Optional[datetime] = None
    owner_ref: Optional[str] = None
    contract_ref: Optional[str] = None
    chain_owner: Optional[str] = None
    chain_valid: Optional[bool] = None
    chain_errors: List[str] = Field(default_factory=list)


class LogLevelRequest(BaseModel):
    level: str
