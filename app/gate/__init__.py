"""Ticket gate: signed code verification and single-use redemption.

Public surface for the HTTP app and the CLI. Layering, bottom-up:
signer/freshness/codec (pure), ledger/ownership (storage and network),
verify (orchestration), scanner (door interaction).
"""

from app.gate.api_models import ErrorKind, VerificationVerdict
from app.gate.codec import (
    DecodeError,
    DecodeErrorKind,
    LegacyCode,
    RotatingCode,
    VerificationCode,
    decode,
    encode,
)
from app.gate.events import (
    EventBus,
    ScanCompleted,
    SecurityAlert,
    TicketRedeemed,
    VerificationCompleted,
)
from app.gate.freshness import ROTATING, STATIC, FreshnessPolicy
from app.gate.issuer import CodeIssuer
from app.gate.ledger import (
    InMemoryRedemptionLedger,
    LedgerError,
    NotFound,
    RedeemOutcome,
    RedeemResult,
    RedemptionLedger,
    SqlRedemptionLedger,
    StorageFailure,
    TicketRedemptionRecord,
)
from app.gate.ownership import HttpOwnershipOracle, OwnershipLookupError, OwnershipOracle
from app.gate.rest_ledger import RestRedemptionLedger
from app.gate.scanner import InputSource, LineSource, ManualOnlySource, ScanSession, ScanStats
from app.gate.signer import ScopeKeyring
from app.gate.verify import TicketVerifier

__all__ = [
    # Verdict
    "ErrorKind",
    "VerificationVerdict",
    # Codec
    "DecodeError",
    "DecodeErrorKind",
    "LegacyCode",
    "RotatingCode",
    "VerificationCode",
    "decode",
    "encode",
    # Signing and freshness
    "ScopeKeyring",
    "FreshnessPolicy",
    "ROTATING",
    "STATIC",
    "CodeIssuer",
    # Ledger
    "RedemptionLedger",
    "InMemoryRedemptionLedger",
    "SqlRedemptionLedger",
    "RestRedemptionLedger",
    "TicketRedemptionRecord",
    "NotFound",
    "StorageFailure",
    "RedeemOutcome",
    "RedeemResult",
    "LedgerError",
    # Ownership
    "OwnershipOracle",
    "HttpOwnershipOracle",
    "OwnershipLookupError",
    # Orchestration
    "TicketVerifier",
    "EventBus",
    "VerificationCompleted",
    "TicketRedeemed",
    "SecurityAlert",
    "ScanCompleted",
    # Door
    "ScanSession",
    "ScanStats",
    "InputSource",
    "ManualOnlySource",
    "LineSource",
]
