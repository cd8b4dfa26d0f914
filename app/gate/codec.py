"""QR payload codec.

Builds and parses the compact JSON carried inside the ticket QR code:

    {"v":1,"tokenId":42,"eventId":"event-7","signature":"<hex>","timestamp":1700000000,"nonce":"k3j9x0a"}

Decoding either yields a fully typed code or a DecodeError, never a
partially filled object:

- RotatingCode: carries a nonce, regenerated continuously by the display.
- LegacyCode: no nonce; minted by older displays as a long-lived static code.

Unversioned payloads (no "v") are accepted as legacy-format documents.
"ticketId" is accepted as an alias of "tokenId".
"""

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from app.core.config import CODE_SCHEMA_VERSION, MAX_TICKET_ID, MESSAGE_DELIMITER
from app.gate.signer import canonical_message

# Largest raw payload we attempt to parse
MAX_PAYLOAD_LENGTH = 2048

SUPPORTED_VERSIONS = frozenset({CODE_SCHEMA_VERSION})


@dataclass(frozen=True)
class RotatingCode:
    """Code minted with a nonce by a rotating ticket display."""
    ticket_id: int
    scope_id: str
    issued_at: int
    signature: str
    nonce: str

    def __post_init__(self):
        if not self.nonce:
            raise ValueError("RotatingCode requires a non-empty nonce")

    def message(self) -> bytes:
        return canonical_message(self.ticket_id, self.scope_id, self.issued_at, self.nonce)


@dataclass(frozen=True)
class LegacyCode:
    """Static code minted without a nonce."""
    ticket_id: int
    scope_id: str
    issued_at: int
    signature: str

    @property
    def nonce(self) -> None:
        return None

    def message(self) -> bytes:
        return canonical_message(self.ticket_id, self.scope_id, self.issued_at)


VerificationCode = Union[RotatingCode, LegacyCode]


class DecodeErrorKind(str, Enum):
    MALFORMED_PAYLOAD = "MalformedPayload"
    MISSING_FIELD = "MissingField"


@dataclass(frozen=True)
class DecodeError:
    """Why a raw payload could not be decoded."""
    kind: DecodeErrorKind
    detail: str
    field: Optional[str] = None

    @classmethod
    def malformed(cls, reason: str, field: Optional[str] = None) -> "DecodeError":
        return cls(DecodeErrorKind.MALFORMED_PAYLOAD, f"Malformed payload: {reason}", field)

    @classmethod
    def missing(cls, field: str) -> "DecodeError":
        return cls(DecodeErrorKind.MISSING_FIELD, f"Missing required field: {field}", field)


def encode(code: VerificationCode) -> str:
    """Serialize a code to its compact JSON wire form."""
    data: dict[str, Any] = {
        "v": CODE_SCHEMA_VERSION,
        "tokenId": code.ticket_id,
        "eventId": code.scope_id,
        "signature": code.signature,
        "timestamp": code.issued_at,
    }
    if code.nonce:
        data["nonce"] = code.nonce
    return json.dumps(data, separators=(",", ":"))


def decode(raw: Optional[str]) -> Union[RotatingCode, LegacyCode, DecodeError]:
    """Parse a raw QR payload.

    Returns:
        RotatingCode or LegacyCode on success, DecodeError otherwise.
        A missing or empty nonce is not an error; it selects LegacyCode.
    """
    if not isinstance(raw, str) or not raw.strip():
        return DecodeError.malformed("empty payload")
    if len(raw) > MAX_PAYLOAD_LENGTH:
        return DecodeError.malformed(f"payload exceeds {MAX_PAYLOAD_LENGTH} characters")

    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as e:
        return DecodeError.malformed(f"not valid JSON ({e.__class__.__name__})")
    if not isinstance(data, dict):
        return DecodeError.malformed(f"expected a JSON object, got {type(data).__name__}")

    if "v" in data:
        version = data["v"]
        if not isinstance(version, int) or isinstance(version, bool) or version not in SUPPORTED_VERSIONS:
            return DecodeError.malformed(f"unsupported schema version {version!r}", "v")

    raw_ticket = data.get("tokenId")
    if raw_ticket is None:
        raw_ticket = data.get("ticketId")
    if _absent(raw_ticket):
        return DecodeError.missing("tokenId")
    ticket_id = _parse_uint(raw_ticket)
    if ticket_id is None:
        return DecodeError.malformed("tokenId must be a non-negative integer", "tokenId")
    if ticket_id > MAX_TICKET_ID:
        return DecodeError.malformed(f"tokenId exceeds {MAX_TICKET_ID}", "tokenId")

    scope_id = data.get("eventId")
    if _absent(scope_id):
        return DecodeError.missing("eventId")
    if not isinstance(scope_id, str):
        return DecodeError.malformed("eventId must be a string", "eventId")
    if MESSAGE_DELIMITER in scope_id:
        return DecodeError.malformed(f"eventId contains {MESSAGE_DELIMITER!r}", "eventId")

    signature = data.get("signature")
    if _absent(signature):
        return DecodeError.missing("signature")
    if not isinstance(signature, str):
        return DecodeError.malformed("signature must be a string", "signature")

    raw_ts = data.get("timestamp")
    if _absent(raw_ts):
        return DecodeError.missing("timestamp")
    issued_at = _parse_uint(raw_ts)
    if issued_at is None:
        return DecodeError.malformed("timestamp must be a non-negative integer", "timestamp")

    nonce = data.get("nonce")
    if _absent(nonce):
        return LegacyCode(ticket_id, scope_id, issued_at, signature)
    if not isinstance(nonce, str):
        return DecodeError.malformed("nonce must be a string", "nonce")
    if MESSAGE_DELIMITER in nonce:
        return DecodeError.malformed(f"nonce contains {MESSAGE_DELIMITER!r}", "nonce")
    return RotatingCode(ticket_id, scope_id, issued_at, signature, nonce)


def _absent(value: Any) -> bool:
    return value is None or value == ""


def _parse_uint(value: Any) -> Optional[int]:
    """Accept an int or a string of ASCII digits; reject bools and floats."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, str) and value.isascii() and value.isdigit():
        return int(value)
    return None
