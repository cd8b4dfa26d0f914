"""Keyed digest signing for ticket verification codes.

The digest is HMAC-SHA256 over a canonical message built from the code
fields, rendered as lowercase hex. No I/O happens here.

The canonical message is:

    {ticket_id}|{scope_id}|{issued_at}[|{nonce}]

The nonce segment is omitted entirely (not left empty) for legacy codes
that were minted without one.
"""

import hashlib
import hmac
import logging
from typing import Mapping, Optional, Union

from app.core.config import ConfigurationError, MESSAGE_DELIMITER

log = logging.getLogger(__name__)

# Hex length of a SHA-256 digest
DIGEST_HEX_LENGTH = 64


def canonical_message(
    ticket_id: int,
    scope_id: str,
    issued_at: int,
    nonce: Optional[str] = None,
) -> bytes:
    """Build the canonical byte string signed for a code.

    Raises:
        ValueError: If scope_id or nonce contains the delimiter, which
            would make two different codes share one message.
    """
    if MESSAGE_DELIMITER in scope_id:
        raise ValueError(f"scope_id must not contain {MESSAGE_DELIMITER!r}")
    parts = [str(ticket_id), scope_id, str(issued_at)]
    if nonce:
        if MESSAGE_DELIMITER in nonce:
            raise ValueError(f"nonce must not contain {MESSAGE_DELIMITER!r}")
        parts.append(nonce)
    return MESSAGE_DELIMITER.join(parts).encode("utf-8")


def _as_bytes(secret: Union[str, bytes]) -> bytes:
    return secret.encode("utf-8") if isinstance(secret, str) else secret


def sign(message: bytes, secret: Union[str, bytes]) -> str:
    """Compute the hex HMAC-SHA256 digest of message under secret."""
    return hmac.new(_as_bytes(secret), message, hashlib.sha256).hexdigest()


def verify(message: bytes, secret: Union[str, bytes], candidate: str) -> bool:
    """Recompute the digest and compare it to candidate in constant time.

    A candidate that is not a string of the right length never matches.
    Hex case is normalized so an upper-case rendering of a valid digest
    is still accepted.
    """
    if not isinstance(candidate, str) or len(candidate) != DIGEST_HEX_LENGTH:
        return False
    expected = sign(message, secret)
    return hmac.compare_digest(
        expected.encode("ascii"),
        candidate.lower().encode("ascii", errors="replace"),
    )


class ScopeKeyring:
    """Resolves the signing secret for a scope.

    A scope with an explicit secret uses it; every other scope uses the
    default secret. The keyring is read-only after construction.
    """

    def __init__(
        self,
        default_secret: Union[str, bytes],
        scope_secrets: Optional[Mapping[str, Union[str, bytes]]] = None,
    ):
        if not default_secret:
            raise ConfigurationError("Default signing secret must not be empty")
        self._default = _as_bytes(default_secret)
        self._scoped = {k: _as_bytes(v) for k, v in (scope_secrets or {}).items()}

    def for_scope(self, scope_id: str) -> bytes:
        return self._scoped.get(scope_id, self._default)

    @property
    def scoped_ids(self) -> frozenset[str]:
        return frozenset(self._scoped)

    @classmethod
    def from_config(cls) -> "ScopeKeyring":
        """Build the keyring from app.core.config.

        Raises:
            ConfigurationError: If no secret is configured and
                TICKETGATE_REQUIRE_SECRET is set.
        """
        from app.core import config

        secret = config.QR_SECRET
        if not secret:
            if config.REQUIRE_SECRET:
                raise ConfigurationError("TICKETGATE_QR_SECRET is required but not set")
            log.warning("TICKETGATE_QR_SECRET not set; using development secret")
            secret = config.DEV_SECRET
        return cls(secret, config.SCOPE_SECRETS)
