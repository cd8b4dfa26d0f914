"""Code minting for the ticket display.

Runs on the trusted server side: the display asks for a fresh code and
renders the returned string as a QR image. The signing secret never
leaves the server.
"""

import secrets
import time
from typing import Callable, Union

from app.core.config import MAX_TICKET_ID

from .codec import LegacyCode, RotatingCode, encode
from .signer import ScopeKeyring, canonical_message, sign

# Random bytes per nonce (hex-encoded, so twice as many characters)
NONCE_BYTES = 8


def new_nonce() -> str:
    return secrets.token_hex(NONCE_BYTES)


class CodeIssuer:
    """Mints signed verification codes.

    Args:
        keyring: Signing secrets per scope.
        clock: Returns current Unix time in seconds.
        nonce_factory: Returns a fresh nonce.
    """

    def __init__(
        self,
        keyring: ScopeKeyring,
        clock: Callable[[], float] = time.time,
        nonce_factory: Callable[[], str] = new_nonce,
    ):
        self._keyring = keyring
        self._clock = clock
        self._nonce_factory = nonce_factory

    def mint(
        self, ticket_id: int, scope_id: str, rotating: bool = True
    ) -> Union[RotatingCode, LegacyCode]:
        """Mint a code stamped with the current time.

        Rotating codes carry a fresh nonce. rotating=False produces a
        static legacy code, kept for displays that cannot refresh.

        Raises:
            ValueError: If ticket_id is not an integer in 0..MAX_TICKET_ID or
                scope_id is empty or contains the message delimiter.
        """
        if isinstance(ticket_id, bool) or not isinstance(ticket_id, int) or ticket_id < 0:
            raise ValueError(f"ticket_id must be a non-negative integer, got {ticket_id!r}")
        if ticket_id > MAX_TICKET_ID:
            raise ValueError(f"ticket_id exceeds {MAX_TICKET_ID}")
        if not scope_id:
            raise ValueError("scope_id must not be empty")

        issued_at = int(self._clock())
        secret = self._keyring.for_scope(scope_id)
        if not rotating:
            message = canonical_message(ticket_id, scope_id, issued_at)
            return LegacyCode(ticket_id, scope_id, issued_at, sign(message, secret))

        nonce = self._nonce_factory()
        message = canonical_message(ticket_id, scope_id, issued_at, nonce)
        return RotatingCode(ticket_id, scope_id, issued_at, sign(message, secret), nonce)

    def generate_code(self, ticket_id: int, scope_id: str) -> str:
        """Mint a rotating code and return its wire form."""
        return encode(self.mint(ticket_id, scope_id))
