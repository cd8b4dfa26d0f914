"""API key authentication for code minting.

Keys are stored as bcrypt hashes; the raw key only ever lives with the
ticket display backend that calls POST /codes.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import bcrypt as bcrypt_lib
from fastapi import Depends, HTTPException, Request
from starlette.authentication import (
    AuthCredentials,
    AuthenticationBackend,
    AuthenticationError,
    BaseUser,
)
from starlette.requests import HTTPConnection

from app.core import config

log = logging.getLogger(__name__)

BCRYPT_COST_FACTOR = 12

API_KEY_HEADER = "X-API-Key"


@dataclass
class Principal(BaseUser):
    """Caller identified by an API key."""

    key_id: str
    name: str
    roles: set[str] = field(default_factory=set)

    @property
    def is_authenticated(self) -> bool:
        return True

    @property
    def display_name(self) -> str:
        return self.name

    @property
    def identity(self) -> str:
        return self.key_id


@dataclass
class KeyConfig:
    id: str
    name: str
    hash: str
    roles: set[str]
    revoked: bool = False


class APIKeyStore:
    """Holds the configured API keys.

    Config format (JSON)::

        {"keys": [{"id": "display-1", "name": "Ticket display",
                   "hash": "$2b$12$...", "roles": ["codes:mint"]}]}
    """

    def __init__(self, keys: Optional[list[KeyConfig]] = None):
        self._keys: dict[str, KeyConfig] = {k.id: k for k in keys or []}

    @classmethod
    def from_json(cls, raw: str) -> "APIKeyStore":
        """Parse a key config document.

        Raises:
            ConfigurationError: If the document is not valid JSON or a key
                entry is missing a field.
        """
        try:
            data: dict[str, Any] = json.loads(raw)
        except json.JSONDecodeError as e:
            raise config.ConfigurationError(f"API key config is not valid JSON: {e}")
        if not isinstance(data, dict):
            raise config.ConfigurationError("API key config must be a JSON object")

        keys = []
        for entry in data.get("keys", []):
            try:
                keys.append(KeyConfig(
                    id=entry["id"],
                    name=entry["name"],
                    hash=entry["hash"],
                    roles=set(entry.get("roles", [])),
                    revoked=entry.get("revoked", False),
                ))
            except (KeyError, TypeError) as e:
                raise config.ConfigurationError(f"Invalid API key entry, missing field: {e}")
        return cls(keys)

    @classmethod
    def from_config(cls) -> "APIKeyStore":
        """Keys from TICKETGATE_API_KEYS, else TICKETGATE_API_KEYS_FILE."""
        if config.API_KEYS_JSON:
            store = cls.from_json(config.API_KEYS_JSON)
            log.info(f"Loaded {store.key_count} API keys from inline JSON")
            return store
        path = Path(config.API_KEYS_FILE) if config.API_KEYS_FILE else None
        if path is not None and path.exists():
            store = cls.from_json(path.read_text())
            log.info(f"Loaded {store.key_count} API keys from {path}")
            return store
        return cls()

    def verify(self, raw_key: str) -> tuple[Optional[Principal], Optional[str]]:
        """Match a raw key against the stored hashes.

        Returns:
            (Principal, None) for a valid key, (None, "revoked") for a revoked
            key, (None, "invalid") otherwise.
        """
        for key_config in self._keys.values():
            try:
                matched = bcrypt_lib.checkpw(raw_key.encode(), key_config.hash.encode())
            except ValueError:
                # malformed hash in config
                continue
            if matched:
                if key_config.revoked:
                    log.warning(f"Revoked key attempted: {key_config.id}")
                    return None, "revoked"
                return Principal(
                    key_id=key_config.id,
                    name=key_config.name,
                    roles=key_config.roles,
                ), None
        return None, "invalid"

    @property
    def key_count(self) -> int:
        return len(self._keys)


def hash_api_key(raw_key: str, cost_factor: int = BCRYPT_COST_FACTOR) -> str:
    """bcrypt hash of a raw key, for writing key config."""
    salt = bcrypt_lib.gensalt(rounds=cost_factor)
    return bcrypt_lib.hashpw(raw_key.encode(), salt).decode()


class APIKeyBackend(AuthenticationBackend):
    """Authenticates the X-API-Key header against the gate's key store.

    Requests without the header pass through unauthenticated; routes that
    need a caller depend on require_auth. A header that matches no key is
    rejected outright.
    """

    def __init__(self, exempt_paths: Optional[set[str]] = None):
        self.exempt_paths = exempt_paths or set()

    async def authenticate(
        self, conn: HTTPConnection
    ) -> Optional[tuple[AuthCredentials, Principal]]:
        if conn.url.path in self.exempt_paths:
            return None

        api_key = conn.headers.get(API_KEY_HEADER)
        if not api_key:
            return None

        gate = getattr(conn.app.state, "gate", None)
        if gate is None:
            raise AuthenticationError("Service not ready")

        principal, _ = gate.api_keys.verify(api_key)
        if principal is None:
            # same message for unknown and revoked keys
            raise AuthenticationError("Invalid API key")
        return AuthCredentials(sorted(principal.roles)), principal


async def _authenticated(request: Request) -> Principal:
    if not config.AUTH_ENABLED:
        return Principal(key_id="auth-disabled", name="Auth Disabled")

    user = request.scope.get("user")
    if user is None or not user.is_authenticated:
        raise HTTPException(
            status_code=401,
            detail="Authentication required",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return user


require_auth = Depends(_authenticated)
