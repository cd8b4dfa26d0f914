"""API key authentication for the ticket gate."""

from app.auth.api_key import (
    APIKeyBackend,
    APIKeyStore,
    Principal,
    hash_api_key,
    require_auth,
)

__all__ = [
    "APIKeyBackend",
    "APIKeyStore",
    "Principal",
    "hash_api_key",
    "require_auth",
]
