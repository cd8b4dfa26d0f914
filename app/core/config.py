"""
Ticket gate configuration constants.

Constants are organized into:
- NORMATIVE: Wire-format facts shared by every minting and verifying party
- CONFIGURABLE: Defaults that a deployment may override
- POLICY: Implementation choices for optional behaviour
- OPERATIONAL: Deployment-specific settings (env vars)

Values are read once at import time. Policy values reach the verifier
through app.runtime; tests override them with monkeypatch.setattr.
"""

import json
import os
from pathlib import Path


class ConfigurationError(Exception):
    """Raised when the environment describes an unusable configuration."""


# =============================================================================
# NORMATIVE CONSTANTS (wire format)
# =============================================================================

# Current QR payload schema version. Unversioned payloads are legacy codes.
CODE_SCHEMA_VERSION: int = 1

# Separator used when building the canonical signed message.
# Must be identical on mint and verify or every code fails.
MESSAGE_DELIMITER: str = "|"

# Largest ticket id the ledgers can store (signed 64-bit column)
MAX_TICKET_ID: int = 2**63 - 1


# =============================================================================
# CONFIGURABLE DEFAULTS
# =============================================================================

# Max age for rotating codes (ticket display regenerates continuously)
ROTATING_MAX_AGE_SECONDS: int = int(os.getenv("TICKETGATE_ROTATING_MAX_AGE", "30"))

# Max age for static legacy codes (no nonce)
STATIC_MAX_AGE_SECONDS: int = int(os.getenv("TICKETGATE_STATIC_MAX_AGE", str(24 * 60 * 60)))

# Door scanner cool-down after a processed scan
SCAN_COOLDOWN_SECONDS: float = float(os.getenv("TICKETGATE_SCAN_COOLDOWN", "3.0"))

# Cool-down after a TransientFailure verdict; 0 allows an immediate re-scan
TRANSIENT_COOLDOWN_SECONDS: float = float(os.getenv("TICKETGATE_TRANSIENT_COOLDOWN", "0.0"))

# Number of recent verdicts kept per scan session
RECENT_VERDICTS_LIMIT: int = int(os.getenv("TICKETGATE_RECENT_VERDICTS", "10"))


# =============================================================================
# POLICY CONSTANTS
# =============================================================================

# Advisory on-chain ownership cross-check before redemption.
# Disabled by default; the ledger is the source of truth for entry.
OWNERSHIP_CHECK_ENABLED: bool = os.getenv(
    "TICKETGATE_OWNERSHIP_CHECK_ENABLED", "false"
).lower() == "true"

# Fail closed when the ownership oracle cannot be reached.
# Deployment-time choice; False keeps the cross-check advisory.
OWNERSHIP_CHECK_REQUIRED: bool = os.getenv(
    "TICKETGATE_OWNERSHIP_CHECK_REQUIRED", "false"
).lower() == "true"

# Budget for both oracle calls of one cross-check
OWNERSHIP_TIMEOUT_SECONDS: float = float(os.getenv("TICKETGATE_OWNERSHIP_TIMEOUT", "3.0"))

# Refuse to start without an explicit signing secret
REQUIRE_SECRET: bool = os.getenv("TICKETGATE_REQUIRE_SECRET", "false").lower() == "true"


# =============================================================================
# OPERATIONAL SETTINGS
# =============================================================================

ADMIN_ENDPOINT_ENABLED: bool = os.getenv(
    "TICKETGATE_ADMIN_ENDPOINT_ENABLED", "true"
).lower() == "true"

OWNERSHIP_ORACLE_URL: str = os.getenv("TICKETGATE_OWNERSHIP_ORACLE_URL", "")

# API key authentication for POST /codes
AUTH_ENABLED: bool = os.getenv("TICKETGATE_AUTH_ENABLED", "true").lower() == "true"
AUTH_EXEMPT_PATHS: set[str] = {"/healthz", "/version"}
API_KEYS_JSON: str = os.getenv("TICKETGATE_API_KEYS", "")  # Inline JSON override
API_KEYS_FILE: str = os.getenv("TICKETGATE_API_KEYS_FILE", "")

# Ledger backend: "sql" (SQLAlchemy) or "rest" (hosted record store)
LEDGER_BACKEND: str = os.getenv("TICKETGATE_LEDGER_BACKEND", "sql").lower()
LEDGER_REST_URL: str = os.getenv("TICKETGATE_LEDGER_REST_URL", "")
LEDGER_REST_KEY: str = os.getenv("TICKETGATE_LEDGER_REST_KEY", "")
LEDGER_TIMEOUT_SECONDS: float = float(os.getenv("TICKETGATE_LEDGER_TIMEOUT", "5.0"))

# Development-only signing secret, used when TICKETGATE_QR_SECRET is unset
DEV_SECRET: str = "ticketgate-dev-secret"


def _get_data_dir() -> Path:
    """Determine data directory.

    Priority:
    1. TICKETGATE_DATA_DIR env var
    2. ~/.ticketgate (local development)
    3. /tmp/ticketgate (container fallback when home unavailable)
    """
    env_path = os.getenv("TICKETGATE_DATA_DIR")
    if env_path:
        return Path(env_path)
    try:
        home_path = Path.home() / ".ticketgate"
        home_path.mkdir(parents=True, exist_ok=True)
        return home_path
    except (OSError, PermissionError):
        return Path("/tmp/ticketgate")


DATA_DIR: Path = _get_data_dir()


def _get_database_url() -> str:
    """Database URL, falling back to SQLite under the data dir."""
    if url := os.getenv("TICKETGATE_DATABASE_URL"):
        return url
    return f"sqlite:///{DATA_DIR}/ticketgate.db"


DATABASE_URL: str = _get_database_url()


def _parse_scope_secrets() -> dict[str, str]:
    """Parse per-scope secrets from TICKETGATE_SCOPE_SECRETS.

    Environment variable format (JSON object):
        TICKETGATE_SCOPE_SECRETS={"event-7": "s3cret", "event-8": "0ther"}

    Returns:
        dict of scope_id -> secret. Empty when unset.

    Raises:
        ConfigurationError: If the value is not a JSON object of strings.
    """
    env_value = os.getenv("TICKETGATE_SCOPE_SECRETS", "")
    if not env_value:
        return {}
    try:
        parsed = json.loads(env_value)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"TICKETGATE_SCOPE_SECRETS is not valid JSON: {e}")
    if not isinstance(parsed, dict) or not all(
        isinstance(k, str) and isinstance(v, str) and v for k, v in parsed.items()
    ):
        raise ConfigurationError(
            "TICKETGATE_SCOPE_SECRETS must be a JSON object of non-empty strings"
        )
    return parsed


SCOPE_SECRETS: dict[str, str] = _parse_scope_secrets()

# Default signing secret. Empty string means "not configured".
QR_SECRET: str = os.getenv("TICKETGATE_QR_SECRET", "")
