"""Wires the ticket gate together from app.core.config.

The HTTP app and the CLI both build their components here so a door
scanner and the API server see the same ledger, keyring and policy.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.engine import Engine

from app.audit import AuditLogger
from app.auth.api_key import APIKeyStore
from app.core import config
from app.core.config import ConfigurationError
from app.db.session import build_engine, build_session_factory, init_database
from app.gate.events import EventBus
from app.gate.issuer import CodeIssuer
from app.gate.ledger import RedemptionLedger, SqlRedemptionLedger
from app.gate.ownership import HttpOwnershipOracle, OwnershipOracle
from app.gate.rest_ledger import RestRedemptionLedger
from app.gate.signer import ScopeKeyring
from app.gate.verify import TicketVerifier

log = logging.getLogger(__name__)


@dataclass
class GateRuntime:
    keyring: ScopeKeyring
    ledger: RedemptionLedger
    oracle: Optional[OwnershipOracle]
    verifier: TicketVerifier
    issuer: CodeIssuer
    audit: AuditLogger
    api_keys: APIKeyStore
    engine: Optional[Engine] = None

    @property
    def bus(self) -> EventBus:
        return self.verifier.bus

    async def aclose(self) -> None:
        """Release HTTP clients and database connections."""
        self.audit.detach()
        for client in (self.ledger, self.oracle):
            aclose = getattr(client, "aclose", None)
            if aclose is not None:
                await aclose()
        if self.engine is not None:
            self.engine.dispose()


def build_ledger() -> tuple[RedemptionLedger, Optional[Engine]]:
    """Ledger for the configured backend.

    Raises:
        ConfigurationError: Unknown backend or missing REST URL.
    """
    backend = config.LEDGER_BACKEND
    if backend == "rest":
        if not config.LEDGER_REST_URL:
            raise ConfigurationError(
                "TICKETGATE_LEDGER_REST_URL is required when TICKETGATE_LEDGER_BACKEND=rest"
            )
        log.info(f"Using REST ledger at {config.LEDGER_REST_URL}")
        ledger = RestRedemptionLedger(
            config.LEDGER_REST_URL,
            config.LEDGER_REST_KEY,
            timeout=config.LEDGER_TIMEOUT_SECONDS,
        )
        return ledger, None
    if backend == "sql":
        engine = build_engine(config.DATABASE_URL)
        init_database(engine)
        return SqlRedemptionLedger(build_session_factory(engine)), engine
    raise ConfigurationError(f"Unknown TICKETGATE_LEDGER_BACKEND: {backend!r}")


def build_oracle() -> Optional[OwnershipOracle]:
    if not config.OWNERSHIP_ORACLE_URL:
        if config.OWNERSHIP_CHECK_ENABLED:
            raise ConfigurationError(
                "TICKETGATE_OWNERSHIP_CHECK_ENABLED requires TICKETGATE_OWNERSHIP_ORACLE_URL"
            )
        return None
    return HttpOwnershipOracle(
        config.OWNERSHIP_ORACLE_URL, timeout=config.OWNERSHIP_TIMEOUT_SECONDS
    )


def build_runtime(
    *,
    ledger: Optional[RedemptionLedger] = None,
    oracle: Optional[OwnershipOracle] = None,
    keyring: Optional[ScopeKeyring] = None,
    api_keys: Optional[APIKeyStore] = None,
    clock: Callable[[], float] = time.time,
) -> GateRuntime:
    """Build every gate component.

    Components passed in are used as-is; the rest come from config.
    """
    engine = None
    if ledger is None:
        ledger, engine = build_ledger()
    if oracle is None:
        oracle = build_oracle()
    keyring = keyring or ScopeKeyring.from_config()
    if api_keys is None:
        api_keys = APIKeyStore.from_config()

    bus = EventBus()
    verifier = TicketVerifier(
        keyring,
        ledger,
        oracle,
        ownership_check=config.OWNERSHIP_CHECK_ENABLED and oracle is not None,
        ownership_required=config.OWNERSHIP_CHECK_REQUIRED,
        ownership_timeout=config.OWNERSHIP_TIMEOUT_SECONDS,
        clock=clock,
        bus=bus,
    )
    audit = AuditLogger()
    audit.attach(bus)

    return GateRuntime(
        keyring=keyring,
        ledger=ledger,
        oracle=oracle,
        verifier=verifier,
        issuer=CodeIssuer(keyring, clock=clock),
        audit=audit,
        api_keys=api_keys,
        engine=engine,
    )
