import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.authentication import AuthenticationMiddleware

from app.auth.api_key import APIKeyBackend, Principal, require_auth
from app.core import config
from app.gate.api_models import (
    LogLevelRequest,
    MintRequest,
    MintResponse,
    TicketStatusResponse,
    VerifyRequest,
)
from app.gate.codec import encode
from app.gate.freshness import ROTATING
from app.gate.ledger import NotFound, StorageFailure
from app.gate.ownership import OwnershipLookupError
from app.logging_config import configure_logging
from app.runtime import GateRuntime, build_runtime

configure_logging()
log = logging.getLogger("ticketgate")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the gate on startup unless one was installed beforehand."""
    runtime = getattr(app.state, "gate", None)
    owned = runtime is None
    if owned:
        log.info("Starting ticket gate...")
        try:
            runtime = build_runtime()
        except Exception as e:
            log.error(f"Failed to initialize ticket gate: {e}")
            raise
        app.state.gate = runtime
        log.info("Ticket gate started")
    if config.AUTH_ENABLED and runtime.api_keys.key_count == 0:
        log.warning("No API keys configured; POST /codes will reject every caller")

    yield

    if owned:
        log.info("Shutting down ticket gate...")
        await runtime.aclose()
        app.state.gate = None
        log.info("Ticket gate stopped")


app = FastAPI(title="Ticket Gate", version="0.1.0", lifespan=lifespan)


def on_auth_error(conn, exc):
    return JSONResponse(
        status_code=401,
        content={"detail": str(exc)},
        headers={"WWW-Authenticate": "ApiKey"},
    )


app.add_middleware(
    AuthenticationMiddleware,
    backend=APIKeyBackend(exempt_paths=config.AUTH_EXEMPT_PATHS),
    on_error=on_auth_error,
)


def get_gate(request: Request) -> GateRuntime:
    return request.app.state.gate


@app.get("/healthz")
def healthz():
    return {"ok": True}


@app.middleware("http")
async def req_log(request: Request, call_next):
    start = time.time()
    route = request.url.path
    remote = request.client.host if request.client else "-"
    resp = await call_next(request)
    duration_ms = int((time.time() - start) * 1000)
    log.info(f"request_complete status={resp.status_code} duration_ms={duration_ms}",
             extra={"request_id": "-", "route": route, "remote_addr": remote})
    return resp


@app.post("/codes", response_model=MintResponse)
def mint_code(
    req: MintRequest,
    principal: Principal = require_auth,
    gate: GateRuntime = Depends(get_gate),
):
    """Mint a rotating code for a ticket display.

    Requires an API key (X-API-Key) unless TICKETGATE_AUTH_ENABLED=false.
    """
    try:
        code = gate.issuer.mint(req.ticket_id, req.scope_id)
    except ValueError as e:
        return JSONResponse(status_code=400, content={"detail": str(e)})
    log.info(f"code_minted by={principal.identity}",
             extra={"route": "/codes", "ticket_id": req.ticket_id, "scope_id": req.scope_id})
    return MintResponse(
        code=encode(code),
        issued_at=code.issued_at,
        expires_at=ROTATING.expires_at(code.issued_at),
    )


@app.post("/verify")
async def verify(req: VerifyRequest, request: Request, gate: GateRuntime = Depends(get_gate)):
    """Verify a scanned code and redeem its ticket.

    Every verdict, accepted or rejected, is returned with status 200.
    """
    verdict = await gate.verifier.verify(req.code)
    log.info("verify_called", extra={
        "route": "/verify",
        "remote_addr": request.client.host if request.client else "-",
        "ticket_id": verdict.ticket_id,
        "error_kind": verdict.error_kind.value if verdict.error_kind else None,
    })
    return JSONResponse(verdict.model_dump(mode="json"))


@app.get("/tickets/{scope_id}/{ticket_id}", response_model=TicketStatusResponse)
async def ticket_status(scope_id: str, ticket_id: int, gate: GateRuntime = Depends(get_gate)):
    """Look up a ticket's redemption record without redeeming it.

    When an ownership oracle is configured and the record names a
    contract, the on-chain owner and validity are included. Oracle
    failures are reported in chain_errors rather than failing the request.
    """
    found = await gate.ledger.lookup(ticket_id, scope_id)
    if isinstance(found, StorageFailure):
        return JSONResponse(status_code=503, content={"detail": found.detail})
    if isinstance(found, NotFound):
        return JSONResponse(
            status_code=404,
            content={"detail": f"Ticket not found - tokenId: {ticket_id}, eventId: {scope_id}"},
        )

    response = TicketStatusResponse(
        ticket_id=found.ticket_id,
        scope_id=found.scope_id,
        is_used=found.is_used,
        used_at=found.used_at,
        owner_ref=found.owner_ref,
        contract_ref=found.contract_ref,
    )
    if gate.oracle is not None and found.contract_ref:
        try:
            response.chain_valid = await gate.oracle.is_ticket_valid(found.contract_ref, ticket_id)
        except OwnershipLookupError as e:
            response.chain_errors.append(f"validity: {e}")
        try:
            response.chain_owner = await gate.oracle.current_owner(found.contract_ref, ticket_id)
        except OwnershipLookupError as e:
            response.chain_errors.append(f"owner: {e}")
    return response


@app.get("/version")
def version():
    # GIT_SHA is injected at deploy time
    return {"git_sha": os.getenv("GIT_SHA", "unknown")}


@app.get("/admin")
def admin(
    audit_action: Optional[str] = None,
    audit_status: Optional[str] = None,
    gate: GateRuntime = Depends(get_gate),
):
    """Return all configurable items for operator visibility.

    Gated by TICKETGATE_ADMIN_ENDPOINT_ENABLED. Secrets are never included;
    only the scopes that have a dedicated secret are listed.

    audit_action (prefix, e.g. "ticket.") and audit_status (e.g. "denied")
    narrow the recent audit events.
    """
    if not config.ADMIN_ENDPOINT_ENABLED:
        return JSONResponse(
            status_code=404,
            content={"detail": "Admin endpoint disabled"}
        )

    root_level = logging.getLogger().getEffectiveLevel()
    return {
        "normative": {
            "code_schema_version": config.CODE_SCHEMA_VERSION,
            "message_delimiter": config.MESSAGE_DELIMITER,
        },
        "configurable": {
            "rotating_max_age_seconds": config.ROTATING_MAX_AGE_SECONDS,
            "static_max_age_seconds": config.STATIC_MAX_AGE_SECONDS,
            "scan_cooldown_seconds": config.SCAN_COOLDOWN_SECONDS,
            "transient_cooldown_seconds": config.TRANSIENT_COOLDOWN_SECONDS,
        },
        "policy": {
            "ownership_check_enabled": config.OWNERSHIP_CHECK_ENABLED,
            "ownership_check_required": config.OWNERSHIP_CHECK_REQUIRED,
            "ownership_timeout_seconds": config.OWNERSHIP_TIMEOUT_SECONDS,
            "require_secret": config.REQUIRE_SECRET,
        },
        "auth": {
            "enabled": config.AUTH_ENABLED,
            "key_count": gate.api_keys.key_count,
        },
        "ledger": {
            "backend": config.LEDGER_BACKEND,
            "timeout_seconds": config.LEDGER_TIMEOUT_SECONDS,
        },
        "keyring": {
            "scoped_ids": sorted(gate.keyring.scoped_ids),
        },
        "environment": {
            "log_level": root_level,
            "log_level_name": logging.getLevelName(root_level),
        },
        "audit": {
            **gate.audit.get_buffer_stats(),
            "recent": gate.audit.get_recent_events(
                limit=20, action_filter=audit_action, status_filter=audit_status
            ),
        },
    }


@app.post("/admin/log-level")
def set_log_level(req: LogLevelRequest):
    """Change log level at runtime (DEBUG, INFO, WARNING, ERROR, CRITICAL).

    Gated by TICKETGATE_ADMIN_ENDPOINT_ENABLED.
    """
    if not config.ADMIN_ENDPOINT_ENABLED:
        return JSONResponse(
            status_code=404,
            content={"detail": "Admin endpoint disabled"}
        )

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    level_upper = req.level.upper()

    if level_upper not in valid_levels:
        return JSONResponse(
            status_code=400,
            content={"detail": f"Invalid log level. Must be one of: {valid_levels}"}
        )

    logging.getLogger().setLevel(getattr(logging, level_upper))
    logging.getLogger("ticketgate").setLevel(getattr(logging, level_upper))

    log.info(f"Log level changed to {level_upper}")

    return {
        "success": True,
        "log_level": level_upper,
        "message": f"Log level set to {level_upper}"
    }
