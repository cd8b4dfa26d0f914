"""Command line interface for the ticket gate.

    ticketgate mint 42 event-7            # print a fresh rotating code
    ticketgate register 42 event-7        # create the ledger record
    ticketgate verify '{"v":1,...}'       # verify and redeem one code
    ticketgate scan < codes.txt           # door scanner fed line by line
"""

import asyncio
import json
import sys
from typing import Optional

import typer

from app.core import config
from app.gate.api_models import VerificationVerdict
from app.gate.codec import encode
from app.gate.freshness import ROTATING, STATIC
from app.gate.issuer import CodeIssuer
from app.gate.ledger import LedgerError
from app.gate.scanner import LineSource, ScanSession
from app.gate.signer import ScopeKeyring
from app.logging_config import configure_logging
from app.runtime import build_runtime

app = typer.Typer(
    name="ticketgate",
    help="Mint, verify and scan single-use ticket codes",
    no_args_is_help=True,
)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log at the configured level"),
) -> None:
    # Logs go to stderr so stdout carries only codes and verdicts
    configure_logging(level=None if verbose else "WARNING", stream=sys.stderr)


def _verdict_line(verdict: VerificationVerdict) -> str:
    if verdict.is_valid:
        owner = f" owner={verdict.owner_ref}" if verdict.owner_ref else ""
        return f"VALID ticket={verdict.ticket_id} event={verdict.scope_id}{owner}"
    ticket = f" ticket={verdict.ticket_id}" if verdict.ticket_id is not None else ""
    return f"REJECTED {verdict.error_kind.value}{ticket}: {verdict.detail}"


@app.command()
def mint(
    ticket_id: int = typer.Argument(..., min=0, help="Token id of the ticket"),
    scope_id: str = typer.Argument(..., help="Event id"),
    static: bool = typer.Option(False, "--static", help="Mint a legacy code without a nonce"),
) -> None:
    """Print a signed code for a ticket."""
    issuer = CodeIssuer(ScopeKeyring.from_config())
    try:
        code = issuer.mint(ticket_id, scope_id, rotating=not static)
    except ValueError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    policy = STATIC if static else ROTATING
    typer.echo(encode(code))
    typer.echo(f"expires_at={policy.expires_at(code.issued_at)}", err=True)


@app.command()
def register(
    ticket_id: int = typer.Argument(..., min=0),
    scope_id: str = typer.Argument(...),
    owner: Optional[str] = typer.Option(None, "--owner", help="Current holder"),
    contract: Optional[str] = typer.Option(None, "--contract", help="Event ticket contract"),
) -> None:
    """Create the ledger record for an issued ticket."""

    async def run() -> None:
        runtime = build_runtime()
        try:
            record = await runtime.ledger.register_ticket(
                ticket_id, scope_id, owner_ref=owner, contract_ref=contract
            )
        finally:
            await runtime.aclose()
        state = "used" if record.is_used else "unused"
        typer.echo(f"ticket={record.ticket_id} event={record.scope_id} {state}")

    try:
        asyncio.run(run())
    except LedgerError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def verify(
    raw: str = typer.Argument(..., help="Scanned payload, or - to read it from stdin"),
    as_json: bool = typer.Option(False, "--json", help="Print the full verdict as JSON"),
) -> None:
    """Verify one code and redeem its ticket. Exits 1 on rejection."""
    if raw == "-":
        raw = sys.stdin.read().strip()

    async def run() -> VerificationVerdict:
        runtime = build_runtime()
        try:
            return await runtime.verifier.verify(raw)
        finally:
            await runtime.aclose()

    verdict = asyncio.run(run())
    if as_json:
        typer.echo(verdict.model_dump_json())
    else:
        typer.echo(_verdict_line(verdict))
    if not verdict.is_valid:
        raise typer.Exit(1)


@app.command()
def scan(
    cooldown: float = typer.Option(
        config.SCAN_COOLDOWN_SECONDS, "--cooldown", help="Seconds between processed scans"
    ),
) -> None:
    """Run a door scanner reading one code per line from stdin."""

    async def run() -> dict:
        runtime = build_runtime()
        source = LineSource(sys.stdin)
        session = ScanSession(
            runtime.verifier,
            source,
            cooldown=cooldown,
            transient_cooldown=config.TRANSIENT_COOLDOWN_SECONDS,
            recent_limit=config.RECENT_VERDICTS_LIMIT,
            on_verdict=lambda verdict: typer.echo(_verdict_line(verdict)),
        )
        try:
            async with session:
                await source.feed(session)
        finally:
            await runtime.aclose()
        return session.stats.as_dict()

    stats = asyncio.run(run())
    typer.echo(json.dumps(stats), err=True)


if __name__ == "__main__":
    app()
