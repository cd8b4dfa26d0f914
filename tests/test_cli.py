"""Tests for the ticketgate command line."""

import json
import logging

import pytest
from typer.testing import CliRunner

from app.cli import app
from app.core import config

runner = CliRunner()


@pytest.fixture(autouse=True)
def gate_config(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "QR_SECRET", "cli-secret")
    monkeypatch.setattr(config, "SCOPE_SECRETS", {})
    monkeypatch.setattr(config, "LEDGER_BACKEND", "sql")
    monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path}/cli.db")
    monkeypatch.setattr(config, "OWNERSHIP_ORACLE_URL", "")
    monkeypatch.setattr(config, "OWNERSHIP_CHECK_ENABLED", False)

    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers, root.level = handlers, level


def mint(ticket_id=42, scope_id="event-7", *extra) -> str:
    result = runner.invoke(app, ["mint", str(ticket_id), scope_id, *extra])
    assert result.exit_code == 0, result.output
    return result.stdout.splitlines()[0]


class TestMint:

    def test_prints_rotating_code(self):
        code = json.loads(mint())
        assert code["tokenId"] == 42
        assert code["eventId"] == "event-7"
        assert code["nonce"]

    def test_static_code_has_no_nonce(self):
        assert "nonce" not in json.loads(mint(42, "event-7", "--static"))

    def test_bad_scope(self):
        result = runner.invoke(app, ["mint", "42", "a|b"])
        assert result.exit_code == 2


class TestVerify:

    def test_register_verify_replay(self):
        assert runner.invoke(app, ["register", "42", "event-7", "--owner", "0xabc"]).exit_code == 0
        code = mint()

        first = runner.invoke(app, ["verify", code])
        second = runner.invoke(app, ["verify", code])

        assert first.exit_code == 0
        assert first.stdout.startswith("VALID ticket=42 event=event-7 owner=0xabc")
        assert second.exit_code == 1
        assert "REJECTED AlreadyRedeemed" in second.stdout

    def test_unknown_ticket(self):
        result = runner.invoke(app, ["verify", mint(7)])
        assert result.exit_code == 1
        assert "UnknownTicket" in result.stdout

    def test_reads_code_from_stdin_as_json(self):
        runner.invoke(app, ["register", "42", "event-7"])
        result = runner.invoke(app, ["verify", "-", "--json"], input=mint() + "\n")
        assert result.exit_code == 0
        assert json.loads(result.stdout.splitlines()[0])["is_valid"] is True

    def test_register_is_idempotent(self):
        runner.invoke(app, ["register", "42", "event-7"])
        result = runner.invoke(app, ["register", "42", "event-7"])
        assert result.exit_code == 0
        assert "unused" in result.stdout


class TestScan:

    def test_one_verdict_per_line(self):
        runner.invoke(app, ["register", "42", "event-7"])
        code = mint()
        result = runner.invoke(
            app, ["scan", "--cooldown", "0"], input=f"{code}\n\nnot-a-code\n{code}\n"
        )

        assert result.exit_code == 0
        lines = [line for line in result.stdout.splitlines() if line.startswith(("VALID", "REJECTED"))]
        assert len(lines) == 3
        assert lines[0].startswith("VALID")
        assert "InvalidFormat" in lines[1]
        assert "AlreadyRedeemed" in lines[2]
