"""Tests for component wiring, configuration parsing and JSON logging."""

import asyncio
import json
import logging

import pytest

from app.core import config
from app.core.config import ConfigurationError
from app.gate.ownership import HttpOwnershipOracle
from app.gate.rest_ledger import RestRedemptionLedger
from app.logging_config import JsonFormatter
from app.runtime import build_ledger, build_oracle, build_runtime


class TestBuildRuntime:

    def test_sql_backend(self, tmp_path, monkeypatch):
        monkeypatch.setattr(config, "LEDGER_BACKEND", "sql")
        monkeypatch.setattr(config, "DATABASE_URL", f"sqlite:///{tmp_path}/sub/gate.db")
        monkeypatch.setattr(config, "QR_SECRET", "s")
        monkeypatch.setattr(config, "OWNERSHIP_ORACLE_URL", "")
        monkeypatch.setattr(config, "OWNERSHIP_CHECK_ENABLED", False)

        runtime = build_runtime()
        try:
            assert (tmp_path / "sub" / "gate.db").exists()
            assert runtime.oracle is None
            assert runtime.bus is runtime.verifier.bus
        finally:
            asyncio.run(runtime.aclose())

    def test_rest_backend_requires_url(self, monkeypatch):
        monkeypatch.setattr(config, "LEDGER_BACKEND", "rest")
        monkeypatch.setattr(config, "LEDGER_REST_URL", "")
        with pytest.raises(ConfigurationError):
            build_ledger()

    def test_rest_backend(self, monkeypatch):
        monkeypatch.setattr(config, "LEDGER_BACKEND", "rest")
        monkeypatch.setattr(config, "LEDGER_REST_URL", "https://records.example/rest/v1")
        ledger, engine = build_ledger()
        assert isinstance(ledger, RestRedemptionLedger)
        assert engine is None
        asyncio.run(ledger.aclose())

    def test_unknown_backend(self, monkeypatch):
        monkeypatch.setattr(config, "LEDGER_BACKEND", "carrier-pigeon")
        with pytest.raises(ConfigurationError):
            build_ledger()

    def test_ownership_check_requires_oracle_url(self, monkeypatch):
        monkeypatch.setattr(config, "OWNERSHIP_ORACLE_URL", "")
        monkeypatch.setattr(config, "OWNERSHIP_CHECK_ENABLED", True)
        with pytest.raises(ConfigurationError):
            build_oracle()

    def test_oracle_from_url(self, monkeypatch):
        monkeypatch.setattr(config, "OWNERSHIP_ORACLE_URL", "https://indexer.example")
        oracle = build_oracle()
        assert isinstance(oracle, HttpOwnershipOracle)
        asyncio.run(oracle.aclose())


class TestScopeSecretsParsing:

    def test_unset(self, monkeypatch):
        monkeypatch.delenv("TICKETGATE_SCOPE_SECRETS", raising=False)
        assert config._parse_scope_secrets() == {}

    def test_json_object(self, monkeypatch):
        monkeypatch.setenv("TICKETGATE_SCOPE_SECRETS", '{"event-7": "s3cret"}')
        assert config._parse_scope_secrets() == {"event-7": "s3cret"}

    @pytest.mark.parametrize("value", ["not json", '["a"]', '{"e": 1}', '{"e": ""}'])
    def test_invalid(self, monkeypatch, value):
        monkeypatch.setenv("TICKETGATE_SCOPE_SECRETS", value)
        with pytest.raises(ConfigurationError):
            config._parse_scope_secrets()


class TestJsonFormatter:

    def test_extra_fields_included(self):
        record = logging.LogRecord("ticketgate", logging.INFO, __file__, 1, "verified", None, None)
        record.ticket_id = 42
        record.error_kind = "Expired"
        payload = json.loads(JsonFormatter().format(record))
        assert payload["msg"] == "verified"
        assert payload["level"] == "INFO"
        assert payload["ticket_id"] == 42
        assert payload["error_kind"] == "Expired"
        assert "route" not in payload
