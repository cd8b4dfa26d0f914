"""Tests for canonical message construction, HMAC signing and the keyring."""

import pytest

from app.core import config
from app.core.config import ConfigurationError
from app.gate.signer import ScopeKeyring, canonical_message, sign, verify


class TestCanonicalMessage:

    def test_rotating_message_layout(self):
        assert canonical_message(42, "event-7", 1700000000, "k3j9x0a") == (
            b"42|event-7|1700000000|k3j9x0a"
        )

    def test_legacy_message_omits_nonce_segment(self):
        """No trailing delimiter when there is no nonce."""
        assert canonical_message(42, "event-7", 1700000000) == b"42|event-7|1700000000"

    def test_empty_nonce_treated_as_absent(self):
        assert canonical_message(42, "event-7", 1700000000, "") == b"42|event-7|1700000000"

    def test_delimiter_in_scope_rejected(self):
        with pytest.raises(ValueError):
            canonical_message(42, "event|7", 1700000000)

    def test_delimiter_in_nonce_rejected(self):
        with pytest.raises(ValueError):
            canonical_message(42, "event-7", 1700000000, "a|b")


class TestSignVerify:

    def test_known_vector(self):
        """HMAC-SHA256 reference vector (RFC 4231 style key/message)."""
        digest = sign(b"what do ya want for nothing?", "Jefe")
        assert digest == "5bdcc146bf60754e6a042426089575c75a003f089d2739839dec58b964ec3843"

    def test_digest_is_lowercase_hex(self):
        digest = sign(b"42|event-7|1700000000", "s")
        assert len(digest) == 64
        assert digest == digest.lower()
        int(digest, 16)

    def test_verify_accepts_own_signature(self):
        message = canonical_message(1, "e", 100, "n")
        assert verify(message, "s", sign(message, "s")) is True

    def test_verify_accepts_uppercase_hex(self):
        message = canonical_message(1, "e", 100, "n")
        assert verify(message, "s", sign(message, "s").upper()) is True

    def test_wrong_secret_fails(self):
        message = canonical_message(1, "e", 100, "n")
        assert verify(message, "other", sign(message, "s")) is False

    def test_any_field_change_fails(self):
        signature = sign(canonical_message(1, "e", 100, "n"), "s")
        for altered in (
            canonical_message(2, "e", 100, "n"),
            canonical_message(1, "f", 100, "n"),
            canonical_message(1, "e", 101, "n"),
            canonical_message(1, "e", 100, "m"),
            canonical_message(1, "e", 100),
        ):
            assert verify(altered, "s", signature) is False

    @pytest.mark.parametrize("candidate", ["", "abc", "z" * 64, "0" * 63, None, 12345])
    def test_malformed_candidates_never_match(self, candidate):
        assert verify(b"m", "s", candidate) is False

    def test_non_ascii_candidate_never_matches(self):
        assert verify(b"m", "s", "é" * 64) is False


class TestScopeKeyring:

    def test_scoped_secret_overrides_default(self):
        keyring = ScopeKeyring("default", {"vip": "vip-secret"})
        assert keyring.for_scope("vip") == b"vip-secret"
        assert keyring.for_scope("general") == b"default"
        assert keyring.scoped_ids == frozenset({"vip"})

    def test_empty_default_rejected(self):
        with pytest.raises(ConfigurationError):
            ScopeKeyring("")

    def test_from_config_uses_configured_secret(self, monkeypatch):
        monkeypatch.setattr(config, "QR_SECRET", "configured")
        monkeypatch.setattr(config, "SCOPE_SECRETS", {"e": "scoped"})
        keyring = ScopeKeyring.from_config()
        assert keyring.for_scope("x") == b"configured"
        assert keyring.for_scope("e") == b"scoped"

    def test_from_config_falls_back_to_dev_secret(self, monkeypatch):
        monkeypatch.setattr(config, "QR_SECRET", "")
        monkeypatch.setattr(config, "REQUIRE_SECRET", False)
        keyring = ScopeKeyring.from_config()
        assert keyring.for_scope("x") == config.DEV_SECRET.encode()

    def test_from_config_requires_secret_when_configured(self, monkeypatch):
        monkeypatch.setattr(config, "QR_SECRET", "")
        monkeypatch.setattr(config, "REQUIRE_SECRET", True)
        with pytest.raises(ConfigurationError):
            ScopeKeyring.from_config()
