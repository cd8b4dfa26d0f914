"""Tests for code freshness policies."""

from app.gate.freshness import ROTATING, STATIC, FreshnessPolicy, is_expired


class TestIsExpired:

    def test_exact_boundary_is_fresh(self):
        assert is_expired(1000, 30, 1030) is False

    def test_one_past_boundary_is_expired(self):
        assert is_expired(1000, 30, 1031) is True

    def test_fractional_now(self):
        assert is_expired(1000, 30, 1030.5) is True

    def test_future_issued_at_is_fresh(self):
        """Clock skew is not compensated; a code from the future is not expired."""
        assert is_expired(2000, 30, 1000) is False


class TestPolicies:

    def test_default_windows(self):
        assert ROTATING.max_age_seconds == 30
        assert STATIC.max_age_seconds == 86400

    def test_policy_delegates(self):
        policy = FreshnessPolicy("short", 5)
        assert policy.is_expired(100, 105) is False
        assert policy.is_expired(100, 106) is True
        assert policy.expires_at(100) == 105
