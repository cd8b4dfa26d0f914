"""Shared fixtures for ticket gate tests.

Time is driven by a settable clock so freshness boundaries are exact.
"""

import pytest

from app.gate.issuer import CodeIssuer
from app.gate.ledger import InMemoryRedemptionLedger
from app.gate.signer import ScopeKeyring
from app.gate.verify import TicketVerifier

TEST_SECRET = "test-secret"
T0 = 1_700_000_000


class FakeClock:
    """Callable clock returning a settable Unix time."""

    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keyring():
    return ScopeKeyring(TEST_SECRET, {"vip-night": "vip-secret"})


@pytest.fixture
def ledger():
    return InMemoryRedemptionLedger()


@pytest.fixture
def issuer(keyring, clock):
    return CodeIssuer(keyring, clock=clock, nonce_factory=lambda: "k3j9x0a")


@pytest.fixture
def verifier(keyring, ledger, clock):
    return TicketVerifier(keyring, ledger, clock=clock)
