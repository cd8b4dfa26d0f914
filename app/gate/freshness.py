"""Freshness policy for verification codes.

Rotating codes (carrying a nonce) are regenerated continuously by the
ticket display and get a short window. Legacy static codes get a long one.

Clock skew is not compensated: `now` is the verifier's local clock.
"""

from dataclasses import dataclass

from app.core.config import ROTATING_MAX_AGE_SECONDS, STATIC_MAX_AGE_SECONDS


@dataclass(frozen=True)
class FreshnessPolicy:
    """Named maximum code age.

    Attributes:
        name: Policy name for logs and verdict detail.
        max_age_seconds: Oldest acceptable age, inclusive.
    """
    name: str
    max_age_seconds: int

    def is_expired(self, issued_at: int, now: float) -> bool:
        return is_expired(issued_at, self.max_age_seconds, now)

    def expires_at(self, issued_at: int) -> int:
        return issued_at + self.max_age_seconds


def is_expired(issued_at: int, max_age_seconds: float, now: float) -> bool:
    """True iff the code is older than max_age_seconds.

    A code exactly max_age_seconds old is still fresh.
    """
    return (now - issued_at) > max_age_seconds


ROTATING = FreshnessPolicy("rotating", ROTATING_MAX_AGE_SECONDS)
STATIC = FreshnessPolicy("static", STATIC_MAX_AGE_SECONDS)
