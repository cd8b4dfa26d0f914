"""Typed in-process event bus.

Side effects that react to verification (audit logging, dashboards,
door statistics) subscribe to event types here instead of being wired
into the verifier. Handlers may be plain functions or coroutines.
A failing handler is logged and does not affect other handlers or the
publisher.
"""

import asyncio
import inspect
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Type, TypeVar, Union

from .api_models import ErrorKind, VerificationVerdict

log = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class VerificationCompleted:
    """Emitted by the verifier for every verdict it returns."""
    verdict: VerificationVerdict
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class TicketRedeemed:
    """Emitted once per ticket, when its redemption commits."""
    ticket_id: int
    scope_id: str
    used_at: datetime
    owner_ref: Optional[str] = None


@dataclass(frozen=True)
class SecurityAlert:
    """Emitted for verdicts that suggest tampering."""
    kind: ErrorKind
    detail: str
    ticket_id: Optional[int] = None
    scope_id: Optional[str] = None
    at: datetime = field(default_factory=_now)


@dataclass(frozen=True)
class ScanCompleted:
    """Emitted by a scan session after a scan was processed."""
    verdict: VerificationVerdict
    origin: str  # "camera" or "manual"
    at: datetime = field(default_factory=_now)


E = TypeVar("E")
Handler = Callable[[Any], Union[None, Awaitable[None]]]


class EventBus:
    """Dispatches events to handlers subscribed by exact event type."""

    def __init__(self):
        self._handlers: Dict[type, List[Handler]] = defaultdict(list)

    def subscribe(self, event_type: Type[E], handler: Callable[[E], Any]) -> Callable[[], None]:
        """Register handler for event_type.

        Returns:
            A function that removes the subscription.
        """
        self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            try:
                self._handlers[event_type].remove(handler)
            except ValueError:
                pass

        return unsubscribe

    async def publish(self, event: Any) -> None:
        for handler in list(self._handlers.get(type(event), ())):
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception(f"Event handler {getattr(handler, '__name__', handler)!r} "
                              f"failed for {type(event).__name__}")

    def handler_count(self, event_type: type) -> int:
        return len(self._handlers.get(event_type, ()))
