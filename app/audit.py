"""Audit trail for redemptions and rejected scans.

Subscribes to the verifier's event bus and writes every decision as a
structured log line. A ring buffer keeps recent entries for the admin
endpoint.
"""

import logging
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from app.gate.api_models import ErrorKind
from app.gate.events import EventBus, SecurityAlert, TicketRedeemed, VerificationCompleted

log = logging.getLogger("audit")


@dataclass
class AuditEvent:
    """Structured audit event."""

    action: str  # e.g., "ticket.redeemed", "scan.rejected"
    status: str = "success"  # "success", "denied", "alert", "error"
    ticket_id: Optional[int] = None
    scope_id: Optional[str] = None
    details: Optional[dict[str, Any]] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


class AuditLogger:
    """Audit logger for gate decisions.

    Logs events as structured JSON via Python's logging module and keeps
    an in-memory ring buffer for recent event retrieval.
    """

    MAX_BUFFER_SIZE = 1000

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self._buffer: deque[dict] = deque(maxlen=self.MAX_BUFFER_SIZE)
        self._unsubscribers: List[Callable[[], None]] = []

    def attach(self, bus: EventBus) -> None:
        """Subscribe to the verifier's events on bus."""
        self._unsubscribers += [
            bus.subscribe(TicketRedeemed, self.on_redeemed),
            bus.subscribe(VerificationCompleted, self.on_verification),
            bus.subscribe(SecurityAlert, self.on_alert),
        ]

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

    def log(self, event: AuditEvent) -> None:
        if not self.enabled:
            return

        self._buffer.append(asdict(event))

        extra = {
            "type": "audit",
            "action": event.action,
            "status": event.status,
            "ticket_id": event.ticket_id,
            "scope_id": event.scope_id,
        }
        if event.status in ("denied", "alert", "error"):
            log.warning(f"audit: {event.action} {event.status}", extra=extra)
        else:
            log.info(f"audit: {event.action} {event.status}", extra=extra)

    def on_redeemed(self, event: TicketRedeemed) -> None:
        self.log(AuditEvent(
            action="ticket.redeemed",
            ticket_id=event.ticket_id,
            scope_id=event.scope_id,
            details={"used_at": event.used_at.isoformat(), "owner_ref": event.owner_ref},
        ))

    def on_verification(self, event: VerificationCompleted) -> None:
        verdict = event.verdict
        if verdict.is_valid:
            # Covered by on_redeemed
            return
        status = "error" if verdict.error_kind == ErrorKind.TRANSIENT_FAILURE else "denied"
        self.log(AuditEvent(
            action="scan.rejected",
            status=status,
            ticket_id=verdict.ticket_id,
            scope_id=verdict.scope_id,
            details={"error_kind": verdict.error_kind.value, "detail": verdict.detail},
        ))

    def on_alert(self, event: SecurityAlert) -> None:
        self.log(AuditEvent(
            action="security.alert",
            status="alert",
            ticket_id=event.ticket_id,
            scope_id=event.scope_id,
            details={"kind": event.kind.value, "detail": event.detail},
        ))

    def get_recent_events(
        self,
        limit: int = 100,
        action_filter: Optional[str] = None,
        status_filter: Optional[str] = None,
    ) -> list[dict]:
        """Recent audit events, newest first.

        Args:
            limit: Max events to return
            action_filter: Filter by action prefix (e.g., "ticket.")
            status_filter: Filter by status (e.g., "denied")
        """
        events = list(self._buffer)
        events.reverse()

        if action_filter:
            events = [e for e in events if e["action"].startswith(action_filter)]
        if status_filter:
            events = [e for e in events if e["status"] == status_filter]

        return events[:limit]

    def get_buffer_stats(self) -> dict:
        return {
            "buffer_size": len(self._buffer),
            "max_buffer_size": self.MAX_BUFFER_SIZE,
        }
