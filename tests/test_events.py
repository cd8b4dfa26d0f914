"""Tests for the event bus and the audit subscriber."""

from datetime import datetime, timezone

import pytest

from app.audit import AuditLogger
from app.gate.api_models import ErrorKind, VerificationVerdict
from app.gate.events import (
    EventBus,
    SecurityAlert,
    TicketRedeemed,
    VerificationCompleted,
)

USED_AT = datetime(2024, 5, 1, 20, 15, tzinfo=timezone.utc)


class TestEventBus:

    @pytest.mark.asyncio
    async def test_sync_and_async_handlers(self):
        bus = EventBus()
        seen = []

        async def async_handler(event):
            seen.append(("async", event.ticket_id))

        bus.subscribe(TicketRedeemed, lambda e: seen.append(("sync", e.ticket_id)))
        bus.subscribe(TicketRedeemed, async_handler)

        await bus.publish(TicketRedeemed(1, "e", USED_AT))

        assert seen == [("sync", 1), ("async", 1)]

    @pytest.mark.asyncio
    async def test_dispatch_by_exact_type(self):
        bus = EventBus()
        seen = []
        bus.subscribe(SecurityAlert, seen.append)
        await bus.publish(TicketRedeemed(1, "e", USED_AT))
        assert seen == []

    @pytest.mark.asyncio
    async def test_failing_handler_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(TicketRedeemed, broken)
        bus.subscribe(TicketRedeemed, seen.append)
        await bus.publish(TicketRedeemed(1, "e", USED_AT))
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(TicketRedeemed, seen.append)
        assert bus.handler_count(TicketRedeemed) == 1

        unsubscribe()
        unsubscribe()
        await bus.publish(TicketRedeemed(1, "e", USED_AT))

        assert seen == []
        assert bus.handler_count(TicketRedeemed) == 0


class TestAuditLogger:

    @pytest.fixture
    def bus_and_audit(self):
        bus = EventBus()
        audit = AuditLogger()
        audit.attach(bus)
        return bus, audit

    @pytest.mark.asyncio
    async def test_redemption_recorded(self, bus_and_audit):
        bus, audit = bus_and_audit
        await bus.publish(TicketRedeemed(42, "event-7", USED_AT, "0xabc"))

        [event] = audit.get_recent_events()
        assert event["action"] == "ticket.redeemed"
        assert event["status"] == "success"
        assert event["ticket_id"] == 42
        assert event["details"]["owner_ref"] == "0xabc"

    @pytest.mark.asyncio
    async def test_rejections_recorded_accepts_skipped(self, bus_and_audit):
        bus, audit = bus_and_audit
        await bus.publish(VerificationCompleted(
            VerificationVerdict.accepted(42, "event-7", None, USED_AT)
        ))
        await bus.publish(VerificationCompleted(
            VerificationVerdict.rejected(ErrorKind.EXPIRED, "old", ticket_id=42)
        ))
        await bus.publish(VerificationCompleted(
            VerificationVerdict.rejected(ErrorKind.TRANSIENT_FAILURE, "down")
        ))

        events = audit.get_recent_events(action_filter="scan.")
        assert [e["status"] for e in events] == ["error", "denied"]
        assert events[1]["details"]["error_kind"] == "Expired"

    @pytest.mark.asyncio
    async def test_security_alert(self, bus_and_audit):
        bus, audit = bus_and_audit
        await bus.publish(SecurityAlert(ErrorKind.FORGED_OR_CORRUPT, "bad sig", 42, "event-7"))
        assert audit.get_recent_events(status_filter="alert")[0]["action"] == "security.alert"

    @pytest.mark.asyncio
    async def test_detach(self, bus_and_audit):
        bus, audit = bus_and_audit
        audit.detach()
        await bus.publish(TicketRedeemed(42, "event-7", USED_AT))
        assert audit.get_buffer_stats()["buffer_size"] == 0

    def test_disabled_logger_records_nothing(self):
        from app.audit import AuditEvent

        audit = AuditLogger(enabled=False)
        audit.log(AuditEvent(action="ticket.redeemed"))
        assert audit.get_recent_events() == []
