"""
Tests for tracking webhook ingestion and status progression.
"""
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import select, update

from conftest import RecordingNotifications, create_order, fetch_order
from fulfillment.models import (
    FulfillmentState,
    InboxStatus,
    Shipment,
    ShipmentStatus,
    TrackingEvent,
    WebhookInboxEntry,
)
from fulfillment.services import alerting
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator
from fulfillment.services.tracking_webhooks import TrackingWebhookProcessor, should_apply

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CARRIER = "SANDBOX_GROUND"


def event(tracking_number, status, at=T0, **extra):
    payload = {"tracking_number": tracking_number, "status": status, "occurred_at": at.isoformat()}
    payload.update(extra)
    return payload


@pytest.fixture
def alerts(monkeypatch):
    sent = []

    async def fake_exception(shipment_id, tracking_number, exception_code, exception_description):
        sent.append(("exception", tracking_number))
        return True

    async def fake_unmatched(carrier, tracking_number, inbox_id):
        sent.append(("unmatched", tracking_number))
        return True

    monkeypatch.setattr(alerting, "alert_shipment_exception", fake_exception)
    monkeypatch.setattr(alerting, "alert_unmatched_tracking", fake_unmatched)
    return sent


@pytest_asyncio.fixture
async def shipped(session_factory, gateways):
    """An order with a purchased label (SHIP_PENDING / LABEL_CREATED)."""
    order = await create_order(session_factory)
    orchestrator = ShipmentOrchestrator(
        session_factory=session_factory,
        get_gateway=gateways.get,
        notifications=RecordingNotifications(),
    )
    shipment = await orchestrator.create_shipment(order.id)
    return order, shipment


@pytest.fixture
def processor(session_factory, notifications):
    return TrackingWebhookProcessor(session_factory=session_factory, notifications=notifications)


async def fetch_shipment(session_factory, shipment_id):
    async with session_factory() as session:
        return await session.get(Shipment, shipment_id)


async def fetch_events(session_factory, shipment_id):
    async with session_factory() as session:
        return (await session.execute(
            select(TrackingEvent).where(TrackingEvent.shipment_id == shipment_id).order_by(TrackingEvent.id)
        )).scalars().all()


class TestShouldApply:
    def test_forward_progression(self):
        assert should_apply(ShipmentStatus.LABEL_CREATED, None, ShipmentStatus.IN_TRANSIT, T0)
        assert should_apply(ShipmentStatus.IN_TRANSIT, T0, ShipmentStatus.DELIVERED, T0 + timedelta(hours=1))

    def test_no_regression(self):
        assert not should_apply(ShipmentStatus.DELIVERED, T0, ShipmentStatus.IN_TRANSIT, T0 + timedelta(hours=1))

    def test_older_event_is_stale(self):
        assert not should_apply(ShipmentStatus.IN_TRANSIT, T0, ShipmentStatus.DELIVERED, T0 - timedelta(hours=1))

    def test_overrides(self):
        assert should_apply(ShipmentStatus.DELIVERED, T0, ShipmentStatus.EXCEPTION, T0 - timedelta(days=1))
        assert should_apply(ShipmentStatus.EXCEPTION, T0, ShipmentStatus.RETURNED, T0)
        assert not should_apply(ShipmentStatus.EXCEPTION, T0, ShipmentStatus.DELIVERED, T0 + timedelta(days=1))

    def test_naive_last_event_is_utc(self):
        naive = T0.replace(tzinfo=None)
        assert not should_apply(ShipmentStatus.IN_TRANSIT, naive, ShipmentStatus.DELIVERED, T0 - timedelta(minutes=1))


class TestStatusProgression:
    @pytest.mark.asyncio
    async def test_in_transit_marks_order_shipped(self, processor, shipped, session_factory, notifications):
        order, shipment = shipped

        outcome = await processor.handle(CARRIER, event(shipment.tracking_number, "in_transit"))

        assert outcome == {"processed": True, "status": "in_transit"}
        stored = await fetch_shipment(session_factory, shipment.id)
        assert stored.status == ShipmentStatus.IN_TRANSIT
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.SHIPPED

        sent = notifications.named("shipment_status_changed")
        assert [e["properties"]["status"] for e in sent] == ["in_transit"]
        events = await fetch_events(session_factory, shipment.id)
        assert events[0].applied is True
        assert events[0].notified_at is not None

    @pytest.mark.asyncio
    async def test_delivered_walks_order_through_shipped(self, processor, shipped, session_factory):
        order, shipment = shipped

        await processor.handle(CARRIER, event(shipment.tracking_number, "delivered"))

        stored = await fetch_shipment(session_factory, shipment.id)
        assert stored.status == ShipmentStatus.DELIVERED
        assert stored.delivered_at is not None
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.DELIVERED

    @pytest.mark.asyncio
    async def test_out_of_order_event_is_stored_not_applied(self, processor, shipped, session_factory):
        order, shipment = shipped

        await processor.handle(CARRIER, event(shipment.tracking_number, "delivered", T0 + timedelta(hours=5)))
        outcome = await processor.handle(CARRIER, event(shipment.tracking_number, "in_transit", T0))

        assert outcome["status"] == "stale"
        stored = await fetch_shipment(session_factory, shipment.id)
        assert stored.status == ShipmentStatus.DELIVERED
        events = await fetch_events(session_factory, shipment.id)
        assert [(e.status, e.applied) for e in events] == [
            (ShipmentStatus.DELIVERED, True),
            (ShipmentStatus.IN_TRANSIT, False),
        ]
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.DELIVERED

    @pytest.mark.asyncio
    async def test_newer_event_of_earlier_stage_does_not_regress(self, processor, shipped, session_factory):
        _, shipment = shipped

        await processor.handle(CARRIER, event(shipment.tracking_number, "out_for_delivery", T0))
        outcome = await processor.handle(CARRIER, event(shipment.tracking_number, "in_transit", T0 + timedelta(hours=1)))

        assert outcome["status"] == "stale"
        assert (await fetch_shipment(session_factory, shipment.id)).status == ShipmentStatus.OUT_FOR_DELIVERY

    @pytest.mark.asyncio
    async def test_exception_overrides_and_alerts(self, processor, shipped, session_factory, alerts):
        order, shipment = shipped

        await processor.handle(CARRIER, event(shipment.tracking_number, "in_transit", T0))
        outcome = await processor.handle(
            CARRIER, event(shipment.tracking_number, "exception", T0 - timedelta(hours=1), description="Damaged"),
        )

        assert outcome["status"] == "exception"
        stored = await fetch_shipment(session_factory, shipment.id)
        assert stored.status == ShipmentStatus.EXCEPTION
        assert stored.status_detail == "Damaged"
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.EXCEPTION
        assert alerts == [("exception", shipment.tracking_number)]

        # Nothing moves a shipment out of an override except another override
        later = await processor.handle(CARRIER, event(shipment.tracking_number, "delivered", T0 + timedelta(days=1)))
        assert later["status"] == "stale"
        assert (await fetch_shipment(session_factory, shipment.id)).status == ShipmentStatus.EXCEPTION

    @pytest.mark.asyncio
    async def test_exception_after_delivery_is_applied(self, processor, shipped, session_factory, alerts):
        order, shipment = shipped

        await processor.handle(CARRIER, event(shipment.tracking_number, "delivered", T0))
        outcome = await processor.handle(
            CARRIER,
            event(shipment.tracking_number, "exception", T0 + timedelta(hours=2), description="Delivered to wrong address"),
        )

        assert outcome == {"processed": True, "status": "exception"}
        stored = await fetch_shipment(session_factory, shipment.id)
        assert stored.status == ShipmentStatus.EXCEPTION
        assert stored.status_detail == "Delivered to wrong address"
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.EXCEPTION
        events = await fetch_events(session_factory, shipment.id)
        assert [(e.status, e.applied) for e in events] == [
            (ShipmentStatus.DELIVERED, True),
            (ShipmentStatus.EXCEPTION, True),
        ]
        assert alerts == [("exception", shipment.tracking_number)]

    @pytest.mark.asyncio
    async def test_duplicate_event(self, processor, shipped, session_factory, notifications):
        _, shipment = shipped
        payload = event(shipment.tracking_number, "in_transit")

        await processor.handle(CARRIER, payload)
        outcome = await processor.handle(CARRIER, payload)

        assert outcome == {"processed": True, "status": "duplicate"}
        assert len(await fetch_events(session_factory, shipment.id)) == 1
        assert len(notifications.named("shipment_status_changed")) == 1

    @pytest.mark.asyncio
    async def test_unknown_status_is_recorded_without_change(self, processor, shipped, session_factory, notifications):
        _, shipment = shipped

        outcome = await processor.handle(CARRIER, event(shipment.tracking_number, "held_at_customs"))

        assert outcome["status"] == "unknown"
        assert (await fetch_shipment(session_factory, shipment.id)).status == ShipmentStatus.LABEL_CREATED
        events = await fetch_events(session_factory, shipment.id)
        assert events[0].status == ShipmentStatus.UNKNOWN
        assert events[0].carrier_status == "held_at_customs"
        assert events[0].raw_payload["status"] == "held_at_customs"
        assert notifications.named("shipment_status_changed") == []

    @pytest.mark.asyncio
    async def test_unmatched_tracking_number(self, processor, alerts):
        outcome = await processor.handle(CARRIER, event("SBXNOSUCHLABEL", "in_transit"))

        assert outcome["processed"] is False
        assert outcome["status"] == "unmatched"
        assert alerts == [("unmatched", "SBXNOSUCHLABEL")]

    @pytest.mark.asyncio
    async def test_malformed_payload_is_ignored(self, processor):
        outcome = await processor.handle(CARRIER, ["not", "an", "object"])

        assert outcome["processed"] is False
        assert outcome["status"] == "ignored"

    @pytest.mark.asyncio
    async def test_notification_failure_is_recorded(self, session_factory, shipped):
        order, shipment = shipped
        processor = TrackingWebhookProcessor(
            session_factory=session_factory, notifications=RecordingNotifications(fail=True),
        )

        outcome = await processor.handle(CARRIER, event(shipment.tracking_number, "in_transit"))

        assert outcome["status"] == "in_transit"
        assert (await fetch_order(session_factory, order.id)).fulfillment_state == FulfillmentState.SHIPPED
        stored_event = (await fetch_events(session_factory, shipment.id))[0]
        assert stored_event.notified_at is None
        assert "shipment_status_changed rejected" in stored_event.notification_error


class TestInbox:
    async def fetch_entry(self, session_factory, inbox_id):
        async with session_factory() as session:
            return await session.get(WebhookInboxEntry, inbox_id)

    @pytest.mark.asyncio
    async def test_processed_once(self, processor, shipped, session_factory):
        _, shipment = shipped
        payload = event(shipment.tracking_number, "in_transit")
        inbox_id = await processor.record_inbox("sandbox_ground", payload, raw_body="{}")

        first = await processor.process_inbox_entry(inbox_id)
        second = await processor.process_inbox_entry(inbox_id)

        assert first == {"processed": True, "status": "in_transit"}
        assert second == {"processed": False, "status": "duplicate"}
        entry = await self.fetch_entry(session_factory, inbox_id)
        assert entry.status == InboxStatus.PROCESSED
        assert entry.carrier == "SANDBOX_GROUND"
        assert entry.attempts == 1
        assert entry.processed_at is not None

    @pytest.mark.asyncio
    async def test_unmatched_entry_is_flagged(self, processor, session_factory, alerts):
        inbox_id = await processor.record_inbox(CARRIER, event("SBXNOSUCHLABEL", "delivered"))

        outcome = await processor.process_inbox_entry(inbox_id)

        assert outcome["status"] == "unmatched"
        entry = await self.fetch_entry(session_factory, inbox_id)
        assert entry.status == InboxStatus.FLAGGED
        assert "SBXNOSUCHLABEL" in entry.error

    @pytest.mark.asyncio
    async def test_malformed_entry_is_flagged(self, processor, session_factory):
        inbox_id = await processor.record_inbox(CARRIER, None, raw_body="not json")

        await processor.process_inbox_entry(inbox_id)

        entry = await self.fetch_entry(session_factory, inbox_id)
        assert entry.status == InboxStatus.FLAGGED
        assert entry.result == "ignored"

    @pytest.mark.asyncio
    async def test_missing_entry(self, processor):
        assert await processor.process_inbox_entry(424242) == {"processed": False, "status": "missing"}

    @pytest.mark.asyncio
    async def test_pending_entries_listed_for_requeue(self, processor, session_factory):
        old = await processor.record_inbox(CARRIER, event("SBX1", "in_transit"))
        await processor.record_inbox(CARRIER, event("SBX2", "in_transit"))
        async with session_factory() as session:
            await session.execute(
                update(WebhookInboxEntry)
                .where(WebhookInboxEntry.id == old)
                .values(received_at=datetime.now(timezone.utc) - timedelta(hours=1))
            )
            await session.commit()

        assert await processor.pending_inbox_ids(older_than_seconds=600) == [old]
