"""
Tracking Webhook Processor

Applies carrier tracking events to shipments and their orders.

Flow per webhook:
1. Raw payload is stored in the webhook inbox (durable, before any work)
2. Payload is parsed into a known / unknown / malformed update
3. Under the shipment's row lock the event is stored and, unless stale,
   the shipment and order states advance in the same transaction
4. After commit the customer notification is sent and its outcome
   recorded on the event; EXCEPTION also alerts operators

Progression is forward-only by stage and by event time. EXCEPTION and
RETURNED override any state. Nothing here raises to the HTTP layer.
"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.database import AsyncSessionLocal
from fulfillment.core.exceptions import InvalidStateTransition
from fulfillment.core.utils import ensure_utc, utcnow
from fulfillment.models.job_lease import InboxStatus, WebhookInboxEntry
from fulfillment.models.order import FulfillmentState, ShippableOrder
from fulfillment.models.shipment import (
    OVERRIDE_STATUSES,
    STATUS_RANK,
    Shipment,
    ShipmentOrder,
    ShipmentStatus,
    TrackingEvent,
)
from fulfillment.services import alerting
from fulfillment.services.notifications import NotificationService, get_notification_service
from fulfillment.services.order_state import transition_order
from fulfillment.services.tracking_parsers import (
    KnownTrackingUpdate,
    MalformedTrackingPayload,
    UnknownTrackingUpdate,
    parse_tracking_payload,
)

logger = logging.getLogger(__name__)

MAX_INBOX_ATTEMPTS = 5
MAX_APPLY_ATTEMPTS = 3

# Order edges walked for each shipment status
ORDER_PATHS = {
    ShipmentStatus.IN_TRANSIT: [FulfillmentState.SHIPPED],
    ShipmentStatus.OUT_FOR_DELIVERY: [FulfillmentState.SHIPPED],
    ShipmentStatus.DELIVERED: [FulfillmentState.SHIPPED, FulfillmentState.DELIVERED],
    ShipmentStatus.EXCEPTION: [FulfillmentState.EXCEPTION],
    ShipmentStatus.RETURNED: [FulfillmentState.EXCEPTION],
}

ORDER_STATE_RANK = {
    FulfillmentState.SHIP_PENDING: 1,
    FulfillmentState.SHIPPED: 2,
    FulfillmentState.DELIVERED: 3,
}


def should_apply(
    current: ShipmentStatus,
    last_event_at,
    new: ShipmentStatus,
    occurred_at,
) -> bool:
    """
    Decide whether an event moves a shipment.

    Overrides always apply. After an override nothing else applies. Otherwise
    an event must not be older than the last applied one and must not be an
    earlier stage than the current status.
    """
    if new in OVERRIDE_STATUSES:
        return True
    if current in OVERRIDE_STATUSES:
        return False
    last_event_at = ensure_utc(last_event_at)
    if last_event_at is not None and ensure_utc(occurred_at) < last_event_at:
        return False
    return STATUS_RANK.get(new, 0) >= STATUS_RANK.get(current, 0)


class TrackingWebhookProcessor:
    """Carrier tracking event ingestion."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.notifications = notifications or get_notification_service()

    # ==================== Inbox ====================

    async def record_inbox(self, carrier: str, payload: Any, raw_body: Optional[str] = None) -> int:
        """Durably store an inbound webhook before processing."""
        async with self.session_factory() as db:
            entry = WebhookInboxEntry(
                carrier=carrier.upper(),
                payload=payload,
                raw_body=raw_body,
                status=InboxStatus.PENDING,
            )
            db.add(entry)
            await db.commit()
            return entry.id

    async def process_inbox_entry(self, inbox_id: int) -> Dict[str, Any]:
        """Process one stored webhook. Safe to call more than once."""
        async with self.session_factory() as db:
            claimed = await db.execute(
                update(WebhookInboxEntry)
                .where(
                    WebhookInboxEntry.id == inbox_id,
                    WebhookInboxEntry.status == InboxStatus.PENDING,
                )
                .values(attempts=WebhookInboxEntry.attempts + 1)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            entry = (await db.execute(
                select(WebhookInboxEntry).where(WebhookInboxEntry.id == inbox_id)
            )).scalar_one_or_none()

        if entry is None:
            logger.warning(f"Webhook inbox entry {inbox_id} not found")
            return {"processed": False, "status": "missing"}
        if claimed.rowcount != 1:
            return {"processed": False, "status": "duplicate"}

        try:
            outcome = await self.handle(entry.carrier, entry.payload, inbox_id=inbox_id)
        except Exception as e:
            logger.exception(f"Processing webhook inbox entry {inbox_id} failed")
            status = InboxStatus.FAILED if entry.attempts >= MAX_INBOX_ATTEMPTS else InboxStatus.PENDING
            await self._finish_inbox(inbox_id, status, "error", str(e))
            return {"processed": False, "status": "error"}

        flagged = outcome["status"] in ("ignored", "unmatched")
        await self._finish_inbox(
            inbox_id,
            InboxStatus.FLAGGED if flagged else InboxStatus.PROCESSED,
            outcome["status"],
            outcome.get("reason"),
        )
        return {"processed": outcome["processed"], "status": outcome["status"]}

    async def _finish_inbox(self, inbox_id: int, status: InboxStatus, result: str, error: Optional[str] = None):
        async with self.session_factory() as db:
            await db.execute(
                update(WebhookInboxEntry)
                .where(WebhookInboxEntry.id == inbox_id)
                .values(
                    status=status,
                    result=result,
                    error=error,
                    processed_at=utcnow() if status != InboxStatus.PENDING else None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

    async def pending_inbox_ids(self, older_than_seconds: Optional[int] = None, limit: int = 100) -> List[int]:
        """Entries nobody finished, e.g. after a worker crash."""
        cutoff = utcnow() - timedelta(seconds=older_than_seconds or settings.WEBHOOK_REQUEUE_AFTER_SECONDS)
        async with self.session_factory() as db:
            result = await db.execute(
                select(WebhookInboxEntry.id)
                .where(
                    WebhookInboxEntry.status == InboxStatus.PENDING,
                    WebhookInboxEntry.received_at < cutoff,
                )
                .order_by(WebhookInboxEntry.id)
                .limit(limit)
            )
            return list(result.scalars().all())

    # ==================== Processing ====================

    async def handle(self, carrier: str, payload: Any, inbox_id: Optional[int] = None) -> Dict[str, Any]:
        """
        Apply one webhook payload.

        Returns:
            {"processed": bool, "status": str, ...}
        """
        update_ = parse_tracking_payload(carrier, payload)

        if isinstance(update_, MalformedTrackingPayload):
            logger.warning(f"Malformed {update_.carrier} tracking webhook: {update_.reason}")
            return {"processed": False, "status": "ignored", "reason": update_.reason}

        for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
            outcome = await self._apply(update_, payload)
            if outcome is not None:
                break
            logger.debug(f"Shipment {update_.tracking_number} changed concurrently, retrying ({attempt})")
        else:
            # Concurrent writers kept winning; they carry newer state
            outcome = {"processed": True, "status": "stale"}

        if outcome["status"] == "unmatched":
            logger.warning(f"{update_.carrier} webhook for unknown tracking number {update_.tracking_number}")
            await alerting.alert_unmatched_tracking(update_.carrier, update_.tracking_number, inbox_id or 0)
            outcome["reason"] = f"no shipment with tracking number {update_.tracking_number}"
            return outcome

        if outcome.get("changed"):
            await self._after_commit(outcome)

        return {"processed": outcome["processed"], "status": outcome["status"]}

    async def _apply(self, update_, payload: Any) -> Optional[Dict[str, Any]]:
        """
        One attempt at storing and applying an update.

        Returns None when the shipment changed between read and write.
        """
        async with self.session_factory() as db:
            shipment = (await db.execute(
                select(Shipment)
                .where(Shipment.tracking_number == update_.tracking_number)
                .with_for_update()
            )).scalar_one_or_none()
            if shipment is None:
                await db.rollback()
                return {"processed": False, "status": "unmatched"}

            duplicate = (await db.execute(
                select(TrackingEvent.id).where(
                    TrackingEvent.shipment_id == shipment.id,
                    TrackingEvent.carrier_status == update_.carrier_status,
                    TrackingEvent.occurred_at == update_.occurred_at,
                ).limit(1)
            )).scalar_one_or_none()
            if duplicate is not None:
                await db.rollback()
                return {"processed": True, "status": "duplicate"}

            event = TrackingEvent(
                shipment_id=shipment.id,
                carrier=update_.carrier,
                carrier_status=update_.carrier_status,
                description=update_.description,
                location=update_.location,
                occurred_at=update_.occurred_at,
                received_at=utcnow(),
                raw_payload=payload,
            )

            if isinstance(update_, UnknownTrackingUpdate):
                event.status = ShipmentStatus.UNKNOWN
                event.applied = False
                db.add(event)
                await db.commit()
                logger.warning(
                    f"Unrecognized {update_.carrier} status {update_.carrier_status!r} "
                    f"for {update_.tracking_number}, stored as unknown"
                )
                return {"processed": True, "status": "unknown"}

            previous = shipment.status
            previous_event_at = shipment.last_event_at
            event.status = update_.status

            if not should_apply(previous, previous_event_at, update_.status, update_.occurred_at):
                event.applied = False
                db.add(event)
                await db.commit()
                logger.info(
                    f"Stale {update_.status.value} event for {update_.tracking_number} "
                    f"(current {previous.value}), stored without applying"
                )
                return {"processed": True, "status": "stale"}

            event.applied = True
            db.add(event)

            values = {
                "status": update_.status,
                "status_detail": (update_.description or "")[:255] or None,
                "last_event_at": update_.occurred_at,
                "updated_at": utcnow(),
            }
            if update_.status == ShipmentStatus.DELIVERED:
                values["delivered_at"] = update_.occurred_at

            guard = [Shipment.id == shipment.id, Shipment.status == previous]
            if previous_event_at is None:
                guard.append(Shipment.last_event_at.is_(None))
            else:
                guard.append(Shipment.last_event_at == previous_event_at)

            result = await db.execute(
                update(Shipment).where(*guard).values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                return None

            order_ids = list((await db.execute(
                select(ShipmentOrder.order_id).where(ShipmentOrder.shipment_id == shipment.id)
            )).scalars().all())
            for order_id in order_ids:
                await self._advance_order(db, order_id, update_.status)

            await db.commit()

            logger.info(
                f"Shipment {shipment.id} ({update_.tracking_number}): "
                f"{previous.value} -> {update_.status.value}"
            )
            return {
                "processed": True,
                "status": update_.status.value,
                "changed": update_.status != previous,
                "shipment_id": shipment.id,
                "tracking_number": shipment.tracking_number,
                "carrier": shipment.carrier,
                "tracking_url": shipment.tracking_url,
                "event_id": event.id,
                "order_ids": order_ids,
                "new_status": update_.status,
                "description": update_.description,
            }

    async def _advance_order(self, db: AsyncSession, order_id: int, status: ShipmentStatus):
        """Walk the order along the edges implied by a shipment status."""
        for target in ORDER_PATHS.get(status, []):
            current = (await db.execute(
                select(ShippableOrder.fulfillment_state).where(ShippableOrder.id == order_id)
            )).scalar_one_or_none()
            if current is None or current == target:
                continue
            if target != FulfillmentState.EXCEPTION and (
                ORDER_STATE_RANK.get(current, 0) >= ORDER_STATE_RANK.get(target, 0)
            ):
                continue
            try:
                await transition_order(db, order_id, current, target)
            except InvalidStateTransition as e:
                logger.warning(f"Order {order_id} not advanced to {target.value}: {e.message}")
                return

    async def _after_commit(self, outcome: Dict[str, Any]):
        new_status: ShipmentStatus = outcome["new_status"]

        async with self.session_factory() as db:
            orders = (await db.execute(
                select(ShippableOrder).where(ShippableOrder.id.in_(outcome["order_ids"]))
            )).scalars().all()

        errors = []
        for order in orders:
            try:
                await self.notifications.track(
                    order.customer_email or order.external_order_id,
                    "shipment_status_changed",
                    {
                        "orderId": order.external_order_id,
                        "orderNumber": order.order_number,
                        "status": new_status.value,
                        "carrier": outcome["carrier"],
                        "trackingNumber": outcome["tracking_number"],
                        "trackingUrl": outcome["tracking_url"],
                    },
                )
            except Exception as e:
                logger.warning(f"Status notification for order {order.id} failed: {e}")
                errors.append(f"order {order.id}: {e}")

        async with self.session_factory() as db:
            await db.execute(
                update(TrackingEvent)
                .where(TrackingEvent.id == outcome["event_id"])
                .values(
                    notified_at=None if errors else utcnow(),
                    notification_error="; ".join(errors)[:2000] if errors else None,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if new_status == ShipmentStatus.EXCEPTION:
            await alerting.alert_shipment_exception(
                outcome["shipment_id"],
                outcome["tracking_number"],
                new_status.value,
                outcome.get("description") or "",
            )
