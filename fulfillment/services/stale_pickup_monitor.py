"""
Stale Pickup Monitor

Periodic reconciliation of pickup orders nobody collected.

- Older than STALE_PICKUP_DAYS: the customer is reminded (escalation only,
  no resource changes)
- Older than FORCED_SHIP_DAYS: the order is converted into a shipment with
  the default carrier; the shelf slot is released in the transaction that
  records the shipment. The forced-ship marker is committed before the
  carrier is called, so a crash can never ship twice; a failure is recorded
  on the assignment and alerted, never retried automatically
- One assignment failing never stops the rest of the pass

Only one sweep runs at a time across all instances (job lease).
"""
import logging
import socket
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.database import AsyncSessionLocal
from fulfillment.core.utils import ensure_utc, utcnow
from fulfillment.jobs.leases import release_lease, try_acquire_lease
from fulfillment.models.order import ShippableOrder
from fulfillment.models.shelf import Shelf, ShelfAssignment
from fulfillment.services import alerting
from fulfillment.services.notifications import NotificationService, get_notification_service
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator

logger = logging.getLogger(__name__)

JOB_NAME = "stale_pickup_sweep"


@dataclass
class StalePickupReport:
    skipped: bool = False
    reason: Optional[str] = None
    checked: int = 0
    reminders: List[Dict[str, Any]] = field(default_factory=list)
    forced_shipments: List[Dict[str, Any]] = field(default_factory=list)
    failures: List[Dict[str, Any]] = field(default_factory=list)
    awaiting_operator: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "skipped": self.skipped,
            "reason": self.reason,
            "checked": self.checked,
            "reminders": self.reminders,
            "forced_shipments": self.forced_shipments,
            "failures": self.failures,
            "awaiting_operator": self.awaiting_operator,
        }


def default_holder() -> str:
    return f"{socket.gethostname()}:{uuid.uuid4().hex[:8]}"


class StalePickupMonitor:
    """Finds stale shelf assignments and escalates or force-ships them."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        orchestrator: Optional[ShipmentOrchestrator] = None,
        notifications: Optional[NotificationService] = None,
        stale_days: Optional[int] = None,
        forced_ship_days: Optional[int] = None,
        lease_seconds: Optional[int] = None,
        holder: Optional[str] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.notifications = notifications or get_notification_service()
        self.orchestrator = orchestrator or ShipmentOrchestrator(
            session_factory=self.session_factory,
            notifications=self.notifications,
        )
        self.stale_days = stale_days or settings.STALE_PICKUP_DAYS
        self.forced_ship_days = forced_ship_days or settings.FORCED_SHIP_DAYS
        self.lease_seconds = lease_seconds or settings.STALE_PICKUP_LEASE_SECONDS
        self.holder = holder or default_holder()

    async def sweep(self, now: Optional[datetime] = None) -> StalePickupReport:
        """Run one reconciliation pass unless another instance is mid-sweep."""
        now = now or utcnow()
        async with self.session_factory() as db:
            acquired = await try_acquire_lease(db, JOB_NAME, self.holder, self.lease_seconds, now)
        if not acquired:
            return StalePickupReport(skipped=True, reason="lease_held")

        report = StalePickupReport()
        try:
            await self._sweep(now, report)
        finally:
            async with self.session_factory() as db:
                await release_lease(db, JOB_NAME, self.holder, report.to_dict())

        logger.info(
            f"Stale pickup sweep: {report.checked} stale, {len(report.reminders)} reminded, "
            f"{len(report.forced_shipments)} force-shipped, {len(report.failures)} failed"
        )
        return report

    def _stale_query(self, cutoff: datetime):
        return (
            select(ShelfAssignment, ShippableOrder, Shelf)
            .join(ShippableOrder, ShippableOrder.id == ShelfAssignment.order_id)
            .join(Shelf, Shelf.id == ShelfAssignment.shelf_id)
            .where(
                ShelfAssignment.released_at.is_(None),
                ShelfAssignment.assigned_at <= cutoff,
            )
            .order_by(ShelfAssignment.assigned_at, ShelfAssignment.id)
        )

    async def list_stale(
        self,
        stale_days: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[Dict[str, Any]]:
        """Active assignments waiting at least stale_days, oldest first. Read-only."""
        now = now or utcnow()
        cutoff = now - timedelta(days=stale_days or self.stale_days)
        async with self.session_factory() as db:
            rows = (await db.execute(self._stale_query(cutoff))).all()

        stale = []
        for assignment, order, shelf in rows:
            assigned_at = ensure_utc(assignment.assigned_at)
            stale.append({
                "assignment_id": assignment.id,
                "order_id": order.id,
                "order_number": order.order_number,
                "customer_email": order.customer_email,
                "recipient_name": order.recipient_name,
                "shelf_code": shelf.code,
                "shelf_name": shelf.name,
                "assigned_at": assigned_at,
                "days_waiting": (now - assigned_at).days,
                "escalation_count": assignment.escalation_count,
                "forced_ship_at": ensure_utc(assignment.forced_ship_at),
                "forced_ship_error": assignment.forced_ship_error,
            })
        return stale

    async def _sweep(self, now: datetime, report: StalePickupReport):
        stale_cutoff = now - timedelta(days=self.stale_days)
        forced_cutoff = now - timedelta(days=self.forced_ship_days)

        async with self.session_factory() as db:
            rows = (await db.execute(self._stale_query(stale_cutoff))).all()

        report.checked = len(rows)
        for assignment, order, shelf in rows:
            if assignment.forced_ship_at is not None:
                # Marked earlier and not resolved; needs a human
                report.awaiting_operator.append(assignment.id)
                continue

            assigned_at = ensure_utc(assignment.assigned_at)
            try:
                if assigned_at <= forced_cutoff:
                    await self._force_ship(assignment, order, now, report)
                else:
                    await self._remind(assignment, order, shelf.code, assigned_at, now, report)
            except Exception as e:
                logger.exception(f"Stale pickup handling failed for assignment {assignment.id}")
                report.failures.append({
                    "assignment_id": assignment.id,
                    "order_id": order.id,
                    "error": getattr(e, "message", None) or str(e),
                })

    async def _remind(
        self,
        assignment: ShelfAssignment,
        order: ShippableOrder,
        shelf_code: str,
        assigned_at: datetime,
        now: datetime,
        report: StalePickupReport,
    ):
        days_waiting = (now - assigned_at).days
        notified = True
        try:
            await self.notifications.track(
                order.customer_email or order.external_order_id,
                "pickup_reminder_needed",
                {
                    "orderId": order.external_order_id,
                    "orderNumber": order.order_number,
                    "shelfCode": shelf_code,
                    "daysWaiting": days_waiting,
                },
            )
        except Exception as e:
            notified = False
            logger.warning(f"Pickup reminder for order {order.id} failed: {e}")

        async with self.session_factory() as db:
            await db.execute(
                update(ShelfAssignment)
                .where(ShelfAssignment.id == assignment.id)
                .values(
                    last_escalated_at=now,
                    escalation_count=ShelfAssignment.escalation_count + 1,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        report.reminders.append({
            "assignment_id": assignment.id,
            "order_id": order.id,
            "days_waiting": days_waiting,
            "notified": notified,
        })

    async def _force_ship(
        self,
        assignment: ShelfAssignment,
        order: ShippableOrder,
        now: datetime,
        report: StalePickupReport,
    ):
        async with self.session_factory() as db:
            marked = await db.execute(
                update(ShelfAssignment)
                .where(
                    ShelfAssignment.id == assignment.id,
                    ShelfAssignment.released_at.is_(None),
                    ShelfAssignment.forced_ship_at.is_(None),
                )
                .values(forced_ship_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if marked.rowcount != 1:
            logger.info(f"Assignment {assignment.id} was handled concurrently, skipping")
            return

        logger.warning(f"Force-shipping stale pickup: order {order.id}, assignment {assignment.id}")
        try:
            shipment = await self.orchestrator.create_shipment(
                order.id,
                settings.DEFAULT_CARRIER,
                settings.DEFAULT_SERVICE,
                forced=True,
            )
        except Exception as e:
            message = getattr(e, "message", None) or str(e)
            logger.error(f"Forced ship failed for order {order.id}: {message}")
            async with self.session_factory() as db:
                await db.execute(
                    update(ShelfAssignment)
                    .where(ShelfAssignment.id == assignment.id)
                    .values(forced_ship_error=message[:2000])
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
            await alerting.alert_forced_ship_failure(assignment.id, order.id, message)
            report.failures.append({
                "assignment_id": assignment.id,
                "order_id": order.id,
                "error": message,
            })
            return

        report.forced_shipments.append({
            "assignment_id": assignment.id,
            "order_id": order.id,
            "shipment_id": shipment.id,
            "tracking_number": shipment.tracking_number,
        })
