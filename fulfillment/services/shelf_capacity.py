"""
Shelf Capacity Tracker

Authoritative accounting of pickup shelf slots.

Shelf.occupied only changes through conditional UPDATEs:
    UPDATE pickup_shelves SET occupied = occupied + 1
    WHERE id = :id AND occupied < capacity
so two concurrent assigns can never both take the last slot. The order's
state change and the assignment row are written in the same transaction.

Every assignment carries a pickup code (printed as a QR code) that the
counter or kiosk scans to look the order up and confirm collection.
"""
import logging
import secrets
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    AssignmentNotFound,
    InvalidStateTransition,
    PickupCodeNotFound,
    ShelfCodeExists,
    ShelfFull,
    ShelfInUse,
    ShelfNotFound,
)
from fulfillment.core.utils import ensure_utc, utcnow
from fulfillment.models.order import FulfillmentState, ShippableOrder
from fulfillment.models.shelf import Shelf, ShelfAssignment
from fulfillment.services.notifications import NotificationService, get_notification_service
from fulfillment.services.order_state import transition_order

logger = logging.getLogger(__name__)

SHELF_FIELDS = ("code", "name", "location", "capacity", "is_active")


def generate_pickup_code() -> str:
    return f"PU-{secrets.token_hex(6).upper()}"


def normalize_pickup_code(pickup_code: str) -> str:
    return (pickup_code or "").strip().upper()


class ShelfCapacityTracker:
    """Shelf slot assignment, release and utilization."""

    def __init__(
        self,
        db: AsyncSession,
        max_attempts: Optional[int] = None,
        notifications: Optional[NotificationService] = None,
    ):
        self.db = db
        self.max_attempts = max_attempts or settings.SHELF_ASSIGN_MAX_ATTEMPTS
        self.notifications = notifications or get_notification_service()

    async def _notify(self, order_id: int, shelf_id: int, event: str, extra: Optional[Dict[str, Any]] = None):
        """Customer notification after a committed change; failures are logged only."""
        row = (await self.db.execute(
            select(ShippableOrder, Shelf.code)
            .join(Shelf, Shelf.id == shelf_id)
            .where(ShippableOrder.id == order_id)
        )).first()
        if row is None:
            return
        order, shelf_code = row
        properties = {
            "orderId": order.external_order_id,
            "orderNumber": order.order_number,
            "shelfCode": shelf_code,
        }
        properties.update(extra or {})
        try:
            await self.notifications.track(
                order.customer_email or order.external_order_id,
                event,
                properties,
            )
        except Exception as e:
            logger.warning(f"{event} notification for order {order_id} failed: {e}")

    # ==================== Shelves ====================

    async def _get_shelf(self, shelf_id: int) -> Shelf:
        shelf = (await self.db.execute(
            select(Shelf).where(Shelf.id == shelf_id).execution_options(populate_existing=True)
        )).scalar_one_or_none()
        if shelf is None:
            raise ShelfNotFound(shelf_id)
        return shelf

    async def create_shelf(
        self,
        code: str,
        name: Optional[str] = None,
        capacity: Optional[int] = None,
        location: Optional[str] = None,
    ) -> Shelf:
        """
        Raises:
            ShelfCodeExists: another shelf already uses the code
        """
        capacity = capacity if capacity is not None else settings.SHELF_DEFAULT_CAPACITY
        if capacity < 1:
            raise ValueError("Shelf capacity must be at least 1")
        shelf = Shelf(
            code=code.strip().upper(),
            name=name or code,
            capacity=capacity,
            occupied=0,
            location=location,
            is_active=True,
        )
        self.db.add(shelf)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ShelfCodeExists(f"Shelf code {code.strip().upper()} is already in use")
        logger.info(f"Created shelf {shelf.code} with capacity {capacity}")
        return shelf

    async def update_shelf(self, shelf_id: int, **changes: Any) -> Shelf:
        """
        Rename, move, resize, deactivate or reactivate a shelf.

        A deactivated shelf takes no new assignments; orders already on it
        stay until collected. Capacity can never drop below the slots in use,
        checked in the same UPDATE that applies it.

        Raises:
            ShelfNotFound, ShelfInUse (capacity below occupancy), ShelfCodeExists
        """
        unknown = set(changes) - set(SHELF_FIELDS)
        if unknown:
            raise ValueError(f"Unknown shelf fields: {', '.join(sorted(unknown))}")
        values = {key: value for key, value in changes.items() if value is not None}

        shelf = await self._get_shelf(shelf_id)
        if not values:
            return shelf
        if "code" in values:
            values["code"] = values["code"].strip().upper()
        if "capacity" in values and values["capacity"] < 1:
            raise ValueError("Shelf capacity must be at least 1")

        stmt = update(Shelf).where(Shelf.id == shelf_id)
        if "capacity" in values:
            stmt = stmt.where(Shelf.occupied <= values["capacity"])
        try:
            result = await self.db.execute(
                stmt.values(updated_at=utcnow(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ShelfInUse(
                    f"Shelf {shelf.code} holds {shelf.occupied} order(s); "
                    f"capacity cannot be reduced to {values['capacity']}",
                    shelf_id=shelf_id,
                    details={"occupied": shelf.occupied},
                )
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise ShelfCodeExists(f"Shelf code {values.get('code')} is already in use", shelf_id=shelf_id)
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Updated shelf {shelf_id}: {values}")
        return await self._get_shelf(shelf_id)

    async def delete_shelf(self, shelf_id: int) -> None:
        """
        Delete a shelf that has never held an order.

        Shelves with active pickups must be emptied first; shelves with only
        pickup history keep it and should be deactivated instead.

        Raises:
            ShelfNotFound, ShelfInUse
        """
        shelf = await self._get_shelf(shelf_id)
        code = shelf.code
        active, total = (await self.db.execute(
            select(
                func.count(ShelfAssignment.id).filter(ShelfAssignment.released_at.is_(None)),
                func.count(ShelfAssignment.id),
            ).where(ShelfAssignment.shelf_id == shelf_id)
        )).one()
        if active:
            raise ShelfInUse(
                f"Shelf {code} has {active} active pickup(s). Move them first.",
                shelf_id=shelf_id,
                details={"active_assignments": active},
            )
        if total:
            raise ShelfInUse(
                f"Shelf {code} has pickup history; deactivate it instead",
                shelf_id=shelf_id,
                details={"assignments": total},
            )

        try:
            await self.db.execute(delete(Shelf).where(Shelf.id == shelf_id))
            await self.db.commit()
        except IntegrityError:
            # An assignment landed between the check and the delete
            await self.db.rollback()
            raise ShelfInUse(f"Shelf {code} is in use", shelf_id=shelf_id)
        logger.info(f"Deleted shelf {code}")

    async def has_available_slot(self) -> bool:
        result = await self.db.execute(
            select(func.count(Shelf.id)).where(
                Shelf.is_active == True,  # noqa: E712
                Shelf.occupied < Shelf.capacity,
            )
        )
        return (result.scalar() or 0) > 0

    async def _candidate_shelves(self, shelf_id: Optional[int]) -> List[int]:
        if shelf_id is not None:
            result = await self.db.execute(
                select(Shelf.id).where(Shelf.id == shelf_id, Shelf.is_active == True)  # noqa: E712
            )
            if result.scalar_one_or_none() is None:
                raise ShelfNotFound(shelf_id)
            return [shelf_id]

        # Most free capacity first
        result = await self.db.execute(
            select(Shelf.id)
            .where(Shelf.is_active == True, Shelf.occupied < Shelf.capacity)  # noqa: E712
            .order_by((Shelf.capacity - Shelf.occupied).desc(), Shelf.id)
            .limit(self.max_attempts)
        )
        return list(result.scalars().all())

    # ==================== Assignment ====================

    async def assign(self, order_id: int, shelf_id: Optional[int] = None) -> ShelfAssignment:
        """
        Reserve a slot for an order and move it to PICKUP_ASSIGNED.

        Raises:
            ShelfFull: no candidate shelf accepted the increment
            InvalidStateTransition: order is no longer pending routing
            ShelfNotFound: explicit shelf_id unknown or inactive
        """
        candidates = await self._candidate_shelves(shelf_id)

        try:
            chosen = None
            for candidate_id in candidates:
                result = await self.db.execute(
                    update(Shelf)
                    .where(
                        Shelf.id == candidate_id,
                        Shelf.is_active == True,  # noqa: E712
                        Shelf.occupied < Shelf.capacity,
                    )
                    .values(occupied=Shelf.occupied + 1, updated_at=utcnow())
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    chosen = candidate_id
                    break
                logger.debug(f"Shelf {candidate_id} filled up before order {order_id} could claim it")

            if chosen is None:
                raise ShelfFull(order_id=order_id, attempted_shelves=candidates)

            await transition_order(
                self.db, order_id,
                FulfillmentState.PENDING_ROUTING,
                FulfillmentState.PICKUP_ASSIGNED,
            )

            assignment = ShelfAssignment(
                shelf_id=chosen,
                order_id=order_id,
                pickup_code=generate_pickup_code(),
                assigned_at=utcnow(),
            )
            self.db.add(assignment)
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise InvalidStateTransition(
                f"Order {order_id} already holds an active shelf assignment",
                order_id=order_id,
            )
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Order {order_id} assigned to shelf {chosen} (assignment {assignment.id})")
        await self._notify(order_id, chosen, "pickup_shelf_assigned", {"pickupCode": assignment.pickup_code})
        return assignment

    async def release(
        self,
        assignment_id: int,
        picked_up: bool = True,
        reason: Optional[str] = None,
        commit: bool = True,
    ) -> ShelfAssignment:
        """
        Free an assignment's slot.

        picked_up=True is the customer collecting the order and moves it to
        PICKUP_COMPLETE. picked_up=False is the forced conversion to a
        shipment and is only accepted for assignments already marked for
        forced shipping; the order state is then owned by the shipment
        orchestrator.

        Raises:
            AssignmentNotFound: unknown or already released
            InvalidStateTransition: release without pickup on an unmarked assignment
        """
        now = utcnow()
        conditions = [
            ShelfAssignment.id == assignment_id,
            ShelfAssignment.released_at.is_(None),
        ]
        if not picked_up:
            conditions.append(ShelfAssignment.forced_ship_at.isnot(None))

        try:
            result = await self.db.execute(
                update(ShelfAssignment)
                .where(*conditions)
                .values(
                    released_at=now,
                    picked_up_at=now if picked_up else None,
                    release_reason=reason or ("picked_up" if picked_up else "forced_ship"),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                active_order = (await self.db.execute(
                    select(ShelfAssignment.order_id).where(
                        ShelfAssignment.id == assignment_id,
                        ShelfAssignment.released_at.is_(None),
                    )
                )).scalar_one_or_none()
                if active_order is not None:
                    raise InvalidStateTransition(
                        f"Assignment {assignment_id} is not marked for forced shipping; "
                        "only a pickup can release it",
                        order_id=active_order,
                        current_state=FulfillmentState.PICKUP_ASSIGNED.value,
                    )
                raise AssignmentNotFound(assignment_id)

            assignment = (await self.db.execute(
                select(ShelfAssignment).where(ShelfAssignment.id == assignment_id)
                .execution_options(populate_existing=True)
            )).scalar_one()

            await self.db.execute(
                update(Shelf)
                .where(Shelf.id == assignment.shelf_id, Shelf.occupied > 0)
                .values(occupied=Shelf.occupied - 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )

            if picked_up:
                await transition_order(
                    self.db, assignment.order_id,
                    FulfillmentState.PICKUP_ASSIGNED,
                    FulfillmentState.PICKUP_COMPLETE,
                )
            if commit:
                await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

        logger.info(f"Released assignment {assignment_id} from shelf {assignment.shelf_id} ({assignment.release_reason})")
        if picked_up and commit:
            await self._notify(assignment.order_id, assignment.shelf_id, "pickup_completed")
        return assignment

    # ==================== Pickup codes / kiosk ====================

    async def lookup_pickup_code(self, pickup_code: str) -> Dict[str, Any]:
        """
        What the counter sees after scanning a pickup code.

        Raises:
            PickupCodeNotFound
        """
        code = normalize_pickup_code(pickup_code)
        row = (await self.db.execute(
            select(ShelfAssignment, ShippableOrder, Shelf)
            .join(ShippableOrder, ShippableOrder.id == ShelfAssignment.order_id)
            .join(Shelf, Shelf.id == ShelfAssignment.shelf_id)
            .where(ShelfAssignment.pickup_code == code)
        )).first()
        if row is None:
            raise PickupCodeNotFound(code)

        assignment, order, shelf = row
        return {
            "pickup_code": assignment.pickup_code,
            "assignment_id": assignment.id,
            "order_id": order.id,
            "order_number": order.order_number,
            "recipient_name": order.recipient_name,
            "status": "awaiting_pickup" if assignment.is_active else assignment.release_reason,
            "assigned_at": ensure_utc(assignment.assigned_at),
            "shelf": {"code": shelf.code, "name": shelf.name, "location": shelf.location},
        }

    async def confirm_pickup_code(self, pickup_code: str) -> ShelfAssignment:
        """
        Pickup confirmation by scanned code.

        Raises:
            PickupCodeNotFound, AssignmentNotFound (already collected)
        """
        code = normalize_pickup_code(pickup_code)
        assignment_id = (await self.db.execute(
            select(ShelfAssignment.id).where(ShelfAssignment.pickup_code == code)
        )).scalar_one_or_none()
        if assignment_id is None:
            raise PickupCodeNotFound(code)
        return await self.release(assignment_id, picked_up=True)

    async def verify_customer_email(self, email: str) -> List[Dict[str, Any]]:
        """Kiosk lookup: orders waiting on a shelf for this customer email."""
        rows = (await self.db.execute(
            select(ShelfAssignment, ShippableOrder, Shelf)
            .join(ShippableOrder, ShippableOrder.id == ShelfAssignment.order_id)
            .join(Shelf, Shelf.id == ShelfAssignment.shelf_id)
            .where(
                ShelfAssignment.released_at.is_(None),
                func.lower(ShippableOrder.customer_email) == (email or "").strip().lower(),
            )
            .order_by(ShelfAssignment.assigned_at.desc(), ShelfAssignment.id.desc())
        )).all()
        return [
            {
                "order_number": order.order_number,
                "pickup_code": assignment.pickup_code,
                "shelf": {"code": shelf.code, "name": shelf.name},
            }
            for assignment, order, shelf in rows
        ]

    # ==================== Reporting ====================

    async def get_utilization(self) -> Dict[str, Any]:
        """Per-shelf and total occupancy."""
        shelves = (await self.db.execute(
            select(Shelf).where(Shelf.is_active == True).order_by(Shelf.code)  # noqa: E712
        )).scalars().all()

        oldest_rows = await self.db.execute(
            select(ShelfAssignment.shelf_id, func.min(ShelfAssignment.assigned_at))
            .where(ShelfAssignment.released_at.is_(None))
            .group_by(ShelfAssignment.shelf_id)
        )
        oldest = {shelf_id: ensure_utc(assigned_at) for shelf_id, assigned_at in oldest_rows.all()}

        per_shelf = []
        total_capacity = 0
        total_occupied = 0
        for shelf in shelves:
            total_capacity += shelf.capacity
            total_occupied += shelf.occupied
            per_shelf.append({
                "shelf_id": shelf.id,
                "code": shelf.code,
                "name": shelf.name,
                "capacity": shelf.capacity,
                "occupied": shelf.occupied,
                "available": shelf.available,
                "oldest_assigned_at": oldest[shelf.id].isoformat() if shelf.id in oldest else None,
            })

        utilization = round(total_occupied / total_capacity * 100, 2) if total_capacity else 0.0
        return {
            "shelves": per_shelf,
            "total_capacity": total_capacity,
            "total_occupied": total_occupied,
            "total_available": total_capacity - total_occupied,
            "utilization_percent": utilization,
        }
