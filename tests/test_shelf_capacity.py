"""
Tests for pickup shelf capacity accounting.
"""
import asyncio
import re

import pytest
from sqlalchemy import select, update

from conftest import create_order, create_shelf, fetch_order
from fulfillment.core.exceptions import (
    AssignmentNotFound,
    InvalidStateTransition,
    PickupCodeNotFound,
    ShelfCodeExists,
    ShelfFull,
    ShelfInUse,
    ShelfNotFound,
)
from fulfillment.core.utils import utcnow
from fulfillment.models import FulfillmentState, Shelf, ShelfAssignment
from fulfillment.services.shelf_capacity import ShelfCapacityTracker


async def occupied(session_factory, shelf_id):
    async with session_factory() as session:
        return (await session.execute(select(Shelf.occupied).where(Shelf.id == shelf_id))).scalar_one()


async def mark_forced(session_factory, assignment_id):
    async with session_factory() as session:
        await session.execute(
            update(ShelfAssignment)
            .where(ShelfAssignment.id == assignment_id)
            .values(forced_ship_at=utcnow())
        )
        await session.commit()


class TestAssign:
    """Slot assignment and the order state change that goes with it."""

    @pytest.mark.asyncio
    async def test_assign_picks_shelf_with_most_room(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1", capacity=5, occupied=4)
        roomy = await create_shelf(session_factory, code="B1", capacity=5, occupied=1)
        order = await create_order(session_factory)

        assignment = await ShelfCapacityTracker(db, notifications=notifications).assign(order.id)

        assert assignment.shelf_id == roomy.id
        assert await occupied(session_factory, roomy.id) == 2
        stored = await fetch_order(session_factory, order.id)
        assert stored.fulfillment_state == FulfillmentState.PICKUP_ASSIGNED
        assert notifications.named("pickup_shelf_assigned")[0]["properties"]["shelfCode"] == "B1"

    @pytest.mark.asyncio
    async def test_assign_to_explicit_shelf(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1", capacity=5)
        chosen = await create_shelf(session_factory, code="B1", capacity=1)
        order = await create_order(session_factory)

        assignment = await ShelfCapacityTracker(db, notifications=notifications).assign(order.id, shelf_id=chosen.id)

        assert assignment.shelf_id == chosen.id

    @pytest.mark.asyncio
    async def test_unknown_shelf(self, db, session_factory, notifications):
        order = await create_order(session_factory)

        with pytest.raises(ShelfNotFound):
            await ShelfCapacityTracker(db, notifications=notifications).assign(order.id, shelf_id=404)

    @pytest.mark.asyncio
    async def test_full_shelves_raise_shelf_full(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=1, occupied=1)
        order = await create_order(session_factory)

        with pytest.raises(ShelfFull):
            await ShelfCapacityTracker(db, notifications=notifications).assign(order.id)

        assert await occupied(session_factory, shelf.id) == 1
        stored = await fetch_order(session_factory, order.id)
        assert stored.fulfillment_state == FulfillmentState.PENDING_ROUTING

    @pytest.mark.asyncio
    async def test_order_not_pending_keeps_slot_free(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=2)
        order = await create_order(session_factory, fulfillment_state=FulfillmentState.SHIP_PENDING)

        with pytest.raises(InvalidStateTransition):
            await ShelfCapacityTracker(db, notifications=notifications).assign(order.id)

        assert await occupied(session_factory, shelf.id) == 0

    @pytest.mark.asyncio
    async def test_second_assignment_for_same_order_is_refused(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=3)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        await tracker.assign(order.id)

        with pytest.raises(InvalidStateTransition):
            await tracker.assign(order.id)

        assert await occupied(session_factory, shelf.id) == 1

    @pytest.mark.asyncio
    async def test_concurrent_assigns_for_last_slot(self, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=3, occupied=2)
        orders = [await create_order(session_factory) for _ in range(6)]

        async def attempt(order_id):
            async with session_factory() as session:
                try:
                    return await ShelfCapacityTracker(session, notifications=notifications).assign(order_id)
                except ShelfFull as e:
                    return e

        results = await asyncio.gather(*(attempt(o.id) for o in orders))

        winners = [r for r in results if isinstance(r, ShelfAssignment)]
        losers = [r for r in results if isinstance(r, ShelfFull)]
        assert len(winners) == 1
        assert len(losers) == 5
        assert await occupied(session_factory, shelf.id) == 3


class TestRelease:
    @pytest.mark.asyncio
    async def test_pickup_confirmation_frees_slot(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=2)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)

        released = await tracker.release(assignment.id)

        assert released.released_at is not None
        assert released.picked_up_at is not None
        assert released.release_reason == "picked_up"
        assert await occupied(session_factory, shelf.id) == 0
        stored = await fetch_order(session_factory, order.id)
        assert stored.fulfillment_state == FulfillmentState.PICKUP_COMPLETE
        assert len(notifications.named("pickup_completed")) == 1

    @pytest.mark.asyncio
    async def test_release_twice_is_refused(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=2)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)
        await tracker.release(assignment.id)

        with pytest.raises(AssignmentNotFound):
            await tracker.release(assignment.id)

        assert await occupied(session_factory, shelf.id) == 0

    @pytest.mark.asyncio
    async def test_forced_release_leaves_order_state(self, db, session_factory, notifications):
        await create_shelf(session_factory, capacity=2)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)
        await mark_forced(session_factory, assignment.id)

        released = await tracker.release(assignment.id, picked_up=False)

        assert released.picked_up_at is None
        assert released.release_reason == "forced_ship"
        stored = await fetch_order(session_factory, order.id)
        assert stored.fulfillment_state == FulfillmentState.PICKUP_ASSIGNED
        assert notifications.named("pickup_completed") == []

    @pytest.mark.asyncio
    async def test_release_without_pickup_needs_forced_marker(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=2)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)

        with pytest.raises(InvalidStateTransition):
            await tracker.release(assignment.id, picked_up=False)

        assert await occupied(session_factory, shelf.id) == 1
        async with session_factory() as session:
            stored = await session.get(ShelfAssignment, assignment.id)
            assert stored.released_at is None
        # The customer can still collect it
        await tracker.release(assignment.id)
        stored_order = await fetch_order(session_factory, order.id)
        assert stored_order.fulfillment_state == FulfillmentState.PICKUP_COMPLETE


class TestUtilization:
    @pytest.mark.asyncio
    async def test_totals_and_percent(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1", capacity=4, occupied=1)
        await create_shelf(session_factory, code="B1", capacity=2)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        await tracker.assign(order.id)

        report = await tracker.get_utilization()

        assert report["total_capacity"] == 6
        assert report["total_occupied"] == 2
        assert report["total_available"] == 4
        assert report["utilization_percent"] == 33.33
        by_code = {s["code"]: s for s in report["shelves"]}
        # A1 had the most free room
        assert by_code["A1"]["oldest_assigned_at"] is not None
        assert by_code["B1"]["oldest_assigned_at"] is None

    @pytest.mark.asyncio
    async def test_empty(self, db, notifications):
        report = await ShelfCapacityTracker(db, notifications=notifications).get_utilization()

        assert report["total_capacity"] == 0
        assert report["utilization_percent"] == 0.0

    @pytest.mark.asyncio
    async def test_create_shelf(self, db, notifications):
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        shelf = await tracker.create_shelf("c-7", capacity=12)

        assert shelf.code == "C-7"
        assert shelf.capacity == 12
        assert shelf.occupied == 0
        assert await tracker.has_available_slot() is True

    @pytest.mark.asyncio
    async def test_duplicate_code_is_a_conflict(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1")
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        with pytest.raises(ShelfCodeExists) as exc_info:
            await tracker.create_shelf("a1", capacity=3)

        assert exc_info.value.http_status == 409
        # Session is usable after the rollback
        shelf = await tracker.create_shelf("A2", capacity=3)
        assert shelf.id is not None


class TestShelfManagement:
    """Rename, resize, deactivate and delete."""

    @pytest.mark.asyncio
    async def test_update_fields(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, code="A1", capacity=5)
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        updated = await tracker.update_shelf(shelf.id, code="b-2", name="Back wall", location="Aisle 3", capacity=8)

        assert updated.code == "B-2"
        assert updated.name == "Back wall"
        assert updated.location == "Aisle 3"
        assert updated.capacity == 8

    @pytest.mark.asyncio
    async def test_capacity_cannot_drop_below_occupancy(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=5, occupied=3)
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        with pytest.raises(ShelfInUse):
            await tracker.update_shelf(shelf.id, capacity=2)

        async with session_factory() as session:
            stored = await session.get(Shelf, shelf.id)
            assert stored.capacity == 5
            assert stored.occupied == 3

        resized = await tracker.update_shelf(shelf.id, capacity=3)
        assert resized.capacity == 3

    @pytest.mark.asyncio
    async def test_rename_to_taken_code(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1")
        other = await create_shelf(session_factory, code="B1")

        with pytest.raises(ShelfCodeExists):
            await ShelfCapacityTracker(db, notifications=notifications).update_shelf(other.id, code="A1")

    @pytest.mark.asyncio
    async def test_deactivated_shelf_takes_no_orders(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, capacity=5)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        await tracker.update_shelf(shelf.id, is_active=False)

        assert await tracker.has_available_slot() is False
        with pytest.raises(ShelfFull):
            await tracker.assign(order.id)
        with pytest.raises(ShelfNotFound):
            await tracker.assign(order.id, shelf_id=shelf.id)

        await tracker.update_shelf(shelf.id, is_active=True)
        assignment = await tracker.assign(order.id)
        assert assignment.shelf_id == shelf.id

    @pytest.mark.asyncio
    async def test_unknown_shelf(self, db, notifications):
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        with pytest.raises(ShelfNotFound):
            await tracker.update_shelf(404, name="x")
        with pytest.raises(ShelfNotFound):
            await tracker.delete_shelf(404)

    @pytest.mark.asyncio
    async def test_delete_empty_shelf(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory)

        await ShelfCapacityTracker(db, notifications=notifications).delete_shelf(shelf.id)

        async with session_factory() as session:
            assert await session.get(Shelf, shelf.id) is None

    @pytest.mark.asyncio
    async def test_delete_with_active_pickup_is_refused(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        await tracker.assign(order.id)

        with pytest.raises(ShelfInUse) as exc_info:
            await tracker.delete_shelf(shelf.id)

        assert exc_info.value.details["active_assignments"] == 1
        assert await occupied(session_factory, shelf.id) == 1

    @pytest.mark.asyncio
    async def test_delete_with_history_is_refused(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory)
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)
        await tracker.release(assignment.id)

        with pytest.raises(ShelfInUse) as exc_info:
            await tracker.delete_shelf(shelf.id)

        assert "deactivate" in exc_info.value.message


class TestPickupCodes:
    @pytest.mark.asyncio
    async def test_assignment_gets_pickup_code(self, db, session_factory, notifications):
        await create_shelf(session_factory)
        order = await create_order(session_factory)

        assignment = await ShelfCapacityTracker(db, notifications=notifications).assign(order.id)

        assert re.fullmatch(r"PU-[0-9A-F]{12}", assignment.pickup_code)
        sent = notifications.named("pickup_shelf_assigned")[0]["properties"]
        assert sent["pickupCode"] == assignment.pickup_code

    @pytest.mark.asyncio
    async def test_scan_then_confirm(self, db, session_factory, notifications):
        shelf = await create_shelf(session_factory, code="A1")
        order = await create_order(session_factory)
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        assignment = await tracker.assign(order.id)

        scanned = await tracker.lookup_pickup_code(f"  {assignment.pickup_code.lower()} ")

        assert scanned["order_id"] == order.id
        assert scanned["order_number"] == order.order_number
        assert scanned["status"] == "awaiting_pickup"
        assert scanned["shelf"]["code"] == "A1"

        await tracker.confirm_pickup_code(assignment.pickup_code)

        assert await occupied(session_factory, shelf.id) == 0
        stored = await fetch_order(session_factory, order.id)
        assert stored.fulfillment_state == FulfillmentState.PICKUP_COMPLETE
        rescanned = await tracker.lookup_pickup_code(assignment.pickup_code)
        assert rescanned["status"] == "picked_up"
        with pytest.raises(AssignmentNotFound):
            await tracker.confirm_pickup_code(assignment.pickup_code)

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, notifications):
        tracker = ShelfCapacityTracker(db, notifications=notifications)

        with pytest.raises(PickupCodeNotFound):
            await tracker.lookup_pickup_code("PU-000000000000")
        with pytest.raises(PickupCodeNotFound):
            await tracker.confirm_pickup_code("PU-000000000000")

    @pytest.mark.asyncio
    async def test_kiosk_email_lookup(self, db, session_factory, notifications):
        await create_shelf(session_factory, code="A1")
        first = await create_order(session_factory, customer_email="Kiosk.User@Example.com")
        second = await create_order(session_factory, customer_email="kiosk.user@example.com")
        await create_order(session_factory, customer_email="someone@example.com")
        tracker = ShelfCapacityTracker(db, notifications=notifications)
        first_assignment = await tracker.assign(first.id)
        await tracker.assign(second.id)

        found = await tracker.verify_customer_email(" KIOSK.USER@example.com ")

        assert {o["order_number"] for o in found} == {first.order_number, second.order_number}
        assert all(o["shelf"]["code"] == "A1" for o in found)

        await tracker.release(first_assignment.id)
        remaining = await tracker.verify_customer_email("kiosk.user@example.com")
        assert [o["order_number"] for o in remaining] == [second.order_number]
        assert await tracker.verify_customer_email("nobody@example.com") == []
