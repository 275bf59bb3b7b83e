"""
Tests for the order fulfillment state machine.
"""
import pytest

from conftest import create_order, fetch_order
from fulfillment.core.exceptions import InvalidStateTransition, OrderNotFound
from fulfillment.models import FulfillmentState
from fulfillment.models.order import can_transition
from fulfillment.services.order_state import get_order, transition_order

S = FulfillmentState


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", [
        (S.PENDING_ROUTING, S.PICKUP_ASSIGNED),
        (S.PENDING_ROUTING, S.SHIP_PENDING),
        (S.PICKUP_ASSIGNED, S.PICKUP_COMPLETE),
        (S.PICKUP_ASSIGNED, S.SHIP_PENDING),
        (S.SHIP_PENDING, S.SHIPPED),
        (S.SHIPPED, S.DELIVERED),
        (S.PICKUP_COMPLETE, S.DELIVERED),
        (S.SHIPPED, S.EXCEPTION),
        (S.DELIVERED, S.EXCEPTION),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.SHIPPED, S.PENDING_ROUTING),
        (S.DELIVERED, S.SHIPPED),
        (S.PICKUP_COMPLETE, S.PICKUP_ASSIGNED),
        (S.PENDING_ROUTING, S.SHIPPED),
        (S.PENDING_ROUTING, S.EXCEPTION),
        (S.EXCEPTION, S.DELIVERED),
        (S.SHIP_PENDING, S.PICKUP_ASSIGNED),
    ])
    def test_refused(self, current, target):
        assert not can_transition(current, target)

    def test_exception_is_terminal(self):
        assert not any(can_transition(S.EXCEPTION, target) for target in S)


class TestTransitionOrder:
    @pytest.mark.asyncio
    async def test_moves_order(self, db, session_factory):
        order = await create_order(session_factory)

        await transition_order(db, order.id, S.PENDING_ROUTING, S.SHIP_PENDING)
        await db.commit()

        assert (await fetch_order(session_factory, order.id)).fulfillment_state == S.SHIP_PENDING

    @pytest.mark.asyncio
    async def test_accepts_several_expected_states(self, db, session_factory):
        order = await create_order(session_factory, fulfillment_state=S.PICKUP_ASSIGNED)

        await transition_order(db, order.id, [S.PENDING_ROUTING, S.PICKUP_ASSIGNED], S.SHIP_PENDING)
        await db.commit()

        assert (await fetch_order(session_factory, order.id)).fulfillment_state == S.SHIP_PENDING

    @pytest.mark.asyncio
    async def test_order_moved_on_reports_current_state(self, db, session_factory):
        order = await create_order(session_factory, fulfillment_state=S.PICKUP_ASSIGNED)

        with pytest.raises(InvalidStateTransition) as exc_info:
            await transition_order(db, order.id, S.PENDING_ROUTING, S.SHIP_PENDING)

        assert exc_info.value.details["current_state"] == "pickup_assigned"
        assert exc_info.value.details["target_state"] == "ship_pending"

    @pytest.mark.asyncio
    async def test_disallowed_edge_is_refused_without_query(self, db, session_factory):
        order = await create_order(session_factory, fulfillment_state=S.DELIVERED)

        with pytest.raises(InvalidStateTransition):
            await transition_order(db, order.id, S.DELIVERED, S.SHIPPED)

        assert (await fetch_order(session_factory, order.id)).fulfillment_state == S.DELIVERED

    @pytest.mark.asyncio
    async def test_unknown_order(self, db):
        with pytest.raises(OrderNotFound):
            await transition_order(db, 31337, S.PENDING_ROUTING, S.SHIP_PENDING)

        with pytest.raises(OrderNotFound):
            await get_order(db, 31337)
