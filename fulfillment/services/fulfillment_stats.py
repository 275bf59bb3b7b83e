"""
Shipping vs pickup breakdown of every order this subsystem has seen.

An order counts as shipped once a shipment carries it (forced conversions
included) and as pickup when it went through a shelf without being
shipped. Everything else, pending orders among them, is "other". Rates are
percentages rounded to two places.
"""
from typing import Any, Dict

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.models.order import FulfillmentState, ShippableOrder
from fulfillment.models.shelf import ShelfAssignment
from fulfillment.models.shipment import Shipment, ShipmentOrder


def _percent(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


async def get_fulfillment_stats(db: AsyncSession) -> Dict[str, Any]:
    state_counts = await db.execute(
        select(ShippableOrder.fulfillment_state, func.count(ShippableOrder.id))
        .group_by(ShippableOrder.fulfillment_state)
    )
    by_state = {state.value: 0 for state in FulfillmentState}
    for state, count in state_counts.all():
        by_state[FulfillmentState(state).value] = count
    total = sum(by_state.values())

    shipped = (await db.execute(
        select(func.count(func.distinct(ShipmentOrder.order_id)))
    )).scalar() or 0
    pickup = (await db.execute(
        select(func.count(func.distinct(ShelfAssignment.order_id)))
        .where(ShelfAssignment.order_id.not_in(select(ShipmentOrder.order_id)))
    )).scalar() or 0
    forced = (await db.execute(
        select(func.count(Shipment.id)).where(Shipment.is_forced == True)  # noqa: E712
    )).scalar() or 0

    ship_rate = _percent(shipped, total)
    pickup_rate = _percent(pickup, total)
    return {
        "total_orders": total,
        "pending_orders": by_state[FulfillmentState.PENDING_ROUTING.value],
        "shipped_orders": shipped,
        "pickup_orders": pickup,
        "other_orders": max(total - shipped - pickup, 0),
        "forced_shipments": forced,
        "ship_rate": ship_rate,
        "pickup_rate": pickup_rate,
        "other_rate": max(round(100 - ship_rate - pickup_rate, 2), 0.0) if total else 0.0,
        "by_state": by_state,
    }
