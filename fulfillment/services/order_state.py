"""
Order state transitions

Every transition is a compare-and-set UPDATE on fulfillment_state executed
inside the caller's transaction, so it commits or rolls back together with
the resource (shelf slot, shipment) it accompanies.
"""
import logging
from typing import Iterable, Union

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.exceptions import InvalidStateTransition, OrderNotFound
from fulfillment.core.utils import utcnow
from fulfillment.models.order import FulfillmentState, ShippableOrder, can_transition

logger = logging.getLogger(__name__)


async def transition_order(
    db: AsyncSession,
    order_id: int,
    expected: Union[FulfillmentState, Iterable[FulfillmentState]],
    target: FulfillmentState,
) -> None:
    """
    Move an order from one of `expected` states to `target`.

    Raises:
        InvalidStateTransition: edge not allowed or the order moved on
        OrderNotFound: no such order
    """
    if isinstance(expected, FulfillmentState):
        expected = [expected]
    expected = [state for state in expected if can_transition(state, target)]
    if not expected:
        raise InvalidStateTransition(
            f"Transition to {target.value} is not allowed",
            order_id=order_id,
            target_state=target.value,
        )

    result = await db.execute(
        update(ShippableOrder)
        .where(
            ShippableOrder.id == order_id,
            ShippableOrder.fulfillment_state.in_(expected),
        )
        .values(fulfillment_state=target, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        logger.debug(f"Order {order_id} -> {target.value}")
        return

    current = (await db.execute(
        select(ShippableOrder.fulfillment_state).where(ShippableOrder.id == order_id)
    )).scalar_one_or_none()
    if current is None:
        raise OrderNotFound(order_id)
    raise InvalidStateTransition(
        f"Order {order_id} is {current.value}, cannot move to {target.value}",
        order_id=order_id,
        current_state=current.value,
        target_state=target.value,
    )


async def get_order(db: AsyncSession, order_id: int) -> ShippableOrder:
    result = await db.execute(select(ShippableOrder).where(ShippableOrder.id == order_id))
    order = result.scalar_one_or_none()
    if not order:
        raise OrderNotFound(order_id)
    return order
