"""
Readiness intake

The order directory signals that an order is ready to fulfill. The signal
creates the routing record in PENDING_ROUTING; repeating it is a no-op.
"""
import logging
from typing import Any, Dict, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.utils import utcnow
from fulfillment.models.order import FulfillmentState, ServiceLevel, ShippableOrder

logger = logging.getLogger(__name__)

ORDER_FIELDS = (
    "order_number",
    "customer_email",
    "recipient_name",
    "company_name",
    "phone",
    "address_line1",
    "address_line2",
    "city",
    "state_province",
    "postal_code",
    "country_code",
    "residential",
    "latitude",
    "longitude",
    "weight",
    "length",
    "width",
    "height",
    "item_count",
    "declared_value",
)


async def _by_external_id(db: AsyncSession, external_order_id: str):
    result = await db.execute(
        select(ShippableOrder).where(ShippableOrder.external_order_id == external_order_id)
    )
    return result.scalar_one_or_none()


async def mark_ready(db: AsyncSession, payload: Dict[str, Any]) -> Tuple[ShippableOrder, bool]:
    """
    Create the routing record for a ready order.

    Returns:
        (order, created) - created is False when the order was already known
    """
    external_order_id = str(payload["external_order_id"])

    existing = await _by_external_id(db, external_order_id)
    if existing:
        logger.info(f"Readiness for {external_order_id} already recorded (order {existing.id})")
        return existing, False

    values = {k: payload[k] for k in ORDER_FIELDS if payload.get(k) is not None}
    values["country_code"] = (values.get("country_code") or "US").upper()

    order = ShippableOrder(
        external_order_id=external_order_id,
        service_level=ServiceLevel(payload.get("service_level") or ServiceLevel.STANDARD),
        fulfillment_state=FulfillmentState.PENDING_ROUTING,
        ready_at=utcnow(),
        **values,
    )
    db.add(order)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent signal for the same order won the insert
        await db.rollback()
        existing = await _by_external_id(db, external_order_id)
        if existing is None:
            raise
        return existing, False

    await db.refresh(order)
    logger.info(f"Order {external_order_id} ready for routing (id={order.id})")
    return order, True
