"""
Routing Advisor

Recommends pickup or ship for a pending order. Advisory only: nothing is
reserved or purchased here. The recommendation is stored on the order as
routing metadata so operators and the order directory can see it.

Decision order:
1. Address cannot be parsed or verified      -> ship (address_unverified)
2. Customer asked for pickup, slot available -> pickup
3. Within the pickup radius, slot available and the cheapest ship rate is
   at or above PICKUP_SAVINGS_THRESHOLD      -> pickup (pickup_savings)
4. Within the pickup radius, slot available and no carrier returned a
   rate                                      -> pickup (no_ship_rate); the
   savings are unknown, but the shelf is the only way to fulfil the order
5. Otherwise                                 -> ship, cheapest rate meeting
   the requested service level

deadline_seconds bounds the whole evaluation. Address validation and rate
shopping share it, each carrier call getting whatever time is left (and never
more than CARRIER_CALL_TIMEOUT_SECONDS).
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    DeadlineExceeded,
    FulfillmentError,
    InvalidStateTransition,
    RateUnavailable,
    TransientCarrierError,
)
from fulfillment.core.utils import utcnow
from fulfillment.models.order import SERVICE_LEVEL_MAX_DAYS, ShippableOrder
from fulfillment.modules.shipping.carriers import get_carrier
from fulfillment.modules.shipping.carriers.base import CarrierRate
from fulfillment.services.addresses import (
    distance_from_origin,
    is_address_parseable,
    is_local_city,
    order_destination,
)
from fulfillment.services.order_state import get_order
from fulfillment.services.rate_shopper import GatewayResolver, RateShopper, RateShopResult
from fulfillment.services.shelf_capacity import ShelfCapacityTracker

logger = logging.getLogger(__name__)

PICKUP = "pickup"
SHIP = "ship"


@dataclass
class RoutingRecommendation:
    order_id: int
    recommendation: str
    reason: str
    rate: Optional[CarrierRate] = None
    costs: Dict[str, Optional[float]] = field(default_factory=dict)
    factors: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_id": self.order_id,
            "recommendation": self.recommendation,
            "reason": self.reason,
            "rate": self.rate.to_dict() if self.rate else None,
            "costs": self.costs,
            "factors": self.factors,
        }


class RoutingAdvisor:
    """Pickup-vs-ship recommendations."""

    def __init__(
        self,
        db: AsyncSession,
        rate_shopper: Optional[RateShopper] = None,
        get_gateway: Optional[GatewayResolver] = None,
    ):
        self.db = db
        self._get_gateway = get_gateway or get_carrier
        self.rate_shopper = rate_shopper or RateShopper(get_gateway=self._get_gateway)
        self.shelves = ShelfCapacityTracker(db)

    async def _address_verified(
        self,
        order: ShippableOrder,
        factors: Dict[str, Any],
        time_left: Optional[float] = None,
    ) -> bool:
        if not is_address_parseable(order):
            factors["address_problem"] = "incomplete address"
            return False

        gateway = self._get_gateway(settings.DEFAULT_CARRIER)
        if gateway is None:
            factors["address_problem"] = f"no gateway for {settings.DEFAULT_CARRIER}"
            return False

        timeout = settings.CARRIER_CALL_TIMEOUT_SECONDS
        deadline_bound = time_left is not None and time_left < timeout
        try:
            result = await asyncio.wait_for(
                gateway.validate_address(order_destination(order)),
                timeout=time_left if deadline_bound else timeout,
            )
        except asyncio.TimeoutError:
            if deadline_bound:
                raise DeadlineExceeded(
                    f"Address validation for order {order.id} overran the routing deadline",
                    details={"order_id": order.id},
                )
            logger.warning(f"Address validation for order {order.id} timed out after {timeout}s")
            factors["address_problem"] = "address validation timed out"
            return False
        except FulfillmentError as e:
            logger.warning(f"Address validation failed for order {order.id}: {e.message}")
            factors["address_problem"] = e.message
            return False

        if not result.is_valid:
            factors["address_problem"] = "; ".join(result.validation_messages or []) or result.status
            return False
        return True

    async def recommend(
        self,
        order_id: int,
        deadline_seconds: Optional[float] = None,
    ) -> RoutingRecommendation:
        """
        Evaluate an order still pending routing.

        Raises:
            OrderNotFound
            InvalidStateTransition: a resource was already committed
            DeadlineExceeded: the evaluation overran deadline_seconds
        """
        loop = asyncio.get_running_loop()
        deadline_at = loop.time() + deadline_seconds if deadline_seconds is not None else None

        def time_left() -> Optional[float]:
            if deadline_at is None:
                return None
            left = deadline_at - loop.time()
            if left <= 0:
                raise DeadlineExceeded(
                    f"Routing order {order_id} did not complete within {deadline_seconds}s",
                    details={"order_id": order_id},
                )
            return left

        order = await get_order(self.db, order_id)
        if not order.pending_routing:
            raise InvalidStateTransition(
                f"Order {order_id} has already been routed ({order.fulfillment_state.value})",
                order_id=order_id,
                current_state=order.fulfillment_state.value,
            )

        # Rates are fetched at most once per evaluation
        rate_cache: Dict[int, RateShopResult] = {}

        async def shop() -> RateShopResult:
            if order.id not in rate_cache:
                rate_cache[order.id] = await self.rate_shopper.shop_rates(
                    order, deadline_seconds=time_left(),
                )
            return rate_cache[order.id]

        factors: Dict[str, Any] = {
            "requested_pickup": order.requested_pickup,
            "service_level": order.service_level.value,
        }
        slot_available = await self.shelves.has_available_slot()
        factors["slot_available"] = slot_available

        if not await self._address_verified(order, factors, time_left()):
            recommendation = RoutingRecommendation(
                order_id=order.id, recommendation=SHIP, reason="address_unverified", factors=factors,
            )
            return await self._record(order, recommendation)

        if order.requested_pickup and slot_available:
            recommendation = RoutingRecommendation(
                order_id=order.id,
                recommendation=PICKUP,
                reason="customer_requested_pickup",
                costs={"pickup": 0.0},
                factors=factors,
            )
            return await self._record(order, recommendation)

        try:
            shopped = await shop()
        except (RateUnavailable, TransientCarrierError) as e:
            factors["rates_error"] = e.message
            shopped = None

        distance = distance_from_origin(order)
        factors["distance_miles"] = round(distance, 2) if distance is not None else None
        if distance is not None:
            within_radius = distance <= settings.PICKUP_SERVICE_RADIUS_MILES
        else:
            within_radius = is_local_city(order)
        factors["within_radius"] = within_radius

        cheapest = shopped.cheapest if shopped else None
        costs = {"pickup": 0.0, "cheapest_ship": cheapest.rate if cheapest else None}
        if shopped is not None:
            factors["partial_rates"] = shopped.partial

        if within_radius and slot_available and cheapest is not None \
                and cheapest.rate >= settings.PICKUP_SAVINGS_THRESHOLD:
            recommendation = RoutingRecommendation(
                order_id=order.id,
                recommendation=PICKUP,
                reason="pickup_savings",
                costs=costs,
                factors=factors,
            )
            return await self._record(order, recommendation)

        if within_radius and slot_available and cheapest is None:
            # Fallback: nothing to compare against, the shelf still fulfils it
            factors["ship_cost_unknown"] = True
            recommendation = RoutingRecommendation(
                order_id=order.id,
                recommendation=PICKUP,
                reason="no_ship_rate",
                costs=costs,
                factors=factors,
            )
            return await self._record(order, recommendation)

        if shopped is None:
            raise RateUnavailable(
                f"No shipping rate available for order {order.id} and pickup is not possible",
                details={"factors": factors},
            )

        chosen = self._qualifying_rate(order, shopped, factors)
        costs["chosen_ship"] = chosen.rate
        if not slot_available and (order.requested_pickup or within_radius):
            reason = "no_shelf_capacity"
        else:
            reason = "cheapest_rate"

        recommendation = RoutingRecommendation(
            order_id=order.id,
            recommendation=SHIP,
            reason=reason,
            rate=chosen,
            costs=costs,
            factors=factors,
        )
        return await self._record(order, recommendation)

    def _qualifying_rate(
        self,
        order: ShippableOrder,
        shopped: RateShopResult,
        factors: Dict[str, Any],
    ) -> CarrierRate:
        """Cheapest rate whose transit time fits the requested service level."""
        max_days = SERVICE_LEVEL_MAX_DAYS.get(order.service_level)
        if max_days is None:
            return shopped.cheapest

        for rate in shopped.rates:
            if rate.delivery_days is not None and rate.delivery_days <= max_days:
                return rate

        factors["service_level_unmet"] = True
        return shopped.cheapest

    async def _record(self, order: ShippableOrder, recommendation: RoutingRecommendation) -> RoutingRecommendation:
        order.routing_recommendation = recommendation.to_dict()
        order.routed_at = utcnow()
        await self.db.commit()
        logger.info(
            f"Order {order.id}: recommend {recommendation.recommendation} ({recommendation.reason})"
        )
        return recommendation
