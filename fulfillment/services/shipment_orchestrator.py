"""
Shipment Orchestrator

Turns routing decisions into purchased labels and Shipment records.

- Carrier calls run outside database transactions
- The Shipment row, its order links and the order state change commit
  together; a failure leaves no Shipment behind
- A label bought but not recorded is logged with its tracking number and
  alerted, then surfaced as ShipmentPersistError
- Once a carrier reports rate limiting, later calls to it from this process
  are serialized through a per-carrier lock until the cooldown passes
- A forced conversion frees the order's shelf slot in the same transaction
  that records the shipment

Usage:
    orchestrator = ShipmentOrchestrator()
    shipment = await orchestrator.create_shipment(order_id, "UPS", "03")
    batch = await orchestrator.create_batch([1, 2, 3])
"""
import asyncio
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.database import AsyncSessionLocal
from fulfillment.core.exceptions import (
    AddressInvalid,
    CarrierRateLimited,
    CarrierRejected,
    FulfillmentError,
    InvalidStateTransition,
    OrderNotFound,
    ShipmentAlreadyExists,
    ShipmentPersistError,
    TransientCarrierError,
)
from fulfillment.models.order import FulfillmentState, ShippableOrder
from fulfillment.models.shelf import ShelfAssignment
from fulfillment.models.shipment import Shipment, ShipmentOrder, ShipmentStatus
from fulfillment.modules.shipping.carriers import get_carrier
from fulfillment.modules.shipping.carriers.base import (
    AddressInput,
    CarrierGateway,
    LabelRequest,
    LabelResult,
    Package,
)
from fulfillment.services import alerting
from fulfillment.services.addresses import (
    batch_key,
    combined_package,
    order_destination,
    order_package,
    origin_address,
)
from fulfillment.services.notifications import NotificationService, get_notification_service
from fulfillment.services.order_state import get_order, transition_order
from fulfillment.services.rate_shopper import GatewayResolver, RateShopper
from fulfillment.services.shelf_capacity import ShelfCapacityTracker

logger = logging.getLogger(__name__)


@dataclass
class BatchShipmentResult:
    shipments: List[Shipment] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)
    # shipment id -> order ids riding in it
    memberships: Dict[int, List[int]] = field(default_factory=dict)

    def add_error(self, order_id: int, error: Exception):
        if isinstance(error, FulfillmentError):
            self.errors.append({"order_id": order_id, "code": error.code, "reason": error.message})
        else:
            self.errors.append({"order_id": order_id, "code": "UNEXPECTED_ERROR", "reason": str(error)})


class CarrierThrottle:
    """
    Serializes calls to carriers that have reported rate limiting.

    A carrier stays throttled until the cooldown has passed since its most
    recent rate-limit response. Locks belong to the event loop that created
    them and are rebuilt when a different loop asks for one.
    """

    def __init__(self, cooldown: Optional[float] = None):
        self._cooldown = cooldown
        self._until: Dict[str, float] = {}
        self._locks: Dict[str, Tuple[asyncio.AbstractEventLoop, asyncio.Lock]] = {}

    @property
    def cooldown(self) -> float:
        if self._cooldown is None:
            return settings.CARRIER_RATE_LIMIT_COOLDOWN_SECONDS
        return self._cooldown

    def mark(self, code: str) -> bool:
        """Start or extend the cooldown. Returns True if the carrier was not throttled."""
        first = not self.is_throttled(code)
        self._until[code] = time.monotonic() + self.cooldown
        return first

    def is_throttled(self, code: str) -> bool:
        until = self._until.get(code)
        if until is None:
            return False
        if time.monotonic() >= until:
            del self._until[code]
            logger.info(f"Carrier {code} rate-limit cooldown over, calls no longer serialized")
            return False
        return True

    def lock(self, code: str) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        entry = self._locks.get(code)
        if entry is None or entry[0] is not loop:
            entry = (loop, asyncio.Lock())
            self._locks[code] = entry
        return entry[1]

    def reset(self):
        self._until.clear()
        self._locks.clear()


# Shared by every orchestrator in the process
carrier_throttle = CarrierThrottle()


class ShipmentOrchestrator:
    """Single and batched shipment creation."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker] = None,
        get_gateway: Optional[GatewayResolver] = None,
        rate_shopper: Optional[RateShopper] = None,
        notifications: Optional[NotificationService] = None,
        retry_attempts: Optional[int] = None,
        retry_backoff: Optional[float] = None,
        batch_concurrency: Optional[int] = None,
        throttle: Optional[CarrierThrottle] = None,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self._get_gateway = get_gateway or get_carrier
        self.rate_shopper = rate_shopper or RateShopper(get_gateway=self._get_gateway)
        self.notifications = notifications or get_notification_service()
        self.retry_attempts = settings.SHIPMENT_RETRY_ATTEMPTS if retry_attempts is None else retry_attempts
        self.retry_backoff = settings.SHIPMENT_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self.batch_concurrency = batch_concurrency or settings.BATCH_MAX_CONCURRENCY
        self.throttle = throttle or carrier_throttle

    @classmethod
    def reset_carrier_throttles(cls):
        carrier_throttle.reset()

    # ==================== Carrier calls ====================

    def _require_gateway(self, carrier_code: str) -> CarrierGateway:
        gateway = self._get_gateway(carrier_code)
        if gateway is None:
            raise CarrierRejected(f"Carrier {carrier_code} is not configured", carrier=carrier_code)
        return gateway

    async def _call_carrier(self, gateway: CarrierGateway, func: Callable[..., Awaitable], *args):
        """
        Invoke a gateway method with timeout, throttling and configured retries.

        Only TransientCarrierError is retried.
        """
        code = gateway.carrier_code
        attempts = 1 + max(self.retry_attempts, 0)
        for attempt in range(1, attempts + 1):
            try:
                if self.throttle.is_throttled(code):
                    async with self.throttle.lock(code):
                        return await self._with_timeout(code, func, *args)
                return await self._with_timeout(code, func, *args)
            except CarrierRateLimited:
                if self.throttle.mark(code):
                    logger.warning(f"Carrier {code} is rate limiting, serializing further calls")
                if attempt >= attempts:
                    raise
            except TransientCarrierError as e:
                if attempt >= attempts:
                    raise
                logger.warning(f"Transient error from {code} (attempt {attempt}/{attempts}): {e.message}")
            await asyncio.sleep(self.retry_backoff * (2 ** (attempt - 1)))

    async def _with_timeout(self, code: str, func: Callable[..., Awaitable], *args):
        try:
            return await asyncio.wait_for(func(*args), timeout=settings.CARRIER_CALL_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            raise TransientCarrierError(f"Carrier {code} did not respond in time", carrier=code)

    async def _validate_destination(self, gateway: CarrierGateway, order: ShippableOrder) -> AddressInput:
        destination = order_destination(order)
        result = await self._call_carrier(gateway, gateway.validate_address, destination)
        if not result.is_valid:
            raise AddressInvalid(
                f"Destination address for order {order.id} could not be verified",
                order_id=order.id,
                reasons=result.validation_messages,
                carrier=gateway.carrier_code,
            )
        return result.corrected_address or destination

    # ==================== Persistence ====================

    async def _persist(
        self,
        db: AsyncSession,
        gateway: CarrierGateway,
        label: LabelResult,
        orders: List[ShippableOrder],
        package: Package,
        expected_state: FulfillmentState,
        forced: bool = False,
        release_assignment_id: Optional[int] = None,
    ) -> Shipment:
        order_ids = [o.id for o in orders]
        try:
            shipment = Shipment(
                carrier=gateway.carrier_code,
                service_code=label.service_code,
                service_name=label.service_name,
                tracking_number=label.tracking_number,
                tracking_url=label.tracking_url or gateway.get_tracking_url(label.tracking_number),
                carrier_shipment_id=label.carrier_shipment_id,
                label_url=label.label_url,
                label_format=label.label_format,
                carrier_cost=label.carrier_cost,
                currency=label.currency,
                weight=package.weight,
                package_count=1,
                status=ShipmentStatus.LABEL_CREATED,
                is_batch=len(orders) > 1,
                is_forced=forced,
                carrier_response=label.carrier_response,
                estimated_delivery_date=label.estimated_delivery,
            )
            db.add(shipment)
            await db.flush()

            for order in orders:
                await transition_order(db, order.id, expected_state, FulfillmentState.SHIP_PENDING)
                db.add(ShipmentOrder(shipment_id=shipment.id, order_id=order.id))

            if release_assignment_id is not None:
                await ShelfCapacityTracker(db, notifications=self.notifications).release(
                    release_assignment_id, picked_up=False, reason="forced_ship", commit=False,
                )
                await db.execute(
                    update(ShelfAssignment)
                    .where(ShelfAssignment.id == release_assignment_id)
                    .values(forced_shipment_id=shipment.id)
                    .execution_options(synchronize_session=False)
                )

            await db.commit()
        except InvalidStateTransition as e:
            # Another caller committed these orders while the label was bought
            await db.rollback()
            logger.error(
                f"Label {label.tracking_number} ({gateway.carrier_code}) purchased for orders "
                f"{order_ids} is unused: {e.message}"
            )
            await alerting.alert_shipment_persist_failure(
                order_ids, gateway.carrier_code, label.tracking_number, e.message,
            )
            e.details["orphaned_tracking_number"] = label.tracking_number
            raise
        except Exception as e:
            await db.rollback()
            logger.error(
                f"Label {label.tracking_number} ({gateway.carrier_code}) purchased for orders "
                f"{order_ids} but could not be recorded: {e}"
            )
            await alerting.alert_shipment_persist_failure(
                order_ids, gateway.carrier_code, label.tracking_number, str(e),
            )
            raise ShipmentPersistError(
                f"Label {label.tracking_number} was purchased but the shipment could not be recorded",
                tracking_number=label.tracking_number,
                carrier=gateway.carrier_code,
                details={"order_ids": order_ids},
            ) from e

        logger.info(
            f"Shipment {shipment.id} created: {gateway.carrier_code} {label.tracking_number} "
            f"for orders {order_ids}"
        )
        return shipment

    async def _notify_created(self, shipment: Shipment, orders: List[ShippableOrder]):
        for order in orders:
            try:
                await self.notifications.track(
                    order.customer_email or order.external_order_id,
                    "shipment_created",
                    {
                        "orderId": order.external_order_id,
                        "orderNumber": order.order_number,
                        "carrier": shipment.carrier,
                        "trackingNumber": shipment.tracking_number,
                        "trackingUrl": shipment.tracking_url,
                    },
                )
            except Exception as e:
                logger.warning(f"shipment_created notification failed for order {order.id}: {e}")

    # ==================== Single shipment ====================

    async def create_shipment(
        self,
        order_id: int,
        carrier: Optional[str] = None,
        service: Optional[str] = None,
        forced: bool = False,
    ) -> Shipment:
        """
        Buy a label for one order and record the Shipment.

        forced=True converts an order held on a pickup shelf (stale pickup
        handling); otherwise the order must still be pending routing. A shelf
        assignment the order still holds must already be marked for forced
        shipping and is released together with the shipment record.

        Raises:
            OrderNotFound, InvalidStateTransition, ShipmentAlreadyExists,
            AddressInvalid, CarrierRejected, InsufficientBalance,
            TransientCarrierError, ShipmentPersistError
        """
        carrier = (carrier or settings.DEFAULT_CARRIER).upper()
        service = service or settings.DEFAULT_SERVICE
        expected = FulfillmentState.PICKUP_ASSIGNED if forced else FulfillmentState.PENDING_ROUTING

        async with self.session_factory() as db:
            order = await get_order(db, order_id)
            existing = (await db.execute(
                select(ShipmentOrder.shipment_id).where(ShipmentOrder.order_id == order_id)
            )).scalar_one_or_none()
            if existing is not None:
                raise ShipmentAlreadyExists(
                    f"Order {order_id} already has shipment {existing}",
                    details={"order_id": order_id, "shipment_id": existing},
                )
            if order.fulfillment_state != expected:
                raise InvalidStateTransition(
                    f"Order {order_id} is {order.fulfillment_state.value}, expected {expected.value}",
                    order_id=order_id,
                    current_state=order.fulfillment_state.value,
                    target_state=FulfillmentState.SHIP_PENDING.value,
                )

            assignment_id = None
            if forced:
                assignment = (await db.execute(
                    select(ShelfAssignment).where(
                        ShelfAssignment.order_id == order_id,
                        ShelfAssignment.released_at.is_(None),
                    )
                )).scalar_one_or_none()
                if assignment is not None:
                    if assignment.forced_ship_at is None:
                        raise InvalidStateTransition(
                            f"Order {order_id} holds shelf assignment {assignment.id}, "
                            "which is not marked for forced shipping",
                            order_id=order_id,
                            current_state=order.fulfillment_state.value,
                            target_state=FulfillmentState.SHIP_PENDING.value,
                        )
                    assignment_id = assignment.id

        gateway = self._require_gateway(carrier)
        destination = await self._validate_destination(gateway, order)
        package = order_package(order)
        label = await self._call_carrier(
            gateway,
            gateway.purchase_label,
            LabelRequest(
                origin=origin_address(),
                destination=destination,
                packages=[package],
                service_code=service,
                reference=order.order_number,
            ),
        )
        async with self.session_factory() as db:
            shipment = await self._persist(
                db, gateway, label, [order], package, expected,
                forced=forced, release_assignment_id=assignment_id,
            )

        await self._notify_created(shipment, [order])
        return shipment

    # ==================== Batch ====================

    def _split_by_weight(self, orders: List[ShippableOrder], limit: float) -> List[List[ShippableOrder]]:
        """Greedy split of one destination group into parcels under the weight limit."""
        chunks: List[List[ShippableOrder]] = []
        current: List[ShippableOrder] = []
        weight = 0.0
        for order in orders:
            order_weight = order.weight or 0.0
            if current and weight + order_weight > limit:
                chunks.append(current)
                current, weight = [], 0.0
            current.append(order)
            weight += order_weight
        if current:
            chunks.append(current)
        return chunks

    def _weight_limit(self, carrier: Optional[str]) -> float:
        if carrier:
            return self._require_gateway(carrier).max_parcel_weight
        limits = []
        for candidate in settings.RATE_SHOPPING_CANDIDATES:
            gateway = self._get_gateway(candidate.partition(":")[0])
            if gateway is not None:
                limits.append(gateway.max_parcel_weight)
        return min(limits) if limits else self._require_gateway(settings.DEFAULT_CARRIER).max_parcel_weight

    async def _ship_group(
        self,
        orders: List[ShippableOrder],
        carrier: Optional[str],
        service: Optional[str],
    ) -> Shipment:
        package = combined_package(orders) if len(orders) > 1 else order_package(orders[0])
        destination = order_destination(orders[0])

        if carrier is None:
            shopped = await self.rate_shopper.shop_parcel(destination, [package])
            group_carrier, group_service = shopped.cheapest.carrier_code, shopped.cheapest.service_code
        else:
            group_carrier, group_service = carrier, service or settings.DEFAULT_SERVICE

        gateway = self._require_gateway(group_carrier)
        label = await self._call_carrier(
            gateway,
            gateway.purchase_label,
            LabelRequest(
                origin=origin_address(),
                destination=destination,
                packages=[package],
                service_code=group_service,
                reference=",".join(o.order_number or str(o.id) for o in orders),
            ),
        )
        async with self.session_factory() as db:
            return await self._persist(
                db, gateway, label, orders, package, FulfillmentState.PENDING_ROUTING,
            )

    async def create_batch(
        self,
        order_ids: Sequence[int],
        carrier: Optional[str] = None,
        service: Optional[str] = None,
    ) -> BatchShipmentResult:
        """
        Ship many orders, consolidating compatible destinations.

        Orders already shipped are skipped. Failures are reported per order
        and never abort the rest of the batch.
        """
        result = BatchShipmentResult()
        carrier = carrier.upper() if carrier else None
        unique_ids = list(OrderedDict.fromkeys(order_ids))
        if not unique_ids:
            return result

        async with self.session_factory() as db:
            orders = {
                o.id: o for o in (await db.execute(
                    select(ShippableOrder).where(ShippableOrder.id.in_(unique_ids))
                )).scalars().all()
            }
            linked = set((await db.execute(
                select(ShipmentOrder.order_id).where(ShipmentOrder.order_id.in_(unique_ids))
            )).scalars().all())

        eligible: List[ShippableOrder] = []
        for order_id in unique_ids:
            order = orders.get(order_id)
            if order is None:
                result.add_error(order_id, OrderNotFound(order_id))
            elif order_id in linked:
                result.skipped.append(order_id)
            elif order.fulfillment_state != FulfillmentState.PENDING_ROUTING:
                result.add_error(order_id, InvalidStateTransition(
                    f"Order {order_id} is {order.fulfillment_state.value}, not pending routing",
                    order_id=order_id,
                    current_state=order.fulfillment_state.value,
                ))
            else:
                eligible.append(order)

        if not eligible:
            return result

        try:
            validator = self._require_gateway(carrier or settings.DEFAULT_CARRIER)
            weight_limit = self._weight_limit(carrier)
        except FulfillmentError as e:
            for order in eligible:
                result.add_error(order.id, e)
            return result

        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def validate(order: ShippableOrder) -> Tuple[ShippableOrder, Optional[Exception]]:
            async with semaphore:
                try:
                    await self._validate_destination(validator, order)
                    return order, None
                except Exception as e:
                    if not isinstance(e, FulfillmentError):
                        logger.exception(f"Unexpected error validating order {order.id}")
                    return order, e

        valid: List[ShippableOrder] = []
        for order, error in await asyncio.gather(*(validate(o) for o in eligible)):
            if error is not None:
                result.add_error(order.id, error)
            else:
                valid.append(order)

        groups: Dict[tuple, List[ShippableOrder]] = OrderedDict()
        for order in valid:
            groups.setdefault(batch_key(order), []).append(order)

        parcels: List[List[ShippableOrder]] = []
        for members in groups.values():
            parcels.extend(self._split_by_weight(members, weight_limit))

        logger.info(
            f"Batch of {len(unique_ids)} orders: {len(valid)} valid, "
            f"{len(parcels)} parcel(s), {len(result.skipped)} skipped"
        )

        async def run(parcel: List[ShippableOrder]):
            async with semaphore:
                try:
                    return parcel, await self._ship_group(parcel, carrier, service), None
                except Exception as e:
                    if not isinstance(e, FulfillmentError):
                        logger.exception(f"Unexpected error shipping orders {[o.id for o in parcel]}")
                    return parcel, None, e

        for parcel, shipment, error in await asyncio.gather(*(run(p) for p in parcels)):
            if error is not None:
                for order in parcel:
                    result.add_error(order.id, error)
                continue
            result.shipments.append(shipment)
            result.memberships[shipment.id] = [o.id for o in parcel]
            await self._notify_created(shipment, parcel)

        return result
