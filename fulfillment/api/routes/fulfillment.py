"""
Fulfillment API Routes

Provides endpoints for:
- Readiness intake (orders entering routing)
- Routing recommendations and rate shopping
- Shipment creation (single and batch)
- Pickup shelves (assignment, release, shelf management, utilization)
- Pickup codes and the self-service kiosk
- Stale pickup listing and manual sweep
- Shipping vs pickup stats

Fulfillment errors propagate to the application's FulfillmentError handler.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fulfillment.api.deps import get_session_factory, require_internal_token
from fulfillment.core.database import get_db
from fulfillment.models.order import ShippableOrder
from fulfillment.models.shipment import Shipment
from fulfillment.modules.shipping.carriers.base import CarrierRate
from fulfillment.services.fulfillment_stats import get_fulfillment_stats
from fulfillment.services.order_state import get_order
from fulfillment.services.rate_shopper import RateShopper
from fulfillment.services.readiness import mark_ready
from fulfillment.services.routing_advisor import RoutingAdvisor
from fulfillment.services.shelf_capacity import ShelfCapacityTracker
from fulfillment.services.shipment_orchestrator import ShipmentOrchestrator
from fulfillment.services.stale_pickup_monitor import StalePickupMonitor
from fulfillment.schemas.fulfillment import (
    BatchShipmentRequest,
    BatchShipmentResponse,
    FulfillmentStatsResponse,
    KioskVerifyRequest,
    KioskVerifyResponse,
    OrderReadyRequest,
    OrderResponse,
    PickupAssignRequest,
    PickupCodeResponse,
    PickupReleaseRequest,
    RateResponse,
    RateShopResponse,
    RecommendationResponse,
    ShelfAssignmentResponse,
    ShelfCreateRequest,
    ShelfResponse,
    ShelfUpdateRequest,
    ShelfUtilizationResponse,
    ShipmentCreateRequest,
    ShipmentResponse,
    StalePickupResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/fulfillment",
    tags=["fulfillment"],
    dependencies=[Depends(require_internal_token)],
)


# ==================== Helper Functions ====================


def order_to_response(order: ShippableOrder) -> OrderResponse:
    return OrderResponse(
        id=order.id,
        external_order_id=order.external_order_id,
        order_number=order.order_number,
        service_level=order.service_level.value,
        fulfillment_state=order.fulfillment_state.value,
        pending_routing=order.pending_routing,
        routing_recommendation=order.routing_recommendation,
        ready_at=order.ready_at,
    )


def rate_to_response(rate: Optional[CarrierRate]) -> Optional[RateResponse]:
    if rate is None:
        return None
    return RateResponse(
        carrier_code=rate.carrier_code,
        service_code=rate.service_code,
        service_name=rate.service_name,
        rate=rate.rate,
        currency=rate.currency,
        delivery_days=rate.delivery_days,
        delivery_date=rate.delivery_date.isoformat() if rate.delivery_date else None,
    )


def shipment_to_response(shipment: Shipment) -> ShipmentResponse:
    return ShipmentResponse(
        id=shipment.id,
        carrier=shipment.carrier,
        service_code=shipment.service_code,
        service_name=shipment.service_name,
        tracking_number=shipment.tracking_number,
        tracking_url=shipment.tracking_url,
        label_url=shipment.label_url,
        carrier_cost=shipment.carrier_cost,
        currency=shipment.currency or "USD",
        status=shipment.status.value,
        is_batch=bool(shipment.is_batch),
        is_forced=bool(shipment.is_forced),
        created_at=shipment.created_at,
    )


# ==================== Orders ====================


@router.post("/orders/ready", response_model=OrderResponse)
async def order_ready(
    payload: OrderReadyRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness signal from the order directory.

    Idempotent on external_order_id: a repeat returns the existing record.
    """
    order, _ = await mark_ready(db, payload.model_dump())
    return order_to_response(order)


@router.get("/orders/{order_id}", response_model=OrderResponse)
async def get_fulfillment_order(
    order_id: int,
    db: AsyncSession = Depends(get_db),
):
    order = await get_order(db, order_id)
    return order_to_response(order)


@router.get("/orders/{order_id}/recommendation", response_model=RecommendationResponse)
async def get_recommendation(
    order_id: int,
    deadline_seconds: Optional[float] = Query(None, gt=0, le=120),
    db: AsyncSession = Depends(get_db),
):
    """
    Advisory pickup-vs-ship recommendation.

    Never commits a shelf slot or a label.
    """
    advisor = RoutingAdvisor(db)
    recommendation = await advisor.recommend(order_id, deadline_seconds=deadline_seconds)
    return RecommendationResponse(
        order_id=recommendation.order_id,
        recommendation=recommendation.recommendation,
        reason=recommendation.reason,
        rate=rate_to_response(recommendation.rate),
        costs=recommendation.costs,
        factors=recommendation.factors,
    )


@router.get("/orders/{order_id}/rates", response_model=RateShopResponse)
async def get_order_rates(
    order_id: int,
    deadline_seconds: Optional[float] = Query(None, gt=0, le=120),
    db: AsyncSession = Depends(get_db),
):
    """Quote the order's parcel across the configured carrier services."""
    order = await get_order(db, order_id)
    result = await RateShopper().shop_rates(order, deadline_seconds=deadline_seconds)
    return RateShopResponse(
        order_id=order.id,
        rates=[rate_to_response(r) for r in result.rates],
        partial=result.partial,
        omitted=result.omitted,
    )


# ==================== Shipments ====================


@router.post(
    "/orders/{order_id}/shipment",
    response_model=ShipmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order_shipment(
    order_id: int,
    payload: Optional[ShipmentCreateRequest] = None,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Purchase a label for one order and commit it to shipping."""
    payload = payload or ShipmentCreateRequest()
    orchestrator = ShipmentOrchestrator(session_factory=session_factory)
    shipment = await orchestrator.create_shipment(order_id, payload.carrier, payload.service)
    return shipment_to_response(shipment)


@router.post("/shipments/batch", response_model=BatchShipmentResponse)
async def create_batch_shipment(
    payload: BatchShipmentRequest,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Ship many orders, consolidating compatible destinations.

    Per-order failures are reported in `errors`; the batch never fails as a whole.
    """
    orchestrator = ShipmentOrchestrator(session_factory=session_factory)
    result = await orchestrator.create_batch(payload.order_ids, payload.carrier, payload.service)
    return BatchShipmentResponse(
        shipments=[shipment_to_response(s) for s in result.shipments],
        memberships={str(k): v for k, v in result.memberships.items()},
        errors=result.errors,
        skipped=result.skipped,
    )


# ==================== Pickup Shelves ====================


@router.post(
    "/orders/{order_id}/pickup",
    response_model=ShelfAssignmentResponse,
    status_code=status.HTTP_201_CREATED,
)
async def assign_pickup(
    order_id: int,
    payload: Optional[PickupAssignRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """Reserve a shelf slot and commit the order to local pickup."""
    shelf_id = payload.shelf_id if payload else None
    assignment = await ShelfCapacityTracker(db).assign(order_id, shelf_id=shelf_id)
    return ShelfAssignmentResponse.model_validate(assignment)


@router.post("/pickups/{assignment_id}/release", response_model=ShelfAssignmentResponse)
async def release_pickup(
    assignment_id: int,
    payload: Optional[PickupReleaseRequest] = None,
    db: AsyncSession = Depends(get_db),
):
    """
    Pickup confirmation of a shelf slot.

    Releasing a slot without a pickup is reserved for forced shipping and
    happens inside the shipment transaction, never through this endpoint.
    """
    payload = payload or PickupReleaseRequest()
    assignment = await ShelfCapacityTracker(db).release(
        assignment_id,
        picked_up=True,
        reason=payload.reason,
    )
    return ShelfAssignmentResponse.model_validate(assignment)


@router.get("/pickups/code/{pickup_code}", response_model=PickupCodeResponse)
async def scan_pickup_code(
    pickup_code: str,
    db: AsyncSession = Depends(get_db),
):
    """Counter scan of the QR code on a pickup slip."""
    return await ShelfCapacityTracker(db).lookup_pickup_code(pickup_code)


@router.post("/pickups/code/{pickup_code}/confirm", response_model=ShelfAssignmentResponse)
async def confirm_pickup_code(
    pickup_code: str,
    db: AsyncSession = Depends(get_db),
):
    assignment = await ShelfCapacityTracker(db).confirm_pickup_code(pickup_code)
    return ShelfAssignmentResponse.model_validate(assignment)


@router.post("/pickups/kiosk/verify", response_model=KioskVerifyResponse)
async def kiosk_verify(
    payload: KioskVerifyRequest,
    db: AsyncSession = Depends(get_db),
):
    """Self-service kiosk: orders waiting for the customer who typed this email."""
    orders = await ShelfCapacityTracker(db).verify_customer_email(payload.email)
    return KioskVerifyResponse(verified=bool(orders), orders=orders)


@router.get("/pickups/stale", response_model=List[StalePickupResponse])
async def list_stale_pickups(
    days: Optional[int] = Query(None, ge=1, le=365),
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Uncollected pickups, oldest first. Changes nothing."""
    monitor = StalePickupMonitor(session_factory=session_factory)
    return await monitor.list_stale(stale_days=days)


@router.post("/shelves", response_model=ShelfResponse, status_code=status.HTTP_201_CREATED)
async def create_shelf(
    payload: ShelfCreateRequest,
    db: AsyncSession = Depends(get_db),
):
    shelf = await ShelfCapacityTracker(db).create_shelf(
        payload.code,
        name=payload.name,
        capacity=payload.capacity,
        location=payload.location,
    )
    return ShelfResponse.model_validate(shelf)


@router.get("/shelves/utilization", response_model=ShelfUtilizationResponse)
async def shelf_utilization(db: AsyncSession = Depends(get_db)):
    return await ShelfCapacityTracker(db).get_utilization()


@router.patch("/shelves/{shelf_id}", response_model=ShelfResponse)
async def update_shelf(
    shelf_id: int,
    payload: ShelfUpdateRequest,
    db: AsyncSession = Depends(get_db),
):
    """Rename, resize, deactivate or reactivate a shelf."""
    shelf = await ShelfCapacityTracker(db).update_shelf(
        shelf_id, **payload.model_dump(exclude_unset=True)
    )
    return ShelfResponse.model_validate(shelf)


@router.delete("/shelves/{shelf_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_shelf(
    shelf_id: int,
    db: AsyncSession = Depends(get_db),
):
    """Delete a shelf that never held an order."""
    await ShelfCapacityTracker(db).delete_shelf(shelf_id)


# ==================== Stats ====================


@router.get("/stats", response_model=FulfillmentStatsResponse)
async def fulfillment_stats(db: AsyncSession = Depends(get_db)):
    """Shipping vs pickup breakdown."""
    return await get_fulfillment_stats(db)


@router.post("/pickups/stale/sweep")
async def run_stale_pickup_sweep(
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """Run the stale pickup sweep now (skipped if one is in progress)."""
    monitor = StalePickupMonitor(session_factory=session_factory)
    report = await monitor.sweep()
    return report.to_dict()
