"""
ShippableOrder model

The routing record for an order that became ready to ship. Created on the
readiness signal and owned by this subsystem; the order directory reads
fulfillment_state back.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Float, JSON, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from fulfillment.core.database import Base


class FulfillmentState(str, enum.Enum):
    """Order fulfillment lifecycle"""
    PENDING_ROUTING = "pending_routing"
    PICKUP_ASSIGNED = "pickup_assigned"
    SHIP_PENDING = "ship_pending"
    PICKUP_COMPLETE = "pickup_complete"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    EXCEPTION = "exception"


class ServiceLevel(str, enum.Enum):
    STANDARD = "standard"
    EXPEDITED = "expedited"
    OVERNIGHT = "overnight"
    PICKUP = "pickup"


# Forward-only edges. EXCEPTION is the only override.
ALLOWED_TRANSITIONS = {
    FulfillmentState.PENDING_ROUTING: {
        FulfillmentState.PICKUP_ASSIGNED,
        FulfillmentState.SHIP_PENDING,
    },
    FulfillmentState.PICKUP_ASSIGNED: {
        FulfillmentState.PICKUP_COMPLETE,
        FulfillmentState.SHIP_PENDING,  # forced conversion of a stale pickup
    },
    FulfillmentState.SHIP_PENDING: {
        FulfillmentState.SHIPPED,
        FulfillmentState.EXCEPTION,
    },
    FulfillmentState.SHIPPED: {
        FulfillmentState.DELIVERED,
        FulfillmentState.EXCEPTION,
    },
    FulfillmentState.PICKUP_COMPLETE: {
        FulfillmentState.DELIVERED,
    },
    FulfillmentState.DELIVERED: {
        FulfillmentState.EXCEPTION,
    },
    FulfillmentState.EXCEPTION: set(),
}

# Maximum transit days that satisfy each requested service level
SERVICE_LEVEL_MAX_DAYS = {
    ServiceLevel.STANDARD: None,
    ServiceLevel.EXPEDITED: 3,
    ServiceLevel.OVERNIGHT: 1,
    ServiceLevel.PICKUP: None,
}


def can_transition(current: FulfillmentState, target: FulfillmentState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


class ShippableOrder(Base):
    """
    A ready-to-fulfill order awaiting (or past) a routing decision.

    Destination coordinates come from the address directory when known.
    """
    __tablename__ = "shippable_orders"
    __table_args__ = (
        Index("ix_shippable_orders_state", "fulfillment_state"),
    )

    id = Column(Integer, primary_key=True, index=True)
    external_order_id = Column(String(100), unique=True, nullable=False, index=True)
    order_number = Column(String(50), nullable=True)

    # Recipient
    customer_email = Column(String(255), nullable=True)
    recipient_name = Column(String(255), nullable=False)
    company_name = Column(String(255), nullable=True)
    phone = Column(String(30), nullable=True)

    # Destination
    address_line1 = Column(String(255), nullable=False)
    address_line2 = Column(String(255), nullable=True)
    city = Column(String(100), nullable=False)
    state_province = Column(String(50), nullable=True)
    postal_code = Column(String(20), nullable=False)
    country_code = Column(String(2), nullable=False, default="US")
    residential = Column(Boolean, default=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Parcel
    weight = Column(Float, nullable=False)  # LBS
    length = Column(Float, nullable=True)  # IN
    width = Column(Float, nullable=True)
    height = Column(Float, nullable=True)
    item_count = Column(Integer, default=1)
    declared_value = Column(Float, default=0.0)

    service_level = Column(
        SQLEnum(ServiceLevel),
        default=ServiceLevel.STANDARD,
        nullable=False
    )

    fulfillment_state = Column(
        SQLEnum(FulfillmentState),
        default=FulfillmentState.PENDING_ROUTING,
        nullable=False
    )

    # Last advisory recommendation (never a commitment)
    routing_recommendation = Column(JSON, nullable=True)
    routed_at = Column(DateTime(timezone=True), nullable=True)

    ready_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    shipment_link = relationship("ShipmentOrder", back_populates="order", uselist=False)

    @property
    def pending_routing(self) -> bool:
        return self.fulfillment_state == FulfillmentState.PENDING_ROUTING

    @property
    def requested_pickup(self) -> bool:
        return self.service_level == ServiceLevel.PICKUP

    def __repr__(self):
        return f"<ShippableOrder(id={self.id}, external={self.external_order_id}, state={self.fulfillment_state})>"
