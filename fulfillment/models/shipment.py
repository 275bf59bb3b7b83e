"""
Shipment, ShipmentOrder and TrackingEvent models

A Shipment is created once a label is purchased and afterwards only
mutated by carrier tracking events. ShipmentOrder links orders to
shipments; order_id is unique so an order can never ride in two shipments,
batches included.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Float, Text, JSON, ForeignKey, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from fulfillment.core.database import Base


class ShipmentStatus(str, enum.Enum):
    """Shipment lifecycle status"""
    LABEL_CREATED = "label_created"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    EXCEPTION = "exception"  # Delivery issue
    RETURNED = "returned"
    UNKNOWN = "unknown"  # Only ever stored on tracking events


# Forward progression; EXCEPTION and RETURNED are overrides
STATUS_RANK = {
    ShipmentStatus.LABEL_CREATED: 1,
    ShipmentStatus.IN_TRANSIT: 2,
    ShipmentStatus.OUT_FOR_DELIVERY: 3,
    ShipmentStatus.DELIVERED: 4,
}

OVERRIDE_STATUSES = {ShipmentStatus.EXCEPTION, ShipmentStatus.RETURNED}


class Shipment(Base):
    """
    Tracks a purchased label from creation through delivery.
    """
    __tablename__ = "shipments"
    __table_args__ = (
        Index("ix_shipments_status", "status"),
        Index("ix_shipments_carrier", "carrier"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Carrier
    carrier = Column(String(50), nullable=False)
    service_code = Column(String(50), nullable=False)
    service_name = Column(String(100), nullable=True)

    # Tracking
    tracking_number = Column(String(100), unique=True, nullable=False, index=True)
    tracking_url = Column(String(500), nullable=True)
    carrier_shipment_id = Column(String(100), nullable=True)

    # Label
    label_url = Column(String(500), nullable=True)
    label_format = Column(String(10), default="PDF")

    # Costs
    carrier_cost = Column(Float, nullable=False)
    currency = Column(String(3), default="USD")

    # Package
    weight = Column(Float, nullable=False)
    package_count = Column(Integer, default=1)

    # Status
    status = Column(
        SQLEnum(ShipmentStatus),
        default=ShipmentStatus.LABEL_CREATED,
        nullable=False
    )
    status_detail = Column(String(255), nullable=True)
    last_event_at = Column(DateTime(timezone=True), nullable=True)

    is_batch = Column(Boolean, default=False)
    is_forced = Column(Boolean, default=False)  # converted from a stale pickup

    carrier_response = Column(JSON, nullable=True)

    estimated_delivery_date = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    orders = relationship("ShipmentOrder", back_populates="shipment")
    events = relationship(
        "TrackingEvent",
        back_populates="shipment",
        order_by="TrackingEvent.occurred_at"
    )

    def __repr__(self):
        return f"<Shipment(id={self.id}, tracking={self.tracking_number}, status={self.status})>"


class ShipmentOrder(Base):
    """Order membership of a shipment (one row per order)."""
    __tablename__ = "shipment_orders"

    id = Column(Integer, primary_key=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("shippable_orders.id"), nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    shipment = relationship("Shipment", back_populates="orders")
    order = relationship("ShippableOrder", back_populates="shipment_link")


class TrackingEvent(Base):
    """
    One carrier tracking event as received.

    Stale and UNKNOWN events are stored too; `applied` records whether the
    event moved the shipment.
    """
    __tablename__ = "tracking_events"
    __table_args__ = (
        Index("ix_tracking_events_shipment_occurred", "shipment_id", "occurred_at"),
    )

    id = Column(Integer, primary_key=True)
    shipment_id = Column(Integer, ForeignKey("shipments.id", ondelete="CASCADE"), nullable=False)

    carrier = Column(String(50), nullable=False)
    carrier_status = Column(String(100), nullable=True)  # carrier-native code
    status = Column(SQLEnum(ShipmentStatus), nullable=False)
    description = Column(String(500), nullable=True)
    location = Column(String(255), nullable=True)

    occurred_at = Column(DateTime(timezone=True), nullable=False)
    received_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    applied = Column(Boolean, default=False)

    raw_payload = Column(JSON, nullable=True)

    # Outcome of the post-commit notification
    notified_at = Column(DateTime(timezone=True), nullable=True)
    notification_error = Column(Text, nullable=True)

    shipment = relationship("Shipment", back_populates="events")
