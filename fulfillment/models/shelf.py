"""
Pickup shelf models

Shelf.occupied is the transactional resource counter: it only moves
through conditional UPDATEs and the check constraint keeps it within
capacity even if application code misbehaves.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime,
    Text, ForeignKey, Index, CheckConstraint, text
)
from sqlalchemy.orm import relationship

from fulfillment.core.database import Base


class Shelf(Base):
    __tablename__ = "pickup_shelves"
    __table_args__ = (
        CheckConstraint("occupied >= 0", name="ck_pickup_shelves_occupied_nonneg"),
        CheckConstraint("occupied <= capacity", name="ck_pickup_shelves_occupied_capacity"),
    )

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(50), unique=True, nullable=False)
    name = Column(String(100), nullable=False)
    location = Column(String(255), nullable=True)
    capacity = Column(Integer, nullable=False, default=20)
    occupied = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc)
    )

    assignments = relationship("ShelfAssignment", back_populates="shelf")

    @property
    def available(self) -> int:
        return max(self.capacity - self.occupied, 0)

    def __repr__(self):
        return f"<Shelf(id={self.id}, code={self.code}, occupied={self.occupied}/{self.capacity})>"


class ShelfAssignment(Base):
    """
    An order held on a shelf. Active while released_at is NULL.
    """
    __tablename__ = "shelf_assignments"
    __table_args__ = (
        # At most one active assignment per order
        Index(
            "uq_shelf_assignments_active_order",
            "order_id",
            unique=True,
            postgresql_where=text("released_at IS NULL"),
            sqlite_where=text("released_at IS NULL"),
        ),
        Index("ix_shelf_assignments_assigned_at", "assigned_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    shelf_id = Column(Integer, ForeignKey("pickup_shelves.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("shippable_orders.id"), nullable=False)

    # Printed as a QR code on the pickup slip; scanned at the counter or kiosk
    pickup_code = Column(String(32), unique=True, nullable=True)

    assigned_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    picked_up_at = Column(DateTime(timezone=True), nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    release_reason = Column(String(50), nullable=True)  # picked_up, forced_ship

    # Stale handling
    last_escalated_at = Column(DateTime(timezone=True), nullable=True)
    escalation_count = Column(Integer, default=0, nullable=False)
    forced_ship_at = Column(DateTime(timezone=True), nullable=True)
    forced_ship_error = Column(Text, nullable=True)
    forced_shipment_id = Column(Integer, ForeignKey("shipments.id"), nullable=True)

    shelf = relationship("Shelf", back_populates="assignments")
    order = relationship("ShippableOrder")

    @property
    def is_active(self) -> bool:
        return self.released_at is None
