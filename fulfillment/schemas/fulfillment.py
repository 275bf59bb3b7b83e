"""
Fulfillment Schemas

Pydantic models for fulfillment API requests and responses.
"""
from datetime import datetime
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, field_validator


# ==================== Order Schemas ====================


class OrderReadyRequest(BaseModel):
    """Readiness signal from the order directory."""
    external_order_id: str = Field(..., min_length=1, max_length=100)
    order_number: Optional[str] = Field(None, max_length=50)
    customer_email: Optional[str] = Field(None, max_length=255)
    recipient_name: str = Field(..., min_length=1, max_length=255)
    company_name: Optional[str] = Field(None, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    address_line1: str = Field(..., min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(..., min_length=1, max_length=100)
    state_province: Optional[str] = Field(None, max_length=50)
    postal_code: str = Field(..., min_length=3, max_length=20)
    country_code: str = Field("US", min_length=2, max_length=2)
    residential: bool = False
    latitude: Optional[float] = Field(None, ge=-90, le=90)
    longitude: Optional[float] = Field(None, ge=-180, le=180)
    weight: float = Field(..., gt=0, le=150, description="Weight in LBS")
    length: Optional[float] = Field(None, gt=0)
    width: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    item_count: int = Field(1, ge=1)
    declared_value: float = Field(0.0, ge=0)
    service_level: str = "standard"

    @field_validator("country_code")
    @classmethod
    def validate_country_code(cls, v):
        return v.upper()

    @field_validator("service_level")
    @classmethod
    def validate_service_level(cls, v):
        v = v.lower()
        if v not in ("standard", "expedited", "overnight", "pickup"):
            raise ValueError("service_level must be standard, expedited, overnight or pickup")
        return v


class OrderResponse(BaseModel):
    id: int
    external_order_id: str
    order_number: Optional[str] = None
    service_level: str
    fulfillment_state: str
    pending_routing: bool
    routing_recommendation: Optional[Dict[str, Any]] = None
    ready_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ==================== Rate Schemas ====================


class RateResponse(BaseModel):
    carrier_code: str
    service_code: str
    service_name: str
    rate: float
    currency: str = "USD"
    delivery_days: Optional[int] = None
    delivery_date: Optional[str] = None


class RateShopResponse(BaseModel):
    order_id: int
    rates: List[RateResponse]
    partial: bool = False
    omitted: List[Dict[str, Any]] = []


class RecommendationResponse(BaseModel):
    order_id: int
    recommendation: str
    reason: str
    rate: Optional[RateResponse] = None
    costs: Dict[str, Any] = {}
    factors: Dict[str, Any] = {}


# ==================== Shipment Schemas ====================


class ShipmentCreateRequest(BaseModel):
    """Explicit carrier/service; both optional (defaults or rate shopping)."""
    carrier: Optional[str] = Field(None, max_length=30)
    service: Optional[str] = Field(None, max_length=30)


class BatchShipmentRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=1, max_length=500)
    carrier: Optional[str] = Field(None, max_length=30)
    service: Optional[str] = Field(None, max_length=30)


class ShipmentResponse(BaseModel):
    id: int
    carrier: str
    service_code: str
    service_name: Optional[str] = None
    tracking_number: str
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    carrier_cost: Optional[float] = None
    currency: str = "USD"
    status: str
    is_batch: bool = False
    is_forced: bool = False
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BatchShipmentResponse(BaseModel):
    shipments: List[ShipmentResponse]
    memberships: Dict[str, List[int]] = {}
    errors: List[Dict[str, Any]] = []
    skipped: List[int] = []


# ==================== Pickup Schemas ====================


class PickupAssignRequest(BaseModel):
    shelf_id: Optional[int] = None


class PickupReleaseRequest(BaseModel):
    """Counter confirmation that the customer collected the order."""
    reason: Optional[str] = Field(None, max_length=50)


class ShelfAssignmentResponse(BaseModel):
    id: int
    shelf_id: int
    order_id: int
    assigned_at: Optional[datetime] = None
    picked_up_at: Optional[datetime] = None
    pickup_code: Optional[str] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None

    class Config:
        from_attributes = True


class ShelfCreateRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=30)
    name: Optional[str] = Field(None, max_length=100)
    location: Optional[str] = Field(None, max_length=255)
    capacity: Optional[int] = Field(None, ge=1, le=10000)


class ShelfUpdateRequest(BaseModel):
    """Only the fields sent are changed."""
    code: Optional[str] = Field(None, min_length=1, max_length=30)
    name: Optional[str] = Field(None, max_length=100)
    location: Optional[str] = Field(None, max_length=255)
    capacity: Optional[int] = Field(None, ge=1, le=10000)
    is_active: Optional[bool] = None


class ShelfResponse(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    location: Optional[str] = None
    capacity: int
    occupied: int
    is_active: bool = True

    class Config:
        from_attributes = True


class ShelfUtilizationResponse(BaseModel):
    shelves: List[Dict[str, Any]]
    total_capacity: int
    total_occupied: int
    total_available: int
    utilization_percent: float


class PickupShelfInfo(BaseModel):
    code: str
    name: Optional[str] = None
    location: Optional[str] = None


class PickupCodeResponse(BaseModel):
    pickup_code: str
    assignment_id: int
    order_id: int
    order_number: Optional[str] = None
    recipient_name: Optional[str] = None
    status: str
    assigned_at: Optional[datetime] = None
    shelf: PickupShelfInfo


class KioskVerifyRequest(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)


class KioskOrder(BaseModel):
    order_number: Optional[str] = None
    pickup_code: Optional[str] = None
    shelf: PickupShelfInfo


class KioskVerifyResponse(BaseModel):
    verified: bool
    orders: List[KioskOrder] = []


class StalePickupResponse(BaseModel):
    assignment_id: int
    order_id: int
    order_number: Optional[str] = None
    customer_email: Optional[str] = None
    recipient_name: Optional[str] = None
    shelf_code: str
    shelf_name: Optional[str] = None
    assigned_at: datetime
    days_waiting: int
    escalation_count: int = 0
    forced_ship_at: Optional[datetime] = None
    forced_ship_error: Optional[str] = None


# ==================== Stats Schemas ====================


class FulfillmentStatsResponse(BaseModel):
    total_orders: int
    pending_orders: int
    shipped_orders: int
    pickup_orders: int
    other_orders: int
    forced_shipments: int
    ship_rate: float
    pickup_rate: float
    other_rate: float
    by_state: Dict[str, int] = {}


# ==================== Webhook Schemas ====================


class WebhookAckResponse(BaseModel):
    processed: bool
    status: str
