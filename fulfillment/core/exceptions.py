"""
Fulfillment Exception Hierarchy

Structured exception classes for routing, rate shopping, shipment creation
and pickup shelf management. All exceptions include code, message, and
details for audit trail and debugging, plus the HTTP status the API layer
renders them with.

Exception Hierarchy:
    FulfillmentError
    ├── TransientCarrierError          (retry-safe)
    │   └── CarrierRateLimited
    ├── PermanentCarrierError          (never retried)
    │   ├── AddressInvalid
    │   ├── CarrierRejected
    │   └── InsufficientBalance
    ├── CapacityExhausted
    │   └── ShelfFull
    ├── ShelfConflict
    │   ├── ShelfInUse
    │   └── ShelfCodeExists
    ├── ConfigurationError             (startup only)
    ├── RateUnavailable
    ├── DeadlineExceeded
    ├── NotFoundError
    │   ├── OrderNotFound
    │   ├── ShelfNotFound
    │   ├── AssignmentNotFound
    │   └── PickupCodeNotFound
    ├── InvalidStateTransition
    ├── ShipmentAlreadyExists
    └── ShipmentPersistError
"""
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class FulfillmentError(Exception):
    """
    Base exception for all fulfillment errors.

    Attributes:
        message: Human-readable, actionable error description
        code: Machine-readable error code for programmatic handling
        details: Additional context for debugging/audit
        severity: P0-P3 severity level
        http_status: Status code used by the API exception handler
    """

    default_code: str = "FULFILLMENT_ERROR"
    default_severity: str = "P2"
    http_status: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: Optional[str] = None,
    ):
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.severity = severity or self.default_severity
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "error_type": self.__class__.__name__,
            "code": self.code,
            "message": self.message,
            "severity": self.severity,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(code={self.code!r}, message={self.message!r})"


# =============================================================================
# CARRIER ERRORS
# =============================================================================

class TransientCarrierError(FulfillmentError):
    """Timeout, 5xx or similar carrier failure. Safe to retry."""
    default_code = "CARRIER_UNAVAILABLE"
    default_severity = "P2"
    http_status = 503
    retryable = True

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"carrier": carrier})
        super().__init__(message, details=details, **kwargs)
        self.carrier = carrier


class CarrierRateLimited(TransientCarrierError):
    """Carrier throttled us; further calls to it are serialized."""
    default_code = "CARRIER_RATE_LIMITED"


class PermanentCarrierError(FulfillmentError):
    """Carrier refused the request in a way retrying will not fix."""
    default_code = "CARRIER_PERMANENT_ERROR"
    default_severity = "P2"
    http_status = 422

    def __init__(self, message: str, carrier: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"carrier": carrier})
        super().__init__(message, details=details, **kwargs)
        self.carrier = carrier


class AddressInvalid(PermanentCarrierError):
    """Destination address could not be verified."""
    default_code = "ADDRESS_INVALID"
    default_severity = "P3"

    def __init__(
        self,
        message: str = "Destination address could not be verified",
        order_id: Optional[int] = None,
        reasons: Optional[list] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({"order_id": order_id, "reasons": reasons or []})
        super().__init__(message, details=details, **kwargs)


class CarrierRejected(PermanentCarrierError):
    """Carrier rejected the shipment request."""
    default_code = "CARRIER_REJECTED"


class InsufficientBalance(PermanentCarrierError):
    """Carrier account balance cannot cover the label."""
    default_code = "CARRIER_INSUFFICIENT_BALANCE"
    default_severity = "P1"
    http_status = 402


# =============================================================================
# CAPACITY ERRORS
# =============================================================================

class CapacityExhausted(FulfillmentError):
    """A finite physical resource has no room left."""
    default_code = "CAPACITY_EXHAUSTED"
    default_severity = "P2"
    http_status = 409


class ShelfFull(CapacityExhausted):
    """No pickup shelf accepted the assignment."""
    default_code = "SHELF_FULL"

    def __init__(
        self,
        message: str = "No pickup shelf has a free slot",
        order_id: Optional[int] = None,
        attempted_shelves: Optional[list] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "attempted_shelves": attempted_shelves or [],
        })
        super().__init__(message, details=details, **kwargs)


class ShelfConflict(FulfillmentError):
    """Shelf change refused because of the shelf's current contents or identity."""
    default_code = "SHELF_CONFLICT"
    default_severity = "P3"
    http_status = 409

    def __init__(self, message: str, shelf_id: Optional[int] = None, **kwargs):
        details = kwargs.pop("details", {})
        details.update({"shelf_id": shelf_id})
        super().__init__(message, details=details, **kwargs)


class ShelfInUse(ShelfConflict):
    """Shelf holds (or has held) orders."""
    default_code = "SHELF_IN_USE"


class ShelfCodeExists(ShelfConflict):
    default_code = "SHELF_CODE_EXISTS"


# =============================================================================
# CONFIGURATION / QUOTING
# =============================================================================

class ConfigurationError(FulfillmentError):
    """Invalid or incomplete configuration. Raised at startup."""
    default_code = "CONFIGURATION_ERROR"
    default_severity = "P0"


class RateUnavailable(FulfillmentError):
    """No carrier returned a usable rate."""
    default_code = "RATE_UNAVAILABLE"
    http_status = 503


class DeadlineExceeded(FulfillmentError):
    """Caller deadline passed before a complete answer was available."""
    default_code = "DEADLINE_EXCEEDED"
    http_status = 504


# =============================================================================
# LOOKUP / STATE ERRORS
# =============================================================================

class NotFoundError(FulfillmentError):
    default_code = "NOT_FOUND"
    default_severity = "P3"
    http_status = 404


class OrderNotFound(NotFoundError):
    default_code = "ORDER_NOT_FOUND"

    def __init__(self, order_id, **kwargs):
        super().__init__(
            f"Order {order_id} not found",
            details={"order_id": order_id},
            **kwargs
        )


class ShelfNotFound(NotFoundError):
    default_code = "SHELF_NOT_FOUND"

    def __init__(self, shelf_id, **kwargs):
        super().__init__(
            f"Shelf {shelf_id} not found or inactive",
            details={"shelf_id": shelf_id},
            **kwargs
        )


class AssignmentNotFound(NotFoundError):
    default_code = "ASSIGNMENT_NOT_FOUND"

    def __init__(self, assignment_id, **kwargs):
        super().__init__(
            f"Active shelf assignment {assignment_id} not found",
            details={"assignment_id": assignment_id},
            **kwargs
        )


class PickupCodeNotFound(NotFoundError):
    default_code = "PICKUP_CODE_NOT_FOUND"

    def __init__(self, pickup_code, **kwargs):
        super().__init__(
            f"Pickup code {pickup_code} is not valid",
            details={"pickup_code": pickup_code},
            **kwargs
        )


class InvalidStateTransition(FulfillmentError):
    """Order (or shipment) is not in a state that permits the operation."""
    default_code = "INVALID_STATE_TRANSITION"
    default_severity = "P3"
    http_status = 409

    def __init__(
        self,
        message: str,
        order_id: Optional[int] = None,
        current_state: Optional[str] = None,
        target_state: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({
            "order_id": order_id,
            "current_state": current_state,
            "target_state": target_state,
        })
        super().__init__(message, details=details, **kwargs)


class ShipmentAlreadyExists(FulfillmentError):
    """Order is already linked to a shipment."""
    default_code = "SHIPMENT_ALREADY_EXISTS"
    default_severity = "P3"
    http_status = 409


class ShipmentPersistError(FulfillmentError):
    """Label was purchased but the shipment could not be recorded."""
    default_code = "SHIPMENT_PERSIST_FAILED"
    default_severity = "P1"
    http_status = 500

    def __init__(
        self,
        message: str,
        tracking_number: Optional[str] = None,
        carrier: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", {})
        details.update({"tracking_number": tracking_number, "carrier": carrier})
        super().__init__(message, details=details, **kwargs)
