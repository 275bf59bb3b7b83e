"""
Carrier Gateway Interface

Boundary to external carrier APIs. Each gateway provides its own:
  - Address validation
  - Rate quotes for one service
  - Label purchase
  - Webhook authenticity check
  - Parcel weight limit

Gateways raise typed carrier errors (TransientCarrierError,
CarrierRateLimited, AddressInvalid, CarrierRejected, InsufficientBalance)
instead of returning failure flags.
"""
import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from fulfillment.core.config import settings

logger = logging.getLogger(__name__)


# =============================================================================
# Carrier-Agnostic Data Classes
# =============================================================================

@dataclass
class AddressInput:
    """Postal address as sent to carriers."""
    address_line1: str
    city: str
    state_province: str
    postal_code: str
    country_code: str = "US"
    address_line2: Optional[str] = None
    recipient_name: Optional[str] = None
    company_name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None
    residential: bool = False


@dataclass
class AddressValidationResult:
    """Result of address validation."""
    is_valid: bool
    original_address: AddressInput
    corrected_address: Optional[AddressInput] = None
    validation_messages: List[str] = field(default_factory=list)
    status: str = "PENDING"  # VALID, INVALID, AMBIGUOUS, CORRECTED


@dataclass
class Package:
    """Package dimensions and weight."""
    weight: float  # pounds
    length: float = 0.0  # inches
    width: float = 0.0
    height: float = 0.0
    declared_value: float = 0.0
    description: Optional[str] = None


@dataclass
class CarrierRate:
    """A quoted price for one carrier service. Never persisted."""
    carrier_code: str
    service_code: str
    service_name: str
    rate: float
    currency: str = "USD"
    delivery_days: Optional[int] = None
    delivery_date: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "carrier": self.carrier_code,
            "service_code": self.service_code,
            "service_name": self.service_name,
            "rate": self.rate,
            "currency": self.currency,
            "delivery_days": self.delivery_days,
            "delivery_date": self.delivery_date.isoformat() if self.delivery_date else None,
        }


@dataclass
class LabelRequest:
    """Request to purchase a label."""
    origin: AddressInput
    destination: AddressInput
    packages: List[Package]
    service_code: str
    reference: Optional[str] = None  # order number(s)
    label_format: str = "PDF"


@dataclass
class LabelResult:
    """A purchased label."""
    tracking_number: str
    carrier_cost: float
    service_code: str
    service_name: Optional[str] = None
    tracking_url: Optional[str] = None
    label_url: Optional[str] = None
    label_format: str = "PDF"
    carrier_shipment_id: Optional[str] = None
    currency: str = "USD"
    estimated_delivery: Optional[datetime] = None
    carrier_response: Optional[Any] = None


# =============================================================================
# Base Gateway Interface
# =============================================================================

class CarrierGateway(ABC):
    """
    Abstract base class for all carrier gateways.

    Concrete gateways wrap a carrier API client. The default webhook check is
    an HMAC-SHA256 of the raw body keyed by the carrier's configured secret.
    """

    signature_header: str = "X-Webhook-Signature"
    max_parcel_weight: float = 150.0  # pounds

    def __init__(self, webhook_secret: Optional[str] = None):
        self._webhook_secret = webhook_secret

    @property
    @abstractmethod
    def carrier_code(self) -> str:
        """Return the carrier code, e.g. "UPS"."""
        pass

    @property
    @abstractmethod
    def carrier_name(self) -> str:
        """Return the human-readable carrier name."""
        pass

    @abstractmethod
    async def validate_address(self, address: AddressInput) -> AddressValidationResult:
        """
        Validate an address with the carrier's API.

        Returns:
            AddressValidationResult with validation status and corrected address
        """
        pass

    @abstractmethod
    async def get_rate(
        self,
        origin: AddressInput,
        destination: AddressInput,
        packages: List[Package],
        service_code: str,
    ) -> CarrierRate:
        """
        Quote one service.

        Raises:
            TransientCarrierError: timeout / 5xx, safe to retry
            PermanentCarrierError: service not offered for this lane
        """
        pass

    @abstractmethod
    async def purchase_label(self, request: LabelRequest) -> LabelResult:
        """
        Buy a label.

        Raises:
            TransientCarrierError, CarrierRateLimited, AddressInvalid,
            CarrierRejected, InsufficientBalance
        """
        pass

    @abstractmethod
    def get_tracking_url(self, tracking_number: str) -> str:
        """Public tracking page for a shipment."""
        pass

    @property
    def webhook_secret(self) -> Optional[str]:
        if self._webhook_secret is not None:
            return self._webhook_secret
        return settings.CARRIER_WEBHOOK_SECRETS.get(self.carrier_code)

    def verify_webhook(self, headers: Mapping[str, str], body: bytes) -> bool:
        """
        Check a webhook's authenticity.

        Skips verification when no secret is configured outside production.
        """
        secret = self.webhook_secret
        if not secret:
            if settings.ENVIRONMENT == "production":
                logger.error(f"No webhook secret configured for {self.carrier_code}")
                return False
            logger.warning(f"Webhook secret for {self.carrier_code} not set, skipping verification")
            return True

        signature = None
        for key, value in headers.items():
            if key.lower() == self.signature_header.lower():
                signature = value
                break
        if not signature:
            logger.warning(f"Missing {self.signature_header} header on {self.carrier_code} webhook")
            return False

        # Accept "hmac-sha256-hex=<digest>" style prefixes
        if "=" in signature:
            signature = signature.split("=", 1)[1]

        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(signature.strip().lower(), expected)
