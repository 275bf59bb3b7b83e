"""
Sandbox Carrier Gateway

Deterministic carrier for development, staging and tests. Prices are a
base fee plus a per-pound fee per service, so rate shopping and batch
splitting behave predictably without network access.

Configurable failure behavior for integration testing.
"""
import logging
import re
from datetime import timedelta
from typing import Dict, List, Optional, Tuple
from uuid import uuid4

from fulfillment.core.exceptions import (
    AddressInvalid,
    CarrierRejected,
    FulfillmentError,
)
from fulfillment.core.utils import utcnow
from fulfillment.modules.shipping.carriers import register_carrier
from fulfillment.modules.shipping.carriers.base import (
    AddressInput,
    AddressValidationResult,
    CarrierGateway,
    CarrierRate,
    LabelRequest,
    LabelResult,
    Package,
)

logger = logging.getLogger(__name__)

US_POSTAL_CODE = re.compile(r"^\d{5}(-\d{4})?$")

# service_code -> (name, base fee, per-lb fee, transit days)
SERVICE_TABLES: Dict[str, Dict[str, Tuple[str, float, float, int]]] = {
    "SANDBOX_GROUND": {
        "GROUND": ("Sandbox Ground", 6.50, 0.85, 5),
        "EXPRESS": ("Sandbox Express", 14.00, 1.50, 2),
    },
    "SANDBOX_AIR": {
        "PRIORITY": ("Sandbox Priority", 9.00, 1.10, 3),
        "OVERNIGHT": ("Sandbox Overnight", 28.00, 2.50, 1),
    },
}


@register_carrier("SANDBOX")
class SandboxCarrier(CarrierGateway):
    """Carrier gateway with fixed price tables."""

    max_parcel_weight = 70.0

    def __init__(self, code: str = "SANDBOX_GROUND", webhook_secret: Optional[str] = None):
        super().__init__(webhook_secret=webhook_secret)
        self._code = code.upper()
        self._services = SERVICE_TABLES.get(self._code, SERVICE_TABLES["SANDBOX_GROUND"])
        self.failure: Optional[FulfillmentError] = None

    def configure(self, failure: Optional[FulfillmentError] = None):
        """Make every subsequent call raise `failure` (None restores success)."""
        self.failure = failure

    @property
    def carrier_code(self) -> str:
        return self._code

    @property
    def carrier_name(self) -> str:
        return self._code.replace("_", " ").title()

    def _check_failure(self):
        if self.failure is not None:
            raise self.failure

    async def validate_address(self, address: AddressInput) -> AddressValidationResult:
        self._check_failure()
        messages = []
        if not (address.address_line1 or "").strip():
            messages.append("Street address is required")
        if not (address.city or "").strip():
            messages.append("City is required")
        if address.country_code == "US":
            if not US_POSTAL_CODE.match((address.postal_code or "").strip()):
                messages.append(f"Invalid US postal code: {address.postal_code!r}")
            if not (address.state_province or "").strip():
                messages.append("State is required")

        return AddressValidationResult(
            is_valid=not messages,
            original_address=address,
            validation_messages=messages,
            status="INVALID" if messages else "VALID",
        )

    async def get_rate(
        self,
        origin: AddressInput,
        destination: AddressInput,
        packages: List[Package],
        service_code: str,
    ) -> CarrierRate:
        self._check_failure()
        service = self._services.get(service_code)
        if not service:
            raise CarrierRejected(
                f"{self.carrier_name} does not offer service {service_code}",
                carrier=self.carrier_code,
            )
        name, base, per_lb, days = service
        weight = sum(p.weight for p in packages)
        if destination.country_code != origin.country_code:
            days += 3
            base *= 2
        return CarrierRate(
            carrier_code=self.carrier_code,
            service_code=service_code,
            service_name=name,
            rate=round(base + per_lb * weight, 2),
            delivery_days=days,
            delivery_date=utcnow() + timedelta(days=days),
        )

    async def purchase_label(self, request: LabelRequest) -> LabelResult:
        self._check_failure()
        validation = await self.validate_address(request.destination)
        if not validation.is_valid:
            raise AddressInvalid(
                reasons=validation.validation_messages,
                carrier=self.carrier_code,
            )
        for package in request.packages:
            if package.weight > self.max_parcel_weight:
                raise CarrierRejected(
                    f"Package weight {package.weight} lb exceeds {self.max_parcel_weight} lb limit",
                    carrier=self.carrier_code,
                )

        rate = await self.get_rate(request.origin, request.destination, request.packages, request.service_code)
        tracking_number = f"SBX{uuid4().hex[:15].upper()}"
        shipment_id = f"shp_{uuid4().hex[:12]}"
        logger.info(f"Sandbox label purchased: {tracking_number} ({self.carrier_code}/{request.service_code})")

        return LabelResult(
            tracking_number=tracking_number,
            carrier_cost=rate.rate,
            service_code=rate.service_code,
            service_name=rate.service_name,
            tracking_url=self.get_tracking_url(tracking_number),
            label_url=f"https://sandbox-carrier.example.com/labels/{shipment_id}.pdf",
            label_format=request.label_format,
            carrier_shipment_id=shipment_id,
            estimated_delivery=rate.delivery_date,
            carrier_response={"sandbox": True, "reference": request.reference},
        )

    def get_tracking_url(self, tracking_number: str) -> str:
        return f"https://sandbox-carrier.example.com/track/{tracking_number}"
