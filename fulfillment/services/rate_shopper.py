"""
Rate Shopper

Quotes every candidate carrier service for a parcel concurrently and returns
a price-ordered list.

- One gateway call per candidate, bounded by RATE_SHOPPING_MAX_CONCURRENCY
- Each call has its own timeout; a failed carrier is omitted and the
  result is marked partial
- All candidates failing raises RateUnavailable
- An overall caller deadline raises DeadlineExceeded rather than returning
  whatever arrived in time
- No retries

Usage:
    shopper = RateShopper()
    result = await shopper.shop_rates(order)
    best = result.cheapest
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from fulfillment.core.config import settings
from fulfillment.core.exceptions import (
    CarrierRejected,
    DeadlineExceeded,
    RateUnavailable,
)
from fulfillment.models.order import ShippableOrder
from fulfillment.modules.shipping.carriers import get_carrier
from fulfillment.modules.shipping.carriers.base import (
    AddressInput,
    CarrierGateway,
    CarrierRate,
    Package,
)
from fulfillment.services.addresses import order_destination, order_package, origin_address

logger = logging.getLogger(__name__)

GatewayResolver = Callable[[str], Optional[CarrierGateway]]


@dataclass(frozen=True)
class ServiceCandidate:
    carrier_code: str
    service_code: str

    @classmethod
    def parse(cls, value: Union[str, "ServiceCandidate"]) -> "ServiceCandidate":
        """Accept "CARRIER:SERVICE"."""
        if isinstance(value, ServiceCandidate):
            return value
        carrier, sep, service = value.partition(":")
        if not sep or not carrier.strip() or not service.strip():
            raise ValueError(f"Invalid candidate service {value!r}, expected CARRIER:SERVICE")
        return cls(carrier.strip().upper(), service.strip().upper())

    def __str__(self) -> str:
        return f"{self.carrier_code}:{self.service_code}"


@dataclass
class RateShopResult:
    rates: List[CarrierRate]
    partial: bool = False
    omitted: List[Dict[str, str]] = field(default_factory=list)

    @property
    def cheapest(self) -> Optional[CarrierRate]:
        return self.rates[0] if self.rates else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rates": [r.to_dict() for r in self.rates],
            "partial": self.partial,
            "omitted": self.omitted,
        }


def rate_sort_key(rate: CarrierRate):
    """Cost, then transit days (unknown last), then carrier and service."""
    days = rate.delivery_days if rate.delivery_days is not None else float("inf")
    return (rate.rate, days, rate.carrier_code, rate.service_code)


class RateShopper:
    """Concurrent multi-carrier quoting."""

    def __init__(
        self,
        get_gateway: Optional[GatewayResolver] = None,
        max_concurrency: Optional[int] = None,
        call_timeout: Optional[float] = None,
    ):
        self._get_gateway = get_gateway or get_carrier
        self.max_concurrency = max_concurrency or settings.RATE_SHOPPING_MAX_CONCURRENCY
        self.call_timeout = call_timeout or settings.CARRIER_CALL_TIMEOUT_SECONDS

    async def shop_rates(
        self,
        order: ShippableOrder,
        candidate_services: Optional[Sequence[Union[str, ServiceCandidate]]] = None,
        deadline_seconds: Optional[float] = None,
    ) -> RateShopResult:
        """Quote an order's own parcel to its destination."""
        return await self.shop_parcel(
            destination=order_destination(order),
            packages=[order_package(order)],
            candidate_services=candidate_services,
            deadline_seconds=deadline_seconds,
        )

    async def shop_parcel(
        self,
        destination: AddressInput,
        packages: List[Package],
        candidate_services: Optional[Sequence[Union[str, ServiceCandidate]]] = None,
        deadline_seconds: Optional[float] = None,
        origin: Optional[AddressInput] = None,
    ) -> RateShopResult:
        """
        Quote arbitrary parcels.

        Raises:
            RateUnavailable: every candidate failed
            DeadlineExceeded: deadline_seconds elapsed first
        """
        candidates = [
            ServiceCandidate.parse(c)
            for c in (candidate_services or settings.RATE_SHOPPING_CANDIDATES)
        ]
        if not candidates:
            raise RateUnavailable("No candidate carrier services are configured")

        origin = origin or origin_address()
        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def quote(candidate: ServiceCandidate) -> CarrierRate:
            gateway = self._get_gateway(candidate.carrier_code)
            if gateway is None:
                raise CarrierRejected(
                    f"Carrier {candidate.carrier_code} is not configured",
                    carrier=candidate.carrier_code,
                )
            async with semaphore:
                return await asyncio.wait_for(
                    gateway.get_rate(origin, destination, packages, candidate.service_code),
                    timeout=self.call_timeout,
                )

        gathered = asyncio.gather(*(quote(c) for c in candidates), return_exceptions=True)
        if deadline_seconds is not None:
            try:
                results = await asyncio.wait_for(gathered, timeout=deadline_seconds)
            except asyncio.TimeoutError:
                raise DeadlineExceeded(
                    f"Rate shopping did not complete within {deadline_seconds}s",
                    details={"candidates": [str(c) for c in candidates]},
                )
        else:
            results = await gathered

        rates: List[CarrierRate] = []
        omitted: List[Dict[str, str]] = []
        for candidate, result in zip(candidates, results):
            if isinstance(result, BaseException):
                reason = "timeout" if isinstance(result, asyncio.TimeoutError) else str(result) or type(result).__name__
                logger.warning(f"Omitting {candidate} from rate shopping: {reason}")
                omitted.append({
                    "carrier": candidate.carrier_code,
                    "service_code": candidate.service_code,
                    "reason": reason,
                })
                continue
            rates.append(result)

        if not rates:
            raise RateUnavailable(
                "No carrier returned a rate for this shipment",
                details={"omitted": omitted},
            )

        rates.sort(key=rate_sort_key)
        logger.info(
            f"Rate shopping returned {len(rates)} rate(s), cheapest "
            f"{rates[0].carrier_code}/{rates[0].service_code} {rates[0].rate:.2f}"
        )
        return RateShopResult(rates=rates, partial=bool(omitted), omitted=omitted)
