"""
Address and parcel helpers shared by the routing and shipping services.
"""
import math
from typing import List, Optional

from fulfillment.core.config import settings
from fulfillment.core.utils import normalize_text
from fulfillment.models.order import ShippableOrder
from fulfillment.modules.shipping.carriers.base import AddressInput, Package

EARTH_RADIUS_MILES = 3958.8

MIN_PACKAGE_WEIGHT = 0.1  # LBS


def origin_address() -> AddressInput:
    """Default ship-from address."""
    return AddressInput(
        recipient_name=settings.ORIGIN_NAME,
        company_name=settings.ORIGIN_COMPANY or settings.ORIGIN_NAME,
        address_line1=settings.ORIGIN_ADDRESS_LINE1,
        address_line2=settings.ORIGIN_ADDRESS_LINE2 or None,
        city=settings.ORIGIN_CITY,
        state_province=settings.ORIGIN_STATE,
        postal_code=settings.ORIGIN_POSTAL_CODE,
        country_code=settings.ORIGIN_COUNTRY,
        phone=settings.ORIGIN_PHONE or None,
        residential=False,
    )


def order_destination(order: ShippableOrder) -> AddressInput:
    return AddressInput(
        recipient_name=order.recipient_name,
        company_name=order.company_name,
        address_line1=order.address_line1,
        address_line2=order.address_line2,
        city=order.city,
        state_province=order.state_province or "",
        postal_code=order.postal_code,
        country_code=order.country_code or "US",
        phone=order.phone,
        email=order.customer_email,
        residential=bool(order.residential),
    )


def order_package(order: ShippableOrder) -> Package:
    return Package(
        weight=max(order.weight or 0.0, MIN_PACKAGE_WEIGHT),
        length=order.length or 0.0,
        width=order.width or 0.0,
        height=order.height or 0.0,
        declared_value=order.declared_value or 0.0,
        description=order.order_number,
    )


def combined_package(orders: List[ShippableOrder]) -> Package:
    """One parcel carrying several orders."""
    return Package(
        weight=max(sum(o.weight or 0.0 for o in orders), MIN_PACKAGE_WEIGHT),
        length=max((o.length or 0.0) for o in orders),
        width=max((o.width or 0.0) for o in orders),
        height=sum((o.height or 0.0) for o in orders),
        declared_value=sum((o.declared_value or 0.0) for o in orders),
        description=",".join(o.order_number or str(o.id) for o in orders),
    )


def is_address_parseable(order: ShippableOrder) -> bool:
    """Cheap structural check before any carrier is asked."""
    return all(
        (value or "").strip()
        for value in (order.address_line1, order.city, order.postal_code, order.country_code)
    )


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * EARTH_RADIUS_MILES * math.asin(math.sqrt(a))


def distance_from_origin(order: ShippableOrder) -> Optional[float]:
    """Miles from the default origin, or None when coordinates are unknown."""
    if None in (
        settings.ORIGIN_LATITUDE, settings.ORIGIN_LONGITUDE,
        order.latitude, order.longitude,
    ):
        return None
    return haversine_miles(
        settings.ORIGIN_LATITUDE, settings.ORIGIN_LONGITUDE,
        order.latitude, order.longitude,
    )


def is_local_city(order: ShippableOrder) -> bool:
    """Fallback locality check used when coordinates are missing."""
    same_state = normalize_text(order.state_province) == normalize_text(settings.ORIGIN_STATE)
    return same_state and normalize_text(order.city) in settings.PICKUP_LOCAL_CITIES


def batch_key(order: ShippableOrder, prefix_length: Optional[int] = None):
    """Orders with the same key can ride in one parcel."""
    prefix_length = prefix_length or settings.BATCH_POSTAL_PREFIX_LENGTH
    postal = (order.postal_code or "").replace(" ", "").upper()[:prefix_length]
    return (
        (order.country_code or "US").upper(),
        postal,
        normalize_text(order.address_line1),
        normalize_text(order.city),
    )
