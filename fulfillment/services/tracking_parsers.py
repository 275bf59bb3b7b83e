"""
Carrier tracking payload parsing

Each carrier's webhook body is reduced to one of:
    KnownTrackingUpdate      - status mapped through the carrier's table
    UnknownTrackingUpdate    - well-formed, but the status code is not mapped
    MalformedTrackingPayload - cannot be interpreted at all

Mapping tables are explicit; there is no partial or default matching.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from fulfillment.core.utils import ensure_utc, utcnow
from fulfillment.models.shipment import ShipmentStatus

logger = logging.getLogger(__name__)


# EasyPost tracker statuses
EASYPOST_STATUS_MAP = {
    "pre_transit": ShipmentStatus.LABEL_CREATED,
    "in_transit": ShipmentStatus.IN_TRANSIT,
    "out_for_delivery": ShipmentStatus.OUT_FOR_DELIVERY,
    "delivered": ShipmentStatus.DELIVERED,
    "available_for_pickup": ShipmentStatus.OUT_FOR_DELIVERY,
    "return_to_sender": ShipmentStatus.RETURNED,
    "failure": ShipmentStatus.EXCEPTION,
    "error": ShipmentStatus.EXCEPTION,
}

# UPS activity status types
UPS_STATUS_MAP = {
    "M": ShipmentStatus.LABEL_CREATED,  # Manifest
    "MV": ShipmentStatus.LABEL_CREATED,
    "P": ShipmentStatus.IN_TRANSIT,  # Pickup
    "I": ShipmentStatus.IN_TRANSIT,
    "O": ShipmentStatus.OUT_FOR_DELIVERY,
    "D": ShipmentStatus.DELIVERED,
    "X": ShipmentStatus.EXCEPTION,
    "RS": ShipmentStatus.RETURNED,
}

USPS_STATUS_MAP = {
    "PRE-SHIPMENT": ShipmentStatus.LABEL_CREATED,
    "ACCEPTED": ShipmentStatus.IN_TRANSIT,
    "IN_TRANSIT": ShipmentStatus.IN_TRANSIT,
    "OUT_FOR_DELIVERY": ShipmentStatus.OUT_FOR_DELIVERY,
    "DELIVERED": ShipmentStatus.DELIVERED,
    "ALERT": ShipmentStatus.EXCEPTION,
    "RETURN_TO_SENDER": ShipmentStatus.RETURNED,
}

# FedEx derived status codes
FEDEX_STATUS_MAP = {
    "OC": ShipmentStatus.LABEL_CREATED,  # Shipment information sent
    "PU": ShipmentStatus.IN_TRANSIT,
    "IT": ShipmentStatus.IN_TRANSIT,
    "AR": ShipmentStatus.IN_TRANSIT,
    "DP": ShipmentStatus.IN_TRANSIT,
    "OD": ShipmentStatus.OUT_FOR_DELIVERY,
    "DL": ShipmentStatus.DELIVERED,
    "DE": ShipmentStatus.EXCEPTION,
    "SE": ShipmentStatus.EXCEPTION,
    "RS": ShipmentStatus.RETURNED,
}

# Internal format used by the sandbox carriers
GENERIC_STATUS_MAP = {
    status.value: status for status in ShipmentStatus if status != ShipmentStatus.UNKNOWN
}


@dataclass
class KnownTrackingUpdate:
    carrier: str
    tracking_number: str
    carrier_status: str
    status: ShipmentStatus
    occurred_at: datetime
    description: Optional[str] = None
    location: Optional[str] = None


@dataclass
class UnknownTrackingUpdate:
    carrier: str
    tracking_number: str
    carrier_status: str
    occurred_at: datetime
    description: Optional[str] = None
    location: Optional[str] = None


@dataclass
class MalformedTrackingPayload:
    carrier: str
    reason: str


TrackingUpdate = Union[KnownTrackingUpdate, UnknownTrackingUpdate, MalformedTrackingPayload]


class _Malformed(Exception):
    pass


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 (with or without Z) to aware UTC datetime."""
    if value in (None, ""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise _Malformed(f"timestamp must be a string, got {type(value).__name__}")
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        raise _Malformed(f"unparseable timestamp {value!r}")


def _require(mapping: Any, key: str) -> Any:
    if not isinstance(mapping, dict):
        raise _Malformed(f"expected an object containing {key!r}")
    value = mapping.get(key)
    if value in (None, ""):
        raise _Malformed(f"missing {key!r}")
    return value


def _location(*parts: Optional[str]) -> Optional[str]:
    joined = ", ".join(p for p in parts if p)
    return joined or None


def _easypost(payload: Dict[str, Any]) -> Dict[str, Any]:
    result = _require(payload, "result")
    tracking_number = _require(result, "tracking_code")
    carrier_status = _require(result, "status")
    details = result.get("tracking_details")
    latest = details[-1] if isinstance(details, list) and details and isinstance(details[-1], dict) else {}
    location = latest.get("tracking_location") or {}
    return {
        "tracking_number": tracking_number,
        "carrier_status": carrier_status,
        "occurred_at": parse_timestamp(latest.get("datetime") or result.get("updated_at")),
        "description": result.get("status_detail") or latest.get("message"),
        "location": _location(location.get("city"), location.get("state")) if isinstance(location, dict) else None,
    }


def _ups(payload: Dict[str, Any]) -> Dict[str, Any]:
    activity = _require(payload, "activityStatus")
    occurred_at = None
    date, time = payload.get("localActivityDate"), payload.get("localActivityTime")
    if date:
        try:
            occurred_at = datetime.strptime(f"{date}{time or '000000'}", "%Y%m%d%H%M%S").replace(tzinfo=timezone.utc)
        except ValueError:
            raise _Malformed(f"unparseable UPS activity date {date!r} {time!r}")
    location = payload.get("activityLocation") or {}
    return {
        "tracking_number": _require(payload, "trackingNumber"),
        "carrier_status": str(_require(activity, "type")).upper(),
        "occurred_at": occurred_at,
        "description": activity.get("description"),
        "location": _location(location.get("city"), location.get("stateProvince")) if isinstance(location, dict) else None,
    }


def _usps(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "tracking_number": _require(payload, "trackingNumber"),
        "carrier_status": str(_require(payload, "eventType")).upper(),
        "occurred_at": parse_timestamp(payload.get("eventTimestamp")),
        "description": payload.get("event"),
        "location": _location(payload.get("eventCity"), payload.get("eventState")),
    }


def _fedex(payload: Dict[str, Any]) -> Dict[str, Any]:
    detail = _require(payload, "latestStatusDetail")
    code = _require(detail, "code")
    scan_location = detail.get("scanLocation") or {}
    return {
        "tracking_number": _require(payload, "trackingNumber"),
        "carrier_status": str(code).upper(),
        "occurred_at": parse_timestamp(payload.get("eventTimestamp")),
        "description": detail.get("description"),
        "location": _location(scan_location.get("city"), scan_location.get("stateOrProvinceCode")) if isinstance(scan_location, dict) else None,
    }


def _generic(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "tracking_number": _require(payload, "tracking_number"),
        "carrier_status": str(_require(payload, "status")).lower(),
        "occurred_at": parse_timestamp(payload.get("occurred_at")),
        "description": payload.get("description"),
        "location": payload.get("location"),
    }


CARRIER_PARSERS: Dict[str, tuple] = {
    "EASYPOST": (_easypost, EASYPOST_STATUS_MAP),
    "UPS": (_ups, UPS_STATUS_MAP),
    "USPS": (_usps, USPS_STATUS_MAP),
    "FEDEX": (_fedex, FEDEX_STATUS_MAP),
}

DEFAULT_PARSER: tuple = (_generic, GENERIC_STATUS_MAP)


def parse_tracking_payload(carrier: str, payload: Any) -> TrackingUpdate:
    """Reduce a carrier webhook body to a tracking update. Never raises."""
    carrier = (carrier or "").upper()
    extract: Callable[[Dict[str, Any]], Dict[str, Any]]
    extract, status_map = CARRIER_PARSERS.get(carrier, DEFAULT_PARSER)

    if not isinstance(payload, dict):
        return MalformedTrackingPayload(carrier=carrier, reason="payload is not a JSON object")

    try:
        fields = extract(payload)
    except _Malformed as e:
        return MalformedTrackingPayload(carrier=carrier, reason=str(e))

    tracking_number = str(fields["tracking_number"]).strip()
    carrier_status = str(fields["carrier_status"]).strip()
    occurred_at = fields["occurred_at"] or utcnow()
    status = status_map.get(carrier_status)

    if status is None:
        return UnknownTrackingUpdate(
            carrier=carrier,
            tracking_number=tracking_number,
            carrier_status=carrier_status,
            occurred_at=occurred_at,
            description=fields.get("description"),
            location=fields.get("location"),
        )
    return KnownTrackingUpdate(
        carrier=carrier,
        tracking_number=tracking_number,
        carrier_status=carrier_status,
        status=status,
        occurred_at=occurred_at,
        description=fields.get("description"),
        location=fields.get("location"),
    )
