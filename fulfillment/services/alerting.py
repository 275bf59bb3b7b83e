"""
Alerting Service

PagerDuty integration for fulfillment incidents that need a human:
- Labels purchased but not recorded
- Forced-ship failures for stale pickups
- Delivery exceptions reported by carriers
- Tracking webhooks that match no shipment

Alerts never raise; failures fall back to logging.
"""
import json
import logging
from typing import Any, Dict, Optional

import httpx

from fulfillment.core.config import settings
from fulfillment.core.utils import utcnow

logger = logging.getLogger(__name__)

# PagerDuty API
PAGERDUTY_EVENTS_API = "https://events.pagerduty.com/v2/enqueue"

# Alert severity mapping
SEVERITY_MAPPING = {
    "critical": "critical",
    "high": "error",
    "warning": "warning",
    "info": "info",
}


async def send_pagerduty_alert(
    severity: str,
    summary: str,
    details: Optional[Dict[str, Any]] = None,
    source: str = "fulfillment-routing",
    component: str = "fulfillment",
    group: str = "logistics",
    dedup_key: Optional[str] = None,
) -> bool:
    """
    Send an alert to PagerDuty.

    Returns:
        True if alert was sent (or logged in dry-run mode)
    """
    if not settings.PAGERDUTY_ENABLED:
        logger.warning(f"Alert [{severity}]: {summary}")
        return False

    pd_severity = SEVERITY_MAPPING.get(severity.lower(), "warning")

    payload = {
        "routing_key": settings.PAGERDUTY_ROUTING_KEY,
        "event_action": "trigger",
        "payload": {
            "summary": summary[:1024],  # PagerDuty limit
            "severity": pd_severity,
            "source": source,
            "component": component,
            "group": group,
            "timestamp": utcnow().isoformat(),
            "custom_details": details or {},
        },
    }

    if dedup_key:
        payload["dedup_key"] = dedup_key

    if settings.ALERT_DRY_RUN:
        logger.info(f"[DRY RUN] PagerDuty alert: {summary} (severity: {pd_severity})")
        logger.debug(f"[DRY RUN] Alert details: {json.dumps(details or {}, indent=2, default=str)}")
        return True

    if not payload["routing_key"]:
        logger.warning(f"No PAGERDUTY_ROUTING_KEY set, logging alert only: {summary}")
        return False

    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.post(
                PAGERDUTY_EVENTS_API,
                json=payload,
                headers={"Content-Type": "application/json"},
            )

        if response.status_code == 202:
            logger.info(f"PagerDuty alert sent: {summary}")
            return True
        logger.error(f"PagerDuty API error: {response.status_code} - {response.text}")
        return False

    except httpx.HTTPError as e:
        logger.error(f"Failed to send PagerDuty alert: {e}")
        logger.critical(f"[ALERT FAILED] {summary}")
        if details:
            logger.critical(f"[ALERT FAILED] Details: {json.dumps(details, indent=2, default=str)}")
        return False


# Convenience functions for specific alert types


async def alert_shipment_persist_failure(
    order_ids: list,
    carrier: str,
    tracking_number: str,
    error: str,
) -> bool:
    """A label exists at the carrier but not in our database."""
    return await send_pagerduty_alert(
        severity="critical",
        summary=f"[UNRECORDED LABEL] {carrier} {tracking_number} purchased but not saved",
        details={
            "order_ids": order_ids,
            "carrier": carrier,
            "tracking_number": tracking_number,
            "error": error[:500],
            "action": "Record the shipment manually or void the label with the carrier",
        },
        component="shipment-creation",
        dedup_key=f"unrecorded-label-{tracking_number}",
    )


async def alert_forced_ship_failure(
    assignment_id: int,
    order_id: int,
    error: str,
) -> bool:
    """Stale pickup could not be converted into a shipment."""
    return await send_pagerduty_alert(
        severity="high",
        summary=f"[FORCED SHIP] Stale pickup for order {order_id} could not be shipped",
        details={
            "assignment_id": assignment_id,
            "order_id": order_id,
            "error": error[:500],
            "action": "Contact the customer or ship the order manually",
        },
        component="stale-pickups",
        dedup_key=f"forced-ship-{assignment_id}",
    )


async def alert_shipment_exception(
    shipment_id: int,
    tracking_number: str,
    exception_code: str,
    exception_description: str,
) -> bool:
    """Alert for shipment exception (delivery issue)."""
    return await send_pagerduty_alert(
        severity="high",
        summary=f"[SHIPMENT EXCEPTION] Tracking {tracking_number} has delivery exception",
        details={
            "shipment_id": shipment_id,
            "tracking_number": tracking_number,
            "exception_code": exception_code,
            "exception_description": exception_description,
            "action": "Review shipment status and contact carrier if needed",
        },
        component="shipment-tracking",
        dedup_key=f"shipment-exception-{tracking_number}",
    )


async def alert_unmatched_tracking(carrier: str, tracking_number: Optional[str], inbox_id: int) -> bool:
    return await send_pagerduty_alert(
        severity="warning",
        summary=f"[TRACKING] {carrier} webhook for unknown tracking number {tracking_number}",
        details={
            "carrier": carrier,
            "tracking_number": tracking_number,
            "inbox_id": inbox_id,
            "action": "Check the flagged webhook inbox entry",
        },
        component="tracking-webhooks",
        dedup_key=f"unmatched-tracking-{carrier}-{tracking_number}",
    )
