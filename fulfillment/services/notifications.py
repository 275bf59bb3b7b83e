"""
Notification collaborator

Customer-facing messaging is owned by an external track-event service. This
module only emits named events with properties; delivery (email, SMS,
journeys) happens there.

Event names:
    pickup_shelf_assigned, pickup_completed, pickup_reminder_needed,
    shipment_created, shipment_status_changed
"""
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from fulfillment.core.config import settings
from fulfillment.core.utils import utcnow

logger = logging.getLogger(__name__)


class NotificationError(Exception):
    """Track-event delivery failed."""


class NotificationService(ABC):
    @abstractmethod
    async def track(self, user_id: str, event: str, properties: Dict[str, Any]) -> None:
        """
        Emit one event.

        Raises:
            NotificationError: delivery failed
        """
        pass


class LoggingNotificationService(NotificationService):
    """Used when no notification endpoint is configured."""

    async def track(self, user_id: str, event: str, properties: Dict[str, Any]) -> None:
        logger.info(f"Notification {event} for {user_id}: {properties}")


class HttpNotificationService(NotificationService):
    """Posts track events as JSON to NOTIFICATION_WEBHOOK_URL."""

    def __init__(
        self,
        url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.url = url or settings.NOTIFICATION_WEBHOOK_URL
        self.api_key = api_key if api_key is not None else settings.NOTIFICATION_API_KEY
        self.timeout = timeout or settings.NOTIFICATION_TIMEOUT_SECONDS
        self._transport = transport

    async def track(self, user_id: str, event: str, properties: Dict[str, Any]) -> None:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {
            "type": "track",
            "userId": user_id,
            "event": event,
            "properties": properties,
            "timestamp": utcnow().isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=body, headers=headers)
                response.raise_for_status()
        except httpx.HTTPError as e:
            raise NotificationError(f"{event} for {user_id} failed: {e}") from e
        logger.debug(f"Notification {event} sent for {user_id}")


def get_notification_service() -> NotificationService:
    if settings.NOTIFICATION_WEBHOOK_URL:
        return HttpNotificationService()
    return LoggingNotificationService()
