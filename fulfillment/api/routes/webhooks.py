"""
Carrier Tracking Webhook Routes

Carriers post tracking events here. Authenticity is checked by the carrier
gateway (HMAC over the raw body), not by the internal token. The raw payload
is stored in the webhook inbox first, then handed to the ARQ worker pool, or
processed inline when no queue is configured.

Invalid JSON and unknown tracking numbers are acknowledged, never retried by
the carrier; only a bad signature is rejected.
"""
import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from fulfillment.api.deps import get_session_factory
from fulfillment.core.job_queue import get_queue_pool
from fulfillment.modules.shipping import get_carrier
from fulfillment.schemas.fulfillment import WebhookAckResponse
from fulfillment.services.tracking_webhooks import TrackingWebhookProcessor

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks/tracking/{carrier}", response_model=WebhookAckResponse)
async def handle_tracking_webhook(
    carrier: str,
    request: Request,
    response: Response,
    session_factory: async_sessionmaker = Depends(get_session_factory),
):
    """
    Receive a carrier tracking event.

    Returns:
        {"processed": bool, "status": str}; 202 with status "queued" when
        the event was handed to the worker pool
    """
    carrier = carrier.upper()
    gateway = get_carrier(carrier)
    if gateway is None:
        raise HTTPException(status_code=404, detail=f"Unknown carrier {carrier}")

    body = await request.body()
    if not gateway.verify_webhook(request.headers, body):
        logger.warning(f"Invalid {carrier} webhook signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    raw_body = body.decode("utf-8", errors="replace")
    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.warning(f"{carrier} webhook is not valid JSON: {e}")
        payload = None

    processor = TrackingWebhookProcessor(session_factory=session_factory)
    inbox_id = await processor.record_inbox(carrier, payload, raw_body)

    pool = await get_queue_pool()
    if pool is not None:
        try:
            await pool.enqueue_job("process_tracking_webhook", inbox_id)
            response.status_code = status.HTTP_202_ACCEPTED
            return WebhookAckResponse(processed=False, status="queued")
        except Exception as e:
            # The entry stays pending in the inbox; process it now
            logger.error(f"Enqueue of webhook inbox {inbox_id} failed, processing inline: {e}")

    outcome = await processor.process_inbox_entry(inbox_id)
    return WebhookAckResponse(**outcome)
