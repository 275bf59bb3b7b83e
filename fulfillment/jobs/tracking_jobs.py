"""
Tracking webhook jobs

Inbound webhooks are stored in the inbox by the API and processed here by the
ARQ worker pool (max_jobs = WEBHOOK_WORKER_CONCURRENCY).
"""
import logging

from fulfillment.core.config import settings
from fulfillment.services.tracking_webhooks import TrackingWebhookProcessor

logger = logging.getLogger(__name__)


async def process_tracking_webhook(ctx: dict, inbox_id: int) -> dict:
    """Process one stored tracking webhook."""
    processor = TrackingWebhookProcessor()
    outcome = await processor.process_inbox_entry(inbox_id)
    logger.debug(f"Webhook inbox {inbox_id}: {outcome['status']}")
    return outcome


async def requeue_pending_webhooks(ctx: dict) -> dict:
    """Re-enqueue inbox entries left pending (crashed worker, lost job)."""
    processor = TrackingWebhookProcessor()
    inbox_ids = await processor.pending_inbox_ids(settings.WEBHOOK_REQUEUE_AFTER_SECONDS)
    if not inbox_ids:
        return {"status": "ok", "requeued": 0}

    redis = ctx["redis"]
    for inbox_id in inbox_ids:
        await redis.enqueue_job("process_tracking_webhook", inbox_id)

    logger.warning(f"Re-enqueued {len(inbox_ids)} pending tracking webhooks")
    return {"status": "ok", "requeued": len(inbox_ids)}
