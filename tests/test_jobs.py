"""
Tests for background job wiring (in-process sweep loop and ARQ functions).
"""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from fulfillment.core import job_queue
from fulfillment.jobs import pickup_jobs, tracking_jobs
from fulfillment.models import WebhookInboxEntry
from fulfillment.services.stale_pickup_monitor import StalePickupReport
from fulfillment.services.tracking_webhooks import TrackingWebhookProcessor


class FakeMonitor:
    def __init__(self, fail=False):
        self.sweeps = 0
        self.fail = fail

    async def sweep(self):
        self.sweeps += 1
        if self.fail:
            raise RuntimeError("database unavailable")
        return StalePickupReport()


class FakeRedis:
    def __init__(self):
        self.jobs = []

    async def enqueue_job(self, name, *args):
        self.jobs.append((name, args))


class TestStalePickupJobRunner:
    @pytest.mark.asyncio
    async def test_start_runs_sweep_and_stop_cancels(self):
        monitor = FakeMonitor()
        runner = pickup_jobs.StalePickupJobRunner(monitor=monitor, interval_seconds=3600)

        await runner.start()
        await asyncio.sleep(0.05)
        assert runner.running is True
        await runner.stop()

        assert monitor.sweeps == 1
        assert runner.running is False

    @pytest.mark.asyncio
    async def test_loop_survives_sweep_errors(self):
        monitor = FakeMonitor(fail=True)
        runner = pickup_jobs.StalePickupJobRunner(monitor=monitor, interval_seconds=0.01)

        await runner.start()
        await asyncio.sleep(0.1)
        await runner.stop()

        assert monitor.sweeps > 1

    @pytest.mark.asyncio
    async def test_disabled_sweep(self, monkeypatch):
        monkeypatch.setattr(pickup_jobs.settings, "STALE_PICKUP_SWEEP_ENABLED", False)

        assert await pickup_jobs.sweep_stale_pickups({}) == {"status": "skipped", "reason": "sweep_disabled"}

        await pickup_jobs.start_pickup_jobs()
        assert pickup_jobs._job_runner is None


class TestTrackingJobs:
    @pytest.mark.asyncio
    async def test_requeue_pending_webhooks(self, session_factory, monkeypatch):
        processor = TrackingWebhookProcessor(session_factory=session_factory)
        monkeypatch.setattr(tracking_jobs, "TrackingWebhookProcessor", lambda: processor)
        stuck = await processor.record_inbox("SANDBOX_GROUND", {"tracking_number": "SBX1", "status": "in_transit"})
        await processor.record_inbox("SANDBOX_GROUND", {"tracking_number": "SBX2", "status": "in_transit"})
        async with session_factory() as session:
            await session.execute(
                update(WebhookInboxEntry)
                .where(WebhookInboxEntry.id == stuck)
                .values(received_at=datetime.now(timezone.utc) - timedelta(hours=2))
            )
            await session.commit()
        redis = FakeRedis()

        result = await tracking_jobs.requeue_pending_webhooks({"redis": redis})

        assert result == {"status": "ok", "requeued": 1}
        assert redis.jobs == [("process_tracking_webhook", (stuck,))]

    @pytest.mark.asyncio
    async def test_nothing_to_requeue(self, session_factory, monkeypatch):
        processor = TrackingWebhookProcessor(session_factory=session_factory)
        monkeypatch.setattr(tracking_jobs, "TrackingWebhookProcessor", lambda: processor)

        assert await tracking_jobs.requeue_pending_webhooks({"redis": FakeRedis()}) == {"status": "ok", "requeued": 0}


class TestQueueConfig:
    def test_parse_redis_url(self):
        redis_settings = job_queue.parse_redis_url("redis://:pw@cache.internal:6380/2")

        assert redis_settings.host == "cache.internal"
        assert redis_settings.port == 6380
        assert redis_settings.password == "pw"
        assert redis_settings.database == 2

    @pytest.mark.asyncio
    async def test_no_pool_without_url(self):
        assert job_queue.queue_redis_url() == ""
        assert await job_queue.get_queue_pool() is None

    def test_worker_registers_functions(self):
        names = {f.__name__ for f in job_queue.WorkerSettings.functions}

        assert names == {"process_tracking_webhook", "sweep_stale_pickups", "requeue_pending_webhooks"}
