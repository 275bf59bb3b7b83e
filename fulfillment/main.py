"""
Fulfillment Routing Service
FastAPI application entry point

- Routing recommendations, rate shopping, shipments and pickup shelves
- Carrier tracking webhooks (durable inbox + ARQ worker pool)
- Stale pickup sweep on an in-process loop
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from fulfillment import __version__
from fulfillment.api.routes import fulfillment, webhooks
from fulfillment.core.config import settings, validate_origin_config
from fulfillment.core.database import get_db_session, init_models
from fulfillment.core.exceptions import FulfillmentError
from fulfillment.core.job_queue import close_queue_pool
from fulfillment.jobs.pickup_jobs import start_pickup_jobs, stop_pickup_jobs

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Validate configuration and start background jobs.

    A missing origin address aborts startup (ConfigurationError).
    """
    validate_origin_config()

    if settings.DB_AUTO_CREATE_TABLES:
        await init_models()
        logger.info("Database tables ensured")

    await start_pickup_jobs()

    yield

    await stop_pickup_jobs()
    await close_queue_pool()
    logger.info("Fulfillment service stopped")


app = FastAPI(
    lifespan=lifespan,
    title=settings.APP_NAME,
    description="Pickup-vs-ship routing, rate shopping, shipments, pickup shelves and carrier tracking.",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Health", "description": "Health check"},
        {"name": "fulfillment", "description": "Routing, shipments and pickup shelves (internal)"},
        {"name": "webhooks", "description": "Carrier tracking webhooks"},
    ],
)


@app.exception_handler(FulfillmentError)
async def fulfillment_error_handler(request: Request, exc: FulfillmentError):
    if exc.http_status >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc!r}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.http_status,
        content={"error": exc.code, "message": exc.message, "details": exc.details},
    )


app.include_router(fulfillment.router, prefix="/api")
app.include_router(webhooks.router, prefix="/api")


@app.get("/health", tags=["Health"])
async def health_check():
    """
    Health check with a DB ping.
    Returns 503 if the database is unreachable.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }

    try:
        async with get_db_session() as db:
            await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {type(e).__name__}: {str(e)[:100]}"
        health_status["status"] = "unhealthy"
        return JSONResponse(status_code=503, content=health_status)

    return health_status
