"""
API dependencies
"""
import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import async_sessionmaker

from fulfillment.core.config import settings
from fulfillment.core.database import AsyncSessionLocal

logger = logging.getLogger(__name__)

_warned_open = False


async def require_internal_token(
    x_internal_token: Optional[str] = Header(None, alias="X-Internal-Token"),
) -> None:
    """Gate internal endpoints behind the shared service token."""
    global _warned_open

    expected = settings.INTERNAL_API_TOKEN
    if not expected:
        if settings.ENVIRONMENT == "production":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Internal API token not configured",
            )
        if not _warned_open:
            logger.warning("INTERNAL_API_TOKEN not set - internal endpoints are unauthenticated")
            _warned_open = True
        return

    if not x_internal_token or not hmac.compare_digest(x_internal_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal token",
        )


def get_session_factory() -> async_sessionmaker:
    """Session factory for services that manage their own transactions."""
    return AsyncSessionLocal
