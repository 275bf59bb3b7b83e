"""
Job leases

Singleton execution for periodic jobs across instances. A lease is claimed
with one conditional UPDATE; an expired lease (crashed holder) can be taken
over without manual cleanup.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.core.utils import utcnow
from fulfillment.models.job_lease import JobLease

logger = logging.getLogger(__name__)


async def _ensure_lease_row(db: AsyncSession, job_name: str) -> None:
    exists = (await db.execute(
        select(JobLease.job_name).where(JobLease.job_name == job_name)
    )).scalar_one_or_none()
    if exists:
        return
    db.add(JobLease(job_name=job_name))
    try:
        await db.commit()
    except IntegrityError:
        # Another instance created it first
        await db.rollback()


async def try_acquire_lease(
    db: AsyncSession,
    job_name: str,
    holder: str,
    ttl_seconds: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Atomically claim a job lease.

    Returns:
        True if this holder now owns the lease
    """
    now = now or utcnow()
    await _ensure_lease_row(db, job_name)

    result = await db.execute(
        update(JobLease)
        .where(
            JobLease.job_name == job_name,
            or_(
                JobLease.holder.is_(None),
                JobLease.expires_at.is_(None),
                JobLease.expires_at < now,
            ),
        )
        .values(
            holder=holder,
            acquired_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        .execution_options(synchronize_session=False)
    )
    await db.commit()

    if result.rowcount == 1:
        logger.debug(f"[LEASE] {holder} acquired {job_name}")
        return True

    current = (await db.execute(
        select(JobLease.holder, JobLease.expires_at).where(JobLease.job_name == job_name)
    )).first()
    logger.info(
        f"[LEASE] {job_name} held by {current.holder if current else '?'} "
        f"until {current.expires_at if current else '?'}, skipping"
    )
    return False


async def release_lease(
    db: AsyncSession,
    job_name: str,
    holder: str,
    result: Optional[Dict[str, Any]] = None,
) -> bool:
    """Release a lease held by `holder` and record the run outcome."""
    released = await db.execute(
        update(JobLease)
        .where(JobLease.job_name == job_name, JobLease.holder == holder)
        .values(holder=None, expires_at=None, last_run_at=utcnow(), last_result=result)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    if released.rowcount != 1:
        logger.warning(f"[LEASE] {holder} no longer held {job_name} at release")
        return False
    return True
