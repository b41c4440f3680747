from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.db.models import CrosslistingJob, User
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobStatus
from crosslister.settings import settings


async def record_heartbeat(
    session: AsyncSession,
    user: User,
    version: Optional[str] = None,
    connected: bool = True,
    now: Optional[datetime] = None,
) -> datetime:
    """
    Records that the user's worker checked in.
    Every connect and poll call lands here; disconnect passes connected=False.
    Returns the recorded last_seen.
    """
    now = now or utcnow()
    user.extension_connected = connected
    user.extension_last_seen = now
    if version:
        user.extension_version = version
    await session.flush()
    return now


async def count_queued_jobs(session: AsyncSession, user_id: str) -> int:
    stmt = select(func.count()).select_from(CrosslistingJob).where(
        CrosslistingJob.user_id == user_id,
        CrosslistingJob.status == JobStatus.QUEUED,
    )
    return (await session.execute(stmt)).scalar() or 0


async def expire_silent_workers(session: AsyncSession, now: Optional[datetime] = None) -> int:
    """Flags workers that stopped checking in as disconnected. Returns how many."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.WORKER_FRESHNESS_SECONDS)
    stmt = (
        update(User)
        .where(
            User.extension_connected.is_(True),
            User.extension_last_seen < cutoff,
        )
        .values(extension_connected=False)
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(stmt)
    return res.rowcount
