import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOBS_ACTIVE, WORKERS_CONNECTED
from crosslister.commands.heartbeat import expire_silent_workers
from crosslister.commands.sweep_stale import sweep_stale_jobs
from crosslister.db.models import CrosslistingJob, User
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import ACTIVE_STATUSES
from crosslister.settings import settings

logger = logging.getLogger(__name__)


async def run_leader_tasks(session: AsyncSession, now: Optional[datetime] = None):
    """
    Periodic maintenance, run by the leader only:
    1. Fail jobs nobody is going to finish (staleness sweep)
    2. Flag workers that stopped checking in as disconnected
    """
    now = now or utcnow()

    swept = await sweep_stale_jobs(session, now=now)
    disconnected = await expire_silent_workers(session, now=now)
    await session.commit()

    if swept or disconnected:
        logger.info("Maintenance: swept %d stale jobs, disconnected %d workers", swept, disconnected)


async def run_metrics_tasks(session: AsyncSession, now: Optional[datetime] = None):
    """Refreshes gauges. Runs on every instance so each /metrics is current."""
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.WORKER_FRESHNESS_SECONDS)

    q_workers = select(func.count()).select_from(User).where(
        User.extension_connected.is_(True),
        User.extension_last_seen >= cutoff,
    )
    WORKERS_CONNECTED.set((await session.execute(q_workers)).scalar() or 0)

    q_active = (
        select(CrosslistingJob.status, func.count(CrosslistingJob.id))
        .where(CrosslistingJob.status.in_([s.value for s in ACTIVE_STATUSES]))
        .group_by(CrosslistingJob.status)
    )
    counts = dict((await session.execute(q_active)).all())
    # Statuses with no rows still get a 0 so the gauge drops back down
    for status in ACTIVE_STATUSES:
        JOBS_ACTIVE.labels(status=status).set(counts.get(status, 0))

    await session.commit()
