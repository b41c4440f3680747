import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_, and_, select
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOBS_FINISHED, STALE_JOBS_SWEPT
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob
from crosslister.domain.errors import InvalidJobStateError
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobEvent, JobStatus
from crosslister.settings import settings

logger = logging.getLogger(__name__)

_STALE_MESSAGES = {
    JobStatus.QUEUED: "No worker picked up the job. Make sure the extension is running and try again.",
    JobStatus.PROCESSING: "The worker stopped responding before finishing the job.",
    JobStatus.PENDING_VERIFICATION: "Verification was not completed in time.",
}


async def sweep_stale_jobs(session: AsyncSession, now: Optional[datetime] = None, limit: int = 100) -> int:
    """
    Fails jobs nobody is going to finish: queued/processing jobs with no update
    for STALE_JOB_GRACE_SECONDS, and jobs stuck in pending_verification for
    VERIFICATION_GRACE_SECONDS.
    Returns number of jobs failed.
    """
    now = now or utcnow()
    stale_cutoff = now - timedelta(seconds=settings.STALE_JOB_GRACE_SECONDS)
    verification_cutoff = now - timedelta(seconds=settings.VERIFICATION_GRACE_SECONDS)

    stmt = select(CrosslistingJob).where(
        or_(
            and_(
                CrosslistingJob.status.in_([JobStatus.QUEUED.value, JobStatus.PROCESSING.value]),
                CrosslistingJob.updated_at < stale_cutoff,
            ),
            and_(
                CrosslistingJob.status == JobStatus.PENDING_VERIFICATION,
                CrosslistingJob.updated_at < verification_cutoff,
            ),
        )
    ).order_by(CrosslistingJob.updated_at.asc()).limit(limit).with_for_update(skip_locked=True)

    stale_jobs = (await session.execute(stmt)).scalars().all()

    count = 0
    for job in stale_jobs:
        stuck_in = JobStatus(job.status)
        try:
            # Conditioned on the status we read, so a report that lands
            # mid-sweep wins and the job is left alone
            await transition_job(
                session,
                job.id,
                JobStatus.FAILED,
                JobEvent.SWEPT,
                expected=[stuck_in],
                meta={"reason": "stale", "stuck_in": stuck_in},
                now=now,
                error_message=_STALE_MESSAGES[stuck_in],
            )
        except InvalidJobStateError:
            continue

        count += 1
        STALE_JOBS_SWEPT.labels(status=stuck_in).inc()
        JOBS_FINISHED.labels(platform=job.platform, status=JobStatus.FAILED).inc()
        logger.info(f"Swept stale job {job.id} (stuck in {stuck_in})")

    await session.flush()
    return count
