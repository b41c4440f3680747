import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOBS_FINISHED
from crosslister.commands.platform_listings import upsert_platform_listing
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob
from crosslister.domain.errors import PublishError
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobEvent, JobStatus
from crosslister.services.native_publisher import NativePublisher

logger = logging.getLogger(__name__)


async def publish_inline(
    session: AsyncSession,
    job: CrosslistingJob,
    publisher: NativePublisher,
    access_token: Optional[str],
) -> CrosslistingJob:
    """
    Synchronous path for native platforms: the job goes straight from queued
    to a terminal status within the dispatch request.
    """
    try:
        result = await publisher.publish(job.payload, access_token)
    except PublishError as e:
        job = await transition_job(
            session,
            job.id,
            JobStatus.FAILED,
            JobEvent.FAILED,
            expected=[JobStatus.QUEUED],
            meta={"path": "native"},
            error_message=e.message,
        )
        JOBS_FINISHED.labels(platform=job.platform, status=JobStatus.FAILED).inc()
        logger.info(f"Native publish failed for job {job.id}: {e.message}")
        return job

    now = utcnow()
    job = await transition_job(
        session,
        job.id,
        JobStatus.COMPLETED,
        JobEvent.COMPLETED,
        expected=[JobStatus.QUEUED],
        meta={"path": "native"},
        now=now,
        platform_listing_id=result.platform_listing_id,
        platform_url=result.platform_url,
    )
    await upsert_platform_listing(session, job, result.platform_listing_id, result.platform_url, now)
    JOBS_FINISHED.labels(platform=job.platform, status=JobStatus.COMPLETED).inc()
    logger.info(f"Native publish completed for job {job.id} -> {result.platform_listing_id}")
    return job
