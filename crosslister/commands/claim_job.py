import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOB_CLAIMS, JOBS_FINISHED
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob, PlatformConnection
from crosslister.domain.errors import (
    CrosslistError,
    InvalidJobStateError,
    PlatformNotConnectedError,
    ReconnectRequiredError,
)
from crosslister.domain.liveness import is_connection_fresh, utcnow
from crosslister.domain.platforms import EXTENSION_PLATFORMS, PLATFORMS
from crosslister.domain.states import JobEvent, JobStatus
from crosslister.settings import settings

logger = logging.getLogger(__name__)


async def claim_job(
    session: AsyncSession,
    user_id: str,
    worker_version: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[CrosslistingJob]:
    """
    Claims the oldest queued job for the user's worker.

    The claim is a queued -> processing compare-and-swap, so when two pollers
    for the same user race, exactly one gets the job; the loser moves on to the
    next candidate (bounded by CLAIM_RETRY_LIMIT).

    Jobs for platforms that need stored credentials are failed and skipped
    when the user's connection for that platform is gone or has gone stale
    since dispatch, the same rule dispatch applies.
    """
    now = now or utcnow()
    connections = await _verified_connections(session, user_id)

    attempts = 0
    while attempts < settings.CLAIM_RETRY_LIMIT:
        candidate = await session.scalar(_build_claim_query(user_id))
        if not candidate:
            return None

        spec = PLATFORMS[candidate.platform]
        if spec.requires_credentials:
            if candidate.platform not in connections:
                await _fail_at_claim(session, candidate, now, PlatformNotConnectedError(candidate.platform))
                continue
            if not is_connection_fresh(connections[candidate.platform], now, settings.CREDENTIAL_MAX_AGE_HOURS):
                await _fail_at_claim(session, candidate, now, ReconnectRequiredError(candidate.platform))
                continue

        try:
            job = await transition_job(
                session,
                candidate.id,
                JobStatus.PROCESSING,
                JobEvent.CLAIMED,
                expected=[JobStatus.QUEUED],
                meta={"worker_version": worker_version},
                now=now,
                started_at=now,
            )
        except InvalidJobStateError:
            # Another poller claimed it between our read and our write
            attempts += 1
            logger.debug(f"Lost claim race for job {candidate.id} (attempt {attempts})")
            continue

        JOB_CLAIMS.labels(platform=job.platform).inc()
        logger.info(f"Job {job.id} claimed by worker for user={user_id} platform={job.platform}")
        return job

    return None


def _build_claim_query(user_id: str):
    return select(CrosslistingJob).where(
        CrosslistingJob.user_id == user_id,
        CrosslistingJob.status == JobStatus.QUEUED,
        CrosslistingJob.platform.in_(sorted(EXTENSION_PLATFORMS)),
    ).order_by(
        CrosslistingJob.created_at.asc()
    ).with_for_update(skip_locked=True).limit(1)


async def _verified_connections(session: AsyncSession, user_id: str) -> dict[str, Optional[datetime]]:
    """platform -> verified_at for active connections that hold credentials."""
    rows = await session.execute(
        select(PlatformConnection.platform, PlatformConnection.verified_at).where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.is_active.is_(True),
            PlatformConnection.has_credentials.is_(True),
        )
    )
    return {platform: verified_at for platform, verified_at in rows.all()}


async def _fail_at_claim(session: AsyncSession, job: CrosslistingJob, now: datetime, reason: CrosslistError) -> None:
    try:
        await transition_job(
            session,
            job.id,
            JobStatus.FAILED,
            JobEvent.FAILED,
            expected=[JobStatus.QUEUED],
            meta={"reason": reason.error},
            now=now,
            error_message=reason.message,
        )
    except InvalidJobStateError:
        return
    JOBS_FINISHED.labels(platform=job.platform, status=JobStatus.FAILED).inc()
    logger.info(f"Job {job.id} failed at claim: {reason.error} for user={job.user_id} platform={job.platform}")
