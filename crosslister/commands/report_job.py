import logging
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOB_DURATION, JOBS_FINISHED, WORKER_REPORTS
from crosslister.commands.platform_listings import remove_platform_listing, upsert_platform_listing
from crosslister.commands.transition_job import record_event, transition_job
from crosslister.db.models import CrosslistingJob
from crosslister.domain.errors import InvalidJobStateError, InvalidPayloadError, JobNotFoundError
from crosslister.domain.liveness import as_utc, utcnow
from crosslister.domain.states import JobEvent, JobOperation, JobStatus, is_terminal

logger = logging.getLogger(__name__)


class ReportOutcome(StrEnum):
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    PROGRESS = "PROGRESS"
    VERIFICATION_REQUIRED = "VERIFICATION_REQUIRED"


@dataclass
class ReportResult:
    job: CrosslistingJob
    applied: bool


async def report_job(
    session: AsyncSession,
    job_id: UUID,
    user_id: str,
    outcome: ReportOutcome,
    data: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> ReportResult:
    """
    Applies a worker report to a job.

    Reports for a job that is already terminal are acknowledged and ignored, so
    a worker retrying a report it is unsure was delivered cannot change the
    outcome or completed_at. Same for a repeated verification interrupt.

    Raises JobNotFoundError if the job does not exist or is not the user's,
    and InvalidJobStateError for an illegal transition on an active job.
    """
    now = now or utcnow()
    data = data or {}

    job = await session.get(CrosslistingJob, job_id)
    if not job or job.user_id != user_id:
        raise JobNotFoundError(job_id)

    if is_terminal(job.status):
        WORKER_REPORTS.labels(outcome=outcome, result="ignored").inc()
        logger.info(f"Ignoring {outcome} report for job {job_id}: already {job.status}")
        return ReportResult(job=job, applied=False)

    if outcome == ReportOutcome.PROGRESS:
        job = await _apply_progress(session, job, data, now)
    elif outcome == ReportOutcome.VERIFICATION_REQUIRED:
        if job.status == JobStatus.PENDING_VERIFICATION:
            WORKER_REPORTS.labels(outcome=outcome, result="ignored").inc()
            return ReportResult(job=job, applied=False)
        job = await transition_job(
            session,
            job.id,
            JobStatus.PENDING_VERIFICATION,
            JobEvent.VERIFICATION_REQUIRED,
            meta={"message": data.get("message")},
            now=now,
            error_message=data.get("message") or "Verification required",
        )
        logger.info(f"Job {job.id} waiting on manual verification")
    elif outcome == ReportOutcome.SUCCESS:
        job = await _resume_if_paused(session, job, now)
        job = await _complete(session, job, data, now)
    elif outcome == ReportOutcome.ERROR:
        job = await _resume_if_paused(session, job, now)
        job = await transition_job(
            session,
            job.id,
            JobStatus.FAILED,
            JobEvent.FAILED,
            expected=[JobStatus.PROCESSING],
            meta={"message": data.get("message")},
            now=now,
            error_message=data.get("message") or "Unknown error",
        )
        _observe_finish(job, now)
        logger.info(f"Job {job.id} failed: {job.error_message}")

    WORKER_REPORTS.labels(outcome=outcome, result="applied").inc()
    return ReportResult(job=job, applied=True)


async def _apply_progress(
    session: AsyncSession,
    job: CrosslistingJob,
    data: dict[str, Any],
    now: datetime,
) -> CrosslistingJob:
    # Audit only. A paused job stays paused until the caller resumes it with a
    # new dispatch, and only the poll endpoint moves a job out of queued.
    if job.status == JobStatus.QUEUED:
        raise InvalidJobStateError(job.status, JobStatus.PROCESSING)
    meta = {"step": data.get("step"), "percent": data.get("percent")}
    await record_event(session, job, JobEvent.PROGRESS, meta=meta, now=now)
    return job


async def _resume_if_paused(session: AsyncSession, job: CrosslistingJob, now: datetime) -> CrosslistingJob:
    # Terminal reports from pending_verification go through processing so the
    # audit trail stays on the transition graph
    if job.status != JobStatus.PENDING_VERIFICATION:
        return job
    return await transition_job(
        session,
        job.id,
        JobStatus.PROCESSING,
        JobEvent.RESUMED,
        expected=[JobStatus.PENDING_VERIFICATION],
        meta={"implicit": True},
        now=now,
        error_message=None,
    )


async def _complete(
    session: AsyncSession,
    job: CrosslistingJob,
    data: dict[str, Any],
    now: datetime,
) -> CrosslistingJob:
    platform_listing_id = data.get("platform_listing_id")
    platform_url = data.get("platform_url")

    if job.operation == JobOperation.DELETE:
        platform_listing_id = platform_listing_id or job.payload.get("platform_listing_id")
    elif not platform_listing_id:
        raise InvalidPayloadError("SUCCESS report for a create job must include platform_listing_id")

    job = await transition_job(
        session,
        job.id,
        JobStatus.COMPLETED,
        JobEvent.COMPLETED,
        expected=[JobStatus.PROCESSING],
        meta={"platform_listing_id": platform_listing_id},
        now=now,
        platform_listing_id=platform_listing_id,
        platform_url=platform_url,
        error_message=None,
    )

    if job.operation == JobOperation.DELETE:
        removed = await remove_platform_listing(session, job)
        logger.info(f"Job {job.id} delisted {job.platform} listing ({removed} record removed)")
    else:
        await upsert_platform_listing(session, job, platform_listing_id, platform_url, now)
        logger.info(f"Job {job.id} completed: {job.platform} listing {platform_listing_id}")

    _observe_finish(job, now)
    return job


def _observe_finish(job: CrosslistingJob, now: datetime) -> None:
    JOBS_FINISHED.labels(platform=job.platform, status=job.status).inc()
    if job.started_at:
        duration = (as_utc(now) - as_utc(job.started_at)).total_seconds()
        if duration > 0:
            JOB_DURATION.observe(duration)
