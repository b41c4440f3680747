import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.api.v1.metrics import JOBS_DISPATCHED, DISPATCH_REJECTED
from crosslister.commands.publish_native import publish_inline
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob, JobEventLog, Listing, PlatformConnection, PlatformListing, User
from crosslister.domain.errors import (
    AlreadyListedError,
    CrosslistError,
    DuplicateJobError,
    InvalidResumeError,
    JobNotFoundError,
    ListingNotFoundError,
    NotListedError,
    PlatformNotConnectedError,
    ReconnectRequiredError,
    WorkerNotConnectedError,
)
from crosslister.domain.liveness import utcnow, is_worker_live, is_connection_fresh
from crosslister.domain.payloads import DelistPayload, build_create_payload, dump_payload
from crosslister.domain.platforms import DispatchMode, PlatformSpec, get_platform
from crosslister.domain.states import ACTIVE_STATUSES, JobEvent, JobOperation, JobStatus
from crosslister.services.native_publisher import NativePublisher
from crosslister.settings import settings

logger = logging.getLogger(__name__)


async def dispatch_job(
    session: AsyncSession,
    user_id: str,
    listing_id: UUID,
    platform: str,
    resume_of: Optional[UUID] = None,
    publisher: Optional[NativePublisher] = None,
    now: Optional[datetime] = None,
) -> CrosslistingJob:
    """
    Creates a queued cross-listing job after checking, in order:
      1. the listing exists and belongs to the user
      2. the listing is not already live on the platform
      3. the worker is live, and stored credentials are present and fresh
         when the platform needs them
      4. `resume_of` (if given) is this listing's job blocked on verification

    Any failure raises a CrosslistError and leaves no job row behind.
    Returns the new job without waiting for the worker.

    Native platforms skip the worker: the job is published inline through
    `publisher` and comes back already completed or failed.
    """
    now = now or utcnow()
    spec = get_platform(platform)

    try:
        listing = await _get_owned_listing(session, user_id, listing_id)

        existing = await session.scalar(
            select(PlatformListing).where(
                PlatformListing.listing_id == listing.id,
                PlatformListing.platform == platform,
                PlatformListing.status == "active",
            )
        )
        if existing:
            raise AlreadyListedError(platform)

        if spec.mode == DispatchMode.EXTENSION:
            await _ensure_worker_live(session, user_id, now)
        connection = await _ensure_connection(session, user_id, spec, now)

        payload = dump_payload(build_create_payload(platform, listing))
    except CrosslistError as e:
        DISPATCH_REJECTED.labels(platform=platform, reason=e.error).inc()
        logger.info(f"Dispatch rejected for user={user_id} listing={listing_id} platform={platform}: {e.error}")
        raise

    if resume_of:
        await _supersede(session, user_id, listing.id, platform, resume_of, now)

    job = await _insert_job(
        session,
        user_id=user_id,
        listing_id=listing.id,
        platform=platform,
        operation=JobOperation.CREATE,
        payload=payload,
        resumed_from_job_id=resume_of,
        now=now,
    )

    if spec.mode == DispatchMode.NATIVE:
        if publisher is None:
            raise RuntimeError(f"No native publisher configured for {platform}")
        job = await publish_inline(session, job, publisher, connection.access_token)

    return job


async def dispatch_delist(
    session: AsyncSession,
    user_id: str,
    listing_id: UUID,
    platform: str,
    now: Optional[datetime] = None,
) -> CrosslistingJob:
    """Queues a delete job for a listing that is live on an extension platform."""
    now = now or utcnow()
    spec = get_platform(platform)

    try:
        listing = await _get_owned_listing(session, user_id, listing_id)
        platform_listing = await session.scalar(
            select(PlatformListing).where(
                PlatformListing.listing_id == listing.id,
                PlatformListing.platform == platform,
            )
        )
        if not platform_listing:
            raise NotListedError(platform)

        if spec.mode == DispatchMode.EXTENSION:
            await _ensure_worker_live(session, user_id, now)
    except CrosslistError as e:
        DISPATCH_REJECTED.labels(platform=platform, reason=e.error).inc()
        logger.info(f"Delist rejected for user={user_id} listing={listing_id} platform={platform}: {e.error}")
        raise

    payload = DelistPayload(platform=platform, platform_listing_id=platform_listing.platform_listing_id)
    return await _insert_job(
        session,
        user_id=user_id,
        listing_id=listing.id,
        platform=platform,
        operation=JobOperation.DELETE,
        payload=dump_payload(payload),
        now=now,
    )


async def _get_owned_listing(session: AsyncSession, user_id: str, listing_id: UUID) -> Listing:
    listing = await session.scalar(
        select(Listing).where(Listing.id == listing_id, Listing.user_id == user_id)
    )
    if not listing:
        raise ListingNotFoundError(listing_id)
    return listing


async def _ensure_worker_live(session: AsyncSession, user_id: str, now: datetime) -> None:
    user = await session.get(User, user_id)
    if not user or not user.extension_connected:
        raise WorkerNotConnectedError()
    if not is_worker_live(user.extension_connected, user.extension_last_seen, now, settings.WORKER_FRESHNESS_SECONDS):
        raise WorkerNotConnectedError(
            f"Extension not connected: last seen more than {settings.WORKER_FRESHNESS_SECONDS} seconds ago. "
            "Please make sure the extension is running."
        )


async def _ensure_connection(
    session: AsyncSession,
    user_id: str,
    spec: PlatformSpec,
    now: datetime,
) -> Optional[PlatformConnection]:
    if not spec.requires_credentials:
        return None

    connection = await session.scalar(
        select(PlatformConnection).where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == spec.name,
            PlatformConnection.is_active.is_(True),
        )
    )
    if not connection:
        raise PlatformNotConnectedError(spec.name)

    if spec.mode == DispatchMode.NATIVE:
        if not connection.access_token:
            raise ReconnectRequiredError(spec.name)
        return connection

    if not connection.has_credentials:
        raise ReconnectRequiredError(spec.name)
    if not is_connection_fresh(connection.verified_at, now, settings.CREDENTIAL_MAX_AGE_HOURS):
        raise ReconnectRequiredError(spec.name)
    return connection


async def _supersede(
    session: AsyncSession,
    user_id: str,
    listing_id: UUID,
    platform: str,
    resume_of: UUID,
    now: datetime,
) -> None:
    previous = await session.get(CrosslistingJob, resume_of)
    if not previous or previous.user_id != user_id:
        raise JobNotFoundError(resume_of)
    if previous.listing_id != listing_id or previous.platform != platform:
        raise InvalidResumeError(f"Job {resume_of} is for a different listing or platform")
    if previous.status != JobStatus.PENDING_VERIFICATION:
        raise InvalidResumeError(f"Job {resume_of} is {previous.status}, not waiting on verification")

    await transition_job(
        session,
        resume_of,
        JobStatus.FAILED,
        JobEvent.SUPERSEDED,
        expected=[JobStatus.PENDING_VERIFICATION],
        meta={"reason": "resumed_after_verification"},
        now=now,
        error_message="Superseded by a retry after verification",
    )


async def _insert_job(
    session: AsyncSession,
    *,
    user_id: str,
    listing_id: UUID,
    platform: str,
    operation: JobOperation,
    payload: dict,
    now: datetime,
    resumed_from_job_id: Optional[UUID] = None,
) -> CrosslistingJob:
    # Friendly pre-check; the partial unique index is what actually enforces it
    if await _find_active_job(session, listing_id, platform):
        DISPATCH_REJECTED.labels(platform=platform, reason=DuplicateJobError.error).inc()
        raise DuplicateJobError(platform)

    job = CrosslistingJob(
        user_id=user_id,
        listing_id=listing_id,
        platform=platform,
        operation=operation,
        status=JobStatus.QUEUED,
        payload=payload,
        resumed_from_job_id=resumed_from_job_id,
        created_at=now,
        updated_at=now,
    )
    session.add(job)
    try:
        await session.flush()
    except IntegrityError:
        # A concurrent dispatch for the same (listing, platform) won
        await session.rollback()
        DISPATCH_REJECTED.labels(platform=platform, reason=DuplicateJobError.error).inc()
        raise DuplicateJobError(platform)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=JobEvent.CREATED,
        from_status=None,
        to_status=JobStatus.QUEUED,
        timestamp=now,
        meta={"operation": operation, "resumed_from": str(resumed_from_job_id) if resumed_from_job_id else None},
    ))
    await session.flush()

    JOBS_DISPATCHED.labels(platform=platform, operation=operation).inc()
    logger.info(f"Dispatched {operation} job {job.id} user={user_id} listing={listing_id} platform={platform}")
    return job


async def _find_active_job(session: AsyncSession, listing_id: UUID, platform: str) -> Optional[UUID]:
    return await session.scalar(
        select(CrosslistingJob.id).where(
            CrosslistingJob.listing_id == listing_id,
            CrosslistingJob.platform == platform,
            CrosslistingJob.status.in_([s.value for s in ACTIVE_STATUSES]),
        )
    )
