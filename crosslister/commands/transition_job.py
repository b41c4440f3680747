from datetime import datetime
from typing import Any, Iterable, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.db.models import CrosslistingJob, JobEventLog
from crosslister.domain.errors import JobNotFoundError, InvalidJobStateError
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobStatus, JobEvent, TERMINAL_STATUSES, sources_for


async def transition_job(
    session: AsyncSession,
    job_id: UUID,
    target: JobStatus,
    event: JobEvent,
    expected: Optional[Iterable[JobStatus]] = None,
    meta: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
    **values: Any,
) -> CrosslistingJob:
    """
    Compare-and-swap status write.

    Moves the job to `target` only if its current status is one of `expected`
    (default: every legal source of `target`). The check and the write are a
    single UPDATE, so two concurrent writers cannot both apply a transition
    from the same prior status. Writes the audit event on success.

    Raises JobNotFoundError if the job does not exist and
    InvalidJobStateError if the current status does not allow the transition.
    """
    now = now or utcnow()
    allowed = sources_for(target)
    expected = allowed if expected is None else frozenset(expected) & allowed

    if target in TERMINAL_STATUSES:
        values.setdefault("completed_at", now)

    stmt = (
        update(CrosslistingJob)
        .where(
            CrosslistingJob.id == job_id,
            CrosslistingJob.status.in_([s.value for s in expected]),
        )
        .values(status=target, updated_at=now, **values)
        .returning(CrosslistingJob)
        .execution_options(synchronize_session=False)
    )
    # Fetch the current row first so the audit event can record the prior status
    current = await session.get(CrosslistingJob, job_id, populate_existing=True)
    if current is None:
        raise JobNotFoundError(job_id)
    from_status = current.status

    res = await session.execute(stmt)
    job = res.scalar_one_or_none()

    if job is None:
        # Lost the swap; report the status that actually won
        await session.refresh(current)
        raise InvalidJobStateError(current.status, target)

    await session.refresh(job)

    session.add(JobEventLog(
        job_id=job.id,
        event_type=event,
        from_status=from_status,
        to_status=target,
        timestamp=now,
        meta=meta or {},
    ))
    await session.flush()
    return job


async def record_event(
    session: AsyncSession,
    job: CrosslistingJob,
    event: JobEvent,
    meta: Optional[dict[str, Any]] = None,
    now: Optional[datetime] = None,
) -> None:
    """Audit-only event that does not change status (progress, ignored reports)."""
    now = now or utcnow()
    job.updated_at = now
    session.add(JobEventLog(
        job_id=job.id,
        event_type=event,
        from_status=job.status,
        to_status=job.status,
        timestamp=now,
        meta=meta or {},
    ))
    await session.flush()
