import logging
from typing import Annotated, Any, Literal, Optional, Union
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from crosslister.api.deps import DbSession
from crosslister.api.v1.metrics import WORKER_REPORTS
from crosslister.auth.security import SignatureVerifier
from crosslister.commands.claim_job import claim_job
from crosslister.commands.heartbeat import count_queued_jobs, record_heartbeat
from crosslister.commands.report_job import ReportOutcome, report_job
from crosslister.db.models import User
from crosslister.domain.errors import CrosslistError, InvalidJobStateError, JobNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter()

verify_worker = SignatureVerifier()


class ConnectRequest(BaseModel):
    version: Optional[str] = None


class ConnectResponse(BaseModel):
    connected: bool
    queued_jobs: int


class PollRequest(BaseModel):
    version: Optional[str] = None


class ClaimedJob(BaseModel):
    job_id: UUID
    platform: str
    operation: str
    payload: dict[str, Any]


class PollResponse(BaseModel):
    job: Optional[ClaimedJob] = None


class SuccessReport(BaseModel):
    outcome: Literal["SUCCESS"]
    platform_listing_id: Optional[str] = None
    platform_url: Optional[str] = None


class ErrorReport(BaseModel):
    outcome: Literal["ERROR"]
    message: str


class ProgressReport(BaseModel):
    outcome: Literal["PROGRESS"]
    step: Optional[str] = None
    percent: Optional[int] = Field(default=None, ge=0, le=100)


class VerificationReport(BaseModel):
    outcome: Literal["VERIFICATION_REQUIRED"]
    message: str = "Verification required"


ReportBody = Annotated[
    Union[SuccessReport, ErrorReport, ProgressReport, VerificationReport],
    Field(discriminator="outcome"),
]


class ReportResponse(BaseModel):
    acknowledged: bool = True
    ignored: bool = False
    job_status: str


@router.post("/connect", response_model=ConnectResponse)
async def connect(body: ConnectRequest, session: DbSession, user: User = Depends(verify_worker)):
    await record_heartbeat(session, user, version=body.version)
    queued = await count_queued_jobs(session, user.id)
    await session.commit()
    logger.info(f"Extension connected for user={user.id} version={body.version} queued={queued}")
    return ConnectResponse(connected=True, queued_jobs=queued)


@router.post("/disconnect", response_model=ConnectResponse)
async def disconnect(session: DbSession, user: User = Depends(verify_worker)):
    await record_heartbeat(session, user, connected=False)
    queued = await count_queued_jobs(session, user.id)
    await session.commit()
    logger.info(f"Extension disconnected for user={user.id}")
    return ConnectResponse(connected=False, queued_jobs=queued)


@router.post("/poll", response_model=PollResponse)
async def poll(body: PollRequest, session: DbSession, user: User = Depends(verify_worker)):
    await record_heartbeat(session, user, version=body.version)
    job = await claim_job(session, user.id, worker_version=body.version)
    # Heartbeat and any claim-time failures are kept even when nothing was claimed
    await session.commit()

    if not job:
        return PollResponse(job=None)

    return PollResponse(
        job=ClaimedJob(
            job_id=job.id,
            platform=job.platform,
            operation=job.operation,
            payload=job.payload,
        )
    )


@router.post("/jobs/{job_id}/report", response_model=ReportResponse)
async def report(job_id: UUID, body: ReportBody, session: DbSession, user: User = Depends(verify_worker)):
    data = body.model_dump(exclude={"outcome"}, exclude_none=True)
    try:
        result = await report_job(session, job_id, user.id, ReportOutcome(body.outcome), data=data)
    except JobNotFoundError as e:
        await session.rollback()
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidJobStateError as e:
        await session.rollback()
        WORKER_REPORTS.labels(outcome=body.outcome, result="rejected").inc()
        raise HTTPException(status_code=409, detail=e.message)
    except CrosslistError as e:
        await session.rollback()
        raise HTTPException(status_code=e.status_code, detail=e.message)

    await session.commit()
    return ReportResponse(ignored=not result.applied, job_status=result.job.status)
