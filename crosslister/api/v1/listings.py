from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from crosslister.api.deps import DbSession, Publisher
from crosslister.auth.security import get_current_user
from crosslister.commands.dispatch_job import dispatch_delist, dispatch_job
from crosslister.db.models import CrosslistingJob, Listing, PlatformListing, User
from crosslister.domain.errors import CrosslistError
from crosslister.domain.states import JobStatus

router = APIRouter()


class CrosslistRequest(BaseModel):
    listing_id: UUID
    user_id: str
    platform: str
    # Job that stopped on a verification interrupt and is being retried
    resume_of: Optional[UUID] = None


class DelistRequest(BaseModel):
    listing_id: UUID
    user_id: str
    platform: str


class DispatchResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    error_message: Optional[str] = None


class JobStatusResponse(BaseModel):
    job_id: UUID
    listing_id: UUID
    platform: str
    operation: str
    status: JobStatus
    error_message: Optional[str] = None
    platform_listing_id: Optional[str] = None
    platform_url: Optional[str] = None
    resumed_from_job_id: Optional[UUID] = None
    created_at: datetime
    completed_at: Optional[datetime] = None


class PlatformListingResponse(BaseModel):
    platform: str
    platform_listing_id: str
    platform_url: Optional[str]
    status: str
    last_synced_at: datetime
    model_config = ConfigDict(from_attributes=True)


def _error_response(e: CrosslistError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=e.to_payload())


def _check_caller(body_user_id: str, user: User) -> None:
    if body_user_id != user.id:
        raise HTTPException(status_code=403, detail="user_id does not match API key")


@router.post("/crosslist", response_model=DispatchResponse, status_code=status.HTTP_201_CREATED)
async def crosslist(
    body: CrosslistRequest,
    session: DbSession,
    publisher: Publisher,
    user: User = Depends(get_current_user),
):
    _check_caller(body.user_id, user)
    try:
        job = await dispatch_job(
            session,
            user_id=user.id,
            listing_id=body.listing_id,
            platform=body.platform,
            resume_of=body.resume_of,
            publisher=publisher,
        )
    except CrosslistError as e:
        await session.rollback()
        return _error_response(e)

    await session.commit()
    return DispatchResponse(job_id=job.id, status=job.status, error_message=job.error_message)


@router.post("/delist", response_model=DispatchResponse, status_code=status.HTTP_201_CREATED)
async def delist(body: DelistRequest, session: DbSession, user: User = Depends(get_current_user)):
    _check_caller(body.user_id, user)
    try:
        job = await dispatch_delist(
            session,
            user_id=user.id,
            listing_id=body.listing_id,
            platform=body.platform,
        )
    except CrosslistError as e:
        await session.rollback()
        return _error_response(e)

    await session.commit()
    return DispatchResponse(job_id=job.id, status=job.status)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_job_status(job_id: UUID, session: DbSession, user: User = Depends(get_current_user)):
    job = await session.get(CrosslistingJob, job_id)
    if not job or job.user_id != user.id:
        raise HTTPException(status_code=404, detail="Job not found")

    return JobStatusResponse(
        job_id=job.id,
        listing_id=job.listing_id,
        platform=job.platform,
        operation=job.operation,
        status=job.status,
        error_message=job.error_message,
        platform_listing_id=job.platform_listing_id,
        platform_url=job.platform_url,
        resumed_from_job_id=job.resumed_from_job_id,
        created_at=job.created_at,
        completed_at=job.completed_at,
    )


@router.get("/{listing_id}/platforms", response_model=list[PlatformListingResponse])
async def list_platform_listings(listing_id: UUID, session: DbSession, user: User = Depends(get_current_user)):
    listing = await session.scalar(
        select(Listing).where(Listing.id == listing_id, Listing.user_id == user.id)
    )
    if not listing:
        raise HTTPException(status_code=404, detail="Listing not found")

    rows = await session.scalars(
        select(PlatformListing)
        .where(PlatformListing.listing_id == listing_id)
        .order_by(PlatformListing.platform)
    )
    return [PlatformListingResponse.model_validate(r) for r in rows.all()]
