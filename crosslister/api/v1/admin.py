from decimal import Decimal
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from crosslister.api.deps import DbSession
from crosslister.commands.heartbeat import expire_silent_workers
from crosslister.commands.sweep_stale import sweep_stale_jobs
from crosslister.db.models import Listing, User

router = APIRouter()


@router.post("/sweep")
async def trigger_sweep(session: DbSession):
    swept = await sweep_stale_jobs(session)
    disconnected = await expire_silent_workers(session)
    await session.commit()
    return {"swept_count": swept, "workers_disconnected": disconnected}


class UserCreate(BaseModel):
    id: str
    email: str
    api_key: Optional[str] = None
    extension_token: Optional[str] = None


class ListingCreate(BaseModel):
    user_id: str
    title: str
    description: str = ""
    price: Decimal = Field(gt=0)
    condition: str
    brand: Optional[str] = None
    size: Optional[str] = None
    color: Optional[str] = None
    category: Optional[str] = None
    photo_urls: list[str] = Field(default_factory=list)
    platform_metadata: dict[str, Any] = Field(default_factory=dict)


@router.post("/users", status_code=status.HTTP_201_CREATED)
async def create_user(payload: UserCreate, session: DbSession):
    user = User(
        id=payload.id,
        email=payload.email,
        api_key=payload.api_key,
        extension_token=payload.extension_token,
    )
    session.add(user)
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        raise HTTPException(status_code=409, detail="User already exists")
    return {"id": user.id, "email": user.email}


@router.post("/listings", status_code=status.HTTP_201_CREATED)
async def create_listing(payload: ListingCreate, session: DbSession) -> dict[str, UUID]:
    if not await session.get(User, payload.user_id):
        raise HTTPException(status_code=404, detail="User not found")

    listing = Listing(**payload.model_dump())
    session.add(listing)
    await session.commit()
    return {"id": listing.id}
