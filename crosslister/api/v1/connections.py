import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from sqlalchemy import select

from crosslister.api.deps import DbSession
from crosslister.auth.security import get_current_user
from crosslister.db.models import PlatformConnection, User
from crosslister.domain.errors import CrosslistError
from crosslister.domain.liveness import utcnow
from crosslister.domain.platforms import DispatchMode, get_platform

logger = logging.getLogger(__name__)

router = APIRouter()


class VerifyRequest(BaseModel):
    platform: str
    confidence: Literal["high", "medium", "low"]


class TokenRequest(BaseModel):
    platform: str
    access_token: str


class ConnectionResponse(BaseModel):
    platform: str
    is_active: bool
    has_credentials: bool
    verification_confidence: Optional[str] = None
    verified_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


async def _get_or_create(session, user_id: str, platform: str) -> PlatformConnection:
    conn = await session.scalar(
        select(PlatformConnection).where(
            PlatformConnection.user_id == user_id,
            PlatformConnection.platform == platform,
        )
    )
    if conn is None:
        conn = PlatformConnection(user_id=user_id, platform=platform)
        session.add(conn)
    return conn


@router.post("/verify", response_model=ConnectionResponse)
async def verify_connection(body: VerifyRequest, session: DbSession, user: User = Depends(get_current_user)):
    """
    Records that the extension confirmed a logged-in marketplace session.
    A low-confidence detection is not enough to dispatch against.
    """
    try:
        spec = get_platform(body.platform)
    except CrosslistError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_payload())

    if spec.mode != DispatchMode.EXTENSION:
        raise HTTPException(status_code=400, detail=f"{spec.name} connects with an access token")
    if body.confidence == "low":
        raise HTTPException(
            status_code=400,
            detail="Could not confirm you are logged in. Open the marketplace in this browser and try again.",
        )

    conn = await _get_or_create(session, user.id, spec.name)
    conn.is_active = True
    conn.has_credentials = True
    conn.verification_confidence = body.confidence
    conn.verified_at = utcnow()
    await session.commit()

    logger.info(f"Verified {spec.name} connection for user={user.id} confidence={body.confidence}")
    return ConnectionResponse.model_validate(conn)


@router.post("/token", response_model=ConnectionResponse)
async def store_token(body: TokenRequest, session: DbSession, user: User = Depends(get_current_user)):
    try:
        spec = get_platform(body.platform)
    except CrosslistError as e:
        return JSONResponse(status_code=e.status_code, content=e.to_payload())

    if spec.mode != DispatchMode.NATIVE:
        raise HTTPException(status_code=400, detail=f"{spec.name} is connected through the extension")

    conn = await _get_or_create(session, user.id, spec.name)
    conn.is_active = True
    conn.has_credentials = True
    conn.access_token = body.access_token
    conn.verified_at = utcnow()
    await session.commit()

    logger.info(f"Stored access token for {spec.name} user={user.id}")
    return ConnectionResponse.model_validate(conn)
