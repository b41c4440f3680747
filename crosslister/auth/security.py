import hmac
import hashlib
import logging
from typing import Optional

from fastapi import Security, HTTPException, Request, Header
from fastapi.security import APIKeyHeader
from sqlalchemy import select

from crosslister.api.deps import DbSession
from crosslister.db.models import User
from crosslister.settings import settings

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)
ADMIN_KEY_HEADER = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def get_current_user(
    session: DbSession,
    api_key: Optional[str] = Security(API_KEY_HEADER)
) -> User:
    """Caller-facing auth: the seller's API key."""
    if not api_key:
        raise HTTPException(status_code=403, detail="Missing API Key")

    stmt = select(User).where(User.api_key == api_key)
    user = await session.scalar(stmt)

    if not user:
        raise HTTPException(status_code=403, detail="Invalid API Key")

    return user


async def require_admin(admin_key: Optional[str] = Security(ADMIN_KEY_HEADER)) -> None:
    if settings.ADMIN_API_KEY is None:
        return
    if not admin_key or not hmac.compare_digest(admin_key, settings.ADMIN_API_KEY):
        raise HTTPException(status_code=403, detail="Invalid Admin Key")


def sign_body(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class SignatureVerifier:
    """
    Worker-facing auth.

    The extension has no session with the backend, only the per-user
    extension token it was handed when it connected. Every request body is
    signed with HMAC-SHA256 keyed by that token; the user is named in
    X-User-ID so we know which token to check against.
    """

    async def __call__(
        self,
        request: Request,
        session: DbSession,
        x_signature: Optional[str] = Header(default=None, alias="X-Worker-Signature"),
    ) -> User:
        if not x_signature:
            raise HTTPException(status_code=401, detail="Missing Signature")

        user_id = request.headers.get("X-User-ID")
        if not user_id:
            raise HTTPException(status_code=400, detail="Missing X-User-ID")

        user = await session.get(User, user_id)
        if not user or not user.extension_token:
            raise HTTPException(status_code=403, detail="User not found or extension not registered")

        body = await request.body()
        computed = sign_body(user.extension_token, body)

        if not hmac.compare_digest(computed, x_signature):
            logger.info(f"Rejected worker request with bad signature for user={user_id}")
            raise HTTPException(status_code=401, detail="Invalid Signature")

        return user
