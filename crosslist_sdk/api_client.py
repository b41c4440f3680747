import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)


class DispatchRejected(Exception):
    """The backend refused to create the job (extension offline, reconnect needed, ...)."""

    def __init__(self, error: str, message: str, requires_reconnect: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.error = error
        self.message = message
        self.requires_reconnect = requires_reconnect
        self.status_code = status_code


class CrosslistClient:
    """Caller-side client: dispatch jobs and read their status."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        user_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            transport=transport,
            headers={"X-API-Key": api_key},
        )

    @staticmethod
    def _raise_rejected(resp: httpx.Response):
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}
        raise DispatchRejected(
            error=data.get("error", "http_error"),
            message=data.get("message") or str(data.get("detail") or resp.text),
            requires_reconnect=bool(data.get("requires_reconnect", False)),
            status_code=resp.status_code,
        )

    async def dispatch(self, listing_id: UUID, platform: str, resume_of: Optional[UUID] = None) -> Dict[str, Any]:
        """
        Creates a crosslisting job. Returns {job_id, status}.
        Raises DispatchRejected when a precondition fails.
        """
        body: Dict[str, Any] = {"listing_id": str(listing_id), "user_id": self.user_id, "platform": platform}
        if resume_of:
            body["resume_of"] = str(resume_of)

        resp = await self.client.post("/api/v1/listings/crosslist", json=body)
        if resp.is_error:
            self._raise_rejected(resp)
        return resp.json()

    async def delist(self, listing_id: UUID, platform: str) -> Dict[str, Any]:
        body = {"listing_id": str(listing_id), "user_id": self.user_id, "platform": platform}
        resp = await self.client.post("/api/v1/listings/delist", json=body)
        if resp.is_error:
            self._raise_rejected(resp)
        return resp.json()

    async def get_status(self, job_id: UUID) -> Dict[str, Any]:
        """Raises httpx.HTTPError on transport failures and non-2xx responses."""
        resp = await self.client.get(f"/api/v1/listings/jobs/{job_id}")
        resp.raise_for_status()
        return resp.json()

    async def close(self):
        await self.client.aclose()
