import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional
from uuid import UUID

import httpx

logger = logging.getLogger(__name__)


class WorkerClient:
    """
    Signed client for the extension side of the job protocol.

    Every request body is signed with HMAC-SHA256 keyed by the user's
    extension token. poll() never raises on transport failures. Report calls
    return False only when resending the report could still help.
    """

    def __init__(
        self,
        base_url: str,
        user_id: str,
        extension_token: str,
        version: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.extension_token = extension_token
        self.version = version
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    @staticmethod
    def _serialize_body(json_body: Dict[str, Any]) -> bytes:
        # Stable encoding keeps signatures deterministic and payloads compact.
        return json.dumps(json_body, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _build_headers(self, body: bytes) -> Dict[str, str]:
        signature = hmac.new(
            self.extension_token.encode("utf-8"),
            body,
            hashlib.sha256,
        ).hexdigest()
        return {
            "X-User-ID": self.user_id,
            "X-Worker-Signature": signature,
            "Content-Type": "application/json",
        }

    async def _post(self, path: str, json_body: Dict[str, Any]) -> httpx.Response:
        content = self._serialize_body(json_body)
        return await self.client.post(path, content=content, headers=self._build_headers(content))

    async def connect(self) -> Optional[Dict[str, Any]]:
        try:
            resp = await self._post("/api/v1/extension/connect", {"version": self.version})
            resp.raise_for_status()
            return resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Connect failed for user=%s: %s", self.user_id, e)
            return None

    async def disconnect(self) -> bool:
        try:
            resp = await self._post("/api/v1/extension/disconnect", {})
            resp.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.warning("Disconnect failed for user=%s: %s", self.user_id, e)
            return False

    async def poll(self) -> Optional[Dict[str, Any]]:
        """
        Claims the next job. Returns {job_id, platform, operation, payload} or None.
        """
        try:
            resp = await self._post("/api/v1/extension/poll", {"version": self.version})
            resp.raise_for_status()
            data = resp.json()
            return data.get("job")
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            log_fn = logger.info if status_code in (401, 403, 422) else logger.warning
            log_fn("Poll rejected for user=%s status=%s", self.user_id, status_code)
            return None
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Poll failed for user=%s: %s", self.user_id, e)
            return None

    async def _report(self, job_id: UUID, body: Dict[str, Any]) -> bool:
        try:
            resp = await self._post(f"/api/v1/extension/jobs/{job_id}/report", body)
            resp.raise_for_status()
            data = resp.json()
            if data.get("ignored"):
                logger.info("Report %s for job %s ignored (job already %s)", body["outcome"], job_id, data.get("job_status"))
            return True
        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            # The job is gone or moved on; retrying will not help
            if status_code in (404, 409):
                logger.warning("Report %s for job %s rejected: status=%s", body["outcome"], job_id, status_code)
                return True
            logger.warning("Report %s for job %s failed: status=%s", body["outcome"], job_id, status_code)
            return False
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Report %s for job %s failed: %s", body["outcome"], job_id, e)
            return False

    async def report_success(self, job_id: UUID, platform_listing_id: Optional[str] = None, platform_url: Optional[str] = None) -> bool:
        return await self._report(job_id, {
            "outcome": "SUCCESS",
            "platform_listing_id": platform_listing_id,
            "platform_url": platform_url,
        })

    async def report_error(self, job_id: UUID, message: str) -> bool:
        return await self._report(job_id, {"outcome": "ERROR", "message": message})

    async def report_progress(self, job_id: UUID, step: Optional[str] = None, percent: Optional[int] = None) -> bool:
        return await self._report(job_id, {"outcome": "PROGRESS", "step": step, "percent": percent})

    async def report_verification_required(self, job_id: UUID, message: str) -> bool:
        return await self._report(job_id, {"outcome": "VERIFICATION_REQUIRED", "message": message})

    async def close(self):
        await self.client.aclose()
