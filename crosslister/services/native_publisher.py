import logging
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from crosslister.domain.errors import PublishError
from crosslister.settings import settings

logger = logging.getLogger(__name__)


@dataclass
class PublishResult:
    platform_listing_id: str
    platform_url: Optional[str] = None


class NativePublisher:
    """
    Publishes to a marketplace that exposes an OAuth-backed API.

    The field mapping and offer flow live behind the remote endpoint; from the
    job lifecycle's point of view this is one opaque call that either returns
    the marketplace listing id or raises PublishError.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def publish(self, payload: dict[str, Any], access_token: str) -> PublishResult:
        try:
            resp = await self.client.post(
                "/listings",
                json=payload,
                headers={"Authorization": f"Bearer {access_token}"},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as e:
            logger.warning("Native publish rejected: status=%s body=%s", e.response.status_code, e.response.text[:500])
            raise PublishError(f"Marketplace rejected the listing (HTTP {e.response.status_code})") from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("Native publish failed: %s", e)
            raise PublishError(f"Marketplace publish failed: {e}") from e

        listing_id = data.get("listing_id")
        if not listing_id:
            raise PublishError("Marketplace response did not include a listing id")
        return PublishResult(platform_listing_id=str(listing_id), platform_url=data.get("url"))

    async def close(self):
        await self.client.aclose()


_publisher: Optional[NativePublisher] = None


def get_native_publisher() -> NativePublisher:
    global _publisher
    if _publisher is None:
        _publisher = NativePublisher(settings.NATIVE_PUBLISH_URL, timeout=settings.NATIVE_PUBLISH_TIMEOUT_SECONDS)
    return _publisher
