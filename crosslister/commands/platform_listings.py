from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from crosslister.db.models import CrosslistingJob, PlatformListing


async def upsert_platform_listing(
    session: AsyncSession,
    job: CrosslistingJob,
    platform_listing_id: str,
    platform_url: Optional[str],
    now: datetime,
) -> PlatformListing:
    """Records that the job's listing is live on its platform (one row per listing/platform)."""
    record = await session.scalar(
        select(PlatformListing).where(
            PlatformListing.listing_id == job.listing_id,
            PlatformListing.platform == job.platform,
        )
    )
    if record is None:
        record = PlatformListing(
            listing_id=job.listing_id,
            user_id=job.user_id,
            platform=job.platform,
            created_at=now,
        )
        session.add(record)

    record.platform_listing_id = platform_listing_id
    record.platform_url = platform_url
    record.status = "active"
    record.last_synced_at = now
    await session.flush()
    return record


async def remove_platform_listing(session: AsyncSession, job: CrosslistingJob) -> int:
    res = await session.execute(
        delete(PlatformListing).where(
            PlatformListing.listing_id == job.listing_id,
            PlatformListing.platform == job.platform,
        )
    )
    return res.rowcount
