#!/usr/bin/env python3
import asyncio

import httpx

from crosslist_sdk import CrosslistClient, JobPoller, PollOutcome, WorkerClient, WorkerRunner
from _common import API_URL, seed_seller, wait_for_api


async def post_to_poshmark(job: dict):
    print(f"Posting listing {job['payload']['listing']['title']!r} to {job['platform']}...")
    await asyncio.sleep(0.5)  # simulate work
    return {"platform_listing_id": f"PM-{job['job_id'][:8]}", "platform_url": "https://poshmark.com/listing/demo"}


async def verify():
    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as admin:
        if not await wait_for_api(admin):
            return
        seller = await seed_seller(admin, "e2e")

    # 1. Worker comes online first, otherwise dispatch is refused
    worker = WorkerClient(API_URL, seller["id"], seller["extension_token"], version="e2e")
    runner = WorkerRunner(worker, {"poshmark": post_to_poshmark}, poll_interval=1.0)
    worker_task = asyncio.create_task(runner.run())
    await asyncio.sleep(1)

    # 2. Dispatch and follow the job
    client = CrosslistClient(API_URL, seller["api_key"], seller["id"])
    poller = JobPoller(client)
    print("Dispatching crosslist job...")
    result = await poller.crosslist(seller["listing_id"], "poshmark")

    runner.stop()
    await worker_task
    await worker.close()

    print(f"Job {result.job_id}: {result.outcome} after {result.attempts} reads")
    if result.outcome == PollOutcome.COMPLETED:
        print(f"SUCCESS: listed as {result.status['platform_listing_id']}")
    else:
        print(f"FAILURE: {result.message}")
    await client.close()


if __name__ == "__main__":
    asyncio.run(verify())
