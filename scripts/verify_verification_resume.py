#!/usr/bin/env python3
import asyncio

import httpx

from crosslist_sdk import CrosslistClient, JobPoller, PollOutcome, VerificationRequired, WorkerClient, WorkerRunner
from _common import API_URL, seed_seller, wait_for_api


async def verify():
    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as admin:
        if not await wait_for_api(admin):
            return
        seller = await seed_seller(admin, "verify")

    seen = []

    async def captcha_once(job: dict):
        seen.append(job["job_id"])
        if len(seen) == 1:
            raise VerificationRequired("Solve the captcha in the Poshmark tab, then confirm.")
        return {"platform_listing_id": "PM-VERIFIED"}

    worker = WorkerClient(API_URL, seller["id"], seller["extension_token"])
    runner = WorkerRunner(worker, {"poshmark": captcha_once}, poll_interval=1.0)
    worker_task = asyncio.create_task(runner.run())
    await asyncio.sleep(1)

    async def confirm(message: str) -> bool:
        print(f"PROMPT: {message}")
        print("(auto-confirming)")
        return True

    client = CrosslistClient(API_URL, seller["api_key"], seller["id"])
    result = await JobPoller(client).crosslist(seller["listing_id"], "poshmark", confirm_verification=confirm)

    runner.stop()
    await worker_task
    await worker.close()
    await client.close()

    print(f"Worker saw jobs: {seen}")
    if result.outcome == PollOutcome.COMPLETED and len(set(seen)) == 2:
        print("SUCCESS: verification retry ran as a new job and completed.")
    else:
        print(f"FAILURE: outcome={result.outcome} retry_exhausted={result.retry_exhausted}")


if __name__ == "__main__":
    asyncio.run(verify())
