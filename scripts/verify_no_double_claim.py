#!/usr/bin/env python3
import asyncio

import httpx

from crosslist_sdk import CrosslistClient, WorkerClient
from _common import API_URL, seed_seller, wait_for_api


async def attempt_claim(seller: dict, n: int):
    client = WorkerClient(API_URL, seller["id"], seller["extension_token"], version=f"racer-{n}")
    try:
        job = await client.poll()
        return (n, job) if job else None
    finally:
        await client.close()


async def verify_no_double_claim():
    async with httpx.AsyncClient(base_url=API_URL, timeout=30.0) as admin:
        if not await wait_for_api(admin):
            return
        seller = await seed_seller(admin, "race")

    # 1. Create 1 job
    worker = WorkerClient(API_URL, seller["id"], seller["extension_token"])
    await worker.connect()
    client = CrosslistClient(API_URL, seller["api_key"], seller["id"])
    created = await client.dispatch(seller["listing_id"], "poshmark")
    job_id = created["job_id"]
    print(f"1. Job created: {job_id}")

    # 2. Spawn 20 concurrent pollers for the same user
    print("2. Spawning 20 concurrent claim attempts...")
    results = await asyncio.gather(*(attempt_claim(seller, i) for i in range(20)))

    # 3. Analyze results
    claims = [r for r in results if r is not None]
    print(f"3. Results: {len(claims)} successful claims.")

    if len(claims) == 1:
        n, job = claims[0]
        if job["job_id"] != job_id:
            print(f"FAILURE: Poller claimed WRONG job: {job['job_id']}")
        else:
            print(f"SUCCESS: Exactly one poller claimed the job (racer-{n}).")
            await worker.report_success(job_id, "RACE-1")
    elif len(claims) == 0:
        print("FAILURE: No one claimed the job (unexpected).")
    else:
        print(f"FAILURE: {len(claims)} pollers claimed the job! Double claim detected.")

    await worker.close()
    await client.close()


if __name__ == "__main__":
    asyncio.run(verify_no_double_claim())
