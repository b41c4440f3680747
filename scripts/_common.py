import asyncio
import uuid

import httpx

API_URL = "http://localhost:8000"


async def wait_for_api(client: httpx.AsyncClient, attempts: int = 30) -> bool:
    print("Waiting for API to be ready...")
    for _ in range(attempts):
        try:
            resp = await client.get("/health")
            if resp.status_code == 200:
                print("API is ready!")
                return True
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1)
    print("API failed to become ready.")
    return False


async def seed_seller(client: httpx.AsyncClient, prefix: str) -> dict:
    """Creates a throwaway user and listing through the admin API."""
    suffix = uuid.uuid4().hex[:8]
    seller = {
        "id": f"{prefix}-{suffix}",
        "email": f"{prefix}-{suffix}@example.com",
        "api_key": f"key-{suffix}",
        "extension_token": f"ext-{suffix}",
    }
    resp = await client.post("/api/v1/admin/users", json=seller)
    resp.raise_for_status()

    resp = await client.post("/api/v1/admin/listings", json={
        "user_id": seller["id"],
        "title": "Verification listing",
        "price": "25.00",
        "condition": "good",
    })
    resp.raise_for_status()
    seller["listing_id"] = resp.json()["id"]
    return seller
