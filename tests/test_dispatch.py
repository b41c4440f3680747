from datetime import timedelta
from uuid import UUID, uuid4

import httpx
import pytest
from sqlalchemy.exc import IntegrityError

from crosslister.commands import dispatch_job as dispatch_module
from crosslister.commands.dispatch_job import dispatch_job
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob, PlatformListing
from crosslister.domain.errors import DuplicateJobError, InvalidResumeError, WorkerNotConnectedError
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobEvent, JobStatus
from crosslister.main import app
from crosslister.services.native_publisher import NativePublisher, get_native_publisher

from tests.conftest import USER_ID


def _body(listing, platform, **extra):
    return {"listing_id": str(listing.id), "user_id": USER_ID, "platform": platform, **extra}


@pytest.mark.asyncio
async def test_dispatch_without_worker_creates_no_job(api, auth_headers, listing, job_count):
    """No extension has ever connected: the caller gets an error and no job exists."""
    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"), headers=auth_headers)

    assert resp.status_code == 409
    body = resp.json()
    assert body["error"] == "extension_not_connected"
    assert "Extension not connected" in body["message"]
    assert body["requires_reconnect"] is False
    assert await job_count() == 0


@pytest.mark.asyncio
async def test_dispatch_with_stale_heartbeat_creates_no_job(session, user, listing, job_count):
    user.extension_connected = True
    user.extension_last_seen = utcnow() - timedelta(minutes=5)
    await session.commit()

    with pytest.raises(WorkerNotConnectedError):
        await dispatch_job(session, USER_ID, listing.id, "poshmark")
    await session.rollback()

    assert await job_count() == 0


@pytest.mark.asyncio
async def test_dispatch_just_inside_freshness_window(session, user, listing):
    now = utcnow()
    user.extension_connected = True
    user.extension_last_seen = now - timedelta(seconds=119)
    await session.commit()

    job = await dispatch_job(session, USER_ID, listing.id, "poshmark", now=now)
    assert job.status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_dispatch_creates_queued_job(api, auth_headers, live_worker, listing, fetch_job, job_events):
    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"), headers=auth_headers)

    assert resp.status_code == 201
    data = resp.json()
    assert data["status"] == "queued"

    job = await fetch_job(UUID(data["job_id"]))
    assert job.platform == "poshmark"
    assert job.operation == "create"
    assert job.payload["kind"] == "poshmark"
    assert job.payload["listing"]["title"] == "Vintage denim jacket"
    assert job.payload["listing"]["id"] == str(listing.id)
    assert await job_events(job.id) == [("created", None, "queued")]

    status = await api.get(f"/api/v1/listings/jobs/{job.id}", headers=auth_headers)
    assert status.status_code == 200
    assert status.json()["status"] == "queued"
    assert status.json()["completed_at"] is None


@pytest.mark.asyncio
async def test_dispatch_rejects_user_mismatch(api, auth_headers, live_worker, listing):
    body = _body(listing, "poshmark")
    body["user_id"] = "someone-else"
    resp = await api.post("/api/v1/listings/crosslist", json=body, headers=auth_headers)
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_dispatch_requires_api_key(api, listing):
    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_dispatch_unknown_platform(api, auth_headers, live_worker, listing):
    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "craigslist"), headers=auth_headers)
    assert resp.status_code == 400
    assert resp.json()["error"] == "unsupported_platform"


@pytest.mark.asyncio
async def test_dispatch_unknown_listing(api, auth_headers, live_worker):
    body = {"listing_id": str(uuid4()), "user_id": USER_ID, "platform": "poshmark"}
    resp = await api.post("/api/v1/listings/crosslist", json=body, headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["error"] == "listing_not_found"


@pytest.mark.asyncio
async def test_dispatch_platform_not_connected(api, auth_headers, live_worker, listing, job_count):
    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "mercari"), headers=auth_headers)

    assert resp.status_code == 400
    assert resp.json()["error"] == "platform_not_connected"
    assert resp.json()["requires_reconnect"] is True
    assert await job_count() == 0


@pytest.mark.asyncio
async def test_dispatch_stale_credentials_requires_reconnect(api, auth_headers, live_worker, listing, connect_platform, job_count):
    await connect_platform("mercari", verified_ago=timedelta(hours=25))

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "mercari"), headers=auth_headers)

    assert resp.status_code == 401
    body = resp.json()
    assert body["error"] == "reconnect_required"
    assert body["requires_reconnect"] is True
    assert await job_count() == 0


@pytest.mark.asyncio
async def test_dispatch_with_fresh_credentials_uses_platform_metadata(api, auth_headers, live_worker, listing, connect_platform, fetch_job):
    await connect_platform("mercari")

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "mercari"), headers=auth_headers)

    assert resp.status_code == 201
    job = await fetch_job(UUID(resp.json()["job_id"]))
    assert job.payload["kind"] == "mercari"
    assert job.payload["category_id"] == "123"
    assert job.payload["weight_oz"] == 4


@pytest.mark.asyncio
async def test_dispatch_rejects_invalid_platform_metadata(api, auth_headers, session, live_worker, listing, connect_platform, job_count):
    await connect_platform("mercari")
    listing.platform_metadata = {"mercari": {"weight_oz": 20}}
    await session.commit()

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "mercari"), headers=auth_headers)

    assert resp.status_code == 422
    assert resp.json()["error"] == "invalid_payload"
    assert await job_count() == 0


@pytest.mark.asyncio
async def test_second_dispatch_while_active_is_rejected(api, auth_headers, live_worker, listing, job_count):
    first = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"), headers=auth_headers)
    assert first.status_code == 201

    second = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"), headers=auth_headers)
    assert second.status_code == 409
    assert second.json()["error"] == "duplicate_job"
    assert await job_count() == 1


@pytest.mark.asyncio
async def test_dispatch_to_platform_already_listed(api, auth_headers, session, live_worker, listing):
    session.add(PlatformListing(
        listing_id=listing.id,
        user_id=USER_ID,
        platform="poshmark",
        platform_listing_id="P-1",
    ))
    await session.commit()

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "poshmark"), headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "already_listed"


@pytest.mark.asyncio
async def test_active_job_index_blocks_concurrent_insert(session, user, listing):
    """The partial unique index backs up the dispatcher's pre-check."""
    listing_id = listing.id
    session.add(CrosslistingJob(user_id=USER_ID, listing_id=listing_id, platform="poshmark"))
    await session.commit()

    session.add(CrosslistingJob(user_id=USER_ID, listing_id=listing_id, platform="poshmark"))
    with pytest.raises(IntegrityError):
        await session.commit()
    await session.rollback()

    # Finished jobs do not count
    session.add(CrosslistingJob(user_id=USER_ID, listing_id=listing_id, platform="depop", status=JobStatus.FAILED))
    session.add(CrosslistingJob(user_id=USER_ID, listing_id=listing_id, platform="depop"))
    await session.commit()


@pytest.mark.asyncio
async def test_concurrent_dispatch_loser_gets_duplicate_error(sessionmaker, live_worker, listing, job_count, monkeypatch):
    """Two dispatches race past the pre-check; the insert that loses becomes a 409."""
    listing_id = listing.id

    async with sessionmaker() as first:
        winner = await dispatch_job(first, USER_ID, listing_id, "poshmark")
        await first.commit()

    async def missed_by_stale_read(session, listing_id, platform):
        return None

    monkeypatch.setattr(dispatch_module, "_find_active_job", missed_by_stale_read)

    async with sessionmaker() as second:
        with pytest.raises(DuplicateJobError) as exc:
            await dispatch_job(second, USER_ID, listing_id, "poshmark")

    assert exc.value.status_code == 409
    assert exc.value.error == "duplicate_job"
    assert await job_count() == 1

    async with sessionmaker() as s:
        survivor = await s.get(CrosslistingJob, winner.id)
        assert survivor.status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_resume_supersedes_blocked_job(session, live_worker, listing, fetch_job, job_events):
    first = await dispatch_job(session, USER_ID, listing.id, "poshmark")
    await transition_job(session, first.id, JobStatus.PROCESSING, JobEvent.CLAIMED)
    await transition_job(session, first.id, JobStatus.PENDING_VERIFICATION, JobEvent.VERIFICATION_REQUIRED)
    await session.commit()

    second = await dispatch_job(session, USER_ID, listing.id, "poshmark", resume_of=first.id)
    await session.commit()

    assert second.id != first.id
    assert second.status == JobStatus.QUEUED
    assert second.resumed_from_job_id == first.id

    old = await fetch_job(first.id)
    assert old.status == JobStatus.FAILED
    assert old.error_message == "Superseded by a retry after verification"
    assert (await job_events(first.id))[-1] == ("superseded", "pending_verification", "failed")


@pytest.mark.asyncio
async def test_resume_of_job_not_waiting_on_verification(session, live_worker, listing):
    first = await dispatch_job(session, USER_ID, listing.id, "poshmark")
    await session.commit()

    with pytest.raises(InvalidResumeError):
        await dispatch_job(session, USER_ID, listing.id, "poshmark", resume_of=first.id)


@pytest.mark.asyncio
async def test_delist_requires_platform_listing(api, auth_headers, live_worker, listing):
    resp = await api.post("/api/v1/listings/delist", json=_body(listing, "poshmark"), headers=auth_headers)
    assert resp.status_code == 404
    assert resp.json()["error"] == "not_listed"


@pytest.mark.asyncio
async def test_delist_queues_delete_job(api, auth_headers, session, live_worker, listing, fetch_job):
    session.add(PlatformListing(
        listing_id=listing.id,
        user_id=USER_ID,
        platform="poshmark",
        platform_listing_id="P-77",
    ))
    await session.commit()

    resp = await api.post("/api/v1/listings/delist", json=_body(listing, "poshmark"), headers=auth_headers)

    assert resp.status_code == 201
    job = await fetch_job(UUID(resp.json()["job_id"]))
    assert job.operation == "delete"
    assert job.payload == {
        "kind": "delist",
        "platform": "poshmark",
        "platform_listing_id": "P-77",
        "reason": "user_requested",
    }


def _publisher(handler) -> NativePublisher:
    return NativePublisher("https://marketplace.test/v1", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_native_dispatch_completes_inline(api, auth_headers, listing, connect_platform, fetch_job):
    """Native platforms do not need the extension; the job finishes within the request."""
    await connect_platform("ebay", access_token="oauth-token")
    seen = {}

    def handler(request: httpx.Request):
        seen["auth"] = request.headers["Authorization"]
        return httpx.Response(200, json={"listing_id": "E-42", "url": "https://ebay.test/itm/E-42"})

    app.dependency_overrides[get_native_publisher] = lambda: _publisher(handler)

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "ebay"), headers=auth_headers)

    assert resp.status_code == 201
    assert resp.json()["status"] == "completed"
    assert seen["auth"] == "Bearer oauth-token"

    job = await fetch_job(UUID(resp.json()["job_id"]))
    assert job.platform_listing_id == "E-42"
    assert job.completed_at is not None

    platforms = await api.get(f"/api/v1/listings/{listing.id}/platforms", headers=auth_headers)
    assert [p["platform_listing_id"] for p in platforms.json()] == ["E-42"]


@pytest.mark.asyncio
async def test_native_dispatch_failure_fails_job(api, auth_headers, listing, connect_platform, fetch_job):
    await connect_platform("ebay", access_token="oauth-token")
    app.dependency_overrides[get_native_publisher] = lambda: _publisher(
        lambda request: httpx.Response(400, json={"errors": ["bad category"]})
    )

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "ebay"), headers=auth_headers)

    assert resp.status_code == 201
    assert resp.json()["status"] == "failed"
    job = await fetch_job(UUID(resp.json()["job_id"]))
    assert "HTTP 400" in job.error_message


@pytest.mark.asyncio
async def test_native_dispatch_without_token_requires_reconnect(api, auth_headers, listing, connect_platform, job_count):
    await connect_platform("ebay", access_token=None)

    resp = await api.post("/api/v1/listings/crosslist", json=_body(listing, "ebay"), headers=auth_headers)

    assert resp.status_code == 401
    assert resp.json()["requires_reconnect"] is True
    assert await job_count() == 0
