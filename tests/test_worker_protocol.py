from datetime import timedelta
from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from sqlalchemy import select

from crosslist_sdk import WorkerClient
from crosslister.commands.claim_job import claim_job
from crosslister.commands.transition_job import transition_job
from crosslister.db.models import CrosslistingJob, PlatformListing, User
from crosslister.domain.errors import InvalidJobStateError
from crosslister.domain.liveness import utcnow
from crosslister.domain.states import JobEvent, JobStatus

from tests.conftest import EXTENSION_TOKEN, USER_ID


@pytest_asyncio.fixture
async def worker(asgi_transport, user):
    client = WorkerClient("http://test", USER_ID, EXTENSION_TOKEN, version="1.4.0", transport=asgi_transport)
    yield client
    await client.close()


@pytest_asyncio.fixture
async def dispatch(api, auth_headers, worker, listing):
    """Connects the worker, then returns a callable that dispatches `listing`."""
    await worker.connect()

    async def _dispatch(platform="poshmark", **extra):
        body = {"listing_id": str(listing.id), "user_id": USER_ID, "platform": platform, **extra}
        resp = await api.post("/api/v1/listings/crosslist", json=body, headers=auth_headers)
        assert resp.status_code == 201, resp.text
        return UUID(resp.json()["job_id"])

    return _dispatch


async def _report(worker, job_id, body):
    return await worker._post(f"/api/v1/extension/jobs/{job_id}/report", body)


@pytest.mark.asyncio
async def test_connect_reports_queued_jobs(worker, sessionmaker):
    data = await worker.connect()
    assert data == {"connected": True, "queued_jobs": 0}

    async with sessionmaker() as s:
        u = await s.get(User, USER_ID)
        assert u.extension_connected is True
        assert u.extension_version == "1.4.0"
        assert u.extension_last_seen is not None


@pytest.mark.asyncio
async def test_disconnect_blocks_dispatch(api, auth_headers, worker, listing):
    await worker.connect()
    assert await worker.disconnect()

    body = {"listing_id": str(listing.id), "user_id": USER_ID, "platform": "poshmark"}
    resp = await api.post("/api/v1/listings/crosslist", json=body, headers=auth_headers)
    assert resp.status_code == 409
    assert resp.json()["error"] == "extension_not_connected"


@pytest.mark.asyncio
async def test_successful_post_records_platform_listing(dispatch, worker, fetch_job, job_events, sessionmaker):
    job_id = await dispatch()
    assert (await fetch_job(job_id)).status == JobStatus.QUEUED

    claimed = await worker.poll()
    assert claimed["job_id"] == str(job_id)
    assert claimed["platform"] == "poshmark"
    assert claimed["operation"] == "create"
    assert claimed["payload"]["kind"] == "poshmark"
    assert (await fetch_job(job_id)).status == JobStatus.PROCESSING

    assert await worker.report_success(job_id, "X123", "http://poshmark.test/listing/X123")

    job = await fetch_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.platform_listing_id == "X123"
    assert job.completed_at is not None

    async with sessionmaker() as s:
        record = await s.scalar(select(PlatformListing).where(PlatformListing.listing_id == job.listing_id))
    assert record.platform == "poshmark"
    assert record.platform_listing_id == "X123"
    assert record.platform_url == "http://poshmark.test/listing/X123"

    assert [e[0] for e in await job_events(job_id)] == ["created", "claimed", "completed"]


@pytest.mark.asyncio
async def test_error_report_fails_job(dispatch, worker, fetch_job):
    job_id = await dispatch()
    await worker.poll()

    assert await worker.report_error(job_id, "login required")

    job = await fetch_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "login required"


@pytest.mark.asyncio
async def test_verification_then_resume_creates_new_job(dispatch, worker, fetch_job):
    job_id = await dispatch()
    await worker.poll()

    assert await worker.report_verification_required(job_id, "Solve the captcha in the Poshmark tab")
    job = await fetch_job(job_id)
    assert job.status == JobStatus.PENDING_VERIFICATION
    assert job.error_message == "Solve the captcha in the Poshmark tab"

    new_id = await dispatch(resume_of=str(job_id))
    assert new_id != job_id
    assert (await fetch_job(new_id)).status == JobStatus.QUEUED
    assert (await fetch_job(job_id)).status == JobStatus.FAILED

    claimed = await worker.poll()
    assert claimed["job_id"] == str(new_id)


@pytest.mark.asyncio
async def test_progress_is_recorded_without_changing_status(dispatch, worker, fetch_job, job_events):
    job_id = await dispatch()
    await worker.poll()

    assert await worker.report_progress(job_id, step="photos", percent=40)

    assert (await fetch_job(job_id)).status == JobStatus.PROCESSING
    events = await job_events(job_id)
    assert events[-1] == ("progress", "processing", "processing")


@pytest.mark.asyncio
async def test_late_progress_does_not_block_resume(dispatch, worker, fetch_job, job_events):
    job_id = await dispatch()
    await worker.poll()
    await worker.report_verification_required(job_id, "Enter the code we texted you")

    resp = await _report(worker, job_id, {"outcome": "PROGRESS", "step": "submit", "percent": 90})
    assert resp.status_code == 200
    assert resp.json()["job_status"] == "pending_verification"

    paused = await fetch_job(job_id)
    assert paused.status == JobStatus.PENDING_VERIFICATION
    assert paused.error_message == "Enter the code we texted you"
    assert [e[0] for e in await job_events(job_id)] == [
        "created", "claimed", "verification_required", "progress",
    ]

    new_id = await dispatch(resume_of=str(job_id))
    assert (await fetch_job(new_id)).status == JobStatus.QUEUED
    assert (await fetch_job(job_id)).status == JobStatus.FAILED


@pytest.mark.asyncio
async def test_progress_on_unclaimed_job_is_conflict(dispatch, worker, fetch_job):
    job_id = await dispatch()

    resp = await _report(worker, job_id, {"outcome": "PROGRESS", "percent": 10})

    assert resp.status_code == 409
    assert (await fetch_job(job_id)).status == JobStatus.QUEUED
    assert await worker.poll() is not None


@pytest.mark.asyncio
async def test_success_while_pending_verification_passes_through_processing(dispatch, worker, fetch_job, job_events):
    job_id = await dispatch()
    await worker.poll()
    await worker.report_verification_required(job_id, "Confirm it's you")

    await worker.report_success(job_id, "X9")

    assert (await fetch_job(job_id)).status == JobStatus.COMPLETED
    transitions = [(e[1], e[2]) for e in await job_events(job_id)]
    assert transitions[-2:] == [("pending_verification", "processing"), ("processing", "completed")]


@pytest.mark.asyncio
async def test_report_on_terminal_job_is_ignored(dispatch, worker, fetch_job):
    job_id = await dispatch()
    await worker.poll()
    await worker.report_success(job_id, "X123")
    first = await fetch_job(job_id)

    resp = await _report(worker, job_id, {"outcome": "SUCCESS", "platform_listing_id": "X123"})
    assert resp.status_code == 200
    assert resp.json() == {"acknowledged": True, "ignored": True, "job_status": "completed"}

    resp = await _report(worker, job_id, {"outcome": "ERROR", "message": "late failure"})
    assert resp.json()["ignored"] is True

    again = await fetch_job(job_id)
    assert again.status == JobStatus.COMPLETED
    assert again.completed_at == first.completed_at
    assert again.error_message is None


@pytest.mark.asyncio
async def test_report_on_unclaimed_job_is_conflict(dispatch, worker, fetch_job):
    job_id = await dispatch()

    resp = await _report(worker, job_id, {"outcome": "SUCCESS", "platform_listing_id": "X1"})

    assert resp.status_code == 409
    assert (await fetch_job(job_id)).status == JobStatus.QUEUED


@pytest.mark.asyncio
async def test_success_for_create_needs_listing_id(dispatch, worker, fetch_job):
    job_id = await dispatch()
    await worker.poll()

    resp = await _report(worker, job_id, {"outcome": "SUCCESS"})

    assert resp.status_code == 422
    assert (await fetch_job(job_id)).status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_report_for_other_users_job_is_not_found(dispatch, worker, session, asgi_transport):
    job_id = await dispatch()
    session.add(User(id="user-2", email="other@example.com", extension_token="ext-token-2"))
    await session.commit()

    other = WorkerClient("http://test", "user-2", "ext-token-2", transport=asgi_transport)
    resp = await _report(other, job_id, {"outcome": "ERROR", "message": "nope"})
    await other.close()

    assert resp.status_code == 404

    resp = await _report(worker, uuid4(), {"outcome": "ERROR", "message": "nope"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_unknown_outcome_is_rejected(dispatch, worker):
    job_id = await dispatch()
    resp = await _report(worker, job_id, {"outcome": "MAYBE"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_requests_must_be_signed(api, asgi_transport, user):
    resp = await api.post("/api/v1/extension/poll", json={}, headers={"X-User-ID": USER_ID})
    assert resp.status_code == 401

    resp = await api.post(
        "/api/v1/extension/poll",
        json={},
        headers={"X-User-ID": USER_ID, "X-Worker-Signature": "0" * 64},
    )
    assert resp.status_code == 401

    forged = WorkerClient("http://test", USER_ID, "wrong-token", transport=asgi_transport)
    assert await forged.poll() is None
    await forged.close()

    resp = await api.post("/api/v1/extension/poll", json={}, headers={"X-User-ID": "ghost", "X-Worker-Signature": "x"})
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_only_one_poller_gets_the_job(dispatch, worker, asgi_transport):
    job_id = await dispatch()
    second = WorkerClient("http://test", USER_ID, EXTENSION_TOKEN, transport=asgi_transport)

    first_claim = await worker.poll()
    second_claim = await second.poll()
    await second.close()

    assert first_claim["job_id"] == str(job_id)
    assert second_claim is None


@pytest.mark.asyncio
async def test_claim_compare_and_swap_loses_to_earlier_writer(dispatch, sessionmaker):
    """A writer acting on a stale read of `queued` cannot claim a job someone else claimed."""
    job_id = await dispatch()

    async with sessionmaker() as stale, sessionmaker() as winner:
        seen = await stale.get(CrosslistingJob, job_id)
        assert seen.status == JobStatus.QUEUED

        await transition_job(winner, job_id, JobStatus.PROCESSING, JobEvent.CLAIMED, expected=[JobStatus.QUEUED])
        await winner.commit()

        with pytest.raises(InvalidJobStateError) as exc:
            await transition_job(stale, job_id, JobStatus.PROCESSING, JobEvent.CLAIMED, expected=[JobStatus.QUEUED])
        assert exc.value.current_status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_claim_takes_oldest_job_first(dispatch, worker, connect_platform):
    await connect_platform("depop")
    older = await dispatch("poshmark")
    newer = await dispatch("depop")

    assert (await worker.poll())["job_id"] == str(older)
    assert (await worker.poll())["job_id"] == str(newer)
    assert await worker.poll() is None


@pytest.mark.asyncio
async def test_claim_fails_jobs_for_unconnected_platforms(session, user, listing, fetch_job):
    """A credential platform without a connection is failed at claim time, and the next job is claimed."""
    unconnected = CrosslistingJob(user_id=USER_ID, listing_id=listing.id, platform="mercari", payload={"kind": "mercari"})
    session.add(unconnected)
    await session.commit()
    ready = CrosslistingJob(user_id=USER_ID, listing_id=listing.id, platform="poshmark", payload={"kind": "poshmark"})
    session.add(ready)
    await session.commit()

    claimed = await claim_job(session, USER_ID)
    await session.commit()

    assert claimed.id == ready.id
    failed = await fetch_job(unconnected.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "mercari account not connected. Please connect your account in Settings."


@pytest.mark.asyncio
async def test_claim_fails_jobs_whose_credentials_went_stale(session, user, listing, connect_platform, fetch_job, job_events):
    """Credentials fresh at dispatch but past the age limit by claim time fail the job."""
    await connect_platform("mercari", verified_ago=timedelta(hours=1))
    stale = CrosslistingJob(user_id=USER_ID, listing_id=listing.id, platform="mercari", payload={"kind": "mercari"})
    session.add(stale)
    await session.commit()

    claimed = await claim_job(session, USER_ID, now=utcnow() + timedelta(hours=24))
    await session.commit()

    assert claimed is None
    failed = await fetch_job(stale.id)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "Session expired. Please reconnect your mercari account in Settings."
    assert (await job_events(stale.id))[-1] == ("failed", "queued", "failed")


@pytest.mark.asyncio
async def test_claim_accepts_fresh_credentials(session, user, listing, connect_platform):
    await connect_platform("mercari", verified_ago=timedelta(hours=23))
    job = CrosslistingJob(user_id=USER_ID, listing_id=listing.id, platform="mercari", payload={"kind": "mercari"})
    session.add(job)
    await session.commit()

    claimed = await claim_job(session, USER_ID)
    await session.commit()

    assert claimed.id == job.id
    assert claimed.status == JobStatus.PROCESSING


@pytest.mark.asyncio
async def test_delete_job_success_removes_platform_listing(api, auth_headers, worker, session, listing, sessionmaker, fetch_job):
    await worker.connect()
    session.add(PlatformListing(listing_id=listing.id, user_id=USER_ID, platform="poshmark", platform_listing_id="P-5"))
    await session.commit()

    body = {"listing_id": str(listing.id), "user_id": USER_ID, "platform": "poshmark"}
    resp = await api.post("/api/v1/listings/delist", json=body, headers=auth_headers)
    job_id = UUID(resp.json()["job_id"])

    claimed = await worker.poll()
    assert claimed["operation"] == "delete"
    assert claimed["payload"]["platform_listing_id"] == "P-5"

    await worker.report_success(job_id)

    job = await fetch_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.platform_listing_id == "P-5"
    async with sessionmaker() as s:
        assert await s.scalar(select(PlatformListing).where(PlatformListing.listing_id == listing.id)) is None
