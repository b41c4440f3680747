"""Pytest configuration and fixtures."""

import os
from datetime import timedelta
from decimal import Decimal

# Keep the module-level engine off Postgres; each test gets its own SQLite file below
os.environ.setdefault("SQLALCHEMY_DATABASE_URI", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTO_CREATE_TABLES", "false")

import httpx
import pytest
import pytest_asyncio
from sqlalchemy import func, select

from crosslister.db.models import CrosslistingJob, JobEventLog, Listing, PlatformConnection, User
from crosslister.db.session import build_engine, build_sessionmaker, create_tables, get_db_session
from crosslister.domain.liveness import utcnow
from crosslister.main import app

USER_ID = "user-1"
API_KEY = "api-key-1"
EXTENSION_TOKEN = "ext-token-1"


@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'crosslister.db'}")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def sessionmaker(engine):
    return build_sessionmaker(engine)


@pytest_asyncio.fixture
async def session(sessionmaker):
    async with sessionmaker() as s:
        yield s


@pytest_asyncio.fixture
async def api(sessionmaker):
    """The FastAPI app, in process, bound to the test database."""

    async def override_session():
        async with sessionmaker() as s:
            yield s

    app.dependency_overrides[get_db_session] = override_session
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def asgi_transport(api):
    # Shares the dependency overrides installed by `api`
    return httpx.ASGITransport(app=app)


@pytest_asyncio.fixture
async def user(session):
    u = User(
        id=USER_ID,
        email="seller@example.com",
        api_key=API_KEY,
        extension_token=EXTENSION_TOKEN,
    )
    session.add(u)
    await session.commit()
    return u


@pytest_asyncio.fixture
async def live_worker(session, user):
    """Marks the user's extension as connected and recently seen."""
    user.extension_connected = True
    user.extension_last_seen = utcnow()
    await session.commit()
    return user


@pytest_asyncio.fixture
async def listing(session, user):
    item = Listing(
        user_id=user.id,
        title="Vintage denim jacket",
        description="Barely worn",
        price=Decimal("45.00"),
        condition="like_new",
        brand="Levi's",
        size="M",
        photo_urls=["https://cdn.example.com/p/1.jpg"],
        platform_metadata={"mercari": {"category_id": "123", "weight_lb": 1, "weight_oz": 4}},
    )
    session.add(item)
    await session.commit()
    return item


@pytest.fixture
def connect_platform(session, user):
    async def _connect(platform, access_token=None, verified_ago=timedelta(minutes=5), has_credentials=True):
        conn = PlatformConnection(
            user_id=user.id,
            platform=platform,
            is_active=True,
            has_credentials=has_credentials,
            access_token=access_token,
            verified_at=utcnow() - verified_ago,
        )
        session.add(conn)
        await session.commit()
        return conn

    return _connect


@pytest.fixture
def fetch_job(sessionmaker):
    """Reads a job through a fresh session, so the test sees what was committed."""
    async def _fetch(job_id):
        async with sessionmaker() as s:
            return await s.get(CrosslistingJob, job_id)

    return _fetch


@pytest.fixture
def job_count(sessionmaker):
    async def _count():
        async with sessionmaker() as s:
            return await s.scalar(select(func.count()).select_from(CrosslistingJob))

    return _count


@pytest.fixture
def job_events(sessionmaker):
    async def _events(job_id):
        async with sessionmaker() as s:
            rows = await s.scalars(
                select(JobEventLog).where(JobEventLog.job_id == job_id).order_by(JobEventLog.id)
            )
            return [(e.event_type, e.from_status, e.to_status) for e in rows.all()]

    return _events


@pytest.fixture
def auth_headers():
    return {"X-API-Key": API_KEY}
