import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy.exc import DBAPIError, OperationalError

from crosslister.api.v1.admin import router as admin_router
from crosslister.api.v1.connections import router as connections_router
from crosslister.api.v1.extension import router as extension_router
from crosslister.api.v1.listings import router as listings_router
from crosslister.api.v1.metrics import router as metrics_router
from crosslister.auth.security import require_admin
from crosslister.db.session import create_tables
from crosslister.scheduler.service import SchedulerService
from crosslister.services.native_publisher import get_native_publisher
from crosslister.settings import settings

logger = logging.getLogger("uvicorn")


async def _bootstrap_tables(retries: int = 10, delay: float = 2.0):
    # Fresh containers often start before the database accepts connections
    for i in range(retries):
        try:
            await create_tables()
            logger.info("Bootstrap: tables ready.")
            return
        except (OperationalError, DBAPIError, OSError) as e:
            logger.warning(f"Bootstrap: database not ready ({e}), retrying in {delay}s... ({i+1}/{retries})")
            await asyncio.sleep(delay)
    raise RuntimeError("Database did not become available during startup")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    if settings.AUTO_CREATE_TABLES:
        await _bootstrap_tables()

    scheduler = SchedulerService()
    await scheduler.start()

    yield

    # Shutdown
    await scheduler.stop()
    await get_native_publisher().close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    lifespan=lifespan
)

app.include_router(listings_router, prefix="/api/v1/listings", tags=["listings"])
app.include_router(connections_router, prefix="/api/v1/connections", tags=["connections"])
app.include_router(extension_router, prefix="/api/v1/extension", tags=["extension"])
app.include_router(admin_router, prefix="/api/v1/admin", tags=["admin"], dependencies=[Depends(require_admin)])
app.include_router(metrics_router, tags=["metrics"])


@app.get("/health")
async def health():
    return {"status": "ok"}
