import asyncio
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from crosslister.api.v1.metrics import LEADER_STATUS
from crosslister.db.session import build_sessionmaker, engine as default_engine
from crosslister.scheduler.ticker import run_leader_tasks, run_metrics_tasks
from crosslister.settings import settings
from crosslister.utils.locking import try_advisory_lock

logger = logging.getLogger(__name__)


class SchedulerService:
    def __init__(self, interval: Optional[float] = None, engine: AsyncEngine = default_engine):
        self.interval = interval if interval is not None else settings.SCHEDULER_INTERVAL_SECONDS
        self.engine = engine
        self.sessionmaker = build_sessionmaker(engine)
        self._running = False
        self._task = None
        self._is_leader = False
        # Holds the advisory lock; kept open across ticks
        self._lock_conn: Optional[AsyncConnection] = None

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    async def start(self):
        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info("Scheduler service started.")

    async def stop(self):
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        await self._release_lock_conn()
        self._set_leader(False)
        logger.info("Scheduler service stopped.")

    def _set_leader(self, value: bool):
        if value and not self._is_leader:
            logger.info("Acquired leadership. Starting maintenance.")
        elif not value and self._is_leader:
            logger.info("Lost leadership. Stopping maintenance.")
        self._is_leader = value
        LEADER_STATUS.set(1 if value else 0)

    async def _release_lock_conn(self):
        if self._lock_conn is not None:
            await self._lock_conn.close()
            self._lock_conn = None

    async def tick(self):
        if self._lock_conn is None:
            self._lock_conn = await self.engine.connect()
        self._set_leader(await try_advisory_lock(self._lock_conn))

        async with self.sessionmaker() as session:
            if self._is_leader:
                await run_leader_tasks(session)
            # Gauges on all instances so every /metrics is current
            await run_metrics_tasks(session)

    async def _loop(self):
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Error in scheduler ticker: {e}", exc_info=True)
                self._set_leader(False)
                # Drop the lock connection and reconnect next tick
                await self._release_lock_conn()

            await asyncio.sleep(self.interval)
