#!/usr/bin/env python3
"""
Starts three scheduler instances against the configured Postgres database and
checks that exactly one of them holds the sweep leadership, and that another
instance takes over once the leader stops.

SQLite has no advisory locks, so every instance would lead there.
"""
import asyncio
import logging
import sys
from typing import Optional

from crosslister.db.session import build_engine
from crosslister.scheduler.service import SchedulerService
from crosslister.settings import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
logger = logging.getLogger("verify_leader_election")

INSTANCES = 3
TICK_SECONDS = 0.5


async def wait_for_single_leader(services: list[SchedulerService], timeout: float = 10.0) -> Optional[SchedulerService]:
    deadline = asyncio.get_running_loop().time() + timeout
    while asyncio.get_running_loop().time() < deadline:
        leaders = [s for s in services if s.is_leader]
        if len(leaders) > 1:
            logger.error("%d instances claim leadership at once", len(leaders))
            return None
        if leaders:
            return leaders[0]
        await asyncio.sleep(TICK_SECONDS)
    logger.error("No instance acquired leadership within %.0fs", timeout)
    return None


async def verify_leader_election() -> bool:
    if not settings.SQLALCHEMY_DATABASE_URI.startswith("postgresql"):
        logger.error("Leader election needs Postgres, got %s", settings.SQLALCHEMY_DATABASE_URI)
        return False

    # One engine per instance so each holds its own database session
    engines = [build_engine(settings.SQLALCHEMY_DATABASE_URI) for _ in range(INSTANCES)]
    services = [SchedulerService(interval=TICK_SECONDS, engine=e) for e in engines]
    for service in services:
        await service.start()

    try:
        leader = await wait_for_single_leader(services)
        if leader is None:
            return False
        first = services.index(leader)
        logger.info(f"Instance {first} leads, stopping it")

        await leader.stop()
        remaining = [s for i, s in enumerate(services) if i != first]

        successor = await wait_for_single_leader(remaining)
        if successor is None:
            return False
        logger.info(f"Instance {services.index(successor)} took over")
        return True
    finally:
        for service in services:
            await service.stop()
        for engine in engines:
            await engine.dispose()


if __name__ == "__main__":
    ok = asyncio.run(verify_leader_election())
    print("SUCCESS: one leader at a time, failover works" if ok else "FAILURE: leader election check failed")
    sys.exit(0 if ok else 1)
