from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection

# Fixed key for the scheduler leader lock (Postgres advisory locks take a bigint)
LEADER_LOCK_KEY = 73104729


async def try_advisory_lock(conn: AsyncConnection, key: int = LEADER_LOCK_KEY) -> bool:
    """
    Attempts to acquire a Postgres session-level advisory lock.
    Returns True if acquired (or already held by this connection), False otherwise.

    The lock lives as long as the connection, so callers keep the same
    connection open for as long as they want to stay leader.
    Other databases have no advisory locks; those deployments run a single
    instance, which is always the leader.
    """
    if conn.dialect.name != "postgresql":
        return True

    result = await conn.execute(
        text("SELECT pg_try_advisory_lock(:key)"),
        {"key": key}
    )
    # Don't leave the connection idle in transaction between ticks
    await conn.commit()
    return result.scalar() is True
