"""
Per-user serialization of ledger jobs (imports, duplicate cleanup).

Both jobs read then write sales_records metadata and wallet assignments
without optimistic locking, so two runs for the same user must not overlap.
This only covers one process; multi-instance deployments need an external
lock or a single-writer queue in front of these jobs.
"""
import asyncio
from contextlib import asynccontextmanager

_locks: dict[str, asyncio.Lock] = {}


def _lock_for(user_id: str) -> asyncio.Lock:
    lock = _locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _locks[user_id] = lock
    return lock


@asynccontextmanager
async def user_job_lock(user_id: str):
    async with _lock_for(user_id):
        yield
