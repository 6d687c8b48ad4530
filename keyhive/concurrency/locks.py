"""Resource-level in-memory locks for concurrency control.

Used by the assignment lifecycle and the hive registry to serialize requests
that touch the same assignment, key, cell or fob.

Note: These locks only work within a single process. Across processes the
compare-and-swap updates and ``SELECT ... FOR UPDATE`` are what keep the
data consistent; the locks only keep SQLite from surfacing lock errors.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager

# Key: "<kind>:<id>" (e.g. "cell:cell-1a2b3c4d5e6f"), Value: asyncio.Lock
_resource_locks: dict[str, asyncio.Lock] = {}
_resource_locks_lock = asyncio.Lock()


def lock_key(kind: str, resource_id: str) -> str:
    return f"{kind}:{resource_id}"


async def get_resource_lock(key: str) -> asyncio.Lock:
    """Get or create the lock for one resource key."""
    async with _resource_locks_lock:
        if key not in _resource_locks:
            _resource_locks[key] = asyncio.Lock()
        return _resource_locks[key]


@asynccontextmanager
async def hold_locks(*keys: str | None) -> AsyncIterator[None]:
    """Acquire the locks for several resources.

    Keys are de-duplicated and taken in sorted order so two requests that
    need overlapping resources cannot deadlock. ``None`` entries are ignored,
    which lets callers pass optional resources directly.
    """
    async with AsyncExitStack() as stack:
        for key in sorted({k for k in keys if k}):
            lock = await get_resource_lock(key)
            await stack.enter_async_context(lock)
        yield


async def cleanup_resource_locks(keys: set[str]) -> None:
    """Drop locks for resources that will not be touched again."""
    async with _resource_locks_lock:
        for key in keys:
            _resource_locks.pop(key, None)


def get_lock_count() -> int:
    """Get current number of locks (for testing/metrics)."""
    return len(_resource_locks)
