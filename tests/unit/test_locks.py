"""In-process resource locks."""

from __future__ import annotations

import asyncio

from keyhive.concurrency.locks import (
    cleanup_resource_locks,
    get_lock_count,
    get_resource_lock,
    hold_locks,
    lock_key,
)


async def test_same_key_returns_same_lock():
    key = lock_key("cell", "same-lock")
    assert await get_resource_lock(key) is await get_resource_lock(key)
    await cleanup_resource_locks({key})


async def test_hold_locks_ignores_none_and_duplicates():
    key = lock_key("fob", "dup")
    async with hold_locks(key, None, key):
        assert (await get_resource_lock(key)).locked()
    assert not (await get_resource_lock(key)).locked()
    await cleanup_resource_locks({key})


async def test_hold_locks_serializes_overlapping_sets():
    a, b = lock_key("cell", "ser-a"), lock_key("cell", "ser-b")
    order: list[str] = []

    async def worker(name: str, *keys: str) -> None:
        async with hold_locks(*keys):
            order.append(f"{name}:in")
            await asyncio.sleep(0.01)
            order.append(f"{name}:out")

    await asyncio.gather(worker("one", a, b), worker("two", b, a))

    assert order in (
        ["one:in", "one:out", "two:in", "two:out"],
        ["two:in", "two:out", "one:in", "one:out"],
    )
    await cleanup_resource_locks({a, b})


async def test_cleanup_drops_locks():
    key = lock_key("assignment", "cleanup")
    await get_resource_lock(key)
    before = get_lock_count()
    await cleanup_resource_locks({key, lock_key("assignment", "never-created")})
    assert get_lock_count() == before - 1
