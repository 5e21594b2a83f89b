"""Test the keyed asynchronous cache."""

from __future__ import annotations

import asyncio

import pytest

from nbkernels.cache import AsyncCache


def test_concurrent_gets_share_a_task() -> None:
    """Requests for a key being computed wait for the same computation."""
    calls = 0

    async def compute() -> int:
        nonlocal calls
        calls += 1
        await asyncio.sleep(0.01)
        return 42

    async def main() -> None:
        cache: AsyncCache[str, int] = AsyncCache()
        first = cache.get("key", compute)
        second = cache.get("key", compute)
        assert first is second
        assert await asyncio.gather(first, second) == [42, 42]
        assert cache.peek("key") == 42
        assert "key" in cache

    asyncio.run(main())
    assert calls == 1


def test_failed_tasks_are_evicted() -> None:
    """A failed computation is retried on the next request."""
    attempts = 0

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise OSError("disk unavailable")
        return "ok"

    async def main() -> None:
        cache: AsyncCache[str, str] = AsyncCache()
        with pytest.raises(OSError):
            await cache.get("key", flaky)
        await asyncio.sleep(0)
        assert "key" not in cache
        assert await cache.get("key", flaky) == "ok"

    asyncio.run(main())
    assert attempts == 2


def test_invalidate() -> None:
    """Invalidated keys are computed again."""

    async def main() -> None:
        cache: AsyncCache[str, int] = AsyncCache()
        cache.set("a", 1)
        cache.set("b", 2)
        assert sorted(cache.keys()) == ["a", "b"]
        assert await cache.get("a", lambda: asyncio.sleep(0, 5)) == 1

        cache.invalidate("a")
        assert cache.peek("a") is None
        assert await cache.get("a", lambda: asyncio.sleep(0, 5)) == 5

        cache.invalidate_all()
        assert len(cache) == 0

    asyncio.run(main())


def test_peek_does_not_compute() -> None:
    """Peeking at a missing or pending key returns nothing."""

    async def main() -> None:
        cache: AsyncCache[str, int] = AsyncCache()
        assert cache.peek("missing") is None
        task = cache.get("slow", lambda: asyncio.sleep(0.01, 3))
        assert cache.peek("slow") is None
        await task
        assert cache.peek("slow") == 3

    asyncio.run(main())
