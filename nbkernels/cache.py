"""Keyed caches for asynchronous results."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine
    from typing import Any

__all__ = [
    "AsyncCache",
]

log = logging.getLogger(__name__)

_T = TypeVar("_T")
_U = TypeVar("_U")


class AsyncCache(Generic[_T, _U]):
    """A cache of asynchronous results, keyed by arbitrary hashable values.

    The task computing a value is stored rather than the value itself, so callers
    requesting a key which is still being computed await the same task. Tasks
    which fail are evicted so the next request tries again.
    """

    def __init__(self) -> None:
        """Create an empty cache."""
        self._tasks: dict[_T, asyncio.Task[_U]] = {}

    def get(
        self, key: _T, getter_func: Callable[[], Coroutine[Any, Any, _U]]
    ) -> asyncio.Task[_U]:
        """Return the task for a key, creating it if needed.

        Args:
            key: The cache key
            getter_func: Called to create a coroutine computing the value when the key
                is missing

        Returns:
            A task resolving to the cached value

        """
        task = self._tasks.get(key)
        if task is None or (task.done() and not task.cancelled() and task.exception()):
            task = asyncio.ensure_future(getter_func())
            self._tasks[key] = task
            task.add_done_callback(lambda t: self._evict_failed(key, t))
        return task

    def _evict_failed(self, key: _T, task: asyncio.Task[_U]) -> None:
        if (task.cancelled() or task.exception()) and self._tasks.get(key) is task:
            log.debug("Evicting failed cache entry `%s`", key)
            del self._tasks[key]

    def peek(self, key: _T) -> _U | None:
        """Return a completed value without triggering a computation."""
        task = self._tasks.get(key)
        if (
            task is not None
            and task.done()
            and not task.cancelled()
            and not task.exception()
        ):
            return task.result()
        return None

    def set(self, key: _T, value: _U) -> None:
        """Store an already computed value."""
        future: asyncio.Future[_U] = asyncio.get_running_loop().create_future()
        future.set_result(value)
        self._tasks[key] = future  # type: ignore[assignment]

    def invalidate(self, key: _T) -> None:
        """Forget the value for a key."""
        self._tasks.pop(key, None)

    def invalidate_all(self) -> None:
        """Forget every value."""
        self._tasks.clear()

    def keys(self) -> list[_T]:
        """List the keys with entries."""
        return list(self._tasks)

    def __contains__(self, key: object) -> bool:
        """Determine if a key has an entry."""
        return key in self._tasks

    def __len__(self) -> int:
        """Return the number of entries."""
        return len(self._tasks)
