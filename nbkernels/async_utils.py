"""Asyncio helpers: cancellation tokens, timeouts and a shared background loop."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from typing import TYPE_CHECKING

from prompt_toolkit.utils import Event

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Coroutine
    from typing import Any, TypeVar

    T = TypeVar("T")
    D = TypeVar("D")

log = logging.getLogger(__name__)

_BACKGROUND: dict[str, tuple[asyncio.AbstractEventLoop, threading.Thread]] = {}


class CancellationToken:
    """A cooperative cancellation signal.

    Operations check :py:attr:`cancelled` at well-defined checkpoints and return
    an empty result once cancellation has been requested. Cancelling never
    interrupts I/O which is already in flight.
    """

    def __init__(self) -> None:
        """Create a new token which has not been cancelled."""
        self._cancelled = False
        self.on_cancelled = Event(self)

    @property
    def cancelled(self) -> bool:
        """Whether cancellation has been requested."""
        return self._cancelled

    def cancel(self) -> None:
        """Request cancellation."""
        if not self._cancelled:
            self._cancelled = True
            self.on_cancelled.fire()


def is_cancelled(token: CancellationToken | None) -> bool:
    """Return :py:const:`True` if the token exists and has been cancelled."""
    return token is not None and token.cancelled


async def race_timeout(
    awaitable: Awaitable[T], timeout: float, default: D = None
) -> T | D:
    """Await something, giving up after ``timeout`` seconds.

    The awaitable is left to finish in the background if the timeout expires, so
    that a slow probe can still populate caches for later callers.

    Args:
        awaitable: The thing to wait for
        timeout: How many seconds to wait
        default: The value returned if the timeout expires first

    Returns:
        The awaitable's result, or the default value on timeout

    """
    task = asyncio.ensure_future(awaitable)
    done, _pending = await asyncio.wait({task}, timeout=timeout)
    if task in done:
        return task.result()
    # Retrieve any eventual exception so it is not reported as un-retrieved
    task.add_done_callback(lambda t: t.cancelled() or t.exception())
    return default


async def wait_for_condition(
    condition: Callable[[], Awaitable[bool]],
    timeout: float,
    interval: float = 0.1,
) -> bool:
    """Poll an asynchronous condition until it holds or the timeout expires.

    Returns:
        Whether the condition was met within the timeout

    """
    deadline = time.monotonic() + timeout
    while True:
        if await condition():
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(interval)


def background_loop(name: str) -> asyncio.AbstractEventLoop:
    """Return the event loop which runs forever in a daemon thread called ``name``.

    Synchronous callers use this to share one loop between calls, so that caches
    and tasks created on it survive from one call to the next.
    """
    if name not in _BACKGROUND:
        loop = asyncio.new_event_loop()
        thread = threading.Thread(
            target=loop.run_forever,
            name=f"nbkernels-{name}",
            daemon=True,
        )
        _BACKGROUND[name] = loop, thread
        thread.start()
    return _BACKGROUND[name][0]


def run_sync(
    coro: Coroutine[Any, Any, T], loop: asyncio.AbstractEventLoop | None = None
) -> T:
    """Block until a coroutine has finished on ``loop``, returning its result.

    If the loop is running in another thread the coroutine is submitted to it,
    otherwise the loop is run until the coroutine completes.

    Raises:
        RuntimeError: If no loop is given outside of a running event loop
    """
    if loop is None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            raise RuntimeError("An event loop is needed to run the coroutine") from None
    if not loop.is_running():
        return loop.run_until_complete(coro)
    return asyncio.run_coroutine_threadsafe(coro, loop).result()
