"""Base class for sessions against a running kernel."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Generic, TypeVar

from prompt_toolkit.utils import Event

from nbkernels.async_utils import is_cancelled, wait_for_condition
from nbkernels.errors import (
    InvalidKernelError,
    KernelDiedError,
    KernelIdleTimeoutError,
    NbKernelsError,
    SessionDisposedError,
)

if TYPE_CHECKING:
    from os import PathLike
    from typing import Literal

    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.kernel.connection import KernelConnectionMetadata

    KernelStatus = Literal[
        "unconnected",
        "connecting",
        "idle",
        "busy",
        "restarting",
        "autorestarting",
        "dead",
    ]

log = logging.getLogger(__name__)

S = TypeVar("S")


class BaseKernelSession(ABC, Generic[S]):
    """A connection to a kernel, which can be restarted and interrupted.

    Once connected, a second kernel is started in the background when the
    ``prewarm_restart_session`` setting is enabled. Restarting the session swaps this
    standby kernel in, so restarts do not wait for a kernel to start.

    Subclasses implement the handling of the underlying session handles of type
    ``S``.
    """

    def __init__(
        self,
        connection: KernelConnectionMetadata,
        resource: str | PathLike | None = None,
        config: Config | None = None,
    ) -> None:
        """Create a new, unconnected, session.

        Args:
            connection: The kernel to start or connect to
            resource: The notebook the session is for
            config: Configuration providing timeouts
        """
        self.connection = connection
        self.resource = resource
        self.config = config
        self.session: S | None = None
        self.connected = False
        self.disposed = False
        self._status: KernelStatus = "unconnected"
        self._restart_task: asyncio.Task[S] | None = None
        self.status_changed = Event(self)

    @property
    def status(self) -> KernelStatus:
        """The kernel's current status."""
        return self._status

    @status.setter
    def status(self, value: KernelStatus) -> None:
        if value != self._status:
            log.debug("Kernel status changed from `%s` to `%s`", self._status, value)
            self._status = value
            self.status_changed.fire()

    @property
    def idle_timeout(self) -> float:
        """How long to wait for a new kernel to become idle."""
        if self.config is None:
            return 60.0
        return self.config.kernel_idle_timeout

    @property
    def interrupt_timeout(self) -> float:
        """How long to wait for an interrupted kernel to become idle."""
        if self.config is None:
            return 10.0
        return self.config.kernel_interrupt_timeout

    @property
    def prewarm_restart_session(self) -> bool:
        """Whether to keep a standby kernel ready for restarts."""
        if self.config is None:
            return True
        return self.config.prewarm_restart_session

    # Implemented by subclasses

    @abstractmethod
    async def start_session(self, token: CancellationToken | None = None) -> S:
        """Start a new kernel and return a handle to its session."""

    async def attach_session(self, token: CancellationToken | None = None) -> S | None:
        """Attach to an existing kernel, if the connection refers to one."""
        return None

    @abstractmethod
    async def shutdown_session(self, session: S) -> None:
        """Shut down a session's kernel."""

    @abstractmethod
    async def restart_session(self, session: S) -> None:
        """Restart a session's kernel in place."""

    @abstractmethod
    async def interrupt_session(self, session: S) -> None:
        """Interrupt a session's kernel."""

    @abstractmethod
    async def get_session_status(self, session: S) -> str:
        """Return the execution state of a session's kernel."""

    def activate_session(self, session: S) -> None:
        """Called when a session becomes the primary session."""

    def on_restart_session_created(self, session: S) -> None:
        """Called when a standby session has become ready."""

    def on_restart_session_used(self, session: S) -> None:
        """Called when a standby session has been swapped in."""

    # Session life-cycle

    async def wait_for_idle_on_session(self, session: S, timeout: float) -> None:
        """Wait for a session's kernel to become idle.

        Raises:
            KernelDiedError: If the kernel dies while waiting
            KernelIdleTimeoutError: If the kernel is not idle within ``timeout``

        """
        state = ""

        async def _is_idle() -> bool:
            nonlocal state
            state = await self.get_session_status(session)
            if state == "dead":
                raise KernelDiedError("Kernel died while waiting for it to be idle")
            return state == "idle"

        if not await wait_for_condition(_is_idle, timeout):
            log.debug("Kernel still `%s` after %s seconds", state, timeout)
            raise KernelIdleTimeoutError(timeout)

    async def create_new_kernel_session(
        self, token: CancellationToken | None = None
    ) -> S:
        """Create a session and wait for its kernel to become idle.

        Raises:
            NbKernelsError: Errors raised by nbkernels are passed on unchanged
            InvalidKernelError: Raised for any other failure

        """
        try:
            session = await self.attach_session(token)
            if session is None:
                session = await self.start_session(token)
                try:
                    await self.wait_for_idle_on_session(session, self.idle_timeout)
                except BaseException:
                    await self._shutdown_quietly(session)
                    raise
        except NbKernelsError as error:
            log.error("Failed to start kernel `%s`: %s", self.connection.id, error)
            raise
        except Exception as error:
            log.exception("Failed to start kernel `%s`", self.connection.id)
            raise InvalidKernelError(self.connection, error) from error
        return session

    async def connect(self, token: CancellationToken | None = None) -> None:
        """Start or attach to the kernel.

        If ``token`` is cancelled while connecting, the new session is shut down and
        the session remains unconnected.
        """
        if self.disposed:
            raise SessionDisposedError()
        self.status = "connecting"
        try:
            session = await self.create_new_kernel_session(token)
        except Exception:
            self.status = "dead"
            raise
        if is_cancelled(token) or self.disposed:
            await self._shutdown_quietly(session)
            self.status = "unconnected"
            return
        self.session = session
        self.activate_session(session)
        self.connected = True
        self.status = "idle"
        if self.prewarm_restart_session:
            self.start_restart_session()

    def start_restart_session(self) -> None:
        """Start a standby session in the background if there is not one already."""
        if (
            self._restart_task is None
            and self.session is not None
            and not self.disposed
        ):
            task = asyncio.ensure_future(self._create_restart_session())
            # Failures are reported when the standby is collected
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self._restart_task = task

    async def _create_restart_session(self) -> S:
        if self.session is None:
            raise SessionDisposedError()
        session: S | None = None
        try:
            session = await self.start_session()
            await self.wait_for_idle_on_session(session, self.idle_timeout)
        except BaseException as error:
            log.info("Error waiting for restart session: %s", error)
            if session is not None:
                await self._shutdown_quietly(session)
            raise
        self.on_restart_session_created(session)
        return session

    async def _take_restart_session(self) -> S | None:
        """Collect the standby session, if one was started successfully."""
        if (task := self._restart_task) is None:
            return None
        self._restart_task = None
        try:
            return await task
        except asyncio.CancelledError:
            return None
        except Exception:
            log.warning("Restart session could not be started", exc_info=True)
            return None

    async def _shutdown_quietly(self, session: S) -> None:
        try:
            await self.shutdown_session(session)
        except Exception:
            log.exception("Failed to shut down kernel session")

    async def wait_for_idle(self, timeout: float | None = None) -> None:
        """Wait for the kernel to become idle."""
        if self.session is None:
            raise SessionDisposedError()
        await self.wait_for_idle_on_session(
            self.session, self.idle_timeout if timeout is None else timeout
        )

    async def restart(self) -> None:
        """Restart the kernel.

        A standby session is swapped in if one is ready. Otherwise the kernel is
        restarted in place.
        """
        if self.session is None or self.disposed:
            raise SessionDisposedError()
        self.status = "restarting"
        try:
            standby = await self._take_restart_session()
            if standby is not None:
                old, self.session = self.session, standby
                log.debug("Swapped in restart session")
                self.on_restart_session_used(standby)
                self.activate_session(standby)
                await self._shutdown_quietly(old)
            else:
                await self.restart_session(self.session)
                await self.wait_for_idle_on_session(self.session, self.idle_timeout)
        except Exception:
            self.status = "dead"
            raise
        self.status = "idle"
        if self.prewarm_restart_session:
            self.start_restart_session()

    async def interrupt(self) -> bool:
        """Interrupt the kernel.

        Returns:
            Whether the kernel became idle within the ``kernel_interrupt_timeout``

        """
        if self.session is None or self.disposed:
            raise SessionDisposedError()
        await self.interrupt_session(self.session)
        try:
            await self.wait_for_idle_on_session(self.session, self.interrupt_timeout)
        except KernelIdleTimeoutError:
            log.warning("Kernel did not become idle after being interrupted")
            return False
        return True

    async def dispose(self) -> None:
        """Shut down the standby session and the kernel."""
        if self.disposed:
            return
        self.disposed = True
        if (task := self._restart_task) is not None:
            self._restart_task = None
            if not task.done():
                task.cancel()
            try:
                standby = await task
            except (asyncio.CancelledError, Exception):
                standby = None
            if standby is not None:
                await self._shutdown_quietly(standby)
        if (session := self.session) is not None:
            self.session = None
            await self._shutdown_quietly(session)
        self.connected = False
        self.status = "dead"
