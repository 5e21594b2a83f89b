"""Exceptions raised by nbkernels."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nbkernels.kernel.connection import KernelConnectionMetadata


class NbKernelsError(Exception):
    """Base class for errors raised deliberately by nbkernels."""


class InvalidKernelError(NbKernelsError):
    """A kernel could not be started from the given connection metadata."""

    def __init__(
        self,
        connection: KernelConnectionMetadata,
        cause: BaseException | None = None,
    ) -> None:
        """Record the connection which could not be started."""
        self.connection = connection
        self.cause = cause
        message = f"Kernel `{connection.display_name}` is not usable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class JupyterSessionStartError(NbKernelsError):
    """A Jupyter server refused to start a session."""

    def __init__(self, cause: BaseException) -> None:
        """Wrap the underlying failure."""
        self.cause = cause
        super().__init__(f"Failed to start a Jupyter session: {cause}")


class SessionDisposedError(NbKernelsError):
    """An operation was attempted on a session which has been disposed."""


class KernelDiedError(NbKernelsError):
    """A kernel process exited while it was being used."""


class KernelIdleTimeoutError(NbKernelsError):
    """A kernel did not become idle in time."""

    def __init__(self, timeout: float) -> None:
        """Record how long was waited."""
        self.timeout = timeout
        super().__init__(f"Kernel did not become idle within {timeout} seconds")


class IPyKernelNotInstalledError(NbKernelsError):
    """The ``ipykernel`` package is missing and could not be installed."""

    def __init__(self, interpreter_path: str) -> None:
        """Record the interpreter lacking ``ipykernel``."""
        self.interpreter_path = interpreter_path
        super().__init__(f"ipykernel is not installed for `{interpreter_path}`")


class JupyterServerError(NbKernelsError):
    """A Jupyter server responded with an error status."""

    def __init__(self, status: int, message: str = "") -> None:
        """Record the HTTP status and the server's message."""
        self.status = status
        self.message = message
        super().__init__(f"Jupyter server error {status}: {message}")
