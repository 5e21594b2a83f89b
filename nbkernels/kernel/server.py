"""Communicate with Jupyter servers over their REST API."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib.parse import quote

import aiohttp
from prompt_toolkit.utils import Event

from nbkernels.errors import JupyterServerError
from nbkernels.utils import is_loopback_url

if TYPE_CHECKING:
    from types import TracebackType
    from typing import Any, Literal


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class JupyterConnectionInfo:
    """How to reach a Jupyter server."""

    base_url: str
    token: str = ""
    type: Literal["jupyter", "raw"] = "jupyter"
    #: The directory the server was started in, on this machine
    root_directory: str = ""
    #: Whether the server was launched on this machine by this process
    local_launch: bool = False

    @property
    def is_loopback(self) -> bool:
        """Whether the server runs on this machine."""
        return is_loopback_url(self.base_url)


class JupyterServerClient:
    """A client for a Jupyter server's REST API.

    Requests which receive an error status raise :py:class:`JupyterServerError`.
    """

    def __init__(
        self,
        connection: JupyterConnectionInfo,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """Create a new client.

        Args:
            connection: The server to communicate with
            session: An HTTP session to use. One is created on first use if not given
        """
        self.connection = connection
        self.base_url = connection.base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self.default_kernel_name: str | None = None

    @property
    def headers(self) -> dict[str, str]:
        """Headers sent with every request."""
        if self.connection.token:
            return {"Authorization": f"token {self.connection.token}"}
        return {}

    @property
    def session(self) -> aiohttp.ClientSession:
        """The HTTP session requests are made with."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    async def __aenter__(self) -> JupyterServerClient:
        """Use the client as a context manager."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        """Close the client on exit."""
        await self.close()

    def url(self, endpoint: str) -> str:
        """Return the full URL of an API endpoint."""
        return f"{self.base_url}/api/{endpoint.lstrip('/')}"

    async def _request(self, method: str, endpoint: str, **kwargs: Any) -> Any:
        url = self.url(endpoint)
        log.debug("%s %s", method, url)
        async with self.session.request(
            method, url, headers=self.headers, **kwargs
        ) as response:
            text = await response.text()
            if response.status >= 400:
                message = text
                try:
                    message = json.loads(text).get("message") or text
                except (ValueError, AttributeError):
                    pass
                raise JupyterServerError(response.status, message)
            if not text:
                return None
            return json.loads(text)

    # Kernel specs

    async def get_kernel_specs(self) -> list[dict[str, Any]]:
        """List the server's kernel specs, remembering its default kernel name."""
        data = await self._request("GET", "kernelspecs") or {}
        self.default_kernel_name = data.get("default")
        return list((data.get("kernelspecs") or {}).values())

    # Kernels

    async def get_running_kernels(self) -> list[dict[str, Any]]:
        """List the kernels running on the server."""
        return await self._request("GET", "kernels") or []

    async def get_kernel(self, kernel_id: str) -> dict[str, Any] | None:
        """Describe a running kernel, or return :py:const:`None` if it is gone."""
        try:
            return await self._request("GET", f"kernels/{kernel_id}")
        except JupyterServerError as error:
            if error.status == 404:
                return None
            raise

    async def interrupt_kernel(self, kernel_id: str) -> None:
        """Interrupt a running kernel."""
        await self._request("POST", f"kernels/{kernel_id}/interrupt")

    async def restart_kernel(self, kernel_id: str) -> dict[str, Any] | None:
        """Restart a running kernel."""
        return await self._request("POST", f"kernels/{kernel_id}/restart")

    async def shutdown_kernel(self, kernel_id: str) -> None:
        """Shut down a running kernel."""
        await self._request("DELETE", f"kernels/{kernel_id}")

    def kernel_channels_url(self, kernel_id: str, session_id: str = "") -> str:
        """Return the websocket URL for a kernel's channels."""
        url = self.url(f"kernels/{kernel_id}/channels")
        if url.startswith("http"):
            url = "ws" + url[len("http") :]
        query = []
        if session_id:
            query.append(f"session_id={quote(session_id)}")
        if self.connection.token:
            query.append(f"token={quote(self.connection.token)}")
        if query:
            url = f"{url}?{'&'.join(query)}"
        return url

    # Sessions

    async def get_running_sessions(self) -> list[dict[str, Any]]:
        """List the sessions open on the server."""
        return await self._request("GET", "sessions") or []

    async def start_new_session(
        self,
        path: str,
        name: str,
        kernel_name: str | None = None,
        kernel_id: str | None = None,
        type_: str = "notebook",
    ) -> dict[str, Any]:
        """Create a session, starting a new kernel or attaching an existing one.

        Args:
            path: The path of the session's backing file
            name: A name for the session, which should be unique
            kernel_name: The kernel spec to start a kernel from
            kernel_id: The id of a running kernel to attach to the session
            type_: The type of the session

        Returns:
            The server's session model

        """
        kernel: dict[str, str] = {}
        if kernel_id:
            kernel["id"] = kernel_id
        else:
            kernel["name"] = kernel_name or self.default_kernel_name or ""
        return await self._request(
            "POST",
            "sessions",
            json={"path": path, "name": name, "type": type_, "kernel": kernel},
        )

    async def delete_session(self, session_id: str) -> None:
        """Close a session, shutting down its kernel."""
        await self._request("DELETE", f"sessions/{session_id}")

    # Contents

    async def new_untitled(self, path: str = "", type_: str = "notebook") -> dict:
        """Create an untitled file in a directory on the server."""
        return await self._request(
            "POST", f"contents/{quote(path)}", json={"type": type_}
        )

    async def rename(self, path: str, new_path: str) -> dict[str, Any]:
        """Rename a file on the server."""
        return await self._request(
            "PATCH", f"contents/{quote(path)}", json={"path": new_path}
        )

    async def delete_file(self, path: str) -> None:
        """Delete a file on the server."""
        await self._request("DELETE", f"contents/{quote(path)}")


class SessionManagerFactory:
    """Create server clients and broadcast the life-cycle of restart sessions.

    Before either event fires, :py:attr:`last_restart_kernel_id` is set to the id of
    the kernel concerned.
    """

    def __init__(self) -> None:
        """Create a new factory."""
        self._clients: dict[JupyterConnectionInfo, JupyterServerClient] = {}
        self.last_restart_kernel_id: str | None = None
        self.restart_session_created = Event(self)
        self.restart_session_used = Event(self)

    def create(self, connection: JupyterConnectionInfo) -> JupyterServerClient:
        """Return the client for a server, creating it if needed."""
        if (client := self._clients.get(connection)) is None:
            client = self._clients[connection] = JupyterServerClient(connection)
        return client

    def notify_restart_session_created(self, kernel_id: str) -> None:
        """Announce a kernel started as a standby for restarts."""
        log.debug("Restart session created for kernel `%s`", kernel_id)
        self.last_restart_kernel_id = kernel_id
        self.restart_session_created.fire()

    def notify_restart_session_used(self, kernel_id: str) -> None:
        """Announce a standby kernel was swapped in by a restart."""
        log.debug("Restart session used for kernel `%s`", kernel_id)
        self.last_restart_kernel_id = kernel_id
        self.restart_session_used.fire()

    async def dispose(self) -> None:
        """Close every client."""
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
