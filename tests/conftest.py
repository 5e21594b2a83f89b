"""Shared fixtures, including an in-process fake Jupyter server."""

from __future__ import annotations

import posixpath
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from nbkernels.kernel.server import JupyterConnectionInfo

if TYPE_CHECKING:
    from collections.abc import AsyncIterator
    from typing import Any


PYTHON_SPEC = {
    "argv": ["python", "-m", "ipykernel_launcher", "-f", "{connection_file}"],
    "display_name": "Python 3 (ipykernel)",
    "language": "python",
}


class FakeJupyter:
    """The state and REST API of a minimal Jupyter server."""

    def __init__(self, token: str = "") -> None:
        """Create a server with a single Python kernel spec."""
        self.token = token
        self.kernel_specs: dict[str, dict[str, Any]] = {"python3": dict(PYTHON_SPEC)}
        self.kernels: dict[str, dict[str, Any]] = {}
        self.sessions: dict[str, dict[str, Any]] = {}
        self.files: set[str] = set()
        self.requests: list[tuple[str, str]] = []
        self.session_requests: list[dict[str, Any]] = []
        #: Status returned when creating sessions, if not 201
        self.session_error: int | None = None
        #: Status returned when creating files, if not 201
        self.contents_error: int | None = None
        #: Status returned when renaming files, if not 200
        self.rename_error: int | None = None

    def add_kernel(self, name: str = "python3", path: str = "") -> dict[str, Any]:
        """Start a kernel, with a session if a path is given."""
        kernel = {
            "id": str(uuid4()),
            "name": name,
            "last_activity": "2024-01-01T00:00:00.000000Z",
            "execution_state": "idle",
            "connections": 1,
        }
        self.kernels[kernel["id"]] = kernel
        if path:
            session_id = str(uuid4())
            self.sessions[session_id] = {
                "id": session_id,
                "path": path,
                "name": path,
                "type": "notebook",
                "kernel": {"id": kernel["id"], "name": name},
            }
        return kernel

    @web.middleware
    async def _middleware(self, request: web.Request, handler: Any) -> web.Response:
        self.requests.append((request.method, request.path))
        if self.token and request.headers.get("Authorization") != (
            f"token {self.token}"
        ):
            return web.json_response({"message": "Forbidden"}, status=403)
        return await handler(request)

    async def get_kernel_specs(self, request: web.Request) -> web.Response:
        return web.json_response(
            {
                "default": "python3",
                "kernelspecs": {
                    name: {"name": name, "spec": spec, "resources": {}}
                    for name, spec in self.kernel_specs.items()
                },
            }
        )

    async def get_kernels(self, request: web.Request) -> web.Response:
        return web.json_response(list(self.kernels.values()))

    async def get_kernel(self, request: web.Request) -> web.Response:
        kernel = self.kernels.get(request.match_info["kernel_id"])
        if kernel is None:
            return web.json_response({"message": "No such kernel"}, status=404)
        return web.json_response(kernel)

    async def kernel_action(self, request: web.Request) -> web.Response:
        kernel = self.kernels.get(request.match_info["kernel_id"])
        if kernel is None:
            return web.json_response({"message": "No such kernel"}, status=404)
        if request.match_info["action"] == "restart":
            return web.json_response(kernel)
        return web.Response(status=204)

    async def delete_kernel(self, request: web.Request) -> web.Response:
        self.kernels.pop(request.match_info["kernel_id"], None)
        return web.Response(status=204)

    async def get_sessions(self, request: web.Request) -> web.Response:
        return web.json_response(list(self.sessions.values()))

    async def post_session(self, request: web.Request) -> web.Response:
        body = await request.json()
        self.session_requests.append(body)
        if self.session_error is not None:
            return web.json_response(
                {"message": "Kernel failed"}, status=self.session_error
            )
        name = body["kernel"].get("name")
        if name not in self.kernel_specs:
            return web.json_response({"message": "No such kernel spec"}, status=501)
        kernel = self.add_kernel(name)
        session_id = str(uuid4())
        session = {
            "id": session_id,
            "path": body["path"],
            "name": body["name"],
            "type": body["type"],
            "kernel": {"id": kernel["id"], "name": name},
        }
        self.sessions[session_id] = session
        return web.json_response(session, status=201)

    async def delete_session(self, request: web.Request) -> web.Response:
        session = self.sessions.pop(request.match_info["session_id"], None)
        if session is None:
            return web.json_response({"message": "No such session"}, status=404)
        self.kernels.pop(session["kernel"]["id"], None)
        return web.Response(status=204)

    async def post_contents(self, request: web.Request) -> web.Response:
        if self.contents_error is not None:
            return web.json_response(
                {"message": "Cannot create file"}, status=self.contents_error
            )
        directory = request.match_info["path"].strip("/")
        path = posixpath.join(directory, "Untitled.ipynb")
        self.files.add(path)
        return web.json_response({"path": path, "type": "notebook"}, status=201)

    async def patch_contents(self, request: web.Request) -> web.Response:
        path = request.match_info["path"]
        if path not in self.files:
            return web.json_response({"message": "No such file"}, status=404)
        if self.rename_error is not None:
            return web.json_response(
                {"message": "Cannot rename file"}, status=self.rename_error
            )
        new_path = (await request.json())["path"]
        self.files.discard(path)
        self.files.add(new_path)
        return web.json_response({"path": new_path, "type": "notebook"})

    async def delete_contents(self, request: web.Request) -> web.Response:
        path = request.match_info["path"]
        if path not in self.files:
            return web.json_response({"message": "No such file"}, status=404)
        self.files.discard(path)
        return web.Response(status=204)

    def app(self) -> web.Application:
        """Create the server's web application."""
        app = web.Application(middlewares=[self._middleware])
        app.router.add_get("/api/kernelspecs", self.get_kernel_specs)
        app.router.add_get("/api/kernels", self.get_kernels)
        app.router.add_get("/api/kernels/{kernel_id}", self.get_kernel)
        app.router.add_post(
            "/api/kernels/{kernel_id}/{action:interrupt|restart}", self.kernel_action
        )
        app.router.add_delete("/api/kernels/{kernel_id}", self.delete_kernel)
        app.router.add_get("/api/sessions", self.get_sessions)
        app.router.add_post("/api/sessions", self.post_session)
        app.router.add_delete("/api/sessions/{session_id}", self.delete_session)
        app.router.add_post("/api/contents/{path:.*}", self.post_contents)
        app.router.add_patch("/api/contents/{path:.*}", self.patch_contents)
        app.router.add_delete("/api/contents/{path:.*}", self.delete_contents)
        return app

    @asynccontextmanager
    async def serve(self, **kwargs: Any) -> AsyncIterator[JupyterConnectionInfo]:
        """Run the server, yielding the information needed to connect to it."""
        server = TestServer(self.app())
        await server.start_server()
        try:
            yield JupyterConnectionInfo(
                base_url=str(server.make_url("")).rstrip("/"),
                token=self.token,
                **kwargs,
            )
        finally:
            await server.close()


@pytest.fixture
def fake_jupyter() -> FakeJupyter:
    """Provide a fake Jupyter server, which is started with ``serve()``."""
    return FakeJupyter(token="secret")
