"""Sessions against kernels hosted by a Jupyter server."""

from __future__ import annotations

import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING
from uuid import uuid4

import aiohttp

from nbkernels.async_utils import wait_for_condition
from nbkernels.errors import JupyterServerError, JupyterSessionStartError
from nbkernels.kernel.connection import LiveRemoteKernelConnection, is_local_connection
from nbkernels.kernel.session.base import BaseKernelSession

if TYPE_CHECKING:
    from os import PathLike
    from typing import Any

    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.fs import FileSystem
    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.kernel.installer import KernelInstaller
    from nbkernels.kernel.server import (
        JupyterConnectionInfo,
        JupyterServerClient,
        SessionManagerFactory,
    )

log = logging.getLogger(__name__)

#: Separates a notebook's name from the random suffix of its server-side copy
JVSC_IDENTIFIER = "-jvsc-"

DEFAULT_NOTEBOOK_NAME = "Untitled"

_HEX_SUFFIX_RE = re.compile(r"[a-f0-9]$")

#: Errors which mean a server could not create a file
_CONTENTS_ERRORS = (JupyterServerError, aiohttp.ClientError, OSError)


def remove_notebook_suffix_added_by_extension(notebook_path: str) -> str:
    """Recover a notebook's original file name from the name of its server copy.

    Server-side backing files are named after the notebook with a random suffix, so
    stripping the suffix gives the name of the original notebook.
    """
    if JVSC_IDENTIFIER in notebook_path:
        index = notebook_path.rindex(JVSC_IDENTIFIER)
        if _HEX_SUFFIX_RE.search(notebook_path[index + len(JVSC_IDENTIFIER) :]):
            return f"{notebook_path[:index]}.ipynb"
    return notebook_path


@dataclass
class JupyterSessionHandle:
    """A session on a Jupyter server."""

    id: str
    kernel_id: str
    path: str = ""
    #: Whether the kernel was started by us, and should be shut down with the session
    owned: bool = True
    model: dict[str, Any] = field(default_factory=dict)


@dataclass
class BackingFile:
    """A placeholder notebook file used as a session's path."""

    path: str
    #: Whether the file lives on the server rather than in a local temporary folder
    remote: bool = True
    #: A local directory to remove along with the file
    directory: str = ""


class JupyterKernelSession(BaseKernelSession[JupyterSessionHandle]):
    """A kernel session managed through a Jupyter server's REST API."""

    def __init__(
        self,
        connection: KernelConnectionMetadata,
        server: JupyterConnectionInfo,
        session_manager_factory: SessionManagerFactory,
        fs: FileSystem,
        installer: KernelInstaller | None = None,
        resource: str | PathLike | None = None,
        working_directory: str = "",
        config: Config | None = None,
    ) -> None:
        """Create a new session.

        Args:
            connection: The kernel to start or connect to
            server: The Jupyter server hosting the kernel
            session_manager_factory: Provides the server's client, and is notified of
                restart sessions
            fs: Used to create local backing files
            installer: Ensures local Python kernels have ``ipykernel``
            resource: The notebook the session is for
            working_directory: The directory the kernel should start in
            config: Configuration providing timeouts
        """
        super().__init__(connection, resource, config)
        self.server = server
        self.session_manager_factory = session_manager_factory
        self.client: JupyterServerClient = session_manager_factory.create(server)
        self.fs = fs
        self.installer = installer
        self.working_directory = working_directory

    @property
    def kernel_id(self) -> str:
        """The id of the session's kernel on the server."""
        return self.session.kernel_id if self.session is not None else ""

    async def get_session_status(self, session: JupyterSessionHandle) -> str:
        """Ask the server for the kernel's execution state."""
        model = await self.client.get_kernel(session.kernel_id)
        if model is None:
            return "dead"
        return model.get("execution_state") or "unknown"

    async def attach_session(
        self, token: CancellationToken | None = None
    ) -> JupyterSessionHandle | None:
        """Attach to a live kernel, waiting for the server to report it."""
        connection = self.connection
        if not isinstance(connection, LiveRemoteKernelConnection):
            return None
        model = connection.kernel_model
        if not model.id or model.session is None:
            return None

        async def _is_running() -> bool:
            return await self.client.get_kernel(model.id) is not None

        if not await wait_for_condition(_is_running, self.idle_timeout):
            log.warning("Live kernel `%s` was not found on the server", model.id)
        return JupyterSessionHandle(
            id=model.session.get("id", ""),
            kernel_id=model.id,
            path=model.session.get("path", ""),
            owned=False,
            model=dict(model.session),
        )

    async def start_session(
        self, token: CancellationToken | None = None
    ) -> JupyterSessionHandle:
        """Start a new kernel in a new server session.

        The session's backing file is removed whether or not the session starts.

        Raises:
            JupyterSessionStartError: If the server could not start the session

        """
        backing_file = await self.create_backing_file()

        # Make sure the kernel has ipykernel installed if on a local machine
        if (
            self.installer is not None
            and self.connection.interpreter is not None
            and is_local_connection(self.connection)
        ):
            try:
                await self.installer.ensure_kernel_usable(self.connection, token)
            except Exception:
                await self.dispose_backing_file(backing_file)
                raise

        # An empty kernel name confuses some servers, so use the server's default
        kernel_name = (
            self.connection.kernel_spec.name or self.client.default_kernel_name
        )
        path = backing_file.path if backing_file else f"{uuid4()}.ipynb"
        try:
            model = await self.client.start_new_session(
                path=path,
                # A unique name prevents the server from reusing an existing session
                name=str(uuid4()),
                kernel_name=kernel_name,
                type_="notebook",
            )
            if not model or not (kernel := model.get("kernel")):
                raise JupyterSessionStartError(RuntimeError("No kernel created"))
        except JupyterSessionStartError:
            raise
        except Exception as error:
            raise JupyterSessionStartError(error) from error
        finally:
            await self.dispose_backing_file(backing_file)

        if not is_local_connection(self.connection):
            log.info(
                "Started a new kernel on `%s` with id `%s`",
                self.server.base_url,
                kernel.get("id"),
            )
        return JupyterSessionHandle(
            id=model.get("id", ""),
            kernel_id=kernel.get("id", ""),
            path=model.get("path", path),
            model=model,
        )

    async def shutdown_session(self, session: JupyterSessionHandle) -> None:
        """Close a session we started, shutting down its kernel.

        Sessions attached to live kernels are left running.
        """
        if not session.owned:
            log.debug("Leaving live kernel `%s` running", session.kernel_id)
            return
        try:
            await self.client.delete_session(session.id)
        except JupyterServerError as error:
            if error.status != 404:
                raise
        log.debug("Shut down kernel `%s`", session.kernel_id)

    async def restart_session(self, session: JupyterSessionHandle) -> None:
        """Ask the server to restart the kernel."""
        await self.client.restart_kernel(session.kernel_id)

    async def interrupt_session(self, session: JupyterSessionHandle) -> None:
        """Ask the server to interrupt the kernel."""
        await self.client.interrupt_kernel(session.kernel_id)

    def on_restart_session_created(self, session: JupyterSessionHandle) -> None:
        """Hide the standby kernel from remote kernel listings."""
        self.session_manager_factory.notify_restart_session_created(session.kernel_id)

    def on_restart_session_used(self, session: JupyterSessionHandle) -> None:
        """Show the swapped-in kernel in remote kernel listings again."""
        self.session_manager_factory.notify_restart_session_used(session.kernel_id)

    # Backing files

    def _new_name(self, remote: bool) -> str:
        if self.resource is None:
            return f"{DEFAULT_NOTEBOOK_NAME}-{uuid4()}.ipynb"
        stem = os.path.splitext(os.path.basename(os.fspath(self.resource)))[0]
        if remote:
            return f"{stem}{JVSC_IDENTIFIER}{uuid4()}.ipynb"
        return f"{stem}.ipynb"

    async def create_backing_file(self) -> BackingFile | None:
        """Create a placeholder notebook file for a new session.

        For servers launched locally this is a path in a fresh temporary folder, so
        that checkpoints of concurrent sessions never collide. Otherwise a notebook
        is created on the server in the working directory.

        Returns:
            The backing file, or :py:const:`None` if the server could not create one

        """
        if self.server.local_launch:
            temp_file = await self.fs.create_temp_file(".ipynb")
            directory = str(temp_file.parent)
            await self.fs.delete(temp_file)
            return BackingFile(
                path=os.path.join(directory, self._new_name(remote=False)),
                remote=False,
                directory=directory,
            )

        # Jupyter expects paths relative to its root with unix delimiters
        relative_directory = ""
        if self.server.root_directory and self.working_directory:
            relative_directory = os.path.relpath(
                self.working_directory, self.server.root_directory
            ).replace("\\", "/")
            if relative_directory == ".":
                relative_directory = ""
        new_name = self._new_name(remote=True)
        local = is_local_connection(self.connection)

        # Jupyter does not support paths outside of its root
        directory = (
            relative_directory
            if local and not relative_directory.startswith("..")
            else ""
        )
        try:
            return await self._create_remote_backing_file(directory, new_name)
        except _CONTENTS_ERRORS as error:
            if not local:
                log.error("Backing file not supported: %s", error)
                return None
        # Try again without the relative directory
        try:
            return await self._create_remote_backing_file("", new_name)
        except _CONTENTS_ERRORS as error:
            log.debug("Could not create a backing file: %s", error)
            return None

    async def _create_remote_backing_file(
        self, directory: str, new_name: str
    ) -> BackingFile:
        model = await self.client.new_untitled(directory, type_="notebook")
        untitled = model["path"]
        new_dir = posixpath.dirname(untitled)
        new_path = f"{new_dir}/{new_name}" if new_dir and new_dir != "." else new_name
        try:
            model = await self.client.rename(untitled, new_path)
        except BaseException:
            # Do not leave the untitled notebook behind on the server
            await self.dispose_backing_file(BackingFile(path=untitled, remote=True))
            raise
        return BackingFile(path=model.get("path", new_path), remote=True)

    async def dispose_backing_file(self, backing_file: BackingFile | None) -> None:
        """Remove a session's backing file."""
        if backing_file is None:
            return
        try:
            if backing_file.remote:
                await self.client.delete_file(backing_file.path)
            else:
                await self.fs.delete(backing_file.directory or backing_file.path)
        except _CONTENTS_ERRORS as error:
            log.debug(
                "Could not remove backing file `%s`: %s", backing_file.path, error
            )
