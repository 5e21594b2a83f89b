"""Wire the services, finders and sessions of nbkernels together."""

from __future__ import annotations

import logging
from pkgutil import resolve_name
from typing import TYPE_CHECKING

from nbkernels.async_utils import background_loop, run_sync
from nbkernels.fs import FileSystem
from nbkernels.interpreters import InterpreterService
from nbkernels.kernel.connection import (
    LiveRemoteKernelConnection,
    RemoteKernelSpecConnection,
    is_local_connection,
)
from nbkernels.kernel.filter import KernelFilter
from nbkernels.kernel.finder.interpreters import (
    LocalPythonAndRelatedNonPythonKernelSpecFinder,
)
from nbkernels.kernel.finder.known_paths import LocalKnownPathKernelSpecFinder
from nbkernels.kernel.finder.local import LocalKernelFinder
from nbkernels.kernel.finder.remote import RemoteKernelFinder
from nbkernels.kernel.installer import KernelInstaller
from nbkernels.kernel.preferred import PreferredRemoteKernelIdProvider
from nbkernels.kernel.server import SessionManagerFactory
from nbkernels.memento import MemoryMemento
from nbkernels.process import ProcessService

if TYPE_CHECKING:
    from os import PathLike
    from typing import Any, Literal

    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.kernel.server import JupyterConnectionInfo
    from nbkernels.kernel.session.base import BaseKernelSession

log = logging.getLogger(__name__)

SESSION_REGISTRY = {
    "raw": "nbkernels.kernel.session.raw:RawKernelSession",
    "jupyter": "nbkernels.kernel.session.jupyter:JupyterKernelSession",
}


class KernelDiscovery:
    """Find kernels for notebooks, and start sessions against them.

    Every collaborator may be passed in, otherwise a default is created. Servers
    passed to :py:meth:`list_kernels` are remembered, so that sessions can later be
    started for the remote kernels they list.
    """

    def __init__(
        self,
        config: Config | None = None,
        memento: MemoryMemento | None = None,
        fs: FileSystem | None = None,
        process: ProcessService | None = None,
        interpreter_service: InterpreterService | None = None,
        session_manager_factory: SessionManagerFactory | None = None,
        allow_install: bool = True,
    ) -> None:
        """Create the services and finders.

        Args:
            config: Configuration shared by every component
            memento: Stores state remembered between runs
            fs: The file-system kernel specs are searched in
            process: Runs interpreters
            interpreter_service: Enumerates Python interpreters
            session_manager_factory: Creates Jupyter server clients
            allow_install: Whether ``ipykernel`` may be installed automatically
        """
        self.config = config
        self.memento = memento if memento is not None else MemoryMemento()
        self.fs = fs or FileSystem()
        self.process = process or ProcessService()
        self.interpreter_service = interpreter_service or InterpreterService(
            config=config, process=self.process
        )
        self.session_manager_factory = (
            session_manager_factory or SessionManagerFactory()
        )

        self.installer = KernelInstaller(
            self.memento, self.process, config, allow_install=allow_install
        )
        self.kernel_filter = KernelFilter(self.memento)
        self.preferred_remote_kernel_id_provider = PreferredRemoteKernelIdProvider(
            self.memento
        )

        self.known_path_finder = LocalKnownPathKernelSpecFinder(
            self.fs, self.memento, self.interpreter_service, config
        )
        self.interpreter_finder = LocalPythonAndRelatedNonPythonKernelSpecFinder(
            self.fs, self.memento, self.interpreter_service, self.known_path_finder
        )
        self.local_finder = LocalKernelFinder(
            self.known_path_finder, self.interpreter_finder, self.interpreter_service
        )
        self.remote_finder = RemoteKernelFinder(
            self.session_manager_factory,
            self.preferred_remote_kernel_id_provider,
            self.interpreter_service,
        )

        self.servers: dict[str, JupyterConnectionInfo] = {}

    def _remember_server(self, server: JupyterConnectionInfo | None) -> None:
        if server is not None:
            self.servers[server.base_url] = server

    async def list_kernels(
        self,
        resource: str | PathLike | None = None,
        server: JupyterConnectionInfo | None = None,
        token: CancellationToken | None = None,
        use_cache: bool = True,
        include_hidden: bool = False,
    ) -> list[KernelConnectionMetadata]:
        """List the kernels available to a notebook.

        Args:
            resource: The notebook's path
            server: A Jupyter server whose kernels are listed instead of local ones
            token: Cancels the search
            use_cache: Whether a previous local listing may be returned
            include_hidden: Whether to include kernels the user has hidden

        Returns:
            The kernels found

        """
        kernels: list[KernelConnectionMetadata]
        if server is None:
            kernels = list(
                await self.local_finder.list_kernels(resource, token, use_cache)
            )
        else:
            self._remember_server(server)
            kernels = await self.remote_finder.list_kernels(resource, server, token)
        if include_hidden:
            return kernels
        return self.kernel_filter.filter(kernels)

    async def find_kernel(
        self,
        resource: str | PathLike | None = None,
        notebook_metadata: dict[str, Any] | None = None,
        server: JupyterConnectionInfo | None = None,
        token: CancellationToken | None = None,
    ) -> KernelConnectionMetadata | None:
        """Find the kernel best suited to a notebook.

        Args:
            resource: The notebook's path
            notebook_metadata: The notebook's metadata
            server: A Jupyter server to search instead of this machine
            token: Cancels the search

        Returns:
            The preferred kernel, or :py:const:`None` if none is suitable

        """
        if server is None:
            return await self.local_finder.find_kernel(
                resource, notebook_metadata, token
            )
        self._remember_server(server)
        return await self.remote_finder.find_kernel(
            resource, server, notebook_metadata, token
        )

    def session_type(
        self,
        connection: KernelConnectionMetadata,
        server: JupyterConnectionInfo | None = None,
    ) -> Literal["raw", "jupyter"]:
        """Decide how a session should be run for a kernel."""
        if server is None and is_local_connection(connection):
            return "raw"
        return "jupyter"

    def create_session(
        self,
        connection: KernelConnectionMetadata,
        resource: str | PathLike | None = None,
        server: JupyterConnectionInfo | None = None,
        working_directory: str = "",
    ) -> BaseKernelSession:
        """Create an unconnected session for a kernel.

        Local kernels are run directly unless a server is given. Remote kernels run
        on the server they were listed from.

        Raises:
            ValueError: If a remote kernel's server is not known

        """
        if server is None and isinstance(
            connection, (RemoteKernelSpecConnection, LiveRemoteKernelConnection)
        ):
            server = self.servers.get(connection.base_url)
            if server is None:
                raise ValueError(f"Unknown Jupyter server `{connection.base_url}`")

        type_name = self.session_type(connection, server)
        session_class = resolve_name(SESSION_REGISTRY[type_name])
        log.debug("Creating %s session for `%s`", type_name, connection.display_name)
        if type_name == "raw":
            return session_class(
                connection,
                installer=self.installer,
                resource=resource,
                working_directory=working_directory,
                config=self.config,
            )
        return session_class(
            connection,
            server=server,
            session_manager_factory=self.session_manager_factory,
            fs=self.fs,
            installer=self.installer,
            resource=resource,
            working_directory=working_directory,
            config=self.config,
        )

    async def start_session(
        self,
        connection: KernelConnectionMetadata,
        resource: str | PathLike | None = None,
        server: JupyterConnectionInfo | None = None,
        working_directory: str = "",
        token: CancellationToken | None = None,
    ) -> BaseKernelSession:
        """Create a session for a kernel and connect it.

        The live kernel a notebook uses on a server is remembered, so that it is
        preferred the next time the notebook is opened.
        """
        session = self.create_session(connection, resource, server, working_directory)
        await session.connect(token)
        if not is_local_connection(connection) and (
            kernel_id := getattr(session, "kernel_id", "")
        ):
            provider = self.preferred_remote_kernel_id_provider
            provider.store_preferred_remote_kernel_id(resource, kernel_id)
        return session

    def clear_cache(self) -> None:
        """Forget every kernel listing."""
        self.local_finder.clear_cache()

    async def dispose(self) -> None:
        """Close connections to Jupyter servers."""
        await self.session_manager_factory.dispose()

    # Synchronous access

    def list_kernels_sync(
        self,
        resource: str | PathLike | None = None,
        server: JupyterConnectionInfo | None = None,
        include_hidden: bool = False,
    ) -> list[KernelConnectionMetadata]:
        """List kernels from synchronous code."""
        return run_sync(
            self.list_kernels(resource, server, include_hidden=include_hidden),
            background_loop("discovery"),
        )

    def find_kernel_sync(
        self,
        resource: str | PathLike | None = None,
        notebook_metadata: dict[str, Any] | None = None,
        server: JupyterConnectionInfo | None = None,
    ) -> KernelConnectionMetadata | None:
        """Find the preferred kernel from synchronous code."""
        return run_sync(
            self.find_kernel(resource, notebook_metadata, server),
            background_loop("discovery"),
        )
