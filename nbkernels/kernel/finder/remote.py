"""Find kernels on Jupyter servers."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from nbkernels.async_utils import is_cancelled
from nbkernels.kernel.connection import (
    LiveKernelModel,
    LiveRemoteKernelConnection,
    RemoteKernelSpecConnection,
)
from nbkernels.kernel.finder.base import dedupe_and_sort
from nbkernels.kernel.matching import find_preferred_kernel
from nbkernels.kernel.spec import KernelSpec

if TYPE_CHECKING:
    from os import PathLike
    from typing import Any

    from nbkernels.async_utils import CancellationToken
    from nbkernels.interpreters import Interpreter, InterpreterService
    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.kernel.preferred import PreferredRemoteKernelIdProvider
    from nbkernels.kernel.server import JupyterConnectionInfo, SessionManagerFactory

    RemoteConnection = LiveRemoteKernelConnection | RemoteKernelSpecConnection

log = logging.getLogger(__name__)


class RemoteKernelFinder:
    """List the kernel specs and running kernels of a Jupyter server.

    Kernels started as standbys for restarts are hidden until they are swapped in.
    """

    def __init__(
        self,
        session_manager_factory: SessionManagerFactory,
        preferred_remote_kernel_id_provider: PreferredRemoteKernelIdProvider,
        interpreter_service: InterpreterService | None = None,
    ) -> None:
        """Create a new finder.

        Args:
            session_manager_factory: Creates clients for servers, and announces
                restart sessions
            preferred_remote_kernel_id_provider: Remembers the live kernel each
                notebook last used
            interpreter_service: Describes interpreters on this machine, used for
                servers running locally
        """
        self.session_manager_factory = session_manager_factory
        self.preferred_remote_kernel_id_provider = preferred_remote_kernel_id_provider
        self.interpreter_service = interpreter_service
        self.kernel_ids_to_hide: set[str] = set()

        session_manager_factory.restart_session_created += self._hide_kernel
        session_manager_factory.restart_session_used += self._show_kernel

    def _hide_kernel(self, sender: SessionManagerFactory) -> None:
        if sender.last_restart_kernel_id:
            self.kernel_ids_to_hide.add(sender.last_restart_kernel_id)

    def _show_kernel(self, sender: SessionManagerFactory) -> None:
        if sender.last_restart_kernel_id:
            self.kernel_ids_to_hide.discard(sender.last_restart_kernel_id)

    async def _get_interpreter(
        self, spec: KernelSpec, connection: JupyterConnectionInfo
    ) -> Interpreter | None:
        """Describe the interpreter a kernel spec on a local server launches."""
        if (
            self.interpreter_service is None
            or not connection.is_loopback
            or not spec.path
        ):
            return None
        try:
            return await self.interpreter_service.get_interpreter_details(spec.path)
        except Exception:
            log.debug("Could not describe interpreter `%s`", spec.path, exc_info=True)
            return None

    async def list_kernels(
        self,
        resource: str | PathLike | None,
        connection: JupyterConnectionInfo | None,
        token: CancellationToken | None = None,
    ) -> list[RemoteConnection]:
        """List the kernels available on a Jupyter server.

        Args:
            resource: The notebook the kernels are for
            connection: The server to query. Only ``jupyter`` servers have kernels
                to list
            token: Cancels the search

        Returns:
            A connection for each running kernel and for each kernel spec, sorted
            by display name. Sessions sharing a kernel give a single connection

        """
        if connection is None or connection.type != "jupyter":
            return []
        client = self.session_manager_factory.create(connection)
        running, spec_models, sessions = await asyncio.gather(
            client.get_running_kernels(),
            client.get_kernel_specs(),
            client.get_running_sessions(),
        )
        if is_cancelled(token):
            return []

        specs = [KernelSpec.from_model(model) for model in spec_models]
        interpreters = await asyncio.gather(
            *(self._get_interpreter(spec, connection) for spec in specs)
        )
        spec_connections = [
            RemoteKernelSpecConnection(spec, connection.base_url, interpreter)
            for spec, interpreter in zip(specs, interpreters)
        ]

        specs_by_name = {spec.name: spec for spec in specs}
        running_by_id = {kernel.get("id"): kernel for kernel in running}
        hidden = set(self.kernel_ids_to_hide)
        live_connections = []
        for session in sessions:
            kernel_id = (session.get("kernel") or {}).get("id", "")
            if kernel_id in hidden:
                continue
            model = LiveKernelModel.from_models(
                session,
                running_by_id.get(kernel_id),
                specs_by_name.get((session.get("kernel") or {}).get("name", "")),
            )
            live_connections.append(
                LiveRemoteKernelConnection(model, connection.base_url)
            )

        log.debug(
            "Found %d live kernels and %d kernel specs on `%s` for `%s`",
            len(live_connections),
            len(spec_connections),
            connection.base_url,
            resource,
        )
        return dedupe_and_sort([*live_connections, *spec_connections])

    async def find_kernel(
        self,
        resource: str | PathLike | None,
        connection: JupyterConnectionInfo | None,
        notebook_metadata: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
    ) -> KernelConnectionMetadata | None:
        """Find the kernel on a server best suited to a notebook.

        The live kernel the notebook last used is preferred if it is still running.

        Returns:
            The preferred kernel, or :py:const:`None` if none is suitable or the
            server could not be queried

        """
        provider = self.preferred_remote_kernel_id_provider
        try:
            kernels = await self.list_kernels(resource, connection, token)
            return find_preferred_kernel(
                kernels,
                notebook_metadata,
                resource,
                preferred_remote_kernel_id=provider.get_preferred_remote_kernel_id(
                    resource
                ),
            )
        except Exception:
            log.exception("Failed to find a remote kernel")
            return None
