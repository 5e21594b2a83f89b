"""Sessions against local kernels, spoken to directly over ZeroMQ."""

from __future__ import annotations

import asyncio
import logging
import os
import re
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from subprocess import PIPE, STDOUT
from typing import TYPE_CHECKING, TypedDict

from jupyter_client import AsyncKernelManager
from jupyter_client.kernelspec import KernelSpec as JupyterKernelSpec
from jupyter_client.provisioning.local_provisioner import LocalProvisioner

from nbkernels.errors import KernelDiedError, KernelIdleTimeoutError
from nbkernels.kernel.session.base import BaseKernelSession

if TYPE_CHECKING:
    from collections.abc import Callable
    from os import PathLike
    from typing import Any, Literal, TextIO

    from jupyter_client.asynchronous.client import AsyncKernelClient
    from jupyter_client.connect import KernelConnectionInfo

    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.kernel.installer import KernelInstaller
    from nbkernels.kernel.spec import KernelSpec

    KernelManagerFactory = Callable[[KernelConnectionMetadata], "NbKernelManager"]

log = logging.getLogger(__name__)

PROVISIONER_NAME = "nbkernels-local-provisioner"


class KernelConnection(TypedDict):
    """The information needed to connect to a kernel's sockets."""

    shell_port: int
    iopub_port: int
    stdin_port: int
    control_port: int
    hb_port: int
    ip: str
    key: str
    transport: Literal["tcp", "ipc"]
    signature_scheme: str
    kernel_name: str


class LoggingLocalProvisioner(LocalProvisioner):  # type:ignore[misc]
    """Launches local kernels, copying whatever they print into the log."""

    async def launch_kernel(
        self, cmd: list[str], **kwargs: Any
    ) -> KernelConnectionInfo:
        """Start the kernel process and a thread logging its output."""
        info = await super().launch_kernel(cmd, **kwargs)
        if (process := self.process) is not None and process.stdout is not None:
            threading.Thread(
                target=_log_lines,
                args=(process.stdout, self.kernel_id),
                name=f"kernel-output-{self.kernel_id}",
                daemon=True,
            ).start()
        return info


def _log_lines(stream: TextIO, kernel_id: str) -> None:
    """Log each line a kernel prints until its output is closed."""
    with stream:
        try:
            for line in stream:
                log.info("[%s] %s", kernel_id, line.rstrip())
        except ValueError:
            # The stream was closed while reading
            return


def set_default_provisioner() -> None:
    """Launch kernels with :py:class:`LoggingLocalProvisioner` unless told not to."""
    from jupyter_client.provisioning import KernelProvisionerFactory

    KernelProvisionerFactory.instance().default_provisioner_name = PROVISIONER_NAME


def to_jupyter_kernel_spec(spec: KernelSpec) -> JupyterKernelSpec:
    """Convert a kernel spec into the form used by :py:mod:`jupyter_client`."""
    kwargs: dict[str, Any] = {
        "argv": list(spec.argv),
        "name": spec.name,
        "display_name": spec.display_name,
        "language": spec.language,
        "env": dict(spec.env or {}),
        "metadata": dict(spec.metadata),
        "resource_dir": spec.resource_dir,
    }
    if spec.interrupt_mode:
        kwargs["interrupt_mode"] = spec.interrupt_mode
    return JupyterKernelSpec(**kwargs)


_PYTHON_COMMANDS = {
    "python",
    f"python{sys.version_info[0]}",
    "python{}.{}".format(*sys.version_info[:2]),
}
_TEMPLATE_FIELD = re.compile(r"\{(\w+)\}")


class NbKernelManager(AsyncKernelManager):
    """A kernel manager which launches one of our kernel specs.

    The kernel spec is given directly rather than looked up by name, so kernels which
    are not registered with Jupyter can be launched.

    ``jupyter_client`` replaces a plain ``python`` command with the current executable.
    Instead, the interpreter the kernel spec belongs to is used where it is known.
    """

    def __init__(
        self,
        kernel_spec: KernelSpec,
        interpreter_path: str | None = None,
        **kwargs: Any,
    ) -> None:
        """Create a kernel manager for a kernel spec.

        Args:
            kernel_spec: The kernel spec to launch
            interpreter_path: The interpreter to run bare ``python`` commands with
            kwargs: Additional key-word arguments passed to the parent class
        """
        super().__init__(kernel_name=kernel_spec.name, **kwargs)
        self.interpreter_path = interpreter_path
        self._kernel_spec = to_jupyter_kernel_spec(kernel_spec)

    def _python(self) -> str:
        """The executable which should replace a bare ``python`` command."""
        if self.interpreter_path:
            return self.interpreter_path
        resource_dir = self.kernel_spec.resource_dir
        if resource_dir and Path(sys.prefix) in Path(resource_dir).parents:
            return sys.executable
        return getattr(sys, "_base_executable", sys.executable)

    def format_kernel_cmd(self, extra_arguments: list[str] | None = None) -> list[str]:
        """Build the kernel's command line, filling in its ``{template}`` fields.

        Unknown fields are left as they are.
        """
        spec = self.kernel_spec
        cmd = [*spec.argv, *(extra_arguments or [])]
        if cmd and cmd[0] in _PYTHON_COMMANDS:
            cmd[0] = self._python()

        # The real path avoids kernels failing to find connection files given
        # through symlinked temporary directories
        fields = {
            "connection_file": os.path.realpath(self.connection_file),
            "prefix": sys.prefix,
            **({"resource_dir": spec.resource_dir} if spec.resource_dir else {}),
            **{str(k): str(v) for k, v in (self._launch_args or {}).items()},
        }
        return [
            _TEMPLATE_FIELD.sub(lambda m: fields.get(m.group(1), m.group()), arg)
            for arg in cmd
        ]


def default_kernel_manager_factory(
    connection: KernelConnectionMetadata,
) -> NbKernelManager:
    """Create a kernel manager for a local kernel connection."""
    return NbKernelManager(
        kernel_spec=connection.kernel_spec,
        interpreter_path=connection.interpreter_path,
    )


@dataclass
class RawSessionHandle:
    """A kernel process and a client connected to it."""

    manager: NbKernelManager
    client: AsyncKernelClient
    monitor_task: asyncio.Task | None = None


class RawKernelSession(BaseKernelSession[RawSessionHandle]):
    """A session which launches a local kernel process and talks to it directly.

    A kernel which dies unexpectedly is restarted if the ``autorestart`` setting is
    enabled.
    """

    #: Seconds between checks that the kernel is still alive
    monitor_interval = 1.0

    def __init__(
        self,
        connection: KernelConnectionMetadata,
        installer: KernelInstaller | None = None,
        resource: str | PathLike | None = None,
        working_directory: str = "",
        config: Config | None = None,
        kernel_manager_factory: KernelManagerFactory | None = None,
    ) -> None:
        """Create a new session.

        Args:
            connection: The local kernel to launch
            installer: Ensures Python kernels have ``ipykernel``
            resource: The notebook the session is for
            working_directory: The directory the kernel should start in. Defaults to
                the notebook's directory
            config: Configuration providing timeouts and the ``autorestart`` setting
            kernel_manager_factory: Creates the kernel manager for each kernel
        """
        super().__init__(connection, resource, config)
        self.installer = installer
        if not working_directory and resource is not None:
            working_directory = os.path.dirname(os.path.abspath(resource))
        self.working_directory = working_directory
        if kernel_manager_factory is None:
            set_default_provisioner()
            kernel_manager_factory = default_kernel_manager_factory
        self.kernel_manager_factory = kernel_manager_factory

    @property
    def autorestart(self) -> bool:
        """Whether to restart kernels which die unexpectedly."""
        if self.config is None:
            return True
        return self.config.autorestart

    @property
    def connection_info(self) -> KernelConnection | None:
        """The connection details of the running kernel."""
        if self.session is None:
            return None
        manager = self.session.manager
        info = manager.get_connection_info()
        key = info.get("key", b"")
        return KernelConnection(
            shell_port=info["shell_port"],
            iopub_port=info["iopub_port"],
            stdin_port=info["stdin_port"],
            control_port=info["control_port"],
            hb_port=info["hb_port"],
            ip=info["ip"],
            key=key.decode() if isinstance(key, bytes) else key,
            transport=info["transport"],
            signature_scheme=info.get("signature_scheme") or "hmac-sha256",
            kernel_name=self.connection.kernel_spec.name,
        )

    async def start_session(
        self, token: CancellationToken | None = None
    ) -> RawSessionHandle:
        """Launch a kernel process and connect a client to it."""
        if self.installer is not None:
            await self.installer.ensure_kernel_usable(self.connection, token)
        manager = self.kernel_manager_factory(self.connection)
        kwargs: dict[str, Any] = {"stdout": PIPE, "stderr": STDOUT, "text": True}
        if self.working_directory:
            kwargs["cwd"] = self.working_directory
        await manager.start_kernel(**kwargs)
        log.info("Started kernel `%s`", self.connection.display_name)
        client = manager.client()
        client.start_channels()
        return RawSessionHandle(manager=manager, client=client)

    async def get_session_status(self, session: RawSessionHandle) -> str:
        """Report whether the kernel process is still running."""
        return "idle" if await session.manager.is_alive() else "dead"

    async def wait_for_idle_on_session(
        self, session: RawSessionHandle, timeout: float
    ) -> None:
        """Wait until the kernel answers a ``kernel_info`` request."""
        try:
            await session.client.wait_for_ready(timeout=timeout)
        except RuntimeError as error:
            if not await session.manager.is_alive():
                raise KernelDiedError(str(error)) from error
            raise KernelIdleTimeoutError(timeout) from error

    async def shutdown_session(self, session: RawSessionHandle) -> None:
        """Stop the client and shut down the kernel process."""
        if session.monitor_task is not None:
            session.monitor_task.cancel()
            session.monitor_task = None
        session.client.stop_channels()
        if session.manager.has_kernel:
            await session.manager.shutdown_kernel()
        log.debug("Kernel `%s` shut down", session.manager.kernel_id)

    async def restart_session(self, session: RawSessionHandle) -> None:
        """Restart the kernel process, keeping its ports."""
        await session.manager.restart_kernel()

    async def interrupt_session(self, session: RawSessionHandle) -> None:
        """Interrupt the kernel."""
        await session.manager.interrupt_kernel()

    def activate_session(self, session: RawSessionHandle) -> None:
        """Start watching the primary kernel for unexpected exits."""
        if session.monitor_task is None:
            session.monitor_task = asyncio.ensure_future(self.monitor_status(session))

    async def monitor_status(self, session: RawSessionHandle) -> None:
        """Regularly check the kernel is alive, restarting it if it has died."""
        while not self.disposed and self.session is session:
            await asyncio.sleep(self.monitor_interval)
            if self.status in ("restarting", "autorestarting", "connecting"):
                continue
            if await session.manager.is_alive():
                continue
            log.warning(
                "Kernel `%s` appears to have died", self.connection.display_name
            )
            if not self.autorestart:
                self.status = "dead"
                break
            self.status = "autorestarting"
            try:
                await session.manager.restart_kernel(now=True)
                await self.wait_for_idle_on_session(session, self.idle_timeout)
            except Exception:
                log.exception("Failed to restart kernel")
                self.status = "dead"
                break
            log.info("Kernel `%s` restarted", self.connection.display_name)
            self.status = "idle"
