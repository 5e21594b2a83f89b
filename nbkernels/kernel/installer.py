"""Check for and install the packages a Python kernel needs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nbkernels.async_utils import is_cancelled, race_timeout
from nbkernels.errors import IPyKernelNotInstalledError
from nbkernels.interpreters import interpreter_hash
from nbkernels.kernel.connection import is_local_connection
from nbkernels.process import ProcessService

if TYPE_CHECKING:
    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.interpreters import Interpreter
    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.memento import MemoryMemento

log = logging.getLogger(__name__)

IPYKERNEL = "ipykernel"

_TIMED_OUT = object()


def _memento_key(interpreter: Interpreter | str, module: str) -> str:
    return f"{interpreter_hash(interpreter)}#{module}"


class KernelInstaller:
    """Make sure interpreters have the packages needed to run as kernels.

    Modules known to be installed in an interpreter are remembered in a memento, so
    that later checks need not run the interpreter at all.
    """

    def __init__(
        self,
        memento: MemoryMemento,
        process: ProcessService | None = None,
        config: Config | None = None,
        allow_install: bool = True,
    ) -> None:
        """Create a new installer.

        Args:
            memento: Where known installed modules are remembered
            process: Used to run interpreters
            config: Configuration providing the probe timeout
            allow_install: Whether missing packages may be installed automatically
        """
        self.memento = memento
        self.process = process or ProcessService()
        self.config = config
        self.allow_install = allow_install

    @property
    def probe_timeout(self) -> float:
        """How long to wait for a package version check."""
        if self.config is None:
            return 0.5
        return self.config.package_probe_timeout

    def track_installed(self, interpreter: Interpreter, module: str) -> None:
        """Remember that a module is installed in an interpreter."""
        self.memento.update(_memento_key(interpreter, module), True)

    def clear_installed(self, interpreter_path: str, module: str) -> None:
        """Forget that a module is installed in an interpreter."""
        self.memento.update(_memento_key(interpreter_path, module), None)

    def is_module_present_in_cache(self, interpreter: Interpreter, module: str) -> bool:
        """Determine if a module is known to be installed without running anything."""
        return bool(self.memento.get(_memento_key(interpreter, module), False))

    async def _probe(self, interpreter: Interpreter, module: str) -> bool | None:
        try:
            version = await self.process.get_module_version(interpreter.path, module)
        except OSError:
            log.exception("Failed to get the version of `%s`", module)
            return None
        return version is not None

    async def is_module_present(
        self, interpreter: Interpreter, module: str
    ) -> bool | None:
        """Quickly determine if a module is installed in an interpreter.

        The check is abandoned once the ``package_probe_timeout`` setting expires.

        Returns:
            Whether the module is installed, or :py:const:`None` if it is not known

        """
        if self.is_module_present_in_cache(interpreter, module):
            return True
        result = await race_timeout(
            self._probe(interpreter, module), self.probe_timeout, _TIMED_OUT
        )
        if result is _TIMED_OUT:
            log.debug("Timed out checking for `%s` in `%s`", module, interpreter.path)
            return None
        if result:
            self.track_installed(interpreter, module)
        return result  # type: ignore[return-value]

    async def install(self, interpreter: Interpreter, module: str) -> bool:
        """Install or upgrade a module in an interpreter using ``pip``.

        Returns:
            Whether the installation succeeded

        """
        log.info("Installing `%s` into `%s`", module, interpreter.path)
        try:
            result = await self.process.exec(
                [interpreter.path, "-m", "pip", "install", "-U", module]
            )
        except OSError:
            log.exception("Could not run `%s`", interpreter.path)
            return False
        if result.returncode:
            log.error(
                "Failed to install `%s` into `%s`:\n%s",
                module,
                interpreter.path,
                result.stderr.strip(),
            )
            return False
        self.track_installed(interpreter, module)
        return True

    async def ensure_kernel_usable(
        self,
        connection: KernelConnectionMetadata,
        token: CancellationToken | None = None,
    ) -> None:
        """Make sure a local Python kernel's interpreter has ``ipykernel``.

        Raises:
            IPyKernelNotInstalledError: If ``ipykernel`` is missing and could not be
                installed

        """
        interpreter = connection.interpreter
        if (
            interpreter is None
            or not connection.is_python
            or not is_local_connection(connection)
        ):
            return
        present = await self.is_module_present(interpreter, IPYKERNEL)
        if present is None:
            # The quick check was inconclusive, so wait for a definitive answer
            present = await self.process.is_module_installed(
                interpreter.path, IPYKERNEL
            )
            if present:
                self.track_installed(interpreter, IPYKERNEL)
        if present or is_cancelled(token):
            return
        if self.allow_install and await self.install(interpreter, IPYKERNEL):
            return
        raise IPyKernelNotInstalledError(interpreter.path)
