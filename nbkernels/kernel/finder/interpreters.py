"""Find kernels belonging to Python environments."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING

from nbkernels.interpreters import normalize_path, workspace_root
from nbkernels.kernel.connection import (
    LocalKernelSpecConnection,
    PythonInterpreterConnection,
)
from nbkernels.kernel.finder.base import LocalKernelSpecFinderBase
from nbkernels.kernel.spec import (
    PYTHON_LANGUAGE,
    create_interpreter_kernel_spec,
    is_default_python_kernel_spec,
)

if TYPE_CHECKING:
    from collections.abc import Sequence
    from os import PathLike

    from nbkernels.async_utils import CancellationToken
    from nbkernels.fs import FileSystem
    from nbkernels.interpreters import Interpreter, InterpreterService
    from nbkernels.kernel.finder.known_paths import LocalKnownPathKernelSpecFinder
    from nbkernels.kernel.spec import KernelSpec
    from nbkernels.memento import MemoryMemento

    LocalConnection = LocalKernelSpecConnection | PythonInterpreterConnection

log = logging.getLogger(__name__)


def env_kernel_dir(interpreter: Interpreter) -> str:
    """Return the directory in which an environment's kernel specs are installed."""
    return os.path.join(interpreter.sys_prefix, "share", "jupyter", "kernels")


def _match_interpreter(
    spec: KernelSpec, interpreters: Sequence[Interpreter]
) -> Interpreter | None:
    """Find the interpreter a global kernel spec launches, if it is known."""
    by_path = {normalize_path(i.path): i for i in interpreters}
    for candidate in (spec.interpreter_path, spec.path):
        if candidate and os.path.isabs(candidate):
            if (interpreter := by_path.get(normalize_path(candidate))) is not None:
                return interpreter
    return None


class LocalPythonAndRelatedNonPythonKernelSpecFinder(LocalKernelSpecFinderBase):
    """Find interpreters, and the kernel specs installed in their environments.

    Each interpreter yields a connection which launches ``ipykernel`` in it. Kernel
    specs installed inside an environment, of any language, are bound to that
    environment's interpreter. Python kernel specs from the known kernel directories
    are bound to the interpreter they launch.

    Nothing is found while Python environment support is not installed.
    """

    def __init__(
        self,
        fs: FileSystem,
        memento: MemoryMemento,
        interpreter_service: InterpreterService,
        known_path_finder: LocalKnownPathKernelSpecFinder,
    ) -> None:
        """Create a new finder.

        Args:
            fs: The file-system to search
            memento: Stores the location of backed up kernel specs
            interpreter_service: Lists the interpreters to search
            known_path_finder: Provides the Python kernel specs in the known kernel
                directories
        """
        super().__init__(fs, memento, interpreter_service)
        self.interpreter_service: InterpreterService = interpreter_service
        self.known_path_finder = known_path_finder

    async def list_kernel_specs(
        self,
        resource: str | PathLike | None = None,
        token: CancellationToken | None = None,
        ignore_cache: bool = False,
    ) -> list[LocalConnection]:
        """List the kernels associated with the interpreters available to a resource.

        Args:
            resource: The notebook the kernels are for
            token: Cancels waiting for the listing
            ignore_cache: Whether to search again even if a listing is cached

        Returns:
            The kernels found

        """
        root = workspace_root(resource)
        return await self.list_kernels_with_cache(
            f"interpreters:{root or 'global'}",
            True,
            lambda: self._find(resource),
            ignore_cache,
            token,
        )

    async def _find(self, resource: str | PathLike | None) -> list[LocalConnection]:
        if not self.is_dependency_installed:
            return []

        interpreters, global_specs = await asyncio.gather(
            self.interpreter_service.get_interpreters(resource),
            self.known_path_finder.list_global_python_kernel_specs(),
        )

        results: list[LocalConnection] = [
            PythonInterpreterConnection(
                create_interpreter_kernel_spec(interpreter), interpreter
            )
            for interpreter in interpreters
        ]

        results.extend(await self._find_env_kernels(interpreters))

        env_dirs = {os.path.normpath(env_kernel_dir(i)) for i in interpreters}
        for spec in global_specs:
            # Already loaded from the environment's own kernel directory
            if os.path.normpath(os.path.dirname(spec.resource_dir)) in env_dirs:
                continue
            interpreter = _match_interpreter(spec, interpreters)
            results.append(LocalKernelSpecConnection(spec, interpreter))

        log.debug("Found %d interpreter kernels for `%s`", len(results), resource)
        return results

    async def _find_env_kernels(
        self, interpreters: Sequence[Interpreter]
    ) -> list[LocalKernelSpecConnection]:
        """Load the kernel specs installed inside each interpreter's environment."""
        known_roots = set(self.known_path_finder.kernel_spec_roots)
        files = await self.find_kernel_specs_in_paths(
            [(interp, env_kernel_dir(interp)) for interp in interpreters]
        )
        specs = await asyncio.gather(
            *(
                self.get_kernel_spec(file.spec_file, file.interpreter)
                for file in files
            )
        )
        results = []
        for file, spec in zip(files, specs):
            if spec is None:
                continue
            if spec.language.lower() == PYTHON_LANGUAGE:
                # The interpreter's own connection already launches these
                if is_default_python_kernel_spec(spec):
                    continue
            elif os.path.normpath(file.root) in known_roots:
                # Listed by the known path finder
                continue
            results.append(LocalKernelSpecConnection(spec, file.interpreter))
        return results
