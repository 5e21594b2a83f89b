"""Find kernel specs in the standard Jupyter kernel directories."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import TYPE_CHECKING

from jupyter_core.paths import jupyter_path

from nbkernels.async_utils import is_cancelled
from nbkernels.kernel.connection import LocalKernelSpecConnection
from nbkernels.kernel.finder.base import LocalKernelSpecFinderBase
from nbkernels.kernel.spec import PYTHON_LANGUAGE

if TYPE_CHECKING:
    from nbkernels.async_utils import CancellationToken
    from nbkernels.config import Config
    from nbkernels.fs import FileSystem
    from nbkernels.interpreters import InterpreterService
    from nbkernels.kernel.spec import KernelSpec
    from nbkernels.memento import MemoryMemento

log = logging.getLogger(__name__)


class LocalKnownPathKernelSpecFinder(LocalKernelSpecFinderBase):
    """Find kernel specs registered in the Jupyter data directories.

    The ``kernel_search_paths`` setting lists further directories to search.
    """

    def __init__(
        self,
        fs: FileSystem,
        memento: MemoryMemento,
        interpreter_service: InterpreterService | None = None,
        config: Config | None = None,
    ) -> None:
        """Create a new finder."""
        super().__init__(fs, memento, interpreter_service)
        self.config = config

    @property
    def kernel_spec_roots(self) -> list[str]:
        """The directories which contain kernel spec folders, in order of priority."""
        roots = list(jupyter_path("kernels"))
        if self.config is not None:
            roots.extend(
                os.path.expanduser(path) for path in self.config.kernel_search_paths
            )
        return list(dict.fromkeys(os.path.normpath(root) for root in roots))

    async def list_kernel_specs(
        self,
        include_python: bool,
        token: CancellationToken | None = None,
        ignore_cache: bool = False,
    ) -> list[LocalKernelSpecConnection]:
        """List the kernel specs in the known kernel directories.

        Args:
            include_python: Whether to include Python kernel specs. These are
                excluded when they are associated with interpreters instead
            token: Cancels waiting for the listing
            ignore_cache: Whether to search again even if a listing is cached

        Returns:
            A connection for each kernel spec

        """

        async def _finder() -> list[LocalKernelSpecConnection]:
            return [
                LocalKernelSpecConnection(spec)
                for spec in await self._find_kernel_specs()
                if include_python or spec.language.lower() != PYTHON_LANGUAGE
            ]

        return await self.list_kernels_with_cache(  # type: ignore[return-value]
            f"known-paths:{include_python}", False, _finder, ignore_cache, token
        )

    async def list_global_python_kernel_specs(
        self, token: CancellationToken | None = None
    ) -> list[KernelSpec]:
        """List the Python kernel specs in the known kernel directories."""
        return [
            spec
            for spec in await self._find_kernel_specs(token)
            if spec.language.lower() == PYTHON_LANGUAGE
        ]

    async def _find_kernel_specs(
        self, token: CancellationToken | None = None
    ) -> list[KernelSpec]:
        files = await self.find_kernel_specs_in_paths(self.kernel_spec_roots, token)
        specs = await asyncio.gather(
            *(
                self.get_kernel_spec(file.spec_file, global_root=file.root, token=token)
                for file in files
            )
        )
        if is_cancelled(token):
            return []

        old_folder = self.old_kernel_specs_folder
        results = []
        for spec in specs:
            if spec is None:
                continue
            # Skip kernel specs which were restored from a backup
            original = spec.provenance.get("originalSpecFile", "")
            if old_folder and original.startswith(old_folder):
                continue
            results.append(spec)
        log.debug("Found %d kernel specs in known paths", len(results))
        return results
