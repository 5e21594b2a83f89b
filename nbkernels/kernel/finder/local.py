"""Find every kernel which can be launched on this machine."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from nbkernels.async_utils import is_cancelled
from nbkernels.cache import AsyncCache
from nbkernels.interpreters import workspace_root
from nbkernels.kernel.finder.base import dedupe_and_sort
from nbkernels.kernel.matching import find_preferred_kernel

if TYPE_CHECKING:
    from os import PathLike
    from typing import Any

    from nbkernels.async_utils import CancellationToken
    from nbkernels.interpreters import Interpreter, InterpreterService
    from nbkernels.kernel.connection import (
        LocalKernelSpecConnection,
        PythonInterpreterConnection,
    )
    from nbkernels.kernel.finder.interpreters import (
        LocalPythonAndRelatedNonPythonKernelSpecFinder,
    )
    from nbkernels.kernel.finder.known_paths import LocalKnownPathKernelSpecFinder

    LocalConnection = LocalKernelSpecConnection | PythonInterpreterConnection

log = logging.getLogger(__name__)


class LocalKernelFinder:
    """Combine the kernels found in the known kernel directories and interpreters.

    Listings are cached per workspace until :py:meth:`clear_cache` is called, the
    list of interpreters changes, or Python environment support is installed.
    Removing support keeps the cached listings.
    """

    def __init__(
        self,
        known_path_finder: LocalKnownPathKernelSpecFinder,
        interpreter_finder: LocalPythonAndRelatedNonPythonKernelSpecFinder,
        interpreter_service: InterpreterService,
    ) -> None:
        """Create a new finder.

        Args:
            known_path_finder: Finds kernel specs in the known kernel directories
            interpreter_finder: Finds kernels belonging to interpreters
            interpreter_service: Provides the active interpreter, and notifies of
                changes to the available interpreters
        """
        self.known_path_finder = known_path_finder
        self.interpreter_finder = interpreter_finder
        self.interpreter_service = interpreter_service

        self._cache: AsyncCache[str, list[LocalConnection]] = AsyncCache()
        self._last_listing: list[LocalConnection] | None = None
        self._last_resource: str | PathLike | None = None
        self._last_active_interpreter: Interpreter | None = None

        interpreter_service.interpreters_changed += self._on_interpreters_changed
        interpreter_service.dependency_changed += self._on_dependency_changed

    def _on_interpreters_changed(self, sender: InterpreterService) -> None:
        log.debug("Python environments changed, clearing the local kernel cache")
        self.clear_cache()

    def _on_dependency_changed(self, sender: InterpreterService) -> None:
        if sender.is_dependency_installed:
            log.debug("Python support was installed, clearing the local kernel cache")
            self.clear_cache()

    def clear_cache(self) -> None:
        """Forget all previously found kernels."""
        self._cache.invalidate_all()
        self._last_listing = None
        self.known_path_finder.clear_cache()
        self.interpreter_finder.clear_cache()

    async def list_kernels(
        self,
        resource: str | PathLike | None = None,
        token: CancellationToken | None = None,
        use_cache: bool = True,
    ) -> list[LocalConnection]:
        """List the local kernels available to a resource.

        Concurrent calls for the same workspace share a single search, which runs
        to completion even if some of the callers cancel.

        Args:
            resource: The notebook the kernels are for
            token: Cancels waiting for the listing. A cancelled caller gets an empty
                list
            use_cache: Whether a previous listing may be returned

        Returns:
            The kernels found, sorted by display name

        """
        root = workspace_root(resource)
        key = str(root) if root is not None else "global"
        if not use_cache:
            self._cache.invalidate(key)
        kernels = await asyncio.shield(
            self._cache.get(key, lambda: self._list(resource, use_cache))
        )
        if is_cancelled(token):
            return []
        self._last_listing = kernels
        self._last_resource = resource
        return kernels

    async def _list(
        self, resource: str | PathLike | None, use_cache: bool
    ) -> list[LocalConnection]:
        # Python kernel specs are listed as plain kernel specs when they cannot be
        # associated with interpreters
        include_python = not self.interpreter_service.is_dependency_installed
        results = await asyncio.gather(
            self.known_path_finder.list_kernel_specs(
                include_python, ignore_cache=not use_cache
            ),
            self.interpreter_finder.list_kernel_specs(
                resource, ignore_cache=not use_cache
            ),
            return_exceptions=True,
        )
        kernels: list[LocalConnection] = []
        for source, result in zip(("known path", "interpreter"), results):
            if isinstance(result, BaseException):
                log.error("Failed to list %s kernels", source, exc_info=result)
                continue
            kernels.extend(result)
        kernels = dedupe_and_sort(kernels)
        log.debug("Found %d local kernels for `%s`", len(kernels), resource)
        return kernels

    async def find_kernel(
        self,
        resource: str | PathLike | None = None,
        notebook_metadata: dict[str, Any] | None = None,
        token: CancellationToken | None = None,
    ) -> LocalConnection | None:
        """Find the local kernel best suited to a notebook.

        Args:
            resource: The notebook's path
            notebook_metadata: The notebook's metadata
            token: Cancels the search

        Returns:
            The preferred kernel, or :py:const:`None` if none is suitable

        """
        kernels = await self.list_kernels(resource, token)
        if is_cancelled(token):
            return None
        active_interpreter = None
        if self.interpreter_service.is_dependency_installed:
            active_interpreter = await self.interpreter_service.get_active_interpreter(
                resource
            )
            self._last_active_interpreter = active_interpreter
        return find_preferred_kernel(  # type: ignore[return-value]
            kernels, notebook_metadata, resource, active_interpreter
        )

    def find_preferred_local_kernel_from_cache(
        self, notebook_metadata: dict[str, Any] | None = None
    ) -> LocalConnection | None:
        """Choose a kernel from the most recent listing without searching again.

        Returns:
            The preferred kernel, or :py:const:`None` if nothing has been listed yet

        """
        if not self._last_listing:
            return None
        return find_preferred_kernel(  # type: ignore[return-value]
            self._last_listing,
            notebook_metadata,
            self._last_resource,
            self._last_active_interpreter,
        )
