"""Shared machinery for finding kernel specs on the local file-system."""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

from nbkernels.async_utils import is_cancelled
from nbkernels.cache import AsyncCache
from nbkernels.kernel.spec import (
    OLD_KERNEL_SPECS_FOLDER_NAME,
    RegistrationInfo,
    load_kernel_spec,
)

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Sequence
    from typing import Any

    from nbkernels.async_utils import CancellationToken
    from nbkernels.fs import FileSystem
    from nbkernels.interpreters import Interpreter, InterpreterService
    from nbkernels.kernel.connection import (
        KernelConnectionMetadata,
        LocalKernelSpecConnection,
        PythonInterpreterConnection,
    )
    from nbkernels.kernel.spec import KernelSpec
    from nbkernels.memento import MemoryMemento

    LocalConnection = LocalKernelSpecConnection | PythonInterpreterConnection

log = logging.getLogger(__name__)

_C = TypeVar("_C", bound="KernelConnectionMetadata")

OLD_KERNEL_SPECS_FOLDER_KEY = "OLD_KERNEL_SPECS_FOLDER"


@dataclass
class KernelSpecFile:
    """A ``kernel.json`` file, and the interpreter whose environment holds it."""

    spec_file: str
    interpreter: Interpreter | None = None
    #: The directory which was searched to find the file
    root: str = ""


@dataclass
class _ListingCacheEntry:
    depends_on_dependency: bool
    was_dependency_installed: bool
    task: asyncio.Future[list[Any]]


def dedupe_and_sort(items: Sequence[_C]) -> list[_C]:
    """Remove connections with duplicate ids and sort them by display name.

    The first connection with each id is kept. Connections with the same display
    name are ordered by their interpreter path.
    """
    distinct: dict[str, _C] = {}
    for item in items:
        distinct.setdefault(item.id, item)
    return sorted(
        distinct.values(),
        key=lambda c: (c.display_name.casefold(), c.interpreter_path or ""),
    )


def _old_spec_file(spec: KernelSpec | None, global_root: str | None) -> str | None:
    """Return the file of a kernel spec registered by an older version, if any.

    Only kernel specs directly under ``global_root`` are considered.
    """
    if spec is None or global_root is None or spec.spec_file is None:
        return None
    if spec.registration_info != RegistrationInfo.OLD_VERSION:
        return None
    spec_root = os.path.dirname(os.path.dirname(spec.spec_file))
    if os.path.normpath(spec_root) != os.path.normpath(global_root):
        return None
    return spec.spec_file


class LocalKernelSpecFinderBase:
    """Load kernel specs from disk, remembering what has been found."""

    def __init__(
        self,
        fs: FileSystem,
        memento: MemoryMemento,
        interpreter_service: InterpreterService | None = None,
    ) -> None:
        """Create a new finder.

        Args:
            fs: The file-system to search
            memento: Stores the location of backed up kernel specs
            interpreter_service: Reports whether Python environment support is
                installed
        """
        self.fs = fs
        self.memento = memento
        self.interpreter_service = interpreter_service
        self._listing_cache: dict[str, _ListingCacheEntry] = {}
        self._spec_cache: AsyncCache[tuple[str, str], KernelSpec | None] = AsyncCache()
        self._old_kernel_specs_folder: str | None = None

    @property
    def is_dependency_installed(self) -> bool:
        """Whether Python environment support is currently installed."""
        if self.interpreter_service is None:
            return False
        return self.interpreter_service.is_dependency_installed

    @property
    def old_kernel_specs_folder(self) -> str:
        """The folder into which obsolete kernel specs were last moved."""
        return self._old_kernel_specs_folder or self.memento.get(
            OLD_KERNEL_SPECS_FOLDER_KEY, ""
        )

    @old_kernel_specs_folder.setter
    def old_kernel_specs_folder(self, value: str) -> None:
        self._old_kernel_specs_folder = value
        self.memento.update(OLD_KERNEL_SPECS_FOLDER_KEY, value)

    def clear_cache(self) -> None:
        """Forget all previous listings and loaded kernel specs."""
        self._listing_cache.clear()
        self._spec_cache.invalidate_all()

    async def list_kernels_with_cache(
        self,
        cache_key: str,
        depends_on_dependency: bool,
        finder: Callable[[], Coroutine[Any, Any, Sequence[LocalConnection]]],
        ignore_cache: bool = False,
        token: CancellationToken | None = None,
    ) -> list[LocalConnection]:
        """Return a cached listing, or run ``finder`` to create one.

        The search is shared by every caller asking for the same listing and runs to
        completion whatever their tokens.

        Args:
            cache_key: Identifies the listing
            depends_on_dependency: Whether the listing changes when Python
                environment support is installed. If so, a listing made while it was
                missing is discarded once it is installed
            finder: Called to find the kernels if there is no usable cached listing
            ignore_cache: If :py:const:`True`, always run the finder
            token: Cancels waiting for the listing. A cancelled caller gets an empty
                list

        Returns:
            The kernels found, without duplicates and sorted by display name

        """
        entry = self._listing_cache.get(cache_key)
        installed = self.is_dependency_installed
        if entry is not None and not ignore_cache:
            # Uninstalling never invalidates an entry
            if (
                not entry.depends_on_dependency
                or entry.was_dependency_installed
                or not installed
            ):
                return await self._await_listing(entry.task, token)
            log.debug("Python support was installed, discarding `%s`", cache_key)

        async def _find() -> list[LocalConnection]:
            return dedupe_and_sort(await finder())

        task = asyncio.ensure_future(_find())
        self._listing_cache[cache_key] = _ListingCacheEntry(
            depends_on_dependency, installed, task
        )

        def _evict_failed(t: asyncio.Future) -> None:
            if (t.cancelled() or t.exception()) and (
                (current := self._listing_cache.get(cache_key)) is not None
                and current.task is t
            ):
                del self._listing_cache[cache_key]

        task.add_done_callback(_evict_failed)
        return await self._await_listing(task, token)

    @staticmethod
    async def _await_listing(
        task: asyncio.Future[list[Any]], token: CancellationToken | None
    ) -> list[LocalConnection]:
        result = await asyncio.shield(task)
        if is_cancelled(token):
            return []
        return result

    async def get_kernel_spec(
        self,
        spec_file: str,
        interpreter: Interpreter | None = None,
        global_root: str | None = None,
        token: CancellationToken | None = None,
    ) -> KernelSpec | None:
        """Load a kernel spec, using a previously loaded copy if there is one.

        Kernel specs registered by an older version of this package which live
        directly under ``global_root`` are moved into a backup folder and not
        returned.
        """
        if OLD_KERNEL_SPECS_FOLDER_NAME in spec_file:
            return None
        key = (spec_file, interpreter.path if interpreter else "")
        spec = await self._spec_cache.get(
            key, lambda: load_kernel_spec(spec_file, self.fs, interpreter, token)
        )
        old_spec_file = _old_spec_file(spec, global_root)
        if spec is not None and old_spec_file is None:
            return spec
        if old_spec_file is not None:
            try:
                await self.migrate_old_kernel_spec(old_spec_file)
            except OSError:
                log.exception("Failed to move old kernel spec `%s`", old_spec_file)
        # Look on disk again next time
        self._spec_cache.invalidate(key)
        return None

    async def migrate_old_kernel_spec(self, spec_file: str) -> None:
        """Move an obsolete kernel spec into the backup folder.

        The kernel spec is copied first, and only deleted if the copy succeeded.
        """
        spec_dir = os.path.dirname(spec_file)
        destination_folder = os.path.join(
            os.path.dirname(spec_dir), OLD_KERNEL_SPECS_FOLDER_NAME
        )
        self.old_kernel_specs_folder = destination_folder
        destination = os.path.join(
            destination_folder, os.path.basename(spec_dir), os.path.basename(spec_file)
        )
        await self.fs.ensure_dir(os.path.dirname(destination))
        try:
            await self.fs.copy(spec_file, destination)
        except OSError:
            log.error(
                "Could not back up old kernel spec `%s`, so it was not removed",
                spec_file,
            )
            return
        await self.fs.delete(spec_file)
        log.info(
            "Old kernel spec `%s` deleted and a backup stored in `%s`",
            spec_file,
            destination_folder,
        )

    async def find_kernel_specs_in_paths(
        self,
        paths: Sequence[str | tuple[Interpreter, str]],
        token: CancellationToken | None = None,
    ) -> list[KernelSpecFile]:
        """Find the ``kernel.json`` files one level below each search path.

        Args:
            paths: Directories to search, each optionally paired with the interpreter
                whose environment it belongs to
            token: Checked once searching has finished

        Returns:
            The kernel spec files found

        """

        async def _search(item: str | tuple[Interpreter, str]) -> list[KernelSpecFile]:
            interpreter, root = (None, item) if isinstance(item, str) else item
            files = await self.fs.search("*/kernel.json", root)
            return [
                KernelSpecFile(str(path), interpreter, str(root)) for path in files
            ]

        results = await asyncio.gather(*(_search(item) for item in paths))
        if is_cancelled(token):
            return []
        return [spec_file for result in results for spec_file in result]
