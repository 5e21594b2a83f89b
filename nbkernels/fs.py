"""Asynchronous file-system access built on universal paths."""

from __future__ import annotations

import asyncio
import logging
import shutil
import tempfile
from pathlib import Path
from typing import TYPE_CHECKING

from upath import UPath

if TYPE_CHECKING:
    from os import PathLike


log = logging.getLogger(__name__)


def parse_path(path: str | PathLike) -> Path:
    """Parse a path, expanding the user's home directory where possible."""
    if not isinstance(path, Path):
        path = UPath(path)
    try:
        path = path.expanduser()
    except NotImplementedError:
        pass
    try:
        path = path.absolute()
    except NotImplementedError:
        pass
    return path


def _is_local(path: Path) -> bool:
    """Determine if a path lives on the local file-system."""
    return getattr(path, "protocol", "") in {"", "file", "local"}


class FileSystem:
    """File-system operations which never block the event loop.

    Paths may be local paths or any URL understood by :py:mod:`fsspec`.
    """

    async def search(self, pattern: str, root: str | PathLike) -> list[Path]:
        """Find files below ``root`` matching a glob pattern.

        A missing or unreadable root yields no results.
        """
        root_path = parse_path(root)

        def _search() -> list[Path]:
            try:
                if not root_path.is_dir():
                    return []
                return sorted(root_path.glob(pattern))
            except OSError as error:
                log.debug("Unable to search `%s`: %s", root_path, error)
                return []

        return await asyncio.to_thread(_search)

    async def read_text(self, path: str | PathLike) -> str:
        """Read the contents of a text file."""
        return await asyncio.to_thread(parse_path(path).read_text)

    async def write_text(self, path: str | PathLike, text: str) -> None:
        """Write text to a file, creating parent directories as needed."""
        target = parse_path(path)

        def _write() -> None:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(text)

        await asyncio.to_thread(_write)

    async def copy(self, source: str | PathLike, destination: str | PathLike) -> None:
        """Copy a file, creating the destination's parent directories."""
        src, dst = parse_path(source), parse_path(destination)

        def _copy() -> None:
            dst.parent.mkdir(parents=True, exist_ok=True)
            if not _is_local(src):
                dst.write_bytes(src.read_bytes())
            else:
                shutil.copyfile(src, dst)

        await asyncio.to_thread(_copy)

    async def delete(self, path: str | PathLike) -> None:
        """Delete a file or a directory tree."""
        target = parse_path(path)

        def _delete() -> None:
            if target.is_dir():
                if not _is_local(target):
                    target.fs.rm(target.path, recursive=True)
                else:
                    shutil.rmtree(target)
            else:
                target.unlink()

        await asyncio.to_thread(_delete)

    async def exists(self, path: str | PathLike) -> bool:
        """Determine if a path exists."""
        return await asyncio.to_thread(parse_path(path).exists)

    async def is_file(self, path: str | PathLike) -> bool:
        """Determine if a path is an existing file."""
        return await asyncio.to_thread(parse_path(path).is_file)

    async def is_dir(self, path: str | PathLike) -> bool:
        """Determine if a path is an existing directory."""
        return await asyncio.to_thread(parse_path(path).is_dir)

    async def ensure_dir(self, path: str | PathLike) -> None:
        """Create a directory and its parents if missing."""
        target = parse_path(path)
        await asyncio.to_thread(target.mkdir, parents=True, exist_ok=True)

    async def create_temp_file(self, suffix: str) -> Path:
        """Create an empty file with a unique name inside a new temporary directory.

        Args:
            suffix: The file extension, including the leading dot

        Returns:
            The path to the new file

        """

        def _create() -> Path:
            directory = Path(tempfile.mkdtemp(prefix="nbkernels-"))
            path = directory / f"temp{suffix}"
            path.touch()
            return path

        return await asyncio.to_thread(_create)
