"""Remember which remote kernel each notebook last used."""

from __future__ import annotations

import hashlib
import logging
import os
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from os import PathLike

    from nbkernels.memento import MemoryMemento

log = logging.getLogger(__name__)

ACTIVE_KERNEL_IDS_KEY = "ACTIVE_KERNEL_IDS"
MAX_NUMBER_OF_ACTIVE_KERNEL_IDS = 100


def _file_hash(resource: str | PathLike) -> str:
    return hashlib.sha256(os.fspath(resource).encode()).hexdigest()


class PreferredRemoteKernelIdProvider:
    """Store the id of the remote kernel last used with each notebook.

    Only the most recent entries are kept.
    """

    def __init__(self, memento: MemoryMemento) -> None:
        """Store the ids in the given memento."""
        self.memento = memento

    def _entries(self) -> list[dict[str, str]]:
        entries = self.memento.get(ACTIVE_KERNEL_IDS_KEY, [])
        return [e for e in entries if isinstance(e, dict)]

    def get_preferred_remote_kernel_id(
        self, resource: str | PathLike | None
    ) -> str | None:
        """Return the id of the remote kernel last used with a notebook."""
        if resource is None:
            return None
        file_hash = _file_hash(resource)
        for entry in self._entries():
            if entry.get("fileHash") == file_hash:
                return entry.get("kernelId")
        return None

    def store_preferred_remote_kernel_id(
        self, resource: str | PathLike | None, kernel_id: str | None
    ) -> None:
        """Remember, or forget, the remote kernel used with a notebook."""
        if resource is None:
            return
        file_hash = _file_hash(resource)
        entries = [e for e in self._entries() if e.get("fileHash") != file_hash]
        if kernel_id:
            entries.append({"fileHash": file_hash, "kernelId": kernel_id})
        # Drop the oldest entries
        entries = entries[-MAX_NUMBER_OF_ACTIVE_KERNEL_IDS:]
        log.debug("Preferred remote kernel for `%s` is `%s`", resource, kernel_id)
        self.memento.update(ACTIVE_KERNEL_IDS_KEY, entries)
