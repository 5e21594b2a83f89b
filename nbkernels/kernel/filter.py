"""Let users hide kernels they never want to see."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prompt_toolkit.utils import Event

if TYPE_CHECKING:
    from collections.abc import Iterable

    from nbkernels.kernel.connection import KernelConnectionMetadata
    from nbkernels.memento import MemoryMemento

log = logging.getLogger(__name__)

HIDDEN_KERNELS_KEY = "HIDDEN_KERNELS"


class KernelFilter:
    """A persisted list of kernel connection ids hidden from listings."""

    def __init__(self, memento: MemoryMemento) -> None:
        """Store hidden ids in the given memento."""
        self.memento = memento
        self.on_changed = Event(self)

    @property
    def hidden_ids(self) -> set[str]:
        """The ids of hidden kernels."""
        return set(self.memento.get(HIDDEN_KERNELS_KEY, []))

    def is_hidden(self, connection: KernelConnectionMetadata) -> bool:
        """Determine if a kernel has been hidden."""
        return connection.id in self.hidden_ids

    def hide(self, connections: Iterable[KernelConnectionMetadata]) -> None:
        """Hide kernels from listings."""
        self._store(self.hidden_ids | {c.id for c in connections})

    def unhide(self, connections: Iterable[KernelConnectionMetadata]) -> None:
        """Show previously hidden kernels again."""
        self._store(self.hidden_ids - {c.id for c in connections})

    def _store(self, ids: set[str]) -> None:
        if ids != self.hidden_ids:
            self.memento.update(HIDDEN_KERNELS_KEY, sorted(ids))
            log.debug("%d kernels hidden", len(ids))
            self.on_changed.fire()

    def filter(
        self, connections: Iterable[KernelConnectionMetadata]
    ) -> list[KernelConnectionMetadata]:
        """Remove hidden kernels from a listing."""
        hidden = self.hidden_ids
        return [c for c in connections if c.id not in hidden]
