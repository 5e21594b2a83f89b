"""Persistent key/value storage for state remembered between runs."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import TYPE_CHECKING

from platformdirs import user_data_dir

from nbkernels import __app_name__
from nbkernels.config import PathJSONEncoder

if TYPE_CHECKING:
    from typing import Any


log = logging.getLogger(__name__)


class MemoryMemento:
    """A key/value store which only lives as long as the process."""

    def __init__(self, data: dict[str, Any] | None = None) -> None:
        """Create a new store, optionally pre-populated."""
        self._data: dict[str, Any] = dict(data or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a stored value."""
        with self._lock:
            return self._data.get(key, default)

    def update(self, key: str, value: Any) -> None:
        """Store a value. Storing :py:const:`None` removes the key."""
        with self._lock:
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
            self._persist()

    def keys(self) -> list[str]:
        """List the stored keys."""
        with self._lock:
            return list(self._data)

    def _persist(self) -> None:
        """Write the data to permanent storage."""


class Memento(MemoryMemento):
    """A key/value store saved as JSON in the user's data directory."""

    _file_name = "state.json"

    def __init__(self, path: str | Path | None = None) -> None:
        """Load the store from disk.

        Args:
            path: The JSON file to use. Defaults to a file in the user data directory
        """
        if path is None:
            path = Path(user_data_dir(__app_name__, appauthor=None)) / self._file_name
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (OSError, json.decoder.JSONDecodeError):
            log.error("Could not read stored state from `%s`", self.path)
            return {}
        if not isinstance(data, dict):
            log.warning("Ignoring malformed stored state in `%s`", self.path)
            return {}
        return data

    def _persist(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._data, indent=2, cls=PathJSONEncoder))
        except OSError:
            log.exception("Could not save state to `%s`", self.path)
