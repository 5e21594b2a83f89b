"""Miscellaneous utility functions."""

from __future__ import annotations

from typing import TYPE_CHECKING
from urllib.parse import urlparse

if TYPE_CHECKING:
    from os import PathLike

LOOPBACK_HOSTS = {"localhost", "127.0.0.1", "::1"}


def dict_merge(target: dict, update: dict) -> None:
    """Merge ``update`` into ``target`` in place.

    Nested dictionaries are merged recursively and lists are concatenated. Any
    other value in ``update`` replaces the value in ``target``.
    """
    for key, value in update.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            dict_merge(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            target[key] = current + value
        else:
            target[key] = value


def is_loopback_url(url: str) -> bool:
    """Determine if a URL points at the local machine."""
    hostname = urlparse(url).hostname or ""
    return hostname.lower() in LOOPBACK_HOSTS


def resource_type(resource: str | PathLike | None) -> str:
    """Classify a resource as a ``notebook`` or an ``interactive`` window."""
    if resource is not None and str(resource).lower().endswith(".ipynb"):
        return "notebook"
    return "interactive"
