"""Choose the kernel best suited to a notebook."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nbkernels.interpreters import normalize_path
from nbkernels.kernel.connection import (
    LiveRemoteKernelConnection,
    PythonInterpreterConnection,
)
from nbkernels.kernel.spec import PYTHON_LANGUAGE
from nbkernels.utils import resource_type

if TYPE_CHECKING:
    from collections.abc import Sequence
    from os import PathLike
    from typing import Any

    from nbkernels.interpreters import Interpreter
    from nbkernels.kernel.connection import KernelConnectionMetadata

log = logging.getLogger(__name__)

#: Kernel names which say nothing about which environment a kernel belongs to
GENERIC_PYTHON_NAMES = frozenset(["python", "python2", "python3"])

_EXACT_NAME_SCORE = 2
_DISPLAY_NAME_SCORE = 1


def _names(candidate: KernelConnectionMetadata) -> set[str]:
    spec = candidate.kernel_spec
    names = {spec.name}
    if spec.original_name:
        names.add(spec.original_name)
    if candidate.interpreter is not None and candidate.interpreter.env_name:
        names.add(candidate.interpreter.env_name)
    return names


def _name_score(
    candidate: KernelConnectionMetadata, name: str | None, display_name: str | None
) -> int:
    """Score how well a candidate matches a notebook's kernel spec."""
    if name and name in _names(candidate):
        # A generic name does not identify an interpreter's environment
        if not (
            candidate.interpreter is not None
            and name.lower() in GENERIC_PYTHON_NAMES
        ):
            return _EXACT_NAME_SCORE
    if display_name:
        display_names = {candidate.kernel_spec.display_name, candidate.display_name}
        if candidate.interpreter is not None:
            display_names.add(candidate.interpreter.display_name)
        if display_name in display_names:
            return _DISPLAY_NAME_SCORE
    return 0


def _best_by_name(
    candidates: Sequence[KernelConnectionMetadata],
    name: str | None,
    display_name: str | None,
) -> KernelConnectionMetadata | None:
    best: KernelConnectionMetadata | None = None
    best_score = 0
    for candidate in candidates:
        score = _name_score(candidate, name, display_name)
        if score > best_score:
            best, best_score = candidate, score
    return best


def notebook_language(
    notebook_metadata: dict[str, Any] | None,
    resource: str | PathLike | None = None,
) -> str | None:
    """Determine the programming language of a notebook from its metadata.

    Interactive resources without any language information are taken to be Python.
    """
    metadata = notebook_metadata or {}
    language = (metadata.get("language_info") or {}).get("name") or (
        metadata.get("kernelspec") or {}
    ).get("language")
    if not language and resource_type(resource) == "interactive":
        language = PYTHON_LANGUAGE
    return language or None


def find_preferred_kernel(
    candidates: Sequence[KernelConnectionMetadata],
    notebook_metadata: dict[str, Any] | None = None,
    resource: str | PathLike | None = None,
    active_interpreter: Interpreter | None = None,
    preferred_remote_kernel_id: str | None = None,
) -> KernelConnectionMetadata | None:
    """Pick the candidate which best matches a notebook.

    Candidates are considered in the following order:

    1. A live kernel with the remembered remote kernel id
    2. A kernel running in the interpreter recorded in the notebook's metadata
    3. A kernel whose name, or failing that display name, matches the notebook's
       kernel spec
    4. A kernel for the notebook's language, preferring the active interpreter for
       Python

    Args:
        candidates: The kernels available, in their display order
        notebook_metadata: The notebook's metadata
        resource: The notebook's path, used to decide if it is interactive
        active_interpreter: The interpreter currently selected for the resource
        preferred_remote_kernel_id: The id of a live remote kernel previously used
            with the resource

    Returns:
        The best candidate, or :py:const:`None` if nothing is suitable

    """
    if not candidates:
        return None
    metadata = notebook_metadata or {}

    if preferred_remote_kernel_id:
        for candidate in candidates:
            if (
                isinstance(candidate, LiveRemoteKernelConnection)
                and candidate.kernel_model.id == preferred_remote_kernel_id
            ):
                log.debug("Using remembered remote kernel `%s`", candidate.display_name)
                return candidate

    kernelspec = metadata.get("kernelspec") or {}
    name = kernelspec.get("name")
    display_name = kernelspec.get("display_name")

    if target_hash := (metadata.get("interpreter") or {}).get("hash"):
        matches = [c for c in candidates if c.interpreter_hash == target_hash]
        if matches:
            return (
                _best_by_name(matches, name, display_name)
                or next(
                    (c for c in matches if isinstance(c, PythonInterpreterConnection)),
                    None,
                )
                or matches[0]
            )

    if best := _best_by_name(candidates, name, display_name):
        return best

    language = notebook_language(metadata, resource)
    if language is None:
        return None

    if language.lower() == PYTHON_LANGUAGE:
        pythons = [c for c in candidates if isinstance(c, PythonInterpreterConnection)]
        if active_interpreter is not None:
            active_path = normalize_path(active_interpreter.path)
            for candidate in pythons:
                if normalize_path(candidate.interpreter.path) == active_path:
                    return candidate
        if pythons:
            return pythons[0]

    for candidate in candidates:
        if candidate.language.lower() == language.lower():
            return candidate

    return None
