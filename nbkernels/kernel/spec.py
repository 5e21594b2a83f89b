"""Load and normalize kernel specs from ``kernel.json`` files."""

from __future__ import annotations

import copy
import json
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from nbkernels import __version__
from nbkernels.async_utils import is_cancelled
from nbkernels.interpreters import interpreter_hash

if TYPE_CHECKING:
    from os import PathLike
    from typing import Any

    from nbkernels.async_utils import CancellationToken
    from nbkernels.fs import FileSystem
    from nbkernels.interpreters import Interpreter

log = logging.getLogger(__name__)

PYTHON_LANGUAGE = "python"

#: Display names like "Python 3" or "python 3.11" carry no identifying information
DEFAULT_PYTHON_NAME_RE = re.compile(r"python\s\d*.?\d*$")

#: Arguments found in the ``argv`` of a stock ``ipykernel`` kernel spec
DEFAULT_ARGV_TOKENS = frozenset(
    ["-m", "ipykernel", "ipykernel_launcher", "-f", "{connection_file}"]
)

#: Metadata section in which the origin of a kernel spec is recorded
PROVENANCE_KEY = "vscode"

#: Folder into which obsolete kernel specs we registered are moved
OLD_KERNEL_SPECS_FOLDER_NAME = "__old_nbkernels_kernelspecs"

#: Prefix of the names given to kernel specs generated for an interpreter
AUTOGEN_KERNEL_PREFIX = "nbk74a57bd0"


class RegistrationInfo(Enum):
    """How a kernel spec came to be registered by this package."""

    NEW_VERSION = "registeredByNewVersion"
    OLD_VERSION = "registeredByOldVersion"
    NEW_VERSION_CUSTOM = "registeredByNewVersionCustom"


@dataclass
class KernelSpec:
    """A normalized kernel spec."""

    name: str
    display_name: str
    language: str = ""
    argv: list[str] = field(default_factory=list)
    env: dict[str, str] | None = None
    interrupt_mode: str | None = None
    interpreter_path: str | None = None
    registration_info: RegistrationInfo | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    spec_file: str | None = None
    original_name: str | None = None

    @property
    def path(self) -> str:
        """The executable the kernel is launched with."""
        return self.argv[0] if self.argv else ""

    @property
    def resource_dir(self) -> str:
        """The directory containing the kernel spec's resources."""
        return os.path.dirname(self.spec_file) if self.spec_file else ""

    @property
    def provenance(self) -> dict[str, Any]:
        """Information about where this kernel spec was first loaded from."""
        return self.metadata.get(PROVENANCE_KEY) or {}

    def to_dict(self) -> dict[str, Any]:
        """Return the kernel spec in the shape of a ``kernel.json`` file."""
        data: dict[str, Any] = {
            "argv": list(self.argv),
            "display_name": self.display_name,
            "language": self.language,
            "name": self.name,
        }
        if self.env:
            data["env"] = dict(self.env)
        if self.interrupt_mode:
            data["interrupt_mode"] = self.interrupt_mode
        if self.metadata:
            data["metadata"] = copy.deepcopy(self.metadata)
        return data

    @classmethod
    def from_model(cls, model: dict[str, Any]) -> KernelSpec:
        """Create a kernel spec from a Jupyter server's ``/api/kernelspecs`` entry."""
        spec = model.get("spec") or {}
        metadata = copy.deepcopy(spec.get("metadata") or {})
        name = model.get("name") or spec.get("name") or ""
        return cls(
            name=name,
            display_name=spec.get("display_name") or name,
            language=spec.get("language") or "",
            argv=list(spec.get("argv") or []),
            env=spec.get("env") or None,
            interrupt_mode=spec.get("interrupt_mode"),
            interpreter_path=(metadata.get("interpreter") or {}).get("path"),
            registration_info=get_registration_info(name, metadata),
            metadata=metadata,
            original_name=name,
        )


def interpreter_kernel_spec_name(interpreter: Interpreter) -> str:
    """Return the name given to kernel specs belonging to an interpreter."""
    return f"{AUTOGEN_KERNEL_PREFIX}{interpreter_hash(interpreter)}"


def _major_version(version: Any) -> int | None:
    try:
        return int(str(version).split(".")[0])
    except ValueError:
        return None


def get_registration_info(
    name: str | None, metadata: dict[str, Any]
) -> RegistrationInfo | None:
    """Determine whether and how a kernel spec was registered by this package.

    Args:
        name: The kernel spec's name as written in its file
        metadata: The kernel spec's metadata

    Returns:
        The registration kind, or :py:const:`None` for kernel specs registered by
        anything else

    """
    section = metadata.get(PROVENANCE_KEY) or {}
    if version := section.get("registeredByVersion"):
        major = _major_version(version)
        current = _major_version(__version__)
        if major is not None and current is not None and major < current:
            return RegistrationInfo.OLD_VERSION
        if section.get("customSpec"):
            return RegistrationInfo.NEW_VERSION_CUSTOM
        return RegistrationInfo.NEW_VERSION
    # Specs generated before registration was recorded only carry our name prefix
    if name and name.startswith(AUTOGEN_KERNEL_PREFIX) and metadata.get("interpreter"):
        return RegistrationInfo.OLD_VERSION
    return None


def is_default_python_kernel_spec(spec: KernelSpec) -> bool:
    """Determine if a kernel spec is a stock ``ipykernel`` spec.

    Such specs add nothing over the interpreter they belong to. Specs which set
    environment variables are not considered stock.
    """
    if spec.language.lower() != PYTHON_LANGUAGE or spec.env:
        return False
    if not DEFAULT_PYTHON_NAME_RE.search(spec.display_name.lower()):
        return False
    return spec.argv[1:] in (
        ["-m", "ipykernel_launcher", "-f", "{connection_file}"],
        ["-m", "ipykernel", "-f", "{connection_file}"],
    )


def create_interpreter_kernel_spec(interpreter: Interpreter) -> KernelSpec:
    """Synthesize a kernel spec which launches ``ipykernel`` in an interpreter."""
    name = interpreter_kernel_spec_name(interpreter)
    return KernelSpec(
        name=name,
        display_name=interpreter.display_name or f"Python ({interpreter.path})",
        language=PYTHON_LANGUAGE,
        argv=[interpreter.path, "-m", "ipykernel_launcher", "-f", "{connection_file}"],
        interpreter_path=interpreter.path,
        metadata={
            "interpreter": {
                "path": interpreter.path,
                "env_name": interpreter.env_name,
                "env_type": interpreter.env_type.value,
                "version": interpreter.version,
            }
        },
        original_name=name,
    )


async def load_kernel_spec(
    spec_file: str | PathLike,
    fs: FileSystem,
    interpreter: Interpreter | None = None,
    token: CancellationToken | None = None,
) -> KernelSpec | None:
    """Load a kernel spec from a ``kernel.json`` file.

    The spec's name is rewritten for interpreter-bound specs and for Python specs
    with unusual launch arguments, so that distinct kernels never share a name.
    The file the spec came from and its original display name are recorded in the
    spec's metadata.

    Args:
        spec_file: The path to the ``kernel.json`` file
        fs: The file-system to read from
        interpreter: The interpreter whose environment contains the spec, if any
        token: Checked after the file has been read

    Returns:
        The kernel spec, or :py:const:`None` if it is a backup, cannot be parsed,
        refers to an interpreter which no longer exists, or loading was cancelled

    """
    spec_file = os.fspath(spec_file)
    if OLD_KERNEL_SPECS_FOLDER_NAME in spec_file:
        return None

    log.debug(
        "Loading kernel spec from `%s` for `%s`",
        spec_file,
        interpreter.path if interpreter else None,
    )
    try:
        data = json.loads(await fs.read_text(spec_file))
    except (OSError, ValueError) as error:
        log.error("Failed to parse kernel spec `%s`: %s", spec_file, error)
        return None
    if not isinstance(data, dict):
        log.error("Kernel spec `%s` does not contain an object", spec_file)
        return None
    if is_cancelled(token):
        return None

    # Some registered kernel specs have no name, so use the containing folder's name
    original_name = data.get("name") or os.path.basename(os.path.dirname(spec_file))
    name = interpreter_kernel_spec_name(interpreter) if interpreter else original_name
    display_name = data.get("display_name") or original_name
    language = data.get("language") or ""
    argv = [str(arg) for arg in data.get("argv") or []]

    if (
        not DEFAULT_PYTHON_NAME_RE.search(display_name.lower())
        and language.lower() == PYTHON_LANGUAGE
        and len(argv) > 2
    ):
        extra = [
            arg.lower() for arg in argv[1:] if arg.lower() not in DEFAULT_ARGV_TOKENS
        ]
        if extra:
            name = f"{name}.{'#'.join(extra)}"

    metadata = copy.deepcopy(data.get("metadata") or {})
    section = metadata.setdefault(PROVENANCE_KEY, {})
    if not section.get("originalSpecFile"):
        section["originalSpecFile"] = spec_file
    if not section.get("originalDisplayName"):
        section["originalDisplayName"] = display_name
    if legacy_spec_file := metadata.pop("originalSpecFile", None):
        section["originalSpecFile"] = legacy_spec_file

    interpreter_path = (
        interpreter.path
        if interpreter
        else (metadata.get("interpreter") or {}).get("path")
    )
    # The environment a kernel spec was registered for may have been deleted
    if interpreter_path and not await fs.exists(interpreter_path):
        log.debug(
            "Ignoring kernel spec `%s` as `%s` does not exist",
            spec_file,
            interpreter_path,
        )
        return None

    return KernelSpec(
        name=name,
        display_name=display_name,
        language=language,
        argv=argv,
        env=data.get("env") or None,
        interrupt_mode=data.get("interrupt_mode"),
        interpreter_path=interpreter_path,
        registration_info=get_registration_info(data.get("name"), metadata),
        metadata=metadata,
        spec_file=spec_file,
        original_name=original_name,
    )
