"""Discover the Python interpreters available on this machine."""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from prompt_toolkit.utils import Event

from nbkernels.async_utils import race_timeout
from nbkernels.cache import AsyncCache
from nbkernels.process import ProcessService

if TYPE_CHECKING:
    from os import PathLike

    from nbkernels.config import Config

log = logging.getLogger(__name__)

_PROBE_SCRIPT = (
    "import json, sys, platform; "
    "print(json.dumps({"
    "'sys_prefix': sys.prefix, "
    "'base_prefix': getattr(sys, 'base_prefix', sys.prefix), "
    "'version': platform.python_version()}))"
)

_EXE_NAMES = ("python.exe",) if os.name == "nt" else ("python", "python3")

WORKSPACE_ENV_DIRS = (".venv", "venv", "env")


class EnvironmentType(Enum):
    """The kind of environment an interpreter belongs to."""

    GLOBAL = "global"
    VIRTUAL_ENV = "virtualenv"
    VENV = "venv"
    CONDA = "conda"
    PYENV = "pyenv"
    POETRY = "poetry"
    PIPENV = "pipenv"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class Interpreter:
    """A Python interpreter environment."""

    path: str
    sys_prefix: str = ""
    display_name: str = ""
    env_type: EnvironmentType = EnvironmentType.UNKNOWN
    env_name: str = ""
    version: str = ""


def normalize_path(path: str | PathLike) -> str:
    """Normalize an executable path for comparison."""
    return os.path.normcase(os.path.normpath(os.path.abspath(os.fspath(path))))


def interpreter_hash(interpreter: Interpreter | str) -> str:
    """Compute a stable identifier for an interpreter from its executable path."""
    path = interpreter.path if isinstance(interpreter, Interpreter) else interpreter
    return hashlib.sha256(normalize_path(path).encode()).hexdigest()


def _bin_dir(env_dir: Path) -> Path:
    return env_dir / ("Scripts" if os.name == "nt" else "bin")


def _env_python(env_dir: Path) -> Path:
    if os.name == "nt":
        return env_dir / "python.exe"
    return env_dir / "bin" / "python"


def detect_environment_type(path: str | PathLike) -> tuple[EnvironmentType, str]:
    """Guess the type and name of the environment an interpreter belongs to.

    Returns:
        A tuple of the environment type and the environment's name

    """
    exe = Path(os.path.abspath(path))
    lower = str(exe).lower()
    if os.name == "nt" and exe.parent.name.lower() != "scripts":
        env_dir = exe.parent
    else:
        env_dir = exe.parent.parent

    if "conda" in lower or "miniforge" in lower or (env_dir / "conda-meta").is_dir():
        parts = exe.parts
        for i, part in enumerate(parts):
            if part == "envs" and i + 1 < len(parts):
                return EnvironmentType.CONDA, parts[i + 1]
        return EnvironmentType.CONDA, "base"

    if "pypoetry" in lower or "poetry" in lower:
        return EnvironmentType.POETRY, env_dir.name
    if ".virtualenvs" in lower or "pipenv" in lower:
        return EnvironmentType.PIPENV, env_dir.name

    if (env_dir / "pyvenv.cfg").exists():
        return EnvironmentType.VENV, env_dir.name
    if (_bin_dir(env_dir) / "activate").exists():
        return EnvironmentType.VIRTUAL_ENV, env_dir.name

    if "pyenv" in lower:
        return EnvironmentType.PYENV, env_dir.name

    return EnvironmentType.GLOBAL, ""


def workspace_root(resource: str | PathLike | None) -> Path | None:
    """Return the directory containing a resource."""
    if resource is None:
        return None
    return Path(os.path.abspath(resource)).parent


class InterpreterService:
    """Enumerate and describe Python interpreters.

    Interpreters are collected from the running interpreter, executables on the
    ``PATH``, conda environments, pyenv versions, named virtual environments and
    virtual environments in the resource's directory. Each candidate is asked for
    its details, and candidates which do not answer within the
    ``interpreter_probe_timeout`` setting are skipped.
    """

    def __init__(
        self,
        config: Config | None = None,
        process: ProcessService | None = None,
        home: str | PathLike | None = None,
    ) -> None:
        """Create a new interpreter service.

        Args:
            config: Configuration providing the probe timeout
            process: Used to run interpreters when probing them
            home: The home directory to search for environments. Defaults to the
                current user's home directory
        """
        self.config = config
        self.process = process or ProcessService()
        self.home = Path(home) if home is not None else Path.home()
        self._cache: AsyncCache[str, list[Interpreter]] = AsyncCache()
        self._details: AsyncCache[str, Interpreter | None] = AsyncCache()
        self._is_dependency_installed = True

        self.interpreters_changed = Event(self)
        self.dependency_changed = Event(self)

    @property
    def probe_timeout(self) -> float:
        """The number of seconds to wait for an interpreter's details."""
        if self.config is None:
            return 10.0
        return self.config.interpreter_probe_timeout

    @property
    def is_dependency_installed(self) -> bool:
        """Whether Python environment support is available to the finders.

        When it is not, Python kernel specs are surfaced by the known-path finder
        instead of being associated with interpreters.
        """
        return self._is_dependency_installed

    @is_dependency_installed.setter
    def is_dependency_installed(self, value: bool) -> None:
        if value != self._is_dependency_installed:
            self._is_dependency_installed = value
            log.debug("Python environment support installed: %s", value)
            self.dependency_changed.fire()

    async def get_interpreters(
        self, resource: str | PathLike | None = None
    ) -> list[Interpreter]:
        """List the interpreters available for a resource."""
        root = workspace_root(resource)
        key = str(root) if root is not None else "global"
        return await self._cache.get(key, lambda: self._discover(root))

    async def get_active_interpreter(
        self, resource: str | PathLike | None = None
    ) -> Interpreter | None:
        """Return the interpreter a resource would run with by default.

        This is a virtual environment in the resource's directory if one exists,
        otherwise the interpreter running this process.
        """
        interpreters = await self.get_interpreters(resource)
        if (root := workspace_root(resource)) is not None:
            for name in WORKSPACE_ENV_DIRS:
                prefix = normalize_path(root / name)
                for interpreter in interpreters:
                    if normalize_path(interpreter.sys_prefix) == prefix:
                        return interpreter
        current = normalize_path(sys.executable)
        for interpreter in interpreters:
            if normalize_path(interpreter.path) == current:
                return interpreter
        return interpreters[0] if interpreters else None

    async def get_interpreter_details(
        self, path: str | PathLike
    ) -> Interpreter | None:
        """Describe the interpreter at a path.

        Returns:
            The interpreter, or :py:const:`None` if it could not be queried

        """
        key = normalize_path(path)
        return await self._details.get(key, lambda: self._probe(key))

    async def refresh(self) -> None:
        """Forget discovered interpreters and notify listeners if they changed."""
        before = {key: self._cache.peek(key) for key in self._cache.keys()}
        self._cache.invalidate_all()
        self._details.invalidate_all()
        changed = False
        for key, old in before.items():
            root = None if key == "global" else Path(key)
            new = await self._cache.get(key, lambda root=root: self._discover(root))
            if old != new:
                changed = True
        if changed or not before:
            log.debug("Interpreter list changed")
            self.interpreters_changed.fire()

    async def _discover(self, root: Path | None) -> list[Interpreter]:
        candidates: dict[str, None] = {}
        for path in await self._candidates(root):
            candidates.setdefault(normalize_path(path))

        details = await asyncio.gather(
            *(self.get_interpreter_details(path) for path in candidates)
        )
        interpreters: list[Interpreter] = []
        seen_prefixes: set[str] = set()
        for interpreter in details:
            if interpreter is None:
                continue
            prefix = normalize_path(interpreter.sys_prefix)
            if prefix in seen_prefixes:
                continue
            seen_prefixes.add(prefix)
            interpreters.append(interpreter)
        log.debug(
            "Found %d interpreters for `%s`", len(interpreters), root or "global"
        )
        return interpreters

    async def _candidates(self, root: Path | None) -> list[str]:
        """Collect paths which may be Python executables."""
        found: list[str] = [sys.executable]

        # Executables on the PATH
        for path_dir in os.environ.get("PATH", "").split(os.pathsep):
            if not path_dir:
                continue
            for name in _EXE_NAMES:
                exe = os.path.join(path_dir, name)
                if os.path.isfile(exe) and os.access(exe, os.X_OK):
                    found.append(exe)

        # Environments in the resource's directory
        if root is not None:
            found.extend(
                str(_env_python(root / name)) for name in WORKSPACE_ENV_DIRS
            )

        # Named environment collections
        for collection in (
            self.home / ".virtualenvs",
            self.home / "miniconda3" / "envs",
            self.home / "anaconda3" / "envs",
            self.home / "miniforge3" / "envs",
            self.home / ".pyenv" / "versions",
        ):
            if collection.is_dir():
                found.extend(
                    str(_env_python(env_dir))
                    for env_dir in sorted(collection.iterdir())
                    if env_dir.is_dir()
                )

        found.extend(await self._conda_environments())

        return [path for path in found if os.path.isfile(path)]

    async def _conda_environments(self) -> list[str]:
        if (conda := shutil.which("conda")) is None:
            return []
        try:
            result = await race_timeout(
                self.process.exec([conda, "env", "list", "--json"]),
                self.probe_timeout,
            )
        except OSError as error:
            log.debug("Could not list conda environments: %s", error)
            return []
        if result is None or result.returncode:
            return []
        try:
            envs = json.loads(result.stdout).get("envs", [])
        except (json.decoder.JSONDecodeError, AttributeError):
            log.warning("Could not parse the list of conda environments")
            return []
        return [str(_env_python(Path(env))) for env in envs]

    async def _probe(self, path: str) -> Interpreter | None:
        try:
            result = await race_timeout(
                self.process.exec([path, "-c", _PROBE_SCRIPT]), self.probe_timeout
            )
        except OSError as error:
            log.debug("Could not run interpreter `%s`: %s", path, error)
            return None
        if result is None:
            log.warning("Interpreter `%s` did not respond in time", path)
            return None
        if result.returncode:
            log.debug("Interpreter `%s` failed to report its details", path)
            return None
        try:
            info = json.loads(result.stdout.strip().splitlines()[-1])
        except (IndexError, json.decoder.JSONDecodeError):
            log.debug("Interpreter `%s` reported invalid details", path)
            return None

        env_type, env_name = detect_environment_type(path)
        if env_type == EnvironmentType.GLOBAL and info.get("sys_prefix") != info.get(
            "base_prefix"
        ):
            env_type = EnvironmentType.VIRTUAL_ENV
            env_name = Path(info["sys_prefix"]).name
        version = info.get("version", "")
        display_name = f"Python {version}".strip()
        if env_name:
            display_name = f"{display_name} ({env_name})"
        return Interpreter(
            path=path,
            sys_prefix=info.get("sys_prefix", ""),
            display_name=display_name,
            env_type=env_type,
            env_name=env_name,
            version=version,
        )
