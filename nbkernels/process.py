"""Run external processes asynchronously."""

from __future__ import annotations

import asyncio
import logging
import shlex
import subprocess  # noqa: S404 - Security implications considered
from typing import TYPE_CHECKING, NamedTuple

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence


log = logging.getLogger(__name__)


_VERSION_SCRIPT = (
    "import importlib.metadata as m, sys\n"
    "try:\n"
    "    print(m.version(sys.argv[1]))\n"
    "except m.PackageNotFoundError:\n"
    "    sys.exit(1)\n"
)


class ExecResult(NamedTuple):
    """The output of a finished process."""

    returncode: int
    stdout: str
    stderr: str


class ProcessService:
    """Launch processes without blocking the event loop."""

    async def exec(
        self,
        cmd: Sequence[str],
        env: Mapping[str, str] | None = None,
        cwd: str | None = None,
        check: bool = False,
    ) -> ExecResult:
        """Run a command and collect its output.

        Args:
            cmd: The command and its arguments
            env: The environment for the process. The current environment is used if
                not given
            cwd: The working directory for the process
            check: If :py:const:`True`, raise when the process exits with an error

        Returns:
            The process's exit code and decoded output

        Raises:
            FileNotFoundError: If the executable does not exist
            subprocess.CalledProcessError: If ``check`` is set and the command fails

        """
        cmd = list(cmd)
        if log.isEnabledFor(logging.DEBUG):
            log.debug("Running external command `%s`", shlex.join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(env) if env is not None else None,
                cwd=cwd,
            )
        except FileNotFoundError:
            log.error("Could not run external command `%s`", cmd[0])
            raise
        try:
            stdout, stderr = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
            raise
        result = ExecResult(
            proc.returncode or 0,
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
        )
        if check and result.returncode:
            raise subprocess.CalledProcessError(
                result.returncode, cmd, result.stdout, result.stderr
            )
        return result

    async def get_module_version(self, executable: str, module: str) -> str | None:
        """Ask an interpreter for the installed version of a distribution.

        Returns:
            The version string, or :py:const:`None` if the package is not installed

        """
        result = await self.exec([executable, "-c", _VERSION_SCRIPT, module])
        if result.returncode:
            return None
        return result.stdout.strip() or None

    async def is_module_installed(self, executable: str, module: str) -> bool:
        """Determine if a module can be imported by an interpreter."""
        result = await self.exec(
            [
                executable,
                "-c",
                "import importlib.util, sys; "
                "sys.exit(importlib.util.find_spec(sys.argv[1]) is None)",
                module,
            ]
        )
        return result.returncode == 0
