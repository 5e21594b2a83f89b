"""Test finding kernels which belong to interpreters, and every local kernel."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock

import pytest

from nbkernels.async_utils import CancellationToken
from nbkernels.fs import FileSystem
from nbkernels.interpreters import EnvironmentType, Interpreter, InterpreterService
from nbkernels.kernel.connection import (
    LocalKernelSpecConnection,
    PythonInterpreterConnection,
)
from nbkernels.kernel.finder.interpreters import (
    LocalPythonAndRelatedNonPythonKernelSpecFinder,
    env_kernel_dir,
)
from nbkernels.kernel.finder.known_paths import LocalKnownPathKernelSpecFinder
from nbkernels.kernel.finder.local import LocalKernelFinder
from nbkernels.memento import MemoryMemento

if TYPE_CHECKING:
    from typing import Any


DEFAULT_ARGV = ["python", "-m", "ipykernel_launcher", "-f", "{connection_file}"]
JULIA = {
    "argv": ["julia", "-i", "{connection_file}"],
    "display_name": "Julia 1.10",
    "language": "julia",
    "name": "julia",
}


def write_spec(root: str | Path, folder: str, data: dict[str, Any]) -> None:
    """Write a ``kernel.json`` file into a kernel spec folder."""
    path = Path(root) / folder / "kernel.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))


def make_interpreter(tmp_path: Path, name: str = "env") -> Interpreter:
    """Create a fake virtual environment with an interpreter executable."""
    prefix = tmp_path / name
    exe = prefix / "bin" / "python"
    exe.parent.mkdir(parents=True)
    exe.touch()
    return Interpreter(
        path=str(exe),
        sys_prefix=str(prefix),
        display_name=f"Python 3.11 ({name})",
        env_type=EnvironmentType.VENV,
        env_name=name,
        version="3.11.0",
    )


class Finders:
    """The local finders, wired to a fake set of interpreters."""

    def __init__(self, interpreters: list[Interpreter], installed: bool) -> None:
        """Create the finders."""
        memento = MemoryMemento()
        fs = FileSystem()
        self.service = InterpreterService()
        self.service.is_dependency_installed = installed
        self.service.get_interpreters = AsyncMock(  # type: ignore[method-assign]
            return_value=interpreters
        )
        self.service.get_active_interpreter = AsyncMock(  # type: ignore
            return_value=interpreters[0] if interpreters else None
        )
        self.known = LocalKnownPathKernelSpecFinder(fs, memento, self.service)
        self.interpreters = LocalPythonAndRelatedNonPythonKernelSpecFinder(
            fs, memento, self.service, self.known
        )
        self.local = LocalKernelFinder(self.known, self.interpreters, self.service)


@pytest.fixture
def root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Make a temporary directory the only known kernel directory."""
    kernels = tmp_path / "kernels"
    kernels.mkdir()
    monkeypatch.setattr(
        "nbkernels.kernel.finder.known_paths.jupyter_path",
        lambda *parts: [str(kernels)],
    )
    return kernels


def test_default_env_spec_is_suppressed(root: Path, tmp_path: Path) -> None:
    """A stock ``ipykernel`` spec adds nothing over the interpreter itself."""
    interpreter = make_interpreter(tmp_path)
    write_spec(
        env_kernel_dir(interpreter),
        "python3",
        {"argv": DEFAULT_ARGV, "display_name": "Python 3", "language": "python"},
    )
    finders = Finders([interpreter], installed=True)

    kernels = asyncio.run(finders.interpreters.list_kernel_specs())

    assert len(kernels) == 1
    assert isinstance(kernels[0], PythonInterpreterConnection)
    assert kernels[0].interpreter == interpreter
    assert kernels[0].display_name == "Python 3.11 (env)"


def test_specs_differing_in_env_are_kept(root: Path, tmp_path: Path) -> None:
    """Kernel specs which only differ by their environment variables are distinct."""
    interpreter = make_interpreter(tmp_path)
    for value in ("1", "2"):
        write_spec(
            env_kernel_dir(interpreter),
            f"custom-{value}",
            {
                "argv": DEFAULT_ARGV,
                "display_name": "Python 3 (custom)",
                "language": "python",
                "env": {"MODE": value},
            },
        )
    finders = Finders([interpreter], installed=True)

    kernels = asyncio.run(finders.interpreters.list_kernel_specs())

    specs = [k for k in kernels if isinstance(k, LocalKernelSpecConnection)]
    assert sorted(k.kernel_spec.env["MODE"] for k in specs) == ["1", "2"]
    assert len({k.id for k in kernels}) == 3
    assert all(k.interpreter == interpreter for k in specs)


def test_env_and_global_specs_are_bound(root: Path, tmp_path: Path) -> None:
    """Kernel specs are bound to the interpreter they belong to or launch."""
    interpreter = make_interpreter(tmp_path)
    write_spec(
        env_kernel_dir(interpreter),
        "ir",
        {"argv": ["R", "{connection_file}"], "display_name": "R", "language": "R"},
    )
    write_spec(
        root,
        "custom",
        {
            "argv": [interpreter.path, "-m", "ipykernel_launcher", "-f", "{x}"],
            "display_name": "Custom Python",
            "language": "python",
        },
    )
    write_spec(root, "julia", JULIA)
    finders = Finders([interpreter], installed=True)

    kernels = asyncio.run(finders.interpreters.list_kernel_specs())
    by_name = {k.display_name: k for k in kernels}

    assert set(by_name) == {"Custom Python", "Python 3.11 (env)", "R"}
    assert by_name["R"].interpreter == interpreter
    assert by_name["Custom Python"].interpreter == interpreter


def test_nothing_found_without_dependency(root: Path, tmp_path: Path) -> None:
    """No interpreter kernels are listed while Python support is missing."""
    finders = Finders([make_interpreter(tmp_path)], installed=False)
    assert asyncio.run(finders.interpreters.list_kernel_specs()) == []


def test_julia_only_without_python_support(root: Path) -> None:
    """Only the Julia kernel is found when nothing else is available."""
    write_spec(root, "julia", JULIA)
    finders = Finders([], installed=False)

    kernels = asyncio.run(finders.local.list_kernels())

    assert len(kernels) == 1
    assert isinstance(kernels[0], LocalKernelSpecConnection)
    assert kernels[0].kernel_spec.name == "julia"
    assert not any(isinstance(k, PythonInterpreterConnection) for k in kernels)


def test_python_specs_listed_without_dependency(root: Path) -> None:
    """Python kernel specs are listed as plain kernel specs without Python support."""
    write_spec(
        root,
        "python3",
        {"argv": DEFAULT_ARGV, "display_name": "Python 3", "language": "python"},
    )
    finders = Finders([], installed=False)
    kernels = asyncio.run(finders.local.list_kernels())
    assert [k.display_name for k in kernels] == ["Python 3"]


def test_local_listing_combines_finders(root: Path, tmp_path: Path) -> None:
    """Kernels from both finders are merged and sorted."""
    write_spec(root, "julia", JULIA)
    finders = Finders([make_interpreter(tmp_path)], installed=True)
    kernels = asyncio.run(finders.local.list_kernels(tmp_path / "nb.ipynb"))
    assert [k.display_name for k in kernels] == ["Julia 1.10", "Python 3.11 (env)"]


def test_listing_cleared_when_interpreters_change(root: Path) -> None:
    """A changed list of interpreters discards cached listings."""
    write_spec(root, "julia", JULIA)
    finders = Finders([], installed=False)

    async def main() -> None:
        assert len(await finders.local.list_kernels()) == 1
        write_spec(root, "ir", {**JULIA, "name": "ir", "display_name": "R"})
        assert len(await finders.local.list_kernels()) == 1
        finders.service.interpreters_changed.fire()
        assert len(await finders.local.list_kernels()) == 2

    asyncio.run(main())


def test_failing_finder_is_skipped(root: Path, tmp_path: Path) -> None:
    """Kernels from one finder are still listed if the other fails."""
    write_spec(root, "julia", JULIA)
    finders = Finders([make_interpreter(tmp_path)], installed=True)
    finders.interpreters.list_kernel_specs = AsyncMock(  # type: ignore
        side_effect=RuntimeError("broken")
    )
    kernels = asyncio.run(finders.local.list_kernels())
    assert [k.display_name for k in kernels] == ["Julia 1.10"]


def test_cancelled_listing_is_empty(root: Path) -> None:
    """A cancelled caller gets nothing, and later callers get every kernel."""
    write_spec(root, "julia", JULIA)
    finders = Finders([], installed=False)
    token = CancellationToken()
    token.cancel()

    async def main() -> None:
        assert await finders.local.list_kernels(token=token) == []
        assert len(await finders.local.list_kernels()) == 1

    asyncio.run(main())


def test_cancelling_one_caller_keeps_shared_search(
    root: Path, tmp_path: Path
) -> None:
    """Cancelling one of two concurrent listings leaves the other complete."""
    write_spec(root, "julia", JULIA)
    interpreter = make_interpreter(tmp_path)
    finders = Finders([interpreter], installed=True)
    release = asyncio.Event()

    async def get_interpreters(resource: Any = None) -> list[Interpreter]:
        await release.wait()
        return [interpreter]

    finders.service.get_interpreters = get_interpreters  # type: ignore

    async def main() -> None:
        token = CancellationToken()
        cancelled = asyncio.ensure_future(finders.local.list_kernels(token=token))
        waiting = asyncio.ensure_future(finders.local.list_kernels())
        await asyncio.sleep(0)
        token.cancel()
        release.set()
        assert await cancelled == []
        kernels = await waiting
        assert len(kernels) == 2
        assert any(isinstance(k, PythonInterpreterConnection) for k in kernels)

    asyncio.run(main())


def test_uninstalling_support_keeps_listing(root: Path, tmp_path: Path) -> None:
    """Removing Python support does not discard the cached kernels."""
    write_spec(root, "julia", JULIA)
    finders = Finders([make_interpreter(tmp_path)], installed=True)

    async def main() -> None:
        before = await finders.local.list_kernels()
        finders.service.is_dependency_installed = False
        assert await finders.local.list_kernels() == before
        assert any(isinstance(k, PythonInterpreterConnection) for k in before)

    asyncio.run(main())
    assert finders.service.get_interpreters.call_count == 1  # type: ignore


def test_installing_support_clears_listing(root: Path, tmp_path: Path) -> None:
    """Installing Python support lists the interpreters' kernels."""
    write_spec(root, "julia", JULIA)
    finders = Finders([make_interpreter(tmp_path)], installed=False)

    async def main() -> None:
        assert len(await finders.local.list_kernels()) == 1
        finders.service.is_dependency_installed = True
        kernels = await finders.local.list_kernels()
        assert any(isinstance(k, PythonInterpreterConnection) for k in kernels)

    asyncio.run(main())


def test_find_kernel(root: Path, tmp_path: Path) -> None:
    """The kernel named by the notebook is preferred, then the active interpreter."""
    write_spec(root, "julia", JULIA)
    interpreter = make_interpreter(tmp_path)
    finders = Finders([interpreter], installed=True)
    assert finders.local.find_preferred_local_kernel_from_cache() is None

    async def main() -> None:
        julia = await finders.local.find_kernel(
            notebook_metadata={"kernelspec": {"name": "julia"}}
        )
        assert julia is not None
        assert julia.display_name == "Julia 1.10"

        python = await finders.local.find_kernel(
            notebook_metadata={"language_info": {"name": "python"}}
        )
        assert isinstance(python, PythonInterpreterConnection)
        assert python.interpreter == interpreter

    asyncio.run(main())

    cached = finders.local.find_preferred_local_kernel_from_cache(
        {"kernelspec": {"name": "julia"}}
    )
    assert cached is not None
    assert cached.display_name == "Julia 1.10"
