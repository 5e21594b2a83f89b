"""Test loading and normalizing kernel specs."""

from __future__ import annotations

import asyncio
import json
import sys
from typing import TYPE_CHECKING

from nbkernels.async_utils import CancellationToken
from nbkernels.fs import FileSystem
from nbkernels.interpreters import Interpreter
from nbkernels.kernel.spec import (
    AUTOGEN_KERNEL_PREFIX,
    KernelSpec,
    RegistrationInfo,
    create_interpreter_kernel_spec,
    get_registration_info,
    interpreter_kernel_spec_name,
    is_default_python_kernel_spec,
    load_kernel_spec,
)

if TYPE_CHECKING:
    from pathlib import Path
    from typing import Any

PYTHON_ARGV = ["python", "-m", "ipykernel_launcher", "-f", "{connection_file}"]


def write_spec(root: Path, folder: str, data: dict[str, Any]) -> Path:
    """Write a ``kernel.json`` file into a kernel spec folder."""
    path = root / folder / "kernel.json"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data))
    return path


def load(path: Path, **kwargs: Any) -> KernelSpec | None:
    """Load a kernel spec synchronously."""
    return asyncio.run(load_kernel_spec(path, FileSystem(), **kwargs))


def test_load_basic_spec(tmp_path: Path) -> None:
    """A kernel spec's fields and provenance are loaded."""
    path = write_spec(
        tmp_path,
        "ir",
        {
            "argv": ["R", "--slave", "-e", "IRkernel::main()", "--args", "{x}"],
            "display_name": "R",
            "language": "R",
            "interrupt_mode": "signal",
            "env": {"R_LIBS": "/opt/r"},
        },
    )
    spec = load(path)
    assert spec is not None
    assert spec.name == "ir"
    assert spec.display_name == "R"
    assert spec.path == "R"
    assert spec.interrupt_mode == "signal"
    assert spec.env == {"R_LIBS": "/opt/r"}
    assert spec.spec_file == str(path)
    assert spec.resource_dir == str(path.parent)
    assert spec.provenance == {
        "originalSpecFile": str(path),
        "originalDisplayName": "R",
    }
    assert spec.registration_info is None


def test_loading_is_idempotent(tmp_path: Path) -> None:
    """Loading the same file twice gives equal kernel specs."""
    path = write_spec(
        tmp_path, "python3", {"argv": PYTHON_ARGV, "display_name": "Python 3"}
    )
    assert load(path) == load(path)


def test_existing_provenance_is_kept(tmp_path: Path) -> None:
    """Provenance already recorded is not overwritten."""
    path = write_spec(
        tmp_path,
        "copied",
        {
            "argv": ["julia"],
            "display_name": "Julia",
            "metadata": {"vscode": {"originalSpecFile": "/elsewhere/kernel.json"}},
        },
    )
    spec = load(path)
    assert spec is not None
    assert spec.provenance["originalSpecFile"] == "/elsewhere/kernel.json"
    assert spec.provenance["originalDisplayName"] == "Julia"


def test_legacy_provenance_is_moved(tmp_path: Path) -> None:
    """A top-level original spec file is moved into the provenance section."""
    path = write_spec(
        tmp_path,
        "legacy",
        {
            "argv": ["julia"],
            "display_name": "Julia",
            "metadata": {"originalSpecFile": "/legacy/kernel.json"},
        },
    )
    spec = load(path)
    assert spec is not None
    assert "originalSpecFile" not in spec.metadata
    assert spec.provenance["originalSpecFile"] == "/legacy/kernel.json"


def test_nameless_spec_uses_folder_name(tmp_path: Path) -> None:
    """A kernel spec with no name is named after its folder."""
    path = write_spec(tmp_path, "julia-1.9", {"argv": ["julia"], "language": "julia"})
    spec = load(path)
    assert spec is not None
    assert spec.name == "julia-1.9"
    assert spec.display_name == "julia-1.9"


def test_interpreter_identity_rewrite(tmp_path: Path) -> None:
    """Specs loaded for an interpreter are named after the interpreter."""
    interpreter = Interpreter(path=sys.executable, sys_prefix=sys.prefix)
    path = write_spec(
        tmp_path, "python3", {"argv": PYTHON_ARGV, "display_name": "Python 3"}
    )
    spec = load(path, interpreter=interpreter)
    assert spec is not None
    assert spec.name == interpreter_kernel_spec_name(interpreter)
    assert spec.name.startswith(AUTOGEN_KERNEL_PREFIX)
    assert spec.original_name == "python3"
    assert spec.interpreter_path == sys.executable


def test_disambiguation_of_custom_python_specs(tmp_path: Path) -> None:
    """Python specs with extra arguments get the arguments added to their name."""
    path = write_spec(
        tmp_path,
        "py-matplotlib",
        {
            "name": "py",
            "argv": [*PYTHON_ARGV, "--matplotlib=INLINE"],
            "display_name": "Python with plots",
            "language": "python",
        },
    )
    spec = load(path)
    assert spec is not None
    assert spec.name == "py.--matplotlib=inline"


def test_generic_python_names_are_not_disambiguated(tmp_path: Path) -> None:
    """Specs with a generic display name keep their name."""
    path = write_spec(
        tmp_path,
        "py",
        {
            "name": "py",
            "argv": [*PYTHON_ARGV, "--extra"],
            "display_name": "Python 3.11",
            "language": "python",
        },
    )
    spec = load(path)
    assert spec is not None
    assert spec.name == "py"


def test_stale_interpreter_is_pruned(tmp_path: Path) -> None:
    """Specs for deleted interpreters are ignored."""
    path = write_spec(
        tmp_path,
        "gone",
        {
            "argv": PYTHON_ARGV,
            "display_name": "Old env",
            "language": "python",
            "metadata": {"interpreter": {"path": str(tmp_path / "gone" / "python")}},
        },
    )
    assert load(path) is None


def test_unparsable_spec(tmp_path: Path) -> None:
    """Invalid JSON yields nothing."""
    path = tmp_path / "broken" / "kernel.json"
    path.parent.mkdir()
    path.write_text("{")
    assert load(path) is None
    path.write_text("[]")
    assert load(path) is None


def test_backup_folder_is_skipped(tmp_path: Path) -> None:
    """Kernel specs inside the backup folder are never loaded."""
    path = write_spec(
        tmp_path / "__old_nbkernels_kernelspecs", "julia", {"argv": ["julia"]}
    )
    assert load(path) is None


def test_cancelled_load(tmp_path: Path) -> None:
    """Cancelled loads yield nothing."""
    path = write_spec(tmp_path, "julia", {"argv": ["julia"]})
    token = CancellationToken()
    token.cancel()
    assert load(path, token=token) is None


def test_registration_info() -> None:
    """Specs registered by this package record which version did so."""
    assert get_registration_info("python3", {}) is None
    assert (
        get_registration_info("x", {"vscode": {"registeredByVersion": "0.9.0"}})
        == RegistrationInfo.OLD_VERSION
    )
    assert (
        get_registration_info("x", {"vscode": {"registeredByVersion": "1.2.0"}})
        == RegistrationInfo.NEW_VERSION
    )
    assert (
        get_registration_info(
            "x", {"vscode": {"registeredByVersion": "1.0.0", "customSpec": True}}
        )
        == RegistrationInfo.NEW_VERSION_CUSTOM
    )
    assert (
        get_registration_info(
            f"{AUTOGEN_KERNEL_PREFIX}abc", {"interpreter": {"path": "/x"}}
        )
        == RegistrationInfo.OLD_VERSION
    )


def test_is_default_python_kernel_spec() -> None:
    """Only stock ipykernel specs with generic names are default specs."""
    stock = KernelSpec(
        name="python3", display_name="Python 3", language="python", argv=PYTHON_ARGV
    )
    assert is_default_python_kernel_spec(stock)

    legacy = KernelSpec(
        name="python3",
        display_name="Python 3",
        language="python",
        argv=["python", "-m", "ipykernel", "-f", "{connection_file}"],
    )
    assert is_default_python_kernel_spec(legacy)

    named = KernelSpec(
        name="py", display_name="Data Science", language="python", argv=PYTHON_ARGV
    )
    assert not is_default_python_kernel_spec(named)

    with_env = KernelSpec(
        name="python3",
        display_name="Python 3",
        language="python",
        argv=PYTHON_ARGV,
        env={"A": "1"},
    )
    assert not is_default_python_kernel_spec(with_env)

    extra = KernelSpec(
        name="python3",
        display_name="Python 3",
        language="python",
        argv=[*PYTHON_ARGV, "--debug"],
    )
    assert not is_default_python_kernel_spec(extra)


def test_create_interpreter_kernel_spec() -> None:
    """Interpreter kernel specs launch ipykernel with the interpreter."""
    interpreter = Interpreter(path="/envs/ds/bin/python", display_name="Python (ds)")
    spec = create_interpreter_kernel_spec(interpreter)
    assert spec.argv[0] == "/envs/ds/bin/python"
    assert spec.argv[1:3] == ["-m", "ipykernel_launcher"]
    assert spec.display_name == "Python (ds)"
    assert spec.spec_file is None
    assert spec.interpreter_path == "/envs/ds/bin/python"


def test_from_model_and_to_dict() -> None:
    """Server kernel spec models are converted, and specs written back out."""
    spec = KernelSpec.from_model(
        {
            "name": "python3",
            "spec": {
                "argv": PYTHON_ARGV,
                "display_name": "Python 3 (ipykernel)",
                "language": "python",
                "metadata": {"debugger": True},
            },
        }
    )
    assert spec.name == "python3"
    assert spec.display_name == "Python 3 (ipykernel)"
    assert spec.to_dict() == {
        "argv": PYTHON_ARGV,
        "display_name": "Python 3 (ipykernel)",
        "language": "python",
        "name": "python3",
        "metadata": {"debugger": True},
    }
