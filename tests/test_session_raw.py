"""Test sessions against local kernel processes."""

from __future__ import annotations

import asyncio
import os
from subprocess import PIPE, STDOUT
from typing import TYPE_CHECKING
from unittest.mock import AsyncMock, Mock

import pytest

from nbkernels.errors import KernelDiedError, KernelIdleTimeoutError
from nbkernels.kernel.connection import LocalKernelSpecConnection
from nbkernels.kernel.session.raw import (
    NbKernelManager,
    RawKernelSession,
    RawSessionHandle,
    to_jupyter_kernel_spec,
)
from nbkernels.kernel.spec import KernelSpec

if TYPE_CHECKING:
    from pathlib import Path
    from typing import Any

PYTHON_ARGV = ["python", "-m", "ipykernel_launcher", "-f", "{connection_file}"]
CONNECTION = LocalKernelSpecConnection(KernelSpec("ir", "R", "R", argv=["R"]))


def make_manager() -> Mock:
    """Create a pretend kernel manager whose kernel stays alive."""
    client = Mock()
    client.wait_for_ready = AsyncMock()
    manager = Mock(kernel_id="kernel-1", has_kernel=True)
    manager.client.return_value = client
    manager.start_kernel = AsyncMock()
    manager.is_alive = AsyncMock(return_value=True)
    manager.shutdown_kernel = AsyncMock()
    manager.restart_kernel = AsyncMock()
    manager.interrupt_kernel = AsyncMock()
    return manager


def make_session(manager: Mock, **kwargs: Any) -> RawKernelSession:
    """Create a session which launches the pretend kernel."""
    config = Mock(
        kernel_idle_timeout=1.0,
        kernel_interrupt_timeout=0.1,
        prewarm_restart_session=False,
        autorestart=kwargs.pop("autorestart", True),
    )
    return RawKernelSession(
        CONNECTION,
        config=config,
        kernel_manager_factory=lambda connection: manager,
        **kwargs,
    )


def test_connect_and_dispose(tmp_path: Path) -> None:
    """The kernel starts in the notebook's directory, and is shut down on disposal."""
    manager = make_manager()
    installer = Mock(ensure_kernel_usable=AsyncMock())
    session = make_session(
        manager, installer=installer, resource=tmp_path / "nb.ipynb"
    )

    async def main() -> None:
        await session.connect()
        assert session.status == "idle"
        assert session.session is not None
        assert session.session.monitor_task is not None
        await session.dispose()

    asyncio.run(main())

    installer.ensure_kernel_usable.assert_awaited_once_with(CONNECTION, None)
    manager.start_kernel.assert_awaited_once_with(
        stdout=PIPE, stderr=STDOUT, text=True, cwd=str(tmp_path)
    )
    client = manager.client.return_value
    client.start_channels.assert_called_once()
    client.stop_channels.assert_called_once()
    manager.shutdown_kernel.assert_awaited_once()
    assert session.status == "dead"


def test_restart_and_interrupt() -> None:
    """Restarts and interrupts are passed to the kernel manager."""
    manager = make_manager()
    session = make_session(manager)

    async def main() -> bool:
        await session.connect()
        await session.restart()
        result = await session.interrupt()
        await session.dispose()
        return result

    assert asyncio.run(main())
    manager.restart_kernel.assert_awaited_once_with()
    manager.interrupt_kernel.assert_awaited_once_with()


@pytest.mark.parametrize(
    ("alive", "error"), [(False, KernelDiedError), (True, KernelIdleTimeoutError)]
)
def test_wait_for_idle_errors(alive: bool, error: type[Exception]) -> None:
    """A kernel which does not answer is reported as dead or too slow."""
    manager = make_manager()
    manager.is_alive.return_value = alive
    client = manager.client.return_value
    client.wait_for_ready.side_effect = RuntimeError("Kernel didn't respond")
    session = make_session(manager)
    handle = RawSessionHandle(manager, client)

    with pytest.raises(error):
        asyncio.run(session.wait_for_idle_on_session(handle, 0.1))


def test_dead_kernel_is_restarted() -> None:
    """A kernel which exits unexpectedly is restarted automatically."""
    manager = make_manager()
    alive = [True]
    manager.is_alive.side_effect = lambda: alive[0]
    manager.restart_kernel.side_effect = lambda now=False: alive.__setitem__(0, True)
    session = make_session(manager)
    session.monitor_interval = 0.01
    statuses: list[str] = []
    session.status_changed += lambda s: statuses.append(s.status)

    async def main() -> None:
        await session.connect()
        alive[0] = False
        await asyncio.sleep(0.1)
        await session.dispose()

    asyncio.run(main())

    manager.restart_kernel.assert_awaited_once_with(now=True)
    assert statuses[:4] == ["connecting", "idle", "autorestarting", "idle"]


def test_dead_kernel_without_autorestart() -> None:
    """A kernel which exits is reported dead if it may not be restarted."""
    manager = make_manager()
    session = make_session(manager, autorestart=False)
    session.monitor_interval = 0.01

    async def main() -> str:
        await session.connect()
        manager.is_alive.return_value = False
        await asyncio.sleep(0.1)
        status = session.status
        await session.dispose()
        return status

    assert asyncio.run(main()) == "dead"
    manager.restart_kernel.assert_not_awaited()


def test_connection_info() -> None:
    """The kernel's connection details are reported with a text key."""
    manager = make_manager()
    manager.get_connection_info.return_value = {
        "shell_port": 1,
        "iopub_port": 2,
        "stdin_port": 3,
        "control_port": 4,
        "hb_port": 5,
        "ip": "127.0.0.1",
        "key": b"secret",
        "transport": "tcp",
        "signature_scheme": "hmac-sha256",
    }
    session = make_session(manager)
    assert session.connection_info is None

    async def main() -> Any:
        await session.connect()
        info = session.connection_info
        await session.dispose()
        return info

    info = asyncio.run(main())
    assert info["key"] == "secret"
    assert info["kernel_name"] == "ir"
    assert info["hb_port"] == 5


def test_to_jupyter_kernel_spec(tmp_path: Path) -> None:
    """Kernel specs are converted for use with ``jupyter_client``."""
    spec = KernelSpec(
        "ir",
        "R",
        "R",
        argv=["R", "{connection_file}"],
        env={"R_LIBS": "/opt/r"},
        interrupt_mode="message",
        spec_file=str(tmp_path / "ir" / "kernel.json"),
    )
    converted = to_jupyter_kernel_spec(spec)
    assert converted.argv == ["R", "{connection_file}"]
    assert converted.env == {"R_LIBS": "/opt/r"}
    assert converted.interrupt_mode == "message"
    assert converted.resource_dir == str(tmp_path / "ir")
    assert converted.display_name == "R"


def test_format_kernel_cmd_uses_interpreter(tmp_path: Path) -> None:
    """Bare ``python`` commands run the kernel spec's interpreter."""
    spec = KernelSpec("py", "Python", "python", argv=list(PYTHON_ARGV))
    manager = NbKernelManager(spec, interpreter_path="/envs/data/bin/python")
    manager.connection_file = str(tmp_path / "kernel-1.json")

    cmd = manager.format_kernel_cmd()

    assert cmd == [
        "/envs/data/bin/python",
        "-m",
        "ipykernel_launcher",
        "-f",
        os.path.realpath(tmp_path / "kernel-1.json"),
    ]
    assert manager.kernel_spec.display_name == "Python"


def test_format_kernel_cmd_leaves_other_commands(tmp_path: Path) -> None:
    """Commands other than ``python`` are only templated."""
    spec = KernelSpec(
        "ir",
        "R",
        "R",
        argv=["R", "--resources={resource_dir}", "{connection_file}"],
        spec_file=str(tmp_path / "ir" / "kernel.json"),
    )
    manager = NbKernelManager(spec)
    manager.connection_file = str(tmp_path / "kernel-1.json")
    assert manager.format_kernel_cmd() == [
        "R",
        f"--resources={tmp_path / 'ir'}",
        os.path.realpath(tmp_path / "kernel-1.json"),
    ]
