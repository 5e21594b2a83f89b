"""Describe the ways in which a kernel can be started or connected to."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import cached_property
from typing import TYPE_CHECKING, Literal

from nbkernels.interpreters import interpreter_hash
from nbkernels.kernel.spec import PYTHON_LANGUAGE, KernelSpec

if TYPE_CHECKING:
    from typing import Any

    from nbkernels.interpreters import Interpreter

__all__ = [
    "KernelConnectionMetadata",
    "LiveKernelModel",
    "LiveRemoteKernelConnection",
    "LocalKernelSpecConnection",
    "PythonInterpreterConnection",
    "RemoteKernelSpecConnection",
]


def _digest(*parts: Any) -> str:
    return hashlib.sha256(
        json.dumps(parts, sort_keys=True, default=str).encode()
    ).hexdigest()


def _spec_fingerprint(spec: KernelSpec) -> dict[str, Any]:
    return {
        "name": spec.name,
        "display_name": spec.display_name,
        "language": spec.language,
        "argv": spec.argv,
        "env": spec.env,
        "interrupt_mode": spec.interrupt_mode,
    }


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LiveKernelModel:
    """A kernel already running on a Jupyter server."""

    id: str
    name: str
    last_activity_time: datetime
    number_of_connections: int = 0
    execution_state: str | None = None
    session: dict[str, Any] | None = None
    kernel_spec: KernelSpec | None = None

    @classmethod
    def from_models(
        cls,
        session: dict[str, Any],
        kernel: dict[str, Any] | None = None,
        kernel_spec: KernelSpec | None = None,
    ) -> LiveKernelModel:
        """Create a live kernel model from a server's session and kernel entries.

        Args:
            session: An entry from ``/api/sessions``
            kernel: The matching entry from ``/api/kernels``, if any
            kernel_spec: The kernel spec the kernel was started from, if known

        """
        session_kernel = session.get("kernel") or {}
        model = {**session_kernel, **(kernel or {})}
        return cls(
            id=model.get("id", ""),
            name=model.get("name", ""),
            last_activity_time=_parse_time(model.get("last_activity")),
            number_of_connections=int(model.get("connections") or 0),
            execution_state=model.get("execution_state"),
            session={k: v for k, v in session.items() if k != "kernel"},
            kernel_spec=kernel_spec,
        )


class _ConnectionMixin:
    """Properties shared by every kind of connection metadata."""

    kind: str
    kernel_spec: KernelSpec
    interpreter: Interpreter | None

    @property
    def display_name(self) -> str:
        """A human readable name for the kernel."""
        return self.kernel_spec.display_name

    @property
    def language(self) -> str:
        """The programming language of the kernel."""
        return self.kernel_spec.language

    @property
    def interpreter_path(self) -> str | None:
        """The executable of the Python environment the kernel runs in, if any."""
        if self.interpreter is not None:
            return self.interpreter.path
        return self.kernel_spec.interpreter_path

    @property
    def interpreter_hash(self) -> str | None:
        """A stable identifier of the interpreter the kernel runs in, if any."""
        if self.interpreter is not None:
            return interpreter_hash(self.interpreter)
        return None

    @property
    def is_python(self) -> bool:
        """Whether the kernel runs Python code."""
        return self.language.lower() == PYTHON_LANGUAGE


@dataclass(frozen=True)
class LocalKernelSpecConnection(_ConnectionMixin):
    """Start a local kernel from a kernel spec."""

    kernel_spec: KernelSpec
    interpreter: Interpreter | None = None
    kind: Literal["startUsingLocalKernelSpec"] = field(
        default="startUsingLocalKernelSpec", init=False
    )

    @cached_property
    def id(self) -> str:
        """A stable identifier for this connection."""
        return _digest(
            self.kind, _spec_fingerprint(self.kernel_spec), self.interpreter_path, ""
        )


@dataclass(frozen=True)
class PythonInterpreterConnection(_ConnectionMixin):
    """Start ``ipykernel`` in a Python interpreter's environment."""

    kernel_spec: KernelSpec
    interpreter: Interpreter
    kind: Literal["startUsingPythonInterpreter"] = field(
        default="startUsingPythonInterpreter", init=False
    )

    @cached_property
    def id(self) -> str:
        """A stable identifier for this connection."""
        return _digest(
            self.kind, _spec_fingerprint(self.kernel_spec), self.interpreter.path, ""
        )

    @property
    def display_name(self) -> str:
        """A human readable name for the kernel."""
        return self.interpreter.display_name or self.kernel_spec.display_name


@dataclass(frozen=True)
class RemoteKernelSpecConnection(_ConnectionMixin):
    """Start a new kernel on a Jupyter server from one of its kernel specs."""

    kernel_spec: KernelSpec
    base_url: str
    interpreter: Interpreter | None = None
    kind: Literal["startUsingRemoteKernelSpec"] = field(
        default="startUsingRemoteKernelSpec", init=False
    )

    @cached_property
    def id(self) -> str:
        """A stable identifier for this connection."""
        return _digest(
            self.kind,
            _spec_fingerprint(self.kernel_spec),
            self.interpreter_path,
            self.base_url,
        )


@dataclass(frozen=True)
class LiveRemoteKernelConnection(_ConnectionMixin):
    """Connect to a kernel already running on a Jupyter server."""

    kernel_model: LiveKernelModel
    base_url: str
    interpreter: Interpreter | None = None
    kind: Literal["connectToLiveKernel"] = field(
        default="connectToLiveKernel", init=False
    )

    @cached_property
    def id(self) -> str:
        """A stable identifier for this connection."""
        return _digest(self.kind, self.base_url, self.kernel_model.id)

    @property
    def kernel_spec(self) -> KernelSpec:  # type: ignore[override]
        """The kernel spec the live kernel was started from."""
        if self.kernel_model.kernel_spec is not None:
            return self.kernel_model.kernel_spec
        return KernelSpec(
            name=self.kernel_model.name, display_name=self.kernel_model.name
        )

    @property
    def display_name(self) -> str:
        """A human readable name for the kernel."""
        name = self.kernel_spec.display_name
        if path := (self.kernel_model.session or {}).get("path"):
            return f"{name} ({path})"
        return name


KernelConnectionMetadata = (
    LocalKernelSpecConnection
    | PythonInterpreterConnection
    | RemoteKernelSpecConnection
    | LiveRemoteKernelConnection
)


def is_local_connection(connection: KernelConnectionMetadata) -> bool:
    """Determine if a connection launches a kernel on this machine."""
    return isinstance(
        connection, (LocalKernelSpecConnection, PythonInterpreterConnection)
    )
