"""Defines nbkernels settings."""

import json

from nbkernels.config import add_setting

# nbkernels.log

add_setting(
    name="log_file",
    group="nbkernels.log",
    default="",
    type_=str,
    title="log file",
    help_="Where to write log records",
    description="""
        Log records are appended to this file if it is set.
        The value ``-`` prints them to the standard output instead.
    """,
)

add_setting(
    name="log_level",
    group="nbkernels.log",
    type_=str,
    default="warning",
    title="log level",
    help_="Minimum level of logged records",
    choices=["debug", "info", "warning", "error", "critical"],
    description="""
        Records below this level are discarded.
    """,
)

add_setting(
    name="log_level_stdout",
    group="nbkernels.log",
    type_=str,
    default="critical",
    title="terminal log level",
    help_="Minimum level of records printed to the terminal",
    choices=["debug", "info", "warning", "error", "critical"],
    description="""
        Only records at or above this level are printed to the standard output.
    """,
)

add_setting(
    name="log_config",
    group="nbkernels.log",
    type_=json.loads,
    default={},
    schema={
        "type": "object",
    },
    title="logging configuration",
    help_="Extra logging configuration",
    description="""
        A dictionary merged into the configuration given to
        :py:func:`logging.config.dictConfig`.
    """,
)

# nbkernels.kernel.finder

add_setting(
    name="kernel_search_paths",
    group="nbkernels.kernel.finder",
    type_=list,
    default=[],
    schema={"type": "array", "items": {"type": "string"}},
    title="additional kernel search paths",
    help_="Additional directories to search for kernel specs",
    description="""
        A list of directories, each containing kernel spec folders, which are
        searched in addition to the standard Jupyter kernel directories.
    """,
)

add_setting(
    name="interpreter_probe_timeout",
    group="nbkernels.interpreters",
    type_=float,
    default=10.0,
    schema={"minimum": 0},
    title="interpreter probe timeout",
    help_="Seconds to wait when querying an interpreter for its details",
    description="""
        Interpreters which do not report their details within this many seconds
        are skipped during discovery.
    """,
)

# nbkernels.kernel.installer

add_setting(
    name="package_probe_timeout",
    group="nbkernels.kernel.installer",
    type_=float,
    default=0.5,
    schema={"minimum": 0},
    title="package probe timeout",
    help_="Seconds to wait when checking if a package is installed",
    description="""
        When checking whether a package such as ``ipykernel`` is installed in an
        environment, the check is abandoned after this many seconds so that a slow
        interpreter never delays an installation prompt. An abandoned check is
        treated as unknown.
    """,
)

# nbkernels.kernel.session

add_setting(
    name="kernel_idle_timeout",
    group="nbkernels.kernel.session",
    type_=float,
    default=60.0,
    schema={"minimum": 0},
    title="kernel idle timeout",
    help_="Seconds to wait for a new kernel to become idle",
    description="""
        After starting a kernel, a session waits for the kernel to report an idle
        status for up to this many seconds before giving up.
    """,
)

add_setting(
    name="kernel_interrupt_timeout",
    group="nbkernels.kernel.session",
    type_=float,
    default=10.0,
    schema={"minimum": 0},
    title="kernel interrupt timeout",
    help_="Seconds to wait for an interrupted kernel to become idle",
    description="""
        After interrupting a kernel, a session waits this many seconds for the
        kernel to return to an idle state.
    """,
)

add_setting(
    name="prewarm_restart_session",
    group="nbkernels.kernel.session",
    type_=bool,
    default=True,
    title="pre-warm restart sessions",
    help_="Keep a standby kernel ready for restarts",
    description="""
        When enabled, a second kernel is started in the background once a session
        has connected. Restarting the session swaps this standby kernel in, which
        hides the kernel's start-up time.
    """,
)

add_setting(
    name="autorestart",
    group="nbkernels.kernel.session",
    type_=bool,
    default=True,
    title="automatically restart kernels",
    help_="Restart local kernels which die unexpectedly",
    description="""
        When enabled, a locally launched kernel which exits unexpectedly is
        restarted automatically.
    """,
)
