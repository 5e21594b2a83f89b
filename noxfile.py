"""Nox sessions."""

from __future__ import annotations

from pathlib import Path

import nox

package = "nbkernels"
python_versions = ["3.12", "3.11", "3.10"]
nox.options.sessions = "format_check", "lint", "tests", "mypy"
locations = ["nbkernels", "tests", "noxfile.py"]


@nox.session(python=python_versions[0])
def format(session: nox.Session) -> None:
    """Run black and isort code formatters."""
    args = session.posargs or locations
    session.install("black", "isort")
    session.run("isort", "--profile", "black", *args)
    session.run("black", *args)


@nox.session(python=python_versions[0])
def format_check(session: nox.Session) -> None:
    """Check the code is formatted with black and isort."""
    args = session.posargs or locations
    session.install("black", "isort")
    session.run("isort", "--profile", "black", "--check", *args)
    session.run("black", "--check", *args)


@nox.session(python=python_versions)
def lint(session: nox.Session) -> None:
    """Lint using flake8."""
    args = session.posargs or locations
    session.install(
        "flake8",
        "flake8-annotations",
        "flake8-bandit",
        "flake8-bugbear",
        "flake8-docstrings",
    )
    session.run("flake8", "--max-line-length", "88", *args)


@nox.session(python=python_versions)
def mypy(session: nox.Session) -> None:
    """Type-check using mypy."""
    session.install("mypy")
    session.install("-e", ".")
    session.run("mypy", *(session.posargs or ["-p", package]))


@nox.session(python=python_versions)
def tests(session: nox.Session) -> None:
    """Run the test suite."""
    session.install(".[test]")
    try:
        session.run("coverage", "run", "--parallel", "-m", "pytest", *session.posargs)
    finally:
        if session.interactive:
            session.notify("coverage", posargs=[])


@nox.session(python=python_versions[0])
def coverage(session: nox.Session) -> None:
    """Produce the coverage report."""
    args = session.posargs or ["report"]
    session.install("coverage[toml]")
    if not session.posargs and any(Path().glob(".coverage.*")):
        session.run("coverage", "combine")
    session.run("coverage", *args)
