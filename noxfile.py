"""
Nox sessions.

This file is used by `nox` to run the test suite against multiple Python versions.

See: http://nox.thea.codes
"""

from __future__ import annotations

import nox  # type: ignore

PYTHON_VERSIONS = ["3.10", "3.11", "3.12", "3.13"]


@nox.session(python=PYTHON_VERSIONS)
def tests(session: nox.Session) -> None:
    """Run the test suite (pass pytest args with: "-- <args>")."""
    session.install("-e", ".[test]")
    session.run("pytest", *session.posargs)


@nox.session(python=PYTHON_VERSIONS[-1])
def plan_example(session: nox.Session) -> None:
    """Print the job plan of the bundled example pipeline for every trigger kind."""
    session.install("-e", ".")
    config = "examples/veloren.yml"
    session.run("restage", "plan", config, "--branch", "master")
    session.run("restage", "plan", config, "--branch", "feature-x")
    session.run("restage", "plan", config, "--branch", "master", "--schedule")
    session.run("restage", "plan", config, "--branch", "master", "--run-job", "optional:linux-debug")
