"""Pytest configuration for restage tests."""

from __future__ import annotations

from collections.abc import Iterator
from pathlib import Path

import pytest
from git import Repo

from helpers import commit_file


@pytest.fixture(autouse=True)
def reset_state(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Reset the output manager between tests and clear CI variables."""
    from restage.output import reset_output_manager

    # Rich ignores NO_COLOR when FORCE_COLOR is set
    monkeypatch.delenv("FORCE_COLOR", raising=False)
    monkeypatch.setenv("NO_COLOR", "1")

    # Invocation options fall back to these
    for name in (
        "GITLAB_CI",
        "CI_PIPELINE_SOURCE",
        "CI_COMMIT_REF_NAME",
        "CI_COMMIT_SHA",
        "CI_REPOSITORY_URL",
        "SOURCE_PROJECT",
        "SOURCE_BRANCH",
        "RESTAGE_RUN_JOBS",
    ):
        monkeypatch.delenv(name, raising=False)

    reset_output_manager()
    yield
    reset_output_manager()


@pytest.fixture
def upstream(tmp_path: Path) -> Iterator[Repo]:
    """A non-bare upstream repository on branch `master` with one commit."""
    repo = Repo.init(tmp_path / "upstream")
    repo.git.symbolic_ref("HEAD", "refs/heads/master")
    commit_file(repo, "README.md", "hello\n", "Initial commit")
    yield repo
    repo.close()
