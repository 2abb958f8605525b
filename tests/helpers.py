"""Shared helpers for restage tests."""

from __future__ import annotations

import shutil
from collections.abc import Sequence
from pathlib import Path
from typing import TextIO

import pytest
from git import Actor, GitCommandError, Repo

from restage.conditions import ALWAYS, Condition
from restage.selector import JobSpec, RunMode
from restage.subprocess import CancelToken, CommandResult
from restage.sync import GitBackend, find_stale_locks

requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git executable not available")

AUTHOR = Actor("Test Author", "author@example.com")

SHA = "0123456789abcdef0123456789abcdef01234567"


def commit_file(repo: Repo, name: str, content: str, message: str) -> str:
    """Write a file into `repo`, commit it, and return the new commit id."""
    path = Path(str(repo.working_tree_dir)) / name
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    repo.index.add([name])
    return repo.index.commit(message, author=AUTHOR, committer=AUTHOR).hexsha


def make_job(
    name: str,
    stage: str = "test",
    *,
    script: Sequence[str] = ("true",),
    condition: Condition = ALWAYS,
    run_mode: RunMode = RunMode.ALWAYS,
    **kwargs: object,
) -> JobSpec:
    return JobSpec(name=name, stage=stage, script=tuple(script), condition=condition, run_mode=run_mode, **kwargs)  # type: ignore[arg-type]


class FakeExecutor:
    """
    Command executor that never starts a process.

    Commands map to exit codes through `exit_codes`; everything else exits 0.
    Every call is recorded as (job name, command).
    """

    def __init__(self, exit_codes: dict[str, int] | None = None):
        self.exit_codes = exit_codes or {}
        self.calls: list[tuple[str, str]] = []

    def execute(
        self,
        command: str,
        *,
        cwd: Path,
        env: dict[str, str],
        log: TextIO,
        timeout: float | None = None,
        cancel: CancelToken | None = None,
    ) -> CommandResult:
        self.calls.append((env.get("CI_JOB_NAME", ""), command))
        log.write(f"$ {command}\n")
        return CommandResult(returncode=self.exit_codes.get(command, 0), command=command)

    def commands_for(self, job_name: str) -> list[str]:
        return [command for name, command in self.calls if name == job_name]


class RecordingBackend(GitBackend):
    """
    Git backend that records calls instead of running git.

    `fail` maps a method name to the GitCommandError it raises.
    """

    def __init__(self, head: str = SHA, fail: dict[str, GitCommandError] | None = None):
        self.head = head
        self.fail = fail or {}
        self.calls: list[tuple[str, ...]] = []
        self.locks_seen_at_fetch: list[Path] = []

    def _record(self, name: str, *args: str) -> None:
        self.calls.append((name, *args))
        if name in self.fail:
            raise self.fail[name]

    def clone(self, url: str, root: Path) -> None:
        self._record("clone", url)
        (root / ".git").mkdir()

    def set_remote_url(self, root: Path, url: str) -> None:
        self._record("set_remote_url", url)

    def fetch(self, root: Path) -> None:
        self.locks_seen_at_fetch = find_stale_locks(root)
        self._record("fetch")

    def checkout(self, root: Path, revision: str) -> str:
        self._record("checkout", revision)
        return self.head

    def merge(self, root: Path, url: str, branch: str) -> str:
        self._record("merge", url, branch)
        return "f" * 40

    def fetch_assets(self, root: Path) -> None:
        self._record("fetch_assets")

    @property
    def names(self) -> list[str]:
        return [call[0] for call in self.calls]
