"""Incremental synchronization of a persistent build workspace.

Instead of wiping and re-cloning the checkout for every pipeline run, the
synchronizer keeps one working copy per build host and brings it up to date:

1. cold clone only when there is no ``.git`` yet
2. never clean untracked files (build caches survive between runs)
3. remove lock files left behind by an interrupted run
4. repoint ``origin`` at the canonical remote
5. fetch every branch and tag with pruning
6. force-checkout the requested commit
7. merge a source project/branch on top for merge pipelines
8. pull large binary assets (git-lfs)

Any failure raises SyncError and the pipeline run is aborted.
"""

from __future__ import annotations

import shutil
import string
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path

from git import GitCommandError, GitError, InvalidGitRepositoryError, NoSuchPathError, Repo

from .errors import SyncError, SyncFailure
from .output import get_output_manager
from .trigger import Trigger

GIT_DIR = ".git"

# Relative to the .git directory
STALE_LOCKS = (
    "index.lock",
    "shallow.lock",
    "HEAD.lock",
    "packed-refs.lock",
    "config.lock",
    # Leftover git-lfs hook from an interrupted `lfs install`
    "hooks/post-checkout",
)

FETCH_REFSPECS = (
    "+refs/heads/*:refs/remotes/origin/*",
    "+refs/tags/*:refs/tags/*",
)

# Identity used for the merge commit of merge pipelines
MERGE_IDENTITY = {
    "GIT_AUTHOR_NAME": "restage",
    "GIT_AUTHOR_EMAIL": "restage@localhost",
    "GIT_COMMITTER_NAME": "restage",
    "GIT_COMMITTER_EMAIL": "restage@localhost",
}


@dataclass(frozen=True)
class Workspace:
    """
    The persistent on-disk working copy.

    Created once per build host and reused across runs. Only the
    synchronizer produces updated values; nothing here deletes `root`.
    """

    root: Path
    current_commit: str | None = None
    has_git_dir: bool = False
    lock_files: frozenset[Path] = frozenset()
    merged_commit: str | None = None
    """HEAD after the merge-pipeline integration merge, if one happened."""

    @classmethod
    def at(cls, root: Path | str) -> Workspace:
        """Describe the workspace currently on disk at `root`."""
        root = Path(root)
        git_dir = root / GIT_DIR
        return cls(
            root=root,
            current_commit=_read_head(root) if git_dir.is_dir() else None,
            has_git_dir=git_dir.is_dir(),
            lock_files=frozenset(find_stale_locks(root)),
        )


def _read_head(root: Path) -> str | None:
    try:
        repo = Repo(root)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return None
    try:
        return repo.head.commit.hexsha
    except ValueError:
        # Unborn branch, nothing checked out yet
        return None
    finally:
        repo.close()


def find_stale_locks(root: Path) -> list[Path]:
    """List lock artifacts under `root/.git` that would block the next fetch."""
    git_dir = root / GIT_DIR
    if not git_dir.is_dir():
        return []

    found = [git_dir / name for name in STALE_LOCKS if (git_dir / name).exists()]
    refs_dir = git_dir / "refs"
    if refs_dir.is_dir():
        found.extend(sorted(refs_dir.rglob("*.lock")))
    return found


@dataclass
class SyncSettings:
    """Configuration for the synchronizer."""

    remote_url: str
    """Canonical remote, re-applied to `origin` on every sync."""

    merge_url_template: str = "{source_project}"
    """URL of a merge pipeline's source project; `{source_project}` is substituted."""

    lfs: bool = True
    """Fetch and check out git-lfs objects after checkout."""

    scratch_dirs: list[str] = field(default_factory=list)
    """Directories (relative to the root) emptied at the start of every sync."""

    def merge_url(self, source_project: str) -> str:
        return self.merge_url_template.format(source_project=source_project.strip())


class GitBackend:
    """
    Git operations used by the synchronizer.

    Every method raises GitCommandError on failure, or another GitError when
    `root` holds no usable repository.
    """

    def clone(self, url: str, root: Path) -> None:
        Repo.clone_from(url, root).close()

    def set_remote_url(self, root: Path, url: str) -> None:
        with Repo(root) as repo:
            if "origin" in [r.name for r in repo.remotes]:
                repo.remote("origin").set_url(url)
            else:
                repo.create_remote("origin", url)

    def fetch(self, root: Path) -> None:
        with Repo(root) as repo:
            repo.git.fetch("origin", "--prune", *FETCH_REFSPECS)

    def checkout(self, root: Path, revision: str) -> str:
        with Repo(root) as repo:
            repo.git.checkout("-f", "-q", revision)
            return repo.head.commit.hexsha

    def merge(self, root: Path, url: str, branch: str) -> str:
        with Repo(root) as repo:
            try:
                with repo.git.custom_environment(**MERGE_IDENTITY):
                    repo.git.pull("--no-rebase", "--no-edit", url, branch)
            except GitCommandError:
                if (Path(repo.git_dir) / "MERGE_HEAD").exists():
                    repo.git.merge("--abort")
                raise
            return repo.head.commit.hexsha

    def fetch_assets(self, root: Path) -> None:
        with Repo(root) as repo:
            repo.git.lfs("install", "--local")
            repo.git.lfs("fetch")
            repo.git.lfs("checkout")


def _is_sha(value: str) -> bool:
    return bool(value) and all(c in string.hexdigits for c in value)


# One lock per workspace root: sync is the only writer of the shared checkout
_root_locks: dict[Path, threading.Lock] = {}
_root_locks_guard = threading.Lock()


def _lock_for(root: Path) -> threading.Lock:
    key = root.resolve()
    with _root_locks_guard:
        return _root_locks.setdefault(key, threading.Lock())


class WorkspaceSynchronizer:
    """Brings a Workspace to the commit a Trigger asks for."""

    def __init__(self, settings: SyncSettings, backend: GitBackend | None = None):
        self.settings = settings
        self.backend = backend or GitBackend()

    @contextmanager
    def _step(self, failure: SyncFailure, description: str) -> Generator[None, None, None]:
        get_output_manager().debug(description)
        try:
            yield
        except (GitError, OSError) as e:
            raise SyncError(failure, f"{description} failed: {e}") from e

    def sync(self, workspace: Workspace, trigger: Trigger) -> Workspace:
        """
        Synchronize `workspace` with `trigger`'s commit.

        Returns the updated Workspace. Raises SyncError on any failure.
        """
        with _lock_for(workspace.root):
            return self._sync(workspace, trigger)

    def _sync(self, workspace: Workspace, trigger: Trigger) -> Workspace:
        root = workspace.root
        settings = self.settings
        out = get_output_manager()

        with self._step(SyncFailure.WORKSPACE_UNUSABLE, f"create {root}"):
            root.mkdir(parents=True, exist_ok=True)

        if not (root / GIT_DIR).is_dir():
            out.info(f"No repository in {root}, cloning {settings.remote_url}")
            with self._step(SyncFailure.COLD_CLONE_FAILED, f"clone {settings.remote_url}"):
                self.backend.clone(settings.remote_url, root)
        else:
            out.debug(f"Reusing existing repository in {root}")

        locks = find_stale_locks(root)
        for lock in locks:
            out.warning(f"Removing stale lock {lock.relative_to(root)}")
            with self._step(SyncFailure.WORKSPACE_UNUSABLE, f"remove {lock}"):
                lock.unlink()

        with self._step(SyncFailure.WORKSPACE_UNUSABLE, "reset scratch directories"):
            self._reset_scratch_dirs(root)

        with self._step(SyncFailure.FETCH_FAILED, f"set origin to {settings.remote_url}"):
            self.backend.set_remote_url(root, settings.remote_url)

        with self._step(SyncFailure.FETCH_FAILED, "fetch origin"):
            self.backend.fetch(root)

        if not trigger.commit_id and not trigger.branch_ref:
            raise SyncError(SyncFailure.CHECKOUT_FAILED, "Trigger names neither a commit nor a branch")
        revision = trigger.commit_id or f"origin/{trigger.branch_ref}"

        with self._step(SyncFailure.CHECKOUT_FAILED, f"checkout {revision}"):
            current = self.backend.checkout(root, revision)

        if _is_sha(trigger.commit_id) and not current.startswith(trigger.commit_id.lower()):
            raise SyncError(
                SyncFailure.CHECKOUT_FAILED,
                f"Checked out {current} but the trigger asked for {trigger.commit_id}",
            )

        merged: str | None = None
        if trigger.has_merge_source:
            assert trigger.source_project is not None and trigger.source_branch is not None
            url = settings.merge_url(trigger.source_project)
            out.info(f"Merge pipeline from {trigger.source_project}/{trigger.source_branch.strip()}")
            with self._step(SyncFailure.MERGE_CONFLICT, f"merge {url} {trigger.source_branch.strip()}"):
                merged = self.backend.merge(root, url, trigger.source_branch.strip())

        if settings.lfs:
            with self._step(SyncFailure.ASSET_FETCH_FAILED, "fetch lfs assets"):
                self.backend.fetch_assets(root)

        return replace(
            workspace,
            current_commit=current,
            has_git_dir=True,
            lock_files=frozenset(locks),
            merged_commit=merged,
        )

    def _reset_scratch_dirs(self, root: Path) -> None:
        for name in self.settings.scratch_dirs:
            path = root / name
            if path.is_dir() and not path.is_symlink():
                shutil.rmtree(path)
            elif path.exists():
                path.unlink()
            path.mkdir(parents=True)
