"""Exception types shared across restage."""

from __future__ import annotations

from enum import Enum


class RestageError(Exception):
    """Base class for all restage errors."""


class ConfigError(RestageError):
    """The pipeline definition is invalid."""


class SyncFailure(Enum):
    """Which step of workspace synchronization failed."""

    COLD_CLONE_FAILED = "cold_clone_failed"
    FETCH_FAILED = "fetch_failed"
    CHECKOUT_FAILED = "checkout_failed"
    MERGE_CONFLICT = "merge_conflict"
    ASSET_FETCH_FAILED = "asset_fetch_failed"
    WORKSPACE_UNUSABLE = "workspace_unusable"
    """The workspace directory, its lock files or scratch directories could not be prepared."""


class SyncError(RestageError):
    """
    Workspace synchronization failed.

    Always fatal to the pipeline run: no job starts from a partially
    synchronized workspace.
    """

    def __init__(self, kind: SyncFailure, message: str):
        self.kind = kind
        self.message = message
        super().__init__(f"{kind.value}: {message}")


class PublishFailure(Enum):
    """Why an artifact could not be published."""

    MISSING_PATH = "missing_path"
    OUTSIDE_OUTPUT_DIR = "outside_output_dir"


class PublishError(RestageError):
    """Packaging a job's declared artifact paths failed."""

    def __init__(self, kind: PublishFailure, message: str, *, job_name: str, path: str | None = None):
        self.kind = kind
        self.job_name = job_name
        self.path = path
        super().__init__(f"{job_name}: {kind.value}: {message}")
