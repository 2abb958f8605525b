"""Classification of why a pipeline run was started."""

from __future__ import annotations

import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, field_validator

# Environment variables read by InvocationContext.from_environ()
ENV_PIPELINE_SOURCE = "CI_PIPELINE_SOURCE"
ENV_BRANCH = "CI_COMMIT_REF_NAME"
ENV_COMMIT = "CI_COMMIT_SHA"
ENV_SOURCE_PROJECT = "SOURCE_PROJECT"
ENV_SOURCE_BRANCH = "SOURCE_BRANCH"
ENV_RUN_JOBS = "RESTAGE_RUN_JOBS"

# Pipeline sources that mean "a human pressed the button"
MANUAL_SOURCES = frozenset({"web"})
SCHEDULED_SOURCES = frozenset({"schedule"})


class TriggerKind(Enum):
    """Reason a pipeline run started."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    PUSH = "push"
    MERGE_PIPELINE = "merge_pipeline"


ALL_KINDS: frozenset[TriggerKind] = frozenset(TriggerKind)


def is_blank(value: str | None) -> bool:
    """True for None, empty, or whitespace-only strings."""
    return value is None or not value.strip()


class Trigger(BaseModel):
    """
    Classified invocation of a pipeline. Immutable.

    `requested_jobs` names manual jobs a human explicitly asked to run.
    """

    kind: TriggerKind
    branch_ref: str = ""
    commit_id: str = ""
    source_project: str | None = None
    source_branch: str | None = None
    requested_jobs: frozenset[str] = frozenset()

    model_config = {"frozen": True}

    @field_validator("branch_ref", "commit_id")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()

    @property
    def has_merge_source(self) -> bool:
        """True when both source project and source branch are non-blank."""
        return not is_blank(self.source_project) and not is_blank(self.source_branch)


@dataclass
class InvocationContext:
    """
    Raw, untrusted description of how the pipeline was invoked.

    Every field is free-form; classify() never fails on odd values.
    """

    pipeline_source: str = ""
    branch_ref: str = ""
    commit_id: str = ""
    source_project: str | None = None
    source_branch: str | None = None
    requested_jobs: list[str] = field(default_factory=list)

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> InvocationContext:
        """Build a context from CI environment variables."""
        env = os.environ if environ is None else environ
        return cls(
            pipeline_source=env.get(ENV_PIPELINE_SOURCE, ""),
            branch_ref=env.get(ENV_BRANCH, ""),
            commit_id=env.get(ENV_COMMIT, ""),
            source_project=env.get(ENV_SOURCE_PROJECT),
            source_branch=env.get(ENV_SOURCE_BRANCH),
            requested_jobs=split_job_list(env.get(ENV_RUN_JOBS, "")),
        )


def split_job_list(value: str | Iterable[str]) -> list[str]:
    """Split a comma separated job list, dropping blanks."""
    items = value.split(",") if isinstance(value, str) else list(value)
    return [item.strip() for item in items if item and item.strip()]


def classify(context: InvocationContext) -> Trigger:
    """
    Classify an invocation context into a Trigger.

    Precedence when several signals are present:
    Scheduled > MergePipeline > Manual > Push. Contexts that match nothing
    are classified as Push with whatever fields were supplied.
    """
    source = (context.pipeline_source or "").strip().lower()
    requested = frozenset(split_job_list(context.requested_jobs or []))

    if source in SCHEDULED_SOURCES:
        kind = TriggerKind.SCHEDULED
    elif not is_blank(context.source_project) and not is_blank(context.source_branch):
        kind = TriggerKind.MERGE_PIPELINE
    elif requested or source in MANUAL_SOURCES:
        kind = TriggerKind.MANUAL
    else:
        kind = TriggerKind.PUSH

    merge = kind is TriggerKind.MERGE_PIPELINE
    return Trigger(
        kind=kind,
        branch_ref=context.branch_ref or "",
        commit_id=context.commit_id or "",
        source_project=context.source_project.strip() if merge and context.source_project else None,
        source_branch=context.source_branch.strip() if merge and context.source_branch else None,
        requested_jobs=requested,
    )
