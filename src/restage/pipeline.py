"""End-to-end pipeline runs.

    trigger = classify(context)
    jobs = select(graph, trigger)
    workspace = synchronizer.sync(workspace, trigger)    # exclusive, once
    result = StageRunner(workspace, ...).run(jobs)       # read-only fan-out

A SyncError aborts the run before any job starts.
"""

from __future__ import annotations

import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from .artifacts import ArtifactPublisher
from .config import PipelineConfig
from .errors import SyncError
from .output import get_output_manager
from .runner import PipelineResult, PipelineState, StageRunner
from .selector import JobSpec, select
from .subprocess import CancelToken, CommandExecutor
from .sync import GitBackend, Workspace, WorkspaceSynchronizer
from .trigger import InvocationContext, Trigger, classify


@dataclass
class PipelineRun:
    """Everything a pipeline run produced."""

    trigger: Trigger
    selected: list[JobSpec] = field(default_factory=list)
    workspace: Workspace | None = None
    result: PipelineResult | None = None
    sync_error: SyncError | None = None
    """Set when synchronization aborted the run; no job ran."""

    @property
    def state(self) -> PipelineState:
        if self.sync_error is not None or self.result is None:
            return PipelineState.FAILED
        return self.result.state

    @property
    def ok(self) -> bool:
        """True for succeeded and partially failed pipelines."""
        return self.state in (PipelineState.SUCCEEDED, PipelineState.PARTIALLY_FAILED)


def run_pipeline(
    config: PipelineConfig,
    context: InvocationContext | Trigger,
    *,
    workspace_root: Path | str | None = None,
    remote_url: str | None = None,
    activations: Iterable[str] = (),
    sync: bool = True,
    cancel: CancelToken | None = None,
    executor: CommandExecutor | None = None,
    git: GitBackend | None = None,
) -> PipelineRun:
    """
    Run a whole pipeline for one invocation.

    Args:
        config: The loaded pipeline definition.
        context: Raw invocation context, or an already classified Trigger.
        workspace_root: Overrides `sync.root` from the config.
        remote_url: Overrides `sync.remote_url` from the config.
        activations: Manual jobs a human activated for this run.
        sync: Synchronize the workspace first (skip to build the checkout as is).
        cancel: Token that aborts the run when cancelled.
        executor: Command executor for job scripts (default: ShellExecutor).
        git: Git backend for synchronization (default: GitBackend).

    Returns:
        PipelineRun; `sync_error` is set instead of raising when sync fails.

    """
    out = get_output_manager()
    trigger = context if isinstance(context, Trigger) else classify(context)
    run = PipelineRun(trigger=trigger)

    out.pipeline_header(describe_trigger(trigger))

    run.selected = select(config.graph, trigger)
    out.debug(f"Selected jobs: {', '.join(j.name for j in run.selected) or '(none)'}")

    workspace = Workspace.at(config.workspace_root(workspace_root))
    if sync:
        synchronizer = WorkspaceSynchronizer(config.sync_settings(remote_url), backend=git)
        try:
            with out.section("sync", f"sync {workspace.root}", collapsed=True):
                workspace = synchronizer.sync(workspace, trigger)
        except SyncError as e:
            out.error(f"Workspace synchronization failed, pipeline aborted: {e}")
            run.sync_error = e
            out.pipeline_status(PipelineState.FAILED.value, 0.0, 0)
            return run
    run.workspace = workspace

    run_dir = config.run_dir()
    runner = StageRunner(
        workspace,
        executor=executor,
        run_dir=run_dir,
        isolation=config.runner.isolation,
        publisher=ArtifactPublisher(config.artifacts_dir()),
        trigger=trigger,
        variables=config.variables,
        max_workers=config.runner.max_workers,
    )
    run.result = runner.run(
        run.selected,
        activations=activations,
        cancel=cancel,
        stages=config.graph.stages,
    )

    # Logs of failed runs stay behind for inspection
    if run.result.state is PipelineState.SUCCEEDED and run_dir is None and not config.runner.keep_run_dir:
        shutil.rmtree(runner.run_dir, ignore_errors=True)

    out.pipeline_status(run.result.state.value, run.result.elapsed_seconds, len(run.result.results))
    return run


def describe_trigger(trigger: Trigger) -> str:
    """One-line human description of a trigger."""
    parts = [f"{trigger.kind.value} pipeline"]
    if trigger.branch_ref:
        parts.append(f"on {trigger.branch_ref}")
    if trigger.commit_id:
        parts.append(f"at {trigger.commit_id[:12]}")
    if trigger.has_merge_source:
        parts.append(f"merging {trigger.source_project}/{trigger.source_branch}")
    return " ".join(parts)
