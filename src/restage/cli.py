"""Command line interface for restage."""

from __future__ import annotations

import signal
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import click

from .config import PipelineConfig, load_config
from .errors import ConfigError, SyncError
from .output import SYMBOLS, Verbosity, configure_output, get_output_manager
from .pipeline import describe_trigger, run_pipeline
from .selector import plan as plan_jobs
from .subprocess import CancelToken
from .sync import Workspace, WorkspaceSynchronizer
from .trigger import (
    ENV_BRANCH,
    ENV_COMMIT,
    ENV_PIPELINE_SOURCE,
    ENV_RUN_JOBS,
    ENV_SOURCE_BRANCH,
    ENV_SOURCE_PROJECT,
    InvocationContext,
    Trigger,
    classify,
    split_job_list,
)

ENV_REPOSITORY_URL = "CI_REPOSITORY_URL"


def _trigger_options(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Options describing the invocation, each falling back to the CI environment."""
    options = [
        click.option("--pipeline-source", envvar=ENV_PIPELINE_SOURCE, default="", help="Why the run started"),
        click.option("--schedule", is_flag=True, default=False, help="Treat the run as scheduled"),
        click.option("--branch", envvar=ENV_BRANCH, default="", help="Branch ref to build"),
        click.option("--commit", envvar=ENV_COMMIT, default="", help="Commit id to build"),
        click.option("--source-project", envvar=ENV_SOURCE_PROJECT, default=None, help="Merge source project"),
        click.option("--source-branch", envvar=ENV_SOURCE_BRANCH, default=None, help="Merge source branch"),
        click.option(
            "--run-job",
            "run_jobs",
            multiple=True,
            envvar=ENV_RUN_JOBS,
            help="Manual job to activate (repeatable, or comma separated)",
        ),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _load(config_path: str) -> PipelineConfig:
    try:
        return load_config(config_path)
    except ConfigError as e:
        get_output_manager().error(str(e))
        sys.exit(2)


def _trigger_from_options(
    pipeline_source: str,
    schedule: bool,
    branch: str,
    commit: str,
    source_project: str | None,
    source_branch: str | None,
    run_jobs: tuple[str, ...],
) -> Trigger:
    context = InvocationContext(
        pipeline_source="schedule" if schedule else pipeline_source,
        branch_ref=branch,
        commit_id=commit,
        source_project=source_project,
        source_branch=source_branch,
        requested_jobs=[name for value in run_jobs for name in split_job_list(value)],
    )
    return classify(context)


def _install_signal_handlers(cancel: CancelToken) -> dict[int, Any]:
    def handler(signum: int, frame: Any) -> None:
        get_output_manager().warning(f"Received {signal.Signals(signum).name}, cancelling pipeline")
        cancel.cancel()

    previous = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)
    return previous


@click.group()
@click.option("-v", "--verbose", is_flag=True, default=False, help="Show sync steps and other detail")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Only show errors and the summary")
@click.option("--color/--no-color", default=None, help="Force colored output on or off")
@click.version_option(package_name="restage")
def cli(verbose: bool, quiet: bool, color: bool | None) -> None:
    """Run a staged CI pipeline against a persistent workspace."""
    if verbose:
        verbosity = Verbosity.VERBOSE
    elif quiet:
        verbosity = Verbosity.QUIET
    else:
        verbosity = Verbosity.NORMAL
    configure_output(verbosity=verbosity, force_color=color)


@cli.command()
@click.argument("config_path", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False))
@_trigger_options
def plan(config_path: str, **trigger_kwargs: Any) -> None:
    """Show which jobs a run would select, without running anything."""
    config = _load(config_path)
    trigger = _trigger_from_options(**trigger_kwargs)
    console = get_output_manager().console

    def emit(line: str) -> None:
        console.print(line, markup=False, highlight=False, soft_wrap=True)

    selections = plan_jobs(config.graph, trigger)

    emit(f"{SYMBOLS['entry']} {describe_trigger(trigger)}")
    for stage in config.graph.stages:
        in_stage = [s for s in selections if s.job.stage == stage]
        if not in_stage:
            continue
        emit(f"{SYMBOLS['branch']} stage {stage}")
        for selection in in_stage:
            if not selection.selected:
                reason = selection.reason.value if selection.reason else "not selected"
                line = f"{SYMBOLS['skipped']} {selection.job.name} (skipped: {reason})"
            elif selection.awaits_activation:
                activated = selection.job.name in trigger.requested_jobs
                line = f"{SYMBOLS['success']} {selection.job.name} (manual{', activated' if activated else ''})"
            elif selection.job.tolerant:
                line = f"{SYMBOLS['success']} {selection.job.name} (allowed to fail)"
            else:
                line = f"{SYMBOLS['success']} {selection.job.name}"
            emit(f"{SYMBOLS['pipe']}    {line}")


@cli.command()
@click.argument("config_path", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False))
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace root (overrides sync.root)")
@click.option("--remote-url", envvar=ENV_REPOSITORY_URL, default=None, help="Canonical remote URL")
@_trigger_options
def sync(config_path: str, workspace: str | None, remote_url: str | None, **trigger_kwargs: Any) -> None:
    """Synchronize the workspace without running any job."""
    out = get_output_manager()
    config = _load(config_path)
    trigger = _trigger_from_options(**trigger_kwargs)

    try:
        current = Workspace.at(config.workspace_root(workspace))
        synchronizer = WorkspaceSynchronizer(config.sync_settings(remote_url))
        result = synchronizer.sync(current, trigger)
    except ConfigError as e:
        out.error(str(e))
        sys.exit(2)
    except SyncError as e:
        out.error(f"Workspace synchronization failed: {e}")
        sys.exit(1)

    out.info(f"{result.root} at {result.current_commit}")
    if result.merged_commit:
        out.info(f"merged into {result.merged_commit}")


@cli.command()
@click.argument("config_path", metavar="CONFIG", type=click.Path(exists=True, dir_okay=False))
@click.option("--workspace", type=click.Path(file_okay=False), default=None, help="Workspace root (overrides sync.root)")
@click.option("--remote-url", envvar=ENV_REPOSITORY_URL, default=None, help="Canonical remote URL")
@click.option("--no-sync", is_flag=True, default=False, help="Build the workspace as it is on disk")
@_trigger_options
def run(
    config_path: str,
    workspace: str | None,
    remote_url: str | None,
    no_sync: bool,
    **trigger_kwargs: Any,
) -> None:
    """Synchronize the workspace and run the selected jobs stage by stage."""
    out = get_output_manager()
    config = _load(config_path)
    trigger = _trigger_from_options(**trigger_kwargs)

    cancel = CancelToken()
    previous = _install_signal_handlers(cancel)

    try:
        result = run_pipeline(
            config,
            trigger,
            workspace_root=Path(workspace) if workspace else None,
            remote_url=remote_url,
            sync=not no_sync,
            cancel=cancel,
        )
    except ConfigError as e:
        out.error(str(e))
        sys.exit(2)
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if not result.ok:
        sys.exit(1)


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
