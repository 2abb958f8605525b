"""
Restage - staged CI pipelines against a persistent, incrementally synced workspace.

Basic usage:

    import restage

    config = restage.load_config("pipeline.yml")
    context = restage.InvocationContext.from_environ()

    run = restage.run_pipeline(config, context)
    assert run.ok

    # Or use the CLI:
    #   restage run pipeline.yml --branch master --commit <sha>
"""

from .artifacts import ArtifactPublisher, PublishedArtifact, ZipArchiver
from .conditions import (
    ALWAYS,
    AndCondition,
    BranchIs,
    Condition,
    KindIs,
    NotCondition,
    OrCondition,
    all_of,
    any_of,
    except_schedules,
    kind_is,
    only_branches,
    only_schedules,
)
from .config import PipelineConfig, load_config, parse_config
from .durations import format_duration, parse_duration
from .errors import ConfigError, PublishError, PublishFailure, RestageError, SyncError, SyncFailure
from .output import Verbosity, configure_output, get_output_manager
from .pipeline import PipelineRun, run_pipeline
from .runner import (
    Isolation,
    JobFailure,
    JobStatus,
    PipelineResult,
    PipelineState,
    RunResult,
    StageResult,
    StageRunner,
    StageState,
)
from .selector import JobSpec, RunMode, Selection, SkipReason, StageGraph, plan, select
from .subprocess import CancelToken, CommandResult, ShellExecutor
from .sync import GitBackend, SyncSettings, Workspace, WorkspaceSynchronizer
from .trigger import InvocationContext, Trigger, TriggerKind, classify

__version__ = "0.1.0"

__all__ = [
    # Triggers
    "InvocationContext",
    "Trigger",
    "TriggerKind",
    "classify",
    # Conditions
    "Condition",
    "AndCondition",
    "OrCondition",
    "NotCondition",
    "KindIs",
    "BranchIs",
    "ALWAYS",
    "all_of",
    "any_of",
    "kind_is",
    "only_branches",
    "only_schedules",
    "except_schedules",
    # Jobs and selection
    "JobSpec",
    "RunMode",
    "StageGraph",
    "Selection",
    "SkipReason",
    "plan",
    "select",
    # Workspace sync
    "Workspace",
    "WorkspaceSynchronizer",
    "SyncSettings",
    "GitBackend",
    # Execution
    "StageRunner",
    "Isolation",
    "RunResult",
    "StageResult",
    "PipelineResult",
    "JobStatus",
    "JobFailure",
    "StageState",
    "PipelineState",
    "CancelToken",
    "CommandResult",
    "ShellExecutor",
    # Artifacts
    "ArtifactPublisher",
    "PublishedArtifact",
    "ZipArchiver",
    # Configuration
    "PipelineConfig",
    "load_config",
    "parse_config",
    "parse_duration",
    "format_duration",
    # Pipeline
    "PipelineRun",
    "run_pipeline",
    # Output
    "Verbosity",
    "configure_output",
    "get_output_manager",
    # Errors
    "RestageError",
    "ConfigError",
    "SyncError",
    "SyncFailure",
    "PublishError",
    "PublishFailure",
]
