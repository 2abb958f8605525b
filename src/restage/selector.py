"""Job specifications, the stage graph, and trigger-based job selection."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum

from .conditions import ALWAYS, Condition
from .errors import ConfigError
from .trigger import Trigger, TriggerKind


class RunMode(Enum):
    """How a selected job is executed."""

    ALWAYS = "always"
    """Runs automatically; a failure fails its stage."""

    MANUAL = "manual"
    """Selectable, but only runs after an explicit activation."""

    ON_FAILURE_ALLOWED = "on_failure_allowed"
    """Runs automatically; a failure is recorded but does not fail the stage."""


@dataclass(frozen=True)
class JobSpec:
    """Static definition of one job."""

    name: str
    """Unique job name."""

    stage: str
    """Stage this job belongs to."""

    script: tuple[str, ...] = ()
    """Opaque commands, run in order by the command executor."""

    image: str | None = None
    """Execution image; passed through to the executor environment, never interpreted."""

    tags: frozenset[str] = frozenset()
    """Runner tags."""

    condition: Condition = field(default=ALWAYS, compare=False)
    """When the job is part of a pipeline."""

    run_mode: RunMode = RunMode.ALWAYS

    allow_failure: bool = False
    """A failure is recorded but does not fail the stage, whatever the run mode."""

    artifact_paths: tuple[str, ...] = ()
    """Path patterns (relative to the job's output dir) to publish on success."""

    retention: timedelta | None = None
    """How long published artifacts are kept (None: no declared expiry)."""

    max_duration: timedelta | None = None
    """Kill the job and record it as timed out after this long."""

    variables: dict[str, str] = field(default_factory=dict, compare=False, hash=False)
    """Extra environment variables for the job's commands."""

    @property
    def tolerant(self) -> bool:
        """True if a failure of this job does not fail its stage."""
        return self.allow_failure or self.run_mode is RunMode.ON_FAILURE_ALLOWED

    @property
    def manual(self) -> bool:
        return self.run_mode is RunMode.MANUAL


@dataclass
class StageGraph:
    """
    Ordered stages and the jobs declared for them.

    Stage order is total. Jobs keep their declaration order.
    """

    stages: list[str]
    jobs: list[JobSpec] = field(default_factory=list)

    def __post_init__(self) -> None:
        if len(set(self.stages)) != len(self.stages):
            raise ConfigError(f"Duplicate stage names in {self.stages}")

        seen: set[str] = set()
        for job in self.jobs:
            if job.stage not in self.stages:
                raise ConfigError(f"Job '{job.name}' references unknown stage '{job.stage}'. Stages: {self.stages}")
            if job.name in seen:
                raise ConfigError(f"Duplicate job name '{job.name}'")
            seen.add(job.name)

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)

    def jobs_in_stage(self, stage: str) -> list[JobSpec]:
        return [j for j in self.jobs if j.stage == stage]

    def get(self, name: str) -> JobSpec:
        for job in self.jobs:
            if job.name == name:
                return job
        raise KeyError(name)


class SkipReason(Enum):
    """Why the selector left a job out."""

    EXCLUDES_SCHEDULES = "condition excludes scheduled pipelines"
    SCHEDULES_ONLY = "runs on scheduled pipelines only"
    BRANCH_MISMATCH = "restricted to other branches"
    CONDITION_FALSE = "condition does not hold"


@dataclass(frozen=True)
class Selection:
    """The selector's decision for one job."""

    job: JobSpec
    selected: bool
    reason: SkipReason | None = None

    @property
    def awaits_activation(self) -> bool:
        """Selected manual jobs need a human activation before they run."""
        return self.selected and self.job.manual


def _decide(job: JobSpec, trigger: Trigger) -> Selection:
    condition = job.condition
    scheduled = trigger.kind is TriggerKind.SCHEDULED

    if scheduled and condition.excludes(TriggerKind.SCHEDULED):
        return Selection(job, False, SkipReason.EXCLUDES_SCHEDULES)

    if not scheduled and condition.restricts_to(TriggerKind.SCHEDULED):
        return Selection(job, False, SkipReason.SCHEDULES_ONLY)

    branches = condition.restricted_branches()
    if branches is not None and trigger.branch_ref not in branches:
        return Selection(job, False, SkipReason.BRANCH_MISMATCH)

    if not condition.evaluate(trigger):
        return Selection(job, False, SkipReason.CONDITION_FALSE)

    return Selection(job, True)


def _ordered(graph: StageGraph) -> list[JobSpec]:
    # Stable sort: stage order first, declaration order within a stage
    return sorted(graph.jobs, key=lambda j: graph.stage_index(j.stage))


def plan(graph: StageGraph, trigger: Trigger) -> list[Selection]:
    """Decide for every job of `graph` whether `trigger` selects it, in pipeline order."""
    return [_decide(job, trigger) for job in _ordered(graph)]


def select(graph: StageGraph, trigger: Trigger) -> list[JobSpec]:
    """
    Compute the ordered list of jobs a pipeline run for `trigger` contains.

    Rules, applied per job in order:
    1. Scheduled triggers drop jobs whose condition excludes schedules.
    2. Schedule-only (nightly) jobs are dropped for every other trigger kind.
    3. Branch-restricted jobs are kept only when the trigger's branch matches.
    4. Manual jobs are kept; the stage runner only runs them once activated.

    Output is in stage order, then declaration order within a stage.
    """
    return [s.job for s in plan(graph, trigger) if s.selected]


def group_by_stage(jobs: Iterable[JobSpec], stages: Sequence[str] | None = None) -> list[tuple[str, list[JobSpec]]]:
    """
    Group already-ordered jobs into consecutive stages.

    If `stages` is given, the result follows that order and skips empty stages.
    """
    jobs = list(jobs)
    order = list(stages) if stages is not None else list(dict.fromkeys(j.stage for j in jobs))
    groups: list[tuple[str, list[JobSpec]]] = []
    for stage in order:
        members = [j for j in jobs if j.stage == stage]
        if members:
            groups.append((stage, members))
    return groups
