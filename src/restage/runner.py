"""Stage-by-stage execution of selected jobs.

Stages run strictly one after another. Jobs of the same stage run
concurrently, each in its own execution context: a private output directory
and, with copy isolation, a private copy of the synchronized workspace that is
removed once the job finishes. Jobs never see each other's output. Only the
job log and the output directory outlive the job.

A stage fails when a job that is not allowed to fail fails. Jobs already
running in that stage are left to finish and their results are kept, but no
later stage starts. A CancelToken kills running jobs and stops the pipeline.
"""

from __future__ import annotations

import shutil
import tempfile
import time
from collections.abc import Iterable, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .artifacts import ArtifactPublisher, PublishedArtifact, job_key
from .errors import PublishError
from .output import get_output_manager
from .selector import JobSpec, group_by_stage
from .subprocess import CancelToken, CommandExecutor, ShellExecutor, build_env
from .sync import Workspace
from .trigger import Trigger


class Isolation(Enum):
    """How a job's working tree is separated from its siblings."""

    COPY = "copy"
    """Each job works in a private copy of the workspace."""

    SHARED = "shared"
    """Jobs work in the workspace root itself and must not write to it."""


class JobStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed out"
    CANCELED = "canceled"


class JobFailure(Enum):
    """Why a job failed."""

    NON_ZERO_EXIT = "non_zero_exit"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"
    EXECUTION_ERROR = "execution_error"
    """The job context could not be prepared or a command could not be started."""


class StageState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PARTIALLY_FAILED = "partially_failed"
    CANCELED = "canceled"


@dataclass
class RunResult:
    """Result of executing a single job."""

    job_name: str
    exit_status: int
    allowed_to_fail: bool
    status: JobStatus = JobStatus.SUCCESS
    error: JobFailure | None = None
    elapsed_seconds: float = 0.0
    log_path: Path | None = None
    failed_command: str | None = None
    artifact: PublishedArtifact | None = None
    publish_error: str | None = None

    @property
    def ok(self) -> bool:
        return self.status is JobStatus.SUCCESS

    @property
    def tolerated_failure(self) -> bool:
        """Failed, but the job is allowed to fail."""
        return not self.ok and self.allowed_to_fail


@dataclass
class StageResult:
    """Outcome of one stage."""

    stage: str
    state: StageState = StageState.PENDING
    results: list[RunResult] = field(default_factory=list)
    awaiting_activation: list[str] = field(default_factory=list)
    """Manual jobs that were selected but not activated."""


@dataclass
class PipelineResult:
    """Outcome of a pipeline run."""

    state: PipelineState
    stages: list[StageResult] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    """Jobs of stages that never started."""
    elapsed_seconds: float = 0.0

    @property
    def results(self) -> list[RunResult]:
        """RunResults of every executed job, in stage then declaration order."""
        return [r for stage in self.stages for r in stage.results]

    @property
    def warnings(self) -> list[RunResult]:
        """Failures of jobs that were allowed to fail."""
        return [r for r in self.results if r.tolerated_failure]

    def result_for(self, job_name: str) -> RunResult | None:
        for result in self.results:
            if result.job_name == job_name:
                return result
        return None


@dataclass
class JobContext:
    """Private execution context of one job."""

    job: JobSpec
    workdir: Path
    """Directory the job's commands run in."""
    output_dir: Path
    """Private directory exposed as CI_PROJECT_DIR; artifact paths resolve here."""
    log_path: Path
    env: dict[str, str]


class StageRunner:
    """
    Executes jobs stage by stage against a synchronized workspace.

    The workspace is treated as read-only for the whole run.
    """

    def __init__(
        self,
        workspace: Workspace,
        *,
        executor: CommandExecutor | None = None,
        run_dir: Path | str | None = None,
        isolation: Isolation = Isolation.COPY,
        publisher: ArtifactPublisher | None = None,
        trigger: Trigger | None = None,
        variables: dict[str, str] | None = None,
        max_workers: int | None = None,
    ):
        self.workspace = workspace
        self.executor: CommandExecutor = executor or ShellExecutor()
        self.run_dir = Path(run_dir) if run_dir else Path(tempfile.mkdtemp(prefix="restage-"))
        self.isolation = isolation
        self.publisher = publisher
        self.trigger = trigger
        self.variables = dict(variables or {})
        self.max_workers = max_workers

    def run(
        self,
        jobs: Sequence[JobSpec],
        *,
        activations: Iterable[str] = (),
        cancel: CancelToken | None = None,
        stages: Sequence[str] | None = None,
    ) -> PipelineResult:
        """
        Run `jobs` (already selected and ordered) stage by stage.

        Args:
            jobs: Jobs in pipeline order.
            activations: Names of manual jobs a human activated.
            cancel: Token that aborts the run when cancelled.
            stages: Stage order; defaults to the order stages first appear in `jobs`.

        """
        start = time.perf_counter()
        activated = set(activations)
        if self.trigger is not None:
            activated |= self.trigger.requested_jobs

        out = get_output_manager()
        stage_results: list[StageResult] = []
        not_started: list[str] = []
        stopped = False
        cancelled = False

        for stage, stage_jobs in group_by_stage(jobs, stages):
            if stopped or (cancel is not None and cancel.cancelled):
                cancelled = cancelled or (cancel is not None and cancel.cancelled)
                not_started.extend(j.name for j in stage_jobs)
                continue

            with out.section(f"stage_{stage}", f"stage {stage}"):
                stage_result = self._run_stage(stage, stage_jobs, activated, cancel)
                out.stage_status(stage, stage_result.state.value)
            stage_results.append(stage_result)

            if any(r.status is JobStatus.CANCELED for r in stage_result.results):
                cancelled = True
            if stage_result.state is StageState.FAILED:
                stopped = True

        if cancelled:
            state = PipelineState.CANCELED
        elif stopped:
            state = PipelineState.FAILED
        elif any(r.tolerated_failure for s in stage_results for r in s.results):
            state = PipelineState.PARTIALLY_FAILED
        else:
            state = PipelineState.SUCCEEDED

        return PipelineResult(
            state=state,
            stages=stage_results,
            not_started=not_started,
            elapsed_seconds=time.perf_counter() - start,
        )

    def _run_stage(
        self,
        stage: str,
        jobs: list[JobSpec],
        activated: set[str],
        cancel: CancelToken | None,
    ) -> StageResult:
        out = get_output_manager()
        result = StageResult(stage=stage, state=StageState.RUNNING)

        runnable = [j for j in jobs if not j.manual or j.name in activated]
        result.awaiting_activation = [j.name for j in jobs if j not in runnable]

        if runnable:
            workers = self.max_workers or len(runnable)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"restage-{stage}") as pool:
                futures = [pool.submit(self._execute, job, cancel) for job in runnable]
                result.results = [f.result() for f in futures]

        # Print in declaration order once the whole stage is done
        for run_result in result.results:
            detail = run_result.failed_command or ""
            if run_result.log_path is not None and not run_result.ok:
                detail = f"{detail}; log: {run_result.log_path}" if detail else f"log: {run_result.log_path}"
            out.job_status(
                run_result.job_name,
                run_result.status.value,
                run_result.elapsed_seconds,
                tolerated=run_result.tolerated_failure,
                detail=detail,
            )
            if run_result.publish_error:
                out.warning(run_result.publish_error)
        for name in result.awaiting_activation:
            out.job_status(name, "skipped", 0.0, detail="manual, not activated")

        failed = any(not r.ok and not r.allowed_to_fail for r in result.results)
        result.state = StageState.FAILED if failed else StageState.SUCCEEDED
        return result

    def prepare(self, job: JobSpec) -> JobContext:
        """Create the private execution context for `job`."""
        job_dir = self.run_dir / job_key(job.name)
        output_dir = job_dir / "output"
        output_dir.mkdir(parents=True, exist_ok=True)

        if self.isolation is Isolation.COPY:
            workdir = job_dir / "work"
            if workdir.exists():
                shutil.rmtree(workdir)
            shutil.copytree(self.workspace.root, workdir, symlinks=True)
        else:
            workdir = self.workspace.root

        env = {
            **self.variables,
            **job.variables,
            "CI": "true",
            "CI_JOB_NAME": job.name,
            "CI_JOB_STAGE": job.stage,
            "CI_PROJECT_DIR": str(output_dir),
            "RESTAGE_WORKDIR": str(workdir),
        }
        if job.image:
            env["CI_JOB_IMAGE"] = job.image
        if self.workspace.current_commit:
            env["CI_COMMIT_SHA"] = self.workspace.current_commit
        if self.trigger is not None:
            env["CI_COMMIT_REF_NAME"] = self.trigger.branch_ref
            env["RESTAGE_TRIGGER"] = self.trigger.kind.value

        return JobContext(
            job=job,
            workdir=workdir,
            output_dir=output_dir,
            log_path=job_dir / "job.log",
            env=build_env(env),
        )

    def _execute(self, job: JobSpec, cancel: CancelToken | None) -> RunResult:
        start = time.perf_counter()
        try:
            ctx = self.prepare(job)
        except OSError as e:
            shutil.rmtree(self.run_dir / job_key(job.name) / "work", ignore_errors=True)
            return RunResult(
                job_name=job.name,
                exit_status=-1,
                allowed_to_fail=job.tolerant,
                status=JobStatus.FAILED,
                error=JobFailure.EXECUTION_ERROR,
                elapsed_seconds=time.perf_counter() - start,
                failed_command=f"prepare job context: {e}",
            )

        try:
            result = self._run_script(ctx, cancel, start)
            if result.ok and job.artifact_paths and self.publisher is not None:
                try:
                    result.artifact = self.publisher.publish(job, base_dir=ctx.output_dir)
                except (PublishError, OSError) as e:
                    # The job itself succeeded; only its artifact output is lost
                    result.publish_error = str(e)
            return result
        finally:
            if ctx.workdir != self.workspace.root:
                shutil.rmtree(ctx.workdir, ignore_errors=True)

    def _run_script(self, ctx: JobContext, cancel: CancelToken | None, start: float) -> RunResult:
        job = ctx.job
        deadline = start + job.max_duration.total_seconds() if job.max_duration is not None else None

        status = JobStatus.SUCCESS
        error: JobFailure | None = None
        exit_status = 0
        failed_command: str | None = None

        with ctx.log_path.open("w") as log:
            for command in job.script:
                if cancel is not None and cancel.cancelled:
                    status, error, exit_status = JobStatus.CANCELED, JobFailure.CANCELED, -1
                    failed_command = command
                    break

                remaining = deadline - time.perf_counter() if deadline is not None else None
                if remaining is not None and remaining <= 0:
                    status, error, exit_status = JobStatus.TIMED_OUT, JobFailure.TIMED_OUT, -1
                    failed_command = command
                    break

                try:
                    outcome = self.executor.execute(
                        command,
                        cwd=ctx.workdir,
                        env=ctx.env,
                        log=log,
                        timeout=remaining,
                        cancel=cancel,
                    )
                except Exception as e:
                    log.write(f"restage: {command!r} could not be executed: {e}\n")
                    status, error, exit_status = JobStatus.FAILED, JobFailure.EXECUTION_ERROR, -1
                    failed_command = command
                    break

                if outcome.ok:
                    continue

                failed_command = command
                exit_status = outcome.returncode
                if outcome.cancelled:
                    status, error = JobStatus.CANCELED, JobFailure.CANCELED
                elif outcome.timed_out:
                    status, error = JobStatus.TIMED_OUT, JobFailure.TIMED_OUT
                else:
                    status, error = JobStatus.FAILED, JobFailure.NON_ZERO_EXIT
                break

        return RunResult(
            job_name=job.name,
            exit_status=exit_status,
            allowed_to_fail=job.tolerant,
            status=status,
            error=error,
            elapsed_seconds=time.perf_counter() - start,
            log_path=ctx.log_path,
            failed_command=failed_command,
        )
