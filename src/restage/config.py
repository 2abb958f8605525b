"""Loading of pipeline definition files.

The format is the GitLab-flavoured subset the pipeline was originally written
in, plus ``sync:`` and ``runner:`` sections for restage itself:

    stages: [check-compile, post-build]
    sync:
      root: /cache/project
      remote_url: https://example.com/project.git
    .template: &tpl
      stage: post-build
      except: [schedules]
    build:
      <<: *tpl
      script: [make]
      artifacts: {paths: [build.tar.bz2], expire_in: 1 week}

Keys starting with "." are templates and never become jobs.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from .conditions import ALWAYS, Condition, all_of, any_of, kind_is, only_branches
from .durations import parse_duration
from .errors import ConfigError
from .runner import Isolation
from .selector import JobSpec, RunMode, StageGraph
from .sync import SyncSettings
from .trigger import TriggerKind

DEFAULT_STAGES = ["build", "test", "deploy"]
DEFAULT_STAGE = "test"

# Top-level keys that are not jobs
RESERVED_KEYS = frozenset(
    {
        "stages",
        "variables",
        "sync",
        "runner",
        "before_script",
        "after_script",
        "image",
        "default",
        "include",
        "workflow",
        "cache",
        "services",
    }
)

# only/except keywords that name a trigger kind rather than a branch
KEYWORD_KINDS: dict[str, TriggerKind] = {
    "schedules": TriggerKind.SCHEDULED,
    "merge_requests": TriggerKind.MERGE_PIPELINE,
    "web": TriggerKind.MANUAL,
    "pushes": TriggerKind.PUSH,
}
ANY_BRANCH = "branches"


def _as_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _as_str_dict(value: Any) -> dict[str, str]:
    if value is None:
        return {}
    return {str(k): "" if v is None else str(v) for k, v in dict(value).items()}


# =============================================================================
# File schema
# =============================================================================


class RefsFilter(BaseModel):
    """Mapping form of only/except (``only: {refs: [master]}``)."""

    refs: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    @field_validator("refs", mode="before")
    @classmethod
    def _coerce_refs(cls, value: Any) -> list[str]:
        return _as_str_list(value)


class ArtifactsConfig(BaseModel):
    paths: list[str] = Field(default_factory=list)
    expire_in: str | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator("paths", mode="before")
    @classmethod
    def _coerce_paths(cls, value: Any) -> list[str]:
        return _as_str_list(value)


class JobConfig(BaseModel):
    """One job entry of the pipeline file."""

    stage: str = DEFAULT_STAGE
    image: str | None = None
    tags: list[str] = Field(default_factory=list)
    script: list[str]
    only: list[str] | RefsFilter | None = None
    except_: list[str] | RefsFilter | None = Field(default=None, alias="except")
    when: Literal["on_success", "always", "manual"] = "on_success"
    allow_failure: bool | None = None
    timeout: str | None = None
    artifacts: ArtifactsConfig | None = None
    variables: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    @field_validator("script", "tags", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        return _as_str_list(value)

    @field_validator("only", "except_", mode="before")
    @classmethod
    def _coerce_filter(cls, value: Any) -> Any:
        return [value] if isinstance(value, str) else value

    @field_validator("variables", mode="before")
    @classmethod
    def _coerce_variables(cls, value: Any) -> dict[str, str]:
        return _as_str_dict(value)

    @field_validator("timeout", mode="before")
    @classmethod
    def _coerce_timeout(cls, value: Any) -> str | None:
        return None if value is None else str(value)


class SyncConfig(BaseModel):
    root: str | None = None
    remote_url: str | None = None
    merge_url_template: str = "{source_project}"
    lfs: bool = True
    scratch_dirs: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class RunnerConfig(BaseModel):
    isolation: Isolation = Isolation.COPY
    artifacts_dir: str = "artifacts"
    run_dir: str | None = None
    keep_run_dir: bool = False
    max_workers: int | None = None

    model_config = ConfigDict(extra="forbid")


# =============================================================================
# Loaded configuration
# =============================================================================


@dataclass
class PipelineConfig:
    """A loaded and validated pipeline definition."""

    graph: StageGraph
    variables: dict[str, str] = field(default_factory=dict)
    sync: SyncConfig = field(default_factory=SyncConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    base_dir: Path = field(default_factory=Path.cwd)
    """Directory relative paths in the file resolve against."""

    def _resolve(self, value: str) -> Path:
        path = Path(value).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    def workspace_root(self, override: str | Path | None = None) -> Path:
        if override is not None:
            return Path(override)
        if self.sync.root is None:
            raise ConfigError("No workspace root: set sync.root or pass --workspace")
        return self._resolve(self.sync.root)

    def artifacts_dir(self) -> Path:
        return self._resolve(self.runner.artifacts_dir)

    def run_dir(self) -> Path | None:
        return self._resolve(self.runner.run_dir) if self.runner.run_dir else None

    def sync_settings(self, remote_url: str | None = None) -> SyncSettings:
        url = remote_url or self.sync.remote_url
        if not url:
            raise ConfigError("No remote URL: set sync.remote_url or pass --remote-url")
        return SyncSettings(
            remote_url=url,
            merge_url_template=self.sync.merge_url_template,
            lfs=self.sync.lfs,
            scratch_dirs=list(self.sync.scratch_dirs),
        )


def _filter_condition(entries: list[str] | RefsFilter) -> Condition:
    refs = entries.refs if isinstance(entries, RefsFilter) else entries
    parts: list[Condition] = []
    branches: list[str] = []
    for entry in refs:
        if entry in KEYWORD_KINDS:
            parts.append(kind_is(KEYWORD_KINDS[entry]))
        elif entry == ANY_BRANCH:
            parts.append(ALWAYS)
        else:
            branches.append(entry)
    if branches:
        parts.append(only_branches(branches))
    return any_of(parts)


def job_condition(job: JobConfig) -> Condition:
    """Translate a job's only/except filters into a Condition."""
    parts: list[Condition] = []
    if job.only is not None:
        parts.append(_filter_condition(job.only))
    if job.except_ is not None:
        parts.append(~_filter_condition(job.except_))
    return all_of(parts)


def _run_mode(job: JobConfig) -> RunMode:
    if job.when == "manual":
        return RunMode.MANUAL
    if job.allow_failure:
        return RunMode.ON_FAILURE_ALLOWED
    return RunMode.ALWAYS


def _allow_failure(job: JobConfig) -> bool:
    # Manual jobs never block their stage unless they say so
    if job.allow_failure is None:
        return job.when == "manual"
    return job.allow_failure


def _build_job(name: str, job: JobConfig) -> JobSpec:
    artifacts = job.artifacts or ArtifactsConfig()
    return JobSpec(
        name=name,
        stage=job.stage,
        script=tuple(job.script),
        image=job.image,
        tags=frozenset(job.tags),
        condition=job_condition(job),
        run_mode=_run_mode(job),
        allow_failure=_allow_failure(job),
        artifact_paths=tuple(artifacts.paths),
        retention=parse_duration(artifacts.expire_in) if artifacts.expire_in else None,
        max_duration=parse_duration(job.timeout) if job.timeout else None,
        variables=dict(job.variables),
    )


def _validation_message(where: str, error: ValidationError) -> str:
    details = "; ".join(f"{'.'.join(str(p) for p in e['loc'])}: {e['msg']}" for e in error.errors())
    return f"Invalid {where}: {details}"


def parse_config(data: Any, *, base_dir: Path | None = None) -> PipelineConfig:
    """Build a PipelineConfig from already-parsed YAML data."""
    if not isinstance(data, dict):
        raise ConfigError("Pipeline file must contain a mapping at the top level")

    stages = _as_str_list(data.get("stages")) or list(DEFAULT_STAGES)

    try:
        sync = SyncConfig.model_validate(data.get("sync") or {})
    except ValidationError as e:
        raise ConfigError(_validation_message("sync section", e)) from e
    try:
        runner = RunnerConfig.model_validate(data.get("runner") or {})
    except ValidationError as e:
        raise ConfigError(_validation_message("runner section", e)) from e

    jobs: list[JobSpec] = []
    for key, value in data.items():
        name = str(key)
        if name in RESERVED_KEYS or name.startswith("."):
            continue
        if not isinstance(value, dict):
            raise ConfigError(f"Job '{name}' must be a mapping")
        try:
            job = JobConfig.model_validate(value)
        except ValidationError as e:
            raise ConfigError(_validation_message(f"job '{name}'", e)) from e
        jobs.append(_build_job(name, job))

    return PipelineConfig(
        graph=StageGraph(stages=stages, jobs=jobs),
        variables=_as_str_dict(data.get("variables")),
        sync=sync,
        runner=runner,
        base_dir=base_dir or Path.cwd(),
    )


def load_yaml(text: str) -> Any:
    yaml = YAML(typ="safe", pure=True)
    try:
        return yaml.load(text)
    except YAMLError as e:
        raise ConfigError(f"Invalid YAML: {e}") from e


def load_config(path: Path | str) -> PipelineConfig:
    """Read and validate a pipeline file."""
    path = Path(path)
    if not path.is_file():
        raise ConfigError(f"Pipeline file not found: {path}")
    return parse_config(load_yaml(path.read_text()), base_dir=path.resolve().parent)
