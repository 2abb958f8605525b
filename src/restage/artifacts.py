"""Publishing of job artifacts.

A successful job's declared paths are packed into one archive per job and
written to the artifact store next to a JSON sidecar that declares when the
archive may be reclaimed. Expiry is declared here, never enforced.
"""

from __future__ import annotations

import glob
import hashlib
import re
import zipfile
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel

from .errors import PublishError, PublishFailure
from .selector import JobSpec

SIDECAR_SUFFIX = ".artifact.json"

_UNSAFE = re.compile(r"[^a-zA-Z0-9_.-]+")


def artifact_slug(job_name: str) -> str:
    """Filesystem-safe name for a job (``optional:linux-debug`` -> ``optional-linux-debug``)."""
    return _UNSAFE.sub("-", job_name).strip("-.") or "job"


def job_key(job_name: str) -> str:
    """
    Collision-free filesystem name for a job.

    A name that is already filesystem-safe is used as is. Any other name gets a
    short digest of the exact name appended to its slug, so ``build:linux`` and
    ``build-linux`` never share a run directory or an archive.
    """
    slug = artifact_slug(job_name)
    if slug == job_name:
        return slug
    return f"{slug}-{hashlib.sha1(job_name.encode()).hexdigest()[:8]}"


class PublishedArtifact(BaseModel):
    """A published archive and its declared retention."""

    name: str
    job_name: str
    path: Path
    files: list[str]
    created_at: datetime
    retention: timedelta | None = None
    expires_at: datetime | None = None

    model_config = {"frozen": True}

    def expired(self, now: datetime | None = None) -> bool:
        """True once the declared expiry has passed."""
        if self.expires_at is None:
            return False
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class Archiver(Protocol):
    """External collaborator that writes the actual archive."""

    suffix: str

    def write(self, destination: Path, base_dir: Path, files: Sequence[Path]) -> None: ...


class ZipArchiver:
    """Writes deflate-compressed zip archives."""

    suffix = ".zip"

    def write(self, destination: Path, base_dir: Path, files: Sequence[Path]) -> None:
        with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for file in files:
                zf.write(file, file.relative_to(base_dir).as_posix())


def resolve_paths(job: JobSpec, patterns: Sequence[str], base_dir: Path) -> list[Path]:
    """
    Expand artifact path patterns to the files they cover.

    Directories are included recursively. Raises PublishError(MISSING_PATH)
    for any pattern that matches nothing, and PublishError(OUTSIDE_OUTPUT_DIR)
    for an absolute pattern or one that climbs out of `base_dir`.
    """
    files: dict[Path, None] = {}
    for pattern in patterns:
        if Path(pattern).is_absolute() or ".." in Path(pattern).parts:
            raise PublishError(
                PublishFailure.OUTSIDE_OUTPUT_DIR,
                f"declared artifact path '{pattern}' is not inside {base_dir}",
                job_name=job.name,
                path=pattern,
            )
        matches = sorted(base_dir / p for p in glob.glob(pattern, root_dir=base_dir, recursive=True))
        if not matches:
            raise PublishError(
                PublishFailure.MISSING_PATH,
                f"declared artifact path '{pattern}' does not exist in {base_dir}",
                job_name=job.name,
                path=pattern,
            )
        for match in matches:
            if match.is_dir():
                for child in sorted(match.rglob("*")):
                    if child.is_file():
                        files[child] = None
            else:
                files[match] = None
    return list(files)


class ArtifactPublisher:
    """Packages artifact paths of completed jobs into the artifact store."""

    def __init__(self, store_dir: Path | str, archiver: Archiver | None = None):
        self.store_dir = Path(store_dir)
        self.archiver = archiver or ZipArchiver()

    def publish(
        self,
        job: JobSpec,
        artifact_paths: Sequence[str] | None = None,
        *,
        base_dir: Path,
        now: datetime | None = None,
    ) -> PublishedArtifact:
        """
        Publish `artifact_paths` (default: the job's declared paths) of `job`.

        Args:
            job: The successfully completed job.
            artifact_paths: Path patterns relative to `base_dir`.
            base_dir: The job's output directory.
            now: Creation timestamp (default: current UTC time).

        Raises:
            PublishError: If a declared path does not exist.

        """
        patterns = list(job.artifact_paths if artifact_paths is None else artifact_paths)
        files = resolve_paths(job, patterns, base_dir)

        self.store_dir.mkdir(parents=True, exist_ok=True)
        name = job_key(job.name)
        destination = self.store_dir / f"{name}{self.archiver.suffix}"
        self.archiver.write(destination, base_dir, files)

        created = now or datetime.now(timezone.utc)
        artifact = PublishedArtifact(
            name=name,
            job_name=job.name,
            path=destination,
            files=[f.relative_to(base_dir).as_posix() for f in files],
            created_at=created,
            retention=job.retention,
            expires_at=created + job.retention if job.retention is not None else None,
        )
        sidecar = self.store_dir / f"{name}{SIDECAR_SUFFIX}"
        sidecar.write_text(artifact.model_dump_json(indent=2))
        return artifact

    def load(self, job_name: str) -> PublishedArtifact | None:
        """Read back the record of a previously published artifact."""
        sidecar = self.store_dir / f"{job_key(job_name)}{SIDECAR_SUFFIX}"
        if not sidecar.exists():
            return None
        return PublishedArtifact.model_validate_json(sidecar.read_text())
