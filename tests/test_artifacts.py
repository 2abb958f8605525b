"""Tests for artifact publishing."""

from __future__ import annotations

import zipfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from restage.artifacts import SIDECAR_SUFFIX, ArtifactPublisher, artifact_slug, job_key, resolve_paths
from restage.errors import PublishError, PublishFailure

from helpers import make_job

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def output_dir(tmp_path: Path) -> Path:
    out = tmp_path / "output"
    (out / "optional-build" / "assets").mkdir(parents=True)
    (out / "optional-build" / "veloren-voxygen").write_text("binary")
    (out / "optional-build" / "assets" / "voxel.vox").write_text("vox")
    (out / "optional-linux-debug.tar.bz2").write_text("archive")
    (out / "notes.txt").write_text("notes")
    return out


def _members(path: Path) -> list[str]:
    with zipfile.ZipFile(path) as zf:
        return sorted(zf.namelist())


class TestPublish:
    """Tests for ArtifactPublisher.publish()."""

    def test_single_file(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job(
            "optional:linux-debug",
            artifact_paths=("optional-linux-debug.tar.bz2",),
            retention=timedelta(weeks=1),
        )
        publisher = ArtifactPublisher(tmp_path / "store")

        artifact = publisher.publish(job, base_dir=output_dir, now=NOW)

        assert artifact.name == "optional-linux-debug-96c3206a"
        assert artifact.job_name == "optional:linux-debug"
        assert artifact.path == tmp_path / "store" / "optional-linux-debug-96c3206a.zip"
        assert _members(artifact.path) == ["optional-linux-debug.tar.bz2"]
        assert artifact.files == ["optional-linux-debug.tar.bz2"]

    def test_retention(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("nightly", artifact_paths=("notes.txt",), retention=timedelta(days=2))

        artifact = ArtifactPublisher(tmp_path / "store").publish(job, base_dir=output_dir, now=NOW)

        assert artifact.created_at == NOW
        assert artifact.retention == timedelta(days=2)
        assert artifact.expires_at == NOW + timedelta(days=2)
        assert not artifact.expired(NOW + timedelta(days=1))
        assert artifact.expired(NOW + timedelta(days=2))

    def test_no_retention_never_expires(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("keep", artifact_paths=("notes.txt",))

        artifact = ArtifactPublisher(tmp_path / "store").publish(job, base_dir=output_dir, now=NOW)

        assert artifact.expires_at is None
        assert not artifact.expired(NOW + timedelta(days=10000))

    def test_directory_is_recursive(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("build", artifact_paths=("optional-build",))

        artifact = ArtifactPublisher(tmp_path / "store").publish(job, base_dir=output_dir, now=NOW)

        assert _members(artifact.path) == [
            "optional-build/assets/voxel.vox",
            "optional-build/veloren-voxygen",
        ]

    def test_glob(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("build", artifact_paths=("*.txt", "*.tar.bz2"))

        artifact = ArtifactPublisher(tmp_path / "store").publish(job, base_dir=output_dir, now=NOW)

        assert artifact.files == ["notes.txt", "optional-linux-debug.tar.bz2"]

    def test_explicit_paths_override_declared(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("build", artifact_paths=("missing",))

        artifact = ArtifactPublisher(tmp_path / "store").publish(job, ["notes.txt"], base_dir=output_dir, now=NOW)

        assert artifact.files == ["notes.txt"]

    def test_missing_path(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("build", artifact_paths=("notes.txt", "missing.zip"))
        store = tmp_path / "store"

        with pytest.raises(PublishError) as exc_info:
            ArtifactPublisher(store).publish(job, base_dir=output_dir, now=NOW)

        assert exc_info.value.kind is PublishFailure.MISSING_PATH
        assert exc_info.value.job_name == "build"
        assert exc_info.value.path == "missing.zip"
        # Nothing half-written
        assert not store.exists()

    @pytest.mark.parametrize("pattern", ["/etc/passwd", "../notes.txt", "sub/../../notes.txt"])
    def test_path_outside_base_dir(self, tmp_path: Path, output_dir: Path, pattern: str) -> None:
        job = make_job("build", artifact_paths=(pattern,))
        store = tmp_path / "store"

        with pytest.raises(PublishError) as exc_info:
            ArtifactPublisher(store).publish(job, base_dir=output_dir, now=NOW)

        assert exc_info.value.kind is PublishFailure.OUTSIDE_OUTPUT_DIR
        assert exc_info.value.path == pattern
        assert not store.exists()

    def test_similar_names_do_not_overwrite(self, tmp_path: Path, output_dir: Path) -> None:
        publisher = ArtifactPublisher(tmp_path / "store")
        first = publisher.publish(make_job("build:linux", artifact_paths=("notes.txt",)), base_dir=output_dir, now=NOW)

        second = publisher.publish(make_job("build-linux", artifact_paths=("*.tar.bz2",)), base_dir=output_dir, now=NOW)

        assert first.path != second.path
        assert _members(first.path) == ["notes.txt"]
        assert publisher.load("build:linux") == first
        assert publisher.load("build-linux") == second

    def test_sidecar_roundtrip(self, tmp_path: Path, output_dir: Path) -> None:
        job = make_job("nightly:linux", artifact_paths=("notes.txt",), retention=timedelta(days=2))
        publisher = ArtifactPublisher(tmp_path / "store")

        published = publisher.publish(job, base_dir=output_dir, now=NOW)

        assert (tmp_path / "store" / f"nightly-linux-fc0ae9f8{SIDECAR_SUFFIX}").is_file()
        assert publisher.load("nightly:linux") == published
        assert publisher.load("never-published") is None

    def test_republish_replaces(self, tmp_path: Path, output_dir: Path) -> None:
        publisher = ArtifactPublisher(tmp_path / "store")
        publisher.publish(make_job("build", artifact_paths=("notes.txt",)), base_dir=output_dir, now=NOW)

        second = publisher.publish(make_job("build", artifact_paths=("*.tar.bz2",)), base_dir=output_dir, now=NOW)

        assert _members(second.path) == ["optional-linux-debug.tar.bz2"]


def test_resolve_paths_deduplicates(output_dir: Path) -> None:
    job = make_job("build")
    files = resolve_paths(job, ["notes.txt", "*.txt"], output_dir)
    assert files == [output_dir / "notes.txt"]


@pytest.mark.parametrize(
    ("name", "slug"),
    [
        ("optional:linux-debug", "optional-linux-debug"),
        ("unittests", "unittests"),
        ("a b/c", "a-b-c"),
        (":::", "job"),
        ("..", "job"),
    ],
)
def test_artifact_slug(name: str, slug: str) -> None:
    assert artifact_slug(name) == slug


@pytest.mark.parametrize(
    ("name", "key"),
    [
        ("unittests", "unittests"),
        ("build-linux", "build-linux"),
        ("build:linux", "build-linux-22410817"),
        ("optional:linux-debug", "optional-linux-debug-96c3206a"),
    ],
)
def test_job_key(name: str, key: str) -> None:
    assert job_key(name) == key
