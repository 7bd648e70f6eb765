"""Tests for ORM models and CRUD operations.

These tests verify the database models, relationships, and basic
CRUD operations using an in-memory SQLite database.
"""

from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from imagepipe.builds.models import Artifact, BuildRecord, DependencyLayer
from imagepipe.db import (
    Base,
    create_all_tables,
    get_engine,
    get_session,
    sqlite_path,
)
from imagepipe.types import BuildStatus, PipelineStage


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _layer(cache_key: str = "sha256:" + "a" * 64) -> DependencyLayer:
    return DependencyLayer(
        cache_key=cache_key,
        manifest_hash="sha256:m",
        library_family="minimal-libc",
        linker="accelerated",
        path="/cache/layers/x",
        digest="sha256:d",
        size_bytes=1024,
    )


def _build(**overrides) -> BuildRecord:
    fields = {
        "variant_name": "musl-mold",
        "library_family": "minimal-libc",
        "linker": "accelerated",
        "source_root": "/src/echo-svc",
        "commit_hash": "unknown",
        "short_hash": "unknown",
        "build_date": "unknown",
    }
    fields.update(overrides)
    return BuildRecord(**fields)


class TestDatabaseSetup:
    """Test database setup and helpers."""

    def test_create_all_tables(self, tmp_path):
        """create_all_tables should create all model tables."""
        engine = get_engine(f"sqlite:///{tmp_path}/nested/test.db")
        create_all_tables(engine)
        assert (tmp_path / "nested" / "test.db").exists()
        assert "dependency_layers" in Base.metadata.tables
        assert "build_records" in Base.metadata.tables
        assert "artifacts" in Base.metadata.tables

    @pytest.mark.parametrize(
        ("url", "expected"),
        [
            (
                "sqlite:////var/lib/imagepipe/builds.db",
                Path("/var/lib/imagepipe/builds.db"),
            ),
            ("sqlite:///:memory:", None),
            ("sqlite://", None),
            ("postgresql://u:p@db/imagepipe", None),
        ],
    )
    def test_sqlite_path(self, url, expected):
        """Only SQLite files resolve to a path."""
        assert sqlite_path(url) == expected

    def test_get_session_commits(self, session_factory):
        """get_session should commit on exit."""
        with get_session(session_factory) as session:
            session.add(_build())

        with get_session(session_factory) as session:
            assert session.query(BuildRecord).count() == 1

    def test_get_session_rolls_back(self, session_factory):
        """get_session should roll back when the block raises."""
        with pytest.raises(RuntimeError):
            with get_session(session_factory) as session:
                session.add(_build())
                session.flush()
                raise RuntimeError("boom")

        with get_session(session_factory) as session:
            assert session.query(BuildRecord).count() == 0


class TestDependencyLayerModel:
    """Test DependencyLayer model."""

    def test_create(self, session):
        """Should persist a layer with defaults."""
        layer = _layer()
        session.add(layer)
        session.commit()

        assert layer.id is not None
        assert layer.created_at is not None
        assert layer.last_used_at is None
        assert layer.builds == []

    def test_unique_cache_key(self, session):
        """Two layers cannot share a cache key."""
        session.add(_layer())
        session.commit()
        session.add(_layer())
        with pytest.raises(IntegrityError):
            session.commit()

    def test_repr(self):
        """repr shows the key prefix and toolchain."""
        text = repr(_layer())
        assert "DependencyLayer" in text
        assert "minimal-libc" in text


class TestBuildRecordModel:
    """Test BuildRecord model."""

    def test_defaults(self, session):
        """A new record is pending with no stage."""
        build = _build()
        session.add(build)
        session.commit()

        assert build.status == BuildStatus.PENDING.value
        assert build.stage is None
        assert build.is_cache_hit is False
        assert build.metadata_enabled is False
        assert build.requested_at is not None

    def test_status_methods(self, session):
        """mark_* methods move the record through its lifecycle."""
        build = _build()
        session.add(build)

        build.mark_running()
        assert build.status == BuildStatus.RUNNING.value
        assert build.started_at is not None

        build.mark_stage(PipelineStage.DEPENDENCIES_BUILT)
        assert build.stage == "dependencies-built"

        build.mark_succeeded()
        assert build.is_succeeded()
        assert build.finished_at is not None

    def test_mark_failed(self):
        """mark_failed records the error."""
        build = _build()
        build.mark_failed("compile_failure", "cargo exited 101")
        assert build.status == BuildStatus.FAILED.value
        assert build.error_type == "compile_failure"
        assert build.error_message == "cargo exited 101"
        assert not build.is_succeeded()

    def test_layer_relationship(self, session):
        """Builds link to the dependency layer they used."""
        layer = _layer()
        first = _build(dependency_layer=layer)
        second = _build(dependency_layer=layer, is_cache_hit=True)
        session.add_all([first, second])
        session.commit()

        assert first.dependency_layer_id == layer.id
        assert {b.id for b in layer.builds} == {first.id, second.id}

    def test_input_snapshot_json(self, session):
        """The input snapshot round-trips as JSON."""
        build = _build(input_snapshot={"metadata": {"GIT_COMMIT": "abc"}})
        session.add(build)
        session.commit()
        session.expire_all()

        loaded = session.get(BuildRecord, build.id)
        assert loaded.input_snapshot == {"metadata": {"GIT_COMMIT": "abc"}}


class TestArtifactModel:
    """Test Artifact model."""

    def test_artifacts_cascade(self, session):
        """Deleting a build deletes its artifacts."""
        build = _build()
        build.artifacts.append(
            Artifact(
                kind="binary",
                relative_path="runtime/echo-svc",
                filename="echo-svc",
                size_bytes=3,
                sha256="a" * 64,
            )
        )
        session.add(build)
        session.commit()
        assert session.query(Artifact).count() == 1
        assert build.artifacts[0].build is build

        session.delete(build)
        session.commit()
        assert session.query(Artifact).count() == 0

    def test_repr(self):
        """repr shows filename and kind."""
        artifact = Artifact(
            kind="manifest",
            relative_path="manifest.json",
            filename="manifest.json",
            size_bytes=10,
            sha256="b" * 64,
        )
        assert "manifest.json" in repr(artifact)
