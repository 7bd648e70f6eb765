"""Tests for builds/service.py module.

Tests build persistence, matrix runs and layer pruning on the fake engine.
"""

import json
import threading
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from imagepipe.builds.cache import LayerStore
from imagepipe.builds.metadata import BuildMetadata
from imagepipe.builds.models import Artifact, BuildRecord, DependencyLayer
from imagepipe.builds.pipeline import BuildPipeline
from imagepipe.builds.service import (
    BuildNotFoundError,
    get_build,
    get_build_artifacts,
    list_builds,
    list_layers,
    prune_layers,
    run_build,
    run_matrix,
)
from imagepipe.config import Settings
from imagepipe.db import Base, create_all_tables, get_engine, get_session_factory
from imagepipe.types import BatchMode, BuildStatus, PipelineStage
from imagepipe.variants import resolve_variant, resolve_variants


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


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create settings pointing at temporary directories."""
    return Settings(
        cache_dir=tmp_path / "cache",
        work_dir=tmp_path / "work",
        db_url=f"sqlite:///{tmp_path}/db.sqlite",
        max_concurrent_builds=1,
    )


class TestRunBuild:
    """Tests for run_build function."""

    def test_success_persists_record(
        self, session, settings, pipeline, cargo_project
    ):
        """A successful run stores outputs, layer and artifacts."""
        outcome = run_build(
            session,
            cargo_project,
            resolve_variant("musl-mold-metadata"),
            metadata=BuildMetadata(short_hash="abc1234"),
            settings=settings,
            pipeline=pipeline,
        )
        session.commit()

        build = outcome.build
        assert outcome.success
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.stage == PipelineStage.RUNTIME_ASSEMBLED.value
        assert build.variant_name == "musl-mold-metadata"
        assert build.short_hash == "abc1234"
        assert build.commit_hash == "unknown"
        assert build.image_tag == "imagepipe/service:musl-mold-metadata-abc1234"
        assert build.is_cache_hit is False
        assert build.dependency_layer is not None
        assert build.dependency_layer.cache_key == build.dependency_key
        assert build.started_at is not None
        assert build.finished_at is not None
        assert build.input_snapshot["metadata"]["GIT_COMMIT_SHORT"] == "abc1234"
        assert {a.kind for a in build.artifacts} == {
            "binary",
            "containerfile",
            "manifest",
        }
        assert Path(build.build_dir).is_relative_to(settings.work_dir)

    def test_second_build_records_cache_hit(
        self, session, settings, pipeline, cargo_project
    ):
        """The second build reuses the layer row."""
        variant = resolve_variant("musl-mold")
        run_build(session, cargo_project, variant, settings=settings, pipeline=pipeline)
        outcome = run_build(
            session, cargo_project, variant, settings=settings, pipeline=pipeline
        )
        session.commit()

        assert outcome.build.is_cache_hit is True
        assert session.query(DependencyLayer).count() == 1
        layer = session.query(DependencyLayer).one()
        assert len(layer.builds) == 2
        assert layer.last_used_at is not None

    def test_failure_recorded(
        self, session, settings, pipeline, fake_engine, cargo_project
    ):
        """A failing stage marks the record failed without raising."""
        fake_engine.fail_cargo["source"] = ""
        outcome = run_build(
            session,
            cargo_project,
            resolve_variant("musl-minimal"),
            settings=settings,
            pipeline=pipeline,
        )

        build = outcome.build
        assert not outcome.success
        assert outcome.error is not None
        assert build.status == BuildStatus.FAILED.value
        assert build.stage == PipelineStage.SOURCE_COPIED.value
        assert build.error_type == "compile_failure"
        assert build.log_path.endswith("compile.log")
        assert build.image_tag is None

    def test_stage_callback_restored(self, session, settings, pipeline, cargo_project):
        """The pipeline's own stage callback is restored afterwards."""
        seen = []
        pipeline.on_stage = seen.append
        run_build(
            session,
            cargo_project,
            resolve_variant("musl-mold"),
            settings=settings,
            pipeline=pipeline,
        )
        assert pipeline.on_stage == seen.append
        assert seen == []

    def test_reproducibility_warning(
        self, session, settings, pipeline, cargo_project, caplog
    ):
        """Identical inputs with a different binary are logged."""
        variant = resolve_variant("musl-mold")
        first = run_build(
            session, cargo_project, variant, settings=settings, pipeline=pipeline
        )
        first.build.binary_sha256 = "0" * 64
        session.flush()

        run_build(session, cargo_project, variant, settings=settings, pipeline=pipeline)

        assert "not reproducible" in caplog.text

    def test_unexpected_error_marks_failed(
        self, settings, fake_engine, pipeline, cargo_project
    ):
        """A non-pipeline error is recorded as internal_error and re-raised."""
        db_engine = get_engine(settings.db_url)
        create_all_tables(db_engine)
        factory = get_session_factory(db_engine)

        def broken_image_id(tag):
            raise ValueError("unparseable inspect output")

        fake_engine.image_id = broken_image_id
        session = factory()
        try:
            with pytest.raises(ValueError):
                run_build(
                    session,
                    cargo_project,
                    resolve_variant("musl-mold"),
                    settings=settings,
                    pipeline=pipeline,
                    autocommit=True,
                )
        finally:
            session.close()

        with factory() as fresh:
            build = fresh.query(BuildRecord).one()
            assert build.status == BuildStatus.FAILED.value
            assert build.error_type == "internal_error"
            assert "unparseable inspect output" in build.error_message
            assert build.finished_at is not None


class TestRunMatrix:
    """Tests for run_matrix function."""

    @pytest.fixture
    def file_factory(self, settings):
        engine = get_engine(settings.db_url)
        create_all_tables(engine)
        return get_session_factory(engine)

    def test_best_effort(
        self, file_factory, settings, fake_engine, layer_store, cargo_project
    ):
        """All variants run; failures are counted per variant."""
        fake_engine.fail_cargo["dependencies"] = "standard-libc"
        variants = resolve_variants(
            ["musl-mold", "glibc-mold-metadata", "musl-mold-metadata"]
        )

        result = run_matrix(
            file_factory,
            cargo_project,
            variants,
            settings=settings,
            pipeline_factory=lambda: BuildPipeline(fake_engine, layer_store),
        )

        assert result.total == 3
        assert result.succeeded == 2
        assert result.failed == 1
        assert result.cache_hits == 1
        assert result.stopped_early is False
        assert [r["variant"] for r in result.results] == [v.name for v in variants]
        assert result.results[1]["error_type"] == "dependency_resolution_failure"

        with file_factory() as session:
            assert len(list_builds(session)) == 3

    def test_fail_fast(
        self, file_factory, settings, fake_engine, layer_store, cargo_project
    ):
        """Fail-fast skips variants not yet started."""
        fake_engine.fail_cargo["source"] = ""
        variants = resolve_variants(["musl-minimal", "musl-mold"])

        result = run_matrix(
            file_factory,
            cargo_project,
            variants,
            settings=settings,
            mode=BatchMode.FAIL_FAST,
            pipeline_factory=lambda: BuildPipeline(fake_engine, layer_store),
        )

        assert result.failed == 1
        assert result.stopped_early is True
        assert result.results[1] == {
            "variant": "musl-mold",
            "success": False,
            "skipped": True,
        }

    def test_variants_isolated(
        self, file_factory, settings, fake_engine, layer_store, cargo_project
    ):
        """Each variant gets its own build directory and image."""
        variants = resolve_variants(["musl-minimal", "glibc-mold-metadata"])
        result = run_matrix(
            file_factory,
            cargo_project,
            variants,
            settings=settings,
            pipeline_factory=lambda: BuildPipeline(fake_engine, layer_store),
        )

        tags = {r["image_tag"] for r in result.results}
        assert len(tags) == 2
        with file_factory() as session:
            dirs = {b.build_dir for b in list_builds(session)}
        assert len(dirs) == 2

    def test_concurrent_variants_share_layer(
        self, file_factory, settings, fake_engine, layer_store, cargo_project
    ):
        """Variants sharing a dependency key record one layer row."""
        fake_engine.runtime_barrier = threading.Barrier(2)
        variants = resolve_variants(["musl-mold", "musl-mold-metadata"])

        result = run_matrix(
            file_factory,
            cargo_project,
            variants,
            settings=settings.model_copy(update={"max_concurrent_builds": 4}),
            pipeline_factory=lambda: BuildPipeline(fake_engine, layer_store),
        )

        assert result.succeeded == 2
        assert result.failed == 0
        assert result.cache_hits == 1
        assert len(fake_engine.runs_of("dependencies")) == 1
        with file_factory() as session:
            layers = session.query(DependencyLayer).all()
            assert len(layers) == 1
            assert {b.dependency_layer_id for b in list_builds(session)} == {
                layers[0].id
            }

    def test_unexpected_error_becomes_failed_summary(
        self, file_factory, settings, fake_engine, layer_store, cargo_project
    ):
        """Errors outside the pipeline taxonomy fail only their variant."""

        def broken_image_id(tag):
            raise ValueError(f"unparseable inspect output for {tag}")

        fake_engine.image_id = broken_image_id
        variants = resolve_variants(["musl-minimal", "musl-mold"])

        result = run_matrix(
            file_factory,
            cargo_project,
            variants,
            settings=settings.model_copy(update={"max_concurrent_builds": 2}),
            pipeline_factory=lambda: BuildPipeline(fake_engine, layer_store),
        )

        assert result.total == 2
        assert result.failed == 2
        assert {r["error_type"] for r in result.results} == {"internal_error"}
        with file_factory() as session:
            statuses = {b.status for b in list_builds(session)}
        assert statuses == {BuildStatus.FAILED.value}


class TestQueries:
    """Tests for build and layer queries."""

    @pytest.fixture
    def builds(self, session):
        records = []
        for name, status in [
            ("musl-mold", BuildStatus.SUCCEEDED),
            ("musl-mold", BuildStatus.FAILED),
            ("musl-minimal", BuildStatus.SUCCEEDED),
        ]:
            build = BuildRecord(
                variant_name=name,
                library_family="minimal-libc",
                linker="accelerated",
                source_root="/src",
                commit_hash="unknown",
                short_hash="unknown",
                build_date="unknown",
                status=status.value,
            )
            session.add(build)
            records.append(build)
        session.commit()
        return records

    def test_get_build(self, session, builds):
        """Should return the build by ID."""
        assert get_build(session, builds[0].id).variant_name == "musl-mold"

    def test_get_build_not_found(self, session):
        """Should raise BuildNotFoundError."""
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 999)
        assert exc_info.value.code == "build_not_found"

    def test_list_builds_filters(self, session, builds):
        """Should filter by variant and status, newest first."""
        assert [b.id for b in list_builds(session)] == [
            builds[2].id,
            builds[1].id,
            builds[0].id,
        ]
        assert len(list_builds(session, variant_name="musl-mold")) == 2
        assert len(list_builds(session, status=BuildStatus.FAILED)) == 1
        assert len(list_builds(session, limit=1)) == 1

    def test_get_build_artifacts(self, session, builds):
        """Should return the build's artifacts."""
        session.add(
            Artifact(
                build_id=builds[0].id,
                kind="binary",
                relative_path="runtime/svc",
                filename="svc",
                size_bytes=3,
                sha256="a" * 64,
            )
        )
        session.commit()
        artifacts = get_build_artifacts(session, builds[0].id)
        assert [a.filename for a in artifacts] == ["svc"]

    def test_list_layers_empty(self, session):
        """No layers recorded yet."""
        assert list_layers(session) == []


class TestPruneLayers:
    """Tests for prune_layers function."""

    def _promote(self, store: LayerStore, key: str, family: str, created: str):
        staging = store.new_staging_dir()
        (staging / "target" / "f").write_text(key)
        layer = store.promote(
            staging,
            key,
            {"toolchain": {"library_family": family, "linker": "accelerated"}},
        )
        info_path = layer.path / "layer.json"
        data = json.loads(info_path.read_text())
        data["created_at"] = created
        info_path.write_text(json.dumps(data))
        return layer

    @pytest.fixture
    def populated(self, layer_store):
        self._promote(layer_store, "sha256:a1", "minimal-libc", "2024-01-01T00:00:00")
        self._promote(layer_store, "sha256:a2", "minimal-libc", "2024-02-01T00:00:00")
        self._promote(layer_store, "sha256:b1", "standard-libc", "2024-01-15T00:00:00")
        return layer_store

    def test_keeps_newest_per_toolchain(self, populated):
        """Only the newest layer of each toolchain survives."""
        result = prune_layers(populated)

        assert [layer.cache_key for layer in result.removed] == ["sha256:a1"]
        assert populated.lookup("sha256:a1") is None
        assert populated.lookup("sha256:a2") is not None
        assert populated.lookup("sha256:b1") is not None

    def test_dry_run(self, populated):
        """Dry runs delete nothing."""
        result = prune_layers(populated, dry_run=True)

        assert len(result.removed) == 1
        assert populated.lookup("sha256:a1") is not None
        summary = result.to_operation_result()
        assert summary.message == "Would remove 1 dependency layer(s)"
        assert summary.details["removed"] == ["sha256:a1"]

    def test_keep_zero(self, populated):
        """keep_per_toolchain=0 removes everything."""
        result = prune_layers(populated, keep_per_toolchain=0)
        assert len(result.removed) == 3
        assert populated.list_layers() == []

    def test_deletes_rows(self, session, settings, pipeline, cargo_project):
        """Recorded layer rows are deleted and builds unlinked."""
        outcome = run_build(
            session,
            cargo_project,
            resolve_variant("musl-mold"),
            settings=settings,
            pipeline=pipeline,
        )
        session.commit()

        prune_layers(pipeline.store, session=session, keep_per_toolchain=0)
        session.commit()

        assert session.query(DependencyLayer).count() == 0
        assert outcome.build.dependency_layer_id is None
