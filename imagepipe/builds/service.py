"""Build service module.

This module provides the high-level build API:
- run_build(): run one variant's pipeline and persist the outcome
- run_matrix(): run several independent variants concurrently
- Build record, artifact and dependency layer persistence
- Layer listing and pruning
"""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from imagepipe.builds.cache import LayerInfo, LayerStore
from imagepipe.builds.metadata import BuildMetadata
from imagepipe.builds.models import Artifact, BuildRecord, DependencyLayer
from imagepipe.builds.pipeline import (
    LOGS_DIR,
    BuildPipeline,
    PipelineRequest,
    PipelineResult,
)
from imagepipe.builds.runner import ContainerEngine
from imagepipe.config import get_settings
from imagepipe.errors import INTERNAL_ERROR, PipelineError
from imagepipe.types import (
    ArtifactInfo,
    BatchMode,
    BuildStatus,
    OperationResult,
    PipelineStage,
)
from imagepipe.variants.schema import VariantSchema

if TYPE_CHECKING:
    from imagepipe.config import Settings

logger = logging.getLogger(__name__)


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


@dataclass
class BuildOutcome:
    """Outcome of one variant's pipeline run.

    Attributes:
        build: Persisted BuildRecord.
        result: PipelineResult on success.
        error: PipelineError on failure.
    """

    build: BuildRecord
    result: PipelineResult | None = None
    error: PipelineError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class MatrixResult(BaseModel):
    """Summary of a variant matrix run."""

    total: int = 0
    succeeded: int = 0
    failed: int = 0
    cache_hits: int = 0
    stopped_early: bool = False
    results: list[dict[str, Any]] = Field(default_factory=list)


@dataclass
class PruneResult:
    """Layers removed (or that would be removed) by a prune."""

    removed: list[LayerInfo] = field(default_factory=list)
    kept: list[LayerInfo] = field(default_factory=list)
    dry_run: bool = False

    def to_operation_result(self) -> OperationResult:
        prefix = "Would remove" if self.dry_run else "Removed"
        return OperationResult(
            success=True,
            message=f"{prefix} {len(self.removed)} dependency layer(s)",
            details={
                "removed": [layer.cache_key for layer in self.removed],
                "kept": [layer.cache_key for layer in self.kept],
                "bytes": sum(layer.size_bytes for layer in self.removed),
            },
        )


def create_engine_for(settings: Settings) -> ContainerEngine:
    """Create the container engine configured in settings."""
    return ContainerEngine(
        executable=settings.container_engine,
        timeout=settings.build_timeout,
        run_as_host_user=settings.run_as_host_user,
    )


def create_pipeline(
    settings: Settings,
    engine: ContainerEngine | None = None,
    store: LayerStore | None = None,
) -> BuildPipeline:
    """Create a BuildPipeline configured from settings."""
    return BuildPipeline(
        engine=engine or create_engine_for(settings),
        store=store or LayerStore(settings.cache_dir),
        binary_name=settings.binary_name,
        image_repository=settings.image_repository,
        exposed_port=settings.exposed_port,
        timezone=settings.timezone,
        source_excludes=tuple(settings.source_excludes),
        lock_timeout=settings.lock_timeout,
        keep_work_dir=settings.keep_work_dir,
    )


def _create_build_record(
    session: Session,
    variant: VariantSchema,
    source_root: Path,
    metadata: BuildMetadata,
) -> BuildRecord:
    """Create a new BuildRecord in pending state."""
    build = BuildRecord(
        variant_name=variant.name,
        library_family=variant.library_family.value,
        linker=variant.linker.value,
        metadata_enabled=variant.metadata_enabled,
        source_root=str(source_root),
        commit_hash=metadata.commit_hash,
        short_hash=metadata.short_hash,
        build_date=metadata.build_date,
        status=BuildStatus.PENDING.value,
    )
    session.add(build)
    session.flush()
    return build


def _record_layer(
    session: Session,
    result: PipelineResult,
) -> DependencyLayer:
    """Get or create the DependencyLayer row for a pipeline's layer.

    Matrix variants sharing a dependency key may record the layer at the
    same time; the losing insert is rolled back to its savepoint and the
    winner's row is used instead.
    """
    layer = result.layer
    stmt = select(DependencyLayer).where(DependencyLayer.cache_key == layer.cache_key)
    row = session.execute(stmt).scalar_one_or_none()
    now = datetime.now()

    if row is not None:
        row.last_used_at = now
        return row

    toolchain = result.dependency_inputs.toolchain
    row = DependencyLayer(
        cache_key=layer.cache_key,
        manifest_hash=result.manifest.content_hash,
        library_family=str(toolchain.get("library_family", "")),
        linker=str(toolchain.get("linker", "")),
        toolchain_image=layer.inputs.get("toolchain_image"),
        path=str(layer.path),
        digest=layer.digest,
        size_bytes=layer.size_bytes,
        input_snapshot=layer.inputs,
        last_used_at=now,
    )
    try:
        with session.begin_nested():
            session.add(row)
    except IntegrityError:
        logger.debug("Layer %s recorded concurrently", layer.cache_key[:23])
        row = session.execute(stmt).scalar_one()
        row.last_used_at = now
    return row


def _create_artifact_record(
    session: Session,
    build: BuildRecord,
    artifact_info: ArtifactInfo,
    absolute_path: str | None = None,
) -> Artifact:
    """Create an Artifact record from ArtifactInfo."""
    artifact = Artifact(
        build_id=build.id,
        kind=artifact_info.kind,
        relative_path=artifact_info.relative_path,
        absolute_path=absolute_path,
        filename=artifact_info.filename,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
        labels=artifact_info.labels,
    )
    session.add(artifact)
    return artifact


def _find_previous_build(
    session: Session,
    build_key: str,
    exclude_id: int,
) -> BuildRecord | None:
    """Find the latest successful build with the same build key."""
    stmt = (
        select(BuildRecord)
        .where(
            BuildRecord.build_key == build_key,
            BuildRecord.status == BuildStatus.SUCCEEDED.value,
            BuildRecord.id != exclude_id,
        )
        .order_by(BuildRecord.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _record_success(
    session: Session,
    build: BuildRecord,
    result: PipelineResult,
    build_dir: Path,
) -> None:
    """Copy a pipeline result onto its record and mark it succeeded."""
    layer_row = _record_layer(session, result)
    build.dependency_layer_id = layer_row.id
    build.dependency_key = result.dependency_key
    build.is_cache_hit = result.is_cache_hit
    build.source_hash = result.source_hash
    build.build_key = result.build_key
    build.input_snapshot = result.build_inputs.to_dict()
    build.binary_sha256 = result.binary_sha256
    build.image_tag = result.image.tag
    build.image_id = result.image.image_id
    build.log_path = str(build_dir / LOGS_DIR / "runtime.log")

    for artifact_info in result.artifacts:
        _create_artifact_record(
            session,
            build,
            artifact_info,
            absolute_path=str(build_dir / artifact_info.relative_path),
        )

    previous = _find_previous_build(session, result.build_key, build.id)
    if previous is not None and previous.binary_sha256 != result.binary_sha256:
        logger.warning(
            "Build %d is not reproducible: build %d had identical inputs but "
            "binary %s (now %s)",
            build.id,
            previous.id,
            (previous.binary_sha256 or "")[:16],
            result.binary_sha256[:16],
        )

    build.mark_succeeded()


def _build_dir_for(settings: Settings, build: BuildRecord) -> Path:
    build_id_str = f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
    return settings.work_dir / build.variant_name / build_id_str


def run_build(
    session: Session,
    source_root: Path,
    variant: VariantSchema,
    metadata: BuildMetadata | None = None,
    settings: Settings | None = None,
    pipeline: BuildPipeline | None = None,
    tag: str | None = None,
    autocommit: bool = False,
) -> BuildOutcome:
    """Run one variant's pipeline and persist its outcome.

    The BuildRecord tracks each stage as it completes. A failing stage
    marks the record failed with the error code; the error is returned in
    the outcome rather than raised so matrix runs can continue.

    Args:
        session: Database session.
        source_root: Project source tree.
        variant: The single active variant.
        metadata: Build metadata; all fields "unknown" when omitted.
        settings: Application settings.
        pipeline: Pipeline to run (created from settings if not given).
        tag: Explicit runtime image tag.
        autocommit: Commit after each state change instead of flushing,
            keeping write transactions short when builds run concurrently.

    Returns:
        BuildOutcome with the record and either a result or an error.
    """
    if settings is None:
        settings = get_settings()
    if metadata is None:
        metadata = BuildMetadata()
    if pipeline is None:
        pipeline = create_pipeline(settings)

    def _save() -> None:
        if autocommit:
            session.commit()
        else:
            session.flush()

    source_root = source_root.resolve()
    build = _create_build_record(session, variant, source_root, metadata)
    build_dir = _build_dir_for(settings, build)
    build.build_dir = str(build_dir)
    build.mark_running()
    _save()
    logger.info("Created build record %d for variant %s", build.id, variant.name)

    def _on_stage(stage: PipelineStage) -> None:
        build.mark_stage(stage)
        _save()

    previous_callback = pipeline.on_stage
    pipeline.on_stage = _on_stage
    try:
        result = pipeline.run(
            PipelineRequest(
                source_root=source_root,
                variant=variant,
                metadata=metadata,
                tag=tag,
            ),
            build_dir,
        )
        _record_success(session, build, result, build_dir)
        _save()
    except PipelineError as e:
        build.log_path = e.log_path
        build.mark_failed(error_type=e.code, message=str(e))
        _save()
        logger.error("Build %d failed: %s", build.id, e)
        return BuildOutcome(build=build, error=e)
    except Exception as e:
        # Drop partial success fields; committed stages stay recorded
        if autocommit or not session.is_active:
            session.rollback()
        build.mark_failed(error_type=INTERNAL_ERROR, message=str(e) or repr(e))
        _save()
        logger.error("Build %d failed unexpectedly: %r", build.id, e)
        raise
    finally:
        pipeline.on_stage = previous_callback

    logger.info(
        "Build %d succeeded: %s (dependency cache %s)",
        build.id,
        result.image.tag,
        "hit" if result.is_cache_hit else "miss",
    )
    return BuildOutcome(build=build, result=result)


def _outcome_summary(outcome: BuildOutcome) -> dict[str, Any]:
    build = outcome.build
    return {
        "build_id": build.id,
        "variant": build.variant_name,
        "success": outcome.success,
        "stage": build.stage,
        "is_cache_hit": build.is_cache_hit,
        "image_tag": build.image_tag,
        "image_id": build.image_id,
        "binary_sha256": build.binary_sha256,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "log_path": build.log_path,
    }


def _failure_summary(variant: VariantSchema, error: Exception) -> dict[str, Any]:
    return {
        "build_id": None,
        "variant": variant.name,
        "success": False,
        "stage": None,
        "is_cache_hit": False,
        "image_tag": None,
        "image_id": None,
        "binary_sha256": None,
        "error_type": INTERNAL_ERROR,
        "error_message": str(error) or repr(error),
        "log_path": None,
    }


def run_matrix(
    session_factory: sessionmaker[Session],
    source_root: Path,
    variants: list[VariantSchema],
    metadata: BuildMetadata | None = None,
    settings: Settings | None = None,
    mode: BatchMode = BatchMode.BEST_EFFORT,
    pipeline_factory: Any | None = None,
) -> MatrixResult:
    """Run several variants, each as an independent pipeline.

    Variants share nothing but read-only dependency layers, so they run
    concurrently up to ``settings.max_concurrent_builds``; each gets its
    own session, pipeline and build directory. In fail-fast mode variants
    not yet started are skipped after the first failure.

    Args:
        session_factory: Factory for per-variant sessions.
        source_root: Project source tree.
        variants: Variants to build.
        metadata: Build metadata shared by all variants.
        settings: Application settings.
        mode: Fail-fast or best-effort.
        pipeline_factory: Callable returning a BuildPipeline; defaults to
            create_pipeline(settings).

    Returns:
        MatrixResult with per-variant summaries in input order.
    """
    if settings is None:
        settings = get_settings()
    if metadata is None:
        metadata = BuildMetadata()

    def _make_pipeline() -> BuildPipeline:
        if pipeline_factory is not None:
            return pipeline_factory()
        return create_pipeline(settings)

    summaries: dict[str, dict[str, Any]] = {}
    stop = threading.Event()

    def _run_one(variant: VariantSchema) -> dict[str, Any]:
        if stop.is_set():
            return {"variant": variant.name, "success": False, "skipped": True}
        session = session_factory()
        try:
            outcome = run_build(
                session,
                source_root,
                variant,
                metadata=metadata,
                settings=settings,
                pipeline=_make_pipeline(),
                autocommit=True,
            )
            session.commit()
            summary = _outcome_summary(outcome)
        except Exception as e:
            session.rollback()
            logger.exception("Variant %s failed unexpectedly", variant.name)
            if mode == BatchMode.FAIL_FAST:
                stop.set()
            return _failure_summary(variant, e)
        finally:
            session.close()
        if not summary["success"] and mode == BatchMode.FAIL_FAST:
            stop.set()
        return summary

    workers = min(settings.max_concurrent_builds, max(len(variants), 1))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = {executor.submit(_run_one, v): v for v in variants}
        for future in as_completed(futures):
            variant = futures[future]
            summaries[variant.name] = future.result()

    result = MatrixResult(total=len(variants))
    for variant in variants:
        summary = summaries[variant.name]
        result.results.append(summary)
        if summary.get("skipped"):
            result.stopped_early = True
        elif summary["success"]:
            result.succeeded += 1
            if summary["is_cache_hit"]:
                result.cache_hits += 1
        else:
            result.failed += 1
    return result


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    variant_name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters, newest first."""
    stmt = select(BuildRecord)

    if variant_name is not None:
        stmt = stmt.where(BuildRecord.variant_name == variant_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_artifacts(session: Session, build_id: int) -> list[Artifact]:
    """Get artifacts for a build.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.artifacts)


def list_layers(session: Session) -> list[DependencyLayer]:
    """List recorded dependency layers, most recently used first."""
    stmt = select(DependencyLayer).order_by(
        DependencyLayer.last_used_at.desc(), DependencyLayer.id.desc()
    )
    return list(session.execute(stmt).scalars().all())


def prune_layers(
    store: LayerStore,
    session: Session | None = None,
    keep_per_toolchain: int = 1,
    dry_run: bool = False,
) -> PruneResult:
    """Delete old dependency layers.

    Keeps the newest ``keep_per_toolchain`` layers of each
    (library family, linker) pair. Layers are removed whole; a layer is
    never modified in place.

    Args:
        store: Layer store.
        session: Optional session; matching DependencyLayer rows are
            deleted along with the directories.
        keep_per_toolchain: Layers kept per toolchain.
        dry_run: Report without deleting.

    Returns:
        PruneResult listing removed and kept layers.
    """
    groups: dict[tuple[str, str], list[LayerInfo]] = {}
    for layer in store.list_layers():
        toolchain = layer.inputs.get("toolchain", {})
        group = (
            str(toolchain.get("library_family", "")),
            str(toolchain.get("linker", "")),
        )
        groups.setdefault(group, []).append(layer)

    result = PruneResult(dry_run=dry_run)
    for layers in groups.values():
        newest_first = sorted(layers, key=lambda x: x.created_at, reverse=True)
        result.kept.extend(newest_first[:keep_per_toolchain])
        result.removed.extend(newest_first[keep_per_toolchain:])

    if dry_run:
        return result

    for layer in result.removed:
        store.remove(layer.cache_key)
        if session is not None:
            row = session.execute(
                select(DependencyLayer).where(
                    DependencyLayer.cache_key == layer.cache_key
                )
            ).scalar_one_or_none()
            if row is not None:
                for build in row.builds:
                    build.dependency_layer_id = None
                session.delete(row)
        logger.info("Pruned dependency layer %s", layer.cache_key[:23])

    if session is not None:
        session.flush()
    return result


__all__ = [
    "BuildNotFoundError",
    "BuildOutcome",
    "MatrixResult",
    "PruneResult",
    "create_engine_for",
    "create_pipeline",
    "get_build",
    "get_build_artifacts",
    "list_builds",
    "list_layers",
    "prune_layers",
    "run_build",
    "run_matrix",
]
