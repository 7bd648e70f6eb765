"""Single-variant build pipeline.

Runs the stages of one variant strictly in order:

    manifest-staged -> dependencies-built -> source-copied
        -> binary-built -> runtime-assembled

Each stage works on filesystem state left by its predecessor inside a
per-build directory. Any failure raises a PipelineError subclass and
stops the pipeline; there are no retries at this layer.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from imagepipe.builds.artifacts import (
    compute_file_hash,
    compute_tree_hash,
    describe_artifact,
    generate_manifest,
    write_manifest,
)
from imagepipe.builds.cache import (
    LAYER_CARGO_HOME,
    LAYER_TARGET_DIR,
    CARGO_PROFILE_DIR,
    LayerInfo,
    LayerStore,
    ensure_dependency_layer,
)
from imagepipe.builds.cache_key import (
    BuildInputs,
    DependencyInputs,
    compute_build_key,
    compute_dependency_key,
    create_build_inputs,
    create_dependency_inputs,
)
from imagepipe.builds.containerfile import (
    render_toolchain_containerfile,
    toolchain_image_tag,
)
from imagepipe.builds.manifest import (
    DependencyManifest,
    resolve_binary_name,
    stage_manifest,
)
from imagepipe.builds.metadata import BuildMetadata, metadata_env
from imagepipe.builds.runner import ContainerEngine, StepExecutionError
from imagepipe.builds.runtime import (
    CONTAINERFILE_NAME,
    RuntimeImage,
    assemble_runtime_image,
    image_tag,
)
from imagepipe.errors import (
    CompileFailure,
    DependencyResolutionFailure,
    PipelineError,
)
from imagepipe.types import ArtifactInfo, PipelineStage
from imagepipe.variants.schema import VariantSchema
from imagepipe.variants.toolchain import Toolchain, toolchain_for

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_EXCLUDES = ("target", ".git")

# Layout of a build directory
DEPS_WORKSPACE_DIR = "deps-workspace"
SOURCE_DIR = "source"
TOOLCHAIN_DIR = "toolchain"
RUNTIME_DIR = "runtime"
LOGS_DIR = "logs"
BUILD_MANIFEST_FILE = "build-manifest.json"

# Intermediate trees removed after a build unless keep_work_dir is set
SCRATCH_DIRS = (DEPS_WORKSPACE_DIR, SOURCE_DIR, LAYER_TARGET_DIR, LAYER_CARGO_HOME)

StageCallback = Callable[[PipelineStage], None]


@dataclass
class PipelineRequest:
    """Inputs of one pipeline invocation.

    Attributes:
        source_root: Project source tree.
        variant: The single active variant.
        metadata: Build metadata, supplied once and never changed.
        tag: Runtime image tag; derived from the variant when None.
    """

    source_root: Path
    variant: VariantSchema
    metadata: BuildMetadata = field(default_factory=BuildMetadata)
    tag: str | None = None


@dataclass
class PipelineResult:
    """Outputs of a successful pipeline run."""

    variant: VariantSchema
    manifest: DependencyManifest
    dependency_key: str
    dependency_inputs: DependencyInputs
    layer: LayerInfo
    is_cache_hit: bool
    source_hash: str
    build_key: str
    build_inputs: BuildInputs
    binary_name: str
    binary_sha256: str
    image: RuntimeImage
    build_dir: Path
    manifest_path: Path
    artifacts: list[ArtifactInfo] = field(default_factory=list)
    stages: list[PipelineStage] = field(default_factory=list)


def copy_source_tree(
    source_root: Path,
    dest: Path,
    excludes: tuple[str, ...] = DEFAULT_SOURCE_EXCLUDES,
) -> Path:
    """Copy a source tree, skipping excluded top-level entries.

    Args:
        source_root: Project source root.
        dest: Destination directory (must not exist).
        excludes: Top-level names to skip.

    Returns:
        dest.

    Raises:
        CompileFailure: If the copy fails.
    """
    skip = set(excludes)

    def _ignore(directory: str, names: list[str]) -> set[str]:
        if Path(directory) == source_root:
            return {n for n in names if n in skip}
        return set()

    try:
        shutil.copytree(source_root, dest, symlinks=True, ignore=_ignore)
    except (OSError, shutil.Error) as e:
        raise CompileFailure(
            f"Failed to copy source tree {source_root}: {e}",
            code="source_copy_error",
        ) from e
    return dest


class BuildPipeline:
    """Parameterized pipeline; the variant is data passed per request."""

    def __init__(
        self,
        engine: ContainerEngine,
        store: LayerStore,
        binary_name: str | None = None,
        image_repository: str = "imagepipe/service",
        exposed_port: int = 50051,
        timezone: str = "Asia/Tokyo",
        source_excludes: tuple[str, ...] = (),
        lock_timeout: float | None = None,
        keep_work_dir: bool = False,
        on_stage: StageCallback | None = None,
    ) -> None:
        self.engine = engine
        self.store = store
        self.binary_name = binary_name
        self.image_repository = image_repository
        self.exposed_port = exposed_port
        self.timezone = timezone
        self.source_excludes = DEFAULT_SOURCE_EXCLUDES + tuple(source_excludes)
        self.lock_timeout = lock_timeout
        self.keep_work_dir = keep_work_dir
        self.on_stage = on_stage

    def _enter(self, stage: PipelineStage, stages: list[PipelineStage]) -> None:
        stages.append(stage)
        logger.info("Stage completed: %s", stage.value)
        if self.on_stage is not None:
            self.on_stage(stage)

    def ensure_toolchain_image(
        self,
        toolchain: Toolchain,
        build_dir: Path,
    ) -> str:
        """Build the toolchain image unless its content-addressed tag exists.

        Raises:
            DependencyResolutionFailure: If the image cannot be built.
        """
        tag = toolchain_image_tag(toolchain)
        context = build_dir / TOOLCHAIN_DIR
        log_path = build_dir / LOGS_DIR / "toolchain.log"

        try:
            if self.engine.image_exists(tag):
                logger.info("Toolchain image present: %s", tag)
                return tag

            context.mkdir(parents=True, exist_ok=True)
            containerfile = context / CONTAINERFILE_NAME
            containerfile.write_text(
                render_toolchain_containerfile(toolchain), encoding="utf-8"
            )
            result = self.engine.build_image(context, containerfile, tag, log_path)
        except StepExecutionError as e:
            raise DependencyResolutionFailure(
                str(e),
                code="toolchain_image_failed",
                exit_code=e.exit_code,
                log_path=str(log_path),
            ) from e

        if not result.success:
            raise DependencyResolutionFailure(
                f"Toolchain image build failed for {tag}: {result.error_message}",
                code="toolchain_image_failed",
                exit_code=result.exit_code,
                log_path=str(result.log_path),
            )
        return tag

    def build_binary(
        self,
        toolchain: Toolchain,
        toolchain_image: str,
        layer: LayerInfo,
        source_dir: Path,
        build_dir: Path,
        binary_name: str,
        locked: bool,
        env: dict[str, str],
    ) -> Path:
        """Compile the real source on a private copy of the dependency layer.

        Returns:
            Path to the compiled binary.

        Raises:
            CompileFailure: If the copy or compilation fails, or the
                binary is missing afterwards.
        """
        target_dir = build_dir / LAYER_TARGET_DIR
        cargo_home = build_dir / LAYER_CARGO_HOME
        log_path = build_dir / LOGS_DIR / "compile.log"

        try:
            # The layer itself stays untouched; this build owns the copies
            shutil.copytree(layer.target_dir, target_dir, symlinks=True)
            shutil.copytree(layer.cargo_home, cargo_home, symlinks=True)
        except (OSError, shutil.Error) as e:
            raise CompileFailure(
                f"Failed to copy dependency layer {layer.path}: {e}",
                code="layer_copy_error",
            ) from e

        try:
            result = self.engine.run_cargo(
                toolchain_image,
                source_dir,
                target_dir,
                cargo_home,
                log_path,
                rustflags=toolchain.rustflags,
                locked=locked,
                env=env,
            )
        except StepExecutionError as e:
            raise CompileFailure(
                str(e),
                code=e.code,
                exit_code=e.exit_code,
                log_path=str(log_path),
            ) from e

        if not result.success:
            raise CompileFailure(
                f"Compilation failed: {result.error_message}",
                exit_code=result.exit_code,
                log_path=str(result.log_path),
            )

        binary = target_dir / CARGO_PROFILE_DIR / binary_name
        if not binary.is_file():
            raise CompileFailure(
                f"Compilation produced no binary at {binary}",
                code="binary_missing",
                log_path=str(log_path),
            )
        return binary

    def run(self, request: PipelineRequest, build_dir: Path) -> PipelineResult:
        """Run all stages for one variant.

        Args:
            request: Pipeline inputs.
            build_dir: Fresh per-build directory.

        Returns:
            PipelineResult describing the produced image.

        Raises:
            PipelineError: On the first failing stage.
        """
        variant = request.variant
        metadata = request.metadata
        toolchain = toolchain_for(variant)
        source_root = request.source_root.resolve()
        stages: list[PipelineStage] = []

        build_dir.mkdir(parents=True, exist_ok=True)
        (build_dir / LOGS_DIR).mkdir(exist_ok=True)
        logger.info(
            "Starting pipeline for variant %s in %s", variant.name, build_dir
        )

        try:
            # manifest-staged
            workspace = build_dir / DEPS_WORKSPACE_DIR
            manifest = stage_manifest(source_root, workspace)
            binary_name = resolve_binary_name(manifest, self.binary_name)
            dependency_inputs = create_dependency_inputs(
                manifest.content_hash, toolchain
            )
            dependency_key = compute_dependency_key(dependency_inputs)
            self._enter(PipelineStage.MANIFEST_STAGED, stages)

            # dependencies-built
            toolchain_image = self.ensure_toolchain_image(toolchain, build_dir)
            layer, is_cache_hit = ensure_dependency_layer(
                self.store,
                self.engine,
                manifest,
                workspace,
                toolchain,
                toolchain_image,
                dependency_key,
                build_dir / LOGS_DIR / "dependencies.log",
                inputs={
                    **dependency_inputs.to_dict(),
                    "toolchain_image": toolchain_image,
                },
                lock_timeout=self.lock_timeout,
            )
            self._enter(PipelineStage.DEPENDENCIES_BUILT, stages)

            # source-copied
            source_dir = copy_source_tree(
                source_root, build_dir / SOURCE_DIR, self.source_excludes
            )
            source_hash = compute_tree_hash(source_dir)
            self._enter(PipelineStage.SOURCE_COPIED, stages)

            # binary-built
            build_inputs = create_build_inputs(
                dependency_key, source_hash, variant, metadata, binary_name
            )
            build_key = compute_build_key(build_inputs)
            binary = self.build_binary(
                toolchain,
                toolchain_image,
                layer,
                source_dir,
                build_dir,
                binary_name,
                locked=manifest.has_lockfile,
                env=metadata_env(metadata, variant.metadata_enabled),
            )
            binary_sha256 = compute_file_hash(binary)
            self._enter(PipelineStage.BINARY_BUILT, stages)

            # runtime-assembled
            tag = request.tag or image_tag(
                self.image_repository, variant, metadata.short_hash
            )
            runtime_dir = build_dir / RUNTIME_DIR
            image = assemble_runtime_image(
                self.engine,
                variant,
                toolchain,
                binary,
                binary_name,
                metadata,
                runtime_dir,
                tag,
                build_dir / LOGS_DIR / "runtime.log",
                exposed_port=self.exposed_port,
                timezone=self.timezone,
                labels={
                    "org.imagepipe.variant": variant.name,
                    "org.imagepipe.build-key": build_key,
                    "org.imagepipe.dependency-key": dependency_key,
                },
            )

            artifacts = [
                describe_artifact(runtime_dir / binary_name, "binary", build_dir),
                describe_artifact(
                    runtime_dir / CONTAINERFILE_NAME, "containerfile", build_dir
                ),
            ]
            manifest_path = write_manifest(
                generate_manifest(
                    artifacts=artifacts,
                    build_key=build_key,
                    variant={"name": variant.name, **variant.axes()},
                    build_inputs=build_inputs.to_dict(),
                    extra_metadata=self._manifest_metadata(
                        image, layer, is_cache_hit, manifest
                    ),
                ),
                build_dir / BUILD_MANIFEST_FILE,
            )
            artifacts.append(describe_artifact(manifest_path, "manifest", build_dir))
            self._enter(PipelineStage.RUNTIME_ASSEMBLED, stages)
        except PipelineError:
            logger.error(
                "Pipeline for variant %s failed after stages: %s",
                variant.name,
                [s.value for s in stages] or "none",
            )
            raise
        finally:
            if not self.keep_work_dir:
                self.cleanup(build_dir)

        return PipelineResult(
            variant=variant,
            manifest=manifest,
            dependency_key=dependency_key,
            dependency_inputs=dependency_inputs,
            layer=layer,
            is_cache_hit=is_cache_hit,
            source_hash=source_hash,
            build_key=build_key,
            build_inputs=build_inputs,
            binary_name=binary_name,
            binary_sha256=binary_sha256,
            image=image,
            build_dir=build_dir,
            manifest_path=manifest_path,
            artifacts=artifacts,
            stages=stages,
        )

    @staticmethod
    def _manifest_metadata(
        image: RuntimeImage,
        layer: LayerInfo,
        is_cache_hit: bool,
        manifest: DependencyManifest,
    ) -> dict[str, Any]:
        return {
            "image": {
                "tag": image.tag,
                "id": image.image_id,
                "binary_path": image.binary_path,
                "runtime_packages": image.runtime_packages,
                "timezone": image.timezone,
                "exposed_port": image.exposed_port,
                "entry_command": image.entry_command,
                "environment": image.environment,
            },
            "dependency_layer": {
                "cache_key": layer.cache_key,
                "digest": layer.digest,
                "cache_hit": is_cache_hit,
            },
            "dependency_manifest": manifest.to_dict(),
        }

    @staticmethod
    def cleanup(build_dir: Path) -> None:
        """Remove intermediate trees, keeping logs, runtime context and manifest."""
        for name in SCRATCH_DIRS:
            shutil.rmtree(build_dir / name, ignore_errors=True)


__all__ = [
    "BUILD_MANIFEST_FILE",
    "DEFAULT_SOURCE_EXCLUDES",
    "BuildPipeline",
    "PipelineRequest",
    "PipelineResult",
    "copy_source_tree",
]
