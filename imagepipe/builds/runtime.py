"""Runtime image assembly.

This module handles:
- Computing the runtime process environment (timezone, build metadata)
- Staging a build context holding only the binary and its Containerfile
- Building, tagging and inspecting the runtime image

The context never contains the toolchain, source tree or intermediate
build outputs, so the resulting image cannot either.
"""

from __future__ import annotations

import logging
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from imagepipe.builds.artifacts import compute_file_hash
from imagepipe.builds.containerfile import (
    RUNTIME_WORKDIR,
    render_runtime_containerfile,
)
from imagepipe.builds.metadata import BuildMetadata, metadata_env
from imagepipe.builds.runner import ContainerEngine, StepExecutionError
from imagepipe.errors import PackagingFailure
from imagepipe.variants.schema import VariantSchema
from imagepipe.variants.toolchain import Toolchain

logger = logging.getLogger(__name__)

CONTAINERFILE_NAME = "Containerfile"

_TAG_UNSAFE = re.compile(r"[^A-Za-z0-9_.\-]")

# Registry limit for the part after the colon
MAX_TAG_LENGTH = 128


@dataclass
class RuntimeImage:
    """Terminal artifact of a pipeline run.

    Attributes:
        tag: Image tag.
        image_id: Engine image ID.
        binary_path: Path of the binary inside the image.
        binary_sha256: SHA-256 of the packaged binary.
        runtime_packages: Runtime packages installed into the image.
        certificate_bundle: Package providing the CA bundle.
        timezone: Pinned timezone identifier.
        exposed_port: Advertised port.
        entry_command: Process entry command.
        environment: Process environment set by the image.
    """

    tag: str
    image_id: str
    binary_path: str
    binary_sha256: str
    runtime_packages: list[str]
    certificate_bundle: str
    timezone: str
    exposed_port: int
    entry_command: list[str]
    environment: dict[str, str] = field(default_factory=dict)


def runtime_environment(
    variant: VariantSchema,
    metadata: BuildMetadata,
    timezone: str,
) -> dict[str, str]:
    """Return the process environment of the runtime image.

    Args:
        variant: Active variant.
        metadata: Build metadata for this invocation.
        timezone: Timezone identifier.

    Returns:
        TZ plus metadata variables when the variant propagates them.
    """
    env = {"TZ": timezone}
    env.update(metadata_env(metadata, variant.metadata_enabled))
    return env


def image_tag(repository: str, variant: VariantSchema, suffix: str) -> str:
    """Compose a runtime image tag: <repository>:<variant>-<suffix>."""
    safe_suffix = _TAG_UNSAFE.sub("-", suffix)[:64] or "latest"
    tag = f"{variant.name}-{safe_suffix}"[:MAX_TAG_LENGTH]
    return f"{repository}:{tag}"


def stage_runtime_context(
    context_dir: Path,
    binary: Path,
    binary_name: str,
    containerfile_text: str,
) -> Path:
    """Stage the runtime build context.

    Args:
        context_dir: Empty directory to stage into.
        binary: Compiled service binary.
        binary_name: Name the binary gets in the context and image.
        containerfile_text: Rendered runtime Containerfile.

    Returns:
        Path to the written Containerfile.

    Raises:
        PackagingFailure: If staging fails.
    """
    try:
        context_dir.mkdir(parents=True, exist_ok=True)
        dest = context_dir / binary_name
        shutil.copy2(binary, dest)
        dest.chmod(0o755)
        containerfile = context_dir / CONTAINERFILE_NAME
        containerfile.write_text(containerfile_text, encoding="utf-8")
    except OSError as e:
        raise PackagingFailure(
            f"Failed to stage runtime context in {context_dir}: {e}",
            code="context_stage_error",
        ) from e
    return containerfile


def assemble_runtime_image(
    engine: ContainerEngine,
    variant: VariantSchema,
    toolchain: Toolchain,
    binary: Path,
    binary_name: str,
    metadata: BuildMetadata,
    context_dir: Path,
    tag: str,
    log_path: Path,
    exposed_port: int = 50051,
    timezone: str = "Asia/Tokyo",
    labels: dict[str, str] | None = None,
) -> RuntimeImage:
    """Assemble the minimal runtime image for a compiled binary.

    Args:
        engine: Container engine.
        variant: Active variant.
        toolchain: Variant toolchain.
        binary: Compiled service binary on the host.
        binary_name: Binary name inside the image.
        metadata: Build metadata for this invocation.
        context_dir: Empty directory for the build context.
        tag: Image tag.
        log_path: Step log file.
        exposed_port: Port advertised by the image.
        timezone: Timezone identifier.
        labels: Optional image labels.

    Returns:
        RuntimeImage describing the built image.

    Raises:
        PackagingFailure: If the image cannot be staged, built or inspected.
    """
    if not binary.is_file():
        raise PackagingFailure(
            f"Service binary not found: {binary}",
            code="binary_missing",
        )

    environment = runtime_environment(variant, metadata, timezone)
    containerfile_text = render_runtime_containerfile(
        toolchain, binary_name, exposed_port, environment
    )
    containerfile = stage_runtime_context(
        context_dir, binary, binary_name, containerfile_text
    )

    try:
        result = engine.build_image(
            context_dir, containerfile, tag, log_path, labels=labels
        )
        if not result.success:
            raise PackagingFailure(
                f"Runtime image build failed for {tag}: {result.error_message}",
                exit_code=result.exit_code,
                log_path=str(result.log_path),
            )
        image_id = engine.image_id(tag)
    except StepExecutionError as e:
        raise PackagingFailure(
            str(e),
            code=e.code,
            exit_code=e.exit_code,
            log_path=str(e.log_path) if e.log_path else None,
        ) from e

    logger.info("Assembled runtime image %s (%s)", tag, image_id[:19])

    return RuntimeImage(
        tag=tag,
        image_id=image_id,
        binary_path=f"{RUNTIME_WORKDIR}/{binary_name}",
        binary_sha256=compute_file_hash(context_dir / binary_name),
        runtime_packages=list(toolchain.runtime_packages),
        certificate_bundle=toolchain.certificate_package,
        timezone=timezone,
        exposed_port=exposed_port,
        entry_command=[f"./{binary_name}"],
        environment=environment,
    )


__all__ = [
    "CONTAINERFILE_NAME",
    "MAX_TAG_LENGTH",
    "RuntimeImage",
    "assemble_runtime_image",
    "image_tag",
    "runtime_environment",
    "stage_runtime_context",
]
