"""Shared type definitions for imagepipe.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineStage(str, Enum):
    """Stages of a single-variant pipeline, in execution order."""

    MANIFEST_STAGED = "manifest-staged"
    DEPENDENCIES_BUILT = "dependencies-built"
    SOURCE_COPIED = "source-copied"
    BINARY_BUILT = "binary-built"
    RUNTIME_ASSEMBLED = "runtime-assembled"


PIPELINE_STAGES: tuple[PipelineStage, ...] = tuple(PipelineStage)


class LibraryFamily(str, Enum):
    """C runtime library family of the builder and runtime base images."""

    MINIMAL_LIBC = "minimal-libc"
    STANDARD_LIBC = "standard-libc"


class Linker(str, Enum):
    """Linker used for the release build."""

    DEFAULT = "default"
    ACCELERATED = "accelerated"


class BatchMode(str, Enum):
    """How a variant matrix reacts to a failing variant."""

    FAIL_FAST = "fail-fast"
    BEST_EFFORT = "best-effort"


@dataclass
class OperationResult:
    """Result of an operation (pipeline run, prune, etc.)."""

    success: bool
    message: str
    code: str | None = None
    log_path: str | None = None
    details: dict[str, object] = field(default_factory=dict)


@dataclass
class ArtifactInfo:
    """Information about a file produced by a build."""

    filename: str
    relative_path: str
    size_bytes: int
    sha256: str
    kind: str | None = None
    labels: list[str] = field(default_factory=list)


__all__ = [
    "PIPELINE_STAGES",
    "ArtifactInfo",
    "BatchMode",
    "BuildStatus",
    "LibraryFamily",
    "Linker",
    "OperationResult",
    "PipelineStage",
]
