"""Pipeline error taxonomy.

Every failure is fatal to the current pipeline invocation. Errors carry a
stable code for programmatic handling, the exit status the CLI should use,
and the log file holding the toolchain's own diagnostics when there is one.
"""

from __future__ import annotations

from imagepipe.types import PipelineStage

# Error code constants
MANIFEST_FETCH_FAILURE = "manifest_fetch_failure"
DEPENDENCY_RESOLUTION_FAILURE = "dependency_resolution_failure"
COMPILE_FAILURE = "compile_failure"
PACKAGING_FAILURE = "packaging_failure"
VARIANT_NOT_FOUND = "variant_not_found"
INTERNAL_ERROR = "internal_error"


class PipelineError(Exception):
    """Base error for a failed pipeline stage."""

    default_code = "pipeline_error"
    stage: PipelineStage | None = None

    def __init__(
        self,
        message: str,
        code: str | None = None,
        exit_code: int | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code or self.default_code
        self.exit_code = exit_code
        self.log_path = log_path

    @property
    def status(self) -> int:
        """Non-zero process exit status for this failure."""
        if self.exit_code is not None and self.exit_code > 0:
            return self.exit_code
        return 1


class ManifestFetchFailure(PipelineError):
    """Dependency manifests could not be read or staged."""

    default_code = MANIFEST_FETCH_FAILURE
    stage = PipelineStage.MANIFEST_STAGED


class DependencyResolutionFailure(PipelineError):
    """Dependencies could not be resolved or pre-built."""

    default_code = DEPENDENCY_RESOLUTION_FAILURE
    stage = PipelineStage.DEPENDENCIES_BUILT


class CompileFailure(PipelineError):
    """The service source could not be staged or compiled."""

    default_code = COMPILE_FAILURE
    stage = PipelineStage.BINARY_BUILT


class PackagingFailure(PipelineError):
    """The runtime image could not be assembled."""

    default_code = PACKAGING_FAILURE
    stage = PipelineStage.RUNTIME_ASSEMBLED


class VariantNotFoundError(Exception):
    """Raised when a requested build variant does not exist."""

    def __init__(self, name: str, code: str = VARIANT_NOT_FOUND) -> None:
        super().__init__(f"Build variant not found: {name}")
        self.name = name
        self.code = code


__all__ = [
    "COMPILE_FAILURE",
    "DEPENDENCY_RESOLUTION_FAILURE",
    "INTERNAL_ERROR",
    "MANIFEST_FETCH_FAILURE",
    "PACKAGING_FAILURE",
    "VARIANT_NOT_FOUND",
    "CompileFailure",
    "DependencyResolutionFailure",
    "ManifestFetchFailure",
    "PackagingFailure",
    "PipelineError",
    "VariantNotFoundError",
]
