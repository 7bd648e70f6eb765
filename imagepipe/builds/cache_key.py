"""Cache key computation for dependency layers and builds.

This module handles:
- Canonical input snapshots for the dependency layer and the full build
- Deterministic hash computation over normalized inputs

The dependency layer key covers only the manifest and the toolchain, so
source and metadata changes never invalidate a layer. The build key adds
the source tree, the variant and the metadata and identifies a build for
reproducibility checks.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from imagepipe.builds.metadata import BuildMetadata
from imagepipe.variants.schema import VariantSchema
from imagepipe.variants.toolchain import Toolchain

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass
class DependencyInputs:
    """Canonical representation of everything a dependency layer depends on.

    Attributes:
        schema_version: Version of cache key schema.
        manifest_hash: Content hash of the staged manifest files.
        toolchain: Toolchain fingerprint (family, linker, image, packages).
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    manifest_hash: str = ""
    toolchain: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


@dataclass
class BuildInputs:
    """Canonical representation of all inputs of a pipeline run.

    Attributes:
        schema_version: Version of cache key schema.
        dependency_key: Key of the dependency layer used.
        source_hash: Hash of the copied source tree.
        variant: Variant axes.
        metadata: Metadata values reaching the compiler (empty when disabled).
        binary_name: Service binary name.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    dependency_key: str = ""
    source_hash: str = ""
    variant: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    binary_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def _hash_canonical(data: dict[str, Any]) -> str:
    # Canonical JSON: sorted keys, no extra whitespace
    canonical_json = json.dumps(data, sort_keys=True, separators=(",", ":"))
    return "sha256:" + hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()


def create_dependency_inputs(
    manifest_hash: str,
    toolchain: Toolchain,
) -> DependencyInputs:
    """Create canonical dependency layer inputs."""
    return DependencyInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        manifest_hash=manifest_hash,
        toolchain=toolchain.fingerprint(),
    )


def compute_dependency_key(inputs: DependencyInputs) -> str:
    """Compute the dependency layer cache key.

    Args:
        inputs: DependencyInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    return _hash_canonical(inputs.to_dict())


def create_build_inputs(
    dependency_key: str,
    source_hash: str,
    variant: VariantSchema,
    metadata: BuildMetadata,
    binary_name: str,
) -> BuildInputs:
    """Create canonical build inputs.

    Metadata only enters the inputs when the variant propagates it.
    """
    return BuildInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        dependency_key=dependency_key,
        source_hash=source_hash,
        variant=variant.axes(),
        metadata=metadata.to_env() if variant.metadata_enabled else {},
        binary_name=binary_name,
    )


def compute_build_key(inputs: BuildInputs) -> str:
    """Compute the build key from build inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        Build key as hex string (sha256:...).
    """
    return _hash_canonical(inputs.to_dict())


def key_digest(key: str) -> str:
    """Strip the algorithm prefix from a key for use in paths and tags."""
    return key.split(":", 1)[-1]


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "BuildInputs",
    "DependencyInputs",
    "compute_build_key",
    "compute_dependency_key",
    "create_build_inputs",
    "create_dependency_inputs",
    "key_digest",
]
