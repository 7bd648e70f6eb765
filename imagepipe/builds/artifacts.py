"""Artifact hashing, discovery and build manifest generation.

This module handles:
- Computing file and directory tree checksums
- Recording build outputs (binary, Containerfile, logs) as artifacts
- Generating build manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
from collections.abc import Iterable
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from imagepipe.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

ARTIFACT_KINDS = ("binary", "containerfile", "manifest", "log")


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def iter_tree_files(
    root: Path,
    excludes: Iterable[str] = (),
) -> list[Path]:
    """List regular files below root in a stable order.

    Args:
        root: Directory to walk.
        excludes: Top-level entry names to skip.

    Returns:
        Sorted list of file paths (symlinks to files included).
    """
    skip = set(excludes)
    files: list[Path] = []
    for dirpath, dirnames, filenames in os.walk(root):
        current = Path(dirpath)
        if current == root:
            dirnames[:] = [d for d in dirnames if d not in skip]
            filenames = [f for f in filenames if f not in skip]
        dirnames.sort()
        for name in filenames:
            path = current / name
            if path.is_file():
                files.append(path)
    return sorted(files, key=lambda p: p.relative_to(root).as_posix())


def compute_tree_hash(
    root: Path,
    excludes: Iterable[str] = (),
) -> str:
    """Compute a deterministic hash over a directory tree.

    The hash covers each file's relative path, content and executable
    bit; timestamps and ownership are ignored.

    Args:
        root: Directory to hash.
        excludes: Top-level entry names to skip.

    Returns:
        Hash as hex string (sha256:...).
    """
    sha256 = hashlib.sha256()
    for path in iter_tree_files(root, excludes):
        rel = path.relative_to(root).as_posix()
        executable = "x" if os.access(path, os.X_OK) else "-"
        sha256.update(f"{rel}\0{executable}\0".encode())
        sha256.update(compute_file_hash(path).encode("ascii"))
        sha256.update(b"\n")
    return f"sha256:{sha256.hexdigest()}"


def compute_tree_size(root: Path) -> int:
    """Return the total size in bytes of regular files below root."""
    return sum(p.stat().st_size for p in iter_tree_files(root))


def describe_artifact(
    path: Path,
    kind: str,
    artifacts_root: Path | None = None,
    labels: list[str] | None = None,
) -> ArtifactInfo:
    """Build ArtifactInfo for a produced file.

    Args:
        path: File to describe.
        kind: Artifact kind (binary, containerfile, manifest, log).
        artifacts_root: Root for computing relative paths.
        labels: Optional labels.

    Returns:
        ArtifactInfo with size and checksum.
    """
    if artifacts_root is None:
        artifacts_root = path.parent

    try:
        relative_path = path.relative_to(artifacts_root).as_posix()
    except ValueError:
        relative_path = path.name

    info = ArtifactInfo(
        filename=path.name,
        relative_path=relative_path,
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
        kind=kind,
        labels=list(labels or []),
    )
    logger.debug(
        "Recorded artifact: %s (kind=%s, size=%d)", path.name, kind, info.size_bytes
    )
    return info


def generate_manifest(
    artifacts: list[ArtifactInfo],
    build_id: int | None = None,
    build_key: str | None = None,
    variant: dict[str, Any] | None = None,
    build_inputs: dict[str, Any] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate a build manifest.

    The manifest contains:
    - List of artifacts with metadata
    - Build identification (ID, build key, variant)
    - Timestamps
    - Optional extra metadata (image, environment)

    Args:
        artifacts: List of artifacts.
        build_id: Optional database build ID.
        build_key: Optional build key.
        variant: Optional variant description.
        build_inputs: Optional build inputs dictionary.
        extra_metadata: Optional additional metadata.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifacts": [asdict(a) for a in artifacts],
    }

    if build_id is not None:
        manifest["build_id"] = build_id
    if build_key:
        manifest["build_key"] = build_key
    if variant:
        manifest["variant"] = variant
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    manifest["summary"] = {
        "total_artifacts": len(artifacts),
        "total_size_bytes": sum(a.size_bytes for a in artifacts),
        "kinds": sorted({a.kind for a in artifacts if a.kind}),
    }

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "ARTIFACT_KINDS",
    "HASH_CHUNK_SIZE",
    "compute_file_hash",
    "compute_tree_hash",
    "compute_tree_size",
    "describe_artifact",
    "generate_manifest",
    "iter_tree_files",
    "write_manifest",
]
