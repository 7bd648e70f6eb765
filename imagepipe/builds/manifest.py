"""Dependency manifest staging.

This module handles:
- Isolating Cargo.toml, Cargo.lock and .cargo/ from the source tree
- Computing the manifest content hash used in dependency layer keys
- Writing stub build targets and a stub build script so dependencies and
  build-dependencies compile without real source
- Resolving the service binary name

The staged directory is a self-contained dependency workspace; nothing in
it is ever copied back into the caller's source tree.
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from imagepipe.builds.artifacts import compute_file_hash, iter_tree_files
from imagepipe.errors import ManifestFetchFailure

logger = logging.getLogger(__name__)

CARGO_MANIFEST = "Cargo.toml"
CARGO_LOCKFILE = "Cargo.lock"
CARGO_CONFIG_DIR = ".cargo"
BUILD_SCRIPT = "build.rs"

STUB_MAIN = "fn main() {}\n"
STUB_LIB = ""


@dataclass
class DependencyManifest:
    """Staged dependency declaration and its identity.

    Attributes:
        files: Relative path to SHA-256 of every staged manifest file.
        content_hash: Hash over the sorted (path, sha256) pairs.
        package_name: [package].name from Cargo.toml.
        bin_names: Names of binary targets.
        stub_targets: Relative paths of stub sources for the dependency build.
        has_lockfile: Whether Cargo.lock was staged.
    """

    files: dict[str, str]
    content_hash: str
    package_name: str
    bin_names: list[str] = field(default_factory=list)
    stub_targets: list[str] = field(default_factory=list)
    has_lockfile: bool = False

    def crate_names(self) -> list[str]:
        """Names under which the project's own crates appear in target/."""
        names = {self.package_name, *self.bin_names}
        return sorted(names)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "files": dict(sorted(self.files.items())),
            "content_hash": self.content_hash,
            "package_name": self.package_name,
            "bin_names": list(self.bin_names),
            "has_lockfile": self.has_lockfile,
        }


def read_cargo_manifest(path: Path) -> dict[str, Any]:
    """Read and parse a Cargo.toml file.

    Args:
        path: Path to Cargo.toml.

    Returns:
        Parsed TOML document.

    Raises:
        ManifestFetchFailure: If the file is missing or invalid.
    """
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except FileNotFoundError:
        raise ManifestFetchFailure(
            f"Dependency manifest not found: {path}",
            code="manifest_missing",
        ) from None
    except (OSError, tomllib.TOMLDecodeError) as e:
        raise ManifestFetchFailure(
            f"Failed to read dependency manifest {path}: {e}",
            code="manifest_invalid",
        ) from e


def _bin_targets(cargo: dict[str, Any], package_name: str) -> list[tuple[str, str]]:
    """Return (name, path) for declared [[bin]] targets."""
    targets: list[tuple[str, str]] = []
    for entry in cargo.get("bin", []):
        name = entry.get("name", package_name)
        if "path" in entry:
            path = entry["path"]
        elif name == package_name:
            path = "src/main.rs"
        else:
            path = f"src/bin/{name}.rs"
        targets.append((name, path))
    return targets


def _build_script(source_root: Path, package: dict[str, Any]) -> str | None:
    """Return the package's build script path, if it has one."""
    build = package.get("build")
    if build is False:
        return None
    if isinstance(build, str):
        return build
    if build is True or (source_root / BUILD_SCRIPT).is_file():
        return BUILD_SCRIPT
    return None


def discover_stub_targets(
    source_root: Path,
    cargo: dict[str, Any],
) -> list[str]:
    """Find the target source files the dependency workspace must stub.

    Mirrors the project's target layout: declared [[bin]] and [lib]
    paths plus auto-discovered src/main.rs, src/lib.rs and src/bin/*.rs.
    A build script (build.rs or [package].build) is stubbed too, otherwise
    cargo skips [build-dependencies] in the dependency build.

    Args:
        source_root: Project source root.
        cargo: Parsed Cargo.toml.

    Returns:
        Sorted relative paths; always at least src/main.rs or src/lib.rs.
    """
    package_name = cargo["package"]["name"]
    targets: set[str] = {path for _, path in _bin_targets(cargo, package_name)}

    lib = cargo.get("lib")
    if isinstance(lib, dict) and "path" in lib:
        targets.add(lib["path"])

    for candidate in ("src/main.rs", "src/lib.rs"):
        if (source_root / candidate).is_file():
            targets.add(candidate)

    bin_dir = source_root / "src" / "bin"
    if bin_dir.is_dir():
        for path in bin_dir.glob("*.rs"):
            targets.add(path.relative_to(source_root).as_posix())

    if not targets:
        targets.add("src/main.rs")

    build_script = _build_script(source_root, cargo["package"])
    if build_script is not None:
        targets.add(build_script)

    return sorted(targets)


def compute_manifest_hash(files: dict[str, str]) -> str:
    """Compute the content hash of staged manifest files.

    Args:
        files: Relative path to SHA-256 mapping.

    Returns:
        Hash as hex string (sha256:...).
    """
    sha256 = hashlib.sha256()
    for rel, digest in sorted(files.items()):
        sha256.update(f"{rel}\0{digest}\n".encode())
    return f"sha256:{sha256.hexdigest()}"


def stage_manifest(source_root: Path, staging_dir: Path) -> DependencyManifest:
    """Stage dependency manifests from a source tree.

    Copies Cargo.toml, Cargo.lock (when present) and the .cargo/ config
    directory (when present) into staging_dir.

    Args:
        source_root: Project source root.
        staging_dir: Destination directory (created if missing).

    Returns:
        DependencyManifest describing the staged files.

    Raises:
        ManifestFetchFailure: If Cargo.toml is missing, invalid, has no
            [package] table, or a file cannot be copied.
    """
    cargo = read_cargo_manifest(source_root / CARGO_MANIFEST)
    package = cargo.get("package")
    if not isinstance(package, dict) or "name" not in package:
        raise ManifestFetchFailure(
            f"{source_root / CARGO_MANIFEST} has no [package] name; "
            "virtual workspaces are not supported",
            code="manifest_no_package",
        )
    package_name = package["name"]

    staging_dir.mkdir(parents=True, exist_ok=True)

    sources: list[Path] = [source_root / CARGO_MANIFEST]
    lockfile = source_root / CARGO_LOCKFILE
    if lockfile.is_file():
        sources.append(lockfile)
    config_dir = source_root / CARGO_CONFIG_DIR
    if config_dir.is_dir():
        sources.extend(iter_tree_files(config_dir))

    files: dict[str, str] = {}
    try:
        for src in sources:
            rel = src.relative_to(source_root).as_posix()
            dest = staging_dir / rel
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dest)
            files[rel] = compute_file_hash(dest)
    except OSError as e:
        raise ManifestFetchFailure(
            f"Failed to stage dependency manifests from {source_root}: {e}",
            code="manifest_stage_error",
        ) from e

    manifest = DependencyManifest(
        files=files,
        content_hash=compute_manifest_hash(files),
        package_name=package_name,
        bin_names=[name for name, _ in _bin_targets(cargo, package_name)],
        stub_targets=discover_stub_targets(source_root, cargo),
        has_lockfile=CARGO_LOCKFILE in files,
    )
    logger.info(
        "Staged %d manifest file(s) for %s (hash=%s)",
        len(files),
        package_name,
        manifest.content_hash[:23],
    )
    return manifest


def write_stub_targets(workspace: Path, manifest: DependencyManifest) -> list[Path]:
    """Write empty target sources into a dependency workspace.

    Args:
        workspace: Staged dependency workspace.
        manifest: Manifest whose stub targets to write.

    Returns:
        Paths of the written stub files.
    """
    written: list[Path] = []
    for rel in manifest.stub_targets:
        path = workspace / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        is_lib = rel.endswith("lib.rs")
        path.write_text(STUB_LIB if is_lib else STUB_MAIN, encoding="utf-8")
        written.append(path)
    return written


def resolve_binary_name(
    manifest: DependencyManifest,
    override: str | None = None,
) -> str:
    """Resolve the name of the service binary.

    Args:
        manifest: Staged dependency manifest.
        override: Explicit binary name from settings.

    Returns:
        The override, the single declared [[bin]] name, or the package name.
    """
    if override:
        return override
    if len(manifest.bin_names) == 1:
        return manifest.bin_names[0]
    return manifest.package_name


__all__ = [
    "CARGO_CONFIG_DIR",
    "CARGO_LOCKFILE",
    "BUILD_SCRIPT",
    "CARGO_MANIFEST",
    "DependencyManifest",
    "compute_manifest_hash",
    "discover_stub_targets",
    "read_cargo_manifest",
    "resolve_binary_name",
    "stage_manifest",
    "write_stub_targets",
]
