"""Content-addressed dependency layer cache.

This module handles:
- Locating layers by dependency key
- Building a layer from a stubbed dependency workspace
- Purging the stub crate's outputs so the real crate always recompiles
- Atomic promotion of finished layers
- Listing and pruning layers

A layer is a directory ``<cache_dir>/layers/<digest>/`` holding the cargo
``target/`` tree and ``cargo-home/`` (registry sources) produced by a
dependency-only build. Layers are immutable once promoted: consumers
copy them, a changed key always yields a new layer, and promotion never
replaces an existing directory.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import re
import shutil
import tempfile
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from imagepipe.builds.artifacts import compute_tree_hash, compute_tree_size
from imagepipe.builds.cache_key import key_digest
from imagepipe.builds.manifest import DependencyManifest, write_stub_targets
from imagepipe.builds.runner import ContainerEngine, StepExecutionError
from imagepipe.errors import DependencyResolutionFailure
from imagepipe.variants.toolchain import Toolchain

logger = logging.getLogger(__name__)

LAYER_TARGET_DIR = "target"
LAYER_CARGO_HOME = "cargo-home"
LAYER_INFO_FILE = "layer.json"
CARGO_PROFILE_DIR = "release"

# Subdirectories of target/release holding per-crate outputs
_CRATE_OUTPUT_DIRS = (".fingerprint", "deps", "build", "incremental")


@dataclass
class LayerInfo:
    """A promoted dependency layer.

    Attributes:
        cache_key: Dependency layer key.
        path: Layer directory.
        digest: Tree hash of target/ and cargo-home/.
        size_bytes: Total size of the layer.
        created_at: ISO timestamp of promotion.
        inputs: Key inputs recorded at promotion.
    """

    cache_key: str
    path: Path
    digest: str
    size_bytes: int
    created_at: str
    inputs: dict[str, Any] = field(default_factory=dict)

    @property
    def target_dir(self) -> Path:
        return self.path / LAYER_TARGET_DIR

    @property
    def cargo_home(self) -> Path:
        return self.path / LAYER_CARGO_HOME

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "cache_key": self.cache_key,
            "path": str(self.path),
            "digest": self.digest,
            "size_bytes": self.size_bytes,
            "created_at": self.created_at,
            "inputs": self.inputs,
        }


@contextmanager
def layer_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a dependency layer key.

    Uses a file-based lock so concurrent builds sharing a key build the
    layer once; readers of promoted layers never lock.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"layer_{safe_key}.lock"

    logger.debug("Acquiring layer lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for layer lock on {cache_key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Layer lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Layer lock released for key: %s", cache_key[:32])
        os.close(fd)


def _crate_output_pattern(name: str) -> re.Pattern[str]:
    # cargo names outputs <crate>-<16 hex>, with '-' or '_' and an optional
    # lib prefix and extension; the hash suffix keeps dependency crates
    # sharing a name prefix out of the match
    variants = {name, name.replace("-", "_")}
    alternatives = "|".join(re.escape(v) for v in sorted(variants))
    return re.compile(rf"^(lib)?({alternatives})-[0-9a-f]{{16}}(\..+)?$")


def purge_crate_outputs(target_dir: Path, crate_names: list[str]) -> list[Path]:
    """Remove the project's own crate outputs from a cargo target tree.

    Deletes fingerprints, compiled units, build script outputs and
    incremental state of the stub crates, plus the top-level binaries,
    so the next build compiles the real crate unconditionally.

    Args:
        target_dir: Cargo target directory.
        crate_names: Package and binary names of the project.

    Returns:
        Removed paths.
    """
    profile_dir = target_dir / CARGO_PROFILE_DIR
    if not profile_dir.is_dir():
        return []

    patterns = [_crate_output_pattern(n) for n in crate_names]
    removed: list[Path] = []

    for sub in _CRATE_OUTPUT_DIRS:
        parent = profile_dir / sub
        if not parent.is_dir():
            continue
        for entry in parent.iterdir():
            if any(p.match(entry.name) for p in patterns):
                removed.append(entry)

    top_level: set[str] = set()
    for name in crate_names:
        lib = name.replace("-", "_")
        top_level.update({name, f"{name}.d", f"lib{lib}.rlib", f"lib{lib}.d"})
    for name in sorted(top_level):
        entry = profile_dir / name
        if entry.exists() or entry.is_symlink():
            removed.append(entry)

    for entry in removed:
        if entry.is_dir() and not entry.is_symlink():
            shutil.rmtree(entry)
        else:
            entry.unlink()

    logger.debug("Purged %d stub crate output(s) from %s", len(removed), target_dir)
    return removed


class LayerStore:
    """Filesystem store of immutable dependency layers."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.layers_dir = root / "layers"
        self.tmp_dir = root / "tmp"
        self.lock_dir = root / ".locks"

    def layer_path(self, cache_key: str) -> Path:
        """Directory a layer with this key lives in."""
        return self.layers_dir / key_digest(cache_key)

    def lookup(self, cache_key: str) -> LayerInfo | None:
        """Return the promoted layer for a key, or None.

        A directory without its info file is not a layer.
        """
        info_path = self.layer_path(cache_key) / LAYER_INFO_FILE
        if not info_path.is_file():
            return None
        return self._read_info(info_path)

    def _read_info(self, info_path: Path) -> LayerInfo:
        with info_path.open(encoding="utf-8") as f:
            data = json.load(f)
        return LayerInfo(
            cache_key=data["cache_key"],
            path=info_path.parent,
            digest=data["digest"],
            size_bytes=data["size_bytes"],
            created_at=data["created_at"],
            inputs=data.get("inputs", {}),
        )

    def new_staging_dir(self) -> Path:
        """Create a fresh staging directory for a layer under construction."""
        self.tmp_dir.mkdir(parents=True, exist_ok=True)
        staging = Path(tempfile.mkdtemp(prefix="layer_", dir=self.tmp_dir))
        (staging / LAYER_TARGET_DIR).mkdir()
        (staging / LAYER_CARGO_HOME).mkdir()
        return staging

    def discard(self, staging: Path) -> None:
        """Delete an unpromoted staging directory."""
        shutil.rmtree(staging, ignore_errors=True)

    def promote(
        self,
        staging: Path,
        cache_key: str,
        inputs: dict[str, Any] | None = None,
    ) -> LayerInfo:
        """Promote a finished staging directory to a layer.

        Writes the info file, then renames the directory into place. If a
        layer for the key already exists the staging directory is
        discarded and the existing layer returned.

        Args:
            staging: Completed staging directory.
            cache_key: Dependency layer key.
            inputs: Key inputs to record.

        Returns:
            The promoted (or pre-existing) layer.
        """
        existing = self.lookup(cache_key)
        if existing is not None:
            logger.info(
                "Layer %s already promoted; discarding duplicate",
                key_digest(cache_key)[:12],
            )
            self.discard(staging)
            return existing

        info = {
            "cache_key": cache_key,
            "digest": compute_tree_hash(staging, excludes=(LAYER_INFO_FILE,)),
            "size_bytes": compute_tree_size(staging),
            "created_at": datetime.now(timezone.utc).isoformat(),
            "inputs": inputs or {},
        }
        with (staging / LAYER_INFO_FILE).open("w", encoding="utf-8") as f:
            json.dump(info, f, indent=2, sort_keys=True)

        final = self.layer_path(cache_key)
        self.layers_dir.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(staging, final)
        except OSError:
            # Another process promoted the same key first
            self.discard(staging)
            winner = self.lookup(cache_key)
            if winner is None:
                raise
            return winner

        logger.info(
            "Promoted dependency layer %s (%s)",
            key_digest(cache_key)[:12],
            info["digest"][:19],
        )
        return self._read_info(final / LAYER_INFO_FILE)

    def list_layers(self) -> list[LayerInfo]:
        """List promoted layers, oldest first."""
        if not self.layers_dir.is_dir():
            return []
        layers = [
            self._read_info(p / LAYER_INFO_FILE)
            for p in self.layers_dir.iterdir()
            if (p / LAYER_INFO_FILE).is_file()
        ]
        return sorted(layers, key=lambda layer: layer.created_at)

    def remove(self, cache_key: str) -> bool:
        """Delete a layer entirely. Returns whether it existed."""
        path = self.layer_path(cache_key)
        if not path.exists():
            return False
        # Unpublish first so concurrent lookups never see a partial layer
        (path / LAYER_INFO_FILE).unlink(missing_ok=True)
        shutil.rmtree(path, ignore_errors=True)
        return True


def build_dependency_layer(
    store: LayerStore,
    engine: ContainerEngine,
    manifest: DependencyManifest,
    workspace: Path,
    toolchain: Toolchain,
    toolchain_image: str,
    cache_key: str,
    log_path: Path,
    inputs: dict[str, Any] | None = None,
) -> LayerInfo:
    """Build and promote a dependency layer.

    Args:
        store: Layer store.
        engine: Container engine.
        manifest: Staged dependency manifest.
        workspace: Directory holding the staged manifests.
        toolchain: Variant toolchain.
        toolchain_image: Toolchain image tag to build in.
        cache_key: Dependency layer key.
        log_path: Step log file.
        inputs: Key inputs to record in the layer.

    Returns:
        The promoted layer.

    Raises:
        DependencyResolutionFailure: If the dependency build fails. No
            layer is promoted in that case.
    """
    write_stub_targets(workspace, manifest)
    staging = store.new_staging_dir()

    try:
        result = engine.run_cargo(
            toolchain_image,
            workspace,
            staging / LAYER_TARGET_DIR,
            staging / LAYER_CARGO_HOME,
            log_path,
            rustflags=toolchain.rustflags,
            locked=manifest.has_lockfile,
        )
    except StepExecutionError as e:
        store.discard(staging)
        raise DependencyResolutionFailure(
            str(e),
            code=e.code,
            exit_code=e.exit_code,
            log_path=str(log_path),
        ) from e

    if not result.success:
        store.discard(staging)
        raise DependencyResolutionFailure(
            f"Dependency build failed: {result.error_message}",
            exit_code=result.exit_code,
            log_path=str(log_path),
        )

    try:
        purge_crate_outputs(staging / LAYER_TARGET_DIR, manifest.crate_names())
        return store.promote(staging, cache_key, inputs)
    except OSError as e:
        store.discard(staging)
        raise DependencyResolutionFailure(
            f"Failed to promote dependency layer: {e}",
            code="layer_promote_error",
        ) from e


def ensure_dependency_layer(
    store: LayerStore,
    engine: ContainerEngine,
    manifest: DependencyManifest,
    workspace: Path,
    toolchain: Toolchain,
    toolchain_image: str,
    cache_key: str,
    log_path: Path,
    inputs: dict[str, Any] | None = None,
    lock_timeout: float | None = None,
) -> tuple[LayerInfo, bool]:
    """Return the layer for a key, building it on a miss.

    Returns:
        Tuple of (LayerInfo, is_cache_hit).

    Raises:
        DependencyResolutionFailure: If the layer has to be built and the
            build fails, or the lock cannot be acquired.
    """
    cached = store.lookup(cache_key)
    if cached is not None:
        logger.info("Dependency layer cache hit: %s", key_digest(cache_key)[:12])
        return cached, True

    try:
        with layer_lock(store.lock_dir, cache_key, timeout=lock_timeout):
            # Another build may have promoted the key while we waited
            cached = store.lookup(cache_key)
            if cached is not None:
                logger.info(
                    "Dependency layer promoted concurrently: %s",
                    key_digest(cache_key)[:12],
                )
                return cached, True

            logger.info("Dependency layer cache miss: %s", key_digest(cache_key)[:12])
            layer = build_dependency_layer(
                store,
                engine,
                manifest,
                workspace,
                toolchain,
                toolchain_image,
                cache_key,
                log_path,
                inputs=inputs,
            )
            return layer, False
    except TimeoutError as e:
        raise DependencyResolutionFailure(str(e), code="layer_lock_timeout") from e


__all__ = [
    "LAYER_CARGO_HOME",
    "LAYER_INFO_FILE",
    "LAYER_TARGET_DIR",
    "LayerInfo",
    "LayerStore",
    "build_dependency_layer",
    "ensure_dependency_layer",
    "layer_lock",
    "purge_crate_outputs",
]
