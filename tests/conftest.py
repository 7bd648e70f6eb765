"""Shared fixtures for imagepipe tests.

FakeEngine stands in for docker/podman: cargo runs write the files a real
release build would leave in the mounted host directories, and image
builds record their context and Containerfile.
"""

import hashlib
import tomllib
from datetime import datetime, timezone
from pathlib import Path

import pytest

from imagepipe.builds.cache import LayerStore
from imagepipe.builds.containerfile import TOOLCHAIN_REPOSITORY
from imagepipe.builds.manifest import STUB_MAIN
from imagepipe.builds.pipeline import BuildPipeline
from imagepipe.builds.runner import StepResult

DEP_HASH = "0123456789abcdef"
STUB_HASH = "fedcba9876543210"

CARGO_TOML = """\
[package]
name = "echo-svc"
version = "0.1.0"
edition = "2021"

[dependencies]
serde = "1"
tonic = "0.12"
"""

CARGO_LOCK = """\
version = 3

[[package]]
name = "serde"
version = "1.0.200"
"""

MAIN_RS = 'fn main() { println!("echo"); }\n'


def _step(success: bool, log_path: Path, command: str) -> StepResult:
    now = datetime.now(timezone.utc)
    return StepResult(
        success=success,
        exit_code=0 if success else 101,
        log_path=log_path,
        started_at=now,
        finished_at=now,
        command=command,
        error_message=None if success else "Step failed with exit code 101",
    )


def _read_optional(path: Path) -> str | None:
    return path.read_text() if path.is_file() else None


class FakeEngine:
    """In-process container engine double."""

    def __init__(self) -> None:
        self.images: dict[str, str] = {}
        self.cargo_runs: list[dict] = []
        self.image_builds: list[dict] = []
        # kind ("dependencies", "source") -> substring of the toolchain tag
        self.fail_cargo: dict[str, str] = {}
        self.fail_image_tags: set[str] = set()
        # threading.Barrier runtime image builds wait on
        self.runtime_barrier = None

    def image_exists(self, tag: str) -> bool:
        return tag in self.images

    def image_id(self, tag: str) -> str:
        return self.images[tag]

    def build_image(self, context_dir, containerfile, tag, log_path, labels=None):
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(f"building {tag}\n")
        self.image_builds.append(
            {
                "tag": tag,
                "context": sorted(p.name for p in context_dir.iterdir()),
                "containerfile": containerfile.read_text(),
                "labels": dict(labels or {}),
            }
        )
        if self.runtime_barrier is not None and not tag.startswith(
            TOOLCHAIN_REPOSITORY
        ):
            self.runtime_barrier.wait(timeout=10)
        if tag in self.fail_image_tags:
            log_path.write_text("error: package not found\n")
            return _step(False, log_path, f"build {tag}")
        self.images[tag] = "sha256:" + hashlib.sha256(tag.encode()).hexdigest()
        return _step(True, log_path, f"build {tag}")

    def run_cargo(
        self,
        image,
        workspace,
        target_dir,
        cargo_home,
        log_path,
        rustflags=(),
        locked=False,
        env=None,
    ):
        main_rs = workspace / "src" / "main.rs"
        kind = "dependencies" if main_rs.read_text() == STUB_MAIN else "source"
        with (workspace / "Cargo.toml").open("rb") as f:
            name = tomllib.load(f)["package"]["name"]
        crate = name.replace("-", "_")
        release = target_dir / "release"
        deps = release / "deps"

        self.cargo_runs.append(
            {
                "kind": kind,
                "image": image,
                "workspace": workspace,
                "rustflags": tuple(rustflags),
                "locked": locked,
                "env": dict(env or {}),
                "stub_outputs_present": (deps / f"{crate}-{STUB_HASH}").exists(),
                "build_script": _read_optional(workspace / "build.rs"),
            }
        )
        log_path.parent.mkdir(parents=True, exist_ok=True)

        failing = self.fail_cargo.get(kind)
        if failing is not None and failing in image:
            log_path.write_text("error[E0425]: cannot find value `x`\n")
            return _step(False, log_path, "cargo build --release")

        deps.mkdir(parents=True, exist_ok=True)
        if kind == "dependencies":
            (deps / f"libserde-{DEP_HASH}.rlib").write_bytes(b"serde rlib")
            (deps / f"serde-{DEP_HASH}.d").write_text("deps\n")
            fingerprint = release / ".fingerprint" / f"serde-{DEP_HASH}"
            fingerprint.mkdir(parents=True, exist_ok=True)
            (fingerprint / "lib-serde").write_text("fp\n")
            registry = cargo_home / "registry" / "cache"
            registry.mkdir(parents=True, exist_ok=True)
            (registry / "serde-1.0.200.crate").write_bytes(b"crate")
            # stub crate outputs the layer must not keep
            (deps / f"{crate}-{STUB_HASH}").write_bytes(b"stub binary")
            stub_fp = release / ".fingerprint" / f"{name}-{STUB_HASH}"
            stub_fp.mkdir(parents=True, exist_ok=True)
            (stub_fp / f"bin-{name}").write_text("stub fp\n")
            (release / name).write_bytes(b"stub binary")
            (release / f"{name}.d").write_text("stub\n")
            if (workspace / "build.rs").exists():
                out = release / "build" / f"{name}-{STUB_HASH}"
                out.mkdir(parents=True, exist_ok=True)
                (out / "build-script-build").write_bytes(b"stub build script")
        else:
            payload = main_rs.read_text() + "".join(
                f"{k}={v}\n" for k, v in sorted((env or {}).items())
            )
            (deps / f"{crate}-{STUB_HASH}").write_bytes(payload.encode())
            binary = release / name
            binary.write_bytes(payload.encode())
            binary.chmod(0o755)

        log_path.write_text("Finished `release` profile\n")
        return _step(True, log_path, "cargo build --release")

    def runs_of(self, kind: str) -> list[dict]:
        return [r for r in self.cargo_runs if r["kind"] == kind]


@pytest.fixture
def fake_engine() -> FakeEngine:
    """Create a fake container engine."""
    return FakeEngine()


@pytest.fixture
def layer_store(tmp_path: Path) -> LayerStore:
    """Create an empty layer store."""
    return LayerStore(tmp_path / "cache")


@pytest.fixture
def pipeline(fake_engine: FakeEngine, layer_store: LayerStore) -> BuildPipeline:
    """Create a pipeline running on the fake engine."""
    return BuildPipeline(engine=fake_engine, store=layer_store)


@pytest.fixture
def cargo_project(tmp_path: Path) -> Path:
    """Create a minimal single-binary cargo project."""
    root = tmp_path / "echo-svc"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text(CARGO_TOML)
    (root / "Cargo.lock").write_text(CARGO_LOCK)
    (root / "src" / "main.rs").write_text(MAIN_RS)
    (root / "proto").mkdir()
    (root / "proto" / "echo.proto").write_text('syntax = "proto3";\n')
    return root
