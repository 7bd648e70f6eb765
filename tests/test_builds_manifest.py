"""Tests for builds/manifest.py module."""

from pathlib import Path

import pytest

from imagepipe.builds.manifest import (
    STUB_MAIN,
    DependencyManifest,
    compute_manifest_hash,
    discover_stub_targets,
    read_cargo_manifest,
    resolve_binary_name,
    stage_manifest,
    write_stub_targets,
)
from imagepipe.errors import ManifestFetchFailure
from imagepipe.types import PipelineStage


class TestReadCargoManifest:
    """Tests for read_cargo_manifest function."""

    def test_reads_package(self, cargo_project: Path):
        """Should parse Cargo.toml."""
        data = read_cargo_manifest(cargo_project / "Cargo.toml")
        assert data["package"]["name"] == "echo-svc"

    def test_missing_file(self, tmp_path: Path):
        """Missing manifest is a manifest fetch failure."""
        with pytest.raises(ManifestFetchFailure) as exc_info:
            read_cargo_manifest(tmp_path / "Cargo.toml")
        assert exc_info.value.code == "manifest_missing"
        assert exc_info.value.stage == PipelineStage.MANIFEST_STAGED

    def test_invalid_toml(self, tmp_path: Path):
        """Unparseable manifest is a manifest fetch failure."""
        path = tmp_path / "Cargo.toml"
        path.write_text("[package\nname = ")
        with pytest.raises(ManifestFetchFailure) as exc_info:
            read_cargo_manifest(path)
        assert exc_info.value.code == "manifest_invalid"


class TestStageManifest:
    """Tests for stage_manifest function."""

    def test_stages_only_manifests(self, cargo_project: Path, tmp_path: Path):
        """Should copy Cargo.toml and Cargo.lock and nothing else."""
        staging = tmp_path / "staging"
        manifest = stage_manifest(cargo_project, staging)

        assert sorted(manifest.files) == ["Cargo.lock", "Cargo.toml"]
        assert (staging / "Cargo.toml").read_text() == (
            cargo_project / "Cargo.toml"
        ).read_text()
        assert not (staging / "src").exists()
        assert not (staging / "proto").exists()
        assert manifest.has_lockfile is True
        assert manifest.package_name == "echo-svc"

    def test_includes_cargo_config(self, cargo_project: Path, tmp_path: Path):
        """Should stage .cargo/ configuration."""
        (cargo_project / ".cargo").mkdir()
        (cargo_project / ".cargo" / "config.toml").write_text("[net]\n")

        manifest = stage_manifest(cargo_project, tmp_path / "staging")

        assert ".cargo/config.toml" in manifest.files
        assert (tmp_path / "staging" / ".cargo" / "config.toml").is_file()

    def test_without_lockfile(self, cargo_project: Path, tmp_path: Path):
        """Should stage without Cargo.lock and record its absence."""
        (cargo_project / "Cargo.lock").unlink()
        manifest = stage_manifest(cargo_project, tmp_path / "staging")
        assert manifest.has_lockfile is False
        assert list(manifest.files) == ["Cargo.toml"]

    def test_source_changes_do_not_change_hash(
        self, cargo_project: Path, tmp_path: Path
    ):
        """Source edits must not affect the manifest hash."""
        first = stage_manifest(cargo_project, tmp_path / "a")
        (cargo_project / "src" / "main.rs").write_text("fn main() { todo!() }\n")
        second = stage_manifest(cargo_project, tmp_path / "b")
        assert first.content_hash == second.content_hash

    def test_manifest_changes_change_hash(self, cargo_project: Path, tmp_path: Path):
        """Dependency declaration edits change the manifest hash."""
        first = stage_manifest(cargo_project, tmp_path / "a")
        with (cargo_project / "Cargo.toml").open("a") as f:
            f.write('prost = "0.13"\n')
        second = stage_manifest(cargo_project, tmp_path / "b")
        assert first.content_hash != second.content_hash

    def test_virtual_workspace_rejected(self, tmp_path: Path):
        """A manifest without [package] is not supported."""
        root = tmp_path / "ws"
        root.mkdir()
        (root / "Cargo.toml").write_text('[workspace]\nmembers = ["a"]\n')
        with pytest.raises(ManifestFetchFailure) as exc_info:
            stage_manifest(root, tmp_path / "staging")
        assert exc_info.value.code == "manifest_no_package"

    def test_source_tree_untouched(self, cargo_project: Path, tmp_path: Path):
        """Staging must not write into the source tree."""
        before = sorted(p.relative_to(cargo_project) for p in cargo_project.rglob("*"))
        stage_manifest(cargo_project, tmp_path / "staging")
        after = sorted(p.relative_to(cargo_project) for p in cargo_project.rglob("*"))
        assert before == after


class TestStubTargets:
    """Tests for stub target discovery and writing."""

    def test_discovers_main(self, cargo_project: Path):
        """Should find src/main.rs."""
        cargo = read_cargo_manifest(cargo_project / "Cargo.toml")
        assert discover_stub_targets(cargo_project, cargo) == ["src/main.rs"]

    def test_discovers_declared_and_auto_bins(self, cargo_project: Path):
        """Should include [[bin]] paths, lib.rs and src/bin/*.rs."""
        (cargo_project / "src" / "lib.rs").write_text("pub fn x() {}\n")
        (cargo_project / "src" / "bin").mkdir()
        (cargo_project / "src" / "bin" / "admin.rs").write_text("fn main() {}\n")
        cargo = {
            "package": {"name": "echo-svc"},
            "bin": [{"name": "server", "path": "cmd/server.rs"}],
        }

        targets = discover_stub_targets(cargo_project, cargo)

        assert targets == [
            "cmd/server.rs",
            "src/bin/admin.rs",
            "src/lib.rs",
            "src/main.rs",
        ]

    def test_defaults_to_main(self, tmp_path: Path):
        """Without discoverable targets the stub is src/main.rs."""
        assert discover_stub_targets(tmp_path, {"package": {"name": "x"}}) == [
            "src/main.rs"
        ]

    def test_discovers_build_script(self, cargo_project: Path):
        """build.rs is stubbed so build-dependencies get compiled."""
        (cargo_project / "build.rs").write_text("fn main() { tonic_build(); }\n")
        cargo = read_cargo_manifest(cargo_project / "Cargo.toml")
        assert discover_stub_targets(cargo_project, cargo) == [
            "build.rs",
            "src/main.rs",
        ]

    @pytest.mark.parametrize(
        ("build", "expected"),
        [
            ("tools/gen.rs", ["src/main.rs", "tools/gen.rs"]),
            (True, ["build.rs", "src/main.rs"]),
            (False, ["src/main.rs"]),
        ],
    )
    def test_package_build_key(self, cargo_project: Path, build, expected):
        """[package].build overrides build.rs discovery."""
        (cargo_project / "build.rs").write_text("fn main() {}\n")
        cargo = {"package": {"name": "echo-svc", "build": build}}
        assert discover_stub_targets(cargo_project, cargo) == expected

    def test_build_script_stub_written(self, cargo_project: Path, tmp_path: Path):
        """The staged workspace gets an empty build script."""
        (cargo_project / "build.rs").write_text("fn main() { tonic_build(); }\n")
        workspace = tmp_path / "staging"
        manifest = stage_manifest(cargo_project, workspace)

        write_stub_targets(workspace, manifest)

        assert (workspace / "build.rs").read_text() == STUB_MAIN

    def test_write_stub_targets(self, tmp_path: Path):
        """Binary stubs get an empty main, library stubs stay empty."""
        manifest = DependencyManifest(
            files={},
            content_hash="sha256:x",
            package_name="svc",
            stub_targets=["src/lib.rs", "src/main.rs"],
        )
        written = write_stub_targets(tmp_path, manifest)

        assert len(written) == 2
        assert (tmp_path / "src" / "main.rs").read_text() == STUB_MAIN
        assert (tmp_path / "src" / "lib.rs").read_text() == ""


class TestResolveBinaryName:
    """Tests for resolve_binary_name function."""

    def _manifest(self, bins: list[str]) -> DependencyManifest:
        return DependencyManifest(
            files={}, content_hash="", package_name="echo-svc", bin_names=bins
        )

    def test_override_wins(self):
        """Explicit name is used as-is."""
        assert resolve_binary_name(self._manifest(["a"]), "custom") == "custom"

    def test_single_bin(self):
        """A single [[bin]] target names the binary."""
        assert resolve_binary_name(self._manifest(["server"])) == "server"

    def test_package_name_fallback(self):
        """Otherwise the package name is used."""
        assert resolve_binary_name(self._manifest([])) == "echo-svc"
        assert resolve_binary_name(self._manifest(["a", "b"])) == "echo-svc"


def test_compute_manifest_hash_is_order_independent():
    """Hash depends on content, not insertion order."""
    a = compute_manifest_hash({"Cargo.toml": "1", "Cargo.lock": "2"})
    b = compute_manifest_hash({"Cargo.lock": "2", "Cargo.toml": "1"})
    assert a == b
    assert a.startswith("sha256:")
