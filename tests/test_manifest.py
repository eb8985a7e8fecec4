"""Tests for manifest loading and fingerprinting."""

import json
from pathlib import Path

import pytest

from stagebuild.errors import ManifestUnreadable
from stagebuild.manifest.fingerprint import (
    FINGERPRINT_PREFIX,
    compute_fingerprint,
    create_fingerprint_inputs,
    fingerprint_manifest,
    short_fingerprint,
)
from stagebuild.manifest.io import load_manifest, normalize_cargo_manifest
from stagebuild.types import Dependency

CARGO_TOML = """\
[package]
name = "hogan"
version = "0.9.1"
default-run = "hogan"

[dependencies]
libfoo = "1.0"
serde = { version = "1.0.100", features = ["derive"] }
local-util = { path = "../util" }

[build-dependencies]
cc = "1.0"

[[bin]]
name = "hogan"

[[bin]]
name = "hogan-admin"
path = "src/admin.rs"
"""


class TestLoadCargoManifest:
    """Tests for Cargo-style manifests."""

    def test_dependencies_in_order(self, tmp_path: Path):
        """Should keep declaration order across dependency tables."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        manifest = load_manifest(path)

        assert manifest.name == "hogan"
        assert manifest.declared_dependencies() == [
            Dependency("libfoo", "1.0"),
            Dependency("serde", "1.0.100"),
            Dependency("local-util", "*"),
            Dependency("cc", "1.0"),
        ]

    def test_binaries_and_targets(self, tmp_path: Path):
        """Should collect binaries, target paths and the primary binary."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        manifest = load_manifest(path)

        assert manifest.binaries == ["hogan", "hogan-admin"]
        assert manifest.targets == ["src/main.rs", "src/admin.rs"]
        assert manifest.primary_binary() == "hogan"

    def test_implicit_binary(self):
        """A package without [[bin]] tables builds one binary from src/main.rs."""
        fields = normalize_cargo_manifest({"package": {"name": "app"}})
        assert fields["binaries"] == ["app"]
        assert fields["targets"] == ["src/main.rs"]

    def test_library_target(self):
        """A [lib] table adds the library source path."""
        fields = normalize_cargo_manifest({"package": {"name": "app"}, "lib": {}})
        assert "src/lib.rs" in fields["targets"]

    def test_renamed_dependency(self):
        """'package' in a dependency table renames the dependency."""
        fields = normalize_cargo_manifest(
            {
                "package": {"name": "app"},
                "dependencies": {"foo": {"package": "real-foo", "version": "2"}},
            }
        )
        assert fields["dependencies"] == [{"name": "real-foo", "version": "2"}]


class TestLoadNativeManifest:
    """Tests for the native YAML/JSON layout."""

    def test_yaml_mapping_dependencies(self, tmp_path: Path):
        """Dependencies may be an ordered name: version mapping."""
        path = tmp_path / "deps.yaml"
        path.write_text(
            "package:\n  name: svc\n  binaries: [svc]\n"
            "dependencies:\n  libfoo: 1.0\n  libbar: '>=2'\n"
        )
        manifest = load_manifest(path)

        assert [str(d) for d in manifest.declared_dependencies()] == [
            "libfoo@1.0",
            "libbar@>=2",
        ]
        assert manifest.primary_binary() == "svc"

    def test_json_list_dependencies(self, tmp_path: Path):
        """Dependencies may be a list of objects."""
        path = tmp_path / "deps.json"
        path.write_text(
            json.dumps(
                {
                    "package": {"name": "svc"},
                    "dependencies": [{"name": "libfoo", "version": "1.0"}],
                }
            )
        )
        manifest = load_manifest(path)
        assert manifest.dependency_names() == {"libfoo"}
        assert manifest.primary_binary() is None

    @pytest.mark.parametrize("suffix", [".json", ".yaml"])
    def test_null_version_means_any(self, tmp_path: Path, suffix: str):
        """A null version reads as "*" in both dependency layouts."""
        path = tmp_path / f"deps{suffix}"
        path.write_text(
            json.dumps(
                {
                    "package": {"name": "svc"},
                    "dependencies": [
                        {"name": "libfoo", "version": None},
                        {"name": "libbar"},
                    ],
                }
            )
        )
        manifest = load_manifest(path)
        assert [str(d) for d in manifest.declared_dependencies()] == [
            "libfoo@*",
            "libbar@*",
        ]

    def test_null_version_mapping(self, tmp_path: Path):
        """The mapping layout treats a bare key the same way."""
        path = tmp_path / "deps.yaml"
        path.write_text("package:\n  name: svc\ndependencies:\n  libfoo:\n")
        manifest = load_manifest(path)
        assert [str(d) for d in manifest.declared_dependencies()] == ["libfoo@*"]


class TestManifestUnreadable:
    """Every load failure surfaces as ManifestUnreadable."""

    def test_missing_file(self, tmp_path: Path):
        """A missing manifest should fail."""
        with pytest.raises(ManifestUnreadable) as exc_info:
            load_manifest(tmp_path / "Cargo.toml")
        assert exc_info.value.path == str(tmp_path / "Cargo.toml")

    def test_malformed_toml(self, tmp_path: Path):
        """Unparseable TOML should fail."""
        path = tmp_path / "Cargo.toml"
        path.write_text("[package\nname = ")
        with pytest.raises(ManifestUnreadable):
            load_manifest(path)

    def test_missing_package_table(self, tmp_path: Path):
        """A Cargo.toml without [package] should fail."""
        path = tmp_path / "Cargo.toml"
        path.write_text('[dependencies]\nlibfoo = "1.0"\n')
        with pytest.raises(ManifestUnreadable):
            load_manifest(path)

    def test_unsupported_format(self, tmp_path: Path):
        """Unknown suffixes should fail."""
        path = tmp_path / "deps.ini"
        path.write_text("[deps]\n")
        with pytest.raises(ManifestUnreadable):
            load_manifest(path)

    def test_primary_not_a_binary(self, tmp_path: Path):
        """default-run must name a declared binary."""
        path = tmp_path / "Cargo.toml"
        path.write_text(
            '[package]\nname = "app"\ndefault-run = "other"\n\n[[bin]]\nname = "app"\n'
        )
        with pytest.raises(ManifestUnreadable):
            load_manifest(path)

    def test_escaping_target(self, tmp_path: Path):
        """Target paths outside the project are rejected."""
        path = tmp_path / "deps.yaml"
        path.write_text("package:\n  name: svc\ntargets: ['../evil.rs']\n")
        with pytest.raises(ManifestUnreadable):
            load_manifest(path)


class TestFingerprint:
    """Tests for fingerprint determinism and sensitivity."""

    def test_identical_content_identical_fingerprint(self, tmp_path: Path):
        """Byte-identical manifests should fingerprint identically."""
        a = tmp_path / "a" / "Cargo.toml"
        b = tmp_path / "b" / "Cargo.toml"
        for path in (a, b):
            path.parent.mkdir()
            path.write_text(CARGO_TOML)

        fp_a, _ = fingerprint_manifest(a)
        fp_b, _ = fingerprint_manifest(b)
        assert fp_a == fp_b
        assert fp_a.startswith(FINGERPRINT_PREFIX)

    def test_filename_not_part_of_identity(self, tmp_path: Path):
        """The same bytes under another name give the same fingerprint."""
        a = tmp_path / "one.toml"
        b = tmp_path / "two.toml"
        a.write_text(CARGO_TOML)
        b.write_text(CARGO_TOML)
        assert compute_fingerprint(create_fingerprint_inputs(a)) == compute_fingerprint(
            create_fingerprint_inputs(b)
        )

    def test_version_change_changes_fingerprint(self, tmp_path: Path):
        """Changing a dependency version should change the fingerprint."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        before, _ = fingerprint_manifest(path)
        path.write_text(CARGO_TOML.replace('libfoo = "1.0"', 'libfoo = "2.0"'))
        after, _ = fingerprint_manifest(path)
        assert before != after

    def test_whitespace_change_changes_fingerprint(self, tmp_path: Path):
        """Any byte difference changes the fingerprint."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        before, _ = fingerprint_manifest(path)
        path.write_text(CARGO_TOML + "\n")
        after, _ = fingerprint_manifest(path)
        assert before != after

    def test_lockfile_is_part_of_identity(self, tmp_path: Path):
        """A changed lock file changes the fingerprint."""
        manifest = tmp_path / "Cargo.toml"
        lock = tmp_path / "Cargo.lock"
        manifest.write_text(CARGO_TOML)
        lock.write_text("version = 3\n")
        before, _ = fingerprint_manifest(manifest, lock)
        lock.write_text("version = 4\n")
        after, _ = fingerprint_manifest(manifest, lock)
        assert before != after

    def test_build_options_are_part_of_identity(self, tmp_path: Path):
        """Build options change the fingerprint; key order does not."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        plain, _ = fingerprint_manifest(path)
        one, _ = fingerprint_manifest(path, build_options={"a": 1, "b": 2})
        two, _ = fingerprint_manifest(path, build_options={"b": 2, "a": 1})
        assert plain != one
        assert one == two

    def test_source_not_part_of_identity(self, tmp_path: Path):
        """Source files next to the manifest do not affect the fingerprint."""
        path = tmp_path / "Cargo.toml"
        path.write_text(CARGO_TOML)
        before, _ = fingerprint_manifest(path)
        (tmp_path / "src").mkdir()
        (tmp_path / "src" / "main.rs").write_text("fn main() {}\n")
        after, _ = fingerprint_manifest(path)
        assert before == after

    def test_unreadable_manifest(self, tmp_path: Path):
        """Fingerprinting a missing manifest fails with ManifestUnreadable."""
        with pytest.raises(ManifestUnreadable):
            fingerprint_manifest(tmp_path / "missing.toml")

    def test_short_fingerprint(self):
        """short_fingerprint should strip the prefix."""
        assert short_fingerprint("sha256:abcdef0123456789", 6) == "abcdef"
