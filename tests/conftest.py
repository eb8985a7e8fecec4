"""Shared fixtures.

``FakeCargo`` stands in for ``cargo build --release``: it reads the
workspace's Cargo.toml, "compiles" each dependency whose output is not
already present under ``target/release/deps``, rejects sources that use
crates the manifest does not declare, and writes a deterministic
executable derived from the source bytes. Like cargo, it writes a
Cargo.lock when the workspace has none.
"""

import hashlib
import os
import re
from datetime import datetime, timezone
from pathlib import Path

import pytest

from stagebuild.config import Settings
from stagebuild.manifest.io import load_manifest
from stagebuild.toolchain.runner import ToolchainResult
from stagebuild.types import PassKind

USE_PATTERN = re.compile(r"^\s*use\s+([A-Za-z0-9_]+)", re.MULTILINE)
BUILTIN_CRATES = {"std", "core", "alloc", "crate", "self", "super"}
CRATE_HASH = "0123456789abcdef"

DEFAULT_CARGO_TOML = """\
[package]
name = "app"
version = "0.1.0"

[dependencies]
libfoo = "1.0"
"""

DEFAULT_MAIN_RS = """\
use libfoo;

fn main() {
    libfoo::run();
}
"""


def render_lockfile(manifest) -> str:
    """Render a Cargo.lock pinning every declared dependency."""
    pins = [(manifest.name, "0.1.0")]
    pins += [(d.name, d.version) for d in manifest.dependencies]
    blocks = [f'[[package]]\nname = "{n}"\nversion = "{v}"\n' for n, v in pins]
    return "version = 3\n\n" + "\n".join(blocks)


class FakeCargo:
    """In-process toolchain emulating cargo's log lines and output layout."""

    def __init__(
        self,
        produce_binary: bool = True,
        extra_binaries: tuple[str, ...] = (),
        fail_with: int | None = None,
        error_lines: tuple[str, ...] = (),
    ) -> None:
        self.produce_binary = produce_binary
        self.extra_binaries = extra_binaries
        self.fail_with = fail_with
        self.error_lines = error_lines
        self.calls: list[PassKind] = []
        self.lockfile_present: list[bool] = []

    def compile(
        self,
        workspace: Path,
        log_path: Path,
        pass_kind: PassKind,
        timeout: int | None = None,
    ) -> ToolchainResult:
        self.calls.append(pass_kind)
        started_at = datetime.now(timezone.utc)
        manifest = load_manifest(workspace / "Cargo.toml")
        lockfile = workspace / "Cargo.lock"
        self.lockfile_present.append(lockfile.is_file())
        if not lockfile.is_file():
            lockfile.write_text(render_lockfile(manifest), encoding="utf-8")
        release = workspace / "target" / "release"
        deps_dir = release / "deps"
        deps_dir.mkdir(parents=True, exist_ok=True)

        lines: list[str] = []
        for dep in manifest.dependencies:
            rlib = deps_dir / f"lib{dep.name}-{dep.version}.rlib"
            if not rlib.exists():
                lines.append(f"   Compiling {dep.name} v{dep.version}")
                rlib.write_text(f"{dep.name} {dep.version}\n")

        sources = sorted((workspace / "src").rglob("*.rs"))
        used: set[str] = set()
        digest = hashlib.sha256()
        for path in sources:
            text = path.read_text(encoding="utf-8")
            used.update(USE_PATTERN.findall(text))
            digest.update(path.relative_to(workspace).as_posix().encode())
            digest.update(text.encode())
        missing = sorted(used - manifest.dependency_names() - BUILTIN_CRATES)

        exit_code = 0
        if missing:
            lines += [f"error[E0463]: can't find crate for `{n}`" for n in missing]
            exit_code = 101
        elif self.fail_with is not None:
            lines += self.error_lines
            lines.append("error: could not compile `app` due to previous error")
            exit_code = self.fail_with
        else:
            lines.append(f"   Compiling {manifest.name} v{manifest.version or '0.1.0'}")
            crate = manifest.name.replace("-", "_")
            (deps_dir / f"{crate}-{CRATE_HASH}").write_bytes(digest.digest())
            fingerprint_dir = release / ".fingerprint" / f"{manifest.name}-{CRATE_HASH}"
            fingerprint_dir.mkdir(parents=True, exist_ok=True)
            (fingerprint_dir / "bin-app").write_text(digest.hexdigest())
            if self.produce_binary:
                for binary in manifest.binaries:
                    self._write_executable(release / binary, digest.digest())
            for extra in self.extra_binaries:
                self._write_executable(release / extra, digest.digest())
            lines.append("    Finished release [optimized] target(s)")

        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return ToolchainResult(
            success=exit_code == 0,
            exit_code=exit_code,
            log_path=log_path,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            command="cargo build --release",
            error_message=None if exit_code == 0 else f"exit code {exit_code}",
        )

    @staticmethod
    def _write_executable(path: Path, payload: bytes) -> None:
        path.write_bytes(b"\x7fELF-fake\n" + payload)
        os.chmod(path, 0o755)


def write_project(
    root: Path,
    cargo_toml: str = DEFAULT_CARGO_TOML,
    main_rs: str = DEFAULT_MAIN_RS,
) -> Path:
    """Write a minimal Cargo project and return its root."""
    root.mkdir(parents=True, exist_ok=True)
    (root / "Cargo.toml").write_text(cargo_toml, encoding="utf-8")
    src = root / "src"
    src.mkdir(exist_ok=True)
    (src / "main.rs").write_text(main_rs, encoding="utf-8")
    return root


@pytest.fixture
def fake_cargo() -> FakeCargo:
    """Create a fake cargo toolchain."""
    return FakeCargo()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create a project declaring libfoo@1.0 whose source uses libfoo."""
    return write_project(tmp_path / "project")


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Create settings rooted in a temporary directory."""
    return Settings(
        cache_dir=tmp_path / "cache",
        output_dir=tmp_path / "images",
        work_dir=tmp_path / "work",
        db_url=f"sqlite:///{tmp_path}/db.sqlite",
        build_timeout=60,
        lock_timeout=5,
    )


@pytest.fixture
def cargo_factory():
    """Return the FakeCargo class for tests that need non-default knobs."""
    return FakeCargo


@pytest.fixture
def project_factory(tmp_path: Path):
    """Return a function writing a named project under tmp_path."""

    def make(
        name: str = "project",
        cargo_toml: str = DEFAULT_CARGO_TOML,
        main_rs: str = DEFAULT_MAIN_RS,
    ) -> Path:
        return write_project(tmp_path / name, cargo_toml=cargo_toml, main_rs=main_rs)

    return make
