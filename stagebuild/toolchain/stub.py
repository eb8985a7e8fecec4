"""Stub source generation.

The dependency pass compiles a placeholder program instead of the real
sources so that the compiled dependency output depends only on the
manifest. Every stub file starts with ``STUB_MARKER``; stubs and the
placeholder's own compiled output are removed before anything is cached
or the artifact pass begins.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from stagebuild.manifest.schema import ManifestSchema
from stagebuild.toolchain.languages import LanguageProfile

logger = logging.getLogger(__name__)

STUB_MARKER = "stagebuild:placeholder-source; never shipped"


class StubRemnantError(Exception):
    """Raised when placeholder sources survive into a later stage."""

    def __init__(self, paths: list[str], code: str = "stub_remnant") -> None:
        super().__init__(f"Placeholder sources found: {', '.join(paths)}")
        self.paths = paths
        self.code = code


@dataclass
class StubProgram:
    """Placeholder sources written into a workspace.

    Attributes:
        workspace: Workspace root the stub was written into.
        files: Stub file paths relative to the workspace.
    """

    workspace: Path
    files: list[str] = field(default_factory=list)


def render_stub(language: LanguageProfile, target: str) -> str:
    """Render the stub source for one target path."""
    body = (
        language.library_stub
        if language.is_library_target(target)
        else language.entry_stub
    )
    return f"{language.comment_prefix} {STUB_MARKER}\n{body}"


def generate_stub(
    workspace: Path,
    manifest: ManifestSchema,
    language: LanguageProfile,
) -> StubProgram:
    """Write a placeholder program for every target the manifest declares.

    Args:
        workspace: Build workspace root.
        manifest: Parsed manifest.
        language: Language profile supplying the minimal program shape.

    Returns:
        StubProgram describing the written files.
    """
    targets = manifest.targets or list(language.default_targets)
    stub = StubProgram(workspace=workspace)

    for target in targets:
        path = workspace / target
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_stub(language, target), encoding="utf-8")
        stub.files.append(target)

    logger.debug("Generated %d stub file(s) in %s", len(stub.files), workspace)
    return stub


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _is_package_byproduct(
    entry_name: str, names: set[str], dep_names: set[str]
) -> bool:
    """Match '<name>', '<name>-<hash>' and 'lib<name>-<hash>' entries.

    Entries of a dependency whose name extends the package name
    (e.g. 'app-utils' for package 'app') are not byproducts.
    """
    for dep in dep_names:
        if entry_name.startswith((f"{dep}-", f"lib{dep}-")) and dep not in names:
            return False
    return any(
        entry_name == n or entry_name.startswith((f"{n}-", f"lib{n}-"))
        for n in names
    )


def remove_stub(
    stub: StubProgram,
    manifest: ManifestSchema,
    language: LanguageProfile,
) -> list[str]:
    """Remove stub sources and the placeholder's compiled byproducts.

    Dependency output is left in place. Only files belonging to the package
    itself (its executables and per-crate entries) are deleted, so they
    cannot shadow the real artifact later.

    Args:
        stub: The stub returned by ``generate_stub``.
        manifest: Parsed manifest.
        language: Language profile.

    Returns:
        Removed paths relative to the workspace.
    """
    workspace = stub.workspace
    removed: list[str] = []

    for rel in stub.files:
        path = workspace / rel
        if path.exists():
            path.unlink()
            removed.append(rel)

    artifact_dir = workspace / language.artifact_dir
    if artifact_dir.is_dir():
        names = language.crate_names(manifest.name) | set(manifest.binaries)
        dep_names: set[str] = set()
        for dep in manifest.dependency_names():
            dep_names |= language.crate_names(dep)
        for entry in artifact_dir.iterdir():
            if entry.is_file() and entry.stem in names:
                _remove_path(entry)
                removed.append(entry.relative_to(workspace).as_posix())

        for sub in language.byproduct_dirs:
            sub_dir = artifact_dir / sub
            if not sub_dir.is_dir():
                continue
            for entry in sub_dir.iterdir():
                if _is_package_byproduct(entry.name, names, dep_names):
                    _remove_path(entry)
                    removed.append(entry.relative_to(workspace).as_posix())

    logger.info("Removed %d stub file(s) and byproduct(s)", len(removed))
    return removed


def file_has_stub_marker(path: Path) -> bool:
    """Return True if the first bytes of ``path`` carry the stub marker."""
    try:
        with path.open("rb") as f:
            head = f.read(256)
    except OSError:
        return False
    return STUB_MARKER.encode("utf-8") in head


def find_stub_remnants(root: Path) -> list[str]:
    """Return files under ``root`` that carry the stub marker."""
    remnants: list[str] = []
    if not root.exists():
        return remnants
    for path in sorted(root.rglob("*")):
        if not path.is_file():
            continue
        if file_has_stub_marker(path):
            remnants.append(path.relative_to(root).as_posix())
    return remnants


def assert_no_stub_remnants(root: Path) -> None:
    """Raise StubRemnantError if any placeholder source exists under ``root``."""
    remnants = find_stub_remnants(root)
    if remnants:
        raise StubRemnantError(remnants)


__all__ = [
    "STUB_MARKER",
    "StubProgram",
    "StubRemnantError",
    "assert_no_stub_remnants",
    "file_has_stub_marker",
    "find_stub_remnants",
    "generate_stub",
    "remove_stub",
    "render_stub",
]
