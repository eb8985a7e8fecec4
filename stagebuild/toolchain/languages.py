"""Language profiles.

A language profile describes everything the pipeline needs to know about a
toolchain: the minimal valid program used as a stub, the build command,
where the executable lands, which directories hold reusable dependency
output, and how to read the toolchain's log.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import PurePosixPath


@dataclass(frozen=True)
class LanguageProfile:
    """Toolchain description for one target language.

    Attributes:
        name: Profile name (e.g., 'rust').
        build_command: Command that compiles the workspace.
        default_targets: Entry-point paths when the manifest declares none.
        entry_stub: Source of the minimal program for executable targets.
        library_stub: Source of the minimal program for library targets.
        library_filenames: Filenames that denote library targets.
        comment_prefix: Line comment token, used for the stub marker.
        artifact_dir: Directory (relative to workspace) holding executables.
        lockfile_name: Lock file the toolchain reads next to the manifest.
        cached_dirs: Workspace directories stored in the dependency cache.
        cached_files: Workspace files stored in the dependency cache.
        byproduct_dirs: Subdirectories of artifact_dir holding per-crate output.
        compiled_unit_pattern: Regex with (name, version) groups for log lines.
        unresolved_patterns: Regexes whose first group names a missing dependency.
        path_roots: Names those groups may capture that are module paths,
            not dependencies.
    """

    name: str
    build_command: tuple[str, ...]
    default_targets: tuple[str, ...]
    entry_stub: str
    library_stub: str = ""
    library_filenames: tuple[str, ...] = ()
    comment_prefix: str = "#"
    artifact_dir: str = "bin"
    lockfile_name: str | None = None
    cached_dirs: tuple[str, ...] = ()
    cached_files: tuple[str, ...] = ()
    byproduct_dirs: tuple[str, ...] = ()
    compiled_unit_pattern: str = r"^\s*Compiling\s+(\S+)\s+v?(\S+)"
    unresolved_patterns: tuple[str, ...] = field(default_factory=tuple)
    path_roots: frozenset[str] = frozenset()

    def is_library_target(self, target: str) -> bool:
        """Return True if ``target`` is a library source path."""
        return PurePosixPath(target).name in self.library_filenames

    def crate_names(self, package_name: str) -> set[str]:
        """Names under which the package's own byproducts may appear."""
        return {package_name, package_name.replace("-", "_")}

    def compiled_unit_regex(self) -> re.Pattern[str]:
        return re.compile(self.compiled_unit_pattern, re.MULTILINE)

    def unresolved_regexes(self) -> list[re.Pattern[str]]:
        return [re.compile(p) for p in self.unresolved_patterns]


RUST = LanguageProfile(
    name="rust",
    build_command=("cargo", "build", "--release"),
    default_targets=("src/main.rs",),
    entry_stub="fn main() {}\n",
    library_stub="",
    library_filenames=("lib.rs",),
    comment_prefix="//",
    artifact_dir="target/release",
    lockfile_name="Cargo.lock",
    cached_dirs=("target",),
    cached_files=("Cargo.lock",),
    byproduct_dirs=("deps", ".fingerprint", "incremental", "build"),
    compiled_unit_pattern=r"^\s*Compiling\s+(\S+)\s+v(\S+)",
    unresolved_patterns=(
        r"can't find crate for `([^`]+)`",
        r"use of undeclared crate or module `([^`]+)`",
        r"unresolved import `([A-Za-z0-9_]+)",
        r"no matching package named `([^`]+)` found",
    ),
    path_roots=frozenset({"crate", "self", "super", "std", "core", "alloc"}),
)

LANGUAGES: dict[str, LanguageProfile] = {RUST.name: RUST}


def get_language(name: str) -> LanguageProfile:
    """Look up a language profile by name.

    Raises:
        KeyError: If no profile is registered under ``name``.
    """
    try:
        return LANGUAGES[name]
    except KeyError:
        raise KeyError(
            f"Unknown language '{name}'. Available: {', '.join(sorted(LANGUAGES))}"
        ) from None


__all__ = ["LANGUAGES", "RUST", "LanguageProfile", "get_language"]
