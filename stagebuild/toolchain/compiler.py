"""Two-pass compiler stage.

The compiler stage runs the toolchain twice per pipeline run:

1. ``dependency_pass``: manifest files plus a stub program. Its output is
   consumed only by the dependency cache.
2. ``artifact_pass``: manifest files plus the real sources, on top of the
   restored cache entry. Only application code is recompiled.

The artifact pass refuses to start without a committed cache entry for
the fingerprint (``CacheNotPopulated``).
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path

from stagebuild.cache.store import CacheStore
from stagebuild.errors import CacheNotPopulated, CompilationFailed, UnresolvedDependency
from stagebuild.manifest.schema import ManifestSchema
from stagebuild.toolchain.languages import LanguageProfile
from stagebuild.toolchain.runner import Toolchain, ToolchainExecutionError
from stagebuild.toolchain.stub import (
    StubRemnantError,
    assert_no_stub_remnants,
    generate_stub,
    remove_stub,
)
from stagebuild.types import CompiledUnit, PassKind, Stage

logger = logging.getLogger(__name__)


@dataclass
class ProjectSources:
    """Where the project's inputs live on the host.

    Attributes:
        manifest_path: Dependency manifest (copied under its own name).
        source_dir: Real application source tree.
        lockfile_path: Optional lock file (copied under its own name).
        source_dest: Workspace-relative destination of the source tree.
    """

    manifest_path: Path
    source_dir: Path
    lockfile_path: Path | None = None
    source_dest: str = "src"

    def manifest_files(self) -> list[Path]:
        files = [self.manifest_path]
        if self.lockfile_path is not None:
            files.append(self.lockfile_path)
        return files


@dataclass
class CompileResult:
    """Outcome of a successful compiler pass.

    Attributes:
        pass_kind: Which pass ran.
        log_path: Toolchain log for the pass.
        duration: Wall-clock seconds.
        compiled_units: Units the toolchain reported compiling, in order.
        removed_stub_files: Stub files and byproducts removed afterwards.
    """

    pass_kind: PassKind
    log_path: Path
    duration: float
    compiled_units: list[CompiledUnit] = field(default_factory=list)
    removed_stub_files: list[str] = field(default_factory=list)

    def compiled_names(self) -> list[str]:
        return [u.name for u in self.compiled_units]


def parse_compiled_units(
    log_text: str, language: LanguageProfile
) -> list[CompiledUnit]:
    """Extract ``(name, version)`` compile events from a toolchain log."""
    return [
        CompiledUnit(name=m.group(1), version=m.group(2))
        for m in language.compiled_unit_regex().finditer(log_text)
    ]


def find_unresolved_dependencies(
    log_text: str, language: LanguageProfile
) -> list[str]:
    """Return dependency names the toolchain could not resolve, in log order.

    Module path roots such as ``crate::`` or ``std::`` are never reported;
    a broken path inside the project is a plain compilation failure.
    """
    found: list[str] = []
    for regex in language.unresolved_regexes():
        for m in regex.finditer(log_text):
            name = m.group(1)
            if name in language.path_roots:
                continue
            if name not in found:
                found.append(name)
    return found


def _copy_manifest_files(workspace: Path, project: ProjectSources) -> None:
    workspace.mkdir(parents=True, exist_ok=True)
    for path in project.manifest_files():
        shutil.copy2(path, workspace / path.name)


class CompilerStage:
    """Explicit populate-then-build protocol around a toolchain."""

    def __init__(
        self,
        toolchain: Toolchain,
        language: LanguageProfile,
        cache: CacheStore,
        log_dir: Path,
        timeout: int | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.language = language
        self.cache = cache
        self.log_dir = log_dir
        self.timeout = timeout

    def _run(
        self,
        pass_kind: PassKind,
        stage: Stage,
        workspace: Path,
        fingerprint: str,
    ) -> CompileResult:
        log_path = self.log_dir / f"{pass_kind.value}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            result = self.toolchain.compile(
                workspace, log_path, pass_kind, timeout=self.timeout
            )
        except ToolchainExecutionError as e:
            raise CompilationFailed(
                str(e),
                stage=stage,
                exit_code=e.exit_code,
                fingerprint=fingerprint,
                log_path=str(log_path),
            ) from e

        log_text = log_path.read_text(encoding="utf-8", errors="replace")
        if not result.success:
            unresolved = find_unresolved_dependencies(log_text, self.language)
            if unresolved:
                raise UnresolvedDependency(
                    unresolved,
                    stage=stage,
                    fingerprint=fingerprint,
                    log_path=str(log_path),
                )
            raise CompilationFailed(
                result.error_message
                or f"{pass_kind.value} pass failed with exit code {result.exit_code}",
                stage=stage,
                exit_code=result.exit_code,
                fingerprint=fingerprint,
                log_path=str(log_path),
            )

        units = parse_compiled_units(log_text, self.language)
        logger.info(
            "%s pass compiled %d unit(s) in %.1fs",
            pass_kind.value,
            len(units),
            result.duration,
        )
        return CompileResult(
            pass_kind=pass_kind,
            log_path=log_path,
            duration=result.duration,
            compiled_units=units,
        )

    def dependency_pass(
        self,
        workspace: Path,
        project: ProjectSources,
        manifest: ManifestSchema,
        fingerprint: str,
    ) -> CompileResult:
        """Compile all declared dependencies against a stub program.

        The stub and the placeholder's own compiled output are removed
        before returning, leaving only dependency output in the workspace.
        """
        _copy_manifest_files(workspace, project)
        stub = generate_stub(workspace, manifest, self.language)
        logger.info(
            "Dependency pass for %s (%d dependencies)",
            manifest.name,
            len(manifest.dependencies),
        )
        result = self._run(
            PassKind.DEPENDENCY, Stage.DEPENDENCY_PASS, workspace, fingerprint
        )
        result.removed_stub_files = remove_stub(stub, manifest, self.language)
        return result

    def artifact_pass(
        self,
        workspace: Path,
        project: ProjectSources,
        manifest: ManifestSchema,
        fingerprint: str,
    ) -> CompileResult:
        """Compile the real sources on top of the cached dependency output.

        Raises:
            CacheNotPopulated: If no entry exists for ``fingerprint``.
            UnresolvedDependency: If sources use undeclared dependencies.
            CompilationFailed: On any other toolchain failure.
        """
        entry = self.cache.lookup(fingerprint)
        if entry is None:
            raise CacheNotPopulated(fingerprint)

        # Project manifest files win over the lock file snapshotted in pass 1
        self.cache.restore(entry, workspace)
        _copy_manifest_files(workspace, project)

        dest = workspace / project.source_dest
        if not project.source_dir.is_dir():
            raise CompilationFailed(
                f"Source directory not found: {project.source_dir}",
                stage=Stage.ARTIFACT_PASS,
                fingerprint=fingerprint,
            )
        # Fresh mtimes: the toolchain must treat every source file as changed
        shutil.copytree(
            project.source_dir, dest, copy_function=shutil.copy, dirs_exist_ok=True
        )
        try:
            assert_no_stub_remnants(dest)
        except StubRemnantError as e:
            raise CompilationFailed(
                str(e),
                stage=Stage.ARTIFACT_PASS,
                fingerprint=fingerprint,
                log_path=str(dest),
            ) from e

        logger.info("Artifact pass for %s", manifest.name)
        return self._run(
            PassKind.ARTIFACT, Stage.ARTIFACT_PASS, workspace, fingerprint
        )


__all__ = [
    "CompileResult",
    "CompilerStage",
    "ProjectSources",
    "find_unresolved_dependencies",
    "parse_compiled_units",
]
