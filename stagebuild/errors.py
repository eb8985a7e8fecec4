"""Pipeline error taxonomy.

Every error raised by the pipeline carries a stable ``code``, the ``stage``
that failed, and whatever fingerprint or path context is known, so an
operator can tell a manifest problem from a source problem from a
packaging problem. All of them are fatal to the run.
"""

from __future__ import annotations

from typing import Any

from stagebuild.types import Stage

# Stable error codes surfaced in --json output
MANIFEST_UNREADABLE = "manifest_unreadable"
CACHE_NOT_POPULATED = "cache_not_populated"
UNRESOLVED_DEPENDENCY = "unresolved_dependency"
COMPILATION_FAILED = "compilation_failed"
ARTIFACT_NOT_FOUND = "artifact_not_found"
AMBIGUOUS_ARTIFACT = "ambiguous_artifact"
MISSING_RUNTIME_LIBRARY = "missing_runtime_library"
BASE_IMAGE_UNAVAILABLE = "base_image_unavailable"
CACHE_LOCK_TIMEOUT = "cache_lock_timeout"

_CATEGORIES: dict[Stage, str] = {
    Stage.FINGERPRINT: "manifest",
    Stage.DEPENDENCY_PASS: "manifest",
    Stage.ARTIFACT_PASS: "source",
    Stage.EXTRACT: "source",
    Stage.ASSEMBLE: "packaging",
}


class PipelineError(Exception):
    """Base error for all pipeline failures."""

    def __init__(
        self,
        message: str,
        code: str,
        stage: Stage,
        fingerprint: str | None = None,
        path: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.stage = stage
        self.fingerprint = fingerprint
        self.path = path

    @property
    def category(self) -> str:
        """Coarse problem class: manifest, source or packaging."""
        return _CATEGORIES.get(self.stage, "pipeline")

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        result: dict[str, Any] = {
            "code": self.code,
            "stage": self.stage.value,
            "category": self.category,
            "message": self.message,
        }
        if self.fingerprint is not None:
            result["fingerprint"] = self.fingerprint
        if self.path is not None:
            result["path"] = self.path
        return result


class ManifestUnreadable(PipelineError):
    """Raised when the dependency manifest cannot be located or parsed."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(
            message, code=MANIFEST_UNREADABLE, stage=Stage.FINGERPRINT, path=path
        )


class CacheNotPopulated(PipelineError):
    """Raised when the artifact pass runs before the dependency pass finished."""

    def __init__(self, fingerprint: str) -> None:
        super().__init__(
            f"No dependency cache entry for {fingerprint}; "
            "the dependency pass must complete first",
            code=CACHE_NOT_POPULATED,
            stage=Stage.ARTIFACT_PASS,
            fingerprint=fingerprint,
        )


class UnresolvedDependency(PipelineError):
    """Raised when source uses a dependency the manifest does not declare."""

    def __init__(
        self,
        names: list[str],
        stage: Stage,
        fingerprint: str | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(
            f"Unresolved dependencies not declared in manifest: {', '.join(names)}",
            code=UNRESOLVED_DEPENDENCY,
            stage=stage,
            fingerprint=fingerprint,
            path=log_path,
        )
        self.names = names


class CompilationFailed(PipelineError):
    """Raised when a compiler pass fails for any other reason."""

    def __init__(
        self,
        message: str,
        stage: Stage,
        exit_code: int | None = None,
        fingerprint: str | None = None,
        log_path: str | None = None,
    ) -> None:
        super().__init__(
            message,
            code=COMPILATION_FAILED,
            stage=stage,
            fingerprint=fingerprint,
            path=log_path,
        )
        self.exit_code = exit_code


class ArtifactNotFound(PipelineError):
    """Raised when the expected executable is absent from the workspace."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(
            message, code=ARTIFACT_NOT_FOUND, stage=Stage.EXTRACT, path=path
        )


class AmbiguousArtifact(PipelineError):
    """Raised when several executables exist and none is declared primary."""

    def __init__(self, candidates: list[str], path: str | None = None) -> None:
        super().__init__(
            f"Multiple candidate executables and no declared primary: "
            f"{', '.join(candidates)}",
            code=AMBIGUOUS_ARTIFACT,
            stage=Stage.EXTRACT,
            path=path,
        )
        self.candidates = candidates


class MissingRuntimeLibrary(PipelineError):
    """Raised when a runtime library is not available from the package source."""

    def __init__(self, names: list[str], path: str | None = None) -> None:
        super().__init__(
            f"Runtime libraries not found in package source: {', '.join(names)}",
            code=MISSING_RUNTIME_LIBRARY,
            stage=Stage.ASSEMBLE,
            path=path,
        )
        self.names = names


class BaseImageUnavailable(PipelineError):
    """Raised when the base filesystem reference cannot be resolved."""

    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(
            message, code=BASE_IMAGE_UNAVAILABLE, stage=Stage.ASSEMBLE, path=path
        )


class CacheLockTimeout(PipelineError):
    """Raised when another run holds the populate lock for too long."""

    def __init__(self, fingerprint: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout}s waiting for cache lock on {fingerprint[:32]}",
            code=CACHE_LOCK_TIMEOUT,
            stage=Stage.DEPENDENCY_PASS,
            fingerprint=fingerprint,
        )


__all__ = [
    "AMBIGUOUS_ARTIFACT",
    "ARTIFACT_NOT_FOUND",
    "BASE_IMAGE_UNAVAILABLE",
    "CACHE_LOCK_TIMEOUT",
    "CACHE_NOT_POPULATED",
    "COMPILATION_FAILED",
    "MANIFEST_UNREADABLE",
    "MISSING_RUNTIME_LIBRARY",
    "UNRESOLVED_DEPENDENCY",
    "AmbiguousArtifact",
    "ArtifactNotFound",
    "BaseImageUnavailable",
    "CacheLockTimeout",
    "CacheNotPopulated",
    "CompilationFailed",
    "ManifestUnreadable",
    "MissingRuntimeLibrary",
    "PipelineError",
    "UnresolvedDependency",
]
