"""Shared type definitions for stagebuild.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Stage(str, Enum):
    """Pipeline stage identity, used to attribute failures."""

    FINGERPRINT = "fingerprint"
    DEPENDENCY_PASS = "dependency_pass"
    ARTIFACT_PASS = "artifact_pass"
    EXTRACT = "extract"
    ASSEMBLE = "assemble"


class PassKind(str, Enum):
    """Which of the two compiler passes is running."""

    DEPENDENCY = "dependency"
    ARTIFACT = "artifact"


@dataclass(frozen=True)
class Dependency:
    """A single dependency declaration from a manifest."""

    name: str
    version: str = "*"

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


@dataclass
class CompiledUnit:
    """A compilation unit reported by the toolchain log."""

    name: str
    version: str | None = None


@dataclass
class ArtifactInfo:
    """Information about an extracted build artifact."""

    filename: str
    path: str
    size_bytes: int
    sha256: str
    labels: list[str] = field(default_factory=list)


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "CompiledUnit",
    "Dependency",
    "PassKind",
    "Stage",
]
