"""Pydantic models for dependency manifest validation.

A manifest is read from either a Cargo-style TOML file or the native
YAML/JSON layout and normalized into a single ``ManifestSchema``. The
schema is frozen: a manifest is immutable once read.
"""

import re
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from stagebuild.types import Dependency

NAME_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


class DependencySchema(BaseModel):
    """Schema for a single dependency declaration.

    Attributes:
        name: Dependency name as used by the toolchain.
        version: Version constraint ('*' when unconstrained).
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Dependency name")
    version: str = Field(default="*", description="Version constraint")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate dependency name characters."""
        if not NAME_PATTERN.match(v):
            raise ValueError(f"invalid dependency name '{v}'")
        return v


class ManifestSchema(BaseModel):
    """Normalized dependency manifest.

    Attributes:
        name: Package name.
        version: Optional package version.
        dependencies: Ordered dependency declarations.
        binaries: Declared executable targets.
        primary: Declared primary executable, if any.
        targets: Source paths of entry points the toolchain expects.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Package name")
    version: str | None = Field(default=None, description="Package version")
    dependencies: list[DependencySchema] = Field(default_factory=list)
    binaries: list[str] = Field(default_factory=list)
    primary: str | None = Field(default=None)
    targets: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate package name characters."""
        if not NAME_PATTERN.match(v):
            raise ValueError(f"invalid package name '{v}'")
        return v

    @field_validator("targets")
    @classmethod
    def validate_targets(cls, v: list[str]) -> list[str]:
        """Target paths must stay inside the project."""
        for target in v:
            path = PurePosixPath(target)
            if path.is_absolute() or ".." in path.parts:
                raise ValueError(f"target path must be relative: '{target}'")
        return v

    @model_validator(mode="after")
    def validate_consistency(self) -> "ManifestSchema":
        """Dependency names are unique and the primary is a declared binary."""
        seen: set[str] = set()
        for dep in self.dependencies:
            if dep.name in seen:
                raise ValueError(f"duplicate dependency '{dep.name}'")
            seen.add(dep.name)
        if self.primary and self.binaries and self.primary not in self.binaries:
            raise ValueError(
                f"primary '{self.primary}' is not a declared binary {self.binaries}"
            )
        return self

    def declared_dependencies(self) -> list[Dependency]:
        """Return dependency declarations in manifest order."""
        return [Dependency(name=d.name, version=d.version) for d in self.dependencies]

    def dependency_names(self) -> set[str]:
        """Return the set of declared dependency names."""
        return {d.name for d in self.dependencies}

    def primary_binary(self) -> str | None:
        """Return the executable the pipeline should ship, if determinable."""
        if self.primary:
            return self.primary
        if len(self.binaries) == 1:
            return self.binaries[0]
        return None


__all__ = ["NAME_PATTERN", "DependencySchema", "ManifestSchema"]
