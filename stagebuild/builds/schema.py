"""Pipeline file schema.

A pipeline file (``stagebuild.yaml``) declares the inputs of one build:
where the manifest and sources live, which language toolchain to use,
the base image, the runtime libraries and the in-image location of the
executable. Relative paths are resolved against the file's directory.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

IMAGE_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")

DEFAULT_PIPELINE_FILE = "stagebuild.yaml"


class PipelineConfigError(Exception):
    """Raised when a pipeline file is missing or invalid."""

    def __init__(self, message: str, code: str = "pipeline_config_invalid") -> None:
        super().__init__(message)
        self.code = code


class PipelineSchema(BaseModel):
    """Declared inputs of a pipeline run.

    Attributes:
        name: Image name.
        language: Language profile name.
        manifest: Dependency manifest path.
        lockfile: Optional lock file path (part of the fingerprint).
        source: Application source directory.
        source_dest: Workspace-relative destination of the sources.
        base_image: 'scratch', a local directory/tarball, or an http(s) URL.
        base_image_sha256: Optional pin for archive base images.
        runtime_libraries: Library names installed into the image.
        package_repo: Local package repository for runtime libraries.
        bin_dir: In-image directory receiving the executable.
        build_options: Options that change compiled dependencies.
        export_tar: Also write an image tarball.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(description="Image name")
    language: str = Field(default="rust")
    manifest: str = Field(default="Cargo.toml")
    lockfile: str | None = Field(default=None)
    source: str = Field(default="src")
    source_dest: str | None = Field(default=None)
    base_image: str = Field(default="scratch")
    base_image_sha256: str | None = Field(default=None)
    runtime_libraries: list[str] = Field(default_factory=list)
    package_repo: str | None = Field(default=None)
    bin_dir: str = Field(default="/bin")
    build_options: dict[str, Any] = Field(default_factory=dict)
    export_tar: bool = Field(default=False)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate image name characters."""
        if not IMAGE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must be lowercase alphanumerics, '.', '_' or '-', got '{v}'"
            )
        return v

    @field_validator("bin_dir")
    @classmethod
    def validate_bin_dir(cls, v: str) -> str:
        """bin_dir is an absolute in-image path."""
        if not v.startswith("/"):
            raise ValueError("bin_dir must start with '/'")
        if ".." in v.split("/"):
            raise ValueError("bin_dir must not contain '..'")
        return v

    @field_validator("runtime_libraries")
    @classmethod
    def validate_libraries(cls, v: list[str]) -> list[str]:
        """Library names are unique."""
        if len(set(v)) != len(v):
            raise ValueError("runtime_libraries contains duplicates")
        return v


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline file.

    Args:
        path: Path to the YAML pipeline file.

    Returns:
        Validated PipelineSchema.

    Raises:
        PipelineConfigError: If the file is missing, malformed or invalid.
    """
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError as e:
        raise PipelineConfigError(
            f"Pipeline file not found: {path}", code="pipeline_not_found"
        ) from e
    except yaml.YAMLError as e:
        raise PipelineConfigError(f"Pipeline file is not valid YAML: {e}") from e

    if not isinstance(data, dict):
        raise PipelineConfigError(
            f"Expected a YAML mapping, got {type(data).__name__}"
        )
    try:
        return PipelineSchema.model_validate(data)
    except ValidationError as e:
        raise PipelineConfigError(f"Pipeline file is invalid: {e}") from e


__all__ = [
    "DEFAULT_PIPELINE_FILE",
    "PipelineConfigError",
    "PipelineSchema",
    "load_pipeline",
]
