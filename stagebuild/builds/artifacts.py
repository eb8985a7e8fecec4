"""Artifact discovery, extraction and manifest generation.

This module handles:
- Finding executables in the toolchain's output directory
- Resolving the single primary executable to ship
- Copying it out of the build workspace (read-then-copy)
- Computing checksums and writing image manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import stat
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stagebuild.errors import AmbiguousArtifact, ArtifactNotFound
from stagebuild.manifest.schema import ManifestSchema
from stagebuild.toolchain.languages import LanguageProfile
from stagebuild.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

# Toolchain side files that sit next to executables
NON_ARTIFACT_SUFFIXES = {".d", ".rlib", ".rmeta", ".pdb", ".dwp", ".so", ".a"}


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def compute_tree_hash(root: Path) -> str:
    """Compute SHA-256 over a directory tree's names, modes and contents.

    Entries are visited in sorted relative-path order. Symlinks contribute
    their target rather than the file they point to.
    """
    sha256 = hashlib.sha256()
    if not root.is_dir():
        return sha256.hexdigest()
    for path in sorted(root.rglob("*")):
        rel = path.relative_to(root).as_posix()
        if path.is_symlink():
            record = f"L\0{rel}\0{os.readlink(path)}\0"
            sha256.update(record.encode("utf-8"))
        elif path.is_dir():
            sha256.update(f"D\0{rel}\0".encode("utf-8"))
        elif path.is_file():
            mode = stat.S_IMODE(path.stat().st_mode)
            sha256.update(f"F\0{rel}\0{mode:o}\0".encode("utf-8"))
            sha256.update(compute_file_hash(path).encode("ascii"))
    return sha256.hexdigest()


def is_executable(path: Path) -> bool:
    """Return True for regular files with any execute bit set."""
    if not path.is_file() or path.is_symlink():
        return False
    mode = path.stat().st_mode
    return bool(mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH))


def discover_executables(artifact_dir: Path) -> list[Path]:
    """List candidate executables directly inside ``artifact_dir``.

    Subdirectories (per-crate output, build scripts) are not searched.
    """
    if not artifact_dir.is_dir():
        logger.warning("Artifact directory does not exist: %s", artifact_dir)
        return []
    return [
        path
        for path in sorted(artifact_dir.iterdir())
        if path.suffix.lower() not in NON_ARTIFACT_SUFFIXES and is_executable(path)
    ]


def locate_artifact(
    workspace: Path,
    manifest: ManifestSchema,
    language: LanguageProfile,
) -> Path:
    """Resolve the executable to ship.

    Args:
        workspace: Build workspace after the artifact pass.
        manifest: Parsed manifest.
        language: Language profile (supplies the artifact directory).

    Returns:
        Path of the executable inside the workspace.

    Raises:
        ArtifactNotFound: If the expected executable is absent.
        AmbiguousArtifact: If several candidates exist and none is primary.
    """
    artifact_dir = workspace / language.artifact_dir
    primary = manifest.primary_binary()

    if primary is not None:
        expected = artifact_dir / primary
        if not expected.is_file():
            raise ArtifactNotFound(
                f"Expected executable '{primary}' was not produced",
                path=str(expected),
            )
        return expected

    candidates = discover_executables(artifact_dir)
    if not candidates:
        raise ArtifactNotFound(
            f"No executable produced in {language.artifact_dir}",
            path=str(artifact_dir),
        )
    if len(candidates) > 1:
        raise AmbiguousArtifact(
            [c.name for c in candidates], path=str(artifact_dir)
        )
    return candidates[0]


def extract_artifact(
    workspace: Path,
    manifest: ManifestSchema,
    language: LanguageProfile,
    dest_dir: Path,
) -> ArtifactInfo:
    """Copy the single built executable out of the workspace.

    The workspace is only read. The copy in ``dest_dir`` is the only build
    output that may reach the runtime image.

    Args:
        workspace: Build workspace after the artifact pass.
        manifest: Parsed manifest.
        language: Language profile.
        dest_dir: Directory outside the workspace receiving the copy.

    Returns:
        ArtifactInfo describing the extracted copy.
    """
    source = locate_artifact(workspace, manifest, language)
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / source.name
    shutil.copy2(source, dest)
    os.chmod(dest, 0o755)

    info = ArtifactInfo(
        filename=dest.name,
        path=str(dest),
        size_bytes=dest.stat().st_size,
        sha256=compute_file_hash(dest),
        labels=["entrypoint"],
    )
    logger.info(
        "Extracted artifact %s (%d bytes, sha256=%s)",
        info.filename,
        info.size_bytes,
        info.sha256[:16],
    )
    return info


def generate_manifest(
    artifact: ArtifactInfo,
    image_id: str | None = None,
    fingerprint: str | None = None,
    package: str | None = None,
    libraries: list[str] | None = None,
    installed_files: list[str] | None = None,
    extra_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Generate an image manifest.

    The manifest records what went into the image: the artifact with its
    checksum, the dependency fingerprint it was built against, and the
    runtime libraries installed next to it.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    now = datetime.now(timezone.utc)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": now.isoformat(),
        "artifact": asdict(artifact),
        "libraries": list(libraries or []),
    }

    if image_id:
        manifest["image_id"] = image_id
    if fingerprint:
        manifest["fingerprint"] = fingerprint
    if package:
        manifest["package"] = package
    if installed_files is not None:
        manifest["installed_files"] = sorted(installed_files)
    if extra_metadata:
        manifest["metadata"] = extra_metadata

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.debug("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "NON_ARTIFACT_SUFFIXES",
    "compute_file_hash",
    "compute_tree_hash",
    "discover_executables",
    "extract_artifact",
    "generate_manifest",
    "is_executable",
    "locate_artifact",
    "write_manifest",
]
