"""Manifest fingerprint computation.

This module handles:
- Hashing the raw bytes of the manifest and optional lock file
- Canonical JSON over the per-file digests and build options
- A single SHA-256 fingerprint used as the dependency cache key

Byte-identical manifests always produce the same fingerprint. Application
source never participates, so source edits cannot invalidate the cache.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from stagebuild.errors import ManifestUnreadable
from stagebuild.manifest.io import load_manifest
from stagebuild.manifest.schema import ManifestSchema

logger = logging.getLogger(__name__)

# Schema version for fingerprint format; bump when the format changes
FINGERPRINT_SCHEMA_VERSION = "1"

FINGERPRINT_PREFIX = "sha256:"


@dataclass
class FingerprintInputs:
    """Canonical representation of everything that keys the dependency cache.

    Attributes:
        schema_version: Version of the fingerprint schema.
        files: Role and SHA-256 digest of each manifest file, in role order.
        build_options: Toolchain options that change compiled dependencies.
    """

    schema_version: str = FINGERPRINT_SCHEMA_VERSION
    files: list[dict[str, str]] = field(default_factory=list)
    build_options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def hash_bytes(data: bytes) -> str:
    """Return the SHA-256 hex digest of ``data``."""
    return hashlib.sha256(data).hexdigest()


def _read_bytes(path: Path) -> bytes:
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise ManifestUnreadable(f"Manifest not found: {path}", path=str(path)) from e
    except OSError as e:
        raise ManifestUnreadable(
            f"Manifest could not be read: {e}", path=str(path)
        ) from e


def create_fingerprint_inputs(
    manifest_path: Path,
    lockfile_path: Path | None = None,
    build_options: dict[str, Any] | None = None,
) -> FingerprintInputs:
    """Create canonical fingerprint inputs from manifest files.

    Files are identified by role rather than name so that identical content
    under a different filename yields the same identity.

    Args:
        manifest_path: Path to the dependency manifest.
        lockfile_path: Optional path to the resolved lock file.
        build_options: Options that affect compiled dependency output.

    Returns:
        FingerprintInputs instance.

    Raises:
        ManifestUnreadable: If a manifest file cannot be read.
    """
    files = [{"role": "manifest", "sha256": hash_bytes(_read_bytes(manifest_path))}]
    if lockfile_path is not None:
        files.append(
            {"role": "lockfile", "sha256": hash_bytes(_read_bytes(lockfile_path))}
        )
    return FingerprintInputs(
        schema_version=FINGERPRINT_SCHEMA_VERSION,
        files=files,
        build_options=build_options or {},
    )


def compute_fingerprint(inputs: FingerprintInputs) -> str:
    """Compute a fingerprint from canonical inputs.

    Args:
        inputs: FingerprintInputs instance.

    Returns:
        Fingerprint as ``sha256:<hex>``.
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    return FINGERPRINT_PREFIX + hash_bytes(canonical_json.encode("utf-8"))


def fingerprint_manifest(
    manifest_path: Path,
    lockfile_path: Path | None = None,
    build_options: dict[str, Any] | None = None,
) -> tuple[str, ManifestSchema]:
    """Parse a manifest and compute its fingerprint.

    The manifest is parsed first so an unparseable manifest fails here,
    before any cache state is consulted.

    Args:
        manifest_path: Path to the dependency manifest.
        lockfile_path: Optional path to the lock file.
        build_options: Options that affect compiled dependency output.

    Returns:
        Tuple of (fingerprint, ManifestSchema).

    Raises:
        ManifestUnreadable: If the manifest cannot be located or parsed.
    """
    manifest = load_manifest(manifest_path)
    inputs = create_fingerprint_inputs(manifest_path, lockfile_path, build_options)
    fingerprint = compute_fingerprint(inputs)
    logger.info("Manifest %s fingerprint: %s", manifest_path.name, fingerprint[:23])
    return fingerprint, manifest


def short_fingerprint(fingerprint: str, length: int = 12) -> str:
    """Return an abbreviated hex form for display and directory names."""
    return fingerprint.removeprefix(FINGERPRINT_PREFIX)[:length]


__all__ = [
    "FINGERPRINT_PREFIX",
    "FINGERPRINT_SCHEMA_VERSION",
    "FingerprintInputs",
    "compute_fingerprint",
    "create_fingerprint_inputs",
    "fingerprint_manifest",
    "hash_bytes",
    "short_fingerprint",
]
