"""Dependency manifest handling.

This module handles:
- Manifest parsing (Cargo-style TOML, native YAML/JSON)
- Manifest fingerprinting for dependency cache keys
"""

from stagebuild.manifest.fingerprint import fingerprint_manifest
from stagebuild.manifest.io import load_manifest
from stagebuild.manifest.schema import DependencySchema, ManifestSchema

__all__ = [
    "DependencySchema",
    "ManifestSchema",
    "fingerprint_manifest",
    "load_manifest",
]
