"""Manifest loading.

This module reads dependency manifests from disk and normalizes them into
``ManifestSchema``:
- Cargo-style TOML (``[package]``, ``[dependencies]``, ``[[bin]]``, ``[lib]``)
- Native YAML/JSON (``package``, ``dependencies``, ``targets``)

Any failure to locate, read, parse or validate surfaces as
``ManifestUnreadable``.
"""

from __future__ import annotations

import json
import logging
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from stagebuild.errors import ManifestUnreadable
from stagebuild.manifest.schema import ManifestSchema

logger = logging.getLogger(__name__)

TOML_SUFFIXES = {".toml"}
YAML_SUFFIXES = {".yaml", ".yml"}
JSON_SUFFIXES = {".json"}

# Cargo dependency tables compiled during the dependency pass
CARGO_DEPENDENCY_TABLES = ("dependencies", "build-dependencies")


def _read_mapping(path: Path) -> dict[str, Any]:
    """Read a manifest file into a mapping based on its suffix."""
    suffix = path.suffix.lower()
    try:
        if suffix in TOML_SUFFIXES:
            with path.open("rb") as f:
                data = tomllib.load(f)
        elif suffix in YAML_SUFFIXES:
            with path.open(encoding="utf-8") as f:
                data = yaml.safe_load(f)
        elif suffix in JSON_SUFFIXES:
            with path.open(encoding="utf-8") as f:
                data = json.load(f)
        else:
            raise ManifestUnreadable(
                f"Unsupported manifest format: {path.suffix or path.name}",
                path=str(path),
            )
    except FileNotFoundError as e:
        raise ManifestUnreadable(f"Manifest not found: {path}", path=str(path)) from e
    except OSError as e:
        raise ManifestUnreadable(
            f"Manifest could not be read: {e}", path=str(path)
        ) from e
    except (tomllib.TOMLDecodeError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise ManifestUnreadable(
            f"Manifest could not be parsed: {e}", path=str(path)
        ) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ManifestUnreadable(
            f"Expected a mapping at manifest top level, got {type(data).__name__}",
            path=str(path),
        )
    return data


def _cargo_dependency(name: str, spec: Any) -> dict[str, str]:
    """Normalize one Cargo dependency entry."""
    if isinstance(spec, str):
        return {"name": name, "version": spec}
    if isinstance(spec, dict):
        # path/git dependencies carry no version constraint
        return {"name": spec.get("package", name), "version": spec.get("version", "*")}
    raise ValueError(f"unsupported dependency declaration for '{name}'")


def normalize_cargo_manifest(data: dict[str, Any]) -> dict[str, Any]:
    """Convert a parsed Cargo.toml mapping into ManifestSchema fields.

    Args:
        data: Parsed TOML document.

    Returns:
        Dictionary suitable for ``ManifestSchema.model_validate``.
    """
    package = data.get("package")
    if not isinstance(package, dict) or "name" not in package:
        raise ValueError("missing [package] table with a name")
    name = package["name"]

    dependencies: list[dict[str, str]] = []
    for table in CARGO_DEPENDENCY_TABLES:
        for dep_name, spec in data.get(table, {}).items():
            dependencies.append(_cargo_dependency(dep_name, spec))

    binaries: list[str] = []
    targets: list[str] = []
    for entry in data.get("bin", []):
        bin_name = entry.get("name", name)
        binaries.append(bin_name)
        default_path = "src/main.rs" if bin_name == name else f"src/bin/{bin_name}.rs"
        targets.append(entry.get("path", default_path))
    if not binaries:
        binaries.append(name)
        targets.append("src/main.rs")

    lib = data.get("lib")
    if isinstance(lib, dict):
        targets.append(lib.get("path", "src/lib.rs"))

    return {
        "name": name,
        "version": package.get("version"),
        "dependencies": dependencies,
        "binaries": binaries,
        "primary": package.get("default-run"),
        "targets": targets,
    }


def _version_text(value: Any) -> str:
    return "*" if value is None else str(value)


def normalize_native_manifest(data: dict[str, Any]) -> dict[str, Any]:
    """Convert the native YAML/JSON layout into ManifestSchema fields.

    ``dependencies`` may be a list of ``{name, version}`` objects or an
    ordered ``name: version`` mapping.
    """
    package = data.get("package", {})
    if not isinstance(package, dict):
        raise ValueError("'package' must be a mapping")

    raw_deps = data.get("dependencies") or []
    if isinstance(raw_deps, dict):
        dependencies = [
            {"name": k, "version": _version_text(v)} for k, v in raw_deps.items()
        ]
    else:
        dependencies = [
            {**d, "version": _version_text(d.get("version"))}
            if isinstance(d, dict)
            else d
            for d in raw_deps
        ]

    result: dict[str, Any] = {
        "name": package.get("name"),
        "version": package.get("version"),
        "dependencies": dependencies,
        "binaries": package.get("binaries", []),
        "primary": package.get("primary"),
        "targets": data.get("targets", []),
    }
    if result["version"] is not None:
        result["version"] = str(result["version"])
    return result


def load_manifest(path: Path) -> ManifestSchema:
    """Load and validate a dependency manifest.

    Args:
        path: Path to the manifest file.

    Returns:
        Validated, immutable ManifestSchema.

    Raises:
        ManifestUnreadable: If the manifest is missing, malformed or invalid.
    """
    data = _read_mapping(path)
    try:
        if path.suffix.lower() in TOML_SUFFIXES:
            fields = normalize_cargo_manifest(data)
        else:
            fields = normalize_native_manifest(data)
        manifest = ManifestSchema.model_validate(fields)
    except (ValueError, ValidationError) as e:
        raise ManifestUnreadable(
            f"Manifest is invalid: {e}", path=str(path)
        ) from e

    logger.debug(
        "Loaded manifest %s (%d dependencies)", path, len(manifest.dependencies)
    )
    return manifest


__all__ = [
    "CARGO_DEPENDENCY_TABLES",
    "load_manifest",
    "normalize_cargo_manifest",
    "normalize_native_manifest",
]
