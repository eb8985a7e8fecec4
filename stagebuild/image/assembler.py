"""Runtime image assembly.

This module handles:
- Checking that every runtime library is available before staging
- Staging base filesystem + runtime libraries + the extracted artifact
- Writing the image config (exactly one entry point) and manifest
- Publishing the image with an atomic rename, optionally exporting a tarball

Only the extracted artifact crosses from the build into the image; the
image never contains toolchain files, intermediate objects, stub sources
or application source.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any

from stagebuild.builds.artifacts import generate_manifest, write_manifest
from stagebuild.errors import MissingRuntimeLibrary, PipelineError
from stagebuild.image.base import BaseImage, materialize_base
from stagebuild.image.packages import PackageInstaller
from stagebuild.toolchain.stub import file_has_stub_marker
from stagebuild.types import ArtifactInfo, Stage

logger = logging.getLogger(__name__)

IMAGE_CONFIG_FILE = "config.json"
IMAGE_MANIFEST_FILE = "manifest.json"
IMAGE_TAR_FILE = "image.tar"
ROOTFS_DIR = "rootfs"
STAGING_DIR = ".staging"


@dataclass
class RuntimeImage:
    """An assembled runtime image.

    Attributes:
        image_id: Content identity (sha256 over artifact, base and library
            contents).
        name: Image name.
        path: Published image directory.
        entrypoint: Process entry point.
        base_ref: Base image reference.
        libraries: Installed runtime libraries.
        artifact: The shipped executable as extracted from the build.
        created_at: ISO timestamp of assembly.
        tarball: Exported tarball path, if requested.
    """

    image_id: str
    name: str
    path: Path
    entrypoint: list[str]
    base_ref: str
    libraries: list[str] = field(default_factory=list)
    artifact: ArtifactInfo | None = None
    created_at: str = ""
    tarball: Path | None = None

    @property
    def rootfs(self) -> Path:
        return self.path / ROOTFS_DIR

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "image_id": self.image_id,
            "name": self.name,
            "path": str(self.path),
            "entrypoint": self.entrypoint,
            "base_ref": self.base_ref,
            "libraries": self.libraries,
            "artifact": asdict(self.artifact) if self.artifact else None,
            "created_at": self.created_at,
            "tarball": str(self.tarball) if self.tarball else None,
        }


def entrypoint_path(bin_dir: str, artifact_name: str) -> str:
    """Return the absolute in-image path of the executable."""
    return str(PurePosixPath("/") / PurePosixPath(bin_dir.strip("/")) / artifact_name)


def compute_image_id(
    artifact: ArtifactInfo,
    base: BaseImage,
    libraries: list[str],
    entrypoint: list[str],
    library_digests: dict[str, str] | None = None,
) -> str:
    """Compute the content identity of an image.

    The id covers the artifact digest, the base reference and digest, each
    library name with its package digest, and the entry point. Identical
    inputs give the same id, so rebuilding them republishes nothing, while
    a library whose content changed yields a new image.
    """
    digests = library_digests or {}
    canonical = json.dumps(
        {
            "artifact_sha256": artifact.sha256,
            "base_ref": base.ref,
            "base_sha256": base.sha256,
            "libraries": [[n, digests.get(n)] for n in libraries],
            "entrypoint": entrypoint,
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return "sha256:" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def load_image(path: Path) -> RuntimeImage:
    """Load a published image from its directory."""
    config = json.loads((path / IMAGE_CONFIG_FILE).read_text(encoding="utf-8"))
    artifact = config.get("artifact")
    tarball = path / IMAGE_TAR_FILE
    return RuntimeImage(
        image_id=config["image_id"],
        name=config["name"],
        path=path,
        entrypoint=list(config["entrypoint"]),
        base_ref=config.get("base", ""),
        libraries=list(config.get("libraries", [])),
        artifact=ArtifactInfo(**artifact) if artifact else None,
        created_at=config.get("created", ""),
        tarball=tarball if tarball.exists() else None,
    )


def export_tarball(rootfs: Path, dest: Path) -> Path:
    """Write the rootfs to an uncompressed tarball."""
    with tarfile.open(dest, "w") as tar:
        for path in sorted(rootfs.rglob("*")):
            tar.add(path, arcname=path.relative_to(rootfs).as_posix(), recursive=False)
    logger.info("Exported image tarball %s", dest)
    return dest


def assemble_image(
    name: str,
    artifact: ArtifactInfo,
    base: BaseImage,
    libraries: list[str],
    installer: PackageInstaller | None,
    output_dir: Path,
    bin_dir: str = "/bin",
    fingerprint: str | None = None,
    package: str | None = None,
    export_tar: bool = False,
) -> RuntimeImage:
    """Assemble and publish a runtime image.

    Args:
        name: Image name (directory under ``output_dir``).
        artifact: Extracted executable.
        base: Resolved base filesystem.
        libraries: Runtime library names to install.
        installer: Package installer (required when libraries are declared).
        output_dir: Root for published images.
        bin_dir: In-image directory receiving the executable.
        fingerprint: Dependency fingerprint, recorded in the manifest.
        package: Package name, recorded in the manifest.
        export_tar: Also write ``image.tar`` of the rootfs.

    Returns:
        The published RuntimeImage.

    Raises:
        MissingRuntimeLibrary: If a library is not available; raised before
            anything is staged.
    """
    library_digests: dict[str, str] = {}
    if libraries:
        if installer is None:
            raise MissingRuntimeLibrary(list(libraries))
        missing = [n for n in libraries if n not in installer.available()]
        if missing:
            raise MissingRuntimeLibrary(missing)
        library_digests = {n: installer.digest(n) for n in libraries}

    entry = entrypoint_path(bin_dir, artifact.filename)
    entrypoint = [entry]
    image_id = compute_image_id(
        artifact, base, list(libraries), entrypoint, library_digests
    )
    final_dir = output_dir / name / image_id.removeprefix("sha256:")[:12]

    if (final_dir / IMAGE_CONFIG_FILE).exists():
        logger.info("Image %s already published at %s", image_id[:19], final_dir)
        return load_image(final_dir)

    staging_root = output_dir / STAGING_DIR
    staging_root.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=f"{name}_", dir=staging_root))
    try:
        rootfs = staging / ROOTFS_DIR
        materialize_base(base, rootfs)

        installed: list[str] = []
        if libraries and installer is not None:
            installed = installer.install(list(libraries), rootfs)

        target = rootfs / entry.lstrip("/")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(artifact.path, target)
        os.chmod(target, 0o755)
        if file_has_stub_marker(target):
            raise PipelineError(
                "Artifact carries placeholder source marker",
                code="stub_remnant",
                stage=Stage.ASSEMBLE,
                path=artifact.path,
            )

        created_at = datetime.now(timezone.utc).isoformat()
        shipped = ArtifactInfo(
            filename=artifact.filename,
            path=entry,
            size_bytes=artifact.size_bytes,
            sha256=artifact.sha256,
            labels=list(artifact.labels),
        )
        config = {
            "image_id": image_id,
            "name": name,
            "entrypoint": entrypoint,
            "cmd": [],
            "env": [],
            "base": base.ref,
            "libraries": list(libraries),
            "artifact": asdict(shipped),
            "created": created_at,
        }
        (staging / IMAGE_CONFIG_FILE).write_text(
            json.dumps(config, indent=2, sort_keys=True), encoding="utf-8"
        )
        write_manifest(
            generate_manifest(
                artifact=shipped,
                image_id=image_id,
                fingerprint=fingerprint,
                package=package,
                libraries=list(libraries),
                installed_files=installed + [entry.lstrip("/")],
            ),
            staging / IMAGE_MANIFEST_FILE,
        )
        if export_tar:
            export_tarball(rootfs, staging / IMAGE_TAR_FILE)

        final_dir.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.rename(staging, final_dir)
        except OSError:
            if (final_dir / IMAGE_CONFIG_FILE).exists():
                logger.info("Image %s published concurrently", image_id[:19])
                return load_image(final_dir)
            raise
    finally:
        if staging.exists():
            shutil.rmtree(staging, ignore_errors=True)

    logger.info("Published image %s:%s at %s", name, image_id[7:19], final_dir)
    return load_image(final_dir)


__all__ = [
    "IMAGE_CONFIG_FILE",
    "IMAGE_MANIFEST_FILE",
    "IMAGE_TAR_FILE",
    "ROOTFS_DIR",
    "RuntimeImage",
    "assemble_image",
    "compute_image_id",
    "entrypoint_path",
    "export_tarball",
    "load_image",
]
