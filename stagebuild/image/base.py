"""Base filesystem provider.

This module handles:
- Resolving a base image reference (``scratch``, local directory, local
  tarball, or http(s) URL)
- Download with optional checksum verification, cached by URL
- Safe extraction of base tarballs into a staging rootfs
"""

from __future__ import annotations

import hashlib
import logging
import shutil
import tarfile
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

import httpx

from stagebuild.builds.artifacts import compute_file_hash, compute_tree_hash
from stagebuild.errors import BaseImageUnavailable

logger = logging.getLogger(__name__)

# Empty base filesystem
SCRATCH = "scratch"

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

DOWNLOAD_TIMEOUT = 600

ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2")


@dataclass
class BaseImage:
    """A resolved base filesystem.

    Attributes:
        ref: Reference as declared.
        kind: 'scratch', 'directory' or 'archive'.
        path: Local directory or archive path (None for scratch).
        sha256: Archive checksum or directory tree digest, when known.
    """

    ref: str
    kind: str
    path: Path | None = None
    sha256: str | None = None


def is_remote_ref(ref: str) -> bool:
    """Return True if ``ref`` is an http(s) URL."""
    return urlparse(ref).scheme in ("http", "https")


def is_archive(path: Path) -> bool:
    """Return True if ``path`` has a supported tarball suffix."""
    return path.name.lower().endswith(ARCHIVE_SUFFIXES)


def download_base_image(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_sha256: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
) -> str:
    """Download a base image archive with optional checksum verification.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the archive.
        expected_sha256: Expected SHA-256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.

    Returns:
        SHA-256 of the downloaded archive.

    Raises:
        BaseImageUnavailable: If download or verification fails.
    """
    logger.info("Downloading base image %s", url)
    partial = dest_path.with_name(dest_path.name + ".part")
    partial.parent.mkdir(parents=True, exist_ok=True)

    try:
        with client.stream("GET", url, timeout=timeout) as response:
            response.raise_for_status()
            sha256 = hashlib.sha256()
            total_bytes = 0
            with partial.open("wb") as f:
                for chunk in response.iter_bytes(chunk_size):
                    f.write(chunk)
                    sha256.update(chunk)
                    total_bytes += len(chunk)
    except httpx.HTTPStatusError as e:
        partial.unlink(missing_ok=True)
        raise BaseImageUnavailable(
            f"HTTP error downloading {url}: {e.response.status_code}", path=url
        ) from e
    except httpx.TimeoutException as e:
        partial.unlink(missing_ok=True)
        raise BaseImageUnavailable(f"Timeout downloading {url}", path=url) from e
    except httpx.RequestError as e:
        partial.unlink(missing_ok=True)
        raise BaseImageUnavailable(
            f"Network error downloading {url}: {e}", path=url
        ) from e

    checksum = sha256.hexdigest()
    if expected_sha256 and checksum != expected_sha256.lower():
        partial.unlink(missing_ok=True)
        raise BaseImageUnavailable(
            f"Checksum mismatch for {url}: expected {expected_sha256}, got {checksum}",
            path=url,
        )

    partial.rename(dest_path)
    logger.info("Downloaded %s (%d bytes)", dest_path.name, total_bytes)
    return checksum


def resolve_base_image(
    ref: str,
    cache_dir: Path,
    client: httpx.Client | None = None,
    expected_sha256: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
) -> BaseImage:
    """Resolve a base image reference to something that can be unpacked.

    Remote archives are downloaded once into ``cache_dir/base-images`` and
    reused while the cached copy matches ``expected_sha256`` (if given).

    Raises:
        BaseImageUnavailable: If the reference cannot be resolved.
    """
    if ref == SCRATCH:
        return BaseImage(ref=ref, kind="scratch")

    if is_remote_ref(ref):
        filename = Path(urlparse(ref).path).name or "base.tar"
        if not is_archive(Path(filename)):
            raise BaseImageUnavailable(
                f"Remote base image must be a tarball: {ref}", path=ref
            )
        url_key = hashlib.sha256(ref.encode("utf-8")).hexdigest()[:16]
        archive = cache_dir / "base-images" / url_key / filename

        if archive.exists():
            checksum = compute_file_hash(archive)
            if expected_sha256 is None or checksum == expected_sha256.lower():
                logger.info("Using cached base image %s", archive)
                return BaseImage(ref=ref, kind="archive", path=archive, sha256=checksum)
            logger.warning("Cached base image %s is stale; re-downloading", archive)
            archive.unlink()

        own_client = client is None
        http = client or httpx.Client(follow_redirects=True)
        try:
            checksum = download_base_image(
                http, ref, archive, expected_sha256=expected_sha256, timeout=timeout
            )
        finally:
            if own_client:
                http.close()
        return BaseImage(ref=ref, kind="archive", path=archive, sha256=checksum)

    path = Path(ref)
    if path.is_dir():
        return BaseImage(
            ref=ref, kind="directory", path=path, sha256=compute_tree_hash(path)
        )
    if path.is_file() and is_archive(path):
        checksum = compute_file_hash(path)
        if expected_sha256 and checksum != expected_sha256.lower():
            raise BaseImageUnavailable(
                f"Checksum mismatch for {path}: expected {expected_sha256}, "
                f"got {checksum}",
                path=str(path),
            )
        return BaseImage(ref=ref, kind="archive", path=path, sha256=checksum)

    raise BaseImageUnavailable(f"Base image not found: {ref}", path=ref)


def extract_archive(archive_path: Path, dest_dir: Path) -> None:
    """Extract a base image tarball into ``dest_dir``.

    Raises:
        BaseImageUnavailable: If the archive is corrupt or unsafe.
    """
    dest_dir.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(archive_path, "r:*") as tar:
            for member in tar.getmembers():
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise BaseImageUnavailable(
                        f"Refusing to extract {member.name}: path traversal detected",
                        path=str(archive_path),
                    )
            # Absolute symlinks are normal in root filesystems (etc/localtime)
            tar.extractall(dest_dir, filter="tar")
    except tarfile.TarError as e:
        raise BaseImageUnavailable(
            f"Failed to extract {archive_path}: {e}", path=str(archive_path)
        ) from e
    logger.info("Extracted base image %s", archive_path.name)


def materialize_base(base: BaseImage, rootfs: Path) -> None:
    """Populate ``rootfs`` with the base filesystem."""
    rootfs.mkdir(parents=True, exist_ok=True)
    if base.kind == "scratch":
        return
    if base.path is None:
        raise BaseImageUnavailable(f"Base image has no path: {base.ref}", path=base.ref)
    if base.kind == "directory":
        shutil.copytree(base.path, rootfs, symlinks=True, dirs_exist_ok=True)
    else:
        extract_archive(base.path, rootfs)


__all__ = [
    "ARCHIVE_SUFFIXES",
    "DOWNLOAD_CHUNK_SIZE",
    "SCRATCH",
    "BaseImage",
    "download_base_image",
    "extract_archive",
    "is_archive",
    "is_remote_ref",
    "materialize_base",
    "resolve_base_image",
]
