"""Runtime library installation.

The package installer is an external collaborator: it is handed a static
list of library names and either installs every one of them into the
target filesystem or fails the pipeline. ``LocalPackageRepository`` is a
directory-backed implementation where each package is a filesystem tree
(``<repo>/<name>/``) or a tarball (``<repo>/<name>.tar.gz`` etc.) laid
out relative to the image root.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

from stagebuild.builds.artifacts import compute_file_hash, compute_tree_hash
from stagebuild.errors import BaseImageUnavailable, MissingRuntimeLibrary
from stagebuild.image.base import ARCHIVE_SUFFIXES, extract_archive

logger = logging.getLogger(__name__)


class PackageInstaller(Protocol):
    """Installs named runtime libraries into a root filesystem."""

    def available(self) -> set[str]:
        """Return the names this installer can install."""
        ...

    def digest(self, name: str) -> str:
        """Return a content digest of package ``name``."""
        ...

    def install(self, names: list[str], rootfs: Path) -> list[str]:
        """Install ``names`` into ``rootfs`` and return installed paths."""
        ...


def _strip_archive_suffix(filename: str) -> str | None:
    lower = filename.lower()
    for suffix in sorted(ARCHIVE_SUFFIXES, key=len, reverse=True):
        if lower.endswith(suffix):
            return filename[: -len(suffix)]
    return None


class LocalPackageRepository:
    """Package source backed by a local directory."""

    def __init__(self, root: Path) -> None:
        self.root = root

    def _index(self) -> dict[str, Path]:
        index: dict[str, Path] = {}
        if not self.root.is_dir():
            return index
        for entry in sorted(self.root.iterdir()):
            if entry.is_dir():
                index.setdefault(entry.name, entry)
            elif entry.is_file():
                name = _strip_archive_suffix(entry.name)
                if name:
                    index.setdefault(name, entry)
        return index

    def available(self) -> set[str]:
        return set(self._index())

    def locate(self, name: str) -> Path | None:
        """Return the tree or archive for ``name``, or None."""
        return self._index().get(name)

    def digest(self, name: str) -> str:
        """Hash the package tree or archive backing ``name``.

        Raises:
            MissingRuntimeLibrary: If the repository has no such package.
        """
        source = self.locate(name)
        if source is None:
            raise MissingRuntimeLibrary([name], path=str(self.root))
        if source.is_dir():
            return compute_tree_hash(source)
        return compute_file_hash(source)

    def missing(self, names: list[str]) -> list[str]:
        """Return the subset of ``names`` not present, in request order."""
        index = self._index()
        return [n for n in names if n not in index]

    def install(self, names: list[str], rootfs: Path) -> list[str]:
        """Install every named package or fail before touching ``rootfs``.

        Raises:
            MissingRuntimeLibrary: If any name is absent from the repository.
        """
        missing = self.missing(names)
        if missing:
            raise MissingRuntimeLibrary(missing, path=str(self.root))

        index = self._index()
        installed: list[str] = []
        for name in names:
            source = index[name]
            before = set(rootfs.rglob("*")) if rootfs.exists() else set()
            if source.is_dir():
                shutil.copytree(source, rootfs, symlinks=True, dirs_exist_ok=True)
            else:
                try:
                    extract_archive(source, rootfs)
                except BaseImageUnavailable as e:
                    raise MissingRuntimeLibrary([name], path=str(source)) from e
            added = sorted(
                p.relative_to(rootfs).as_posix()
                for p in rootfs.rglob("*")
                if p not in before and not p.is_dir()
            )
            installed.extend(added)
            logger.info("Installed runtime library %s (%d files)", name, len(added))
        return installed


__all__ = ["LocalPackageRepository", "PackageInstaller"]
