"""Dependency cache store.

This module handles:
- Exact-match lookup of compiled dependency output by manifest fingerprint
- Populating an entry from a dependency pass, committed with one atomic rename
- Restoring an entry into a fresh build workspace
- Listing, removing and pruning entries

Layout under the cache root::

    entries/<hex>/entry.json     committed entry metadata
    entries/<hex>/content/...    cached workspace directories (e.g. target/)
    scratch/<tmp>/               in-flight populates (never visible to lookup)
    .locks/                      per-fingerprint populate locks

Entries are never mutated in place. A populate that fails or is killed
leaves only a scratch directory behind, so the next lookup is a miss.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from stagebuild.cache.lock import cache_lock
from stagebuild.manifest.fingerprint import FINGERPRINT_PREFIX
from stagebuild.manifest.schema import ManifestSchema

logger = logging.getLogger(__name__)

ENTRY_METADATA_FILE = "entry.json"
ENTRY_CONTENT_DIR = "content"

# Scratch directories older than this are considered abandoned by prune()
STALE_SCRATCH_SECONDS = 24 * 60 * 60


@dataclass
class CacheEntry:
    """A committed dependency cache entry.

    Attributes:
        fingerprint: Manifest fingerprint the entry was populated for.
        path: Entry directory.
        package: Package name from the manifest.
        dependencies: Dependency declarations compiled into the entry.
        created_at: ISO timestamp of the commit.
        size_bytes: Total size of cached content.
        file_count: Number of cached files.
    """

    fingerprint: str
    path: Path
    package: str
    dependencies: list[str] = field(default_factory=list)
    created_at: str = ""
    size_bytes: int = 0
    file_count: int = 0

    @property
    def content_dir(self) -> Path:
        return self.path / ENTRY_CONTENT_DIR

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data = asdict(self)
        data["path"] = str(self.path)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], path: Path) -> CacheEntry:
        return cls(
            fingerprint=data["fingerprint"],
            path=path,
            package=data.get("package", ""),
            dependencies=list(data.get("dependencies", [])),
            created_at=data.get("created_at", ""),
            size_bytes=int(data.get("size_bytes", 0)),
            file_count=int(data.get("file_count", 0)),
        )


def _tree_stats(root: Path) -> tuple[int, int]:
    """Return (total_bytes, file_count) for a directory tree."""
    total = 0
    count = 0
    for path in root.rglob("*"):
        if path.is_file() and not path.is_symlink():
            total += path.stat().st_size
            count += 1
    return total, count


class CacheStore:
    """Key-value store of compiled dependency output keyed by fingerprint."""

    def __init__(self, root: Path, lock_timeout: float | None = None) -> None:
        self.root = root
        self.lock_timeout = lock_timeout
        self.entries_dir = root / "entries"
        self.scratch_dir = root / "scratch"
        self.lock_dir = root / ".locks"

    def _entry_dir(self, fingerprint: str) -> Path:
        key = fingerprint.removeprefix(FINGERPRINT_PREFIX)
        if not key or "/" in key or key.startswith("."):
            raise ValueError(f"Invalid fingerprint: {fingerprint!r}")
        return self.entries_dir / key

    def _read_entry(self, entry_dir: Path) -> CacheEntry | None:
        metadata = entry_dir / ENTRY_METADATA_FILE
        try:
            data = json.loads(metadata.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, KeyError) as e:
            logger.warning("Ignoring unreadable cache entry %s: %s", entry_dir, e)
            return None
        return CacheEntry.from_dict(data, entry_dir)

    def lookup(self, fingerprint: str) -> CacheEntry | None:
        """Return the entry for ``fingerprint`` on exact match, else None."""
        entry = self._read_entry(self._entry_dir(fingerprint))
        if entry is None:
            logger.info("Cache miss for %s", fingerprint[:23])
            return None
        if entry.fingerprint != fingerprint:
            logger.warning(
                "Cache entry %s records fingerprint %s; treating as miss",
                entry.path,
                entry.fingerprint[:23],
            )
            return None
        logger.info("Cache hit for %s", fingerprint[:23])
        return entry

    def populate(
        self,
        fingerprint: str,
        manifest: ManifestSchema,
        build_fn: Callable[[Path], Any],
        cached_dirs: tuple[str, ...] | list[str],
        cached_files: tuple[str, ...] | list[str] = (),
    ) -> CacheEntry:
        """Populate the entry for ``fingerprint`` by running a dependency pass.

        At most one populate per fingerprint runs at a time. If another run
        committed the entry while this one waited for the lock, that entry
        is returned and ``build_fn`` is not called.

        Args:
            fingerprint: Manifest fingerprint.
            manifest: Parsed manifest (recorded in entry metadata).
            build_fn: Runs the dependency pass in the given scratch workspace.
            cached_dirs: Workspace directories to store in the entry.
            cached_files: Workspace files to store in the entry, such as a
                lock file the dependency pass generated.

        Returns:
            The committed CacheEntry.

        Raises:
            Whatever ``build_fn`` raises; no entry is committed in that case.
        """
        entry_dir = self._entry_dir(fingerprint)

        with cache_lock(self.lock_dir, fingerprint, timeout=self.lock_timeout):
            existing = self._read_entry(entry_dir)
            if existing is not None and existing.fingerprint == fingerprint:
                logger.info(
                    "Cache entry for %s populated by another run", fingerprint[:23]
                )
                return existing

            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            scratch = Path(tempfile.mkdtemp(prefix="populate_", dir=self.scratch_dir))
            try:
                workspace = scratch / "workspace"
                workspace.mkdir()
                build_fn(workspace)

                staged = scratch / "entry"
                content = staged / ENTRY_CONTENT_DIR
                content.mkdir(parents=True)
                for name in cached_dirs:
                    src = workspace / name
                    if src.exists():
                        shutil.copytree(src, content / name, symlinks=True)
                for name in cached_files:
                    src = workspace / name
                    if src.is_file():
                        shutil.copy2(src, content / name)

                size_bytes, file_count = _tree_stats(content)
                entry = CacheEntry(
                    fingerprint=fingerprint,
                    path=entry_dir,
                    package=manifest.name,
                    dependencies=[str(d) for d in manifest.declared_dependencies()],
                    created_at=datetime.now(timezone.utc).isoformat(),
                    size_bytes=size_bytes,
                    file_count=file_count,
                )
                metadata = entry.to_dict()
                metadata.pop("path")
                (staged / ENTRY_METADATA_FILE).write_text(
                    json.dumps(metadata, indent=2, sort_keys=True), encoding="utf-8"
                )

                # A leftover directory without metadata is an aborted commit
                if entry_dir.exists():
                    shutil.rmtree(entry_dir)
                self.entries_dir.mkdir(parents=True, exist_ok=True)
                os.rename(staged, entry_dir)
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

        logger.info(
            "Committed cache entry %s (%d files, %d bytes)",
            fingerprint[:23],
            file_count,
            size_bytes,
        )
        return entry

    def restore(self, entry: CacheEntry, workspace: Path) -> list[str]:
        """Copy an entry's cached directories and files into ``workspace``.

        Timestamps are preserved so the toolchain sees the dependency
        output as up to date.

        Returns:
            Names of the restored top-level entries.
        """
        workspace.mkdir(parents=True, exist_ok=True)
        restored: list[str] = []
        if not entry.content_dir.is_dir():
            return restored
        for child in sorted(entry.content_dir.iterdir()):
            dest = workspace / child.name
            if child.is_dir():
                shutil.copytree(child, dest, symlinks=True, dirs_exist_ok=True)
            else:
                shutil.copy2(child, dest)
            restored.append(child.name)
        logger.debug("Restored %s into %s", restored, workspace)
        return restored

    def list_entries(self) -> list[CacheEntry]:
        """Return all committed entries, oldest first."""
        if not self.entries_dir.is_dir():
            return []
        entries = [
            entry
            for entry_dir in self.entries_dir.iterdir()
            if entry_dir.is_dir() and (entry := self._read_entry(entry_dir))
        ]
        return sorted(entries, key=lambda e: e.created_at)

    def remove(self, fingerprint: str) -> bool:
        """Remove an entry. Returns True if an entry was removed.

        The entry is first renamed out of ``entries/`` so concurrent lookups
        see either the whole entry or a miss.
        """
        entry_dir = self._entry_dir(fingerprint)
        with cache_lock(self.lock_dir, fingerprint, timeout=self.lock_timeout):
            if not entry_dir.exists():
                return False
            self.scratch_dir.mkdir(parents=True, exist_ok=True)
            doomed = Path(tempfile.mkdtemp(prefix="remove_", dir=self.scratch_dir))
            os.rename(entry_dir, doomed / "entry")
            shutil.rmtree(doomed, ignore_errors=True)
        logger.info("Removed cache entry %s", fingerprint[:23])
        return True

    def prune(self, keep: int | None = None) -> list[str]:
        """Remove abandoned scratch directories and, optionally, old entries.

        Args:
            keep: If given, keep only the ``keep`` most recent entries.

        Returns:
            Fingerprints of removed entries.
        """
        if self.scratch_dir.is_dir():
            cutoff = time.time() - STALE_SCRATCH_SECONDS
            for scratch in self.scratch_dir.iterdir():
                if scratch.stat().st_mtime < cutoff:
                    logger.info("Removing abandoned scratch dir %s", scratch)
                    shutil.rmtree(scratch, ignore_errors=True)

        removed: list[str] = []
        if keep is not None:
            entries = self.list_entries()
            stale = entries[: max(len(entries) - keep, 0)]
            for entry in stale:
                if self.remove(entry.fingerprint):
                    removed.append(entry.fingerprint)
        return removed

    def get_cache_info(self) -> dict[str, Any]:
        """Return summary information about the cache."""
        entries = self.list_entries()
        return {
            "root": str(self.root),
            "entry_count": len(entries),
            "total_size_bytes": sum(e.size_bytes for e in entries),
        }


__all__ = [
    "ENTRY_CONTENT_DIR",
    "ENTRY_METADATA_FILE",
    "STALE_SCRATCH_SECONDS",
    "CacheEntry",
    "CacheStore",
]
