"""Per-fingerprint file locks.

Populating the same cache entry is serialized across processes with an
exclusive ``flock`` on a lock file named after the fingerprint. Different
fingerprints use different lock files and never wait on each other.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from stagebuild.errors import CacheLockTimeout

logger = logging.getLogger(__name__)

LOCK_POLL_INTERVAL = 0.1


def lock_path_for(lock_dir: Path, fingerprint: str) -> Path:
    """Return the lock file path for a fingerprint."""
    safe_key = fingerprint.replace(":", "_").replace("/", "_")[:80]
    return lock_dir / f"populate_{safe_key}.lock"


@contextmanager
def cache_lock(
    lock_dir: Path,
    fingerprint: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire the populate lock for a fingerprint.

    Args:
        lock_dir: Directory for lock files.
        fingerprint: Fingerprint to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when the lock is held.

    Raises:
        CacheLockTimeout: If the lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_path_for(lock_dir, fingerprint)

    logger.debug("Acquiring cache lock for %s", fingerprint[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise CacheLockTimeout(fingerprint, timeout) from None
                    time.sleep(LOCK_POLL_INTERVAL)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Cache lock acquired for %s", fingerprint[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Cache lock released for %s", fingerprint[:32])
        os.close(fd)


__all__ = ["cache_lock", "lock_path_for"]
