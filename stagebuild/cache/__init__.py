"""Dependency cache layer.

This module handles:
- Fingerprint-keyed storage of compiled dependency output
- Per-fingerprint populate locking
"""

from stagebuild.cache.store import CacheEntry, CacheStore

__all__ = ["CacheEntry", "CacheStore"]
