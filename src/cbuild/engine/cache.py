"""
Build Cache - Track which components are already built for a target configuration.

The cache maps component names to the fingerprint of their last successful
build. A component is rebuilt unless its stored entry has the same version and
fingerprint as the freshly computed one. State lives in memory for the length
of a run and is persisted with an explicit lifecycle:

    cache = BuildCache(Path("~/.cbuild/build_cache.json"))
    cache.load()                      # at run start
    if cache.should_build(descriptor, fingerprint):
        ...build...
        cache.record_success(descriptor, fingerprint)
    cache.flush()                     # at run end

Unreadable or corrupt cache files never fail a run: they are logged and the
cache starts empty, which simply means everything is rebuilt.

Thread safety: a store lock guards the entry table, and a per-key lock
serializes should_build()/record_success() for the same component, so a
check and an update of one key never interleave.
"""

import json
import logging
import os
import sys
import threading
import time
from pathlib import Path
from typing import Any

from .models import CacheEntry, ComponentDescriptor

logger = logging.getLogger(__name__)

# Bump when the on-disk layout changes; other versions are treated as corrupt
CACHE_FORMAT_VERSION = 1


class CacheCorruptionError(Exception):
    """Raised internally when the persisted cache can't be decoded."""

    pass


class BuildCacheError(Exception):
    """Raised when the cache can't be written."""

    pass


class BuildCache:
    """Persistent store of successful component builds.

    Args:
        cache_path: JSON file holding the cache. None keeps the cache in memory only.
    """

    def __init__(self, cache_path: Path | None) -> None:
        self._cache_path = cache_path
        self._entries: dict[str, CacheEntry] = {}
        self._store_lock = threading.Lock()
        self._key_locks: dict[str, threading.Lock] = {}
        self._dirty = False
        self._loaded = False
        self.corrupted = False

    @property
    def cache_path(self) -> Path | None:
        return self._cache_path

    @property
    def loaded(self) -> bool:
        return self._loaded

    def _key_lock(self, name: str) -> threading.Lock:
        with self._store_lock:
            lock = self._key_locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._key_locks[name] = lock
            return lock

    # Lifecycle

    def load(self) -> None:
        """Load persisted entries, replacing in-memory state.

        A missing file yields an empty cache. A corrupt file is logged as a
        warning and also yields an empty cache.
        """
        entries: dict[str, CacheEntry] = {}
        self.corrupted = False
        if self._cache_path is not None and self._cache_path.exists():
            try:
                entries = self._read_entries(self._cache_path)
            except CacheCorruptionError as e:
                logger.warning("Ignoring build cache %s, rebuilding everything: %s", self._cache_path, e)
                self.corrupted = True

        with self._store_lock:
            self._entries = entries
            self._dirty = self.corrupted
            self._loaded = True
        logger.debug("Loaded %d build cache entries", len(entries))

    def flush(self) -> None:
        """Write entries back to disk if anything changed since load().

        Raises:
            BuildCacheError: If the cache file can't be written.
        """
        if self._cache_path is None:
            return
        with self._store_lock:
            if not self._dirty:
                return
            data = {
                "version": CACHE_FORMAT_VERSION,
                "entries": {name: entry.to_dict() for name, entry in sorted(self._entries.items())},
            }
            self._dirty = False

        try:
            self._cache_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BuildCacheError(f"Failed to create cache directory: {e}") from e

        lock_file = self._acquire_file_lock()
        try:
            tmp_path = self._cache_path.with_suffix(self._cache_path.suffix + ".tmp")
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self._cache_path)
        except OSError as e:
            raise BuildCacheError(f"Failed to write build cache: {e}") from e
        finally:
            self._release_file_lock(lock_file)

    # Queries and updates

    def should_build(self, descriptor: ComponentDescriptor, fingerprint: str) -> bool:
        """True unless an entry with the same version and fingerprint exists."""
        with self._key_lock(descriptor.name):
            with self._store_lock:
                entry = self._entries.get(descriptor.name)
            return entry is None or not entry.matches(descriptor.version, fingerprint)

    def record_success(self, descriptor: ComponentDescriptor, fingerprint: str) -> CacheEntry:
        """Store a successful build of descriptor at fingerprint."""
        entry = CacheEntry(
            name=descriptor.name,
            version=descriptor.version,
            fingerprint=fingerprint,
            built_at=time.time(),
        )
        with self._key_lock(descriptor.name):
            with self._store_lock:
                self._entries[descriptor.name] = entry
                self._dirty = True
        return entry

    def get(self, name: str) -> CacheEntry | None:
        with self._store_lock:
            return self._entries.get(name)

    def invalidate(self, name: str) -> bool:
        """Drop the entry for one component.

        Returns:
            True if an entry was removed.
        """
        with self._key_lock(name):
            with self._store_lock:
                if name in self._entries:
                    del self._entries[name]
                    self._dirty = True
                    return True
                return False

    def clear(self) -> int:
        """Drop all entries.

        Returns:
            Number of entries removed.
        """
        with self._store_lock:
            count = len(self._entries)
            self._entries = {}
            self._dirty = True
            return count

    def entries(self) -> dict[str, CacheEntry]:
        with self._store_lock:
            return dict(self._entries)

    # Persistence helpers

    def _read_entries(self, path: Path) -> dict[str, CacheEntry]:
        """Decode the cache file.

        Raises:
            CacheCorruptionError: On unreadable files, bad JSON or unexpected layout.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (json.JSONDecodeError, UnicodeDecodeError, OSError) as e:
            raise CacheCorruptionError(str(e)) from e

        if not isinstance(data, dict) or data.get("version") != CACHE_FORMAT_VERSION:
            raise CacheCorruptionError("unexpected cache layout or version")
        raw_entries = data.get("entries")
        if not isinstance(raw_entries, dict):
            raise CacheCorruptionError("missing entries table")

        entries: dict[str, CacheEntry] = {}
        for name, raw in raw_entries.items():
            try:
                entry = CacheEntry.from_dict(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise CacheCorruptionError(f"bad entry for '{name}': {e}") from e
            if entry.name != name:
                raise CacheCorruptionError(f"entry key '{name}' doesn't match entry name '{entry.name}'")
            entries[name] = entry
        return entries

    def _acquire_file_lock(self) -> Any:
        """Acquire a file lock for cross-process synchronization.

        Returns:
            Lock file handle (or None on platforms without locking support)
        """
        assert self._cache_path is not None
        lock_path = self._cache_path.with_suffix(".lock")

        try:
            lock_file = open(lock_path, "w", encoding="utf-8")

            if sys.platform == "win32":
                import msvcrt

                msvcrt.locking(lock_file.fileno(), msvcrt.LK_NBLCK, 1)
            else:  # pragma: no cover - Unix only
                import fcntl  # type: ignore[import-not-found]

                fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)

            return lock_file
        except (ImportError, OSError):
            # Locking not available or failed - continue without lock
            return None

    def _release_file_lock(self, lock_file: Any) -> None:
        if lock_file is None:
            return

        try:
            if sys.platform == "win32":
                import msvcrt

                try:
                    msvcrt.locking(lock_file.fileno(), msvcrt.LK_UNLCK, 1)
                except OSError:
                    pass
            else:  # pragma: no cover - Unix only
                import fcntl  # type: ignore[import-not-found]

                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

            lock_file.close()
        except (ImportError, OSError):
            pass
