"""Gzip-compressed, key-addressed cache entry storage.

Stores one entry per cache key as <root>/<key>.ts. Entries are written
to <key>.ts.tmp and renamed into place on commit, so a lookup never
sees a half-written capture. Freshness is judged purely from the
entry's filesystem modification time.
"""

from __future__ import annotations

import gzip
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import BinaryIO

logger = logging.getLogger(__name__)

# Sentinel TTL meaning "never expires"
TTL_FOREVER = -1

ENTRY_SUFFIX = ".ts"
TMP_SUFFIX = ".ts.tmp"


class CacheUnavailableError(Exception):
    """Raised when the cache directory or an entry cannot be accessed.

    Attributes:
        path: The file or directory that failed.
        cause: The underlying OSError.
    """

    def __init__(self, path: Path, cause: OSError) -> None:
        self.path = path
        self.cause = cause
        super().__init__(f"Cache unavailable at {path}: {cause}")


class LookupStatus(str, Enum):
    """Outcome of a cache lookup."""

    FRESH = "fresh"
    STALE = "stale"
    ABSENT = "absent"


@dataclass(frozen=True)
class CacheLookup:
    """Result of CacheStore.lookup()."""

    status: LookupStatus
    path: Path
    age_seconds: int | None = None

    @property
    def is_fresh(self) -> bool:
        return self.status is LookupStatus.FRESH


class CacheWriter:
    """Compressing sink for a single cache entry.

    Bytes written here are gzip-compressed into a temp file. commit()
    flushes the compressor and renames the temp file onto the entry;
    abort() removes it. Used as a context manager, leaving the block
    without committing aborts.
    """

    def __init__(self, key: str, final_path: Path, tmp_path: Path) -> None:
        self.key = key
        self.final_path = final_path
        self.tmp_path = tmp_path
        self._raw = open(tmp_path, "wb")
        try:
            self._gzip = gzip.GzipFile(filename="", fileobj=self._raw, mode="wb")
        except OSError:
            self._raw.close()
            raise
        self.closed = False
        self.committed = False

    def write(self, data: bytes) -> int:
        return self._gzip.write(data)

    def flush(self) -> None:
        self._gzip.flush()

    def _close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._gzip.close()
        finally:
            self._raw.close()

    def commit(self) -> Path:
        """Finalize the entry and make it visible to lookups.

        Returns:
            Path of the committed entry file.
        """
        self._close()
        os.replace(self.tmp_path, self.final_path)
        self.committed = True
        logger.debug("Committed cache entry %s", self.final_path)
        return self.final_path

    def abort(self) -> None:
        """Close and delete the in-progress entry.

        Errors flushing the compressor are ignored since the entry is
        being thrown away.
        """
        try:
            self._close()
        except OSError as exc:
            logger.debug("Ignoring close error for aborted entry %s: %s", self.key, exc)
        finally:
            self.tmp_path.unlink(missing_ok=True)
        logger.debug("Aborted cache entry %s", self.key)

    def __enter__(self) -> "CacheWriter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if not self.committed:
            self.abort()


class CacheStore:
    """Map cache keys to compressed record files under a root directory.

    File layout:
        <root>/
            <key>.ts       # Committed gzip entry
            <key>.ts.tmp   # In-progress capture (never served)

    Concurrent captures of the same key are not coordinated; the last
    commit wins.
    """

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def ensure_dirs(self) -> None:
        """Create the cache root directory."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, key: str) -> Path:
        return self.root / f"{key}{ENTRY_SUFFIX}"

    def lookup(
        self, key: str, ttl_seconds: int = TTL_FOREVER, now: float | None = None
    ) -> CacheLookup:
        """Check whether a usable entry exists for key.

        Args:
            key: Cache key of the entry.
            ttl_seconds: Maximum age in seconds, or TTL_FOREVER.
            now: Current epoch time (defaults to time.time()).

        Returns:
            CacheLookup with FRESH when the entry exists and its integer
            age is at most ttl_seconds (or TTL is disabled), STALE when
            it is older, ABSENT when there is no entry.

        Raises:
            CacheUnavailableError: If the entry cannot be inspected.
        """
        path = self.path_for(key)
        try:
            mtime = path.stat().st_mtime
        except FileNotFoundError:
            return CacheLookup(LookupStatus.ABSENT, path)
        except OSError as exc:
            raise CacheUnavailableError(path, exc) from exc

        current = time.time() if now is None else now
        age = int(current - mtime)
        if ttl_seconds == TTL_FOREVER or age <= ttl_seconds:
            return CacheLookup(LookupStatus.FRESH, path, age)
        return CacheLookup(LookupStatus.STALE, path, age)

    def begin_write(self, key: str) -> CacheWriter:
        """Open a compressing sink for a new capture of key.

        Raises:
            CacheUnavailableError: If the cache directory or temp file
                cannot be created.
        """
        tmp_path = self.root / f"{key}{TMP_SUFFIX}"
        try:
            self.ensure_dirs()
            return CacheWriter(key, self.path_for(key), tmp_path)
        except OSError as exc:
            raise CacheUnavailableError(tmp_path, exc) from exc

    def discard(self, key: str) -> bool:
        """Delete the entry for key and any leftover temp file.

        Returns:
            True if a committed entry existed and was deleted.
        """
        path = self.path_for(key)
        existed = path.exists()
        path.unlink(missing_ok=True)
        (self.root / f"{key}{TMP_SUFFIX}").unlink(missing_ok=True)
        if existed:
            logger.debug("Discarded cache entry %s", path)
        return existed

    @contextmanager
    def open_read(self, key: str) -> Iterator[BinaryIO]:
        """Open the entry for key as a decompressed binary stream.

        Raises:
            FileNotFoundError: If no entry exists.
            CacheUnavailableError: If the entry exists but cannot be opened.
        """
        path = self.path_for(key)
        try:
            raw = open(path, "rb")
        except FileNotFoundError:
            raise
        except OSError as exc:
            raise CacheUnavailableError(path, exc) from exc
        with raw, gzip.GzipFile(fileobj=raw, mode="rb") as stream:
            yield stream

    def entries(self) -> list[str]:
        """List keys that have a committed entry, sorted."""
        if not self.root.exists():
            return []
        return sorted(
            f.name.removesuffix(ENTRY_SUFFIX)
            for f in self.root.glob(f"*{ENTRY_SUFFIX}")
        )
