"""Disk cache for Gerrit queries.

Design Decisions:
- JSON disk cache instead of pickle: cache files never execute code when read
- One directory per Gerrit host and project, so different projects never share entries
- Reads never fail a command: a broken entry is treated as a miss
"""

from __future__ import annotations

import sqlite3
import zlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Optional

import diskcache
import structlog

from grstack.exceptions import CacheError
from grstack.models import ChangeId, ChangeNumber, ChangePatchset

logger = structlog.get_logger(__name__)

DEFAULT_TTL_SECONDS = 600

_READ_ERRORS = (diskcache.Timeout, sqlite3.Error, zlib.error, OSError, ValueError)


class CacheKind(str, Enum):
    """The operation a cache entry memoizes."""

    CHANGE = "change"
    CHANGE_ID = "change-id"
    CHANGE_QUERY = "change-query"
    FETCH = "fetch"
    QUERY = "query"
    API = "api"


@dataclass(frozen=True)
class CacheKey:
    """A cache key, tagged with the kind of operation it memoizes."""

    kind: CacheKind
    value: str

    @classmethod
    def change(cls, number: ChangeNumber) -> CacheKey:
        """A change, indexed by number."""
        return cls(CacheKind.CHANGE, str(number))

    @classmethod
    def change_id(cls, change_id: ChangeId) -> CacheKey:
        """A change, indexed by Change-Id."""
        return cls(CacheKind.CHANGE_ID, change_id)

    @classmethod
    def change_query(cls, query: str) -> CacheKey:
        """A change, indexed by an arbitrary query."""
        return cls(CacheKind.CHANGE_QUERY, query)

    @classmethod
    def fetch(cls, patchset: ChangePatchset) -> CacheKey:
        """The commit a patchset was fetched as."""
        return cls(CacheKind.FETCH, str(patchset))

    @classmethod
    def query(cls, query: str) -> CacheKey:
        """A query to the change database."""
        return cls(CacheKind.QUERY, query)

    @classmethod
    def api(cls, endpoint: str) -> CacheKey:
        """A GET request to the REST API."""
        return cls(CacheKind.API, endpoint)

    def __str__(self) -> str:
        # Change numbers and Change-Ids cannot collide (Change-Ids start with `I`).
        if self.kind in (CacheKind.CHANGE, CacheKind.CHANGE_ID):
            return f"change-{self.value}"
        return f"{self.kind.value}-{self.value}"


class Cache:
    """Disk-backed key/value store with per-entry expiry.

    The backing store can be handed to another process with `detach()` and
    taken back with `attach()`. While detached, every operation raises
    `CacheError`.
    """

    def __init__(self, directory: Path, ttl_seconds: float = DEFAULT_TTL_SECONDS) -> None:
        self.directory = directory
        self.ttl_seconds = ttl_seconds
        self._store: Optional[diskcache.Cache] = None
        self.attach()

    def attach(self) -> None:
        """Open the backing store (again)."""
        if self._store is not None:
            return
        self.directory.mkdir(parents=True, exist_ok=True)
        self._store = diskcache.Cache(
            str(self.directory),
            disk=diskcache.JSONDisk,
            disk_compress_level=1,
        )
        logger.debug("Attached cache", directory=str(self.directory))

    def detach(self) -> None:
        """Close the backing store so another process can use it."""
        if self._store is None:
            return
        self._store.close()
        self._store = None
        logger.debug("Detached cache", directory=str(self.directory))

    @property
    def is_attached(self) -> bool:
        return self._store is not None

    def _require_store(self) -> diskcache.Cache:
        if self._store is None:
            raise CacheError(f"Cache at '{self.directory}' is detached")
        return self._store

    def get(self, key: CacheKey) -> Optional[Any]:
        """Get a cached value, or None if missing, expired or unreadable."""
        store = self._require_store()
        try:
            value = store.get(str(key))
        except _READ_ERRORS as e:
            logger.debug("Cache read failed; treating as a miss", key=str(key), error=str(e))
            return None

        if value is None:
            logger.debug("Cache miss", key=str(key))
        else:
            logger.debug("Cache hit", key=str(key))
        return value

    def set(self, key: CacheKey, value: Any, persistent: bool = False) -> None:
        """Store a JSON-serializable value.

        Args:
            key: Cache key.
            value: JSON-serializable value.
            persistent: If True, the entry never expires.

        Raises:
            CacheError: If the value cannot be serialized or written.
        """
        store = self._require_store()
        expire = None if persistent else self.ttl_seconds
        try:
            store.set(str(key), value, expire=expire)
        except (TypeError, ValueError) as e:
            raise CacheError(f"Cannot serialize value for cache key '{key}': {e}") from e
        except (diskcache.Timeout, sqlite3.Error, OSError) as e:
            raise CacheError(f"Failed to write cache key '{key}': {e}") from e

    def remove(self, key: CacheKey) -> bool:
        """Remove an entry. Returns True if it existed."""
        store = self._require_store()
        try:
            return bool(store.delete(str(key)))
        except (diskcache.Timeout, sqlite3.Error, OSError) as e:
            raise CacheError(f"Failed to remove cache key '{key}': {e}") from e

    def clear(self) -> int:
        """Remove every entry, expired or not. Returns the number removed."""
        store = self._require_store()
        removed = store.clear()
        logger.debug("Cleared cache", directory=str(self.directory), removed=removed)
        return removed

    def close(self) -> None:
        self.detach()

    def __enter__(self) -> Cache:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
