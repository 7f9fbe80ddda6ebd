# =============================================================================
# ISSUE TRIAGE SYSTEM - TTL CACHE
# =============================================================================
"""
TTL Cache

Read-through cache fronting GitHub read calls.

Entries are held in memory and persisted as JSON files under the per-user
cache directory so that repeated CLI invocations share them. Every entry
carries its insertion time and TTL; an entry is never served once
``now > inserted_at + ttl``.

File layout:
    <cache_dir>/issues/octocat_hello-world_42.json
    <cache_dir>/comments/octocat_hello-world_42.json
    <cache_dir>/repo_metadata/octocat_hello-world_labels.json

File format:
    {"value": ..., "cached_at": "2026-01-01T00:00:00+00:00", "ttl": 3600, "etag": null}

Usage:
    cache = TTLCache(cache_dir=default_cache_dir(), ttls={"issues": 3600})
    key = CacheKey("issues", "octocat", "hello-world", "42")
    issue = await cache.get_or_fetch(key, lambda: client.fetch_issue(...))

    # After a write to the same resource
    await cache.invalidate(key)
"""

import asyncio
import json
import logging
import os
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TYPE_CHECKING

if TYPE_CHECKING:
    from monitoring.metrics import MetricsCollector


logger = logging.getLogger(__name__)

APP_DIR_NAME = "issue-triage"

# Default TTLs by resource kind, in seconds
DEFAULT_TTLS: Dict[str, float] = {
    "issues": 60 * 60,
    "comments": 60 * 60,
    "search": 60 * 60,
    "repo_metadata": 24 * 60 * 60,
}

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def default_cache_dir() -> Path:
    """Per-user cache directory, honoring XDG_CACHE_HOME."""
    base = os.environ.get("XDG_CACHE_HOME")
    root = Path(base) if base else Path.home() / ".cache"
    return root / APP_DIR_NAME


# =============================================================================
# DATA STRUCTURES
# =============================================================================

@dataclass(frozen=True)
class CacheKey:
    """Resource kind + owner + repo + optional qualifier."""
    kind: str
    owner: str
    repo: str
    qualifier: Optional[str] = None

    @property
    def resource(self) -> str:
        return f"{self.kind}/{self.owner}_{self.repo}"

    @property
    def relative_path(self) -> str:
        name = f"{self.owner}_{self.repo}"
        if self.qualifier:
            name = f"{name}_{self.qualifier}"
        return f"{_UNSAFE_CHARS.sub('-', self.kind)}/{_UNSAFE_CHARS.sub('-', name)}.json"

    def __str__(self) -> str:
        if self.qualifier:
            return f"{self.resource}/{self.qualifier}"
        return self.resource


@dataclass
class CacheEntry:
    """One cached value with its freshness metadata."""
    key: CacheKey
    value: Any
    inserted_at: float
    ttl: float
    etag: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return now > self.inserted_at + self.ttl

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "cached_at": datetime.fromtimestamp(self.inserted_at, tz=timezone.utc).isoformat(),
            "ttl": self.ttl,
            "etag": self.etag,
        }

    @classmethod
    def from_dict(cls, key: CacheKey, data: Dict[str, Any]) -> "CacheEntry":
        cached_at = datetime.fromisoformat(data["cached_at"])
        if cached_at.tzinfo is None:
            cached_at = cached_at.replace(tzinfo=timezone.utc)
        return cls(
            key=key,
            value=data["value"],
            inserted_at=cached_at.timestamp(),
            ttl=float(data["ttl"]),
            etag=data.get("etag"),
        )


# =============================================================================
# CACHE
# =============================================================================

class TTLCache:
    """
    Lock-guarded TTL cache with optional file persistence.

    Attributes:
        cache_dir: Persistence root, or None for memory only
        enabled: When False every lookup goes to fetch_fn
    """

    def __init__(
        self,
        cache_dir: Optional[Path] = None,
        ttls: Optional[Dict[str, float]] = None,
        default_ttl: float = 60 * 60,
        enabled: bool = True,
        clock: Callable[[], float] = time.time,
        metrics: Optional["MetricsCollector"] = None,
    ):
        self.cache_dir = Path(cache_dir) if cache_dir else None
        self.ttls = dict(DEFAULT_TTLS)
        self.ttls.update(ttls or {})
        self.default_ttl = default_ttl
        self.enabled = enabled
        self._clock = clock
        self._metrics = metrics

        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._key_locks: Dict[CacheKey, asyncio.Lock] = {}

        # Bumped by invalidation; a fetch that straddles a bump is not stored
        self._epoch = 0
        self._key_generations: Dict[CacheKey, int] = {}
        self._resource_generations: Dict[Tuple[str, str, str], int] = {}

    def ttl_for(self, kind: str) -> float:
        return self.ttls.get(kind, self.default_ttl)

    async def _lock_for(self, key: CacheKey) -> asyncio.Lock:
        async with self._lock:
            lock = self._key_locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._key_locks[key] = lock
            return lock

    def _generation(self, key: CacheKey) -> Tuple[int, int, int]:
        return (
            self._epoch,
            self._resource_generations.get((key.kind, key.owner, key.repo), 0),
            self._key_generations.get(key, 0),
        )

    # -------------------------------------------------------------------------
    # Read-through
    # -------------------------------------------------------------------------

    async def get_or_fetch(
        self,
        key: CacheKey,
        fetch_fn: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
    ) -> Any:
        """
        Return the live cached value, or fetch, store and return it.

        Concurrent callers for the same key wait on one fetch. When the key
        is invalidated while the fetch is running, the fetched value is
        returned to this caller but not stored.
        """
        if not self.enabled:
            return await fetch_fn()

        key_lock = await self._lock_for(key)
        async with key_lock:
            entry = await self.get_entry(key)
            if entry is not None:
                logger.debug(f"Cache hit: {key}")
                self._record(key, "hit")
                return entry.value

            self._record(key, "miss")
            async with self._lock:
                generation = self._generation(key)
            value = await fetch_fn()
            if not await self._store(key, value, ttl, expected_generation=generation):
                logger.debug(f"Cache fill discarded, invalidated during fetch: {key}")
            return value

    async def get_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        """Live entry for key, loading from disk if needed; None when absent or stale."""
        now = self._clock()
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = await asyncio.to_thread(self._load, key)
                if entry is not None:
                    self._entries[key] = entry
            if entry is None:
                return None
            if entry.is_expired(now):
                logger.debug(f"Cache expired: {key}")
                self._entries.pop(key, None)
                return None
            return entry

    async def set(
        self,
        key: CacheKey,
        value: Any,
        ttl: Optional[float] = None,
        etag: Optional[str] = None,
    ):
        await self._store(key, value, ttl, etag=etag)

    async def _store(
        self,
        key: CacheKey,
        value: Any,
        ttl: Optional[float],
        etag: Optional[str] = None,
        expected_generation: Optional[Tuple[int, int, int]] = None,
    ) -> bool:
        entry = CacheEntry(
            key=key,
            value=value,
            inserted_at=self._clock(),
            ttl=ttl if ttl is not None else self.ttl_for(key.kind),
            etag=etag,
        )
        async with self._lock:
            if expected_generation is not None and expected_generation != self._generation(key):
                return False
            self._entries[key] = entry
            await asyncio.to_thread(self._persist, entry)
            return True

    # -------------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------------

    async def invalidate(self, key: CacheKey):
        """Drop one entry from memory and disk."""
        async with self._lock:
            self._key_generations[key] = self._key_generations.get(key, 0) + 1
            self._entries.pop(key, None)
            await asyncio.to_thread(self._remove_file, key)
        logger.debug(f"Cache invalidated: {key}")

    async def invalidate_resource(self, kind: str, owner: str, repo: str) -> int:
        """Drop every entry of a kind for one repository, in memory and on disk.

        Returns the number of in-memory entries removed.
        """
        removed = 0
        async with self._lock:
            resource = (kind, owner, repo)
            self._resource_generations[resource] = self._resource_generations.get(resource, 0) + 1
            for key in [k for k in self._entries if (k.kind, k.owner, k.repo) == resource]:
                self._entries.pop(key, None)
                removed += 1
            await asyncio.to_thread(self._remove_resource_files, kind, owner, repo)
        return removed

    async def clear(self):
        async with self._lock:
            self._epoch += 1
            self._entries.clear()
            await asyncio.to_thread(self._remove_all_files)

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def _path_for(self, key: CacheKey) -> Optional[Path]:
        if self.cache_dir is None:
            return None
        return self.cache_dir / key.relative_path

    def _load(self, key: CacheKey) -> Optional[CacheEntry]:
        path = self._path_for(key)
        if path is None or not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return CacheEntry.from_dict(key, data)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache file {path}: {e}")
            return None

    def _persist(self, entry: CacheEntry):
        """Write entry atomically (temp file, then rename)."""
        path = self._path_for(entry.key)
        if path is None:
            return
        temp_path = path.with_suffix(".tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(
                json.dumps(entry.to_dict(), default=str),
                encoding="utf-8",
            )
            temp_path.replace(path)
        except OSError as e:
            # Memory copy still serves this process
            logger.warning(f"Failed to persist cache entry {entry.key}: {e}")
            temp_path.unlink(missing_ok=True)

    def _remove_file(self, key: CacheKey):
        path = self._path_for(key)
        if path is not None:
            path.unlink(missing_ok=True)

    def _remove_resource_files(self, kind: str, owner: str, repo: str):
        if self.cache_dir is None:
            return
        prefix = Path(CacheKey(kind, owner, repo).relative_path[:-len(".json")])
        folder = self.cache_dir / prefix.parent
        if folder.is_dir():
            paths = list(folder.glob(f"{prefix.name}.json")) + list(folder.glob(f"{prefix.name}_*.json"))
            for path in paths:
                path.unlink(missing_ok=True)

    def _remove_all_files(self):
        if self.cache_dir is not None and self.cache_dir.is_dir():
            for path in self.cache_dir.glob("*/*.json"):
                path.unlink(missing_ok=True)

    def _record(self, key: CacheKey, result: str):
        if self._metrics:
            self._metrics.record_cache_lookup(key.kind, result)


__all__ = [
    "CacheKey",
    "CacheEntry",
    "TTLCache",
    "DEFAULT_TTLS",
    "default_cache_dir",
]
