"""Tagged cache store: cache-aside reads, tag invalidation, stampede protection.

Consistency rules:
- invalidate_tags() removes every key indexed under each tag, whichever
  operation wrote it
- a computation that overlaps an invalidation of one of its tags returns
  its value to the caller but does not store it; tag versions are kept
  by the backend, so this holds across processes sharing it
- callers arriving after an invalidation never join a computation that
  started before it
- tag index mutations run under a per-tag lock, so disjoint tags are
  invalidated without contention
- backend failures degrade get_or_compute() to direct computation
"""

import asyncio
import weakref
from collections import Counter
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from course_jobs.cache.backends import CacheBackend, CacheEntry
from course_jobs.exceptions import CacheBackendError
from course_jobs.logging_config import logger
from course_jobs.utils import Clock, utcnow

ComputeFn = Callable[[], Awaitable[Any]]

_MISSING = object()


class TaggedCacheStore:
    """Key/value cache with tag-based invalidation.

    Attributes:
        backend: Entry, tag index and tag version storage
        default_ttl: TTL in seconds used when a caller passes None
        stampede_timeout: How long concurrent callers wait on an in-flight computation
        invalidations: Count of invalidate_tags() calls per tag
    """

    def __init__(
        self,
        backend: CacheBackend,
        default_ttl: float = 300.0,
        stampede_timeout: float = 10.0,
        clock: Clock = utcnow,
    ):
        self.backend = backend
        self.default_ttl = default_ttl
        self.stampede_timeout = stampede_timeout
        self._clock = clock
        self._inflight: Dict[str, Tuple[asyncio.Future, FrozenSet[str]]] = {}
        # Locks disappear once no coroutine holds or awaits them.
        self._tag_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self.invalidations: Counter = Counter()

    def _lock(self, tag: str) -> asyncio.Lock:
        lock = self._tag_locks.get(tag)
        if lock is None:
            lock = asyncio.Lock()
            self._tag_locks[tag] = lock
        return lock

    async def _lookup(self, key: str) -> Any:
        entry = await self.backend.get(key)
        if entry is None:
            return _MISSING
        if entry.is_expired(self._clock()):
            await self.backend.delete([entry.key])
            return _MISSING
        return entry.value

    async def get(self, key: str, default: Any = None) -> Any:
        """Cached value or default. Backend failures count as a miss."""
        try:
            value = await self._lookup(key)
        except CacheBackendError as e:
            logger.warning(f"Cache unavailable reading {key}: {e}")
            return default
        return default if value is _MISSING else value

    async def snapshot(self, tags: Iterable[str]) -> Dict[str, int]:
        """Current versions of tags, to pass to warm() after computing a value.

        Raises:
            CacheBackendError: If the backend is unreachable
        """
        return await self.backend.tag_versions(sorted(set(tags)))

    async def get_or_compute(
        self,
        key: str,
        tags: Iterable[str],
        ttl: Optional[float],
        compute_fn: ComputeFn,
    ) -> Any:
        """Return the cached value, computing and storing it on a miss.

        Concurrent misses for the same key share one computation. A caller
        that waits longer than stampede_timeout computes on its own.
        """
        tags = frozenset(tags)
        try:
            value = await self._lookup(key)
        except CacheBackendError as e:
            logger.warning(f"Cache unavailable for {key}, computing directly: {e}")
            return await compute_fn()
        if value is not _MISSING:
            return value

        inflight = self._inflight.get(key)
        if inflight is not None:
            try:
                return await asyncio.wait_for(asyncio.shield(inflight[0]), timeout=self.stampede_timeout)
            except asyncio.TimeoutError:
                logger.warning(
                    f"In-flight computation of {key} exceeded {self.stampede_timeout}s, computing independently"
                )
                return await compute_fn()

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = (future, tags)
        try:
            try:
                versions: Optional[Dict[str, int]] = await self.snapshot(tags)
            except CacheBackendError as e:
                logger.warning(f"Cache unavailable for {key}, computing without storing: {e}")
                versions = None
            try:
                value = await compute_fn()
            except Exception as e:
                future.set_exception(e)
                # Mark retrieved: waiters may not exist.
                future.exception()
                raise
            if versions is not None:
                await self._store_if_current(key, tags, ttl, value, versions)
            future.set_result(value)
            return value
        finally:
            if not future.done():
                future.cancel()
            current = self._inflight.get(key)
            if current is not None and current[0] is future:
                del self._inflight[key]

    async def warm(
        self,
        key: str,
        tags: Iterable[str],
        ttl: Optional[float],
        value: Any,
        versions: Optional[Mapping[str, int]] = None,
    ) -> bool:
        """Store a freshly computed value.

        Args:
            versions: Snapshot taken before computing the value. When given,
                the value is dropped if any of its tags was invalidated since.

        Returns:
            True if the value was stored
        """
        tags = frozenset(tags)
        if versions is not None:
            stored = await self._write(key, tags, ttl, value, versions)
            if not stored:
                logger.info(f"Not warming {key}: one of its tags was invalidated during computation")
            return stored
        await self._write(key, tags, ttl, value)
        logger.debug(f"Warmed cache key {key}")
        return True

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """Remove every entry holding any of the tags.

        Returns:
            Number of entries removed

        Raises:
            CacheBackendError: If the backend is unreachable
        """
        tags = set(tags)
        for key, (_, inflight_tags) in list(self._inflight.items()):
            if inflight_tags & tags:
                del self._inflight[key]

        removed = 0
        for tag in sorted(tags):
            async with self._lock(tag):
                self.invalidations[tag] += 1
                await self.backend.bump_tag_version(tag)
                keys = await self.backend.keys_for_tag(tag)
                if keys:
                    removed += await self.backend.delete(keys)
        logger.info(f"Invalidated tags {sorted(tags)}: {removed} entries removed")
        return removed

    async def _store_if_current(
        self,
        key: str,
        tags: FrozenSet[str],
        ttl: Optional[float],
        value: Any,
        versions: Mapping[str, int],
    ) -> None:
        try:
            stored = await self._write(key, tags, ttl, value, versions)
        except CacheBackendError as e:
            logger.warning(f"Cache unavailable storing {key}: {e}")
            return
        if not stored:
            logger.info(f"Not caching {key}: one of its tags was invalidated during computation")

    async def _write(
        self,
        key: str,
        tags: FrozenSet[str],
        ttl: Optional[float],
        value: Any,
        versions: Optional[Mapping[str, int]] = None,
    ) -> bool:
        locks: List[asyncio.Lock] = [self._lock(tag) for tag in sorted(tags)]
        for lock in locks:
            await lock.acquire()
        try:
            ttl = self.default_ttl if ttl is None else ttl
            expires_at = self._clock() + timedelta(seconds=ttl) if ttl > 0 else None
            entry = CacheEntry(key=key, value=value, tags=tags, expires_at=expires_at)
            return await self.backend.set(entry, versions)
        finally:
            for lock in reversed(locks):
                lock.release()
