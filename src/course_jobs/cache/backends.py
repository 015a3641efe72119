"""Cache backends holding entries, the tag -> keys index and tag versions.

Tag versions live in the backend so that every process sharing it sees
the same invalidation history: a write made with a version snapshot is
refused once any of its tags has been invalidated since.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Set

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError

from course_jobs.exceptions import CacheBackendError
from course_jobs.models.cache_entry import CacheEntryRecord, CacheTagRecord, CacheTagVersionRecord
from course_jobs.models.database import Database


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: Any
    tags: FrozenSet[str]
    expires_at: Optional[datetime]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now


def _is_current(current: Mapping[str, int], expected: Mapping[str, int]) -> bool:
    return all(current.get(tag, 0) == version for tag, version in expected.items())


class CacheBackend(ABC):
    """Storage of cache entries.

    Every method raises CacheBackendError when the backend is unreachable.
    """

    @abstractmethod
    async def get(self, key: str) -> Optional[CacheEntry]:
        pass

    @abstractmethod
    async def set(self, entry: CacheEntry, expected_versions: Optional[Mapping[str, int]] = None) -> bool:
        """Insert or replace an entry and index it under its tags.

        Args:
            entry: Entry to store
            expected_versions: Tag versions the value was computed under. The
                write is refused if any of them has moved.

        Returns:
            True if the entry was stored
        """
        pass

    @abstractmethod
    async def delete(self, keys: Iterable[str]) -> int:
        """Remove entries and their tag index rows."""
        pass

    @abstractmethod
    async def keys_for_tag(self, tag: str) -> Set[str]:
        pass

    @abstractmethod
    async def tag_versions(self, tags: Iterable[str]) -> Dict[str, int]:
        """Current version of each tag, 0 for a tag never invalidated."""
        pass

    @abstractmethod
    async def bump_tag_version(self, tag: str) -> int:
        pass


class InMemoryCacheBackend(CacheBackend):
    """Process-local backend.

    Setting available to False simulates an unreachable cache.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}
        self._tag_index: Dict[str, Set[str]] = defaultdict(set)
        self._versions: Dict[str, int] = {}
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheBackendError("In-memory cache backend marked unavailable")

    def _unindex(self, entry: CacheEntry) -> None:
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(entry.key)
            if not keys:
                del self._tag_index[tag]

    async def get(self, key: str) -> Optional[CacheEntry]:
        self._check()
        return self._entries.get(key)

    async def set(self, entry: CacheEntry, expected_versions: Optional[Mapping[str, int]] = None) -> bool:
        self._check()
        if expected_versions and not _is_current(self._versions, expected_versions):
            return False
        previous = self._entries.get(entry.key)
        if previous is not None:
            self._unindex(previous)
        self._entries[entry.key] = entry
        for tag in entry.tags:
            self._tag_index[tag].add(entry.key)
        return True

    async def delete(self, keys: Iterable[str]) -> int:
        self._check()
        removed = 0
        for key in list(keys):
            entry = self._entries.pop(key, None)
            if entry is not None:
                self._unindex(entry)
                removed += 1
        return removed

    async def keys_for_tag(self, tag: str) -> Set[str]:
        self._check()
        return set(self._tag_index.get(tag, ()))

    async def tag_versions(self, tags: Iterable[str]) -> Dict[str, int]:
        self._check()
        return {tag: self._versions.get(tag, 0) for tag in tags}

    async def bump_tag_version(self, tag: str) -> int:
        self._check()
        self._versions[tag] = self._versions.get(tag, 0) + 1
        return self._versions[tag]

    def __len__(self) -> int:
        return len(self._entries)


class SqlCacheBackend(CacheBackend):
    """Durable backend: one row per entry, one row per (tag, key), one version row per tag."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, key: str) -> Optional[CacheEntry]:
        try:
            async with self.database.session_maker() as session:
                record = await session.get(CacheEntryRecord, key)
                if record is None:
                    return None
                tag_rows = await session.execute(
                    select(CacheTagRecord.tag).where(CacheTagRecord.key == key)
                )
                return CacheEntry(
                    key=record.key,
                    value=record.value,
                    tags=frozenset(tag_rows.scalars().all()),
                    expires_at=record.expires_at,
                )
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache read failed for {key}: {e}") from e

    async def set(self, entry: CacheEntry, expected_versions: Optional[Mapping[str, int]] = None) -> bool:
        try:
            async with self.database.session_maker() as session:
                async with session.begin():
                    if expected_versions:
                        # Version rows stay locked until the entry is written, so a
                        # concurrent bump either lands before the check or after the
                        # write, where its key deletion removes the entry.
                        result = await session.execute(
                            select(CacheTagVersionRecord.tag, CacheTagVersionRecord.version)
                            .where(CacheTagVersionRecord.tag.in_(list(expected_versions)))
                            .with_for_update()
                        )
                        if not _is_current(dict(result.all()), expected_versions):
                            return False
                    await session.execute(delete(CacheTagRecord).where(CacheTagRecord.key == entry.key))
                    await session.merge(
                        CacheEntryRecord(key=entry.key, value=entry.value, expires_at=entry.expires_at)
                    )
                    await session.flush()
                    session.add_all(CacheTagRecord(tag=tag, key=entry.key) for tag in entry.tags)
            return True
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache write failed for {entry.key}: {e}") from e

    async def delete(self, keys: Iterable[str]) -> int:
        keys = list(keys)
        if not keys:
            return 0
        try:
            async with self.database.session_maker() as session:
                async with session.begin():
                    await session.execute(delete(CacheTagRecord).where(CacheTagRecord.key.in_(keys)))
                    result = await session.execute(
                        delete(CacheEntryRecord).where(CacheEntryRecord.key.in_(keys))
                    )
                    return result.rowcount
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache delete failed: {e}") from e

    async def keys_for_tag(self, tag: str) -> Set[str]:
        try:
            async with self.database.session_maker() as session:
                result = await session.execute(
                    select(CacheTagRecord.key).where(CacheTagRecord.tag == tag)
                )
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache tag lookup failed for {tag}: {e}") from e

    async def tag_versions(self, tags: Iterable[str]) -> Dict[str, int]:
        tags = list(tags)
        try:
            async with self.database.session_maker() as session:
                result = await session.execute(
                    select(CacheTagVersionRecord.tag, CacheTagVersionRecord.version).where(
                        CacheTagVersionRecord.tag.in_(tags)
                    )
                )
                found = dict(result.all())
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache version lookup failed: {e}") from e
        return {tag: found.get(tag, 0) for tag in tags}

    async def bump_tag_version(self, tag: str) -> int:
        try:
            async with self.database.session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(CacheTagVersionRecord)
                        .where(CacheTagVersionRecord.tag == tag)
                        .values(version=CacheTagVersionRecord.version + 1)
                    )
                    if result.rowcount == 0:
                        session.add(CacheTagVersionRecord(tag=tag, version=1))
                        return 1
                    version = await session.scalar(
                        select(CacheTagVersionRecord.version).where(CacheTagVersionRecord.tag == tag)
                    )
                    return version
        except SQLAlchemyError as e:
            raise CacheBackendError(f"Cache version bump failed for {tag}: {e}") from e
