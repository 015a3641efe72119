"""Cache entry and tag index records for the SQL cache backend."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class CacheEntryRecord(Base):
    __tablename__ = "cache_entries"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class CacheTagRecord(Base):
    """One row per (tag, key) pair."""
    __tablename__ = "cache_tags"

    tag: Mapped[str] = mapped_column(String(255), primary_key=True)
    key: Mapped[str] = mapped_column(
        String(255), ForeignKey("cache_entries.key", ondelete="CASCADE"), primary_key=True
    )


class CacheTagVersionRecord(Base):
    """Invalidation counter per tag, shared by every process using the cache."""
    __tablename__ = "cache_tag_versions"

    tag: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
