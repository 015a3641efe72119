"""Batch and chunk records for the durable batch store."""

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class BatchRecord(Base):
    """Persisted batch header. Counters are derived from its chunks."""
    __tablename__ = "batches"

    batch_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    operation: Mapped[str] = mapped_column(String(50), nullable=False)
    queue: Mapped[str] = mapped_column(String(50), nullable=False)
    total: Mapped[int] = mapped_column(Integer, nullable=False)
    chunk_size: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)


class BatchChunkRecord(Base):
    """Persisted chunk with its units and outcome."""
    __tablename__ = "batch_chunks"

    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("batches.batch_id", ondelete="CASCADE"), primary_key=True
    )
    chunk_index: Mapped[int] = mapped_column(Integer, primary_key=True)
    start: Mapped[int] = mapped_column(Integer, nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False)
    units: Mapped[list] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failure_samples: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    failed_indexes: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    job_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
