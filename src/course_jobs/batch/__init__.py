"""Chunked bulk operations."""

from course_jobs.batch.coordinator import CHUNK_JOB_CLASS, BatchCoordinator, chunk_key
from course_jobs.batch.model import Batch, BatchStatus, Chunk, ChunkResult, ChunkStatus
from course_jobs.batch.store import BatchStore, InMemoryBatchStore, SqlBatchStore
from course_jobs.batch.units import (
    CertificateUnitHandler,
    EnrollmentUnitHandler,
    ReminderUnitHandler,
    UnitContext,
    UnitHandler,
    parse_enrollment_csv,
)

__all__ = [
    "BatchCoordinator",
    "CHUNK_JOB_CLASS",
    "chunk_key",
    "Batch",
    "BatchStatus",
    "Chunk",
    "ChunkResult",
    "ChunkStatus",
    "BatchStore",
    "InMemoryBatchStore",
    "SqlBatchStore",
    "UnitContext",
    "UnitHandler",
    "EnrollmentUnitHandler",
    "CertificateUnitHandler",
    "ReminderUnitHandler",
    "parse_enrollment_csv",
]
