"""Batch and chunk value types.

Batch counters are never stored; they are derived from the chunks so
that succeeded + failed + pending == total holds after every chunk event.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class BatchStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class ChunkStatus(str, Enum):
    PENDING = "pending"
    DISPATCHED = "dispatched"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_CHUNK_STATUSES = frozenset({ChunkStatus.SUCCEEDED, ChunkStatus.FAILED})


@dataclass
class ChunkResult:
    """Outcome of one chunk execution."""
    succeeded: int
    failed: int
    failure_samples: List[Dict[str, Any]] = field(default_factory=list)
    failed_indexes: List[int] = field(default_factory=list)

    @classmethod
    def all_failed(cls, start: int, size: int, error: str, max_samples: int) -> "ChunkResult":
        indexes = list(range(start, start + size))
        return cls(
            succeeded=0,
            failed=size,
            failure_samples=[{"index": i, "error": error} for i in indexes[:max_samples]],
            failed_indexes=indexes,
        )


@dataclass
class Chunk:
    """
    A contiguous slice of a batch's units.

    Attributes:
        index: Position of the chunk within the batch
        start: Batch-wide index of the chunk's first unit
        size: Number of units
        units: The units themselves
        failure_samples: Up to N (index, error) pairs
        failed_indexes: Batch-wide indexes of every failed unit
        job_id: Job that executes the chunk
    """
    index: int
    start: int
    size: int
    units: List[Dict[str, Any]]
    status: ChunkStatus = ChunkStatus.PENDING
    succeeded: int = 0
    failed: int = 0
    failure_samples: List[Dict[str, Any]] = field(default_factory=list)
    failed_indexes: List[int] = field(default_factory=list)
    job_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_CHUNK_STATUSES

    def apply(self, result: ChunkResult, status: ChunkStatus) -> None:
        """Record a chunk outcome.

        FAILED means the chunk job itself never completed (dead or
        cancelled). Unit failures are counted either way.
        """
        self.status = status
        self.succeeded = result.succeeded
        self.failed = result.failed
        self.failure_samples = list(result.failure_samples)
        self.failed_indexes = list(result.failed_indexes)


@dataclass
class Batch:
    """
    A bulk operation split into chunks.

    Attributes:
        batch_id: Unique identifier
        operation: Unit handler name (enrollment, certificate, reminder)
        queue: Queue the chunk jobs are placed on
        total: Number of units
        chunk_size: Units per chunk
        chunks: Chunks in order
    """
    batch_id: str
    operation: str
    queue: str
    total: int
    chunk_size: int
    chunks: List[Chunk]
    created_at: datetime
    status: BatchStatus = BatchStatus.RUNNING
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> int:
        return sum(c.succeeded for c in self.chunks if c.is_terminal)

    @property
    def failed(self) -> int:
        return sum(c.failed for c in self.chunks if c.is_terminal)

    @property
    def pending(self) -> int:
        return sum(c.size for c in self.chunks if not c.is_terminal)

    @property
    def inflight(self) -> int:
        return sum(1 for c in self.chunks if c.status == ChunkStatus.DISPATCHED)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.created_at).total_seconds()

    def failure_samples(self, limit: int = 20) -> List[Dict[str, Any]]:
        samples = [s for c in self.chunks for s in c.failure_samples]
        return samples[:limit]

    def to_dict(self, include_chunks: bool = False) -> Dict[str, Any]:
        data = {
            "batch_id": self.batch_id,
            "operation": self.operation,
            "queue": self.queue,
            "status": self.status.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "pending": self.pending,
            "chunk_size": self.chunk_size,
            "chunks": len(self.chunks),
            "failure_samples": self.failure_samples(),
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }
        if include_chunks:
            data["chunk_details"] = [
                {
                    "index": c.index,
                    "start": c.start,
                    "size": c.size,
                    "status": c.status.value,
                    "succeeded": c.succeeded,
                    "failed": c.failed,
                    "job_id": c.job_id,
                }
                for c in self.chunks
            ]
        return data
