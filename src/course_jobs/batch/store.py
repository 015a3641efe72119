"""Batch storage backends.

complete_chunk() is the aggregation point: it records a chunk outcome
only if the chunk is not terminal yet, so a redelivered completion
event never counts a chunk twice.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, select, update

from course_jobs.batch.model import Batch, BatchStatus, Chunk, ChunkResult, ChunkStatus
from course_jobs.models.batch import BatchChunkRecord, BatchRecord
from course_jobs.models.database import Database

CANCELLED_REASON = "batch cancelled"


class BatchStore(ABC):
    """Persistence interface of the batch coordinator."""

    @abstractmethod
    async def add(self, batch: Batch) -> None:
        pass

    @abstractmethod
    async def get(self, batch_id: str) -> Optional[Batch]:
        pass

    @abstractmethod
    async def mark_dispatched(self, batch_id: str, chunk_index: int, job_id: str) -> bool:
        """pending -> dispatched for a chunk of a running batch."""
        pass

    @abstractmethod
    async def complete_chunk(
        self, batch_id: str, chunk_index: int, result: ChunkResult, status: ChunkStatus
    ) -> bool:
        """Record a chunk outcome once.

        Returns:
            False if the chunk was already terminal
        """
        pass

    @abstractmethod
    async def cancel(self, batch_id: str, max_samples: int) -> bool:
        """running -> cancelled; undispatched chunks fail with CANCELLED_REASON."""
        pass

    @abstractmethod
    async def close_if_done(self, batch_id: str, now: datetime) -> Optional[Batch]:
        """Stamp completed_at once every chunk is terminal.

        A running batch becomes completed; a cancelled one stays cancelled.

        Returns:
            The closed batch, or None if it is not done or already closed
        """
        pass

    @abstractmethod
    async def list_batches(
        self, status: Optional[BatchStatus] = None, closed: Optional[bool] = None, limit: int = 100
    ) -> List[Batch]:
        """Batches newest first.

        closed filters on completed_at: True keeps finished batches, False
        keeps open ones, None keeps both.
        """
        pass


class InMemoryBatchStore(BatchStore):

    def __init__(self):
        self._batches: Dict[str, Batch] = {}
        self._lock = asyncio.Lock()

    async def add(self, batch: Batch) -> None:
        async with self._lock:
            self._batches[batch.batch_id] = copy.deepcopy(batch)

    async def get(self, batch_id: str) -> Optional[Batch]:
        batch = self._batches.get(batch_id)
        return copy.deepcopy(batch) if batch is not None else None

    async def mark_dispatched(self, batch_id: str, chunk_index: int, job_id: str) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != BatchStatus.RUNNING:
                return False
            chunk = batch.chunks[chunk_index]
            if chunk.status != ChunkStatus.PENDING:
                return False
            chunk.status = ChunkStatus.DISPATCHED
            chunk.job_id = job_id
            return True

    async def complete_chunk(
        self, batch_id: str, chunk_index: int, result: ChunkResult, status: ChunkStatus
    ) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                return False
            chunk = batch.chunks[chunk_index]
            if chunk.is_terminal:
                return False
            chunk.apply(result, status)
            return True

    async def cancel(self, batch_id: str, max_samples: int) -> bool:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.status != BatchStatus.RUNNING:
                return False
            batch.status = BatchStatus.CANCELLED
            for chunk in batch.chunks:
                if chunk.status == ChunkStatus.PENDING:
                    chunk.apply(
                        ChunkResult.all_failed(chunk.start, chunk.size, CANCELLED_REASON, max_samples),
                        ChunkStatus.FAILED,
                    )
            return True

    async def close_if_done(self, batch_id: str, now: datetime) -> Optional[Batch]:
        async with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None or batch.completed_at is not None:
                return None
            if not all(chunk.is_terminal for chunk in batch.chunks):
                return None
            if batch.status == BatchStatus.RUNNING:
                batch.status = BatchStatus.COMPLETED
            batch.completed_at = now
            return copy.deepcopy(batch)

    async def list_batches(
        self, status: Optional[BatchStatus] = None, closed: Optional[bool] = None, limit: int = 100
    ) -> List[Batch]:
        batches = [
            b for b in self._batches.values()
            if (status is None or b.status == status)
            and (closed is None or (b.completed_at is not None) == closed)
        ]
        batches.sort(key=lambda b: b.created_at, reverse=True)
        return [copy.deepcopy(b) for b in batches[:limit]]


class SqlBatchStore(BatchStore):
    """Durable batch store: one header row plus one row per chunk."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_chunk(record: BatchChunkRecord) -> Chunk:
        return Chunk(
            index=record.chunk_index,
            start=record.start,
            size=record.size,
            units=list(record.units or []),
            status=ChunkStatus(record.status),
            succeeded=record.succeeded,
            failed=record.failed,
            failure_samples=list(record.failure_samples or []),
            failed_indexes=list(record.failed_indexes or []),
            job_id=record.job_id,
        )

    @staticmethod
    def _to_batch(record: BatchRecord, chunks: List[Chunk]) -> Batch:
        return Batch(
            batch_id=record.batch_id,
            operation=record.operation,
            queue=record.queue,
            total=record.total,
            chunk_size=record.chunk_size,
            chunks=chunks,
            created_at=record.created_at,
            status=BatchStatus(record.status),
            completed_at=record.completed_at,
        )

    @staticmethod
    def _result_values(result: ChunkResult, status: ChunkStatus) -> Dict:
        return {
            "status": status.value,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "failure_samples": list(result.failure_samples),
            "failed_indexes": list(result.failed_indexes),
        }

    async def _load(self, session, record: BatchRecord) -> Batch:
        result = await session.execute(
            select(BatchChunkRecord)
            .where(BatchChunkRecord.batch_id == record.batch_id)
            .order_by(BatchChunkRecord.chunk_index)
        )
        return self._to_batch(record, [self._to_chunk(r) for r in result.scalars().all()])

    async def add(self, batch: Batch) -> None:
        async with self.database.session_maker() as session:
            async with session.begin():
                session.add(
                    BatchRecord(
                        batch_id=batch.batch_id,
                        operation=batch.operation,
                        queue=batch.queue,
                        total=batch.total,
                        chunk_size=batch.chunk_size,
                        status=batch.status.value,
                        created_at=batch.created_at,
                        completed_at=batch.completed_at,
                    )
                )
                await session.flush()
                session.add_all(
                    BatchChunkRecord(
                        batch_id=batch.batch_id,
                        chunk_index=chunk.index,
                        start=chunk.start,
                        size=chunk.size,
                        units=chunk.units,
                        status=chunk.status.value,
                        succeeded=chunk.succeeded,
                        failed=chunk.failed,
                        failure_samples=chunk.failure_samples,
                        failed_indexes=chunk.failed_indexes,
                        job_id=chunk.job_id,
                    )
                    for chunk in batch.chunks
                )

    async def get(self, batch_id: str) -> Optional[Batch]:
        async with self.database.session_maker() as session:
            record = await session.get(BatchRecord, batch_id)
            if record is None:
                return None
            return await self._load(session, record)

    async def mark_dispatched(self, batch_id: str, chunk_index: int, job_id: str) -> bool:
        running = (
            select(BatchRecord.batch_id)
            .where(BatchRecord.batch_id == batch_id, BatchRecord.status == BatchStatus.RUNNING.value)
            .scalar_subquery()
        )
        async with self.database.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(BatchChunkRecord)
                    .where(
                        BatchChunkRecord.batch_id == running,
                        BatchChunkRecord.chunk_index == chunk_index,
                        BatchChunkRecord.status == ChunkStatus.PENDING.value,
                    )
                    .values(status=ChunkStatus.DISPATCHED.value, job_id=job_id)
                    .execution_options(synchronize_session=False)
                )
                return result.rowcount == 1

    async def complete_chunk(
        self, batch_id: str, chunk_index: int, result: ChunkResult, status: ChunkStatus
    ) -> bool:
        async with self.database.session_maker() as session:
            async with session.begin():
                updated = await session.execute(
                    update(BatchChunkRecord)
                    .where(
                        BatchChunkRecord.batch_id == batch_id,
                        BatchChunkRecord.chunk_index == chunk_index,
                        BatchChunkRecord.status.in_(
                            [ChunkStatus.PENDING.value, ChunkStatus.DISPATCHED.value]
                        ),
                    )
                    .values(**self._result_values(result, status))
                    .execution_options(synchronize_session=False)
                )
                return updated.rowcount == 1

    async def cancel(self, batch_id: str, max_samples: int) -> bool:
        async with self.database.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(BatchRecord)
                    .where(BatchRecord.batch_id == batch_id, BatchRecord.status == BatchStatus.RUNNING.value)
                    .values(status=BatchStatus.CANCELLED.value)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return False
                pending = await session.execute(
                    select(BatchChunkRecord.chunk_index, BatchChunkRecord.start, BatchChunkRecord.size).where(
                        BatchChunkRecord.batch_id == batch_id,
                        BatchChunkRecord.status == ChunkStatus.PENDING.value,
                    )
                )
                for chunk_index, start, size in pending.all():
                    failed = ChunkResult.all_failed(start, size, CANCELLED_REASON, max_samples)
                    await session.execute(
                        update(BatchChunkRecord)
                        .where(
                            BatchChunkRecord.batch_id == batch_id,
                            BatchChunkRecord.chunk_index == chunk_index,
                            BatchChunkRecord.status == ChunkStatus.PENDING.value,
                        )
                        .values(**self._result_values(failed, ChunkStatus.FAILED))
                        .execution_options(synchronize_session=False)
                    )
                return True

    async def close_if_done(self, batch_id: str, now: datetime) -> Optional[Batch]:
        async with self.database.session_maker() as session:
            async with session.begin():
                open_chunks = await session.scalar(
                    select(func.count())
                    .select_from(BatchChunkRecord)
                    .where(
                        BatchChunkRecord.batch_id == batch_id,
                        BatchChunkRecord.status.in_(
                            [ChunkStatus.PENDING.value, ChunkStatus.DISPATCHED.value]
                        ),
                    )
                )
                if open_chunks:
                    return None
                record = await session.get(BatchRecord, batch_id)
                if record is None or record.completed_at is not None:
                    return None
                result = await session.execute(
                    update(BatchRecord)
                    .where(BatchRecord.batch_id == batch_id, BatchRecord.completed_at.is_(None))
                    .values(
                        completed_at=now,
                        status=(
                            BatchStatus.COMPLETED.value
                            if record.status == BatchStatus.RUNNING.value
                            else record.status
                        ),
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
            return await self.get(batch_id)

    async def list_batches(
        self, status: Optional[BatchStatus] = None, closed: Optional[bool] = None, limit: int = 100
    ) -> List[Batch]:
        query = select(BatchRecord)
        if status:
            query = query.where(BatchRecord.status == status.value)
        if closed is True:
            query = query.where(BatchRecord.completed_at.is_not(None))
        elif closed is False:
            query = query.where(BatchRecord.completed_at.is_(None))
        query = query.order_by(BatchRecord.created_at.desc()).limit(limit)
        async with self.database.session_maker() as session:
            records = (await session.execute(query)).scalars().all()
            return [await self._load(session, record) for record in records]
