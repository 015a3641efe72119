"""Batch coordinator: chunked bulk operations with partial-failure accounting.

A batch is split into chunks; each chunk is one ``batch.chunk`` job on the
operation's queue. At most max_inflight_chunks are dispatched at once and
every chunk completion dispatches the next. Chunk outcomes are aggregated
in the job completion callback, once per chunk.
"""

import asyncio
import weakref
from typing import Any, Dict, Iterable, List, Optional

from course_jobs.batch.model import Batch, BatchStatus, Chunk, ChunkResult, ChunkStatus
from course_jobs.batch.store import BatchStore
from course_jobs.batch.units import UnitContext, UnitHandler
from course_jobs.config.settings import BatchConfig
from course_jobs.exceptions import (
    CourseJobsError,
    NotFoundError,
    TransientDependencyError,
    ValidationError,
)
from course_jobs.logging_config import logger
from course_jobs.queue.engine import JobQueue
from course_jobs.queue.job import Job, JobEvent, JobStatus
from course_jobs.queue.registry import JobRegistry
from course_jobs.services.repository import UnitOfWork
from course_jobs.utils import Clock, new_id, utcnow

CHUNK_JOB_CLASS = "batch.chunk"


def chunk_key(batch_id: str, chunk_index: int) -> str:
    return f"batch:{batch_id}:chunk:{chunk_index}"


class BatchCoordinator:
    """Submits, tracks and aggregates bulk operations.

    Attributes:
        store: Batch persistence
        queue: Queue the chunk jobs run on
        config: Chunking, backpressure and operation queues
    """

    def __init__(self, store: BatchStore, queue: JobQueue, config: BatchConfig, clock: Clock = utcnow):
        self.store = store
        self.queue = queue
        self.config = config
        self._clock = clock
        self._handlers: Dict[str, UnitHandler] = {}
        # Held only while a dispatch runs, so closed batches leave nothing behind.
        self._dispatch_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def register_operation(self, operation: str, handler: UnitHandler) -> None:
        if operation not in self.config.operations:
            raise ValidationError(f"Batch operation {operation} is not configured")
        self._handlers[operation] = handler

    def register(self, registry: JobRegistry) -> None:
        registry.register(CHUNK_JOB_CLASS, self.handle_chunk_job)
        self.queue.subscribe(self.on_job_event)

    async def submit_batch(
        self,
        operation: str,
        units: Iterable[Dict[str, Any]],
        *,
        chunk_size: Optional[int] = None,
        transaction: Optional[UnitOfWork] = None,
    ) -> str:
        """Split units into chunks and start dispatching them.

        With a transaction the batch is persisted and dispatched when it
        commits; the batch id is returned immediately either way.

        Returns:
            Batch id

        Raises:
            ValidationError: If the operation is unknown or there are no units
        """
        operation_config = self.config.operations.get(operation)
        if operation_config is None or operation not in self._handlers:
            raise ValidationError(f"Unknown batch operation: {operation}")
        units = list(units)
        if not units:
            raise ValidationError("Batch has no units")
        size = chunk_size or operation_config.chunk_size or self.config.default_chunk_size
        if size < 1:
            raise ValidationError("chunk_size must be positive")

        chunks = []
        for index, start in enumerate(range(0, len(units), size)):
            part = units[start:start + size]
            chunks.append(Chunk(index=index, start=start, size=len(part), units=part))
        batch = Batch(
            batch_id=new_id(),
            operation=operation,
            queue=operation_config.queue,
            total=len(units),
            chunk_size=size,
            chunks=chunks,
            created_at=self._clock(),
        )

        async def _start() -> None:
            await self.store.add(batch)
            logger.info(
                f"Submitted {operation} batch {batch.batch_id}: {batch.total} units in {len(batch.chunks)} chunks"
            )
            await self._dispatch_more(batch.batch_id)

        if transaction is not None:
            transaction.on_commit(_start)
        else:
            await _start()
        return batch.batch_id

    async def get_batch_status(self, batch_id: str) -> Batch:
        batch = await self.store.get(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch not found: {batch_id}")
        return batch

    async def cancel_batch(self, batch_id: str) -> Batch:
        """Stop dispatching chunks. Dispatched chunks finish and are recorded.

        Raises:
            NotFoundError: If the batch does not exist
            ValidationError: If the batch is not running
        """
        batch = await self.get_batch_status(batch_id)
        if not await self.store.cancel(batch_id, self.config.max_failure_samples):
            raise ValidationError(f"Batch {batch_id} is {batch.status.value}, cannot cancel")
        logger.info(f"Cancelled batch {batch_id}, {batch.inflight} chunks still in flight")
        await self.store.close_if_done(batch_id, self._clock())
        return await self.get_batch_status(batch_id)

    async def failed_units(self, batch_id: str) -> List[Dict[str, Any]]:
        """Every failed unit with its batch-wide index."""
        batch = await self.get_batch_status(batch_id)
        failed = []
        for chunk in batch.chunks:
            for index in chunk.failed_indexes:
                failed.append({"index": index, "unit": chunk.units[index - chunk.start]})
        return failed

    async def resubmit_failed(self, batch_id: str) -> str:
        """Start a new batch made of the failed units of a finished batch.

        Raises:
            ValidationError: If the batch is still running or nothing failed
        """
        batch = await self.get_batch_status(batch_id)
        if batch.completed_at is None:
            raise ValidationError(f"Batch {batch_id} has not finished")
        units = [entry["unit"] for entry in await self.failed_units(batch_id)]
        if not units:
            raise ValidationError(f"Batch {batch_id} has no failed units")
        new_batch_id = await self.submit_batch(batch.operation, units, chunk_size=batch.chunk_size)
        logger.info(f"Resubmitted {len(units)} failed units of batch {batch_id} as {new_batch_id}")
        return new_batch_id

    async def recent_batches(self, limit: int = 10, finished_only: bool = True) -> List[Batch]:
        return await self.store.list_batches(closed=True if finished_only else None, limit=limit)

    async def _dispatch_more(self, batch_id: str) -> int:
        lock = self._dispatch_locks.get(batch_id)
        if lock is None:
            lock = self._dispatch_locks[batch_id] = asyncio.Lock()
        async with lock:
            batch = await self.store.get(batch_id)
            if batch is None or batch.status != BatchStatus.RUNNING:
                return 0
            slots = self.config.max_inflight_chunks - batch.inflight
            dispatched = 0
            for chunk in batch.chunks:
                if slots <= 0:
                    break
                if chunk.status != ChunkStatus.PENDING:
                    continue
                job_id = await self.queue.enqueue(
                    batch.queue,
                    CHUNK_JOB_CLASS,
                    {"batch_id": batch_id, "chunk_index": chunk.index},
                    idempotency_key=chunk_key(batch_id, chunk.index),
                )
                if await self.store.mark_dispatched(batch_id, chunk.index, job_id):
                    dispatched += 1
                    slots -= 1
            return dispatched

    async def handle_chunk_job(self, job: Job) -> Dict[str, Any]:
        """Apply every unit of a chunk independently.

        A transient dependency error retries the whole chunk while the job
        has attempts left; unit handlers are idempotent, so units applied on
        an earlier attempt are replays. On the last attempt the unit is
        recorded as failed instead, so one unit that never recovers does
        not turn every unit of its chunk into a failure.
        """
        batch_id = job.payload["batch_id"]
        index = int(job.payload["chunk_index"])
        batch = await self.store.get(batch_id)
        if batch is None:
            raise ValidationError(f"Batch not found: {batch_id}")
        chunk = batch.chunks[index]
        if chunk.is_terminal:
            return {"batch_id": batch_id, "chunk_index": index, "skipped": "chunk already recorded"}
        handler = self._handlers.get(batch.operation)
        if handler is None:
            raise ValidationError(f"No unit handler for operation {batch.operation}")

        last_attempt = job.attempts >= job.max_attempts
        succeeded = 0
        failed_indexes: List[int] = []
        samples: List[Dict[str, Any]] = []
        for offset, unit in enumerate(chunk.units):
            unit_index = chunk.start + offset
            try:
                await handler.apply(unit, UnitContext(batch_id, batch.operation, unit_index))
            except TransientDependencyError as e:
                if not last_attempt:
                    raise
                logger.warning(f"Unit {unit_index} of batch {batch_id} still failing on the last attempt: {e}")
                error: Exception = e
            except Exception as e:
                if not isinstance(e, CourseJobsError):
                    logger.exception(f"Unit {unit_index} of batch {batch_id} raised unexpectedly")
                error = e
            else:
                succeeded += 1
                continue
            failed_indexes.append(unit_index)
            if len(samples) < self.config.max_failure_samples:
                samples.append({"index": unit_index, "error": f"{type(error).__name__}: {error}"})

        if failed_indexes:
            logger.warning(
                f"Chunk {index} of batch {batch_id}: {succeeded} succeeded, {len(failed_indexes)} failed"
            )
        return {
            "batch_id": batch_id,
            "chunk_index": index,
            "succeeded": succeeded,
            "failed": len(failed_indexes),
            "failure_samples": samples,
            "failed_indexes": failed_indexes,
        }

    async def on_job_event(self, event: JobEvent) -> None:
        """Completion callback for chunk jobs."""
        job = event.job
        if job.job_class != CHUNK_JOB_CLASS:
            return
        if event.status in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD):
            await self._chunk_finished(job)

    async def _chunk_finished(self, job: Job) -> None:
        batch_id = job.payload["batch_id"]
        index = int(job.payload["chunk_index"])
        result = job.result or {}
        if job.status == JobStatus.SUCCEEDED:
            if "succeeded" not in result:
                # Skipped or duplicate execution, the chunk was recorded already.
                return
            outcome = ChunkResult(
                succeeded=result["succeeded"],
                failed=result["failed"],
                failure_samples=result.get("failure_samples", []),
                failed_indexes=result.get("failed_indexes", []),
            )
            status = ChunkStatus.SUCCEEDED
        else:
            batch = await self.store.get(batch_id)
            if batch is None:
                return
            chunk = batch.chunks[index]
            outcome = ChunkResult.all_failed(
                chunk.start,
                chunk.size,
                f"chunk job {job.status.value}: {job.last_error}",
                self.config.max_failure_samples,
            )
            status = ChunkStatus.FAILED

        if not await self.store.complete_chunk(batch_id, index, outcome, status):
            logger.debug(f"Chunk {index} of batch {batch_id} already recorded")
            return
        await self._dispatch_more(batch_id)
        closed = await self.store.close_if_done(batch_id, self._clock())
        if closed is not None:
            logger.info(
                f"Batch {batch_id} {closed.status.value}: {closed.succeeded} succeeded, "
                f"{closed.failed} failed of {closed.total} in {closed.duration_seconds:.1f}s"
            )

    async def resume(self) -> int:
        """Reconcile open batches after a restart.

        Chunks whose job already finished get their outcome recorded,
        lost dispatches are repeated and finished batches are closed.

        Returns:
            Number of batches examined
        """
        batches = await self.store.list_batches(closed=False, limit=1000)
        for batch in batches:
            for chunk in batch.chunks:
                if chunk.status != ChunkStatus.DISPATCHED or chunk.job_id is None:
                    continue
                try:
                    job = await self.queue.get(chunk.job_id)
                except NotFoundError:
                    logger.warning(f"Job {chunk.job_id} of batch {batch.batch_id} chunk {chunk.index} was purged")
                    continue
                if job.is_terminal:
                    await self._chunk_finished(job)
            await self._dispatch_more(batch.batch_id)
            await self.store.close_if_done(batch.batch_id, self._clock())
        if batches:
            logger.info(f"Resumed {len(batches)} open batches")
        return len(batches)
