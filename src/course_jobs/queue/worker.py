"""Workers pulling from the job queue.

A Worker executes one claimed job through the middleware chain and maps
the handler's exceptions onto queue outcomes. WorkerPool runs several
workers concurrently on the event loop and sweeps abandoned jobs.
"""

import asyncio
from typing import List, Optional, Sequence

from course_jobs.exceptions import (
    CapacityExceeded,
    NotFoundError,
    TerminalStageError,
    TransientDependencyError,
    ValidationError,
)
from course_jobs.logging_config import job_context, logger
from course_jobs.queue.engine import JobQueue
from course_jobs.queue.job import Job, JobOutcome, WorkerCapabilities
from course_jobs.queue.middleware import Middleware, build_chain
from course_jobs.queue.registry import JobRegistry


class Worker:
    """Executes jobs one at a time.

    Attributes:
        execution_timeout: Seconds a handler may run before the attempt is
            abandoned as a retryable failure; defaults to the queue's
            visibility timeout, after which the job would be redelivered anyway
    """

    def __init__(
        self,
        name: str,
        queue: JobQueue,
        registry: JobRegistry,
        middlewares: Sequence[Middleware] = (),
        capabilities: Optional[WorkerCapabilities] = None,
        execution_timeout: Optional[float] = None,
    ):
        self.name = name
        self.queue = queue
        self.registry = registry
        self.middlewares = list(middlewares)
        self.capabilities = capabilities
        self.execution_timeout = execution_timeout or queue.config.visibility_timeout_seconds

    async def run_once(self) -> bool:
        """Claim and execute one job.

        Returns:
            False if no job was eligible
        """
        job = await self.queue.dequeue_next(self.capabilities)
        if job is None:
            return False
        with job_context(job):
            await self.execute(job)
        return True

    async def _fail(self, job: Job, error: str, retryable: bool = True) -> None:
        await self.queue.report_outcome(
            job.job_id, JobOutcome.FAILURE, error, retryable=retryable, attempt=job.attempts
        )

    async def execute(self, job: Job) -> None:
        try:
            definition = self.registry.get(job.job_class)
        except NotFoundError as e:
            logger.error(f"{self.name}: {e}")
            await self._fail(job, str(e), retryable=False)
            return

        chain = build_chain(self.middlewares, definition.handler)
        try:
            result = await asyncio.wait_for(chain(job), timeout=self.execution_timeout)
        except CapacityExceeded as e:
            await self.queue.defer(job.job_id, e.retry_after, str(e), attempt=job.attempts)
        except (ValidationError, TerminalStageError) as e:
            await self._fail(job, f"{type(e).__name__}: {e}", retryable=False)
        except TransientDependencyError as e:
            await self._fail(job, f"{type(e).__name__}: {e}")
        except asyncio.TimeoutError:
            logger.error(
                f"{self.name}: job {job.job_id} ({job.job_class}) exceeded {self.execution_timeout}s, abandoning"
            )
            await self._fail(job, f"Execution exceeded {self.execution_timeout}s")
        except Exception as e:
            logger.exception(f"{self.name}: unexpected error in job {job.job_id} ({job.job_class})")
            await self._fail(job, f"{type(e).__name__}: {e}")
        else:
            await self.queue.report_outcome(
                job.job_id, JobOutcome.SUCCESS, result=result, attempt=job.attempts
            )


class WorkerPool:
    """Pool of concurrent workers sharing one queue.

    Attributes:
        workers: The pool's workers
        poll_interval: Idle sleep between empty polls
        sweep_interval: Seconds between abandoned-job sweeps
    """

    def __init__(
        self,
        queue: JobQueue,
        registry: JobRegistry,
        middlewares: Sequence[Middleware] = (),
        concurrency: int = 4,
        poll_interval: float = 1.0,
        sweep_interval: float = 30.0,
        capabilities: Optional[WorkerCapabilities] = None,
    ):
        self.queue = queue
        self.poll_interval = poll_interval
        self.sweep_interval = sweep_interval
        self.workers: List[Worker] = [
            Worker(f"worker-{i}", queue, registry, middlewares, capabilities)
            for i in range(concurrency)
        ]
        self._stopping: Optional[asyncio.Event] = None
        self._tasks: List[asyncio.Task] = []

    async def run_until_idle(self, max_rounds: Optional[int] = None) -> int:
        """Drain every currently eligible job.

        Each round lets every worker claim one job concurrently. Jobs
        enqueued by completion callbacks are picked up in later rounds;
        delayed jobs are left for later.

        Returns:
            Number of jobs executed
        """
        processed = 0
        rounds = 0
        while max_rounds is None or rounds < max_rounds:
            rounds += 1
            await self.queue.requeue_abandoned()
            ran = await asyncio.gather(*(worker.run_once() for worker in self.workers))
            executed = sum(1 for r in ran if r)
            processed += executed
            if executed == 0:
                break
        return processed

    async def start(self) -> None:
        if self._tasks:
            return
        self._stopping = asyncio.Event()
        self._tasks = [asyncio.create_task(self._work(worker)) for worker in self.workers]
        self._tasks.append(asyncio.create_task(self._sweep()))
        logger.info(f"Worker pool started with {len(self.workers)} workers")

    async def stop(self) -> None:
        if not self._tasks:
            return
        self._stopping.set()
        await asyncio.gather(*self._tasks)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _idle(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _work(self, worker: Worker) -> None:
        while not self._stopping.is_set():
            try:
                ran = await worker.run_once()
            except Exception:
                logger.exception(f"{worker.name}: queue error, backing off")
                ran = False
            if not ran:
                await self._idle(self.poll_interval)

    async def _sweep(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.queue.requeue_abandoned()
                await self.queue.purge_terminal()
            except Exception:
                logger.exception("Abandoned job sweep failed")
            await self._idle(self.sweep_interval)
