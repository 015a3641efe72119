"""Execution middleware wrapped around every job handler.

Chain order, outermost first:
1. TimingMiddleware - logs duration and outcome
2. DuplicateExecutionGuard - re-checks the idempotency key at execution time
3. RateLimitMiddleware - rolling window limits for metered dependencies
"""

import time
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Deque, Dict, Sequence

from course_jobs.config.settings import QueueConfig
from course_jobs.exceptions import CapacityExceeded
from course_jobs.logging_config import logger
from course_jobs.queue.job import Job, JobStatus
from course_jobs.utils import Clock, utcnow

if TYPE_CHECKING:
    from course_jobs.queue.engine import JobQueue

NextHandler = Callable[[Job], Awaitable[Any]]


class Middleware(ABC):
    """One link of the execution chain."""

    @abstractmethod
    async def __call__(self, job: Job, call_next: NextHandler) -> Any:
        pass


class TimingMiddleware(Middleware):
    """Logs start, duration and outcome of each execution."""

    async def __call__(self, job: Job, call_next: NextHandler) -> Any:
        started = time.perf_counter()
        logger.info(f"Executing job {job.job_id} ({job.job_class}) attempt {job.attempts}/{job.max_attempts}")
        try:
            result = await call_next(job)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.warning(
                f"Job {job.job_id} ({job.job_class}) raised {type(e).__name__} after {elapsed_ms:.1f}ms: {e}"
            )
            raise
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.info(f"Job {job.job_id} ({job.job_class}) finished in {elapsed_ms:.1f}ms")
        return result


class DuplicateExecutionGuard(Middleware):
    """Skips execution when another job with the same key already succeeded.

    Enqueue-time dedupe cannot see jobs created concurrently or re-enqueued
    after a dead copy; this guard re-checks right before the handler runs.
    If a sibling with the same key is running, the job is deferred until
    the sibling finishes.
    """

    def __init__(self, queue: "JobQueue", retry_after: float = 30.0):
        self.queue = queue
        self.retry_after = retry_after

    async def __call__(self, job: Job, call_next: NextHandler) -> Any:
        if not job.idempotency_key:
            return await call_next(job)
        siblings = [
            other for other in await self.queue.find_by_idempotency_key(job.idempotency_key)
            if other.job_id != job.job_id
        ]
        for other in siblings:
            if other.status == JobStatus.SUCCEEDED:
                logger.info(
                    f"Job {job.job_id} skipped: {job.idempotency_key} already executed by {other.job_id}"
                )
                return {"duplicate_of": other.job_id}
        if any(other.status == JobStatus.RUNNING for other in siblings):
            raise CapacityExceeded(f"duplicate:{job.idempotency_key}", self.retry_after)
        return await call_next(job)


class SlidingWindowRateLimiter:
    """Admits at most max_calls within any rolling window."""

    def __init__(self, max_calls: int, window_seconds: float, clock: Clock = utcnow):
        self.max_calls = max_calls
        self.window_seconds = window_seconds
        self._clock = clock
        self._calls: Deque[float] = deque()

    def try_acquire(self) -> float:
        """Take a slot if one is free.

        Returns:
            0 if admitted, otherwise seconds until the oldest call leaves the window
        """
        now = self._clock().timestamp()
        while self._calls and self._calls[0] <= now - self.window_seconds:
            self._calls.popleft()
        if len(self._calls) < self.max_calls:
            self._calls.append(now)
            return 0.0
        return max(self._calls[0] + self.window_seconds - now, 0.001)


class RateLimitMiddleware(Middleware):
    """Caps executions of rate-limited job classes.

    Over the limit the job is not dropped: CapacityExceeded makes the
    worker re-queue it with a delay.
    """

    def __init__(self, config: QueueConfig, clock: Clock = utcnow):
        self.config = config
        self.limiters: Dict[str, SlidingWindowRateLimiter] = {
            name: SlidingWindowRateLimiter(limit.max_calls, limit.window_seconds, clock)
            for name, limit in config.rate_limits.items()
        }

    async def __call__(self, job: Job, call_next: NextHandler) -> Any:
        job_class_config = self.config.job_classes.get(job.job_class)
        resource = job_class_config.rate_limit if job_class_config else None
        if resource:
            wait = self.limiters[resource].try_acquire()
            if wait > 0:
                raise CapacityExceeded(resource, wait)
        return await call_next(job)


def build_chain(middlewares: Sequence[Middleware], handler: NextHandler) -> NextHandler:
    """Wrap handler so that middlewares[0] runs outermost."""
    chain = handler
    for middleware in reversed(middlewares):
        chain = _bind(middleware, chain)
    return chain


def _bind(middleware: Middleware, call_next: NextHandler) -> NextHandler:
    async def _call(job: Job) -> Any:
        return await middleware(job, call_next)
    return _call


def default_middlewares(queue: "JobQueue", clock: Clock = utcnow) -> list:
    return [
        TimingMiddleware(),
        DuplicateExecutionGuard(queue),
        RateLimitMiddleware(queue.config, clock),
    ]
