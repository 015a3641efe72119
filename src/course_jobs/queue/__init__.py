"""Job queue engine."""

from course_jobs.queue.engine import JobListener, JobQueue
from course_jobs.queue.job import (
    Dispatch,
    Job,
    JobEvent,
    JobOutcome,
    JobStatus,
    RetryPolicy,
    WorkerCapabilities,
)
from course_jobs.queue.middleware import (
    DuplicateExecutionGuard,
    Middleware,
    RateLimitMiddleware,
    SlidingWindowRateLimiter,
    TimingMiddleware,
    build_chain,
    default_middlewares,
)
from course_jobs.queue.registry import JobDefinition, JobRegistry
from course_jobs.queue.store import InMemoryJobStore, JobStore, SqlJobStore
from course_jobs.queue.worker import Worker, WorkerPool

__all__ = [
    "JobQueue",
    "JobListener",
    "Dispatch",
    "Job",
    "JobEvent",
    "JobOutcome",
    "JobStatus",
    "RetryPolicy",
    "WorkerCapabilities",
    "Middleware",
    "TimingMiddleware",
    "DuplicateExecutionGuard",
    "RateLimitMiddleware",
    "SlidingWindowRateLimiter",
    "build_chain",
    "default_middlewares",
    "JobDefinition",
    "JobRegistry",
    "JobStore",
    "InMemoryJobStore",
    "SqlJobStore",
    "Worker",
    "WorkerPool",
]
