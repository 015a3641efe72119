"""Job value types shared by the queue engine, its stores and workers."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

from course_jobs.config.settings import RetryConfig


class JobStatus(str, Enum):
    """Enumeration of job statuses."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD = "dead"


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD})


class JobOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Dispatch(str, Enum):
    """When an enqueued job becomes visible to workers.

    IMMEDIATE persists the job right away. AFTER_COMMIT persists it from
    the triggering transaction's commit hook, so a rolled back mutation
    never leaves a job behind.
    """
    IMMEDIATE = "immediate"
    AFTER_COMMIT = "after_commit"


@dataclass
class Job:
    """
    Unit of schedulable work.

    Attributes:
        job_id: Unique identifier
        job_class: Name of the registered handler
        queue: Priority class the job waits in
        payload: Handler input, opaque to the engine
        max_attempts: Execution budget before the job goes dead
        run_at: Earliest time a worker may pick the job up
        status: Lifecycle status
        attempts: Executions started so far
        idempotency_key: Dedupe key for enqueue and execution
        lease_expires_at: Visibility timeout while running
        last_error: Detail of the most recent failure
        result: Handler return value of the successful execution
        seq: Enqueue order, FIFO tie-breaker
    """
    job_id: str
    job_class: str
    queue: str
    payload: Dict[str, Any]
    max_attempts: int
    run_at: datetime
    created_at: datetime
    updated_at: datetime
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    idempotency_key: Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Any = None
    seq: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


@dataclass(frozen=True)
class JobEvent:
    """A job status transition. previous_status is None on enqueue."""
    job: Job
    previous_status: Optional[JobStatus]

    @property
    def status(self) -> JobStatus:
        return self.job.status


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    backoff_seconds: Tuple[float, ...]

    @classmethod
    def from_config(cls, config: RetryConfig) -> "RetryPolicy":
        return cls(max_attempts=config.max_attempts, backoff_seconds=tuple(config.backoff_seconds))

    def delay_for(self, failed_attempt: int) -> float:
        """Backoff after the given (1-based) failed attempt; the last step repeats."""
        index = min(max(failed_attempt, 1), len(self.backoff_seconds)) - 1
        return self.backoff_seconds[index]


@dataclass(frozen=True)
class WorkerCapabilities:
    """What a worker may execute. None means no restriction."""
    queues: Optional[FrozenSet[str]] = None
    job_classes: Optional[FrozenSet[str]] = field(default=None)
