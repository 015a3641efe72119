"""Job queue engine: priority queues with retry, backoff and dead-lettering.

The engine executes opaque payloads and knows nothing about pipelines
or batches. Components that care about a job's fate subscribe to its
status transitions (JobEvent) and react to them; that is the only
completion callback mechanism.
"""

from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from course_jobs.config.settings import QueueConfig
from course_jobs.exceptions import NotFoundError, ValidationError
from course_jobs.logging_config import logger
from course_jobs.queue.job import (
    Dispatch,
    Job,
    JobEvent,
    JobOutcome,
    JobStatus,
    RetryPolicy,
    WorkerCapabilities,
)
from course_jobs.queue.store import JobStore
from course_jobs.services.repository import UnitOfWork
from course_jobs.utils import Clock, new_id, utcnow

JobListener = Callable[[JobEvent], Awaitable[None]]


class JobQueue:
    """Durable, priority-ordered work queue.

    Attributes:
        store: Persistence backend
        config: Queue names, retry policies, visibility timeout
        priorities: Queue names, highest priority first
    """

    def __init__(self, store: JobStore, config: QueueConfig, clock: Clock = utcnow):
        self.store = store
        self.config = config
        self.priorities: List[str] = list(config.queues)
        self._clock = clock
        self._listeners: List[JobListener] = []
        self._default_policy = RetryPolicy.from_config(config.default_retry)
        self._policies: Dict[str, RetryPolicy] = {
            name: RetryPolicy.from_config(job_class)
            for name, job_class in config.job_classes.items()
        }

    def retry_policy(self, job_class: str) -> RetryPolicy:
        return self._policies.get(job_class, self._default_policy)

    def default_queue(self, job_class: str) -> str:
        job_class_config = self.config.job_classes.get(job_class)
        if job_class_config and job_class_config.queue:
            return job_class_config.queue
        return "default"

    def subscribe(self, listener: JobListener) -> None:
        """Register a coroutine called with every job status transition."""
        self._listeners.append(listener)

    async def _publish(self, job: Job, previous: Optional[JobStatus]) -> None:
        event = JobEvent(job=job, previous_status=previous)
        for listener in self._listeners:
            try:
                await listener(event)
            except Exception:
                # Listener state is reconciled by the owning component's resume pass.
                logger.exception(
                    f"Job listener {getattr(listener, '__qualname__', listener)} failed "
                    f"for job {job.job_id} ({previous} -> {job.status.value})"
                )

    async def enqueue(
        self,
        queue_name: Optional[str],
        job_class: str,
        payload: Dict[str, Any],
        *,
        delay: float = 0,
        max_attempts: Optional[int] = None,
        idempotency_key: Optional[str] = None,
        transaction: Optional[UnitOfWork] = None,
        dispatch: Dispatch = Dispatch.IMMEDIATE,
    ) -> str:
        """Schedule a job and return its id immediately.

        Args:
            queue_name: Priority class; None picks the job class default
            job_class: Registered handler name
            payload: Handler input
            delay: Seconds before the job becomes eligible
            max_attempts: Overrides the job class retry policy
            idempotency_key: If a non-dead job holds this key, its id is returned instead
            transaction: Mutation boundary used with Dispatch.AFTER_COMMIT
            dispatch: Persist now, or when the transaction commits

        Returns:
            Job id (the existing job's id on an idempotent hit)

        Raises:
            ValidationError: If the queue is unknown or dispatch needs a transaction
        """
        queue_name = queue_name or self.default_queue(job_class)
        if queue_name not in self.priorities:
            raise ValidationError(f"Unknown queue: {queue_name}")
        if delay < 0:
            raise ValidationError("delay must be non-negative")

        now = self._clock()
        job = Job(
            job_id=new_id(),
            job_class=job_class,
            queue=queue_name,
            payload=payload,
            max_attempts=max_attempts or self.retry_policy(job_class).max_attempts,
            run_at=now + timedelta(seconds=delay),
            created_at=now,
            updated_at=now,
            idempotency_key=idempotency_key,
        )

        if dispatch == Dispatch.AFTER_COMMIT:
            if transaction is None:
                raise ValidationError("Dispatch.AFTER_COMMIT requires a transaction")

            async def _persist_on_commit() -> None:
                await self._persist(job)

            transaction.on_commit(_persist_on_commit)
            logger.debug(f"Job {job.job_id} ({job_class}) deferred until commit")
            return job.job_id

        stored = await self._persist(job)
        return stored.job_id

    async def _persist(self, job: Job) -> Job:
        stored = await self.store.add(job)
        if stored.job_id != job.job_id:
            logger.info(
                f"Idempotent enqueue of {job.job_class} key={job.idempotency_key} "
                f"returned existing job {stored.job_id} ({stored.status.value})"
            )
            return stored
        logger.info(f"Enqueued job {stored.job_id} ({stored.job_class}) on {stored.queue}")
        await self._publish(stored, None)
        return stored

    async def dequeue_next(self, capabilities: Optional[WorkerCapabilities] = None) -> Optional[Job]:
        """Atomically claim the highest-priority eligible job."""
        capabilities = capabilities or WorkerCapabilities()
        queues = [
            q for q in self.priorities
            if capabilities.queues is None or q in capabilities.queues
        ]
        job = await self.store.claim_next(
            queues,
            capabilities.job_classes,
            self._clock(),
            self.config.visibility_timeout_seconds,
        )
        if job is not None:
            logger.debug(f"Dequeued job {job.job_id} ({job.job_class}) attempt {job.attempts}/{job.max_attempts}")
            await self._publish(job, JobStatus.PENDING)
        return job

    async def report_outcome(
        self,
        job_id: str,
        outcome: JobOutcome,
        error_detail: Optional[str] = None,
        *,
        retryable: bool = True,
        result: Any = None,
        attempt: Optional[int] = None,
    ) -> Job:
        """Record the outcome of a running job.

        Success marks the job succeeded. A retryable failure goes back to
        pending with the job class backoff, or dead once attempts are
        exhausted. A non-retryable failure marks the job failed.
        Reports for jobs that are no longer running are ignored, and so
        are reports for an attempt other than the current one: after a
        visibility timeout the job belongs to its redelivery.

        Args:
            attempt: Attempt number the reporting worker claimed

        Raises:
            NotFoundError: If the job does not exist
        """
        job = await self.get(job_id)
        if job.status != JobStatus.RUNNING:
            logger.warning(f"Ignoring {outcome.value} report for job {job_id} in status {job.status.value}")
            return job
        if attempt is not None and attempt != job.attempts:
            logger.warning(
                f"Ignoring {outcome.value} report for job {job_id} from attempt {attempt}, "
                f"attempt {job.attempts} now owns it"
            )
            return job

        now = self._clock()
        changes: Dict[str, Any] = {"updated_at": now, "lease_expires_at": None}
        if outcome == JobOutcome.SUCCESS:
            changes.update(status=JobStatus.SUCCEEDED, result=result, last_error=None)
        elif not retryable:
            changes.update(status=JobStatus.FAILED, last_error=error_detail)
        elif job.attempts >= job.max_attempts:
            changes.update(status=JobStatus.DEAD, last_error=error_detail)
        else:
            delay = self.retry_policy(job.job_class).delay_for(job.attempts)
            changes.update(
                status=JobStatus.PENDING,
                run_at=now + timedelta(seconds=delay),
                last_error=error_detail,
            )

        updated = await self.store.transition(
            job_id, JobStatus.RUNNING, expected_attempts=job.attempts, **changes
        )
        if updated is None:
            logger.warning(f"Job {job_id} changed status while reporting {outcome.value}")
            return await self.get(job_id)

        if updated.status == JobStatus.SUCCEEDED:
            logger.info(f"Job {job_id} ({job.job_class}) succeeded on attempt {job.attempts}")
        elif updated.status == JobStatus.PENDING:
            logger.warning(
                f"Job {job_id} ({job.job_class}) attempt {job.attempts}/{job.max_attempts} failed, "
                f"retrying at {updated.run_at.isoformat()}: {error_detail}"
            )
        elif updated.status == JobStatus.DEAD:
            logger.error(f"Job {job_id} ({job.job_class}) is dead after {job.attempts} attempts: {error_detail}")
        else:
            logger.error(f"Job {job_id} ({job.job_class}) failed terminally: {error_detail}")

        await self._publish(updated, JobStatus.RUNNING)
        return updated

    async def defer(
        self, job_id: str, delay_seconds: float, reason: str, attempt: Optional[int] = None
    ) -> Job:
        """Return a running job to pending without consuming an attempt.

        Like report_outcome(), a deferral from an attempt that no longer
        owns the job is ignored.
        """
        job = await self.get(job_id)
        if attempt is not None and attempt != job.attempts:
            logger.warning(f"Ignoring deferral of job {job_id} from attempt {attempt}, now on {job.attempts}")
            return job
        now = self._clock()
        updated = await self.store.transition(
            job_id,
            JobStatus.RUNNING,
            expected_attempts=job.attempts,
            status=JobStatus.PENDING,
            attempts=max(job.attempts - 1, 0),
            run_at=now + timedelta(seconds=delay_seconds),
            lease_expires_at=None,
            updated_at=now,
        )
        if updated is None:
            logger.warning(f"Job {job_id} changed status before it could be deferred")
            return await self.get(job_id)
        logger.info(f"Deferred job {job_id} ({job.job_class}) by {delay_seconds:.1f}s: {reason}")
        await self._publish(updated, JobStatus.RUNNING)
        return updated

    async def requeue_abandoned(self) -> int:
        """Return running jobs whose lease expired to pending.

        A job abandoned on its last attempt goes dead instead.

        Returns:
            Number of jobs released
        """
        now = self._clock()
        released = 0
        for job in await self.store.expired_leases(now):
            error = f"Visibility timeout expired on attempt {job.attempts}"
            if job.attempts >= job.max_attempts:
                changes = {"status": JobStatus.DEAD, "last_error": error}
            else:
                changes = {"status": JobStatus.PENDING, "run_at": now, "last_error": error}
            updated = await self.store.transition(
                job.job_id, JobStatus.RUNNING, lease_expires_at=None, updated_at=now, **changes
            )
            if updated is None:
                continue
            released += 1
            logger.warning(f"Job {job.job_id} ({job.job_class}) abandoned, now {updated.status.value}")
            await self._publish(updated, JobStatus.RUNNING)
        return released

    async def get(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    async def find_by_idempotency_key(self, key: str) -> List[Job]:
        return await self.store.find_by_idempotency_key(key)

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        queue: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        return await self.store.list_jobs(status=status, queue=queue, limit=limit)

    async def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-queue job counts for every status, including empty queues."""
        counts = await self.store.counts()
        return {
            queue: {status.value: counts.get(queue, {}).get(status.value, 0) for status in JobStatus}
            for queue in self.priorities
        }

    async def retry_dead(self, job_id: str) -> str:
        """Operator action: enqueue a fresh copy of a dead job.

        Raises:
            ValidationError: If the job is not dead
        """
        job = await self.get(job_id)
        if job.status != JobStatus.DEAD:
            raise ValidationError(f"Can only retry dead jobs, current status: {job.status.value}")
        new_job_id = await self.enqueue(
            job.queue,
            job.job_class,
            job.payload,
            max_attempts=job.max_attempts,
            idempotency_key=job.idempotency_key,
        )
        logger.info(f"Dead job {job_id} re-enqueued by operator as {new_job_id}")
        return new_job_id

    async def purge_terminal(self) -> int:
        """Delete terminal jobs older than the retention window."""
        cutoff = self._clock() - timedelta(hours=self.config.retention_hours)
        purged = await self.store.purge(
            [JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.DEAD], cutoff
        )
        if purged:
            logger.info(f"Purged {purged} terminal jobs older than {cutoff.isoformat()}")
        return purged
