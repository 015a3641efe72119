"""Tests for workers, the middleware chain and the outcome mapping."""

import asyncio

import pytest

from course_jobs.config.settings import JobClassConfig, QueueConfig, RateLimitConfig, RetryConfig
from course_jobs.exceptions import (
    CapacityExceeded,
    TerminalStageError,
    TransientDependencyError,
    ValidationError,
)
from course_jobs.queue import (
    InMemoryJobStore,
    JobQueue,
    JobRegistry,
    JobStatus,
    SlidingWindowRateLimiter,
    Worker,
    WorkerPool,
    build_chain,
    default_middlewares,
)


@pytest.fixture
def queue(clock) -> JobQueue:
    config = QueueConfig(
        queues=["critical", "emails", "default"],
        default_retry=RetryConfig(max_attempts=3, backoff_seconds=[60, 300]),
        job_classes={
            "notify": JobClassConfig(queue="emails", max_attempts=5, rate_limit="mail"),
        },
        rate_limits={"mail": RateLimitConfig(max_calls=2, window_seconds=60)},
    )
    return JobQueue(InMemoryJobStore(), config, clock)


@pytest.fixture
def registry() -> JobRegistry:
    return JobRegistry()


@pytest.fixture
def worker(queue, registry, clock) -> Worker:
    return Worker("worker-test", queue, registry, default_middlewares(queue, clock))


class TestWorkerOutcomes:
    """Test the mapping of handler results onto job outcomes."""

    async def test_two_timeouts_then_success(self, queue, registry, worker, clock):
        """Backoff of 1m then 5m, then success on the third attempt."""
        calls = []

        async def flaky(job):
            calls.append(job.attempts)
            if len(calls) < 3:
                raise TransientDependencyError("storage timeout")
            return {"ok": True}

        registry.register("flaky", flaky)
        statuses = []

        async def _record(event):
            statuses.append(event.status.value)

        queue.subscribe(_record)
        job_id = await queue.enqueue("default", "flaky", {})

        assert await worker.run_once()
        assert not await worker.run_once()
        clock.advance(60)
        assert await worker.run_once()
        clock.advance(299)
        assert not await worker.run_once()
        clock.advance(1)
        assert await worker.run_once()

        assert statuses == [
            "pending", "running", "pending", "running", "pending", "running", "succeeded",
        ]
        job = await queue.get(job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 3
        assert calls == [1, 2, 3]
        assert job.result == {"ok": True}

    async def test_validation_error_fails_without_retry(self, queue, registry, worker):
        async def reject(job):
            raise ValidationError("bad payload")

        registry.register("reject", reject)
        job_id = await queue.enqueue("default", "reject", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert job.attempts == 1
        assert "bad payload" in job.last_error

    async def test_terminal_stage_error_fails_without_retry(self, queue, registry, worker):
        async def halt(job):
            raise TerminalStageError("assignment closed")

        registry.register("halt", halt)
        job_id = await queue.enqueue("default", "halt", {})
        await worker.run_once()

        assert (await queue.get(job_id)).status == JobStatus.FAILED

    async def test_unexpected_error_is_retried(self, queue, registry, worker, clock):
        async def crash(job):
            raise KeyError("oops")

        registry.register("crash", crash)
        job_id = await queue.enqueue("default", "crash", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert "KeyError" in job.last_error

    async def test_capacity_exceeded_defers(self, queue, registry, worker, clock):
        async def busy(job):
            raise CapacityExceeded("gpu", 12)

        registry.register("busy", busy)
        job_id = await queue.enqueue("default", "busy", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 0
        assert (job.run_at - clock()).total_seconds() == 12

    async def test_unregistered_job_class_fails(self, queue, worker):
        job_id = await queue.enqueue("default", "nobody.handles.this", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.FAILED
        assert "No handler registered" in job.last_error

    async def test_handler_exceeding_execution_timeout_is_retried(self, queue, registry, clock):
        async def hang(job):
            await asyncio.sleep(5)

        registry.register("hang", hang)
        worker = Worker("worker-slow", queue, registry, execution_timeout=0.01)
        job_id = await queue.enqueue("default", "hang", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert "Execution exceeded" in job.last_error

    def test_execution_timeout_defaults_to_visibility_timeout(self, queue, registry):
        worker = Worker("worker-default", queue, registry)

        assert worker.execution_timeout == queue.config.visibility_timeout_seconds

    async def test_result_of_redelivered_attempt_is_not_recorded(self, queue, registry, worker, clock):
        redelivered = []

        async def slow(job):
            clock.advance(queue.config.visibility_timeout_seconds)
            await queue.requeue_abandoned()
            redelivered.append(await queue.dequeue_next())
            return {"attempt": job.attempts}

        registry.register("slow", slow)
        job_id = await queue.enqueue("default", "slow", {})
        await worker.run_once()

        job = await queue.get(job_id)
        assert job.status == JobStatus.RUNNING
        assert job.attempts == redelivered[0].attempts == 2
        assert job.result is None


class TestMiddleware:
    """Test the duplicate guard and the rate limiter."""

    async def test_chain_order(self):
        order = []

        class Tag:
            def __init__(self, name):
                self.name = name

            async def __call__(self, job, call_next):
                order.append(self.name)
                return await call_next(job)

        async def handler(job):
            order.append("handler")
            return "done"

        chain = build_chain([Tag("outer"), Tag("inner")], handler)
        assert await chain(object()) == "done"
        assert order == ["outer", "inner", "handler"]

    async def test_duplicate_of_succeeded_sibling_is_skipped(self, queue, registry, worker, clock):
        runs = []

        async def once(job):
            runs.append(job.job_id)
            return {"done": True}

        registry.register("once", once)
        first = await queue.enqueue("default", "once", {}, idempotency_key="k")
        await worker.run_once()
        # A dead sibling frees the key; simulate a second copy created by an operator.
        second = await queue.enqueue("default", "once", {})
        await queue.store.transition(second, JobStatus.PENDING, idempotency_key="k")
        await worker.run_once()

        assert runs == [first]
        assert (await queue.get(second)).result == {"duplicate_of": first}

    async def test_rate_limited_job_is_deferred(self, queue, registry, worker, clock):
        sent = []

        async def notify(job):
            sent.append(job.payload["n"])

        registry.register("notify", notify)
        for n in range(3):
            await queue.enqueue(None, "notify", {"n": n})

        for _ in range(3):
            await worker.run_once()
        assert sent == [0, 1]
        deferred = await queue.list_jobs(status=JobStatus.PENDING)
        assert len(deferred) == 1
        assert deferred[0].attempts == 0

        clock.advance(60)
        await worker.run_once()
        assert sent == [0, 1, 2]

    def test_sliding_window(self, clock):
        limiter = SlidingWindowRateLimiter(max_calls=2, window_seconds=10, clock=clock)

        assert limiter.try_acquire() == 0
        clock.advance(4)
        assert limiter.try_acquire() == 0
        assert limiter.try_acquire() == pytest.approx(6)
        clock.advance(6)
        assert limiter.try_acquire() == 0


class TestWorkerPool:
    """Test draining with concurrent workers."""

    async def test_run_until_idle_processes_follow_up_jobs(self, queue, registry, clock):
        seen = []

        async def fan_out(job):
            seen.append(job.payload["depth"])
            if job.payload["depth"] < 3:
                await queue.enqueue("default", "fan_out", {"depth": job.payload["depth"] + 1})

        registry.register("fan_out", fan_out)
        await queue.enqueue("default", "fan_out", {"depth": 0})
        pool = WorkerPool(queue, registry, default_middlewares(queue, clock), concurrency=3)

        processed = await pool.run_until_idle()

        assert processed == 4
        assert seen == [0, 1, 2, 3]

    async def test_start_and_stop(self, queue, registry, clock):
        done = []

        async def work(job):
            done.append(job.job_id)

        registry.register("work", work)
        pool = WorkerPool(queue, registry, concurrency=2, poll_interval=0.01)
        job_id = await queue.enqueue("default", "work", {})

        await pool.start()
        for _ in range(100):
            if done:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert done == [job_id]
        assert (await queue.get(job_id)).status == JobStatus.SUCCEEDED
