"""Tests for the batch coordinator and its unit handlers."""

import pytest

from course_jobs.batch import (
    CHUNK_JOB_CLASS,
    BatchStatus,
    ChunkStatus,
    EnrollmentUnitHandler,
    UnitContext,
    UnitHandler,
    parse_enrollment_csv,
)
from course_jobs.cache import tags as cache_tags
from course_jobs.config.settings import RateLimitConfig
from course_jobs.container import build_services
from course_jobs.exceptions import DuplicateUnit, NotFoundError, TransientDependencyError, ValidationError
from course_jobs.queue import JobOutcome, JobStatus
from course_jobs.services.entities import Enrollment


def enrollment_rows(count, missing=range(0)):
    return [
        {"student_id": f"s{i}", "course_id": "c-missing" if i in missing else "c1"}
        for i in range(count)
    ]


class RecordingHandler(UnitHandler):
    """Handler raising the queued errors once each, then succeeding."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.applied = []

    async def apply(self, unit, context):
        if self.errors:
            raise self.errors.pop(0)
        self.applied.append(context.unit_index)


class TestEnrollmentBatch:
    """Test bulk enrollment with partial failures."""

    async def test_partial_failure_accounting(self, services, pool, make_course, make_students):
        """5,000 rows with rows 1200-1699 pointing at a missing course."""
        await make_course("c1")
        await make_students(5000)
        invariant_held = []

        async def _check(event):
            if event.job.job_class == CHUNK_JOB_CLASS and event.job.is_terminal:
                batch = await services.batches.get_batch_status(event.job.payload["batch_id"])
                invariant_held.append(batch.succeeded + batch.failed + batch.pending == batch.total)

        services.queue.subscribe(_check)
        batch_id = await services.batches.submit_batch(
            "enrollment", enrollment_rows(5000, missing=range(1200, 1700))
        )
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.total == 5000
        assert batch.succeeded == 4500
        assert batch.failed == 500
        assert batch.pending == 0
        assert batch.completed_at is not None
        assert len(batch.chunks) == 50
        assert all(c.status == ChunkStatus.SUCCEEDED for c in batch.chunks)

        samples = batch.failure_samples(limit=5)
        assert [s["index"] for s in samples] == [1200, 1201, 1202, 1203, 1204]
        assert "Course not found: c-missing" in samples[0]["error"]

        failed = await services.batches.failed_units(batch_id)
        assert [f["index"] for f in failed] == list(range(1200, 1700))

        assert len(invariant_held) == 50
        assert all(invariant_held)
        assert len(await services.repos.enrollments.find_by_parent("c1")) == 4500
        assert services.cache.invalidations[cache_tags.course_roster("c1")] == 4500

    async def test_inflight_chunks_are_capped(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(50)

        batch_id = await services.batches.submit_batch("enrollment", enrollment_rows(50), chunk_size=1)

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.inflight == services.config.batch.max_inflight_chunks
        chunk_jobs = await services.queue.list_jobs(status=JobStatus.PENDING, queue="critical")
        assert len(chunk_jobs) == services.config.batch.max_inflight_chunks

    async def test_duplicate_rows_fail_individually(self, services, pool, make_course, make_students):
        await make_course("c1")
        await make_students(2)
        rows = [
            {"student_id": "s0", "course_id": "c1"},
            {"student_id": "s0", "course_id": "c1"},
            {"student_id": "s1", "course_id": "c1"},
        ]

        batch_id = await services.batches.submit_batch("enrollment", rows)
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert (batch.succeeded, batch.failed) == (2, 1)
        assert batch.failure_samples()[0]["index"] == 1
        assert "DuplicateUnit" in batch.failure_samples()[0]["error"]

    async def test_resubmit_failed_units(self, services, pool, make_course, make_students):
        await make_course("c1")
        await make_students(10)
        batch_id = await services.batches.submit_batch(
            "enrollment", enrollment_rows(10, missing={3, 4}), chunk_size=4
        )
        await pool.run_until_idle()
        await make_course("c-missing")

        retry_id = await services.batches.resubmit_failed(batch_id)
        await pool.run_until_idle()

        retry = await services.batches.get_batch_status(retry_id)
        assert retry.total == 2
        assert (retry.succeeded, retry.failed) == (2, 0)

    async def test_unknown_operation_and_empty_batch(self, services):
        with pytest.raises(ValidationError):
            await services.batches.submit_batch("graduation", [{"x": 1}])
        with pytest.raises(ValidationError):
            await services.batches.submit_batch("enrollment", [])

    async def test_unknown_batch(self, services):
        with pytest.raises(NotFoundError):
            await services.batches.get_batch_status("missing")


class TestChunkExecution:
    """Test retries, dead chunks, cancellation and redelivery."""

    async def test_transient_error_retries_whole_chunk(self, services, pool, clock):
        handler = RecordingHandler(TransientDependencyError("db timeout"))
        services.batches.register_operation("reminder", handler)

        batch_id = await services.batches.submit_batch("reminder", [{"n": i} for i in range(3)])
        await pool.run_until_idle()
        assert (await services.batches.get_batch_status(batch_id)).pending == 3

        clock.advance(60)
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert (batch.succeeded, batch.failed) == (3, 0)
        assert handler.applied == [0, 1, 2]

    async def test_unit_failing_transiently_on_every_attempt_fails_alone(self, services, pool, clock):
        applied = []

        class StuckUnitHandler(UnitHandler):
            async def apply(self, unit, context):
                if context.unit_index == 1:
                    raise TransientDependencyError("mail relay down")
                applied.append(context.unit_index)

        services.batches.register_operation("reminder", StuckUnitHandler())
        batch_id = await services.batches.submit_batch("reminder", [{"n": 0}, {"n": 1}, {"n": 2}])
        for _ in range(6):
            await pool.run_until_idle()
            clock.advance(900)

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert (batch.succeeded, batch.failed) == (2, 1)
        assert batch.chunks[0].status == ChunkStatus.SUCCEEDED
        assert [u["index"] for u in await services.batches.failed_units(batch_id)] == [1]
        assert "TransientDependencyError" in batch.failure_samples()[0]["error"]
        job = await services.queue.get(batch.chunks[0].job_id)
        assert job.status == JobStatus.SUCCEEDED
        assert job.attempts == 5
        assert applied.count(0) == 5
        assert applied.count(2) == 1

    async def test_dead_chunk_counts_every_unit_failed(self, services, pool, clock):
        services.batches.register_operation("reminder", RecordingHandler())
        batch_id = await services.batches.submit_batch("reminder", [{"n": i} for i in range(4)])

        for _ in range(5):
            job = await services.queue.dequeue_next()
            await services.queue.report_outcome(
                job.job_id, JobOutcome.FAILURE, "worker crashed", attempt=job.attempts
            )
            clock.advance(900)

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert (batch.succeeded, batch.failed) == (0, 4)
        assert batch.chunks[0].status == ChunkStatus.FAILED
        assert "chunk job dead" in batch.failure_samples()[0]["error"]
        assert (await services.queue.get(batch.chunks[0].job_id)).status == JobStatus.DEAD

    async def test_storage_rate_limit_defers_chunks(self, settings, runtime_config, clock):
        config = runtime_config.model_copy(deep=True)
        config.queue.rate_limits["storage"] = RateLimitConfig(max_calls=2, window_seconds=60)
        services = build_services(settings, config, clock=clock)
        services.batches.register_operation("reminder", RecordingHandler())
        pool = services.worker_pool()

        batch_id = await services.batches.submit_batch("reminder", [{"n": i} for i in range(3)], chunk_size=1)
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert (batch.succeeded, batch.pending) == (2, 1)
        jobs = [await services.queue.get(chunk.job_id) for chunk in batch.chunks]
        deferred = [job for job in jobs if job.status == JobStatus.PENDING]
        assert len(deferred) == 1
        assert deferred[0].attempts == 0

        clock.advance(60)
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.succeeded == 3

    async def test_cancel_fails_undispatched_chunks(self, services, pool):
        handler = RecordingHandler()
        services.batches.register_operation("reminder", handler)
        batch_id = await services.batches.submit_batch(
            "reminder", [{"n": i} for i in range(30)], chunk_size=1
        )

        cancelled = await services.batches.cancel_batch(batch_id)
        assert cancelled.status == BatchStatus.CANCELLED
        assert cancelled.failed == 10
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.CANCELLED
        assert (batch.succeeded, batch.failed, batch.pending) == (20, 10, 0)
        assert batch.completed_at is not None
        assert batch.failure_samples()[0]["error"] == "batch cancelled"
        with pytest.raises(ValidationError):
            await services.batches.cancel_batch(batch_id)

    async def test_redelivered_chunk_is_not_counted_twice(self, services, pool):
        handler = RecordingHandler()
        services.batches.register_operation("reminder", handler)
        batch_id = await services.batches.submit_batch("reminder", [{"n": 1}, {"n": 2}])
        await pool.run_until_idle()
        batch = await services.batches.get_batch_status(batch_id)
        job = await services.queue.get(batch.chunks[0].job_id)

        result = await services.batches.handle_chunk_job(job)
        await services.batches._chunk_finished(job)

        assert result["skipped"] == "chunk already recorded"
        again = await services.batches.get_batch_status(batch_id)
        assert (again.succeeded, again.failed) == (2, 0)
        assert handler.applied == [0, 1]

    async def test_resume_records_lost_completion(self, services, pool, monkeypatch):
        handler = RecordingHandler()
        services.batches.register_operation("reminder", handler)

        async def _lost(event):
            return None

        monkeypatch.setattr(services.batches, "_chunk_finished", _lost)
        batch_id = await services.batches.submit_batch("reminder", [{"n": 1}])
        await pool.run_until_idle()
        assert (await services.batches.get_batch_status(batch_id)).pending == 1
        monkeypatch.undo()

        assert await services.batches.resume() == 1
        batch = await services.batches.get_batch_status(batch_id)
        assert batch.status == BatchStatus.COMPLETED
        assert batch.succeeded == 1

    async def test_recent_batches_only_finished(self, services, pool):
        services.batches.register_operation("reminder", RecordingHandler())
        done = await services.batches.submit_batch("reminder", [{"n": 1}])
        await pool.run_until_idle()
        await services.batches.submit_batch("reminder", [{"n": 2}])

        recent = await services.batches.recent_batches()
        assert [b.batch_id for b in recent] == [done]
        assert recent[0].duration_seconds == 0

    async def test_finished_batches_release_dispatch_locks(self, services, pool):
        services.batches.register_operation("reminder", RecordingHandler())
        for _ in range(5):
            await services.batches.submit_batch("reminder", [{"n": 1}, {"n": 2}], chunk_size=1)
        await pool.run_until_idle()

        assert len(await services.batches.recent_batches()) == 5
        assert len(services.batches._dispatch_locks) == 0


class TestUnitHandlers:
    """Test per-unit idempotency of the built-in operations."""

    async def test_enrollment_replay_is_success(self, services, make_course, make_students, clock):
        await make_course("c1")
        await make_students(1)
        handler = EnrollmentUnitHandler(services.repos, services.invalidation, clock)
        context = UnitContext("b1", "enrollment", 0)
        unit = {"student_id": "s0", "course_id": "c1"}

        await handler.apply(unit, context)
        await handler.apply(unit, context)

        enrollments = await services.repos.enrollments.find_by_parent("c1")
        assert len(enrollments) == 1
        assert enrollments[0].source == "batch:b1:unit:0"
        assert enrollments[0].semester == "2024-fall"

    async def test_enrollment_existing_from_elsewhere_is_duplicate(self, services, make_course, make_students, clock):
        await make_course("c1")
        await make_students(1)
        await services.repos.enrollments.create(Enrollment(student_id="s0", course_id="c1", semester="2024-fall"))
        handler = EnrollmentUnitHandler(services.repos, services.invalidation, clock)

        with pytest.raises(DuplicateUnit):
            await handler.apply({"student_id": "s0", "course_id": "c1"}, UnitContext("b1", "enrollment", 0))

    async def test_enrollment_unknown_student(self, services, make_course, clock):
        await make_course("c1")
        handler = EnrollmentUnitHandler(services.repos, services.invalidation, clock)

        with pytest.raises(NotFoundError, match="Student not found"):
            await handler.apply({"student_id": "ghost", "course_id": "c1"}, UnitContext("b1", "enrollment", 0))

    async def test_certificates_issued_once(self, services, pool, make_course, make_students):
        await make_course("c1")
        await make_students(2)
        await services.repos.enrollments.create(Enrollment(student_id="s0", course_id="c1", semester="2024-fall"))
        rows = [{"student_id": "s0", "course_id": "c1"}, {"student_id": "s1", "course_id": "c1"}]

        first = await services.batches.submit_batch("certificate", rows)
        await pool.run_until_idle()
        second = await services.batches.submit_batch("certificate", rows[:1])
        await pool.run_until_idle()

        batch = await services.batches.get_batch_status(first)
        assert (batch.succeeded, batch.failed) == (1, 1)
        assert "not enrolled" in batch.failure_samples()[0]["error"]
        assert (await services.batches.get_batch_status(second)).succeeded == 1

        certificates = await services.repos.certificates.find_by_parent("c1")
        assert len(certificates) == 1
        assert certificates[0].storage_key == f"certificates/c1/{certificates[0].certificate_id}.txt"

        mails = [d for d in services.notifier.deliveries if d.template == "certificate_issued"]
        assert len(mails) == 1
        gateway = services.storage.for_artifact("certificate")
        assert gateway.verify_presigned_url(mails[0].data["url"]) == certificates[0].storage_key

    async def test_reminders_go_through_mail_queue(self, services, pool, make_course, make_students):
        await make_course("c1")
        await make_students(3)
        rows = [{"student_id": f"s{i}", "course_id": "c1", "message": "Quiz on Friday"} for i in range(3)]

        batch_id = await services.batches.submit_batch("reminder", rows)
        await pool.run_until_idle()

        assert (await services.batches.get_batch_status(batch_id)).succeeded == 3
        reminders = [d for d in services.notifier.deliveries if d.template == "course_reminder"]
        assert sorted(d.recipient for d in reminders) == ["s0@uni.test", "s1@uni.test", "s2@uni.test"]


class TestEnrollmentCsv:
    """Test CSV intake parsing."""

    def test_rows_become_units(self):
        units = parse_enrollment_csv("student_id,course_id,semester\ns1,c1,2024-fall\ns2,c1,\n", "2025-spring")

        assert units == [
            {"student_id": "s1", "course_id": "c1", "semester": "2024-fall"},
            {"student_id": "s2", "course_id": "c1", "semester": "2025-spring"},
        ]

    def test_bom_and_whitespace(self):
        units = parse_enrollment_csv("\ufeffstudent_id , course_id\n s1 , c1 \n")

        assert units == [{"student_id": "s1", "course_id": "c1"}]

    def test_malformed_rows_do_not_abort(self):
        units = parse_enrollment_csv("student_id,course_id\ns1,c1\n,c1\ns3,c1,extra,more\ns4,c2\n")

        assert len(units) == 4
        assert units[1] == {"_error": "line 3: empty student_id"}
        assert units[2]["_error"].startswith("line 4")
        assert units[3] == {"student_id": "s4", "course_id": "c2"}

    def test_missing_header_column(self):
        with pytest.raises(ValidationError, match="course_id"):
            parse_enrollment_csv("student_id,email\ns1,a@b\n")
