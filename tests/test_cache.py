"""Tests for the tagged cache store and the cached course views."""

import asyncio

import pytest

from course_jobs.cache import tags as cache_tags
from course_jobs.cache.backends import InMemoryCacheBackend
from course_jobs.cache.queries import CourseQueries
from course_jobs.cache.store import TaggedCacheStore
from course_jobs.exceptions import ConfigurationError, NotFoundError
from course_jobs.queue import JobStatus


@pytest.fixture
def backend():
    return InMemoryCacheBackend()


@pytest.fixture
def cache(backend, clock):
    return TaggedCacheStore(backend, default_ttl=300, stampede_timeout=5, clock=clock)


class CountingCompute:
    """Compute function counting its calls."""

    def __init__(self, value="v", gate=None):
        self.value = value
        self.gate = gate
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        return f"{self.value}{self.calls}"


class TestGetOrCompute:
    """Test cache-aside reads."""

    async def test_miss_then_hit(self, cache):
        compute = CountingCompute()

        first = await cache.get_or_compute("k", {"t"}, None, compute)
        second = await cache.get_or_compute("k", {"t"}, None, compute)

        assert first == second == "v1"
        assert compute.calls == 1
        assert await cache.get("k") == "v1"

    async def test_ttl_expiry(self, cache, clock):
        compute = CountingCompute()
        await cache.get_or_compute("k", {"t"}, 10, compute)

        clock.advance(9)
        assert await cache.get_or_compute("k", {"t"}, 10, compute) == "v1"
        clock.advance(2)
        assert await cache.get_or_compute("k", {"t"}, 10, compute) == "v2"

    async def test_zero_ttl_never_expires(self, cache, clock):
        compute = CountingCompute()
        await cache.get_or_compute("k", {"t"}, 0, compute)
        clock.advance(10 ** 6)

        assert await cache.get("k") == "v1"

    async def test_compute_error_propagates_and_is_not_cached(self, cache):
        async def _boom():
            raise NotFoundError("gone")

        with pytest.raises(NotFoundError):
            await cache.get_or_compute("k", {"t"}, None, _boom)
        assert await cache.get("k", default="missing") == "missing"


class TestStampede:
    """Test that concurrent misses share one computation."""

    async def test_concurrent_misses_compute_once(self, cache):
        gate = asyncio.Event()
        compute = CountingCompute(gate=gate)

        tasks = [asyncio.create_task(cache.get_or_compute("k", {"t"}, None, compute)) for _ in range(10)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks)

        assert compute.calls == 1
        assert results == ["v1"] * 10

    async def test_waiters_see_the_computation_error(self, cache):
        gate = asyncio.Event()

        async def _fail():
            await gate.wait()
            raise RuntimeError("db down")

        tasks = [asyncio.create_task(cache.get_or_compute("k", {"t"}, None, _fail)) for _ in range(3)]
        await asyncio.sleep(0)
        gate.set()
        results = await asyncio.gather(*tasks, return_exceptions=True)

        assert all(isinstance(r, RuntimeError) for r in results)

    async def test_slow_computation_times_out_waiters(self, backend, clock):
        cache = TaggedCacheStore(backend, stampede_timeout=0.05, clock=clock)
        gate = asyncio.Event()
        slow = CountingCompute(value="slow", gate=gate)
        fast = CountingCompute(value="fast")

        leader = asyncio.create_task(cache.get_or_compute("k", {"t"}, None, slow))
        await asyncio.sleep(0)
        follower = await cache.get_or_compute("k", {"t"}, None, fast)
        gate.set()

        assert follower == "fast1"
        assert await leader == "slow1"


class TestInvalidation:
    """Test tag invalidation and its interaction with in-flight computations."""

    async def test_invalidation_removes_every_tagged_key(self, cache):
        await cache.warm("overview", {"course:c1"}, None, 1)
        await cache.warm("listing", {"course:c1", "course:c1:materials"}, None, 2)
        await cache.warm("other", {"course:c2"}, None, 3)

        removed = await cache.invalidate_tags({"course:c1"})

        assert removed == 2
        assert await cache.get("overview") is None
        assert await cache.get("listing") is None
        assert await cache.get("other") == 3
        assert cache.invalidations["course:c1"] == 1

    async def test_invalidation_during_compute_is_not_stored(self, cache):
        calls = []

        async def _compute():
            calls.append(1)
            if len(calls) == 1:
                await cache.invalidate_tags({"course:c1"})
            return f"value{len(calls)}"

        first = await cache.get_or_compute("k", {"course:c1", "x"}, None, _compute)
        second = await cache.get_or_compute("k", {"course:c1", "x"}, None, _compute)

        assert first == "value1"
        assert second == "value2"
        assert await cache.get("k") == "value2"

    async def test_unrelated_invalidation_does_not_block_store(self, cache):
        async def _compute():
            await cache.invalidate_tags({"course:c2"})
            return "value"

        await cache.get_or_compute("k", {"course:c1"}, None, _compute)

        assert await cache.get("k") == "value"

    async def test_caller_after_invalidation_computes_fresh_value(self, cache):
        data = {"value": "old"}
        gate = asyncio.Event()
        calls = []

        async def _compute():
            calls.append(1)
            value = data["value"]
            if len(calls) == 1:
                await gate.wait()
            return value

        leader = asyncio.create_task(cache.get_or_compute("k", {"T"}, None, _compute))
        while not calls:
            await asyncio.sleep(0)
        data["value"] = "new"
        await cache.invalidate_tags({"T"})

        follower = await cache.get_or_compute("k", {"T"}, None, _compute)
        gate.set()

        assert follower == "new"
        assert len(calls) == 2
        assert await leader == "old"
        assert await cache.get("k") == "new"

    async def test_invalidation_from_another_store_blocks_stale_write(self, backend, clock):
        api_cache = TaggedCacheStore(backend, clock=clock)
        worker_cache = TaggedCacheStore(backend, clock=clock)

        async def _compute():
            await worker_cache.invalidate_tags({"T"})
            return "old"

        assert await api_cache.get_or_compute("k", {"T"}, None, _compute) == "old"
        assert await api_cache.get("k") is None

    async def test_warm_with_outdated_snapshot_is_dropped(self, cache):
        versions = await cache.snapshot({"T"})
        await cache.invalidate_tags({"T"})

        assert await cache.warm("k", {"T"}, None, "stale", versions=versions) is False
        assert await cache.get("k") is None
        assert await cache.warm("k", {"T"}, None, "fresh", versions=await cache.snapshot({"T"})) is True

    async def test_tag_locks_are_released(self, cache):
        for i in range(50):
            await cache.get_or_compute(f"k{i}", {f"student:{i}"}, None, CountingCompute())
            await cache.invalidate_tags({f"student:{i}"})

        assert len(cache._tag_locks) == 0
        assert cache._inflight == {}

    async def test_rewrite_reindexes_tags(self, cache):
        await cache.warm("k", {"old"}, None, 1)
        await cache.warm("k", {"new"}, None, 2)

        assert await cache.invalidate_tags({"old"}) == 0
        assert await cache.get("k") == 2


class TestDegradedMode:
    """Test behaviour with the cache backend unreachable."""

    async def test_reads_compute_directly(self, cache, backend):
        backend.available = False
        compute = CountingCompute()

        assert await cache.get_or_compute("k", {"t"}, None, compute) == "v1"
        assert await cache.get_or_compute("k", {"t"}, None, compute) == "v2"
        assert await cache.get("k", default="none") == "none"

    async def test_failed_invalidation_is_queued_and_retried(self, services, pool, make_course):
        await make_course("c1")
        await services.queries.course_overview("c1")
        services.cache.backend.available = False

        await services.mutations.update_course("c1", title="Abstract Algebra")

        jobs = await services.queue.list_jobs(queue="critical")
        assert [j.job_class for j in jobs] == ["cache.invalidate"]
        assert jobs[0].payload["reason"] == "CourseUpdated"

        services.cache.backend.available = True
        await pool.run_until_idle()

        job = await services.queue.get(jobs[0].job_id)
        assert job.status == JobStatus.SUCCEEDED
        overview = await services.queries.course_overview("c1")
        assert overview["title"] == "Abstract Algebra"

    async def test_invalidate_job_retries_while_unavailable(self, services, pool, clock):
        job_id = await services.queue.enqueue(None, "cache.invalidate", {"tags": ["course:c1"], "reason": "test"})
        services.cache.backend.available = False

        await pool.run_until_idle()

        job = await services.queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempts == 1
        assert "unavailable" in job.last_error


class TestCourseQueries:
    """Test the cached course views."""

    async def test_overview_reflects_enrollments_after_commit(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(2)
        assert (await services.queries.course_overview("c1"))["enrollment_count"] == 0

        await services.mutations.enroll_student("s0", "c1")

        assert (await services.queries.course_overview("c1"))["enrollment_count"] == 1
        roster = await services.queries.course_roster("c1")
        assert [r["student_id"] for r in roster] == ["s0"]

    async def test_unknown_course_overview(self, services):
        with pytest.raises(NotFoundError):
            await services.queries.course_overview("missing")

    async def test_top_courses_and_warming(self, services, pool, make_course, make_students):
        for course_id in ("c1", "c2", "c3"):
            await make_course(course_id)
        await make_students(3)
        for student_id in ("s0", "s1", "s2"):
            await services.mutations.enroll_student(student_id, "c2")
        await services.mutations.enroll_student("s0", "c3")

        assert await services.queries.top_courses_by_enrollment(2) == ["c2", "c3"]

        job_ids = await services.queries.enqueue_warming(2)
        await pool.run_until_idle()

        assert len(job_ids) == 2
        for job_id in job_ids:
            job = await services.queue.get(job_id)
            assert job.queue == "low"
            assert job.status == JobStatus.SUCCEEDED
        assert (await services.cache.get("course:c2:overview"))["enrollment_count"] == 3
        assert await services.cache.get("course:c2:roster") is not None
        assert await services.cache.get("course:c1:overview") is None

    async def test_material_views_are_tagged(self, services):
        await services.cache.warm(
            "course:c1:materials:list", {cache_tags.course_materials("c1")}, None, []
        )

        await services.invalidation.invalidate_derived({cache_tags.course_materials("c1")})

        assert await services.cache.get("course:c1:materials:list") is None

    async def test_warming_skips_view_invalidated_during_computation(
        self, services, make_course, make_students, monkeypatch
    ):
        await make_course("c1")
        await make_students(1)
        compute_roster = services.queries._compute_roster

        async def _roster_then_enroll(course_id):
            roster = await compute_roster(course_id)
            await services.mutations.enroll_student("s0", course_id)
            return roster

        monkeypatch.setattr(services.queries, "_compute_roster", _roster_then_enroll)
        stored = await services.queries.warm_course("c1")

        assert stored["course:c1:roster"] is False
        assert stored["course:c1:materials:list"] is True
        assert await services.cache.get("course:c1:roster") is None
        monkeypatch.setattr(services.queries, "_compute_roster", compute_roster)
        roster = await services.queries.course_roster("c1")
        assert [r["student_id"] for r in roster] == ["s0"]

    async def test_warming_without_queue_is_a_configuration_error(self, services):
        queries = CourseQueries(services.repos, services.cache)

        with pytest.raises(ConfigurationError):
            await queries.enqueue_warming(3)
