"""Tests for the operational API."""

from course_jobs.queue import JobOutcome


class TestHealth:
    """Test service endpoints."""

    async def test_health(self, async_client):
        response = await async_client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_root(self, async_client):
        response = await async_client.get("/")

        assert response.json()["name"] == "Course Jobs API"


class TestQueueEndpoints:
    """Test queue inspection and operator retry."""

    async def test_status_lists_every_queue(self, async_client, services):
        await services.queue.enqueue("low", "cache.warm", {"course_id": "c1"})

        response = await async_client.get("/ops/status")

        assert response.status_code == 200
        body = response.json()
        assert set(body["queues"]) == {"critical", "emails", "default", "low"}
        assert body["queues"]["low"]["pending"] == 1
        assert body["recent_batches"] == []

    async def test_list_jobs_filters(self, async_client, services):
        await services.queue.enqueue("low", "cache.warm", {"course_id": "c1"})
        await services.queue.enqueue("critical", "cache.invalidate", {"tags": ["t"]})

        response = await async_client.get("/ops/jobs", params={"queue": "critical", "status": "pending"})

        jobs = response.json()["jobs"]
        assert [j["job_class"] for j in jobs] == ["cache.invalidate"]
        assert jobs[0]["attempts"] == 0

    async def test_list_jobs_rejects_unknown_status(self, async_client):
        response = await async_client.get("/ops/jobs", params={"status": "exploded"})

        assert response.status_code == 422

    async def test_retry_dead_job(self, async_client, services):
        job_id = await services.queue.enqueue("default", "report.build", {}, max_attempts=1)
        await services.queue.dequeue_next()
        await services.queue.report_outcome(job_id, JobOutcome.FAILURE, "boom")

        response = await async_client.post(f"/ops/jobs/{job_id}/retry")

        assert response.status_code == 200
        body = response.json()
        assert body["retried"] == job_id
        assert (await services.queue.get(body["job_id"])).status.value == "pending"

    async def test_retry_requires_dead_job(self, async_client, services):
        job_id = await services.queue.enqueue("default", "report.build", {})

        assert (await async_client.post(f"/ops/jobs/{job_id}/retry")).status_code == 400
        assert (await async_client.post("/ops/jobs/missing/retry")).status_code == 404


class TestCacheEndpoints:
    """Test cache warming and operator invalidation."""

    async def test_invalidate(self, async_client, services):
        await services.cache.warm("course:c1:overview", {"course:c1"}, None, {"title": "x"})

        response = await async_client.post("/ops/cache/invalidate", json={"tags": ["course:c1", "course:c1"]})

        assert response.status_code == 200
        assert response.json() == {"tags": ["course:c1"]}
        assert await services.cache.get("course:c1:overview") is None

    async def test_invalidate_requires_tags(self, async_client):
        response = await async_client.post("/ops/cache/invalidate", json={"tags": []})

        assert response.status_code == 422

    async def test_warm_schedules_jobs(self, async_client, services, pool, make_course):
        await make_course("c1")
        await make_course("c2")

        response = await async_client.post("/ops/cache/warm", json={"top_n": 1})

        assert response.status_code == 202
        assert len(response.json()["job_ids"]) == 1
        await pool.run_until_idle()
        assert await services.cache.get("course:c1:overview") is not None


class TestBatchEndpoints:
    """Test enrollment CSV intake and batch operations."""

    async def test_csv_batch_lifecycle(self, async_client, services, pool, make_course, make_students):
        await make_course("c1")
        await make_students(3)
        csv_body = "student_id,course_id\ns0,c1\ns1,c1\ns2,c9\n"

        response = await async_client.post(
            "/ops/batches/enrollments",
            content=csv_body.encode("utf-8"),
            params={"chunk_size": 2},
            headers={"Content-Type": "text/csv"},
        )
        assert response.status_code == 202
        batch_id = response.json()["batch_id"]
        assert response.json()["units"] == 3

        await pool.run_until_idle()
        batch = (await async_client.get(f"/ops/batches/{batch_id}", params={"chunks": "true"})).json()
        assert batch["status"] == "completed"
        assert (batch["succeeded"], batch["failed"], batch["pending"]) == (2, 1, 0)
        assert batch["failure_samples"][0]["index"] == 2
        assert [c["status"] for c in batch["chunk_details"]] == ["succeeded", "succeeded"]

        status = (await async_client.get("/ops/status")).json()
        assert [b["batch_id"] for b in status["recent_batches"]] == [batch_id]

        await make_course("c9")
        resubmitted = await async_client.post(f"/ops/batches/{batch_id}/resubmit")
        assert resubmitted.status_code == 202
        await pool.run_until_idle()
        retry = await services.batches.get_batch_status(resubmitted.json()["batch_id"])
        assert (retry.succeeded, retry.failed) == (1, 0)

    async def test_csv_missing_column(self, async_client):
        response = await async_client.post("/ops/batches/enrollments", content=b"student_id\ns1\n")

        assert response.status_code == 400
        assert "course_id" in response.json()["detail"]

    async def test_csv_must_be_utf8(self, async_client):
        response = await async_client.post("/ops/batches/enrollments", content=b"\xff\xfe\x00")

        assert response.status_code == 400

    async def test_cancel_batch(self, async_client, services, make_course, make_students):
        await make_course("c1")
        await make_students(2)
        batch_id = await services.batches.submit_batch(
            "enrollment", [{"student_id": "s0", "course_id": "c1"}, {"student_id": "s1", "course_id": "c1"}]
        )

        response = await async_client.post(f"/ops/batches/{batch_id}/cancel")

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert (await async_client.post(f"/ops/batches/{batch_id}/cancel")).status_code == 400

    async def test_resubmit_running_batch(self, async_client, services, make_course, make_students):
        await make_course("c1")
        await make_students(1)
        batch_id = await services.batches.submit_batch("enrollment", [{"student_id": "s0", "course_id": "c1"}])

        assert (await async_client.post(f"/ops/batches/{batch_id}/resubmit")).status_code == 400

    async def test_unknown_batch(self, async_client):
        assert (await async_client.get("/ops/batches/missing")).status_code == 404
        assert (await async_client.post("/ops/batches/missing/cancel")).status_code == 404


class TestRunEndpoints:
    """Test pipeline run inspection and cancellation."""

    async def test_get_and_cancel_run(self, async_client, services, make_course):
        await make_course("c1")
        accepted = await services.materials.submit_material("c1", "notes.txt", b"hello", "inst-c1")

        response = await async_client.get(f"/ops/runs/{accepted.run_id}")
        assert response.status_code == 200
        run = response.json()
        assert run["pipeline"] == "material"
        assert run["status"] == "in_progress"
        assert run["stages"][0]["job_id"] is not None

        cancelled = await async_client.post(f"/ops/runs/{accepted.run_id}/cancel")
        assert cancelled.json()["status"] == "cancelled"
        assert (await async_client.post(f"/ops/runs/{accepted.run_id}/cancel")).status_code == 400

    async def test_unknown_run(self, async_client):
        assert (await async_client.get("/ops/runs/missing")).status_code == 404
