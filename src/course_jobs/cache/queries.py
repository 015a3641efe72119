"""Cached read models over the repository layer.

Every read is tagged with the entity tags that make it stale, so the
invalidation coordinator can drop it without knowing the key layout.
"""

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional

from course_jobs.cache import tags as cache_tags
from course_jobs.cache.store import TaggedCacheStore
from course_jobs.exceptions import ConfigurationError, NotFoundError
from course_jobs.logging_config import logger
from course_jobs.services.entities import Material, MaterialStatus
from course_jobs.services.repository import Repositories

if TYPE_CHECKING:
    from course_jobs.queue.engine import JobQueue
    from course_jobs.queue.job import Job
    from course_jobs.queue.registry import JobRegistry

WARM_JOB_CLASS = "cache.warm"


def _material_view(material: Material) -> Dict[str, Any]:
    return {
        "material_id": material.material_id,
        "course_id": material.course_id,
        "filename": material.filename,
        "content_type": material.content_type,
        "size": material.size,
        "status": material.status,
        "bucket": material.bucket,
        "storage_key": material.storage_key,
        "thumbnail_key": material.thumbnail_key,
        "metadata": dict(material.metadata),
        "created_at": material.created_at.isoformat(),
    }


class CourseQueries:
    """Read models for course pages.

    Attributes:
        repos: Source of truth
        cache: Tagged cache holding computed views
        ttl: TTL for cached views, None uses the cache default
    """

    def __init__(
        self,
        repos: Repositories,
        cache: TaggedCacheStore,
        queue: Optional["JobQueue"] = None,
        ttl: Optional[float] = None,
    ):
        self.repos = repos
        self.cache = cache
        self.queue = queue
        self.ttl = ttl

    async def course_overview(self, course_id: str) -> Dict[str, Any]:
        return await self.cache.get_or_compute(
            f"course:{course_id}:overview",
            {cache_tags.course(course_id)},
            self.ttl,
            lambda: self._compute_overview(course_id),
        )

    async def material_listing(self, course_id: str) -> List[Dict[str, Any]]:
        """Available materials of a course, oldest first."""
        return await self.cache.get_or_compute(
            f"course:{course_id}:materials:list",
            {cache_tags.course_materials(course_id)},
            self.ttl,
            lambda: self._compute_listing(course_id),
        )

    async def material_detail(self, material_id: str) -> Dict[str, Any]:
        return await self.cache.get_or_compute(
            f"material:{material_id}:detail",
            {cache_tags.material_detail(material_id)},
            self.ttl,
            lambda: self._compute_detail(material_id),
        )

    async def course_roster(self, course_id: str) -> List[Dict[str, Any]]:
        return await self.cache.get_or_compute(
            f"course:{course_id}:roster",
            {cache_tags.course_roster(course_id)},
            self.ttl,
            lambda: self._compute_roster(course_id),
        )

    async def _compute_overview(self, course_id: str) -> Dict[str, Any]:
        course = await self.repos.courses.find_by_id(course_id)
        if course is None:
            raise NotFoundError(f"Course not found: {course_id}")
        enrollments = await self.repos.enrollments.find_by_parent(course_id)
        return {
            "course_id": course.course_id,
            "title": course.title,
            "instructor_id": course.instructor_id,
            "semester": course.semester,
            "enrollment_count": len(enrollments),
            "updated_at": course.updated_at.isoformat(),
        }

    async def _compute_listing(self, course_id: str) -> List[Dict[str, Any]]:
        materials = await self.repos.materials.find_by_parent(course_id)
        available = [m for m in materials if m.status == MaterialStatus.AVAILABLE.value]
        available.sort(key=lambda m: (m.created_at, m.material_id))
        return [_material_view(m) for m in available]

    async def _compute_detail(self, material_id: str) -> Dict[str, Any]:
        material = await self.repos.materials.find_by_id(material_id)
        if material is None:
            raise NotFoundError(f"Material not found: {material_id}")
        return _material_view(material)

    async def _compute_roster(self, course_id: str) -> List[Dict[str, Any]]:
        enrollments = await self.repos.enrollments.find_by_parent(course_id)
        enrollments.sort(key=lambda e: (e.created_at, e.student_id))
        return [
            {"student_id": e.student_id, "semester": e.semester, "status": e.status}
            for e in enrollments
        ]

    async def top_courses_by_enrollment(self, limit: int) -> List[str]:
        counts = []
        for course in await self.repos.courses.search({}):
            enrollments = await self.repos.enrollments.find_by_parent(course.course_id)
            counts.append((len(enrollments), course.course_id))
        counts.sort(key=lambda item: (-item[0], item[1]))
        return [course_id for _, course_id in counts[:limit]]

    async def _warm_view(
        self, key: str, tag: str, compute_fn: Callable[[str], Awaitable[Any]], course_id: str
    ) -> bool:
        tags = {tag}
        versions = await self.cache.snapshot(tags)
        return await self.cache.warm(key, tags, self.ttl, await compute_fn(course_id), versions=versions)

    async def warm_course(self, course_id: str) -> Dict[str, bool]:
        """Recompute and store every view of a course.

        A view whose tag is invalidated while it is being computed is not
        stored; the next read recomputes it.

        Returns:
            Whether each view key was stored
        """
        views = (
            (f"course:{course_id}:overview", cache_tags.course(course_id), self._compute_overview),
            (
                f"course:{course_id}:materials:list",
                cache_tags.course_materials(course_id),
                self._compute_listing,
            ),
            (f"course:{course_id}:roster", cache_tags.course_roster(course_id), self._compute_roster),
        )
        stored = {}
        for key, tag, compute in views:
            stored[key] = await self._warm_view(key, tag, compute, course_id)
        return stored

    async def enqueue_warming(self, top_n: int) -> List[str]:
        """Schedule warm jobs for the most enrolled courses.

        Returns:
            Ids of the enqueued jobs
        """
        if self.queue is None:
            raise ConfigurationError("CourseQueries has no queue to schedule warming on")
        job_ids = []
        for course_id in await self.top_courses_by_enrollment(top_n):
            job_ids.append(await self.queue.enqueue(None, WARM_JOB_CLASS, {"course_id": course_id}))
        logger.info(f"Scheduled cache warming for {len(job_ids)} courses")
        return job_ids

    async def handle_warm_job(self, job: "Job") -> Dict[str, Any]:
        stored = await self.warm_course(job.payload["course_id"])
        return {"course_id": job.payload["course_id"], "stored": sorted(k for k, ok in stored.items() if ok)}

    def register(self, registry: "JobRegistry") -> None:
        registry.register(WARM_JOB_CLASS, self.handle_warm_job)
