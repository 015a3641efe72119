"""Cache invalidation coordinator.

Domain mutations publish events; each event names the tags it makes
stale. Invalidation happens on the mutation's commit boundary, never
later than the commit and never waiting on a job. When the cache
backend is unreachable the invalidation is handed to a high-priority
queue job that retries until the backend is back.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set

from course_jobs.cache import tags as cache_tags
from course_jobs.cache.store import TaggedCacheStore
from course_jobs.exceptions import CacheBackendError, TransientDependencyError
from course_jobs.logging_config import logger
from course_jobs.services.repository import UnitOfWork

if TYPE_CHECKING:
    from course_jobs.queue.engine import JobQueue
    from course_jobs.queue.job import Job
    from course_jobs.queue.registry import JobRegistry

INVALIDATE_JOB_CLASS = "cache.invalidate"


@dataclass(frozen=True)
class EnrollmentCreated:
    student_id: str
    course_id: str

    def tags(self) -> Set[str]:
        return {
            cache_tags.course(self.course_id),
            cache_tags.course_roster(self.course_id),
            cache_tags.student_courses(self.student_id),
        }


@dataclass(frozen=True)
class CourseUpdated:
    course_id: str
    instructor_id: str

    def tags(self) -> Set[str]:
        return {
            cache_tags.course(self.course_id),
            cache_tags.instructor_courses(self.instructor_id),
        }


@dataclass(frozen=True)
class InstructorReassigned:
    course_id: str
    previous_instructor_id: str
    new_instructor_id: str

    def tags(self) -> Set[str]:
        return {
            cache_tags.course(self.course_id),
            cache_tags.instructor_courses(self.previous_instructor_id),
            cache_tags.instructor_courses(self.new_instructor_id),
        }


@dataclass(frozen=True)
class SubmissionGraded:
    submission_id: str
    assignment_id: str
    student_id: str
    course_id: str

    def tags(self) -> Set[str]:
        return {
            cache_tags.submission(self.submission_id),
            cache_tags.assignment_submissions(self.assignment_id),
            cache_tags.student_grades(self.student_id, self.course_id),
        }


@dataclass(frozen=True)
class MaterialChanged:
    material_id: str
    course_id: str

    def tags(self) -> Set[str]:
        return {
            cache_tags.material_detail(self.material_id),
            cache_tags.course_materials(self.course_id),
        }


class CacheInvalidationCoordinator:
    """Turns domain events and derived-state changes into tag invalidations.

    Attributes:
        cache: Store whose tags are invalidated
        queue: Optional queue used when the backend is unreachable
    """

    def __init__(self, cache: TaggedCacheStore, queue: Optional["JobQueue"] = None):
        self.cache = cache
        self.queue = queue

    async def publish(self, event: Any, transaction: Optional[UnitOfWork] = None) -> None:
        """Invalidate the event's tags when the transaction commits.

        Without a transaction the tags are invalidated immediately.
        """
        tags = event.tags()
        reason = type(event).__name__
        if transaction is None:
            await self._invalidate(tags, reason)
            return

        async def _on_commit() -> None:
            await self._invalidate(tags, reason)

        transaction.on_commit(_on_commit)

    async def invalidate_derived(self, tags: Iterable[str], reason: str = "derived") -> None:
        """Invalidate tags of derived state produced outside a mutation."""
        tags = set(tags)
        if tags:
            await self._invalidate(tags, reason)

    async def _invalidate(self, tags: Set[str], reason: str) -> None:
        try:
            await self.cache.invalidate_tags(tags)
            logger.debug(f"{reason} invalidated {sorted(tags)}")
        except CacheBackendError as e:
            if self.queue is None:
                raise
            job_id = await self.queue.enqueue(
                None, INVALIDATE_JOB_CLASS, {"tags": sorted(tags), "reason": reason}
            )
            logger.warning(f"Cache unavailable for {reason}, invalidation queued as job {job_id}: {e}")

    async def handle_invalidate_job(self, job: "Job") -> Dict[str, Any]:
        tags: List[str] = job.payload["tags"]
        try:
            removed = await self.cache.invalidate_tags(tags)
        except CacheBackendError as e:
            raise TransientDependencyError(str(e)) from e
        return {"removed": removed}

    def register(self, registry: "JobRegistry") -> None:
        registry.register(INVALIDATE_JOB_CLASS, self.handle_invalidate_job)
