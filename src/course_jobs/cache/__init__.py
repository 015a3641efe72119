"""Tagged cache store and invalidation."""

from course_jobs.cache.backends import CacheBackend, CacheEntry, InMemoryCacheBackend, SqlCacheBackend
from course_jobs.cache.invalidation import (
    CacheInvalidationCoordinator,
    CourseUpdated,
    EnrollmentCreated,
    InstructorReassigned,
    MaterialChanged,
    SubmissionGraded,
)
from course_jobs.cache.queries import CourseQueries
from course_jobs.cache.store import TaggedCacheStore

__all__ = [
    "CacheBackend",
    "CacheEntry",
    "InMemoryCacheBackend",
    "SqlCacheBackend",
    "TaggedCacheStore",
    "CacheInvalidationCoordinator",
    "EnrollmentCreated",
    "CourseUpdated",
    "InstructorReassigned",
    "SubmissionGraded",
    "MaterialChanged",
    "CourseQueries",
]
