"""Course mutations that make cached state stale.

Each mutation runs inside a unit of work and publishes its domain event
on it, so the affected tags are invalidated exactly when the change
commits.
"""

from typing import Any, Awaitable, Callable, Optional, TypeVar

from course_jobs.cache.invalidation import (
    CacheInvalidationCoordinator,
    CourseUpdated,
    EnrollmentCreated,
    InstructorReassigned,
    MaterialChanged,
    SubmissionGraded,
)
from course_jobs.exceptions import NotFoundError, UniqueViolation, ValidationError
from course_jobs.logging_config import logger
from course_jobs.services.entities import Course, Enrollment, Submission, SubmissionStatus
from course_jobs.services.repository import Repositories, UnitOfWork
from course_jobs.utils import Clock, utcnow

T = TypeVar("T")

COURSE_UPDATABLE_FIELDS = ("title", "semester")


class CourseMutations:
    """Write operations on courses, enrollments, materials and grades."""

    def __init__(self, repos: Repositories, invalidation: CacheInvalidationCoordinator, clock: Clock = utcnow):
        self.repos = repos
        self.invalidation = invalidation
        self._clock = clock

    async def _in_transaction(
        self, transaction: Optional[UnitOfWork], work: Callable[[UnitOfWork], Awaitable[T]]
    ) -> T:
        if transaction is not None:
            return await work(transaction)
        async with self.repos.transaction() as tx:
            return await work(tx)

    async def _course(self, course_id: str) -> Course:
        course = await self.repos.courses.find_by_id(course_id)
        if course is None:
            raise NotFoundError(f"Course not found: {course_id}")
        return course

    async def enroll_student(
        self,
        student_id: str,
        course_id: str,
        semester: Optional[str] = None,
        transaction: Optional[UnitOfWork] = None,
    ) -> Enrollment:
        """
        Raises:
            NotFoundError: If the course or student does not exist
            ValidationError: If the student is already enrolled
        """
        course = await self._course(course_id)
        if await self.repos.students.find_by_id(student_id) is None:
            raise NotFoundError(f"Student not found: {student_id}")

        async def _enroll(tx: UnitOfWork) -> Enrollment:
            try:
                enrollment = await self.repos.enrollments.create(
                    Enrollment(
                        student_id=student_id,
                        course_id=course_id,
                        semester=semester or course.semester,
                        source="direct",
                        created_at=self._clock(),
                    )
                )
            except UniqueViolation as e:
                raise ValidationError(str(e)) from e
            await self.invalidation.publish(EnrollmentCreated(student_id, course_id), tx)
            return enrollment

        enrollment = await self._in_transaction(transaction, _enroll)
        logger.info(f"Enrolled student {student_id} in course {course_id}")
        return enrollment

    async def update_course(
        self, course_id: str, transaction: Optional[UnitOfWork] = None, **changes: Any
    ) -> Course:
        unknown = set(changes) - set(COURSE_UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update course fields: {sorted(unknown)}")
        course = await self._course(course_id)

        async def _update(tx: UnitOfWork) -> Course:
            updated = await self.repos.courses.update(course_id, updated_at=self._clock(), **changes)
            await self.invalidation.publish(CourseUpdated(course_id, course.instructor_id), tx)
            return updated

        return await self._in_transaction(transaction, _update)

    async def reassign_instructor(
        self,
        course_id: str,
        instructor_id: str,
        instructor_email: str,
        transaction: Optional[UnitOfWork] = None,
    ) -> Course:
        course = await self._course(course_id)
        if course.instructor_id == instructor_id:
            return course

        async def _reassign(tx: UnitOfWork) -> Course:
            updated = await self.repos.courses.update(
                course_id,
                instructor_id=instructor_id,
                instructor_email=instructor_email,
                updated_at=self._clock(),
            )
            await self.invalidation.publish(
                InstructorReassigned(course_id, course.instructor_id, instructor_id), tx
            )
            return updated

        updated = await self._in_transaction(transaction, _reassign)
        logger.info(f"Course {course_id} reassigned from {course.instructor_id} to {instructor_id}")
        return updated

    async def grade_submission(
        self, submission_id: str, grade: float, transaction: Optional[UnitOfWork] = None
    ) -> Submission:
        if not 0 <= grade <= 100:
            raise ValidationError("grade must be between 0 and 100")
        submission = await self.repos.submissions.find_by_id(submission_id)
        if submission is None:
            raise NotFoundError(f"Submission not found: {submission_id}")
        assignment = await self.repos.assignments.find_by_id(submission.assignment_id)
        if assignment is None:
            raise NotFoundError(f"Assignment not found: {submission.assignment_id}")

        async def _grade(tx: UnitOfWork) -> Submission:
            graded = await self.repos.submissions.update(
                submission_id, grade=grade, status=SubmissionStatus.GRADED.value
            )
            await self.invalidation.publish(
                SubmissionGraded(submission_id, assignment.assignment_id, submission.student_id, assignment.course_id),
                tx,
            )
            return graded

        return await self._in_transaction(transaction, _grade)

    async def remove_material(self, material_id: str, transaction: Optional[UnitOfWork] = None) -> bool:
        material = await self.repos.materials.find_by_id(material_id)
        if material is None:
            return False

        async def _remove(tx: UnitOfWork) -> bool:
            removed = await self.repos.materials.delete(material_id)
            await self.invalidation.publish(MaterialChanged(material_id, material.course_id), tx)
            return removed

        return await self._in_transaction(transaction, _remove)
