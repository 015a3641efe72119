"""Per-unit handlers of the batch operations.

Each handler applies one unit and raises on failure. Handlers are
idempotent per unit marker (batch id + unit index): a chunk retried
after a transient error re-applies units it already applied without
creating duplicates.
"""

import csv
import io
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from course_jobs.cache.invalidation import CacheInvalidationCoordinator, EnrollmentCreated
from course_jobs.exceptions import DuplicateUnit, NotFoundError, UniqueViolation, ValidationError
from course_jobs.logging_config import logger
from course_jobs.queue.engine import JobQueue
from course_jobs.services.entities import Certificate, Enrollment
from course_jobs.services.notifier import enqueue_notification
from course_jobs.services.repository import Repositories
from course_jobs.services.storage import StorageRegistry
from course_jobs.utils import Clock, utcnow

ENROLLMENT_CSV_COLUMNS = ("student_id", "course_id")


@dataclass(frozen=True)
class UnitContext:
    batch_id: str
    operation: str
    unit_index: int

    @property
    def marker(self) -> str:
        return f"batch:{self.batch_id}:unit:{self.unit_index}"


class UnitHandler(ABC):
    """Applies one unit of a batch operation."""

    @abstractmethod
    async def apply(self, unit: Dict[str, Any], context: UnitContext) -> None:
        """
        Raises:
            TransientDependencyError: To retry the whole chunk
            Exception: Any other error fails only this unit
        """
        pass


def _require(unit: Dict[str, Any], *fields: str) -> None:
    if "_error" in unit:
        raise ValidationError(unit["_error"])
    missing = [name for name in fields if not unit.get(name)]
    if missing:
        raise ValidationError(f"Unit is missing {', '.join(missing)}")


class EnrollmentUnitHandler(UnitHandler):
    """Enrolls a student; the natural key is (student, course, semester)."""

    def __init__(self, repos: Repositories, invalidation: CacheInvalidationCoordinator, clock: Clock = utcnow):
        self.repos = repos
        self.invalidation = invalidation
        self._clock = clock

    async def apply(self, unit: Dict[str, Any], context: UnitContext) -> None:
        _require(unit, "student_id", "course_id")
        course = await self.repos.courses.find_by_id(unit["course_id"])
        if course is None:
            raise NotFoundError(f"Course not found: {unit['course_id']}")
        student = await self.repos.students.find_by_id(unit["student_id"])
        if student is None:
            raise NotFoundError(f"Student not found: {unit['student_id']}")
        natural_key = {
            "student_id": student.student_id,
            "course_id": course.course_id,
            "semester": unit.get("semester") or course.semester,
        }

        if await self._is_replay(natural_key, context):
            return
        async with self.repos.transaction() as tx:
            try:
                await self.repos.enrollments.create(
                    Enrollment(**natural_key, source=context.marker, created_at=self._clock())
                )
            except UniqueViolation:
                if await self._is_replay(natural_key, context):
                    return
                raise DuplicateUnit(
                    f"Student {student.student_id} already enrolled in {course.course_id}"
                ) from None
            await self.invalidation.publish(EnrollmentCreated(student.student_id, course.course_id), tx)

    async def _is_replay(self, natural_key: Dict[str, str], context: UnitContext) -> bool:
        existing = await self.repos.enrollments.search(natural_key)
        if not existing:
            return False
        if existing[0].source == context.marker:
            logger.debug(f"Enrollment {existing[0].enrollment_id} already created by {context.marker}")
            return True
        raise DuplicateUnit(
            f"Student {natural_key['student_id']} already enrolled in {natural_key['course_id']} "
            f"for {natural_key['semester']}"
        )


class CertificateUnitHandler(UnitHandler):
    """Issues a course certificate once per student and course.

    The rendered certificate goes to the private bucket; the student gets
    a presigned link through a rate-limited notify.send job.
    """

    def __init__(
        self,
        repos: Repositories,
        storage: StorageRegistry,
        queue: JobQueue,
        url_ttl_seconds: int = 3600,
        clock: Clock = utcnow,
    ):
        self.repos = repos
        self.storage = storage
        self.queue = queue
        self.url_ttl_seconds = url_ttl_seconds
        self._clock = clock

    async def apply(self, unit: Dict[str, Any], context: UnitContext) -> None:
        _require(unit, "student_id", "course_id")
        course = await self.repos.courses.find_by_id(unit["course_id"])
        if course is None:
            raise NotFoundError(f"Course not found: {unit['course_id']}")
        student = await self.repos.students.find_by_id(unit["student_id"])
        if student is None:
            raise NotFoundError(f"Student not found: {unit['student_id']}")
        enrolled = [
            e for e in await self.repos.enrollments.find_by_parent(course.course_id)
            if e.student_id == student.student_id
        ]
        if not enrolled:
            raise ValidationError(f"Student {student.student_id} is not enrolled in {course.course_id}")

        certificate = await self._issue(student.student_id, course.course_id, context)
        gateway = self.storage.for_artifact("certificate")
        body = (
            f"Certificate of completion\n\n{student.name or student.email}\n"
            f"completed {course.title} ({course.semester})\n"
            f"Certificate {certificate.certificate_id}, issued {certificate.issued_at.date().isoformat()}\n"
        )
        ref = await gateway.put_object(
            f"certificates/{course.course_id}/{certificate.certificate_id}.txt", body.encode("utf-8")
        )
        if certificate.storage_key != ref.key:
            await self.repos.certificates.update(certificate.certificate_id, storage_key=ref.key)
        await enqueue_notification(
            self.queue,
            student.email,
            "certificate_issued",
            {"course_title": course.title, "url": gateway.get_presigned_url(ref, self.url_ttl_seconds)},
            idempotency_key=f"certificate:{certificate.certificate_id}:issued",
        )

    async def _issue(self, student_id: str, course_id: str, context: UnitContext) -> Certificate:
        key = {"student_id": student_id, "course_id": course_id}
        existing = await self.repos.certificates.search(key)
        if existing:
            return existing[0]
        try:
            return await self.repos.certificates.create(
                Certificate(**key, issued_at=self._clock(), source=context.marker)
            )
        except UniqueViolation:
            return (await self.repos.certificates.search(key))[0]


class ReminderUnitHandler(UnitHandler):
    """Sends one course reminder to an enrolled student."""

    def __init__(self, repos: Repositories, queue: JobQueue):
        self.repos = repos
        self.queue = queue

    async def apply(self, unit: Dict[str, Any], context: UnitContext) -> None:
        _require(unit, "student_id", "course_id", "message")
        course = await self.repos.courses.find_by_id(unit["course_id"])
        if course is None:
            raise NotFoundError(f"Course not found: {unit['course_id']}")
        student = await self.repos.students.find_by_id(unit["student_id"])
        if student is None:
            raise NotFoundError(f"Student not found: {unit['student_id']}")
        await enqueue_notification(
            self.queue,
            student.email,
            "course_reminder",
            {"course_title": course.title, "message": unit["message"]},
            idempotency_key=f"reminder:{context.marker}",
        )


def parse_enrollment_csv(text: str, default_semester: Optional[str] = None) -> List[Dict[str, Any]]:
    """Parse an enrollment upload into batch units, one per data row.

    Malformed rows do not abort parsing: they become units carrying an
    ``_error`` that fails validation when the unit runs, so the row is
    counted and reported like any other failure.

    Raises:
        ValidationError: If the header lacks a required column
    """
    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    header = [name.strip() for name in (reader.fieldnames or [])]
    missing = [name for name in ENROLLMENT_CSV_COLUMNS if name not in header]
    if missing:
        raise ValidationError(f"CSV header is missing columns: {', '.join(missing)}")
    reader.fieldnames = header

    units: List[Dict[str, Any]] = []
    for row in reader:
        line = reader.line_num
        if None in row:
            units.append({"_error": f"line {line}: too many fields"})
            continue
        values = {k: (v or "").strip() for k, v in row.items()}
        empty = [name for name in ENROLLMENT_CSV_COLUMNS if not values.get(name)]
        if empty:
            units.append({"_error": f"line {line}: empty {', '.join(empty)}"})
            continue
        unit = {"student_id": values["student_id"], "course_id": values["course_id"]}
        semester = values.get("semester") or default_semester
        if semester:
            unit["semester"] = semester
        units.append(unit)
    return units
