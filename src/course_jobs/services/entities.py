"""Domain entities exchanged with the repository layer."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from course_jobs.utils import utcnow


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    DROPPED = "dropped"


class MaterialStatus(str, Enum):
    """Material availability. A material is usable once uploaded."""
    PROCESSING = "processing"
    AVAILABLE = "available"
    FAILED = "failed"


class SubmissionStatus(str, Enum):
    RECEIVED = "received"
    STORED = "stored"
    SCORED = "scored"
    GRADED = "graded"
    REJECTED = "rejected"


@dataclass
class Course:
    course_id: str
    title: str
    instructor_id: str
    instructor_email: str
    semester: str
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Student:
    student_id: str
    email: str
    name: str = ""


@dataclass
class Enrollment:
    """
    A student's enrollment in a course for a semester.

    Attributes:
        source: Marker of the operation that created the row, used to
            recognise replays of the same batch unit
    """
    student_id: str
    course_id: str
    semester: str
    enrollment_id: str = ""
    status: str = EnrollmentStatus.ACTIVE.value
    source: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Material:
    course_id: str
    filename: str
    content_type: str
    size: int
    uploaded_by: str
    material_id: str = ""
    status: str = MaterialStatus.PROCESSING.value
    bucket: Optional[str] = None
    storage_key: Optional[str] = None
    thumbnail_key: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class Assignment:
    course_id: str
    title: str
    due_at: datetime
    assignment_id: str = ""
    closed: bool = False


@dataclass
class Submission:
    assignment_id: str
    student_id: str
    filename: str
    submission_id: str = ""
    status: str = SubmissionStatus.RECEIVED.value
    submitted_at: datetime = field(default_factory=utcnow)
    storage_key: Optional[str] = None
    similarity_score: Optional[float] = None
    grade: Optional[float] = None


@dataclass
class Certificate:
    student_id: str
    course_id: str
    certificate_id: str = ""
    issued_at: datetime = field(default_factory=utcnow)
    storage_key: Optional[str] = None
    source: Optional[str] = None
