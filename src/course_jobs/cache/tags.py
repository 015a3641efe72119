"""Cache tag naming.

Primary entity tags are invalidated on the mutation's commit; derived
artifact tags (material detail, listings) are invalidated by pipeline
stages.
"""


def course(course_id: str) -> str:
    return f"course:{course_id}"


def course_materials(course_id: str) -> str:
    """Material listing of a course."""
    return f"course:{course_id}:materials"


def course_roster(course_id: str) -> str:
    return f"course:{course_id}:enrollments"


def material_detail(material_id: str) -> str:
    return f"material:{material_id}"


def student_courses(student_id: str) -> str:
    return f"student:{student_id}:courses"


def student_grades(student_id: str, course_id: str) -> str:
    return f"student:{student_id}:grades:{course_id}"


def instructor_courses(instructor_id: str) -> str:
    return f"instructor:{instructor_id}:courses"


def submission(submission_id: str) -> str:
    return f"submission:{submission_id}"


def assignment_submissions(assignment_id: str) -> str:
    return f"assignment:{assignment_id}:submissions"
