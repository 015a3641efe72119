"""Tests for mutation-driven cache invalidation."""

import pytest

from course_jobs.cache import tags as cache_tags
from course_jobs.cache.invalidation import (
    CourseUpdated,
    EnrollmentCreated,
    InstructorReassigned,
    MaterialChanged,
    SubmissionGraded,
)
from course_jobs.exceptions import NotFoundError, ValidationError
from course_jobs.services.entities import Material, MaterialStatus, Submission, SubmissionStatus


class TestEventTags:
    """Test the tags each domain event invalidates."""

    @pytest.mark.parametrize(
        "event, expected",
        [
            (
                EnrollmentCreated("s1", "c1"),
                {"course:c1", "course:c1:enrollments", "student:s1:courses"},
            ),
            (CourseUpdated("c1", "i1"), {"course:c1", "instructor:i1:courses"}),
            (
                InstructorReassigned("c1", "i1", "i2"),
                {"course:c1", "instructor:i1:courses", "instructor:i2:courses"},
            ),
            (
                SubmissionGraded("sub1", "a1", "s1", "c1"),
                {"submission:sub1", "assignment:a1:submissions", "student:s1:grades:c1"},
            ),
            (MaterialChanged("m1", "c1"), {"material:m1", "course:c1:materials"}),
        ],
    )
    def test_tags(self, event, expected):
        assert event.tags() == expected


class TestTransactionalInvalidation:
    """Test that invalidation happens exactly when the mutation commits."""

    async def test_invalidated_on_commit_only(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(1)
        await services.queries.course_roster("c1")

        async with services.repos.transaction() as tx:
            await services.mutations.enroll_student("s0", "c1", transaction=tx)
            assert await services.cache.get("course:c1:roster") == []
            assert services.cache.invalidations[cache_tags.course_roster("c1")] == 0

        assert await services.cache.get("course:c1:roster") is None
        assert services.cache.invalidations[cache_tags.course_roster("c1")] == 1

    async def test_rollback_skips_invalidation(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(1)
        await services.queries.course_overview("c1")

        with pytest.raises(RuntimeError):
            async with services.repos.transaction() as tx:
                await services.mutations.update_course("c1", transaction=tx, title="Renamed")
                raise RuntimeError("abort")

        assert services.cache.invalidations[cache_tags.course("c1")] == 0
        assert await services.cache.get("course:c1:overview") is not None

    async def test_several_mutations_one_transaction(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(2)

        async with services.repos.transaction() as tx:
            await services.mutations.enroll_student("s0", "c1", transaction=tx)
            await services.mutations.enroll_student("s1", "c1", transaction=tx)

        assert services.cache.invalidations[cache_tags.course_roster("c1")] == 2
        assert services.cache.invalidations[cache_tags.student_courses("s1")] == 1


class TestCourseMutations:
    """Test the mutation operations and the tags they touch."""

    async def test_enroll_twice_is_rejected(self, services, make_course, make_students):
        await make_course("c1")
        await make_students(1)
        await services.mutations.enroll_student("s0", "c1")

        with pytest.raises(ValidationError):
            await services.mutations.enroll_student("s0", "c1")

    async def test_enroll_unknown_entities(self, services, make_course):
        await make_course("c1")

        with pytest.raises(NotFoundError, match="Course"):
            await services.mutations.enroll_student("s0", "nope")
        with pytest.raises(NotFoundError, match="Student"):
            await services.mutations.enroll_student("ghost", "c1")

    async def test_update_course_rejects_unknown_fields(self, services, make_course):
        await make_course("c1")

        with pytest.raises(ValidationError):
            await services.mutations.update_course("c1", instructor_id="i9")

    async def test_update_course_invalidates_instructor_listing(self, services, make_course):
        await make_course("c1")

        course = await services.mutations.update_course("c1", title="Topology")

        assert course.title == "Topology"
        assert services.cache.invalidations[cache_tags.instructor_courses("inst-c1")] == 1

    async def test_reassign_instructor(self, services, make_course):
        await make_course("c1")

        course = await services.mutations.reassign_instructor("c1", "i2", "i2@uni.test")

        assert course.instructor_id == "i2"
        assert services.cache.invalidations[cache_tags.instructor_courses("inst-c1")] == 1
        assert services.cache.invalidations[cache_tags.instructor_courses("i2")] == 1

    async def test_reassign_to_same_instructor_is_noop(self, services, make_course):
        await make_course("c1")

        await services.mutations.reassign_instructor("c1", "inst-c1", "inst-c1@uni.test")

        assert services.cache.invalidations[cache_tags.course("c1")] == 0

    async def test_grade_submission(self, services, make_course, make_students, make_assignment):
        await make_course("c1")
        await make_students(1)
        await make_assignment("c1", "a1")
        submission = await services.repos.submissions.create(
            Submission(assignment_id="a1", student_id="s0", filename="hw.pdf")
        )

        graded = await services.mutations.grade_submission(submission.submission_id, 87.5)

        assert graded.grade == 87.5
        assert graded.status == SubmissionStatus.GRADED.value
        assert services.cache.invalidations[cache_tags.student_grades("s0", "c1")] == 1
        assert services.cache.invalidations[cache_tags.assignment_submissions("a1")] == 1

    @pytest.mark.parametrize("grade", [-1, 100.5])
    async def test_grade_out_of_range(self, services, grade):
        with pytest.raises(ValidationError):
            await services.mutations.grade_submission("any", grade)

    async def test_remove_material(self, services, make_course):
        await make_course("c1")
        material = await services.repos.materials.create(
            Material(
                course_id="c1",
                filename="notes.pdf",
                content_type="application/pdf",
                size=1024,
                uploaded_by="inst-c1",
                status=MaterialStatus.AVAILABLE.value,
            )
        )
        await services.queries.material_listing("c1")

        assert await services.mutations.remove_material(material.material_id) is True
        assert await services.mutations.remove_material(material.material_id) is False

        assert await services.queries.material_listing("c1") == []
        assert services.cache.invalidations[cache_tags.material_detail(material.material_id)] == 1
