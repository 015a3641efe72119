"""Shared test fixtures for course_jobs tests."""

from collections.abc import AsyncGenerator
from datetime import datetime, timedelta

import pytest
from httpx import ASGITransport, AsyncClient

from course_jobs.config.settings import RuntimeConfig, Settings, get_runtime_config
from course_jobs.container import Services, build_services
from course_jobs.main import create_app
from course_jobs.services.entities import Assignment, Course, Student


class FakeClock:
    """Manually advanced clock returning naive UTC datetimes."""

    def __init__(self, start: datetime = datetime(2024, 9, 2, 9, 0, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runtime_config() -> RuntimeConfig:
    return get_runtime_config()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        storage_base_path=str(tmp_path / "storage"),
        storage_signing_secret="test-secret",
        worker_concurrency=4,
        worker_poll_interval=0.01,
    )


@pytest.fixture
def services(settings, runtime_config, clock) -> Services:
    return build_services(settings, runtime_config, clock=clock)


@pytest.fixture
def pool(services):
    return services.worker_pool()


@pytest.fixture
def make_course(services, clock):
    """Factory creating a course with its instructor."""

    async def _make(course_id: str = "c1", title: str = "Linear Algebra", semester: str = "2024-fall") -> Course:
        return await services.repos.courses.create(
            Course(
                course_id=course_id,
                title=title,
                instructor_id=f"inst-{course_id}",
                instructor_email=f"inst-{course_id}@uni.test",
                semester=semester,
                updated_at=clock(),
            )
        )

    return _make


@pytest.fixture
def make_students(services):
    """Factory creating students s0..s{n-1}."""

    async def _make(count: int, prefix: str = "s"):
        students = []
        for i in range(count):
            students.append(
                await services.repos.students.create(
                    Student(student_id=f"{prefix}{i}", email=f"{prefix}{i}@uni.test", name=f"Student {i}")
                )
            )
        return students

    return _make


@pytest.fixture
def make_assignment(services, clock):
    async def _make(course_id: str = "c1", assignment_id: str = "a1", closed: bool = False) -> Assignment:
        return await services.repos.assignments.create(
            Assignment(
                course_id=course_id,
                title="Problem Set 1",
                due_at=clock() + timedelta(days=7),
                assignment_id=assignment_id,
                closed=closed,
            )
        )

    return _make


@pytest.fixture
async def async_client(services) -> AsyncGenerator[AsyncClient, None]:
    app = create_app(services)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
