"""Repository layer: typed CRUD access to course platform entities.

The relational store itself is an external collaborator. This module
defines the interface the job core depends on, a unit of work with
commit hooks, and an in-memory implementation used by tests and the
development app.
"""

import asyncio
import copy
import dataclasses
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Generic, List, Mapping, Optional, Tuple, Type, TypeVar

from course_jobs.exceptions import NotFoundError, UniqueViolation
from course_jobs.logging_config import logger
from course_jobs.services.entities import (
    Assignment,
    Certificate,
    Course,
    Enrollment,
    Material,
    Student,
    Submission,
)
from course_jobs.utils import new_id

T = TypeVar("T")

CommitHook = Callable[[], Awaitable[None]]


class Repository(ABC, Generic[T]):
    """Abstract repository for one entity family."""

    @abstractmethod
    async def create(self, entity: T) -> T:
        """Persist a new entity and return it with its id assigned.

        Raises:
            UniqueViolation: If the entity's natural key already exists
        """
        pass

    @abstractmethod
    async def find_by_id(self, entity_id: str) -> Optional[T]:
        pass

    @abstractmethod
    async def find_by_parent(self, parent_id: str) -> List[T]:
        """Entities owned by a parent (e.g. enrollments of a course)."""
        pass

    @abstractmethod
    async def update(self, entity_id: str, **changes: Any) -> T:
        """Apply field changes.

        Raises:
            NotFoundError: If the entity does not exist
        """
        pass

    @abstractmethod
    async def delete(self, entity_id: str) -> bool:
        pass

    @abstractmethod
    async def search(self, criteria: Mapping[str, Any]) -> List[T]:
        """Entities whose fields equal every value in criteria."""
        pass


class InMemoryRepository(Repository[T]):
    """Dict-backed repository with natural-key uniqueness.

    Returned entities are copies, so callers cannot mutate stored state
    without going through update().
    """

    def __init__(
        self,
        entity_type: Type[T],
        id_field: str,
        parent_field: Optional[str] = None,
        unique_fields: Tuple[str, ...] = (),
    ):
        self.entity_type = entity_type
        self.id_field = id_field
        self.parent_field = parent_field
        self.unique_fields = unique_fields
        self._items: Dict[str, T] = {}
        self._unique_index: Dict[Tuple[Any, ...], str] = {}
        self._lock = asyncio.Lock()

    def _natural_key(self, entity: T) -> Optional[Tuple[Any, ...]]:
        if not self.unique_fields:
            return None
        return tuple(getattr(entity, name) for name in self.unique_fields)

    def _check_unique(self, entity: T, entity_id: str) -> None:
        key = self._natural_key(entity)
        if key is None:
            return
        owner = self._unique_index.get(key)
        if owner is not None and owner != entity_id:
            raise UniqueViolation(
                f"{self.entity_type.__name__} with {dict(zip(self.unique_fields, key))} already exists"
            )

    def _store(self, entity_id: str, entity: T) -> None:
        previous = self._items.get(entity_id)
        if previous is not None and self.unique_fields:
            self._unique_index.pop(self._natural_key(previous), None)
        self._items[entity_id] = entity
        if self.unique_fields:
            self._unique_index[self._natural_key(entity)] = entity_id

    async def create(self, entity: T) -> T:
        async with self._lock:
            entity_id = getattr(entity, self.id_field) or new_id()
            if entity_id in self._items:
                raise UniqueViolation(f"{self.entity_type.__name__} {entity_id} already exists")
            stored = dataclasses.replace(entity, **{self.id_field: entity_id})
            self._check_unique(stored, entity_id)
            self._store(entity_id, stored)
            return copy.deepcopy(stored)

    async def find_by_id(self, entity_id: str) -> Optional[T]:
        entity = self._items.get(entity_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def find_by_parent(self, parent_id: str) -> List[T]:
        if self.parent_field is None:
            return []
        return [
            copy.deepcopy(entity)
            for entity in self._items.values()
            if getattr(entity, self.parent_field) == parent_id
        ]

    async def update(self, entity_id: str, **changes: Any) -> T:
        async with self._lock:
            entity = self._items.get(entity_id)
            if entity is None:
                raise NotFoundError(f"{self.entity_type.__name__} not found: {entity_id}")
            updated = dataclasses.replace(entity, **changes)
            self._check_unique(updated, entity_id)
            self._store(entity_id, updated)
            return copy.deepcopy(updated)

    async def delete(self, entity_id: str) -> bool:
        async with self._lock:
            entity = self._items.pop(entity_id, None)
            if entity is None:
                return False
            if self.unique_fields:
                self._unique_index.pop(self._natural_key(entity), None)
            return True

    async def search(self, criteria: Mapping[str, Any]) -> List[T]:
        if self.unique_fields and set(criteria) == set(self.unique_fields):
            entity_id = self._unique_index.get(tuple(criteria[name] for name in self.unique_fields))
            return [copy.deepcopy(self._items[entity_id])] if entity_id is not None else []
        return [
            copy.deepcopy(entity)
            for entity in self._items.values()
            if all(getattr(entity, name) == value for name, value in criteria.items())
        ]


class UnitOfWork:
    """Logical transaction boundary of a mutation.

    Work that must happen exactly when the mutation commits (cache
    invalidation, after-commit job dispatch) registers a hook with
    on_commit(). Hooks run in registration order inside commit(); a
    rollback discards them.
    """

    def __init__(self):
        self._hooks: List[CommitHook] = []
        self.committed = False
        self.rolled_back = False

    def on_commit(self, hook: CommitHook) -> None:
        if self.committed or self.rolled_back:
            raise RuntimeError("Transaction already finished")
        self._hooks.append(hook)

    async def commit(self) -> None:
        if self.committed:
            return
        self.committed = True
        hooks, self._hooks = self._hooks, []
        for hook in hooks:
            await hook()

    async def rollback(self) -> None:
        self.rolled_back = True
        if self._hooks:
            logger.debug(f"Transaction rolled back, dropping {len(self._hooks)} commit hooks")
        self._hooks = []

    async def __aenter__(self) -> "UnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            await self.commit()
        else:
            await self.rollback()


class Repositories:
    """All entity repositories plus the transaction factory."""

    def __init__(
        self,
        courses: Repository[Course],
        students: Repository[Student],
        enrollments: Repository[Enrollment],
        materials: Repository[Material],
        assignments: Repository[Assignment],
        submissions: Repository[Submission],
        certificates: Repository[Certificate],
    ):
        self.courses = courses
        self.students = students
        self.enrollments = enrollments
        self.materials = materials
        self.assignments = assignments
        self.submissions = submissions
        self.certificates = certificates

    def transaction(self) -> UnitOfWork:
        return UnitOfWork()

    @classmethod
    def in_memory(cls) -> "Repositories":
        return cls(
            courses=InMemoryRepository(Course, "course_id"),
            students=InMemoryRepository(Student, "student_id"),
            enrollments=InMemoryRepository(
                Enrollment,
                "enrollment_id",
                parent_field="course_id",
                unique_fields=("student_id", "course_id", "semester"),
            ),
            materials=InMemoryRepository(Material, "material_id", parent_field="course_id"),
            assignments=InMemoryRepository(Assignment, "assignment_id", parent_field="course_id"),
            submissions=InMemoryRepository(
                Submission, "submission_id", parent_field="assignment_id"
            ),
            certificates=InMemoryRepository(
                Certificate,
                "certificate_id",
                parent_field="course_id",
                unique_fields=("student_id", "course_id"),
            ),
        )
