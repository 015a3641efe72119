"""Job class to handler registry."""

from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List

from course_jobs.exceptions import NotFoundError
from course_jobs.queue.job import Job

JobHandler = Callable[[Job], Awaitable[Any]]


@dataclass(frozen=True)
class JobDefinition:
    name: str
    handler: JobHandler


class JobRegistry:
    """Maps job class names to the coroutine that executes them."""

    def __init__(self):
        self._definitions: Dict[str, JobDefinition] = {}

    def register(self, name: str, handler: JobHandler) -> None:
        if name in self._definitions:
            raise ValueError(f"Job class already registered: {name}")
        self._definitions[name] = JobDefinition(name=name, handler=handler)

    def get(self, name: str) -> JobDefinition:
        try:
            return self._definitions[name]
        except KeyError:
            raise NotFoundError(f"No handler registered for job class {name}") from None

    def names(self) -> List[str]:
        return sorted(self._definitions)
