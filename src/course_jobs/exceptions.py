"""Error taxonomy shared by the queue, pipelines, batches and cache.

The worker maps these onto job outcomes:

- ``ValidationError`` and ``TerminalStageError`` fail a job without retry
- ``TransientDependencyError`` (and any unexpected error) is retried
- ``CapacityExceeded`` re-queues the job with a delay, it is not a failure
"""


class CourseJobsError(Exception):
    """Base class for all course_jobs errors."""
    pass


class ValidationError(CourseJobsError):
    """Input rejected before or during processing. Never retried."""
    pass


class TransientDependencyError(CourseJobsError):
    """Storage/notifier timeout or network error. Retried with backoff."""
    pass


class TerminalStageError(CourseJobsError):
    """Business rule violation discovered mid-pipeline. Halts the run."""
    pass


class CapacityExceeded(CourseJobsError):
    """Rate limit hit for a metered dependency.

    Attributes:
        resource: Name of the rate-limited resource
        retry_after: Seconds until a slot is expected to free up
    """

    def __init__(self, resource: str, retry_after: float):
        super().__init__(f"Rate limit exceeded for {resource}, retry in {retry_after:.1f}s")
        self.resource = resource
        self.retry_after = retry_after


class DuplicateUnit(CourseJobsError):
    """A batch unit duplicates an existing record. Recorded per unit."""
    pass


class NotFoundError(CourseJobsError):
    """Requested entity, job, run or batch does not exist."""
    pass


class UniqueViolation(CourseJobsError):
    """Repository uniqueness constraint violated."""
    pass


class CacheBackendError(CourseJobsError):
    """Cache backend is unreachable or failed."""
    pass


class ConfigurationError(CourseJobsError):
    """Raised when configuration is invalid or cannot be loaded."""
    pass
