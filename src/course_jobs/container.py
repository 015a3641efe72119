"""Service wiring for the API and worker processes.

build_services() constructs every component once, registers all job
classes and subscribes the completion listeners. Stores are durable
(SQLAlchemy) when a Database is passed and in-memory otherwise.
"""

from dataclasses import dataclass
from typing import Optional

from course_jobs.batch.coordinator import BatchCoordinator
from course_jobs.batch.store import BatchStore, InMemoryBatchStore, SqlBatchStore
from course_jobs.batch.units import CertificateUnitHandler, EnrollmentUnitHandler, ReminderUnitHandler
from course_jobs.cache.backends import CacheBackend, InMemoryCacheBackend, SqlCacheBackend
from course_jobs.cache.invalidation import CacheInvalidationCoordinator
from course_jobs.cache.queries import CourseQueries
from course_jobs.cache.store import TaggedCacheStore
from course_jobs.config.settings import RuntimeConfig, Settings
from course_jobs.exceptions import ConfigurationError
from course_jobs.logging_config import logger
from course_jobs.models.database import Database
from course_jobs.pipeline.materials import (
    MaterialIntake,
    SubmissionIntake,
    build_material_stages,
    build_submission_stages,
)
from course_jobs.pipeline.orchestrator import PipelineOrchestrator
from course_jobs.pipeline.store import InMemoryRunStore, RunStore, SqlRunStore
from course_jobs.queue.engine import JobQueue
from course_jobs.queue.job import WorkerCapabilities
from course_jobs.queue.middleware import default_middlewares
from course_jobs.queue.registry import JobRegistry
from course_jobs.queue.store import InMemoryJobStore, JobStore, SqlJobStore
from course_jobs.queue.worker import WorkerPool
from course_jobs.services.mutations import CourseMutations
from course_jobs.services.notifier import NotificationJobs, Notifier, OutboxNotifier
from course_jobs.services.repository import Repositories
from course_jobs.services.storage import StorageRegistry, build_storage_registry
from course_jobs.utils import Clock, utcnow


@dataclass
class Services:
    """Every component of a running process."""

    settings: Settings
    config: RuntimeConfig
    database: Optional[Database]
    repos: Repositories
    storage: StorageRegistry
    notifier: Notifier
    queue: JobQueue
    registry: JobRegistry
    middlewares: list
    cache: TaggedCacheStore
    invalidation: CacheInvalidationCoordinator
    queries: CourseQueries
    mutations: CourseMutations
    orchestrator: PipelineOrchestrator
    materials: MaterialIntake
    submissions: SubmissionIntake
    batches: BatchCoordinator

    def worker_pool(
        self,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        capabilities: Optional[WorkerCapabilities] = None,
    ) -> WorkerPool:
        return WorkerPool(
            self.queue,
            self.registry,
            self.middlewares,
            concurrency=concurrency or self.settings.worker_concurrency,
            poll_interval=poll_interval if poll_interval is not None else self.settings.worker_poll_interval,
            capabilities=capabilities,
        )

    async def startup(self) -> None:
        """Create tables and reconcile work interrupted by a restart."""
        if self.database is not None:
            await self.database.init_db()
        await self.queue.requeue_abandoned()
        await self.orchestrator.resume_stalled()
        await self.batches.resume()

    async def shutdown(self) -> None:
        if self.database is not None:
            await self.database.dispose()


def _cache_backend(settings: Settings, database: Optional[Database]) -> CacheBackend:
    if settings.cache_backend == "sql":
        if database is None:
            raise ConfigurationError("cache_backend 'sql' requires a database")
        return SqlCacheBackend(database)
    return InMemoryCacheBackend()


def build_services(
    settings: Settings,
    config: RuntimeConfig,
    *,
    clock: Clock = utcnow,
    database: Optional[Database] = None,
    repos: Optional[Repositories] = None,
    storage: Optional[StorageRegistry] = None,
    notifier: Optional[Notifier] = None,
    middlewares: Optional[list] = None,
) -> Services:
    """Construct and wire all components.

    Args:
        settings: Environment settings
        config: Queue, pipeline, batch and cache configuration
        clock: Time source shared by every component
        database: Durable store database, None keeps all state in memory
        repos: Entity repositories, defaults to in-memory repositories
        storage: Storage gateways, defaults to filesystem gateways from settings
        notifier: Message transport, defaults to the in-memory outbox
        middlewares: Worker middleware chain, defaults to default_middlewares()

    Returns:
        Services with every job class registered

    Raises:
        ConfigurationError: If the configuration cannot be wired
    """
    repos = repos or Repositories.in_memory()
    storage = storage or build_storage_registry(settings, config.pipeline, clock)
    notifier = notifier or OutboxNotifier(clock)

    job_store: JobStore = SqlJobStore(database) if database is not None else InMemoryJobStore()
    run_store: RunStore = SqlRunStore(database) if database is not None else InMemoryRunStore()
    batch_store: BatchStore = SqlBatchStore(database) if database is not None else InMemoryBatchStore()

    queue = JobQueue(job_store, config.queue, clock)
    registry = JobRegistry()
    if middlewares is None:
        middlewares = default_middlewares(queue, clock)

    cache = TaggedCacheStore(
        _cache_backend(settings, database),
        default_ttl=config.cache.default_ttl_seconds,
        stampede_timeout=config.cache.stampede_timeout_seconds,
        clock=clock,
    )
    invalidation = CacheInvalidationCoordinator(cache, queue)
    queries = CourseQueries(repos, cache, queue)
    mutations = CourseMutations(repos, invalidation, clock)

    orchestrator = PipelineOrchestrator(run_store, queue, invalidation, config.pipeline, clock)
    materials = MaterialIntake(repos, storage, orchestrator, config.pipeline, clock)
    submissions = SubmissionIntake(repos, storage, orchestrator, config.pipeline, clock)
    orchestrator.register_pipeline(
        "material", build_material_stages(storage, repos, queue), on_terminal_failure=materials.mark_failed
    )
    orchestrator.register_pipeline(
        "submission", build_submission_stages(storage, repos, queue), on_terminal_failure=submissions.mark_failed
    )

    batches = BatchCoordinator(batch_store, queue, config.batch, clock)
    batches.register_operation("enrollment", EnrollmentUnitHandler(repos, invalidation, clock))
    batches.register_operation(
        "certificate",
        CertificateUnitHandler(repos, storage, queue, config.pipeline.presigned_url_ttl_seconds, clock),
    )
    batches.register_operation("reminder", ReminderUnitHandler(repos, queue))

    orchestrator.register(registry)
    batches.register(registry)
    invalidation.register(registry)
    queries.register(registry)
    NotificationJobs(notifier).register(registry)
    logger.info(f"Registered job classes: {', '.join(registry.names())}")

    return Services(
        settings=settings,
        config=config,
        database=database,
        repos=repos,
        storage=storage,
        notifier=notifier,
        queue=queue,
        registry=registry,
        middlewares=middlewares,
        cache=cache,
        invalidation=invalidation,
        queries=queries,
        mutations=mutations,
        orchestrator=orchestrator,
        materials=materials,
        submissions=submissions,
        batches=batches,
    )
