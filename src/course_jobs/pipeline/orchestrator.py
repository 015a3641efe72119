"""Pipeline orchestrator: runs ordered stages as queue jobs.

Each stage is one ``pipeline.stage`` job. The orchestrator never waits on
a job; it subscribes to job transitions and advances the run from there:

- claimed: the stage is marked running
- succeeded: the stage output is recorded, its cache tags invalidated,
  then the next stage is enqueued or the run completes
- failed or dead: the run halts as failed_terminal and the owner is notified
- back to pending: the stage error is recorded for the retry
"""

from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from course_jobs.cache.invalidation import CacheInvalidationCoordinator
from course_jobs.config.settings import PipelineConfig
from course_jobs.exceptions import (
    ConfigurationError,
    NotFoundError,
    TerminalStageError,
    TransientDependencyError,
    ValidationError,
)
from course_jobs.logging_config import logger
from course_jobs.pipeline.run import PipelineRun, RunStatus, StageState, StageStatus
from course_jobs.pipeline.stages import StageContext, StageHandler, StageOutcome
from course_jobs.pipeline.store import RunStore
from course_jobs.queue.engine import JobQueue
from course_jobs.queue.job import Dispatch, Job, JobEvent, JobStatus
from course_jobs.queue.registry import JobRegistry
from course_jobs.services.notifier import enqueue_notification
from course_jobs.services.repository import UnitOfWork
from course_jobs.utils import Clock, new_id, utcnow

STAGE_JOB_CLASS = "pipeline.stage"

FailureHook = Callable[[PipelineRun], Awaitable[None]]


def stage_key(run_id: str, stage_index: int) -> str:
    return f"run:{run_id}:stage:{stage_index}"


class PipelineOrchestrator:
    """Starts pipeline runs and drives them stage by stage.

    Attributes:
        store: Run persistence
        queue: Queue the stage jobs run on
        invalidation: Coordinator for stage and completion tags
        config: Pipeline definitions
    """

    def __init__(
        self,
        store: RunStore,
        queue: JobQueue,
        invalidation: CacheInvalidationCoordinator,
        config: PipelineConfig,
        clock: Clock = utcnow,
    ):
        self.store = store
        self.queue = queue
        self.invalidation = invalidation
        self.config = config
        self._clock = clock
        self._handlers: Dict[str, Dict[str, StageHandler]] = {}
        self._failure_hooks: Dict[str, FailureHook] = {}

    def register_pipeline(
        self,
        pipeline: str,
        handlers: Iterable[StageHandler],
        on_terminal_failure: Optional[FailureHook] = None,
    ) -> None:
        """Attach stage handlers to a configured pipeline.

        Raises:
            ConfigurationError: If the pipeline is not configured or a stage has no handler
        """
        definition = self.config.pipelines.get(pipeline)
        if definition is None:
            raise ConfigurationError(f"Pipeline {pipeline} is not configured")
        by_name = {handler.name: handler for handler in handlers}
        missing = [name for name in definition.stages if name not in by_name]
        if missing:
            raise ConfigurationError(f"Pipeline {pipeline} has no handler for stages {missing}")
        self._handlers[pipeline] = by_name
        if on_terminal_failure is not None:
            self._failure_hooks[pipeline] = on_terminal_failure

    def register(self, registry: JobRegistry) -> None:
        registry.register(STAGE_JOB_CLASS, self.handle_stage_job)
        self.queue.subscribe(self.on_job_event)

    async def start_run(
        self,
        pipeline: str,
        artifact_ref: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        completion_tags: Iterable[str] = (),
        owner_contact: Optional[str] = None,
        transaction: Optional[UnitOfWork] = None,
        dispatch: Dispatch = Dispatch.IMMEDIATE,
    ) -> str:
        """Create a run and schedule its first stage.

        With Dispatch.AFTER_COMMIT neither the run nor its first job exist
        until the transaction commits; the run id is returned at once.

        Returns:
            Run id

        Raises:
            ValidationError: If the pipeline is unknown
        """
        definition = self.config.pipelines.get(pipeline)
        if definition is None or pipeline not in self._handlers:
            raise ValidationError(f"Unknown pipeline: {pipeline}")

        now = self._clock()
        run = PipelineRun(
            run_id=new_id(),
            pipeline=pipeline,
            artifact_ref=artifact_ref,
            queue=definition.queue,
            stages=[StageState(name=name) for name in definition.stages],
            created_at=now,
            updated_at=now,
            params=dict(params or {}),
            completion_tags=sorted(set(completion_tags)),
            owner_contact=owner_contact,
        )

        async def _start() -> None:
            await self.store.add(run)
            await self._dispatch_stage(run, 0)
            logger.info(f"Started {pipeline} run {run.run_id} for {artifact_ref}")

        if dispatch == Dispatch.AFTER_COMMIT:
            if transaction is None:
                raise ValidationError("Dispatch.AFTER_COMMIT requires a transaction")
            transaction.on_commit(_start)
        else:
            await _start()
        return run.run_id

    async def _dispatch_stage(self, run: PipelineRun, index: int) -> str:
        return await self.queue.enqueue(
            run.queue,
            STAGE_JOB_CLASS,
            {"run_id": run.run_id, "stage_index": index},
            idempotency_key=stage_key(run.run_id, index),
        )

    async def get_run(self, run_id: str) -> PipelineRun:
        run = await self.store.get(run_id)
        if run is None:
            raise NotFoundError(f"Pipeline run not found: {run_id}")
        return run

    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 100) -> List[PipelineRun]:
        return await self.store.list_runs(status=status, limit=limit)

    async def cancel_run(self, run_id: str) -> PipelineRun:
        """Stop forward progress of a run. In-flight stages still get recorded.

        Raises:
            NotFoundError: If the run does not exist
            ValidationError: If the run already ended
        """
        now = self._clock()

        def _cancel(run: PipelineRun) -> bool:
            if run.is_terminal:
                return False
            run.status = RunStatus.CANCELLED
            run.updated_at = now
            return True

        updated = await self.store.update(run_id, _cancel)
        if updated is None:
            run = await self.get_run(run_id)
            raise ValidationError(f"Run {run_id} already {run.status.value}")
        logger.info(f"Cancelled run {run_id} at stage {updated.stages[updated.current_stage].name}")
        return updated

    async def handle_stage_job(self, job: Job) -> Dict[str, Any]:
        """Execute one stage of a run."""
        run_id = job.payload["run_id"]
        index = int(job.payload["stage_index"])
        run = await self.store.get(run_id)
        if run is None:
            raise ValidationError(f"Pipeline run not found: {run_id}")
        if run.status != RunStatus.IN_PROGRESS:
            logger.info(f"Run {run_id} is {run.status.value}, not starting stage {index}")
            return {"run_id": run_id, "stage_index": index, "skipped": f"run {run.status.value}"}
        if not 0 <= index < len(run.stages):
            raise ValidationError(f"Run {run_id} has no stage {index}")

        stage = run.stages[index]
        if stage.status == StageStatus.SUCCEEDED:
            logger.info(f"Stage {stage.name} of run {run_id} already succeeded, skipping redelivery")
            return {"run_id": run_id, "stage_index": index, "skipped": "stage already succeeded"}
        if index > 0 and run.stages[index - 1].status != StageStatus.SUCCEEDED:
            raise TerminalStageError(
                f"Stage {stage.name} of run {run_id} started before {run.stages[index - 1].name} succeeded"
            )

        handler = self._handlers.get(run.pipeline, {}).get(stage.name)
        if handler is None:
            raise TerminalStageError(f"No handler for stage {stage.name} of pipeline {run.pipeline}")

        result = await handler.execute(StageContext(run=run, stage_index=index, attempt=job.attempts))
        if result.status == StageOutcome.RETRYABLE_FAILURE:
            raise TransientDependencyError(result.error or f"Stage {stage.name} asked for a retry")
        if result.status == StageOutcome.TERMINAL_FAILURE:
            raise TerminalStageError(result.error or f"Stage {stage.name} failed")
        return {
            "run_id": run_id,
            "stage_index": index,
            "output": result.output,
            "invalidate_tags": sorted(result.invalidate_tags),
        }

    async def on_job_event(self, event: JobEvent) -> None:
        """Completion callback for stage jobs."""
        job = event.job
        if job.job_class != STAGE_JOB_CLASS:
            return
        run_id = job.payload["run_id"]
        index = int(job.payload["stage_index"])
        if event.previous_status is None:
            await self._stage_enqueued(job, run_id, index)
        elif event.status == JobStatus.RUNNING:
            await self._stage_claimed(job, run_id, index)
        elif event.status == JobStatus.SUCCEEDED:
            await self._stage_succeeded(job, run_id, index)
        elif event.status in (JobStatus.FAILED, JobStatus.DEAD):
            await self._stage_failed(job, run_id, index)
        elif event.status == JobStatus.PENDING:
            await self._stage_retrying(job, run_id, index)

    async def _stage_enqueued(self, job: Job, run_id: str, index: int) -> None:
        def _record(run: PipelineRun) -> bool:
            stage = run.stages[index]
            if stage.status == StageStatus.SUCCEEDED:
                return False
            stage.job_id = job.job_id
            return True

        await self.store.update(run_id, _record)

    async def _stage_claimed(self, job: Job, run_id: str, index: int) -> None:
        now = self._clock()

        def _start(run: PipelineRun) -> bool:
            stage = run.stages[index]
            if run.is_terminal or stage.status == StageStatus.SUCCEEDED:
                return False
            stage.status = StageStatus.RUNNING
            stage.attempts = job.attempts
            stage.job_id = job.job_id
            stage.started_at = stage.started_at or now
            run.updated_at = now
            return True

        await self.store.update(run_id, _start)

    async def _stage_retrying(self, job: Job, run_id: str, index: int) -> None:
        now = self._clock()

        def _record_error(run: PipelineRun) -> bool:
            stage = run.stages[index]
            if run.is_terminal or stage.status == StageStatus.SUCCEEDED:
                return False
            stage.status = StageStatus.PENDING
            stage.error = job.last_error
            stage.attempts = job.attempts
            run.updated_at = now
            return True

        await self.store.update(run_id, _record_error)

    async def _stage_succeeded(self, job: Job, run_id: str, index: int) -> None:
        result = job.result or {}
        if "output" not in result:
            # Skipped or duplicate execution, the original success was recorded.
            return
        now = self._clock()

        def _complete(run: PipelineRun) -> bool:
            stage = run.stages[index]
            if stage.status == StageStatus.SUCCEEDED:
                return False
            stage.status = StageStatus.SUCCEEDED
            stage.output = dict(result["output"])
            stage.error = None
            stage.attempts = job.attempts
            stage.job_id = job.job_id
            stage.finished_at = now
            run.updated_at = now
            if run.status == RunStatus.IN_PROGRESS:
                if index == len(run.stages) - 1:
                    run.status = RunStatus.COMPLETED
                else:
                    run.current_stage = index + 1
            return True

        run = await self.store.update(run_id, _complete)
        if run is None:
            return
        stage_name = run.stages[index].name
        await self.invalidation.invalidate_derived(
            result.get("invalidate_tags", []), reason=f"run {run_id} stage {stage_name}"
        )
        if run.status == RunStatus.COMPLETED:
            logger.info(f"Run {run_id} ({run.pipeline}) completed")
            await self.invalidation.invalidate_derived(run.completion_tags, reason=f"run {run_id} completed")
        elif run.status == RunStatus.IN_PROGRESS:
            await self._dispatch_stage(run, index + 1)
        else:
            logger.info(f"Run {run_id} is {run.status.value}, recorded stage {stage_name} without advancing")

    async def _stage_failed(self, job: Job, run_id: str, index: int) -> None:
        now = self._clock()
        error = job.last_error or f"job {job.status.value}"
        halted = False

        def _fail(run: PipelineRun) -> bool:
            nonlocal halted
            halted = False
            stage = run.stages[index]
            if stage.status in (StageStatus.SUCCEEDED, StageStatus.FAILED):
                return False
            stage.status = StageStatus.FAILED
            stage.error = error
            stage.attempts = job.attempts
            stage.finished_at = now
            run.updated_at = now
            if run.status == RunStatus.IN_PROGRESS:
                run.status = RunStatus.FAILED_TERMINAL
                run.last_error = f"{stage.name}: {error}"
                halted = True
            return True

        run = await self.store.update(run_id, _fail)
        if run is None or not halted:
            return

        stage_name = run.stages[index].name
        logger.error(f"Run {run_id} ({run.pipeline}) failed at stage {stage_name}: {error}")
        hook = self._failure_hooks.get(run.pipeline)
        if hook is not None:
            await hook(run)
        if run.owner_contact:
            await enqueue_notification(
                self.queue,
                run.owner_contact,
                "pipeline_failed",
                {"artifact_ref": run.artifact_ref, "stage": stage_name, "error": error},
                idempotency_key=f"run:{run_id}:failed",
            )
        await self.invalidation.invalidate_derived(run.completion_tags, reason=f"run {run_id} failed")

    async def resume_stalled(self, limit: int = 1000) -> int:
        """Reconcile in-progress runs whose completion callback was lost.

        For each run, the job of its current stage decides: a live job is
        left alone, a finished job has its transition replayed, and a
        missing job is enqueued again.

        Returns:
            Number of runs moved forward
        """
        resumed = 0
        for run in await self.store.list_runs(status=RunStatus.IN_PROGRESS, limit=limit):
            index = run.current_stage
            jobs = await self.queue.find_by_idempotency_key(stage_key(run.run_id, index))
            if any(j.status in (JobStatus.PENDING, JobStatus.RUNNING) for j in jobs):
                continue
            succeeded = [j for j in jobs if j.status == JobStatus.SUCCEEDED and "output" in (j.result or {})]
            ended = [j for j in jobs if j.status in (JobStatus.FAILED, JobStatus.DEAD)]
            if succeeded:
                await self._stage_succeeded(succeeded[0], run.run_id, index)
            elif ended:
                await self._stage_failed(ended[-1], run.run_id, index)
            elif jobs:
                logger.warning(f"Run {run.run_id} stage {index} has no usable job outcome, leaving it")
                continue
            else:
                await self._dispatch_stage(run, index)
            logger.info(f"Resumed run {run.run_id} at stage {run.stages[index].name}")
            resumed += 1
        return resumed
