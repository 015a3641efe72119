"""Pipeline run storage.

update() applies a mutator to the current run atomically: the in-memory
store under a lock, the SQL store as a compare-and-set on the version
column with a bounded number of retries.
"""

import asyncio
import copy
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update

from course_jobs.exceptions import NotFoundError, TransientDependencyError
from course_jobs.models.database import Database
from course_jobs.models.pipeline_run import PipelineRunRecord
from course_jobs.pipeline.run import PipelineRun, RunStatus, StageState

# Mutators change the run in place and return False to leave it untouched.
RunMutator = Callable[[PipelineRun], bool]


class RunStore(ABC):
    """Persistence interface of the pipeline orchestrator."""

    @abstractmethod
    async def add(self, run: PipelineRun) -> PipelineRun:
        pass

    @abstractmethod
    async def get(self, run_id: str) -> Optional[PipelineRun]:
        pass

    @abstractmethod
    async def update(self, run_id: str, mutator: RunMutator) -> Optional[PipelineRun]:
        """Atomically apply mutator to the stored run.

        Returns:
            The updated run, or None if the mutator declined the change

        Raises:
            NotFoundError: If the run does not exist
        """
        pass

    @abstractmethod
    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 100) -> List[PipelineRun]:
        """Runs newest first."""
        pass


class InMemoryRunStore(RunStore):

    def __init__(self):
        self._runs: Dict[str, PipelineRun] = {}
        self._lock = asyncio.Lock()

    async def add(self, run: PipelineRun) -> PipelineRun:
        async with self._lock:
            self._runs[run.run_id] = copy.deepcopy(run)
            return copy.deepcopy(run)

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        run = self._runs.get(run_id)
        return copy.deepcopy(run) if run is not None else None

    async def update(self, run_id: str, mutator: RunMutator) -> Optional[PipelineRun]:
        async with self._lock:
            current = self._runs.get(run_id)
            if current is None:
                raise NotFoundError(f"Pipeline run not found: {run_id}")
            run = copy.deepcopy(current)
            if not mutator(run):
                return None
            run.version = current.version + 1
            self._runs[run_id] = run
            return copy.deepcopy(run)

    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 100) -> List[PipelineRun]:
        runs = [r for r in self._runs.values() if status is None or r.status == status]
        runs.sort(key=lambda r: r.created_at, reverse=True)
        return [copy.deepcopy(r) for r in runs[:limit]]


class SqlRunStore(RunStore):
    """Durable run store on async SQLAlchemy."""

    max_update_attempts = 10

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_run(record: PipelineRunRecord) -> PipelineRun:
        return PipelineRun(
            run_id=record.run_id,
            pipeline=record.pipeline,
            artifact_ref=record.artifact_ref,
            queue=record.queue,
            stages=[StageState.from_dict(s) for s in record.stages],
            created_at=record.created_at,
            updated_at=record.updated_at,
            status=RunStatus(record.status),
            current_stage=record.current_stage,
            params=dict(record.params or {}),
            completion_tags=list(record.completion_tags or []),
            owner_contact=record.owner_contact,
            last_error=record.last_error,
            version=record.version,
        )

    @staticmethod
    def _values(run: PipelineRun) -> Dict:
        return {
            "status": run.status.value,
            "current_stage": run.current_stage,
            "stages": [s.to_dict() for s in run.stages],
            "params": run.params,
            "completion_tags": list(run.completion_tags),
            "owner_contact": run.owner_contact,
            "last_error": run.last_error,
            "updated_at": run.updated_at,
        }

    async def add(self, run: PipelineRun) -> PipelineRun:
        async with self.database.session_maker() as session:
            async with session.begin():
                session.add(
                    PipelineRunRecord(
                        run_id=run.run_id,
                        pipeline=run.pipeline,
                        artifact_ref=run.artifact_ref,
                        queue=run.queue,
                        created_at=run.created_at,
                        version=run.version,
                        **self._values(run),
                    )
                )
        return copy.deepcopy(run)

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        async with self.database.session_maker() as session:
            record = await session.get(PipelineRunRecord, run_id)
            return self._to_run(record) if record is not None else None

    async def update(self, run_id: str, mutator: RunMutator) -> Optional[PipelineRun]:
        for _ in range(self.max_update_attempts):
            run = await self.get(run_id)
            if run is None:
                raise NotFoundError(f"Pipeline run not found: {run_id}")
            expected = run.version
            if not mutator(run):
                return None
            run.version = expected + 1
            async with self.database.session_maker() as session:
                async with session.begin():
                    result = await session.execute(
                        update(PipelineRunRecord)
                        .where(
                            PipelineRunRecord.run_id == run_id,
                            PipelineRunRecord.version == expected,
                        )
                        .values(version=run.version, **self._values(run))
                        .execution_options(synchronize_session=False)
                    )
            if result.rowcount == 1:
                return run
        raise TransientDependencyError(f"Pipeline run {run_id} kept changing during update")

    async def list_runs(self, status: Optional[RunStatus] = None, limit: int = 100) -> List[PipelineRun]:
        query = select(PipelineRunRecord)
        if status:
            query = query.where(PipelineRunRecord.status == status.value)
        query = query.order_by(PipelineRunRecord.created_at.desc()).limit(limit)
        async with self.database.session_maker() as session:
            result = await session.execute(query)
            return [self._to_run(r) for r in result.scalars().all()]
