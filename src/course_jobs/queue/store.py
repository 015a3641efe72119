"""Job storage backends.

Both stores make claim_next() and transition() atomic, which is what
keeps two workers from receiving the same job:

- InMemoryJobStore serialises mutations with an asyncio lock
- SqlJobStore uses conditional UPDATE statements and a unique index on
  the active idempotency key
"""

import asyncio
import copy
import itertools
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence

from sqlalchemy import case, delete, func, select, update
from sqlalchemy.exc import IntegrityError

from course_jobs.logging_config import logger
from course_jobs.models.database import Database
from course_jobs.models.job import JobRecord
from course_jobs.queue.job import Job, JobStatus


class JobStore(ABC):
    """Persistence interface of the queue engine."""

    @abstractmethod
    async def add(self, job: Job) -> Job:
        """Insert a job.

        If the job carries an idempotency key held by a non-dead job,
        nothing is inserted and the existing job is returned.
        """
        pass

    @abstractmethod
    async def get(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def claim_next(
        self,
        queues: Sequence[str],
        job_classes: Optional[FrozenSet[str]],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        """Atomically move the next eligible pending job to running.

        Queues are given highest priority first; within a queue jobs are
        taken in enqueue order. Claiming increments attempts and sets
        the lease.
        """
        pass

    @abstractmethod
    async def transition(
        self, job_id: str, expected: JobStatus, *, expected_attempts: Optional[int] = None, **changes: Any
    ) -> Optional[Job]:
        """Apply changes only if the job is still in the expected status.

        Args:
            expected_attempts: When given, the job must also still be on this
                attempt, so a report from an earlier, abandoned attempt does
                not touch a redelivery

        Returns:
            The updated job, or None if the status or attempt did not match
        """
        pass

    @abstractmethod
    async def find_by_idempotency_key(self, key: str) -> List[Job]:
        pass

    @abstractmethod
    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        queue: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        """Jobs newest first."""
        pass

    @abstractmethod
    async def expired_leases(self, now: datetime) -> List[Job]:
        pass

    @abstractmethod
    async def counts(self) -> Dict[str, Dict[str, int]]:
        """Job counts per queue and status."""
        pass

    @abstractmethod
    async def purge(self, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        pass


class InMemoryJobStore(JobStore):
    """Job store for tests and single-process development."""

    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._active_keys: Dict[str, str] = {}
        self._seq = itertools.count(1)
        self._lock = asyncio.Lock()

    async def add(self, job: Job) -> Job:
        async with self._lock:
            key = job.idempotency_key
            if key and key in self._active_keys:
                return copy.deepcopy(self._jobs[self._active_keys[key]])
            stored = copy.deepcopy(job)
            stored.seq = next(self._seq)
            self._jobs[stored.job_id] = stored
            if key:
                self._active_keys[key] = stored.job_id
            return copy.deepcopy(stored)

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return copy.deepcopy(job) if job is not None else None

    async def claim_next(
        self,
        queues: Sequence[str],
        job_classes: Optional[FrozenSet[str]],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        rank = {name: index for index, name in enumerate(queues)}
        async with self._lock:
            candidates = [
                job for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and job.queue in rank
                and job.run_at <= now
                and (job_classes is None or job.job_class in job_classes)
            ]
            if not candidates:
                return None
            job = min(candidates, key=lambda j: (rank[j.queue], j.seq))
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.lease_expires_at = now + timedelta(seconds=lease_seconds)
            job.updated_at = now
            return copy.deepcopy(job)

    async def transition(
        self, job_id: str, expected: JobStatus, *, expected_attempts: Optional[int] = None, **changes: Any
    ) -> Optional[Job]:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status != expected:
                return None
            if expected_attempts is not None and job.attempts != expected_attempts:
                return None
            for name, value in changes.items():
                setattr(job, name, value)
            if job.status == JobStatus.DEAD and job.idempotency_key:
                if self._active_keys.get(job.idempotency_key) == job.job_id:
                    del self._active_keys[job.idempotency_key]
            return copy.deepcopy(job)

    async def find_by_idempotency_key(self, key: str) -> List[Job]:
        return [copy.deepcopy(j) for j in self._jobs.values() if j.idempotency_key == key]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        queue: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        jobs = [
            j for j in self._jobs.values()
            if (status is None or j.status == status) and (queue is None or j.queue == queue)
        ]
        jobs.sort(key=lambda j: j.seq, reverse=True)
        return [copy.deepcopy(j) for j in jobs[:limit]]

    async def expired_leases(self, now: datetime) -> List[Job]:
        return [
            copy.deepcopy(j) for j in self._jobs.values()
            if j.status == JobStatus.RUNNING and j.lease_expires_at is not None and j.lease_expires_at <= now
        ]

    async def counts(self) -> Dict[str, Dict[str, int]]:
        result: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
        for job in self._jobs.values():
            result[job.queue][job.status.value] += 1
        return {queue: dict(statuses) for queue, statuses in result.items()}

    async def purge(self, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        statuses = set(statuses)
        async with self._lock:
            doomed = [
                job_id for job_id, job in self._jobs.items()
                if job.status in statuses and job.updated_at < older_than
            ]
            for job_id in doomed:
                job = self._jobs.pop(job_id)
                if job.idempotency_key and self._active_keys.get(job.idempotency_key) == job_id:
                    del self._active_keys[job.idempotency_key]
            return len(doomed)


class SqlJobStore(JobStore):
    """Durable job store on async SQLAlchemy."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_job(record: JobRecord) -> Job:
        return Job(
            job_id=record.job_id,
            job_class=record.job_class,
            queue=record.queue,
            payload=dict(record.payload or {}),
            max_attempts=record.max_attempts,
            run_at=record.run_at,
            created_at=record.created_at,
            updated_at=record.updated_at,
            status=JobStatus(record.status),
            attempts=record.attempts,
            idempotency_key=record.idempotency_key,
            lease_expires_at=record.lease_expires_at,
            last_error=record.last_error,
            result=record.result,
            seq=record.seq,
        )

    @staticmethod
    def _column_values(changes: Dict[str, Any]) -> Dict[str, Any]:
        values = {}
        for name, value in changes.items():
            values[name] = value.value if isinstance(value, JobStatus) else value
        if values.get("status") == JobStatus.DEAD.value:
            values["active_idempotency_key"] = None
        return values

    async def _fetch(self, session, **criteria) -> Optional[JobRecord]:
        stmt = select(JobRecord).filter_by(**criteria)
        return (await session.execute(stmt)).scalar_one_or_none()

    async def add(self, job: Job) -> Job:
        key = job.idempotency_key
        async with self.database.session_maker() as session:
            if key:
                existing = await self._fetch(session, active_idempotency_key=key)
                if existing is not None:
                    return self._to_job(existing)
            record = JobRecord(
                job_id=job.job_id,
                job_class=job.job_class,
                queue=job.queue,
                payload=job.payload,
                status=job.status.value,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                run_at=job.run_at,
                idempotency_key=key,
                active_idempotency_key=key if job.status != JobStatus.DEAD else None,
                created_at=job.created_at,
                updated_at=job.updated_at,
            )
            session.add(record)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                existing = await self._fetch(session, active_idempotency_key=key) if key else None
                if existing is None:
                    raise
                logger.info(f"Concurrent enqueue for idempotency key {key}, reusing {existing.job_id}")
                return self._to_job(existing)
            return self._to_job(record)

    async def get(self, job_id: str) -> Optional[Job]:
        async with self.database.session_maker() as session:
            record = await self._fetch(session, job_id=job_id)
            return self._to_job(record) if record is not None else None

    async def claim_next(
        self,
        queues: Sequence[str],
        job_classes: Optional[FrozenSet[str]],
        now: datetime,
        lease_seconds: float,
    ) -> Optional[Job]:
        if not queues:
            return None
        rank = case({name: index for index, name in enumerate(queues)}, value=JobRecord.queue)
        candidate = (
            select(JobRecord.seq)
            .where(
                JobRecord.status == JobStatus.PENDING.value,
                JobRecord.queue.in_(list(queues)),
                JobRecord.run_at <= now,
            )
            .order_by(rank, JobRecord.seq)
            .limit(1)
        )
        if job_classes is not None:
            candidate = candidate.where(JobRecord.job_class.in_(sorted(job_classes)))

        # Another worker may claim the candidate between select and update;
        # the conditional update loses that race and we look again until no
        # eligible job remains. Every lost race is a claim by someone else.
        while True:
            async with self.database.session_maker() as session:
                async with session.begin():
                    seq = (await session.execute(candidate)).scalar_one_or_none()
                    if seq is None:
                        return None
                    claimed = await session.execute(
                        update(JobRecord)
                        .where(JobRecord.seq == seq, JobRecord.status == JobStatus.PENDING.value)
                        .values(
                            status=JobStatus.RUNNING.value,
                            attempts=JobRecord.attempts + 1,
                            lease_expires_at=now + timedelta(seconds=lease_seconds),
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if claimed.rowcount != 1:
                        continue
                    record = await self._fetch(session, seq=seq)
                    return self._to_job(record)

    async def transition(
        self, job_id: str, expected: JobStatus, *, expected_attempts: Optional[int] = None, **changes: Any
    ) -> Optional[Job]:
        criteria = [JobRecord.job_id == job_id, JobRecord.status == expected.value]
        if expected_attempts is not None:
            criteria.append(JobRecord.attempts == expected_attempts)
        async with self.database.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    update(JobRecord)
                    .where(*criteria)
                    .values(**self._column_values(changes))
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    return None
                record = await self._fetch(session, job_id=job_id)
                return self._to_job(record)

    async def find_by_idempotency_key(self, key: str) -> List[Job]:
        async with self.database.session_maker() as session:
            result = await session.execute(select(JobRecord).where(JobRecord.idempotency_key == key))
            return [self._to_job(r) for r in result.scalars().all()]

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        queue: Optional[str] = None,
        limit: int = 100,
    ) -> List[Job]:
        query = select(JobRecord)
        if status:
            query = query.where(JobRecord.status == status.value)
        if queue:
            query = query.where(JobRecord.queue == queue)
        query = query.order_by(JobRecord.seq.desc()).limit(limit)
        async with self.database.session_maker() as session:
            result = await session.execute(query)
            return [self._to_job(r) for r in result.scalars().all()]

    async def expired_leases(self, now: datetime) -> List[Job]:
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(JobRecord).where(
                    JobRecord.status == JobStatus.RUNNING.value,
                    JobRecord.lease_expires_at <= now,
                )
            )
            return [self._to_job(r) for r in result.scalars().all()]

    async def counts(self) -> Dict[str, Dict[str, int]]:
        async with self.database.session_maker() as session:
            result = await session.execute(
                select(JobRecord.queue, JobRecord.status, func.count())
                .group_by(JobRecord.queue, JobRecord.status)
            )
            counts: Dict[str, Dict[str, int]] = defaultdict(dict)
            for queue, status, count in result.all():
                counts[queue][status] = count
            return dict(counts)

    async def purge(self, statuses: Iterable[JobStatus], older_than: datetime) -> int:
        async with self.database.session_maker() as session:
            async with session.begin():
                result = await session.execute(
                    delete(JobRecord).where(
                        JobRecord.status.in_([s.value for s in statuses]),
                        JobRecord.updated_at < older_than,
                    )
                )
                return result.rowcount
