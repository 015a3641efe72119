"""Job record for the durable job store."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .database import Base


class JobRecord(Base):
    """
    Persisted job row.

    Attributes:
        seq: Autoincrement enqueue sequence, FIFO tie-breaker within a queue
        job_id: Public job identifier
        job_class: Registered handler name
        queue: Queue (priority class) name
        payload: Opaque handler payload
        status: pending/running/succeeded/failed/dead
        attempts: Executions started so far
        max_attempts: Execution budget
        run_at: Earliest time the job may be dequeued
        lease_expires_at: Visibility timeout of a running job
        idempotency_key: Caller supplied dedupe key
        active_idempotency_key: Same key while the job is not dead, unique
        last_error: Error detail of the latest failure
        result: JSON result of a successful execution
    """
    __tablename__ = "jobs"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False, index=True)
    job_class: Mapped[str] = mapped_column(String(100), nullable=False)
    queue: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    run_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    active_idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[Any | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
