"""Pipeline run value types."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


class RunStatus(str, Enum):
    """Enumeration of pipeline run statuses."""
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED_TERMINAL = "failed_terminal"
    CANCELLED = "cancelled"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StageState:
    """
    Progress of one stage within a run.

    Attributes:
        name: Stage name as declared by the pipeline
        status: Stage status
        attempts: Job attempts started for this stage
        job_id: Job executing the stage
        output: Handler output of the successful execution
        error: Most recent failure detail
    """
    name: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    job_id: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "job_id": self.job_id,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageState":
        return cls(
            name=data["name"],
            status=StageStatus(data["status"]),
            attempts=data.get("attempts", 0),
            job_id=data.get("job_id"),
            output=dict(data.get("output") or {}),
            error=data.get("error"),
            started_at=_dt(data.get("started_at")),
            finished_at=_dt(data.get("finished_at")),
        )


@dataclass
class PipelineRun:
    """
    One execution of a pipeline over an artifact.

    Attributes:
        run_id: Unique identifier
        pipeline: Pipeline name
        artifact_ref: What the run processes, e.g. material:<id>
        queue: Queue the stage jobs are placed on
        stages: Stage states in declared order
        current_stage: Index of the stage the run is waiting on
        params: Input shared by all stage handlers
        completion_tags: Cache tags invalidated once when the run ends
        owner_contact: Recipient of failure notifications
        version: Write counter used for compare-and-set updates
    """
    run_id: str
    pipeline: str
    artifact_ref: str
    queue: str
    stages: List[StageState]
    created_at: datetime
    updated_at: datetime
    status: RunStatus = RunStatus.IN_PROGRESS
    current_stage: int = 0
    params: Dict[str, Any] = field(default_factory=dict)
    completion_tags: List[str] = field(default_factory=list)
    owner_contact: Optional[str] = None
    last_error: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status != RunStatus.IN_PROGRESS

    def stage_outputs(self) -> Dict[str, Dict[str, Any]]:
        return {s.name: s.output for s in self.stages if s.status == StageStatus.SUCCEEDED}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline,
            "artifact_ref": self.artifact_ref,
            "queue": self.queue,
            "status": self.status.value,
            "current_stage": self.current_stage,
            "stages": [s.to_dict() for s in self.stages],
            "params": self.params,
            "completion_tags": list(self.completion_tags),
            "owner_contact": self.owner_contact,
            "last_error": self.last_error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
