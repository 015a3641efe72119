"""Multi-stage artifact pipelines."""

from course_jobs.pipeline.materials import (
    Accepted,
    MaterialIntake,
    PlaceholderThumbnailRenderer,
    PlagiarismScorer,
    ShingleOverlapScorer,
    SubmissionIntake,
    ThumbnailRenderer,
    build_material_stages,
    build_submission_stages,
)
from course_jobs.pipeline.orchestrator import STAGE_JOB_CLASS, PipelineOrchestrator, stage_key
from course_jobs.pipeline.run import PipelineRun, RunStatus, StageState, StageStatus
from course_jobs.pipeline.stages import StageContext, StageHandler, StageOutcome, StageResult
from course_jobs.pipeline.store import InMemoryRunStore, RunStore, SqlRunStore

__all__ = [
    "PipelineOrchestrator",
    "STAGE_JOB_CLASS",
    "stage_key",
    "PipelineRun",
    "RunStatus",
    "StageState",
    "StageStatus",
    "StageContext",
    "StageHandler",
    "StageOutcome",
    "StageResult",
    "RunStore",
    "InMemoryRunStore",
    "SqlRunStore",
    "Accepted",
    "MaterialIntake",
    "SubmissionIntake",
    "ThumbnailRenderer",
    "PlaceholderThumbnailRenderer",
    "PlagiarismScorer",
    "ShingleOverlapScorer",
    "build_material_stages",
    "build_submission_stages",
]
