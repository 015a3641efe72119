"""Stage handler contract.

A stage handler does the work of one pipeline step and reports a
StageResult. Handlers must be re-runnable: a redelivered stage sees the
same inputs and has to produce the same side effects as one execution.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable

from course_jobs.pipeline.run import PipelineRun


class StageOutcome(str, Enum):
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    TERMINAL_FAILURE = "terminal_failure"


@dataclass(frozen=True)
class StageResult:
    """
    What a stage handler reports.

    Attributes:
        status: success, retryable_failure or terminal_failure
        output: Data later stages may read
        invalidate_tags: Cache tags made stale by the stage's output
        error: Failure detail
    """
    status: StageOutcome
    output: Dict[str, Any] = field(default_factory=dict)
    invalidate_tags: FrozenSet[str] = frozenset()
    error: str = ""

    @classmethod
    def success(cls, output: Dict[str, Any] = None, invalidate_tags: Iterable[str] = ()) -> "StageResult":
        return cls(StageOutcome.SUCCESS, dict(output or {}), frozenset(invalidate_tags))

    @classmethod
    def retryable(cls, error: str) -> "StageResult":
        return cls(StageOutcome.RETRYABLE_FAILURE, error=error)

    @classmethod
    def terminal(cls, error: str) -> "StageResult":
        return cls(StageOutcome.TERMINAL_FAILURE, error=error)


@dataclass(frozen=True)
class StageContext:
    """Input of one stage execution."""
    run: PipelineRun
    stage_index: int
    attempt: int

    @property
    def stage_name(self) -> str:
        return self.run.stages[self.stage_index].name

    @property
    def params(self) -> Dict[str, Any]:
        return self.run.params

    def output_of(self, stage_name: str) -> Dict[str, Any]:
        """Output of an earlier successful stage, empty if there is none."""
        return self.run.stage_outputs().get(stage_name, {})


class StageHandler(ABC):
    """One pipeline step."""

    name: str = ""

    @abstractmethod
    async def execute(self, context: StageContext) -> StageResult:
        pass
