"""Data model for pipeline jobs, processor results and run summaries.

Processor results are a tagged union discriminated by ``outcome``:
``ProcessorSuccess``, ``ProcessorSkipped`` and ``ProcessorError``. Job records
and summaries are pydantic models serialized to Firestore with ``to_dict()``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, field_validator


class JobStatus(str, Enum):
    """Pipeline job lifecycle: pending -> running -> completed | failed."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ResultOutcome(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    ERROR = "error"


class SkipReason(str, Enum):
    """Why a processor did not run for a thread."""

    IDEMPOTENT = "idempotent"
    DEPENDENCIES_SKIPPED = "dependencies-skipped"
    DEPENDENCIES_SKIPPED_NO_PRIOR_RUN = "dependencies-skipped-no-prior-run"


class EntityStatus(str, Enum):
    """Final per-thread status folded from every processor result."""

    PROCESSED = "processed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ProcessorSuccess:
    entity_id: str
    data: Any = None
    outcome: ResultOutcome = field(default=ResultOutcome.SUCCESS, init=False)


@dataclass(frozen=True)
class ProcessorSkipped:
    entity_id: str
    reason: SkipReason = SkipReason.IDEMPOTENT
    outcome: ResultOutcome = field(default=ResultOutcome.SKIPPED, init=False)


@dataclass(frozen=True)
class ProcessorError:
    entity_id: str
    error: str
    outcome: ResultOutcome = field(default=ResultOutcome.ERROR, init=False)


ProcessorResult = Union[ProcessorSuccess, ProcessorSkipped, ProcessorError]


class PipelineJobOptions(BaseModel):
    """Per-job tuning options supplied by the caller.

    Similarity options left as None fall back to the worker's configured
    defaults.
    """

    concurrency: int = Field(default=5, ge=1, le=50)
    limit: Optional[int] = Field(default=None, ge=1, le=100)
    score_threshold: Optional[float] = Field(default=None, alias="scoreThreshold", ge=0.0, le=1.0)
    vector_weight: Optional[float] = Field(default=None, alias="vectorWeight", ge=0.0)
    keyword_weight: Optional[float] = Field(default=None, alias="keywordWeight", ge=0.0)
    keyword_steepness: Optional[float] = Field(default=None, alias="keywordSteepness", gt=0.0)
    cutoff_score: Optional[float] = Field(default=None, alias="cutoffScore", ge=0.0, le=1.0)
    min_score: Optional[float] = Field(default=None, alias="minScore", ge=0.0, le=1.0)

    model_config = {"populate_by_name": True}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict (camelCase, unset values dropped)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class ProcessorRunSummary(BaseModel):
    """Counts for one processor across every thread of a turn."""

    processor: str
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    duration_ms: int = 0
    errors: Dict[str, str] = Field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "processor": self.processor,
            "processed": self.processed,
            "skipped": self.skipped,
            "failed": self.failed,
            "duration_ms": self.duration_ms,
            "errors": dict(self.errors),
        }


class TurnSummary(BaseModel):
    """Outcome of one turn: processors that ran side by side."""

    turn: int
    processors: List[ProcessorRunSummary] = Field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "turn": self.turn,
            "processors": [p.to_dict() for p in self.processors],
            "duration_ms": self.duration_ms,
        }


class PipelineRunSummary(BaseModel):
    """Job-level counts, folded from every per-thread signal."""

    total_entities: int = 0
    processed_entities: int = 0
    skipped_entities: int = 0
    failed_entities: int = 0
    total_processors: int = 0
    completed_processors: int = 0
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


class PipelineExecutionResult(BaseModel):
    """Returned by the orchestrator for every run, completed or failed."""

    job_id: Optional[str] = None
    status: JobStatus
    summary: PipelineRunSummary
    turns: List[TurnSummary] = Field(default_factory=list)
    entity_statuses: Dict[str, EntityStatus] = Field(default_factory=dict)
    error: Optional[str] = None


class PipelineJobRecord(BaseModel):
    """Durable job record stored in the pipeline_jobs collection."""

    job_id: str
    thread_ids: List[str] = Field(default_factory=list)
    options: Dict[str, Any] = Field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    turns: List[Dict[str, Any]] = Field(default_factory=list)
    summary: Optional[Dict[str, Any]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("thread_ids")
    @classmethod
    def thread_ids_are_strings(cls, v: List[str]) -> List[str]:
        return [str(item) for item in v]

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict."""
        return {
            "job_id": self.job_id,
            "thread_ids": list(self.thread_ids),
            "options": dict(self.options),
            "status": self.status.value,
            "turns": list(self.turns),
            "summary": self.summary,
            "metadata": dict(self.metadata),
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
