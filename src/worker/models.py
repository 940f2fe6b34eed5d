"""Request and response models for the pipeline worker API."""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from src.pipeline.models import PipelineJobOptions


class PipelineRunRequest(PipelineJobOptions):
    """Body of POST /pipeline/run: thread ids plus per-job options."""

    thread_ids: List[str] = Field(..., alias="threadIds", min_length=1, max_length=500)

    @field_validator("thread_ids")
    @classmethod
    def ids_not_blank(cls, v: List[str]) -> List[str]:
        ids = [item.strip() for item in v]
        if any(not item for item in ids):
            raise ValueError("threadIds must not contain blank ids")
        return ids

    def to_options(self) -> PipelineJobOptions:
        return PipelineJobOptions(**self.model_dump(exclude={"thread_ids"}))


class HealthResponse(BaseModel):
    """Response for GET /health endpoint."""

    status: str = Field(..., description="Service health status.")
    version: str = Field(..., description="Service version.")
    processors: List[str] = Field(default_factory=list, description="Registered processor names.")


class ErrorResponse(BaseModel):
    """Standard error response format."""

    error: str = Field(..., description="Error type/code.")
    message: str = Field(..., description="Human-readable error message.")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details.")
