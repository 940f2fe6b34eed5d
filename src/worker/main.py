"""FastAPI service running the thread enrichment pipeline.

Provides REST API endpoints for:
- Health checks (Cloud Run compatibility)
- Synchronous pipeline runs over a batch of thread ids
- Job record lookups

Endpoints:
- GET /health: Service health status
- POST /pipeline/run: Run every processor over the given threads
- GET /pipeline/jobs/{job_id}: Stored job record

Service runs on port 8004.
"""

import threading
from typing import Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import JSONResponse

from src.common.env import load_env
from src.common.logging import get_logger
from src.pipeline.idempotency import IdempotencyStore
from src.pipeline.models import PipelineExecutionResult, PipelineJobRecord
from src.pipeline.orchestrator import PipelineOrchestrator
from src.pipeline.persistence import JobRepository, JobRepositoryError
from src.pipeline.registry import RegistryError
from src.processors.registration import PipelineServices, build_default_registry
from src.worker.models import ErrorResponse, HealthResponse, PipelineRunRequest

load_env()
logger = get_logger(__name__)

# Service version
VERSION = "1.0.0"

app = FastAPI(
    title="Threadsense Pipeline Worker",
    description="Summarizes, embeds and links support threads, and writes suggestions.",
    version=VERSION,
)

# Lazy-initialized dependencies (to avoid connection issues at import time)
_orchestrator: Optional[PipelineOrchestrator] = None
_job_repository: Optional[JobRepository] = None
_orchestrator_lock = threading.Lock()
_job_repository_lock = threading.Lock()


def get_job_repository() -> JobRepository:
    """Get or create the job repository singleton."""
    global _job_repository
    if _job_repository is None:
        with _job_repository_lock:
            if _job_repository is None:
                _job_repository = JobRepository()
    return _job_repository


def get_orchestrator() -> PipelineOrchestrator:
    """Get or create the orchestrator singleton with the default registry."""
    global _orchestrator
    if _orchestrator is None:
        with _orchestrator_lock:
            if _orchestrator is None:
                services = PipelineServices.from_settings()
                registry = build_default_registry(services)
                services.vector_store.ensure_collection()
                _orchestrator = PipelineOrchestrator(
                    registry=registry,
                    thread_repository=services.threads,
                    idempotency_store=IdempotencyStore(config=services.settings.firestore),
                    job_repository=get_job_repository(),
                )
                logger.info(
                    "Pipeline orchestrator initialized",
                    extra={"processors": registry.names(), **services.gemini.get_model_info()},
                )
    return _orchestrator


# ============================================================================
# Health Check Endpoint
# ============================================================================


@app.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check endpoint",
    description="Returns service health status for Cloud Run health checks.",
)
async def health_check() -> HealthResponse:
    processors = []
    if _orchestrator is not None:
        processors = _orchestrator.registry.names()
    return HealthResponse(status="healthy", version=VERSION, processors=processors)


# ============================================================================
# Pipeline Endpoints
# ============================================================================


@app.post(
    "/pipeline/run",
    response_model=PipelineExecutionResult,
    responses={
        500: {"model": ErrorResponse, "description": "Pipeline could not start"},
    },
    summary="Run the pipeline over a batch of threads",
    description="""
    Runs every registered processor over `threadIds` in dependency order and
    returns the job outcome. Unchanged threads are skipped per processor;
    per-thread failures are reported in `entity_statuses` without failing the job.
    """,
)
def run_pipeline(request: PipelineRunRequest) -> PipelineExecutionResult:
    """Execute one pipeline job synchronously.

    Raises:
        HTTPException: 500 when the job cannot be created or the registry is invalid.
    """
    options = request.to_options()
    logger.info(
        "Pipeline run requested",
        extra={"thread_count": len(request.thread_ids), "concurrency": options.concurrency},
    )
    try:
        return get_orchestrator().execute(request.thread_ids, options)
    except (JobRepositoryError, RegistryError) as e:
        logger.error(f"Pipeline run failed to start: {e}", exc_info=True)
        raise HTTPException(
            status_code=500,
            detail=ErrorResponse(
                error="internal_error",
                message="Pipeline run could not be started.",
                details={"original_error": str(e)},
            ).model_dump(),
        )


@app.get(
    "/pipeline/jobs/{job_id}",
    response_model=PipelineJobRecord,
    responses={
        404: {"model": ErrorResponse, "description": "Job not found"},
    },
    summary="Get a pipeline job record",
)
def get_job(job_id: str) -> PipelineJobRecord:
    record = get_job_repository().get_job(job_id)
    if record is None:
        raise HTTPException(
            status_code=404,
            detail=ErrorResponse(
                error="not_found",
                message=f"Job not found: {job_id}",
            ).model_dump(),
        )
    return record


# ============================================================================
# Error Handlers
# ============================================================================


@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error="internal_error",
            message="An unexpected error occurred.",
            details={"type": type(exc).__name__},
        ).model_dump(),
    )


# ============================================================================
# Main Entry Point
# ============================================================================


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "src.worker.main:app",
        host="0.0.0.0",
        port=8004,
        reload=True,
    )
