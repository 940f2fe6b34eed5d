"""Firestore persistence for pipeline job records.

Job records are for observability: once a job exists, status and summary
writes that fail are logged and reported as False instead of raising, so a
flaky write never changes the outcome of a run.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from src.common.config import FirestoreConfig, load_firestore_config
from src.common.firestore import get_firestore_client, pipeline_jobs_collection
from src.pipeline.models import (
    JobStatus,
    PipelineExecutionResult,
    PipelineJobOptions,
    PipelineJobRecord,
)

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)


class JobRepositoryError(Exception):
    """Raised when a job record cannot be created."""

    pass


class JobRepository:
    """CRUD for the pipeline_jobs collection."""

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
    ):
        self.config = config or load_firestore_config()
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def jobs_ref(self):
        return self.client.collection(pipeline_jobs_collection(self.config.collection_prefix))

    def create_job(self, thread_ids: List[str], options: Optional[PipelineJobOptions] = None) -> str:
        """Persist a new job in ``pending`` and return its id.

        Raises:
            JobRepositoryError: If the record cannot be written.
        """
        options = options or PipelineJobOptions()
        now = datetime.now(timezone.utc)
        job_id = f"job_{uuid.uuid4().hex[:16]}"
        record = PipelineJobRecord(
            job_id=job_id,
            thread_ids=list(thread_ids),
            options=options.to_dict(),
            status=JobStatus.PENDING,
            metadata={"thread_count": len(thread_ids)},
            created_at=now,
            updated_at=now,
        )
        try:
            self.jobs_ref.document(job_id).set(record.to_dict())
        except Exception as e:
            raise JobRepositoryError(f"Failed to create pipeline job: {e}") from e

        logger.info("Created pipeline job", extra={"job_id": job_id, "thread_count": len(thread_ids)})
        return job_id

    def update_status(
        self,
        job_id: str,
        status: JobStatus,
        metadata_patch: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a job to ``status`` and merge ``metadata_patch`` into its metadata."""
        now = datetime.now(timezone.utc)
        updates: Dict[str, Any] = {"status": status.value, "updated_at": now.isoformat()}
        if status == JobStatus.RUNNING:
            updates["started_at"] = now.isoformat()
        for key, value in (metadata_patch or {}).items():
            updates[f"metadata.{key}"] = value
        return self._update(job_id, updates, action="update_status")

    def complete_job(self, job_id: str, result: PipelineExecutionResult) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        return self._update(
            job_id,
            {
                "status": JobStatus.COMPLETED.value,
                "turns": [turn.to_dict() for turn in result.turns],
                "summary": result.summary.to_dict(),
                "updated_at": now,
                "completed_at": now,
            },
            action="complete_job",
        )

    def fail_job(self, job_id: str, error: str) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        return self._update(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error": error,
                "updated_at": now,
                "completed_at": now,
            },
            action="fail_job",
        )

    def get_job(self, job_id: str) -> Optional[PipelineJobRecord]:
        try:
            snapshot = self.jobs_ref.document(job_id).get()
        except Exception as e:
            logger.warning("Failed to read pipeline job", extra={"job_id": job_id, "error": str(e)})
            return None
        if not snapshot.exists:
            return None
        return PipelineJobRecord(**(snapshot.to_dict() or {}))

    def _update(self, job_id: str, updates: Dict[str, Any], *, action: str) -> bool:
        try:
            self.jobs_ref.document(job_id).update(updates)
            return True
        except Exception as e:
            logger.warning(
                "Pipeline job write failed",
                extra={"job_id": job_id, "action": action, "error": str(e)},
            )
            return False
