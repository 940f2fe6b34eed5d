"""Embed processor: writes the summary chunk (chunk 0) of a thread."""

import logging
from typing import List

from pydantic import BaseModel

from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.chunks import SUMMARY_CHUNK_INDEX, build_chunk_payload
from src.processors.summarize import ThreadSummary
from src.providers.embedding_client import SEMANTIC_SIMILARITY, EmbeddingClient
from src.similarity.models import ChunkRecord
from src.similarity.vector_store import VectorStore, VectorStoreError

logger = logging.getLogger(__name__)


class EmbedOutput(BaseModel):
    embedding: List[float]
    summary_text: str
    keywords: List[str]


class EmbedProcessor(ProcessorDefinition):
    name = "embed"
    dependencies = ("summarize",)

    def __init__(self, embedding: EmbeddingClient, vector_store: VectorStore):
        self.embedding = embedding
        self.vector_store = vector_store

    def _summary(self, execution: ProcessorExecution) -> ThreadSummary:
        return execution.context.get_output("summarize", execution.entity_id)

    def compute_hash(self, execution: ProcessorExecution) -> str:
        summary = self._summary(execution)
        return compute_content_hash(summary.to_text() if summary else "")

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        summary = self._summary(execution)
        if summary is None:
            return ProcessorError(execution.entity_id, "No summary available from summarize processor")

        summary_text = summary.to_text()
        vector = self.embedding.embed(summary_text, task_type=SEMANTIC_SIMILARITY)
        if not vector:
            return ProcessorError(execution.entity_id, "Failed to generate embedding")

        payload = build_chunk_payload(
            thread,
            chunk_index=SUMMARY_CHUNK_INDEX,
            source="summary",
            text=summary_text,
            keywords=summary.keywords,
            title=summary.title,
            short_description=summary.short_description,
            entities=summary.entities,
            expected_action=summary.expected_action,
        )
        try:
            self.vector_store.upsert([ChunkRecord(payload=payload, vector=vector)])
        except VectorStoreError as e:
            return ProcessorError(execution.entity_id, f"Failed to store summary chunk: {e}")

        logger.info("Embedded thread summary", extra={"thread_id": thread.id})
        return ProcessorSuccess(
            execution.entity_id,
            EmbedOutput(embedding=vector, summary_text=summary_text, keywords=payload.keywords),
        )
