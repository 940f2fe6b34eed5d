"""Embed-messages processor: writes message chunks 1..N of a thread.

The first ``max_chunks`` non-empty messages in chronological order are
embedded for retrieval, each carrying keywords extracted from its own text.
Stored message chunks are replaced only once the new vectors exist: a shrinking
thread leaves no stale chunks behind, and a failed run keeps the old ones.
Any message that fails to embed fails the run so the next delivery retries it.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from pydantic import BaseModel, Field

from src.common.config import DEFAULT_MAX_MESSAGE_CHUNKS
from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.chunks import build_chunk_payload
from src.providers.embedding_client import RETRIEVAL_DOCUMENT, EmbeddingClient
from src.similarity.models import ChunkRecord
from src.similarity.scoring import extract_keywords
from src.similarity.vector_store import VectorStore, VectorStoreError
from src.threads.models import ThreadMessage

logger = logging.getLogger(__name__)

EMBED_BATCH_CONCURRENCY = 5


class EmbedMessagesOutput(BaseModel):
    vectors: List[List[float]] = Field(default_factory=list)
    embedded_count: int = 0


class EmbedMessagesProcessor(ProcessorDefinition):
    name = "embed-messages"
    dependencies = ()

    def __init__(
        self,
        embedding: EmbeddingClient,
        vector_store: VectorStore,
        max_chunks: int = DEFAULT_MAX_MESSAGE_CHUNKS,
    ):
        self.embedding = embedding
        self.vector_store = vector_store
        self.max_chunks = max_chunks

    def _selected(self, execution: ProcessorExecution) -> List[ThreadMessage]:
        messages = [m for m in execution.thread.sorted_messages() if m.plain_text.strip()]
        return messages[: self.max_chunks]

    def compute_hash(self, execution: ProcessorExecution) -> str:
        return compute_content_hash(
            self.max_chunks,
            [[m.id, m.content] for m in self._selected(execution)],
        )

    def _embed(self, text: str) -> Optional[List[float]]:
        return self.embedding.embed(text, task_type=RETRIEVAL_DOCUMENT)

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        messages = self._selected(execution)
        if not messages:
            try:
                self.vector_store.delete_entity_chunks(thread.id, source="message")
            except VectorStoreError as e:
                return ProcessorError(execution.entity_id, f"Failed to clear message chunks: {e}")
            return ProcessorSuccess(execution.entity_id, EmbedMessagesOutput())

        texts = [m.plain_text for m in messages]
        with ThreadPoolExecutor(max_workers=EMBED_BATCH_CONCURRENCY, thread_name_prefix="embed-messages") as pool:
            vectors = list(pool.map(self._embed, texts))

        records: List[ChunkRecord] = []
        for position, (message, text, vector) in enumerate(zip(messages, texts, vectors), start=1):
            if not vector:
                continue
            payload = build_chunk_payload(
                thread,
                chunk_index=position,
                source="message",
                text=text,
                keywords=extract_keywords(text),
                message_id=message.id,
            )
            records.append(ChunkRecord(payload=payload, vector=vector))

        if not records:
            return ProcessorError(execution.entity_id, "Failed to embed any message")

        try:
            self.vector_store.delete_entity_chunks(thread.id, source="message")
            self.vector_store.upsert(records)
        except VectorStoreError as e:
            return ProcessorError(execution.entity_id, f"Failed to store message chunks: {e}")

        failed = len(messages) - len(records)
        logger.info(
            "Embedded thread messages",
            extra={"thread_id": thread.id, "embedded": len(records), "failed": failed},
        )
        if failed:
            return ProcessorError(
                execution.entity_id,
                f"Failed to embed {failed} of {len(messages)} messages",
            )
        return ProcessorSuccess(
            execution.entity_id,
            EmbedMessagesOutput(
                vectors=[record.vector for record in records],
                embedded_count=len(records),
            ),
        )
