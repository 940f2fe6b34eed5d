"""Find-similar processor: hybrid search for related threads.

Queries with the summary vector and message vectors produced earlier in the
job. When either upstream processor skipped the thread, the query falls back
to the chunks already stored for it. Results are written as a
``related-threads`` suggestion.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.embed import EmbedOutput
from src.processors.embed_messages import EmbedMessagesOutput
from src.similarity.engine import SimilarityEngine
from src.similarity.models import SimilarityOptions, SimilarityQuery, SimilarThread
from src.similarity.vector_store import VectorStoreError
from src.suggestions.models import SuggestionType
from src.suggestions.repository import SuggestionRepository, SuggestionRepositoryError

logger = logging.getLogger(__name__)

HASH_VECTOR_PREFIX = 50


class FindSimilarOutput(BaseModel):
    similar_threads: List[SimilarThread] = Field(default_factory=list)
    from_stored_chunks: bool = False


class FindSimilarProcessor(ProcessorDefinition):
    name = "find-similar"
    dependencies = ("embed", "embed-messages")

    def __init__(self, engine: SimilarityEngine, suggestions: SuggestionRepository):
        self.engine = engine
        self.suggestions = suggestions

    def _options(self, execution: ProcessorExecution) -> SimilarityOptions:
        return SimilarityOptions.resolve(self.engine.defaults, execution.context.options)

    def compute_hash(self, execution: ProcessorExecution) -> str:
        thread = execution.thread
        embed: Optional[EmbedOutput] = execution.context.get_output("embed", execution.entity_id)
        messages: Optional[EmbedMessagesOutput] = execution.context.get_output("embed-messages", execution.entity_id)
        options = self._options(execution).model_dump()
        if embed is None:
            return compute_content_hash(thread.id, thread.name, thread.first_message_text(), options)
        return compute_content_hash(
            [round(v, 6) for v in embed.embedding[:HASH_VECTOR_PREFIX]],
            embed.keywords,
            messages.embedded_count if messages else None,
            options,
        )

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        embed: Optional[EmbedOutput] = execution.context.get_output("embed", execution.entity_id)
        messages: Optional[EmbedMessagesOutput] = execution.context.get_output("embed-messages", execution.entity_id)

        try:
            options = self._options(execution)
            if embed is not None and messages is not None:
                query = SimilarityQuery(
                    entity_id=thread.id,
                    organization_id=thread.organization_id,
                    vectors=[embed.embedding] + list(messages.vectors),
                    keywords=embed.keywords,
                )
                result = self.engine.find_similar(query, options)
                from_stored = False
            else:
                result = self.engine.find_similar_by_id(thread.id, thread.organization_id, options)
                from_stored = True
                if result is None:
                    return ProcessorError(execution.entity_id, "Thread has no stored chunks to search with")
        except (ValueError, VectorStoreError) as e:
            return ProcessorError(execution.entity_id, f"Similarity search failed: {e}")

        try:
            self.suggestions.upsert(
                SuggestionType.RELATED_THREADS,
                thread.id,
                thread.organization_id,
                [similar.to_dict() for similar in result.results],
                metadata={
                    "limit": options.limit,
                    "score_threshold": options.score_threshold,
                    "vector_weight": options.vector_weight,
                    "keyword_weight": options.keyword_weight,
                    "cutoff_score": options.cutoff_score,
                    "candidate_count": result.debug.candidate_count,
                },
            )
        except SuggestionRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to store related threads: {e}")

        logger.info(
            "Found similar threads",
            extra={"thread_id": thread.id, "results": len(result.results), "from_stored_chunks": from_stored},
        )
        return ProcessorSuccess(
            execution.entity_id,
            FindSimilarOutput(similar_threads=result.results, from_stored_chunks=from_stored),
        )
