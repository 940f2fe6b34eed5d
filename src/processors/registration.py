"""Wiring of the default processor registry.

``PipelineServices`` bundles the clients processors are constructed with, so
the worker and tests can build the same registry from real or fake services.
"""

from dataclasses import dataclass, field
from typing import Optional

from src.common.config import PipelineSettings, load_pipeline_settings
from src.common.retry import RetryPolicy
from src.pipeline.registry import ProcessorRegistry
from src.processors.embed import EmbedProcessor
from src.processors.embed_messages import EmbedMessagesProcessor
from src.processors.find_similar import FindSimilarProcessor
from src.processors.suggest_duplicates import SuggestDuplicatesProcessor
from src.processors.suggest_labels import SuggestLabelsProcessor
from src.processors.suggest_status import SuggestStatusProcessor
from src.processors.summarize import SummarizeProcessor
from src.providers.embedding_client import EmbeddingClient
from src.providers.gemini_client import GeminiClient
from src.similarity.engine import SimilarityEngine
from src.similarity.vector_store import VectorStore
from src.suggestions.repository import SuggestionRepository
from src.threads.repository import ThreadRepository


@dataclass
class PipelineServices:
    """Clients shared by every processor of a registry."""

    gemini: GeminiClient
    embedding: EmbeddingClient
    vector_store: VectorStore
    engine: SimilarityEngine
    suggestions: SuggestionRepository
    threads: ThreadRepository
    settings: PipelineSettings = field(default_factory=load_pipeline_settings)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[PipelineSettings] = None,
        threads: Optional[ThreadRepository] = None,
    ) -> "PipelineServices":
        """Build production clients from settings (loaded from env if omitted)."""
        settings = settings or load_pipeline_settings()
        retry_policy = RetryPolicy.from_config(settings.retry)
        vector_store = VectorStore(
            config=settings.qdrant,
            vector_size=settings.embedding.output_dimensionality,
        )
        return cls(
            gemini=GeminiClient(settings.gemini, retry_policy=retry_policy),
            embedding=EmbeddingClient(settings.embedding, retry_policy=retry_policy),
            vector_store=vector_store,
            engine=SimilarityEngine(vector_store, settings.similarity),
            suggestions=SuggestionRepository(config=settings.firestore),
            threads=threads or ThreadRepository(config=settings.firestore),
            settings=settings,
        )


def build_default_registry(services: PipelineServices) -> ProcessorRegistry:
    """A new registry holding the seven standard processors."""
    registry = ProcessorRegistry()
    registry.register(SummarizeProcessor(services.gemini))
    registry.register(EmbedProcessor(services.embedding, services.vector_store))
    registry.register(
        EmbedMessagesProcessor(
            services.embedding,
            services.vector_store,
            max_chunks=services.settings.max_message_chunks,
        )
    )
    registry.register(FindSimilarProcessor(services.engine, services.suggestions))
    registry.register(
        SuggestDuplicatesProcessor(
            services.gemini,
            services.suggestions,
            max_candidates=services.settings.max_duplicate_candidates,
        )
    )
    registry.register(SuggestLabelsProcessor(services.gemini, services.suggestions, services.threads))
    registry.register(SuggestStatusProcessor(services.gemini, services.suggestions))
    return registry
