"""Vertex AI embedding client.

Produces unit-normalized text embeddings with text-embedding-004 (768
dimensions). Results are cached in memory per (task type, text) and every
API call goes through the shared retry policy with a per-request timeout.
"""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError
from typing import Any, Dict, List, Optional

from src.common.config import EmbeddingConfig, load_embedding_config
from src.common.retry import (
    ProviderError,
    RateLimitError,
    RetryPolicy,
    TransientError,
    run_with_timeout,
    with_retry,
)
from src.similarity.scoring import normalize_embedding

logger = logging.getLogger(__name__)

SEMANTIC_SIMILARITY = "SEMANTIC_SIMILARITY"
RETRIEVAL_DOCUMENT = "RETRIEVAL_DOCUMENT"
RETRIEVAL_QUERY = "RETRIEVAL_QUERY"

# Both embedding processors at the highest job concurrency.
DEFAULT_MAX_WORKERS = 100


class EmbeddingServiceError(ProviderError):
    """Base exception for embedding service errors."""

    pass


class EmbeddingTransientError(EmbeddingServiceError, TransientError):
    pass


class EmbeddingRateLimitError(EmbeddingServiceError, RateLimitError):
    """Raised when Vertex AI returns a rate limit (429) error."""

    pass


class EmbeddingClient:
    """Client for generating text embeddings via Vertex AI.

    Usage:
        client = EmbeddingClient()
        vector = client.embed("login fails with SSO", task_type="SEMANTIC_SIMILARITY")
    """

    def __init__(
        self,
        config: Optional[EmbeddingConfig] = None,
        retry_policy: Optional[RetryPolicy] = None,
        cache_enabled: bool = True,
        model: Any = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.config = config or load_embedding_config()
        self.retry_policy = retry_policy or RetryPolicy()
        self.cache_enabled = cache_enabled
        self._cache: Dict[str, List[float]] = {}
        self._model = model
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="embedding-call")

    def _get_model(self):
        """Lazy-load the Vertex AI embedding model."""
        if self._model is None:
            import vertexai
            from vertexai.language_models import TextEmbeddingModel

            try:
                vertexai.init(project=self.config.project, location=self.config.location)
                self._model = TextEmbeddingModel.from_pretrained(self.config.model)
            except Exception as e:
                raise EmbeddingServiceError(f"Failed to initialize embedding model: {e}") from e
            logger.info(
                "Initialized embedding model",
                extra={"model": self.config.model, "location": self.config.location},
            )
        return self._model

    @staticmethod
    def _cache_key(text: str, task_type: str) -> str:
        return hashlib.sha256(f"{task_type}\x00{text}".encode("utf-8")).hexdigest()

    def _call_embedding_api(self, text: str, task_type: str) -> List[float]:
        model = self._get_model()
        from vertexai.language_models import TextEmbeddingInput

        try:
            embeddings = model.get_embeddings(
                texts=[TextEmbeddingInput(text=text, task_type=task_type)],
                output_dimensionality=self.config.output_dimensionality,
            )
        except Exception as e:
            error_str = str(e).lower()
            if "429" in error_str or "quota" in error_str or "rate" in error_str:
                raise EmbeddingRateLimitError(str(e)) from e
            if any(code in error_str for code in ("500", "502", "503", "504", "unavailable")):
                raise EmbeddingTransientError(str(e)) from e
            raise EmbeddingServiceError(f"Embedding API error: {e}") from e
        return list(embeddings[0].values)

    def _call_with_timeout(self, text: str, task_type: str) -> List[float]:
        try:
            return run_with_timeout(
                self._executor,
                lambda: self._call_embedding_api(text, task_type),
                self.config.request_timeout_sec,
            )
        except FuturesTimeoutError:
            raise EmbeddingTransientError(
                f"Embedding request exceeded timeout of {self.config.request_timeout_sec}s"
            )

    def embed(self, text: str, task_type: str = SEMANTIC_SIMILARITY) -> Optional[List[float]]:
        """Unit-length embedding of ``text``, or None for blank input or a failed call."""
        if not text or not text.strip():
            return None

        key = self._cache_key(text, task_type)
        if self.cache_enabled and key in self._cache:
            return self._cache[key]

        try:
            raw = with_retry(
                self.retry_policy,
                lambda: self._call_with_timeout(text, task_type),
                description=f"embedding:{self.config.model}",
            )
        except EmbeddingServiceError as e:
            logger.warning(
                "Embedding failed",
                extra={"task_type": task_type, "text_length": len(text), "error": str(e)},
            )
            return None

        vector = normalize_embedding(raw)
        if self.cache_enabled:
            self._cache[key] = vector
        return vector

    def clear_cache(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    def cache_size(self) -> int:
        return len(self._cache)
