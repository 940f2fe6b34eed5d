"""Configuration loader for Threadsense services.

Provides shared configuration dataclasses and environment variable helpers
used by the pipeline worker, the similarity engine and the provider clients.

All service configurations are centralized here to avoid duplication.

Exports:
    - ConfigError: Exception for configuration errors
    - _get_env, _int_env, _float_env, _optional_env: Environment helpers
    - FirestoreConfig, GeminiConfig, EmbeddingConfig, QdrantConfig: Backend configurations
    - RetryConfig, SimilarityDefaults: Tuning knobs shared by processors
    - PipelineSettings: Combined settings for the pipeline worker
    - load_pipeline_settings: Load worker settings from environment
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional


class ConfigError(Exception):
    """Raised when required configuration is missing or invalid."""


def _get_env(key: str, default: Optional[str] = None, required: bool = False) -> str:
    value = os.getenv(key, default)
    if required and (value is None or value == ""):
        raise ConfigError(f"Missing required environment variable: {key}")
    if value is None:
        raise ConfigError(f"Environment variable {key} is not set and no default provided")
    if value == "" and default is None:
        raise ConfigError(f"Environment variable {key} is empty and no default provided")
    return value


def _int_env(key: str, default: int) -> int:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid int for {key}: {raw}") from exc


def _float_env(key: str, default: float) -> float:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid float for {key}: {raw}") from exc


def _optional_env(key: str) -> Optional[str]:
    value = os.getenv(key)
    if value is None or value == "":
        return None
    return value


def _optional_float_env(key: str) -> Optional[float]:
    raw = os.getenv(key)
    if raw is None or raw == "":
        return None
    try:
        return float(raw)
    except ValueError as exc:
        raise ConfigError(f"Invalid float for {key}: {raw}") from exc


@dataclass
class FirestoreConfig:
    """Firestore connection configuration used across all services."""

    collection_prefix: str
    project_id: Optional[str] = None
    database_id: str = "(default)"


@dataclass
class GeminiConfig:
    """Gemini model configuration for summaries and classification prompts."""

    model: str
    temperature: float
    max_output_tokens: int
    location: str
    request_timeout_sec: float = 30.0


@dataclass
class EmbeddingConfig:
    """Vertex AI embedding model configuration."""

    model: str
    project: Optional[str]
    location: str
    output_dimensionality: int = 768
    request_timeout_sec: float = 15.0


@dataclass
class QdrantConfig:
    """Qdrant connection and collection settings."""

    url: str
    api_key: Optional[str]
    collection: str
    timeout_sec: int = 10


@dataclass
class RetryConfig:
    """Backoff settings applied to every LLM and embedding call."""

    max_attempts: int = 5
    base_delay_sec: float = 1.0
    backoff_multiplier: float = 2.0
    rate_limit_multiplier: float = 2.0
    max_delay_sec: float = 10.0


@dataclass
class SimilarityDefaults:
    """Default hybrid search parameters used when a job does not override them."""

    limit: int = 10
    score_threshold: Optional[float] = None
    vector_weight: float = 0.6
    keyword_weight: float = 0.4
    keyword_steepness: float = 10.0
    cutoff_score: float = 0.3
    min_score: float = 0.0


# Default values for Gemini configuration
DEFAULT_GEMINI_MODEL = "gemini-2.5-flash"
DEFAULT_GEMINI_TEMPERATURE = 0.2
DEFAULT_GEMINI_MAX_OUTPUT_TOKENS = 2048
DEFAULT_VERTEX_AI_LOCATION = "us-central1"

# Default values for embedding and vector store configuration
DEFAULT_EMBEDDING_MODEL = "text-embedding-004"
DEFAULT_QDRANT_URL = "http://localhost:6333"
DEFAULT_QDRANT_COLLECTION = "thread_chunks"

# Default values for the pipeline worker
DEFAULT_PIPELINE_CONCURRENCY = 5
DEFAULT_MAX_MESSAGE_CHUNKS = 5
DEFAULT_MAX_DUPLICATE_CANDIDATES = 1


@dataclass
class PipelineSettings:
    """Combined settings for the pipeline worker.

    Includes backend configs plus operational settings like default
    concurrency, message chunk limit and the hybrid search defaults.
    """

    firestore: FirestoreConfig
    gemini: GeminiConfig
    embedding: EmbeddingConfig
    qdrant: QdrantConfig
    retry: RetryConfig = field(default_factory=RetryConfig)
    similarity: SimilarityDefaults = field(default_factory=SimilarityDefaults)
    concurrency: int = DEFAULT_PIPELINE_CONCURRENCY
    max_message_chunks: int = DEFAULT_MAX_MESSAGE_CHUNKS
    max_duplicate_candidates: int = DEFAULT_MAX_DUPLICATE_CANDIDATES


def load_firestore_config() -> FirestoreConfig:
    """Load Firestore configuration from environment variables."""
    return FirestoreConfig(
        collection_prefix=_get_env("FIRESTORE_COLLECTION_PREFIX", default="threadsense_"),
        project_id=_optional_env("GOOGLE_CLOUD_PROJECT"),
        database_id=_get_env("FIRESTORE_DATABASE_ID", default="(default)"),
    )


def load_gemini_config() -> GeminiConfig:
    """Load Gemini configuration from environment variables.

    Returns:
        GeminiConfig with model settings for Vertex AI Gemini.
    """
    return GeminiConfig(
        model=_get_env("GEMINI_MODEL", default=DEFAULT_GEMINI_MODEL),
        temperature=_float_env("GEMINI_TEMPERATURE", default=DEFAULT_GEMINI_TEMPERATURE),
        max_output_tokens=_int_env("GEMINI_MAX_OUTPUT_TOKENS", default=DEFAULT_GEMINI_MAX_OUTPUT_TOKENS),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
        request_timeout_sec=_float_env("GEMINI_TIMEOUT_SEC", default=30.0),
    )


def load_embedding_config() -> EmbeddingConfig:
    """Load embedding configuration from environment variables."""
    return EmbeddingConfig(
        model=_get_env("EMBEDDING_MODEL", default=DEFAULT_EMBEDDING_MODEL),
        project=_optional_env("VERTEX_AI_PROJECT") or _optional_env("GOOGLE_CLOUD_PROJECT"),
        location=_get_env("VERTEX_AI_LOCATION", default=DEFAULT_VERTEX_AI_LOCATION),
        output_dimensionality=_int_env("EMBEDDING_DIMENSIONALITY", default=768),
        request_timeout_sec=_float_env("EMBEDDING_TIMEOUT_SEC", default=15.0),
    )


def load_qdrant_config() -> QdrantConfig:
    """Load Qdrant configuration from environment variables."""
    return QdrantConfig(
        url=_get_env("QDRANT_URL", default=DEFAULT_QDRANT_URL),
        api_key=_optional_env("QDRANT_API_KEY"),
        collection=_get_env("QDRANT_COLLECTION", default=DEFAULT_QDRANT_COLLECTION),
        timeout_sec=_int_env("QDRANT_TIMEOUT_SEC", default=10),
    )


def load_retry_config() -> RetryConfig:
    return RetryConfig(
        max_attempts=_int_env("RETRY_MAX_ATTEMPTS", default=5),
        base_delay_sec=_float_env("RETRY_BASE_DELAY_SEC", default=1.0),
        backoff_multiplier=_float_env("RETRY_BACKOFF_MULTIPLIER", default=2.0),
        rate_limit_multiplier=_float_env("RETRY_RATE_LIMIT_MULTIPLIER", default=2.0),
        max_delay_sec=_float_env("RETRY_MAX_DELAY_SEC", default=10.0),
    )


def load_similarity_defaults() -> SimilarityDefaults:
    return SimilarityDefaults(
        limit=_int_env("SIMILARITY_LIMIT", default=10),
        score_threshold=_optional_float_env("SIMILARITY_SCORE_THRESHOLD"),
        vector_weight=_float_env("SIMILARITY_VECTOR_WEIGHT", default=0.6),
        keyword_weight=_float_env("SIMILARITY_KEYWORD_WEIGHT", default=0.4),
        keyword_steepness=_float_env("SIMILARITY_KEYWORD_STEEPNESS", default=10.0),
        cutoff_score=_float_env("SIMILARITY_CUTOFF_SCORE", default=0.3),
        min_score=_float_env("SIMILARITY_MIN_SCORE", default=0.0),
    )


def load_pipeline_settings() -> PipelineSettings:
    """Load pipeline worker settings from environment variables.

    Returns:
        PipelineSettings with backend configs, retry policy and search defaults.

    Raises:
        ConfigError: If environment variables are invalid.
    """
    concurrency = _int_env("PIPELINE_CONCURRENCY", default=DEFAULT_PIPELINE_CONCURRENCY)
    if concurrency < 1:
        raise ConfigError(f"PIPELINE_CONCURRENCY must be >= 1, got {concurrency}")

    return PipelineSettings(
        firestore=load_firestore_config(),
        gemini=load_gemini_config(),
        embedding=load_embedding_config(),
        qdrant=load_qdrant_config(),
        retry=load_retry_config(),
        similarity=load_similarity_defaults(),
        concurrency=concurrency,
        max_message_chunks=_int_env("PIPELINE_MAX_MESSAGE_CHUNKS", default=DEFAULT_MAX_MESSAGE_CHUNKS),
        max_duplicate_candidates=_int_env(
            "PIPELINE_MAX_DUPLICATE_CANDIDATES", default=DEFAULT_MAX_DUPLICATE_CANDIDATES
        ),
    )
