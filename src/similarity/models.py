"""Models for hybrid similarity search.

``ThreadChunkPayload`` is the tagged payload schema of the ``thread_chunks``
Qdrant collection; every payload read back from Qdrant is validated against it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from src.common.config import SimilarityDefaults

CHUNK_KIND = "thread_chunk"


class ThreadChunkPayload(BaseModel):
    """Payload stored with every vector in the thread_chunks collection.

    Chunk 0 is the summary chunk; chunks 1..N are message chunks. Thread
    metadata is denormalized onto every chunk so any hit can be rendered.
    """

    kind: Literal["thread_chunk"] = CHUNK_KIND
    thread_id: str
    organization_id: str
    chunk_index: int = Field(..., ge=0)
    source: Literal["summary", "message"]
    message_id: Optional[str] = None
    text: str = ""
    keywords: List[str] = Field(default_factory=list)
    keyword_terms: List[str] = Field(default_factory=list)
    title: str = ""
    short_description: str = ""
    entities: List[str] = Field(default_factory=list)
    expected_action: str = ""
    status: int = 0
    priority: int = 0
    author_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    label_ids: List[str] = Field(default_factory=list)
    created_at: int = Field(..., description="Thread creation time, epoch milliseconds.")
    updated_at: Optional[str] = None

    model_config = {"extra": "ignore"}

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump()


@dataclass
class ChunkRecord:
    """A chunk payload together with its vector, as written to or read from Qdrant."""

    payload: ThreadChunkPayload
    vector: Optional[List[float]] = None


@dataclass
class ChunkHit:
    """One vector search hit; ``distance`` is ``1 - cosine similarity``."""

    thread_id: str
    chunk_index: int
    distance: float
    payload: ThreadChunkPayload


@dataclass
class KeywordChunkMatch:
    thread_id: str
    chunk_index: int
    matched_keywords: List[str]
    total_keywords: int
    payload: ThreadChunkPayload

    @property
    def match_ratio(self) -> float:
        if self.total_keywords <= 0:
            return 0.0
        return len(self.matched_keywords) / self.total_keywords


@dataclass
class VectorAggregate:
    score: float
    chunk_count: int
    distribution: List[float] = field(default_factory=list)


@dataclass
class KeywordAggregate:
    score: float
    match_ratio: float
    matched_keywords: List[str] = field(default_factory=list)
    chunk_count: int = 0


@dataclass
class SimilarityCandidate:
    """Per-thread fusion of both signals; a missing signal scores 0."""

    thread_id: str
    vector: Optional[VectorAggregate] = None
    keyword: Optional[KeywordAggregate] = None
    score: float = 0.0
    payload: Optional[ThreadChunkPayload] = None

    @property
    def vector_score(self) -> float:
        return self.vector.score if self.vector else 0.0

    @property
    def keyword_score(self) -> float:
        return self.keyword.score if self.keyword else 0.0


class SimilarityQuery(BaseModel):
    """Query thread: its chunk vectors and canonical keywords."""

    entity_id: str
    organization_id: str
    vectors: List[List[float]] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)


class SimilarityOptions(BaseModel):
    """Hybrid search parameters."""

    limit: int = Field(default=10, ge=1)
    score_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    vector_weight: float = Field(default=0.6, ge=0.0)
    keyword_weight: float = Field(default=0.4, ge=0.0)
    keyword_steepness: float = Field(default=10.0, gt=0.0)
    cutoff_score: float = Field(default=0.3, ge=0.0, le=1.0)
    min_score: float = Field(default=0.0, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def weights_not_both_zero(self) -> "SimilarityOptions":
        if self.vector_weight + self.keyword_weight <= 0:
            raise ValueError("vector_weight and keyword_weight cannot both be zero")
        return self

    @classmethod
    def resolve(cls, defaults: Optional[SimilarityDefaults] = None, overrides: Optional[Any] = None) -> "SimilarityOptions":
        """Start from configured defaults and apply non-None overrides.

        ``overrides`` is any object exposing the option names as attributes,
        such as ``PipelineJobOptions``.
        """
        defaults = defaults or SimilarityDefaults()
        values = {
            "limit": defaults.limit,
            "score_threshold": defaults.score_threshold,
            "vector_weight": defaults.vector_weight,
            "keyword_weight": defaults.keyword_weight,
            "keyword_steepness": defaults.keyword_steepness,
            "cutoff_score": defaults.cutoff_score,
            "min_score": defaults.min_score,
        }
        if overrides is not None:
            for name in values:
                value = getattr(overrides, name, None)
                if value is not None:
                    values[name] = value
        return cls(**values)


class SimilarThread(BaseModel):
    """A ranked result of a similarity search."""

    thread_id: str
    score: float
    vector_score: float = 0.0
    keyword_score: float = 0.0
    vector_chunk_count: int = 0
    vector_distribution: List[float] = Field(default_factory=list)
    keyword_match_ratio: float = 0.0
    matched_keywords: List[str] = Field(default_factory=list)
    payload: ThreadChunkPayload

    @field_validator("score", "vector_score", "keyword_score")
    @classmethod
    def round_scores(cls, v: float) -> float:
        return round(v, 6)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for the related-threads suggestion payload."""
        return {
            "thread_id": self.thread_id,
            "score": self.score,
            "vector_score": self.vector_score,
            "keyword_score": self.keyword_score,
            "matched_keywords": list(self.matched_keywords),
            "title": self.payload.title,
            "short_description": self.payload.short_description,
            "created_at": self.payload.created_at,
        }


class SearchDebugInfo(BaseModel):
    """Intermediate numbers from a search, kept for tuning and logs."""

    parameters: Dict[str, Any] = Field(default_factory=dict)
    query_keywords: List[str] = Field(default_factory=list)
    vector_hit_count: int = 0
    keyword_chunk_count: int = 0
    candidate_count: int = 0
    keyword_midpoint: Optional[float] = None
    keyword_search_skipped: bool = False


class SimilarityResult(BaseModel):
    query_id: str
    results: List[SimilarThread] = Field(default_factory=list)
    debug: SearchDebugInfo = Field(default_factory=SearchDebugInfo)
