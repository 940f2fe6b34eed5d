"""Qdrant boundary for thread chunk vectors.

Every point in the collection carries a ``ThreadChunkPayload``. Payloads are
validated whenever they are read back; points whose payload does not match
the schema are logged and dropped instead of being passed on.

Point ids are UUIDv5 of ``"<thread_id>:<source>:<chunk_index>"`` so
re-embedding a thread overwrites its previous points.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from pydantic import ValidationError
from qdrant_client import models

from src.common.config import QdrantConfig, load_qdrant_config
from src.similarity.models import CHUNK_KIND, ChunkHit, ChunkRecord, ThreadChunkPayload

if TYPE_CHECKING:
    from qdrant_client import QdrantClient

logger = logging.getLogger(__name__)

SCROLL_PAGE_SIZE = 128

INDEXED_PAYLOAD_FIELDS = (
    ("kind", models.PayloadSchemaType.KEYWORD),
    ("thread_id", models.PayloadSchemaType.KEYWORD),
    ("organization_id", models.PayloadSchemaType.KEYWORD),
    ("source", models.PayloadSchemaType.KEYWORD),
    ("keyword_terms", models.PayloadSchemaType.KEYWORD),
)


class VectorStoreError(Exception):
    """Raised when a Qdrant operation fails."""

    pass


def chunk_point_id(thread_id: str, source: str, chunk_index: int) -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_URL, f"{thread_id}:{source}:{chunk_index}"))


def _match(key: str, value: Any) -> models.FieldCondition:
    return models.FieldCondition(key=key, match=models.MatchValue(value=value))


class VectorStore:
    """Reads and writes thread chunks in a Qdrant collection."""

    def __init__(
        self,
        client: Optional["QdrantClient"] = None,
        config: Optional[QdrantConfig] = None,
        vector_size: int = 768,
    ):
        self.config = config or load_qdrant_config()
        self.vector_size = vector_size
        self._client = client

    @property
    def client(self) -> "QdrantClient":
        if self._client is None:
            from qdrant_client import QdrantClient

            self._client = QdrantClient(
                url=self.config.url,
                api_key=self.config.api_key,
                timeout=self.config.timeout_sec,
            )
        return self._client

    @property
    def collection(self) -> str:
        return self.config.collection

    def ensure_collection(self) -> bool:
        """Create the collection and its payload indexes if missing.

        Returns:
            True if the collection was created, False if it already existed.
        """
        if self.client.collection_exists(self.collection):
            return False

        self.client.create_collection(
            collection_name=self.collection,
            vectors_config=models.VectorParams(size=self.vector_size, distance=models.Distance.COSINE),
        )
        for field_name, schema in INDEXED_PAYLOAD_FIELDS:
            self.client.create_payload_index(
                collection_name=self.collection,
                field_name=field_name,
                field_schema=schema,
            )
        logger.info("Created Qdrant collection", extra={"collection": self.collection})
        return True

    def upsert(self, chunks: List[ChunkRecord]) -> int:
        """Write chunks (payload + vector). Chunks without a vector are rejected."""
        points = []
        for chunk in chunks:
            if not chunk.vector:
                raise VectorStoreError(
                    f"Chunk {chunk.payload.thread_id}:{chunk.payload.chunk_index} has no vector"
                )
            points.append(
                models.PointStruct(
                    id=chunk_point_id(chunk.payload.thread_id, chunk.payload.source, chunk.payload.chunk_index),
                    vector=list(chunk.vector),
                    payload=chunk.payload.to_dict(),
                )
            )
        if not points:
            return 0
        try:
            self.client.upsert(collection_name=self.collection, points=points, wait=True)
        except Exception as e:
            raise VectorStoreError(f"Failed to upsert {len(points)} chunks: {e}") from e
        return len(points)

    def search(
        self,
        vector: List[float],
        organization_id: str,
        *,
        exclude_thread_id: Optional[str] = None,
        limit: int = 40,
        score_threshold: Optional[float] = None,
    ) -> List[ChunkHit]:
        """Nearest chunks within an organization, as distance-scored hits."""
        must_not = [_match("thread_id", exclude_thread_id)] if exclude_thread_id else None
        query_filter = models.Filter(
            must=[_match("kind", CHUNK_KIND), _match("organization_id", organization_id)],
            must_not=must_not,
        )
        try:
            response = self.client.query_points(
                collection_name=self.collection,
                query=list(vector),
                query_filter=query_filter,
                limit=limit,
                score_threshold=score_threshold,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Vector search failed: {e}") from e

        hits: List[ChunkHit] = []
        for point in response.points:
            payload = self._validate(point.id, point.payload)
            if payload is None or payload.thread_id == exclude_thread_id:
                continue
            hits.append(
                ChunkHit(
                    thread_id=payload.thread_id,
                    chunk_index=payload.chunk_index,
                    distance=1.0 - float(point.score),
                    payload=payload,
                )
            )
        return hits

    def scroll_by_keywords(
        self,
        terms: List[str],
        organization_id: str,
        *,
        exclude_thread_id: Optional[str] = None,
        limit: int = 200,
    ) -> List[ThreadChunkPayload]:
        """Chunks whose indexed keyword terms overlap ``terms``."""
        if not terms:
            return []
        must_not = [_match("thread_id", exclude_thread_id)] if exclude_thread_id else None
        scroll_filter = models.Filter(
            must=[
                _match("kind", CHUNK_KIND),
                _match("organization_id", organization_id),
                models.FieldCondition(key="keyword_terms", match=models.MatchAny(any=list(terms))),
            ],
            must_not=must_not,
        )
        records = self._scroll(scroll_filter, limit=limit, with_vectors=False)
        payloads = [payload for payload, _ in records]
        return [p for p in payloads if p.thread_id != exclude_thread_id]

    def get_entity_chunks(self, thread_id: str, organization_id: Optional[str] = None) -> List[ChunkRecord]:
        """Every stored chunk of a thread with its vector, ordered by chunk index."""
        must = [_match("kind", CHUNK_KIND), _match("thread_id", thread_id)]
        if organization_id:
            must.append(_match("organization_id", organization_id))
        records = self._scroll(models.Filter(must=must), limit=None, with_vectors=True)
        chunks = [ChunkRecord(payload=payload, vector=vector) for payload, vector in records]
        return sorted(chunks, key=lambda chunk: chunk.payload.chunk_index)

    def delete_entity_chunks(self, thread_id: str, source: Optional[str] = None) -> None:
        """Delete a thread's chunks, optionally only those from one source."""
        must = [_match("kind", CHUNK_KIND), _match("thread_id", thread_id)]
        if source:
            must.append(_match("source", source))
        try:
            self.client.delete(
                collection_name=self.collection,
                points_selector=models.FilterSelector(filter=models.Filter(must=must)),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Failed to delete chunks for {thread_id}: {e}") from e

    def _scroll(self, scroll_filter: models.Filter, *, limit: Optional[int], with_vectors: bool):
        records = []
        offset = None
        try:
            while True:
                page_size = SCROLL_PAGE_SIZE if limit is None else min(SCROLL_PAGE_SIZE, limit - len(records))
                if page_size <= 0:
                    break
                points, offset = self.client.scroll(
                    collection_name=self.collection,
                    scroll_filter=scroll_filter,
                    limit=page_size,
                    offset=offset,
                    with_payload=True,
                    with_vectors=with_vectors,
                )
                for point in points:
                    payload = self._validate(point.id, point.payload)
                    if payload is not None:
                        records.append((payload, self._vector(point.vector) if with_vectors else None))
                if offset is None:
                    break
        except Exception as e:
            raise VectorStoreError(f"Scroll failed: {e}") from e
        return records

    @staticmethod
    def _vector(raw: Any) -> Optional[List[float]]:
        if raw is None:
            return None
        # Named-vector collections return a dict; this collection uses the default vector.
        if isinstance(raw, dict):
            raw = next(iter(raw.values()), None)
        return list(raw) if raw is not None else None

    @staticmethod
    def _validate(point_id: Any, payload: Optional[Dict[str, Any]]) -> Optional[ThreadChunkPayload]:
        try:
            return ThreadChunkPayload.model_validate(payload or {})
        except ValidationError as e:
            logger.warning(
                "Dropping point with invalid payload",
                extra={"point_id": str(point_id), "error": str(e)},
            )
            return None
