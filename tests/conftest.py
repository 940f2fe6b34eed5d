"""Pytest configuration and shared fixtures.

Automatically loads .env file for all tests, ensuring environment variables
are available for unit tests. Provides in-memory fakes for Firestore and the
Qdrant-backed vector store so repositories, processors and the orchestrator
can be exercised without live services.
"""

import copy
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Load .env file before any tests run
from src.common.env import load_env

load_env(verbose=False)

from src.common.config import FirestoreConfig, SimilarityDefaults  # noqa: E402
from src.similarity.models import ChunkHit, ChunkRecord, ThreadChunkPayload  # noqa: E402


# =============================================================================
# Fake Firestore
# =============================================================================


def _set_dotted(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


class FakeFirestoreDocument:
    """Fake Firestore document snapshot for testing."""

    def __init__(self, doc_id: str, data: Optional[dict], reference=None):
        self.id = doc_id
        self._data = data
        self.exists = data is not None
        self.reference = reference

    def to_dict(self):
        return copy.deepcopy(self._data) if self._data is not None else None


class FakeFirestoreDocRef:
    """Fake Firestore document reference for testing."""

    def __init__(self, collection: "FakeFirestoreCollection", doc_id: str):
        self.collection = collection
        self.id = doc_id

    def get(self):
        self.collection.client._maybe_fail("get")
        return FakeFirestoreDocument(self.id, self.collection.docs.get(self.id), reference=self)

    def set(self, data: dict, merge: bool = False):
        self.collection.client._maybe_fail("set")
        if merge and self.id in self.collection.docs:
            self.collection.docs[self.id].update(copy.deepcopy(data))
        else:
            self.collection.docs[self.id] = copy.deepcopy(data)

    def update(self, data: dict):
        self.collection.client._maybe_fail("update")
        if self.id not in self.collection.docs:
            raise KeyError(f"No document to update: {self.id}")
        doc = self.collection.docs[self.id]
        for path, value in data.items():
            _set_dotted(doc, path, copy.deepcopy(value))

    def delete(self):
        self.collection.docs.pop(self.id, None)


class FakeFirestoreQuery:
    """Fake query supporting ``where(filter=FieldFilter(...))`` with == and in."""

    def __init__(self, collection: "FakeFirestoreCollection", filters=None):
        self.collection = collection
        self.filters = list(filters or [])

    def where(self, field_path=None, op_string=None, value=None, *, filter=None):
        if filter is not None:
            field_path, op_string, value = filter.field_path, filter.op_string, filter.value
        return FakeFirestoreQuery(self.collection, self.filters + [(field_path, op_string, value)])

    def limit(self, n: int):
        return self

    def order_by(self, field: str, direction: str = "ASCENDING"):
        return self

    def stream(self):
        self.collection.client._maybe_fail("stream")
        for doc_id, data in list(self.collection.docs.items()):
            if self._matches(data):
                yield FakeFirestoreDocument(doc_id, data, reference=self.collection.document(doc_id))

    def _matches(self, data: dict) -> bool:
        for field, op, value in self.filters:
            actual = data.get(field)
            if op == "==" and actual != value:
                return False
            if op == "in" and actual not in value:
                return False
        return True


class FakeFirestoreCollection(FakeFirestoreQuery):
    """Fake Firestore collection for testing."""

    def __init__(self, client: "FakeFirestoreClient", name: str):
        super().__init__(self)
        self.client = client
        self.name = name
        self.docs: Dict[str, dict] = {}

    def document(self, doc_id: str):
        return FakeFirestoreDocRef(self, doc_id)


class FakeWriteBatch:
    def __init__(self, client: "FakeFirestoreClient"):
        self.client = client
        self._writes = []

    def set(self, ref: FakeFirestoreDocRef, data: dict, merge: bool = False):
        self._writes.append((ref, data, merge))

    def commit(self):
        self.client._maybe_fail("commit")
        self.client.batch_commits += 1
        for ref, data, merge in self._writes:
            ref.set(data, merge=merge)


class FakeFirestoreClient:
    """Fake Firestore client for testing.

    Operations listed in ``failing`` (get, set, update, stream, get_all,
    commit) raise ``RuntimeError`` to simulate an unavailable backend.
    """

    def __init__(self):
        self.collections: Dict[str, FakeFirestoreCollection] = {}
        self.failing = set()
        self.get_all_calls = 0
        self.batch_commits = 0

    def _maybe_fail(self, operation: str) -> None:
        if operation in self.failing:
            raise RuntimeError(f"Firestore unavailable ({operation})")

    def collection(self, name: str):
        if name not in self.collections:
            self.collections[name] = FakeFirestoreCollection(self, name)
        return self.collections[name]

    def get_all(self, refs):
        self._maybe_fail("get_all")
        self.get_all_calls += 1
        for ref in list(refs):
            yield FakeFirestoreDocument(ref.id, ref.collection.docs.get(ref.id), reference=ref)

    def batch(self):
        return FakeWriteBatch(self)


# =============================================================================
# Fake vector store
# =============================================================================


class FakeVectorStore:
    """In-memory stand-in for VectorStore with the same method signatures."""

    def __init__(self):
        self.chunks: Dict[tuple, ChunkRecord] = {}
        self.search_calls: List[Dict[str, Any]] = []
        self.keyword_calls: List[Dict[str, Any]] = []

    def ensure_collection(self) -> bool:
        return False

    def upsert(self, chunks: List[ChunkRecord]) -> int:
        for chunk in chunks:
            p = chunk.payload
            self.chunks[(p.thread_id, p.source, p.chunk_index)] = chunk
        return len(chunks)

    def search(self, vector, organization_id, *, exclude_thread_id=None, limit=40, score_threshold=None):
        self.search_calls.append({"limit": limit, "score_threshold": score_threshold})
        query = np.asarray(vector, dtype=float)
        hits = []
        for chunk in self.chunks.values():
            p = chunk.payload
            if p.organization_id != organization_id or p.thread_id == exclude_thread_id:
                continue
            other = np.asarray(chunk.vector, dtype=float)
            score = float(np.dot(query, other) / (np.linalg.norm(query) * np.linalg.norm(other)))
            if score_threshold is not None and score < score_threshold:
                continue
            hits.append(ChunkHit(thread_id=p.thread_id, chunk_index=p.chunk_index, distance=1.0 - score, payload=p))
        hits.sort(key=lambda h: h.distance)
        return hits[:limit]

    def scroll_by_keywords(self, terms, organization_id, *, exclude_thread_id=None, limit=200):
        self.keyword_calls.append({"terms": list(terms), "limit": limit})
        wanted = set(terms)
        payloads = [
            c.payload
            for c in self.chunks.values()
            if c.payload.organization_id == organization_id
            and c.payload.thread_id != exclude_thread_id
            and wanted.intersection(c.payload.keyword_terms)
        ]
        return payloads[:limit]

    def get_entity_chunks(self, thread_id, organization_id=None):
        chunks = [
            c
            for c in self.chunks.values()
            if c.payload.thread_id == thread_id
            and (organization_id is None or c.payload.organization_id == organization_id)
        ]
        return sorted(chunks, key=lambda c: c.payload.chunk_index)

    def delete_entity_chunks(self, thread_id, source=None):
        for key in [k for k in self.chunks if k[0] == thread_id and (source is None or k[1] == source)]:
            del self.chunks[key]


# =============================================================================
# Builders
# =============================================================================


def make_payload(thread_id: str, chunk_index: int = 0, **overrides) -> ThreadChunkPayload:
    data = {
        "thread_id": thread_id,
        "organization_id": "org_1",
        "chunk_index": chunk_index,
        "source": "summary" if chunk_index == 0 else "message",
        "title": f"Title {thread_id}",
        "short_description": f"Description {thread_id}",
        "created_at": 1_700_000_000_000,
    }
    data.update(overrides)
    return ThreadChunkPayload(**data)


def seed_thread(
    client: FakeFirestoreClient,
    thread_id: str,
    *,
    prefix: str = "test_",
    organization_id: str = "org_1",
    name: str = "Login fails",
    status: int = 0,
    messages: Optional[List[str]] = None,
    created_at: Optional[datetime] = None,
    label_ids: Optional[List[str]] = None,
) -> None:
    """Write a thread document and its messages into the fake client."""
    created_at = created_at or datetime(2024, 1, 1, tzinfo=timezone.utc)
    client.collection(f"{prefix}threads").document(thread_id).set(
        {
            "organization_id": organization_id,
            "name": name,
            "status": status,
            "priority": 1,
            "created_at": created_at,
            "label_ids": list(label_ids or []),
        }
    )
    for i, text in enumerate(messages or []):
        client.collection(f"{prefix}messages").document(f"{thread_id}_m{i}").set(
            {
                "thread_id": thread_id,
                "content": text,
                "created_at": datetime(2024, 1, 1, 0, i, tzinfo=timezone.utc),
            }
        )


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def firestore_client() -> FakeFirestoreClient:
    return FakeFirestoreClient()


@pytest.fixture
def firestore_config() -> FirestoreConfig:
    return FirestoreConfig(collection_prefix="test_")


@pytest.fixture
def vector_store() -> FakeVectorStore:
    return FakeVectorStore()


@pytest.fixture
def similarity_defaults() -> SimilarityDefaults:
    return SimilarityDefaults()
