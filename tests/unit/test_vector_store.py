"""Unit tests for the Qdrant boundary with a mocked client."""

from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from conftest import make_payload

from src.common.config import QdrantConfig
from src.similarity.models import ChunkRecord
from src.similarity.vector_store import VectorStore, VectorStoreError, chunk_point_id


def point(thread_id, chunk_index=0, score=0.8, vector=None, payload=None):
    return SimpleNamespace(
        id=chunk_point_id(thread_id, "summary" if chunk_index == 0 else "message", chunk_index),
        payload=payload if payload is not None else make_payload(thread_id, chunk_index).to_dict(),
        score=score,
        vector=vector,
    )


@pytest.fixture
def qdrant():
    return MagicMock()


@pytest.fixture
def store(qdrant):
    config = QdrantConfig(url="http://localhost:6333", api_key=None, collection="thread_chunks_test")
    return VectorStore(client=qdrant, config=config, vector_size=2)


def test_point_ids_are_deterministic():
    assert chunk_point_id("t1", "summary", 0) == chunk_point_id("t1", "summary", 0)
    assert chunk_point_id("t1", "summary", 0) != chunk_point_id("t1", "message", 0)


def test_ensure_collection_creates_indexes_once(store, qdrant):
    qdrant.collection_exists.return_value = False
    assert store.ensure_collection() is True
    assert qdrant.create_payload_index.call_count == 5

    qdrant.reset_mock()
    qdrant.collection_exists.return_value = True
    assert store.ensure_collection() is False
    qdrant.create_collection.assert_not_called()


def test_upsert_writes_payload_and_vector(store, qdrant):
    payload = make_payload("t1")
    assert store.upsert([ChunkRecord(payload=payload, vector=[0.1, 0.2])]) == 1

    points = qdrant.upsert.call_args.kwargs["points"]
    assert points[0].id == chunk_point_id("t1", "summary", 0)
    assert points[0].payload["kind"] == "thread_chunk"


def test_upsert_rejects_chunks_without_vectors(store, qdrant):
    with pytest.raises(VectorStoreError):
        store.upsert([ChunkRecord(payload=make_payload("t1"), vector=None)])
    qdrant.upsert.assert_not_called()


def test_search_returns_distances_and_drops_bad_points(store, qdrant):
    qdrant.query_points.return_value = SimpleNamespace(
        points=[
            point("t2", score=0.9),
            point("t3", payload={"kind": "something_else"}),
            point("t1", score=1.0),
        ]
    )

    hits = store.search([1.0, 0.0], "org_1", exclude_thread_id="t1", limit=8)

    assert [(h.thread_id, round(h.distance, 6)) for h in hits] == [("t2", 0.1)]
    assert qdrant.query_points.call_args.kwargs["limit"] == 8


def test_get_entity_chunks_pages_and_sorts(store, qdrant):
    qdrant.scroll.side_effect = [
        ([point("t1", 2, vector=[0.0, 1.0])], "next"),
        ([point("t1", 0, vector={"": [1.0, 0.0]})], None),
    ]

    chunks = store.get_entity_chunks("t1", "org_1")

    assert [c.payload.chunk_index for c in chunks] == [0, 2]
    assert chunks[0].vector == [1.0, 0.0]
    assert qdrant.scroll.call_count == 2


def test_scroll_by_keywords_without_terms_skips_the_call(store, qdrant):
    assert store.scroll_by_keywords([], "org_1") == []
    qdrant.scroll.assert_not_called()


def test_client_errors_become_vector_store_errors(store, qdrant):
    qdrant.query_points.side_effect = RuntimeError("connection refused")
    qdrant.delete.side_effect = RuntimeError("connection refused")

    with pytest.raises(VectorStoreError):
        store.search([1.0, 0.0], "org_1")
    with pytest.raises(VectorStoreError):
        store.delete_entity_chunks("t1", source="message")
