"""Utility script to create the Firestore collections and the Qdrant collection used by the pipeline."""

from __future__ import annotations

from datetime import datetime, timezone

from google.cloud import firestore

from src.common.config import load_pipeline_settings
from src.common.env import load_env
from src.common.firestore import (
    get_firestore_client,
    idempotency_keys_collection,
    pipeline_jobs_collection,
    suggestions_collection,
)
from src.similarity.vector_store import VectorStore


def ensure_collection(client: firestore.Client, name: str) -> None:
    """Create a collection by writing a bootstrap document if it doesn't exist."""
    doc_ref = client.collection(name).document("_bootstrap_placeholder")
    doc_ref.set(
        {
            "note": "Threadsense bootstrap placeholder",
            "created_at": datetime.now(tz=timezone.utc).isoformat(),
        },
        merge=True,
    )


def main() -> None:
    load_env()
    settings = load_pipeline_settings()
    client = get_firestore_client(settings.firestore)

    prefix = settings.firestore.collection_prefix
    names = [
        pipeline_jobs_collection(prefix),
        idempotency_keys_collection(prefix),
        suggestions_collection(prefix),
    ]
    for name in names:
        ensure_collection(client, name)
    print(f"Created/verified collections: {', '.join(names)}")

    store = VectorStore(config=settings.qdrant, vector_size=settings.embedding.output_dimensionality)
    created = store.ensure_collection()
    state = "Created" if created else "Verified"
    print(f"{state} Qdrant collection: {settings.qdrant.collection}")


if __name__ == "__main__":
    main()
