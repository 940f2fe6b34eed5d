"""Shared Firestore utilities for Threadsense services.

This module provides a consistent interface for Firestore operations
across the pipeline worker, repositories and bootstrap scripts.

Usage:
    from src.common.firestore import get_firestore_client, threads_collection

    client = get_firestore_client()
    collection = client.collection(threads_collection())
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TYPE_CHECKING

from google.cloud.firestore_v1.base_query import FieldFilter

from src.common.config import FirestoreConfig, load_firestore_config

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient


class FirestoreError(Exception):
    """Base exception for Firestore-related errors."""

    pass


def get_firestore_client(
    config: Optional[FirestoreConfig] = None,
) -> "FirestoreClient":
    """Get a configured Firestore client.

    This is the canonical way to obtain a Firestore client across all
    Threadsense services. It handles:
    - Lazy import of google-cloud-firestore
    - Configuration from environment or explicit config
    - Proper project and database ID setup

    Args:
        config: Optional FirestoreConfig. If not provided, loads from environment.

    Returns:
        Configured Firestore client.

    Raises:
        FirestoreError: If client initialization fails.
    """
    from google.cloud import firestore

    if config is None:
        config = load_firestore_config()

    kwargs: Dict[str, Any] = {}
    if config.project_id:
        kwargs["project"] = config.project_id
    if config.database_id:
        kwargs["database"] = config.database_id

    try:
        return firestore.Client(**kwargs)
    except Exception as e:
        raise FirestoreError(f"Failed to initialize Firestore client: {e}") from e


def where_filter(query, field: str, op: str, value):
    """Apply a where filter using the keyword FieldFilter syntax."""
    return query.where(filter=FieldFilter(field, op, value))


def get_collection_prefix(config: Optional[FirestoreConfig] = None) -> str:
    """Get the collection prefix from config or environment.

    Args:
        config: Optional FirestoreConfig. If not provided, loads from environment.

    Returns:
        Collection prefix string (e.g., "threadsense_").
    """
    if config is None:
        config = load_firestore_config()
    return config.collection_prefix


# Standard collection names
def threads_collection(prefix: Optional[str] = None) -> str:
    """Get the threads collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}threads"


def labels_collection(prefix: Optional[str] = None) -> str:
    """Get the organization labels collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}labels"


def suggestions_collection(prefix: Optional[str] = None) -> str:
    """Get the suggestions collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}suggestions"


def pipeline_jobs_collection(prefix: Optional[str] = None) -> str:
    """Get the pipeline job records collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}pipeline_jobs"


def idempotency_keys_collection(prefix: Optional[str] = None) -> str:
    """Get the processor idempotency keys collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}pipeline_idempotency_keys"


def messages_collection(prefix: Optional[str] = None) -> str:
    """Get the thread messages collection name."""
    prefix = prefix or get_collection_prefix()
    return f"{prefix}messages"
