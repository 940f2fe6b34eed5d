"""Builders for the chunk payloads written by the embed processors."""

from datetime import datetime, timezone
from typing import List, Optional

from src.similarity.models import ThreadChunkPayload
from src.similarity.scoring import canonicalize_keywords, keyword_terms
from src.threads.models import Thread

SUMMARY_CHUNK_INDEX = 0


def build_chunk_payload(
    thread: Thread,
    *,
    chunk_index: int,
    source: str,
    text: str,
    keywords: List[str],
    title: Optional[str] = None,
    short_description: str = "",
    entities: Optional[List[str]] = None,
    expected_action: str = "",
    message_id: Optional[str] = None,
) -> ThreadChunkPayload:
    """Chunk payload with the thread's metadata denormalized onto it."""
    canonical = canonicalize_keywords(keywords)
    return ThreadChunkPayload(
        thread_id=thread.id,
        organization_id=thread.organization_id,
        chunk_index=chunk_index,
        source=source,
        message_id=message_id,
        text=text,
        keywords=canonical,
        keyword_terms=keyword_terms(canonical),
        title=title or thread.name or "Untitled",
        short_description=short_description,
        entities=list(entities or []),
        expected_action=expected_action,
        status=thread.status,
        priority=thread.priority,
        author_id=thread.author_id,
        assigned_user_id=thread.assigned_user_id,
        label_ids=list(thread.label_ids),
        created_at=thread.created_at_ms,
        updated_at=datetime.now(timezone.utc).isoformat(),
    )
