"""Firestore repository for pipeline suggestions.

Document ids are derived from (type, entity_id, related_entity_id), so
writing the same suggestion twice updates one document instead of creating
duplicates.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from src.common.config import FirestoreConfig, load_firestore_config
from src.common.firestore import get_firestore_client, suggestions_collection, where_filter
from src.suggestions.models import Suggestion, SuggestionType

if TYPE_CHECKING:
    from google.cloud.firestore import Client as FirestoreClient

logger = logging.getLogger(__name__)


class SuggestionRepositoryError(Exception):
    """Base exception for suggestion repository errors."""

    pass


def suggestion_document_id(
    suggestion_type: SuggestionType,
    entity_id: str,
    related_entity_id: Optional[str] = None,
) -> str:
    digest = hashlib.sha256(
        f"{suggestion_type.value}:{entity_id}:{related_entity_id or ''}".encode("utf-8")
    ).hexdigest()
    return f"sugg_{digest[:24]}"


class SuggestionRepository:
    """Suggestion reads and idempotent writes."""

    def __init__(
        self,
        client: Optional["FirestoreClient"] = None,
        config: Optional[FirestoreConfig] = None,
    ):
        self.config = config or load_firestore_config()
        self._client = client

    @property
    def client(self) -> "FirestoreClient":
        if self._client is None:
            self._client = get_firestore_client(self.config)
        return self._client

    @property
    def suggestions_ref(self):
        return self.client.collection(suggestions_collection(self.config.collection_prefix))

    def get(
        self,
        suggestion_type: SuggestionType,
        entity_id: str,
        related_entity_id: Optional[str] = None,
    ) -> Optional[Suggestion]:
        doc_id = suggestion_document_id(suggestion_type, entity_id, related_entity_id)
        try:
            snapshot = self.suggestions_ref.document(doc_id).get()
        except Exception as e:
            raise SuggestionRepositoryError(f"Failed to read suggestion {doc_id}: {e}") from e
        if not snapshot.exists:
            return None
        return Suggestion(**(snapshot.to_dict() or {}))

    def list_for_entity(
        self,
        suggestion_type: SuggestionType,
        entity_id: str,
        organization_id: str,
    ) -> List[Suggestion]:
        """All suggestions of a type for a thread, oldest first."""
        try:
            query = where_filter(self.suggestions_ref, "type", "==", suggestion_type.value)
            query = where_filter(query, "entity_id", "==", entity_id)
            query = where_filter(query, "organization_id", "==", organization_id)
            suggestions = [Suggestion(**(doc.to_dict() or {})) for doc in query.stream()]
        except Exception as e:
            raise SuggestionRepositoryError(f"Failed to list suggestions for {entity_id}: {e}") from e
        return sorted(suggestions, key=lambda s: (s.created_at, s.suggestion_id))

    def upsert(
        self,
        suggestion_type: SuggestionType,
        entity_id: str,
        organization_id: str,
        results: Any,
        *,
        related_entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Suggestion:
        """Create or update the suggestion for (type, entity, related entity).

        Existing suggestions keep their active/accepted flags and creation
        time; only results, metadata and updated_at change.
        """
        now = datetime.now(timezone.utc)
        existing = self.get(suggestion_type, entity_id, related_entity_id)
        if existing is not None:
            suggestion = existing.model_copy(
                update={
                    "results": results,
                    "metadata": metadata if metadata is not None else existing.metadata,
                    "updated_at": now,
                }
            )
        else:
            suggestion = Suggestion(
                suggestion_id=suggestion_document_id(suggestion_type, entity_id, related_entity_id),
                type=suggestion_type,
                entity_id=entity_id,
                related_entity_id=related_entity_id,
                organization_id=organization_id,
                results=results,
                metadata=metadata or {},
                active=True,
                accepted=False,
                created_at=now,
                updated_at=now,
            )

        try:
            self.suggestions_ref.document(suggestion.suggestion_id).set(suggestion.to_dict())
        except Exception as e:
            raise SuggestionRepositoryError(f"Failed to write suggestion {suggestion.suggestion_id}: {e}") from e

        logger.info(
            "Upserted suggestion",
            extra={
                "suggestion_id": suggestion.suggestion_id,
                "type": suggestion_type.value,
                "thread_id": entity_id,
                "related_thread_id": related_entity_id,
                "created": existing is None,
            },
        )
        return suggestion

    def deactivate(self, suggestion_id: str) -> None:
        try:
            self.suggestions_ref.document(suggestion_id).update(
                {"active": False, "updated_at": datetime.now(timezone.utc).isoformat()}
            )
        except Exception as e:
            raise SuggestionRepositoryError(f"Failed to deactivate suggestion {suggestion_id}: {e}") from e

    def deactivate_others(
        self,
        suggestion_type: SuggestionType,
        entity_id: str,
        organization_id: str,
        keep_related_entity_id: Optional[str],
    ) -> int:
        """Deactivate active suggestions of a thread except the one for ``keep_related_entity_id``."""
        count = 0
        for suggestion in self.list_for_entity(suggestion_type, entity_id, organization_id):
            if suggestion.active and suggestion.related_entity_id != keep_related_entity_id:
                self.deactivate(suggestion.suggestion_id)
                count += 1
        return count
