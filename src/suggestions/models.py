"""Pydantic models for suggestions written by pipeline processors."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class SuggestionType(str, Enum):
    RELATED_THREADS = "related-threads"
    DUPLICATE = "duplicate"
    LABEL = "label"
    STATUS = "status"


class Suggestion(BaseModel):
    """A suggestion about one thread, optionally pointing at another thread.

    ``results`` holds the processor output shown to agents; ``metadata`` holds
    bookkeeping such as content hashes and dismissed label ids.
    """

    suggestion_id: str
    type: SuggestionType
    entity_id: str = Field(..., description="Thread the suggestion is about.")
    related_entity_id: Optional[str] = Field(None, description="Other thread, for duplicates.")
    organization_id: str
    results: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    active: bool = True
    accepted: bool = False
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict."""
        return {
            "suggestion_id": self.suggestion_id,
            "type": self.type.value,
            "entity_id": self.entity_id,
            "related_entity_id": self.related_entity_id,
            "organization_id": self.organization_id,
            "results": self.results,
            "metadata": dict(self.metadata),
            "active": self.active,
            "accepted": self.accepted,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
