"""Suggest-labels processor.

Gemini picks label ids from the organization's enabled labels. Picks outside
the enabled set are dropped, and so are labels an agent dismissed on an
earlier suggestion for the same thread. The stored suggestion keeps a cache
hash of the thread and label set in its metadata; when it still matches,
the stored picks are reused without calling Gemini.
"""

import hashlib
import logging
from typing import Any, Dict, Iterable, List, Sequence

from pydantic import BaseModel, Field

from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.prompt_templates import build_label_prompt, get_label_response_schema
from src.providers.gemini_client import GeminiClient, GeminiClientError
from src.suggestions.models import SuggestionType
from src.suggestions.repository import SuggestionRepository, SuggestionRepositoryError
from src.threads.models import Label, Thread
from src.threads.repository import ThreadRepository, ThreadRepositoryError

logger = logging.getLogger(__name__)

HASH_MESSAGE_LIMIT = 5


class SuggestLabelsOutput(BaseModel):
    label_ids: List[str] = Field(default_factory=list)
    cached: bool = False


def _iso(value) -> str:
    return value.isoformat() if value else ""


def label_cache_hash(thread: Thread, labels: Sequence[Label]) -> str:
    """Digest of the thread content and the full label set, timestamps included."""
    enabled = sorted((label for label in labels if label.enabled), key=lambda label: label.id)
    parts = [
        thread.id,
        thread.name,
        _iso(thread.created_at),
        "|".join(thread.message_texts(HASH_MESSAGE_LIMIT)),
        "|".join(f"{label.id}:{label.name}" for label in enabled),
        "|".join(sorted(f"{_iso(label.created_at)}:{_iso(label.updated_at)}" for label in labels)),
    ]
    return hashlib.sha256("||".join(parts).encode("utf-8")).hexdigest()


def drop_dismissed(label_ids: Iterable[str], dismissed: Iterable[str]) -> List[str]:
    dismissed_set = set(dismissed)
    return [label_id for label_id in label_ids if label_id not in dismissed_set]


class SuggestLabelsProcessor(ProcessorDefinition):
    name = "suggest-labels"
    dependencies = ()

    def __init__(self, gemini: GeminiClient, suggestions: SuggestionRepository, threads: ThreadRepository):
        self.gemini = gemini
        self.suggestions = suggestions
        self.threads = threads

    def _enabled_labels(self, thread: Thread) -> List[Label]:
        return [label for label in self.threads.list_labels(thread.organization_id) if label.enabled]

    def compute_hash(self, execution: ProcessorExecution) -> str:
        thread = execution.thread
        return compute_content_hash(
            thread.id,
            thread.name,
            thread.message_texts(HASH_MESSAGE_LIMIT),
            [[label.id, label.name] for label in self._enabled_labels(thread)],
        )

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        try:
            labels = self.threads.list_labels(thread.organization_id)
        except ThreadRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to load labels: {e}")

        enabled = [label for label in labels if label.enabled]
        if not enabled:
            logger.info("No enabled labels", extra={"thread_id": thread.id, "organization_id": thread.organization_id})
            return ProcessorSuccess(execution.entity_id, SuggestLabelsOutput())

        valid_ids = {label.id for label in enabled}
        cache_hash = label_cache_hash(thread, labels)
        try:
            existing = self.suggestions.get(SuggestionType.LABEL, thread.id)
        except SuggestionRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to read label suggestion: {e}")

        metadata: Dict[str, Any] = dict(existing.metadata) if existing else {}
        dismissed = list(metadata.get("dismissed") or [])
        accepted = list(metadata.get("accepted") or [])

        if existing is not None and metadata.get("hash") == cache_hash:
            stored = [label_id for label_id in (existing.results or []) if label_id in valid_ids]
            return ProcessorSuccess(
                execution.entity_id,
                SuggestLabelsOutput(label_ids=drop_dismissed(stored, dismissed), cached=True),
            )

        try:
            response = self.gemini.generate(build_label_prompt(thread, enabled), get_label_response_schema())
        except GeminiClientError as e:
            return ProcessorError(execution.entity_id, f"Label suggestion failed: {e}")

        suggested = [str(label_id) for label_id in response.get("label_ids") or [] if str(label_id) in valid_ids]
        suggested = list(dict.fromkeys(suggested))

        try:
            self.suggestions.upsert(
                SuggestionType.LABEL,
                thread.id,
                thread.organization_id,
                suggested,
                metadata={"hash": cache_hash, "dismissed": dismissed, "accepted": accepted},
            )
        except SuggestionRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to store label suggestion: {e}")

        label_ids = drop_dismissed(suggested, dismissed)
        logger.info("Suggested labels", extra={"thread_id": thread.id, "label_count": len(label_ids)})
        return ProcessorSuccess(execution.entity_id, SuggestLabelsOutput(label_ids=label_ids))
