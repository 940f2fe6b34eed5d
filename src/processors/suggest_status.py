"""Suggest-status processor.

Gemini proposes a status change only when the conversation clearly calls for
one. A proposal is discarded when the status is unknown, equals the current
status, or comes with confidence below ``MIN_CONFIDENCE``. Without a
proposal, active status suggestions of the thread are deactivated.
"""

import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.prompt_templates import build_status_prompt, get_status_response_schema
from src.providers.gemini_client import GeminiClient, GeminiClientError
from src.suggestions.models import SuggestionType
from src.suggestions.repository import SuggestionRepository, SuggestionRepositoryError
from src.threads.models import STATUS_LABELS, Thread

logger = logging.getLogger(__name__)

MIN_CONFIDENCE = 0.5
HASH_MESSAGE_LIMIT = 10


class StatusSuggestion(BaseModel):
    suggested_status: Optional[int] = None
    confidence: float = 0.0
    reasoning: str = ""


class SuggestStatusOutput(StatusSuggestion):
    cached: bool = False


def validate_status_suggestion(raw: Dict[str, Any], current_status: int) -> StatusSuggestion:
    """Apply the acceptance rules to a raw Gemini response."""
    suggested = raw.get("suggested_status")
    try:
        confidence = float(raw.get("confidence") or 0.0)
    except (TypeError, ValueError):
        confidence = 0.0
    reasoning = str(raw.get("reasoning") or "")

    if suggested is not None:
        if isinstance(suggested, bool) or not isinstance(suggested, (int, float)) or int(suggested) != suggested:
            return StatusSuggestion(reasoning=f"Invalid status suggested: {suggested}")
        suggested = int(suggested)
        if suggested not in STATUS_LABELS:
            return StatusSuggestion(reasoning=f"Invalid status suggested: {suggested}")
        if suggested == current_status:
            return StatusSuggestion(
                confidence=confidence,
                reasoning="Suggested the current status; no change needed",
            )

    if confidence < MIN_CONFIDENCE:
        return StatusSuggestion(confidence=confidence, reasoning="Low confidence in suggested status")

    return StatusSuggestion(suggested_status=suggested, confidence=confidence, reasoning=reasoning)


class SuggestStatusProcessor(ProcessorDefinition):
    name = "suggest-status"
    dependencies = ()

    def __init__(self, gemini: GeminiClient, suggestions: SuggestionRepository):
        self.gemini = gemini
        self.suggestions = suggestions

    def compute_hash(self, execution: ProcessorExecution) -> str:
        thread = execution.thread
        return compute_content_hash(
            thread.id,
            thread.name,
            thread.status,
            thread.message_texts(HASH_MESSAGE_LIMIT),
        )

    def _suggest(self, thread: Thread) -> StatusSuggestion:
        if not thread.message_texts():
            return StatusSuggestion(reasoning="No message content to analyze")
        response = self.gemini.generate(
            build_status_prompt(thread, thread.status),
            get_status_response_schema(),
        )
        return validate_status_suggestion(response, thread.status)

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        try:
            suggestion = self._suggest(thread)
        except GeminiClientError as e:
            return ProcessorError(execution.entity_id, f"Status suggestion failed: {e}")

        metadata = {
            "confidence": suggestion.confidence,
            "reasoning": suggestion.reasoning,
            "current_status": thread.status,
        }
        try:
            if suggestion.suggested_status is not None:
                self.suggestions.upsert(
                    SuggestionType.STATUS,
                    thread.id,
                    thread.organization_id,
                    {"suggested_status": suggestion.suggested_status},
                    metadata=metadata,
                )
            else:
                existing = self.suggestions.get(SuggestionType.STATUS, thread.id)
                if existing is not None and existing.active:
                    self.suggestions.deactivate(existing.suggestion_id)
                    logger.info("Deactivated status suggestion", extra={"thread_id": thread.id})
        except SuggestionRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to store status suggestion: {e}")

        logger.info(
            "Evaluated thread status",
            extra={
                "thread_id": thread.id,
                "current_status": STATUS_LABELS.get(thread.status, "Unknown"),
                "suggested_status": suggestion.suggested_status,
                "confidence": suggestion.confidence,
            },
        )
        return ProcessorSuccess(execution.entity_id, SuggestStatusOutput(**suggestion.model_dump()))
