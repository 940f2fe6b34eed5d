"""Suggest-duplicates processor.

Takes the fused similarity ranking from find-similar, keeps candidates that
are older than the thread and asks Gemini whether the best of them describes
the exact same problem. Only ``high`` confidence verdicts become suggestions.
If the chosen candidate is itself a duplicate of another thread, the
suggestion points at that thread instead.
"""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ValidationError

from src.common.config import DEFAULT_MAX_DUPLICATE_CANDIDATES
from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.find_similar import FindSimilarOutput
from src.processors.prompt_templates import build_duplicate_prompt, get_duplicate_response_schema
from src.providers.gemini_client import GeminiClient, GeminiClientError
from src.similarity.models import SimilarThread
from src.suggestions.models import SuggestionType
from src.suggestions.repository import SuggestionRepository, SuggestionRepositoryError
from src.threads.models import Thread

logger = logging.getLogger(__name__)


class DuplicateEvaluation(BaseModel):
    thread_id: str
    is_duplicate: bool
    confidence: str
    reason: str = ""


class SuggestDuplicatesOutput(BaseModel):
    duplicate_thread_id: Optional[str] = None
    evaluated_count: int = 0


def is_older(candidate: SimilarThread, thread: Thread) -> bool:
    """True when the candidate was created before the thread; id order breaks timestamp ties."""
    created_at = candidate.payload.created_at
    if created_at != thread.created_at_ms:
        return created_at < thread.created_at_ms
    return candidate.thread_id < thread.id


def select_duplicate(
    evaluations: List[DuplicateEvaluation],
    candidates: List[SimilarThread],
) -> Optional[Dict[str, Any]]:
    """Highest-scoring candidate judged a duplicate with high confidence."""
    by_id = {c.thread_id: c for c in candidates}
    selected: Optional[Dict[str, Any]] = None
    for evaluation in evaluations:
        if not evaluation.is_duplicate or evaluation.confidence != "high":
            continue
        candidate = by_id.get(evaluation.thread_id)
        if candidate is None:
            continue
        if selected is None or candidate.score > selected["score"]:
            selected = {
                "thread_id": candidate.thread_id,
                "confidence": evaluation.confidence,
                "reason": evaluation.reason,
                "score": candidate.score,
            }
    return selected


class SuggestDuplicatesProcessor(ProcessorDefinition):
    name = "suggest-duplicates"
    dependencies = ("find-similar",)

    def __init__(
        self,
        gemini: GeminiClient,
        suggestions: SuggestionRepository,
        max_candidates: int = DEFAULT_MAX_DUPLICATE_CANDIDATES,
    ):
        self.gemini = gemini
        self.suggestions = suggestions
        self.max_candidates = max_candidates

    def compute_hash(self, execution: ProcessorExecution) -> str:
        thread = execution.thread
        return compute_content_hash(thread.id, thread.name, thread.first_message_text())

    def _resolve_target(self, candidate_id: str, thread: Thread) -> str:
        """Follow the candidate's own duplicate suggestion, if it has a live one."""
        for suggestion in self.suggestions.list_for_entity(
            SuggestionType.DUPLICATE, candidate_id, thread.organization_id
        ):
            if (
                (suggestion.active or suggestion.accepted)
                and suggestion.related_entity_id
                and suggestion.related_entity_id != thread.id
            ):
                return suggestion.related_entity_id
        return candidate_id

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        similar: Optional[FindSimilarOutput] = execution.context.get_output("find-similar", execution.entity_id)
        if similar is None:
            return ProcessorError(execution.entity_id, "No output available from find-similar processor")

        candidates = [c for c in similar.similar_threads if is_older(c, thread)][: self.max_candidates]
        if not candidates:
            logger.info("No older similar threads", extra={"thread_id": thread.id})
            return ProcessorSuccess(execution.entity_id, SuggestDuplicatesOutput())

        prompt = build_duplicate_prompt(
            thread,
            [
                {
                    "thread_id": c.thread_id,
                    "title": c.payload.title,
                    "short_description": c.payload.short_description,
                }
                for c in candidates
            ],
        )
        try:
            response = self.gemini.generate(prompt, get_duplicate_response_schema())
            evaluations = [DuplicateEvaluation(**item) for item in response.get("evaluations", [])]
        except (GeminiClientError, ValidationError, TypeError) as e:
            return ProcessorError(execution.entity_id, f"Duplicate evaluation failed: {e}")

        selected = select_duplicate(evaluations, candidates)
        target: Optional[str] = None
        try:
            if selected is not None:
                target = self._resolve_target(selected["thread_id"], thread)
                self.suggestions.upsert(
                    SuggestionType.DUPLICATE,
                    thread.id,
                    thread.organization_id,
                    {
                        "confidence": selected["confidence"],
                        "reason": selected["reason"],
                        "score": selected["score"],
                    },
                    related_entity_id=target,
                )
                self.suggestions.deactivate_others(
                    SuggestionType.DUPLICATE,
                    thread.id,
                    thread.organization_id,
                    keep_related_entity_id=target,
                )
        except SuggestionRepositoryError as e:
            return ProcessorError(execution.entity_id, f"Failed to store duplicate suggestion: {e}")

        logger.info(
            "Evaluated duplicate candidates",
            extra={"thread_id": thread.id, "evaluated": len(candidates), "duplicate_thread_id": target},
        )
        return ProcessorSuccess(
            execution.entity_id,
            SuggestDuplicatesOutput(duplicate_thread_id=target, evaluated_count=len(candidates)),
        )
