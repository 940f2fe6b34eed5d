"""Summarize processor: LLM summary of a thread's underlying problem.

The summary (title, short description, keywords, entities, expected action)
is the input of the embed processor and, through the summary chunk, of every
similarity search.
"""

import logging
from typing import List

from pydantic import BaseModel, Field, ValidationError, field_validator

from src.pipeline.idempotency import compute_content_hash
from src.pipeline.models import ProcessorError, ProcessorResult, ProcessorSuccess
from src.pipeline.registry import ProcessorDefinition, ProcessorExecution
from src.processors.prompt_templates import (
    MAX_SUMMARY_KEYWORDS,
    build_summary_prompt,
    get_summary_response_schema,
)
from src.providers.gemini_client import GeminiClient, GeminiClientError

logger = logging.getLogger(__name__)


class ThreadSummary(BaseModel):
    """Structured summary returned by Gemini."""

    title: str
    short_description: str = ""
    keywords: List[str] = Field(default_factory=list)
    entities: List[str] = Field(default_factory=list)
    expected_action: str = ""

    @field_validator("title", "short_description", "expected_action")
    @classmethod
    def strip_text(cls, v: str) -> str:
        return (v or "").strip()

    @field_validator("keywords")
    @classmethod
    def limit_keywords(cls, v: List[str]) -> List[str]:
        cleaned = [k.strip() for k in v if k and k.strip()]
        return cleaned[:MAX_SUMMARY_KEYWORDS]

    def to_text(self) -> str:
        """Embedding input: one ``key: value`` line per field."""
        return "\n".join(
            [
                f"title: {self.title}",
                f"short_description: {self.short_description}",
                f"keywords: {', '.join(self.keywords)}",
                f"entities: {', '.join(self.entities)}",
                f"expected_action: {self.expected_action}",
            ]
        )


class SummarizeProcessor(ProcessorDefinition):
    name = "summarize"
    dependencies = ()

    def __init__(self, gemini: GeminiClient):
        self.gemini = gemini

    def compute_hash(self, execution: ProcessorExecution) -> str:
        thread = execution.thread
        return compute_content_hash(
            thread.name,
            thread.first_message_text(),
            thread.enabled_label_names(),
        )

    def execute(self, execution: ProcessorExecution) -> ProcessorResult:
        thread = execution.thread
        try:
            response = self.gemini.generate(build_summary_prompt(thread), get_summary_response_schema())
            summary = ThreadSummary(**response)
        except (GeminiClientError, ValidationError, TypeError) as e:
            logger.warning(
                "Summary generation failed",
                extra={"thread_id": thread.id, "error": str(e)},
            )
            return ProcessorError(execution.entity_id, f"Failed to generate summary: {e}")

        if not summary.title:
            return ProcessorError(execution.entity_id, "Failed to generate summary: empty title")

        logger.info(
            "Summarized thread",
            extra={"thread_id": thread.id, "keyword_count": len(summary.keywords)},
        )
        return ProcessorSuccess(execution.entity_id, summary)
