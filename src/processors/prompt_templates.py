"""Prompt builders and Gemini response schemas for pipeline processors.

Each builder renders thread content into a prompt; each schema is the JSON
schema dict passed as ``response_schema`` so Gemini returns structured JSON.
"""

from typing import Any, Dict, List, Sequence

from src.threads.models import STATUS_LABELS, Label, Thread

MAX_SUMMARY_MESSAGES = 3
MAX_SUMMARY_CHARACTERS = 8000
MAX_SUMMARY_KEYWORDS = 7


# ============================================================================
# Summaries
# ============================================================================

SUMMARY_PROMPT = """You are a support thread analyzer optimized for semantic similarity matching. Your goal is to extract the CORE INTENT and UNDERLYING PROBLEM from a support thread, ignoring surface-level noise.

## Thread Data
**Title:**
{title}

**Messages:**
{messages}

**Applied Labels:**
{labels}

---

## Instructions

Identify what the user ACTUALLY needs, not just what they literally said.

1. **Core Problem**: Strip emotional language, circumstantial details, the user's attempted solutions and greetings.
2. **Normalization**: Use canonical technical vocabulary and pick one term per concept ("authentication", not "logging in stuff").
3. **Intent**: Decide whether this is a how-to question, a bug report, a feature request or a configuration issue.
4. **Avoid**: the user's proposed fix as the problem, a keyword for every noun, describing the thread itself, instance-specific details.

## Output Guidelines

- **title**: A normalized, searchable problem statement (not a ticket title)
- **short_description**: The distilled problem plus the context needed to understand it, 2-3 sentences
- **keywords**: Only terms that would find SIMILAR problems (max {max_keywords})
- **entities**: Technical components, features or systems involved (not actions)
- **expected_action**: The type of resolution needed (e.g. "configuration guidance", "bug fix", "documentation clarification")

If another user had the exact same underlying problem with different wording, this summary should match theirs."""


def select_summary_messages(thread: Thread) -> List[str]:
    """First few non-empty messages, stopping once the character budget is used."""
    selected: List[str] = []
    total = 0
    for text in thread.message_texts():
        if len(selected) >= MAX_SUMMARY_MESSAGES or total >= MAX_SUMMARY_CHARACTERS:
            break
        remaining = MAX_SUMMARY_CHARACTERS - total
        snippet = text[:remaining]
        selected.append(snippet)
        total += len(snippet)
    return selected


def build_summary_prompt(thread: Thread) -> str:
    messages = select_summary_messages(thread)
    rendered = "\n\n".join(f"{i + 1}. {text}" for i, text in enumerate(messages))
    return SUMMARY_PROMPT.format(
        title=thread.name or "No title available.",
        messages=rendered or "No message content available.",
        labels=", ".join(thread.enabled_label_names()) or "None",
        max_keywords=MAX_SUMMARY_KEYWORDS,
    )


def get_summary_response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "title": {"type": "string"},
            "short_description": {"type": "string"},
            "keywords": {"type": "array", "items": {"type": "string"}, "maxItems": MAX_SUMMARY_KEYWORDS},
            "entities": {"type": "array", "items": {"type": "string"}},
            "expected_action": {"type": "string"},
        },
        "required": ["title", "short_description", "keywords", "entities", "expected_action"],
    }


# ============================================================================
# Duplicate detection
# ============================================================================

DUPLICATE_PROMPT = """You are a support ticket duplicate detector. Decide whether the current thread is a DUPLICATE of any candidate thread.

A duplicate describes the EXACT SAME problem with the SAME expected resolution. Be very conservative: when in doubt, it is NOT a duplicate.

Common false positives:
- Same topic but different specific issues ("login fails with Google" vs "login fails with email")
- Similar symptoms with different root causes
- Related features but different questions ("how to export data" vs "how to import data")

CURRENT THREAD:
Title: {title}
First Message: {first_message}

CANDIDATE THREADS:
{candidates}

For each candidate answer: is it the exact same problem, would one resolution resolve both, and would merging the tickets make sense to a support agent? Use "high" confidence only when you are certain the issue is identical."""


def build_duplicate_prompt(thread: Thread, candidates: Sequence[Dict[str, Any]]) -> str:
    rendered = "\n\n".join(
        f"Candidate {i + 1} (ID: {c['thread_id']}):\n  Title: {c['title']}\n  Description: {c['short_description']}"
        for i, c in enumerate(candidates)
    )
    return DUPLICATE_PROMPT.format(
        title=thread.name or "",
        first_message=thread.first_message_text() or "No message content available.",
        candidates=rendered,
    )


def get_duplicate_response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "evaluations": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "thread_id": {"type": "string"},
                        "is_duplicate": {"type": "boolean"},
                        "confidence": {"type": "string", "enum": ["high", "medium", "low"]},
                        "reason": {"type": "string"},
                    },
                    "required": ["thread_id", "is_duplicate", "confidence", "reason"],
                },
            }
        },
        "required": ["evaluations"],
    }


# ============================================================================
# Labels
# ============================================================================

LABEL_PROMPT = """You are a helpful assistant that categorizes support threads with appropriate labels.

Given the thread below, suggest relevant labels from the available labels list.
Only suggest labels that are truly relevant to the thread content.
Do not suggest more than 3 labels unless absolutely necessary.
If no labels are relevant, return an empty array.

{thread}

Available Labels:
{labels}

Return only the IDs of the labels most relevant to this thread."""


def build_label_prompt(thread: Thread, labels: Sequence[Label]) -> str:
    rendered_thread = "\n".join(
        [f"Thread: {thread.name}", "", "Messages:"]
        + [f"{i + 1}. {text}" for i, text in enumerate(thread.message_texts())]
    )
    rendered_labels = "\n".join(f"- {label.name} (ID: {label.id})" for label in labels)
    return LABEL_PROMPT.format(thread=rendered_thread, labels=rendered_labels)


def get_label_response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {"label_ids": {"type": "array", "items": {"type": "string"}}},
        "required": ["label_ids"],
    }


# ============================================================================
# Status
# ============================================================================

STATUS_PROMPT = """You are a support ticket status analyzer. Suggest a status change ONLY when the conversation clearly warrants it.

CRITICAL RULES:
1. NEVER suggest the current status
2. Default to NO CHANGE unless there is strong evidence
3. Be conservative: false positives are worse than false negatives
4. Consider the FULL conversation, not just the last message

STATUS DEFINITIONS:
- Open (0): needs attention; new issue, customer added information, or a previous resolution failed
- In Progress (1): an agent acknowledged the issue and is investigating
- Resolved (2): a solution was provided and awaits confirmation, or the customer confirmed it
- Closed (3): no further action needed; abandoned after resolution or closed without one

Traps: an agent reply is not a resolution; do not close without confirmation or clear abandonment; a thread existing is not "In Progress".

Write the reasoning for support agents: use status names instead of numbers and refer to the thread by its title, never by id.

Thread Title: {title}
Current Status: {current_label} ({current_status})

Messages (in chronological order):
{messages}

The current status is "{current_label}" ({current_status}). You MUST NOT suggest it; return null for suggested_status if it is still correct.

Available statuses to suggest:
{available}"""


def build_status_prompt(thread: Thread, current_status: int) -> str:
    current_label = STATUS_LABELS.get(current_status, "Unknown")
    available = "\n".join(
        f"- {label} ({status})" for status, label in STATUS_LABELS.items() if status != current_status
    )
    messages = "\n".join(f"{i + 1}. {text}" for i, text in enumerate(thread.message_texts()))
    return STATUS_PROMPT.format(
        title=thread.name or "",
        current_label=current_label,
        current_status=current_status,
        messages=messages,
        available=available,
    )


def get_status_response_schema() -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {
            "suggested_status": {"type": "integer", "nullable": True},
            "confidence": {"type": "number"},
            "reasoning": {"type": "string"},
        },
        "required": ["suggested_status", "confidence", "reasoning"],
    }
