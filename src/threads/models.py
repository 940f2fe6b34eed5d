"""Pydantic models for support threads, their messages and labels."""

import json
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ThreadStatus(IntEnum):
    """Lifecycle status of a support thread."""

    OPEN = 0
    IN_PROGRESS = 1
    RESOLVED = 2
    CLOSED = 3
    DUPLICATED = 4

    @property
    def label(self) -> str:
        return STATUS_LABELS[self]


STATUS_LABELS: Dict[int, str] = {
    ThreadStatus.OPEN: "Open",
    ThreadStatus.IN_PROGRESS: "In Progress",
    ThreadStatus.RESOLVED: "Resolved",
    ThreadStatus.CLOSED: "Closed",
    ThreadStatus.DUPLICATED: "Duplicated",
}


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _collect_text(node: Any, parts: List[str]) -> None:
    if isinstance(node, list):
        for child in node:
            _collect_text(child, parts)
        return
    if not isinstance(node, dict):
        return
    if node.get("type") == "text" and isinstance(node.get("text"), str):
        parts.append(node["text"])
        return
    if node.get("type") == "hardBreak":
        parts.append("\n")
        return
    before = len(parts)
    _collect_text(node.get("content", []), parts)
    # Block nodes end a line.
    if node.get("type") in ("paragraph", "heading", "listItem", "codeBlock", "blockquote") and len(parts) > before:
        parts.append("\n")


def rich_text_to_plain(content: Optional[str]) -> str:
    """Flatten a rich-text JSON document to plain text.

    Content that is not a JSON document (plain strings, invalid JSON) is
    returned stripped as-is.
    """
    if not content:
        return ""
    try:
        document = json.loads(content)
    except (TypeError, ValueError):
        return content.strip()
    if not isinstance(document, (dict, list)):
        return content.strip()

    parts: List[str] = []
    _collect_text(document, parts)
    lines = [line.strip() for line in "".join(parts).splitlines()]
    return "\n".join(line for line in lines if line)


class Label(BaseModel):
    """Organization-level label that can be attached to threads."""

    id: str
    name: str
    enabled: bool = True
    organization_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Label":
        return cls(id=doc_id, **{k: v for k, v in data.items() if k != "id"})

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to Firestore-friendly dict."""
        return {
            "name": self.name,
            "enabled": self.enabled,
            "organization_id": self.organization_id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ThreadMessage(BaseModel):
    """A single message posted in a thread."""

    id: str
    thread_id: Optional[str] = None
    content: str = ""
    author_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def plain_text(self) -> str:
        return rich_text_to_plain(self.content)

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "ThreadMessage":
        return cls(id=doc_id, **{k: v for k, v in data.items() if k != "id"})


class Thread(BaseModel):
    """Support conversation processed by the pipeline."""

    id: str
    organization_id: str
    name: str = ""
    status: int = Field(default=ThreadStatus.OPEN, ge=0)
    priority: int = 0
    author_id: Optional[str] = None
    assigned_user_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    label_ids: List[str] = Field(default_factory=list)
    messages: List[ThreadMessage] = Field(default_factory=list)
    labels: List[Label] = Field(default_factory=list)

    @field_validator("created_at", "updated_at")
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _as_utc(v)

    @property
    def created_at_ms(self) -> int:
        return int(self.created_at.timestamp() * 1000)

    def sorted_messages(self) -> List[ThreadMessage]:
        """Messages in chronological order.

        Ordered by ``created_at``; the message id only breaks ties between
        equal (or missing) timestamps.
        """
        return sorted(self.messages, key=lambda m: (m.created_at or _EPOCH, m.id))

    def message_texts(self, limit: Optional[int] = None) -> List[str]:
        """Non-empty plain-text message bodies in chronological order."""
        texts = [m.plain_text for m in self.sorted_messages()]
        texts = [t for t in texts if t.strip()]
        return texts[:limit] if limit is not None else texts

    def first_message_text(self) -> str:
        ordered = self.sorted_messages()
        return ordered[0].plain_text if ordered else ""

    def enabled_label_names(self) -> List[str]:
        return sorted(label.name for label in self.labels if label.enabled and label.name)

    @classmethod
    def from_firestore(cls, doc_id: str, data: Dict[str, Any]) -> "Thread":
        fields = {k: v for k, v in data.items() if k not in ("id", "messages", "labels")}
        return cls(id=doc_id, **fields)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize thread fields (without messages and labels) for Firestore."""
        return {
            "organization_id": self.organization_id,
            "name": self.name,
            "status": self.status,
            "priority": self.priority,
            "author_id": self.author_id,
            "assigned_user_id": self.assigned_user_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "label_ids": list(self.label_ids),
        }
