"""Chat session record and title helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import uuid
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


DEFAULT_SESSION_TITLE = "New Chat"
TITLE_MAX_CHARS = 50


class SessionStatus(Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"


def is_default_session_title(title: str | None) -> bool:
    if not title:
        return True
    return title.strip() == DEFAULT_SESSION_TITLE


def title_from_content(content: str) -> str:
    """Derive a session title from the first message of a conversation."""
    if len(content) <= TITLE_MAX_CHARS:
        return content
    return content[:TITLE_MAX_CHARS] + "..."


@dataclass
class ChatSession:
    """A persistent conversation thread between a human and one agent."""

    agent_id: str
    title: str = DEFAULT_SESSION_TITLE
    status: SessionStatus = SessionStatus.ACTIVE
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "title": self.title,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
