"""Chat message model."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any
import uuid


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _gen_id() -> str:
    return str(uuid.uuid4())


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class ChatMessage:
    # role is "user", "assistant", or a free-form sender label
    # (bot name, tool name) for messages pushed by external senders.
    session_id: str
    role: str
    content: str
    id: str = field(default_factory=_gen_id)
    created_at: datetime = field(default_factory=_utcnow)

    @property
    def is_assistant(self) -> bool:
        return self.role == MessageRole.ASSISTANT.value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role,
            "content": self.content,
            "created_at": self.created_at.isoformat(),
        }
