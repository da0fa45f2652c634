"""Event types carried by the event bus.

A closed set of dataclasses, one per event kind. Every event carries the
session id it belongs to so the distribution gateway can route it.
AgentStatus is the exception: it describes connection/agent status and
is broadcast to every observer regardless of subscriptions.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar

from arc.shared.models.message import ChatMessage
from arc.shared.models.session import ChatSession


class EventType(str, Enum):
    SESSION_CREATED = "session_created"
    SESSION_UPDATED = "session_updated"
    CHAT_MESSAGE = "chat_message"
    AGENT_TYPING = "agent_typing"
    AGENT_CHUNK = "agent_chunk"
    AGENT_DONE = "agent_done"
    ERROR = "error"
    AGENT_STATUS = "agent_status"


@dataclass(frozen=True)
class BusEvent:
    """Base event routed by session id."""
    event_type: ClassVar[EventType]
    session_id: str

    def payload(self) -> dict[str, Any]:
        return {"session_id": self.session_id}


@dataclass(frozen=True)
class SessionCreated(BusEvent):
    event_type: ClassVar[EventType] = EventType.SESSION_CREATED
    session: ChatSession

    def payload(self) -> dict[str, Any]:
        return self.session.to_dict()


@dataclass(frozen=True)
class SessionUpdated(BusEvent):
    event_type: ClassVar[EventType] = EventType.SESSION_UPDATED
    session: ChatSession

    def payload(self) -> dict[str, Any]:
        return self.session.to_dict()


@dataclass(frozen=True)
class ChatMessageSaved(BusEvent):
    event_type: ClassVar[EventType] = EventType.CHAT_MESSAGE
    message: ChatMessage

    def payload(self) -> dict[str, Any]:
        return self.message.to_dict()


@dataclass(frozen=True)
class AgentTyping(BusEvent):
    event_type: ClassVar[EventType] = EventType.AGENT_TYPING


@dataclass(frozen=True)
class AgentChunk(BusEvent):
    event_type: ClassVar[EventType] = EventType.AGENT_CHUNK
    chunk: str

    def payload(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "chunk": self.chunk}


@dataclass(frozen=True)
class AgentDone(BusEvent):
    event_type: ClassVar[EventType] = EventType.AGENT_DONE


@dataclass(frozen=True)
class ErrorEvent(BusEvent):
    event_type: ClassVar[EventType] = EventType.ERROR
    error: str

    def payload(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "error": self.error}


@dataclass(frozen=True)
class AgentStatus:
    """Connection/agent status, broadcast to every observer."""
    event_type: ClassVar[EventType] = EventType.AGENT_STATUS
    status: str
    detail: dict[str, Any] = field(default_factory=dict)

    def payload(self) -> dict[str, Any]:
        return {"status": self.status, **self.detail}


def event_to_dict(event: BusEvent | AgentStatus) -> dict[str, Any]:
    """Render an event in its wire shape: {"type": ..., "payload": {...}}."""
    return {"type": event.event_type.value, "payload": event.payload()}
