"""In-process event bus bridging the chat manager to the gateway.

Producers publish through narrow, typed helpers, one per event kind.
Listeners are invoked synchronously in publication order, so each
listener observes events in exactly the order they were published.
Publishing never blocks and never raises: listeners must hand events
off without awaiting (the gateway queues them per observer).
"""
from __future__ import annotations

import logging
from collections.abc import Callable

from arc.adapters.events import (
    AgentChunk,
    AgentDone,
    AgentTyping,
    BusEvent,
    ChatMessageSaved,
    ErrorEvent,
    SessionCreated,
    SessionUpdated,
)
from arc.shared.models.message import ChatMessage
from arc.shared.models.session import ChatSession

logger = logging.getLogger(__name__)

EventListener = Callable[[BusEvent], None]


class EventBus:
    """Single process-wide publish channel."""

    def __init__(self) -> None:
        self._listeners: list[EventListener] = []
        self._closed = False

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener for every event. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def close(self) -> None:
        """Drop all further publishes."""
        self._closed = True

    def _publish(self, event: BusEvent) -> None:
        if self._closed:
            return
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "EventBus listener failed on %s for session %s",
                    event.event_type.value, event.session_id,
                )

    # ── Typed publishers ──

    def publish_session_created(self, session: ChatSession) -> None:
        self._publish(SessionCreated(session_id=session.id, session=session))

    def publish_session_updated(self, session: ChatSession) -> None:
        self._publish(SessionUpdated(session_id=session.id, session=session))

    def publish_chat_message(self, message: ChatMessage) -> None:
        self._publish(ChatMessageSaved(session_id=message.session_id, message=message))

    def publish_agent_typing(self, session_id: str) -> None:
        self._publish(AgentTyping(session_id=session_id))

    def publish_agent_chunk(self, session_id: str, chunk: str) -> None:
        self._publish(AgentChunk(session_id=session_id, chunk=chunk))

    def publish_agent_done(self, session_id: str) -> None:
        self._publish(AgentDone(session_id=session_id))

    def publish_error(self, session_id: str, error: str) -> None:
        self._publish(ErrorEvent(session_id=session_id, error=error))
