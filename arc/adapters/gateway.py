"""Real-time distribution gateway.

Fans bus events out to connected observers by session id. A
subscription replays the session's persisted history as chat_message
events before any live event reaches the observer; because the bus
delivers synchronously, registration and replay happen in one step and
no live event can interleave.

Observers subscribed to ``"*"`` receive every session's events.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol

from arc.adapters.chat_manager import ChatManager
from arc.adapters.event_bus import EventBus
from arc.adapters.events import (
    AgentStatus,
    BusEvent,
    ChatMessageSaved,
    event_to_dict,
)

logger = logging.getLogger(__name__)

WILDCARD = "*"


class Observer(Protocol):
    """A connected client. send() must not block.

    Events sent with ``replay=True`` are catch-up history and must not
    be dropped.
    """

    @property
    def closed(self) -> bool: ...

    def send(self, event: dict[str, Any], replay: bool = False) -> None: ...


class DistributionGateway:

    def __init__(self, chat_manager: ChatManager, bus: EventBus) -> None:
        self._chat_manager = chat_manager
        self._bus = bus
        self._connections: list[Observer] = []
        self._subscriptions: dict[str, list[Observer]] = {}
        self._unsubscribe_bus = None

    # ── Bus wiring ──

    def attach(self) -> None:
        if self._unsubscribe_bus is None:
            self._unsubscribe_bus = self._bus.subscribe(self._on_event)

    def detach(self) -> None:
        if self._unsubscribe_bus is not None:
            self._unsubscribe_bus()
            self._unsubscribe_bus = None

    # ── Connections ──

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    def subscriber_count(self, session_id: str) -> int:
        return len(self._subscriptions.get(session_id, []))

    def connect(self, observer: Observer) -> None:
        if observer not in self._connections:
            self._connections.append(observer)

    def subscribe(self, observer: Observer, session_id: str) -> int:
        """Register *observer* for *session_id* and replay its history.

        Returns the number of replayed messages. Re-subscribing an
        observer already registered for the session is a no-op.
        """
        self.connect(observer)
        observers = self._subscriptions.setdefault(session_id, [])
        if observer in observers:
            return 0
        observers.append(observer)
        if session_id == WILDCARD:
            return 0

        history = self._chat_manager.get_messages(session_id)
        for message in history:
            self._deliver(
                observer,
                event_to_dict(ChatMessageSaved(session_id=session_id, message=message)),
                replay=True,
            )
        logger.debug(
            "Observer subscribed to session %s (replayed=%d, subscribers=%d)",
            session_id, len(history), len(observers),
        )
        return len(history)

    def unsubscribe(self, observer: Observer, session_id: str) -> None:
        observers = self._subscriptions.get(session_id)
        if not observers:
            return
        if observer in observers:
            observers.remove(observer)
        if not observers:
            del self._subscriptions[session_id]

    def on_disconnect(self, observer: Observer) -> None:
        for session_id in list(self._subscriptions):
            self.unsubscribe(observer, session_id)
        if observer in self._connections:
            self._connections.remove(observer)

    # ── Fan-out ──

    def _on_event(self, event: BusEvent) -> None:
        targets: list[Observer] = []
        for key in (event.session_id, WILDCARD):
            for observer in self._subscriptions.get(key, ()):
                if observer not in targets:
                    targets.append(observer)
        if not targets:
            return
        data = event_to_dict(event)
        for observer in targets:
            self._deliver(observer, data)

    def broadcast_status(self, status: str, **detail: Any) -> None:
        """Send an agent_status event to every connected observer."""
        data = event_to_dict(AgentStatus(status=status, detail=detail))
        for observer in list(self._connections):
            self._deliver(observer, data)

    @staticmethod
    def _deliver(observer: Observer, data: dict[str, Any], replay: bool = False) -> None:
        if observer.closed:
            return
        try:
            observer.send(data, replay=replay)
        except Exception:
            logger.exception("Observer delivery failed for %s event", data.get("type"))
