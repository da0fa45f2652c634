"""Chat manager: per-session conversation lifecycle.

Persists messages, builds prompts, runs agent turns through the
AgentRunner and publishes every step on the EventBus.

Turn event sequence (same for sync and async callers):

    chat_message(user) -> [session_updated] -> agent_typing
        -> agent_chunk* -> chat_message(assistant) -> agent_done

Failed turns replace the tail with
``error -> chat_message(assistant, "Error: ...") -> agent_done``, so
the transcript itself records every failure.

At most one turn is in flight per session: a second send_message on a
busy session is rejected with SessionBusyError before anything is
persisted.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from arc.adapters.event_bus import EventBus
from arc.engine.agent_runner import STOPPED_MESSAGE, AgentRunner
from arc.engine.errors import (
    InvalidRequestError,
    SessionBusyError,
    SessionNotFoundError,
)
from arc.engine.prompt_builder import (
    MAX_HISTORY_CHARS,
    MAX_HISTORY_MESSAGES,
    build_prompt,
)
from arc.shared.models.agent import AgentDef
from arc.shared.models.message import ChatMessage, MessageRole
from arc.shared.models.session import (
    ChatSession,
    SessionStatus,
    is_default_session_title,
    title_from_content,
)
from arc.shared.services.persistence import ChatStore

logger = logging.getLogger(__name__)

NO_RESPONSE_TEXT = "(no response)"
ERROR_PREFIX = "Error: "

_UPDATABLE_FIELDS = {"title", "status"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SendMode(Enum):
    SYNC = "sync"
    ASYNC = "async"


class ChatManager:
    """Owns sessions, messages and agent turns for every session."""

    def __init__(
        self,
        store: ChatStore,
        runner: AgentRunner,
        bus: EventBus,
        *,
        history_max_messages: int = MAX_HISTORY_MESSAGES,
        history_max_chars: int = MAX_HISTORY_CHARS,
    ) -> None:
        self._store = store
        self._runner = runner
        self._bus = bus
        self._history_max_messages = history_max_messages
        self._history_max_chars = history_max_chars
        self._busy: set[str] = set()
        self._background: dict[str, asyncio.Task] = {}
        self._pending_stops: set[str] = set()

    @property
    def bus(self) -> EventBus:
        return self._bus

    # ── Sessions ──

    def create_session(self, agent_id: str, title: str | None = None) -> ChatSession:
        if not agent_id:
            raise InvalidRequestError("agent_id is required")
        session = ChatSession(agent_id=agent_id)
        if title:
            session.title = title
        self._store.create_session(session)
        logger.info("Created session %s for agent %s", session.id, agent_id)
        self._bus.publish_session_created(session)
        return session

    def get_session(self, session_id: str) -> ChatSession | None:
        return self._store.get_session(session_id)

    def require_session(self, session_id: str) -> ChatSession:
        session = self._store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def list_sessions(self, agent_id: str | None = None) -> list[ChatSession]:
        return self._store.list_sessions(agent_id)

    def update_session(self, session_id: str, patch: dict[str, Any]) -> ChatSession:
        """Change a session's title and/or status.

        Any other key is rejected. updated_at is always refreshed and a
        session_updated event is published, even for an empty patch.
        """
        unknown = set(patch) - _UPDATABLE_FIELDS
        if unknown:
            raise InvalidRequestError(
                f"Cannot update session field(s): {', '.join(sorted(unknown))}"
            )
        self.require_session(session_id)

        title = patch.get("title")
        if title is not None and (not isinstance(title, str) or not title.strip()):
            raise InvalidRequestError("title must be a non-empty string")

        status = None
        raw_status = patch.get("status")
        if raw_status is not None:
            try:
                status = SessionStatus(raw_status)
            except ValueError:
                raise InvalidRequestError(f"Invalid session status: {raw_status!r}") from None

        self._store.update_session(
            session_id, title=title, status=status, updated_at=_utcnow(),
        )
        updated = self.require_session(session_id)
        self._bus.publish_session_updated(updated)
        return updated

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        return self._store.get_messages(session_id)

    # ── Messages ──

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._busy

    def _save_message(self, session_id: str, role: str, content: str) -> ChatMessage:
        message = ChatMessage(session_id=session_id, role=role, content=content)
        self._store.save_message(message)
        self._bus.publish_chat_message(message)
        return message

    def _maybe_auto_title(self, session: ChatSession, content: str) -> None:
        if not is_default_session_title(session.title):
            return
        self._store.update_session(
            session.id, title=title_from_content(content), updated_at=_utcnow(),
        )
        updated = self._store.get_session(session.id)
        if updated is not None:
            self._bus.publish_session_updated(updated)

    def receive_message(self, session_id: str, role: str, content: str) -> ChatMessage:
        """Record a message pushed by an external sender (bot, tool).

        No agent turn is started.
        """
        if not content:
            raise InvalidRequestError("content is required")
        if not role:
            raise InvalidRequestError("role is required")
        session = self.require_session(session_id)
        message = self._save_message(session_id, role, content)
        self._maybe_auto_title(session, content)
        return message

    async def send_message(
        self,
        session_id: str,
        content: str,
        agent: AgentDef,
        mode: SendMode = SendMode.SYNC,
    ) -> ChatMessage:
        """Save a user message and run an agent turn for it.

        SYNC returns the assistant message once the turn has finished.
        ASYNC returns the user message at once; the turn continues in the
        background and is observable through the event bus.
        """
        if not content:
            raise InvalidRequestError("content is required")
        session = self.require_session(session_id)
        if session_id in self._busy:
            raise SessionBusyError(session_id)
        # No await between the check above and this add.
        self._busy.add(session_id)

        try:
            user_msg = self._save_message(session_id, MessageRole.USER.value, content)
            self._maybe_auto_title(session, content)
            self._bus.publish_agent_typing(session_id)
        except BaseException:
            self._busy.discard(session_id)
            raise

        if mode is SendMode.ASYNC:
            task = asyncio.create_task(self._run_turn(session_id, user_msg, agent))
            self._background[session_id] = task
            task.add_done_callback(lambda t: self._forget_background(session_id, t))
            return user_msg
        return await self._run_turn(session_id, user_msg, agent)

    async def _run_turn(
        self,
        session_id: str,
        user_msg: ChatMessage,
        agent: AgentDef,
    ) -> ChatMessage:
        try:
            if session_id in self._pending_stops:
                # Stopped before the agent process was started.
                logger.info("Agent turn for session %s stopped before start", session_id)
                return self._save_message(
                    session_id, MessageRole.ASSISTANT.value, STOPPED_MESSAGE,
                )
            prior = [
                m for m in self._store.get_messages(session_id)
                if m.id != user_msg.id
            ]
            prompt = build_prompt(
                prior,
                user_msg.content,
                max_messages=self._history_max_messages,
                max_chars=self._history_max_chars,
            )
            result = await self._runner.run(
                agent,
                prompt,
                session_id,
                on_chunk=lambda chunk: self._bus.publish_agent_chunk(session_id, chunk),
            )
            if result.output:
                text = result.output
            elif result.exit_code not in (0, None):
                text = f"{ERROR_PREFIX}agent exited with code {result.exit_code}"
            else:
                text = NO_RESPONSE_TEXT
            return self._save_message(session_id, MessageRole.ASSISTANT.value, text)
        except asyncio.CancelledError:
            self._record_failure(session_id, "agent turn was cancelled")
            raise
        except Exception as exc:
            logger.exception("Agent turn failed for session %s", session_id)
            return self._record_failure(session_id, str(exc) or type(exc).__name__)
        finally:
            self._busy.discard(session_id)
            self._pending_stops.discard(session_id)
            try:
                self._store.update_session(session_id, updated_at=_utcnow())
            finally:
                self._bus.publish_agent_done(session_id)

    def _forget_background(self, session_id: str, task: asyncio.Task) -> None:
        # A newer turn may already own the slot.
        if self._background.get(session_id) is task:
            del self._background[session_id]

    def _record_failure(self, session_id: str, reason: str) -> ChatMessage:
        self._bus.publish_error(session_id, reason)
        return self._save_message(
            session_id, MessageRole.ASSISTANT.value, f"{ERROR_PREFIX}{reason}",
        )

    def stop_agent(self, session_id: str) -> bool:
        """Ask the in-flight agent turn for *session_id* to stop.

        A turn that has not reached the runner yet is stopped before its
        process is spawned. Returns False when the session is idle.
        """
        if self._runner.stop(session_id):
            return True
        if session_id in self._busy:
            self._pending_stops.add(session_id)
            return True
        return False

    async def wait_idle(self, session_id: str) -> None:
        """Wait for a background turn on *session_id* to finish, if any."""
        task = self._background.get(session_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def shutdown(self) -> None:
        """Stop live agent processes and wait for background turns."""
        self._pending_stops.update(self._busy)
        stopped = self._runner.stop_all()
        pending = list(self._background.values())
        logger.info(
            "ChatManager shutdown: stopped=%d background_turns=%d",
            stopped, len(pending),
        )
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
