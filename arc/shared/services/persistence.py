"""Chat persistence for sessions and messages.

Two implementations of one synchronous contract:

    InMemoryChatStore   dict-backed, for tests and ephemeral runs
    SqliteChatStore     sqlite3 file (WAL journal)

Messages are returned in creation order, with insertion order breaking
ties between identical timestamps.
"""

from __future__ import annotations

import abc
import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from arc.shared.models.message import ChatMessage
from arc.shared.models.session import ChatSession, SessionStatus

logger = logging.getLogger(__name__)


class ChatStore(abc.ABC):
    """Durable storage for chat sessions and messages."""

    @abc.abstractmethod
    def create_session(self, session: ChatSession) -> None:
        """Insert a new session."""

    @abc.abstractmethod
    def get_session(self, session_id: str) -> ChatSession | None:
        """Return the session, or None if it does not exist."""

    @abc.abstractmethod
    def list_sessions(self, agent_id: str | None = None) -> list[ChatSession]:
        """List sessions, most recently updated first."""

    @abc.abstractmethod
    def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        status: SessionStatus | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        """Apply the given non-None fields to a session."""

    @abc.abstractmethod
    def save_message(self, message: ChatMessage) -> None:
        """Append a message to its session."""

    @abc.abstractmethod
    def get_messages(self, session_id: str) -> list[ChatMessage]:
        """Return a session's messages in creation order."""

    def close(self) -> None:
        return None


class InMemoryChatStore(ChatStore):

    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self._messages: dict[str, list[ChatMessage]] = {}

    def create_session(self, session: ChatSession) -> None:
        self._sessions[session.id] = session
        self._messages.setdefault(session.id, [])

    def get_session(self, session_id: str) -> ChatSession | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        return ChatSession(
            agent_id=session.agent_id,
            title=session.title,
            status=session.status,
            id=session.id,
            created_at=session.created_at,
            updated_at=session.updated_at,
        )

    def list_sessions(self, agent_id: str | None = None) -> list[ChatSession]:
        sessions = [
            self.get_session(sid)
            for sid, s in self._sessions.items()
            if agent_id is None or s.agent_id == agent_id
        ]
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        status: SessionStatus | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        session = self._sessions.get(session_id)
        if session is None:
            return
        if title is not None:
            session.title = title
        if status is not None:
            session.status = status
        if updated_at is not None:
            session.updated_at = updated_at

    def save_message(self, message: ChatMessage) -> None:
        self._messages.setdefault(message.session_id, []).append(message)

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(
            self._messages.get(session_id, []),
            key=lambda m: m.created_at,
        )


class SqliteChatStore(ChatStore):
    """sqlite3-backed store; one connection per store instance."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = str(db_path)
        if self._db_path != ":memory:":
            Path(self._db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()
        logger.info("SqliteChatStore opened %s", self._db_path)

    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_sessions (
                    id TEXT PRIMARY KEY,
                    agent_id TEXT NOT NULL,
                    title TEXT NOT NULL DEFAULT '',
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS chat_messages (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    session_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (session_id) REFERENCES chat_sessions(id)
                )
                """
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_sessions_agent ON chat_sessions(agent_id)"
            )
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_messages_session ON chat_messages(session_id, created_at)"
            )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> ChatSession:
        return ChatSession(
            id=row["id"],
            agent_id=row["agent_id"],
            title=row["title"],
            status=SessionStatus(row["status"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> ChatMessage:
        return ChatMessage(
            id=row["id"],
            session_id=row["session_id"],
            role=row["role"],
            content=row["content"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def create_session(self, session: ChatSession) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO chat_sessions (id, agent_id, title, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session.id, session.agent_id, session.title, session.status.value,
                    session.created_at.isoformat(), session.updated_at.isoformat(),
                ),
            )

    def get_session(self, session_id: str) -> ChatSession | None:
        row = self._conn.execute(
            "SELECT * FROM chat_sessions WHERE id = ?", (session_id,)
        ).fetchone()
        return self._row_to_session(row) if row is not None else None

    def list_sessions(self, agent_id: str | None = None) -> list[ChatSession]:
        if agent_id is not None:
            rows = self._conn.execute(
                "SELECT * FROM chat_sessions WHERE agent_id = ? ORDER BY updated_at DESC",
                (agent_id,),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT * FROM chat_sessions ORDER BY updated_at DESC"
            ).fetchall()
        return [self._row_to_session(r) for r in rows]

    def update_session(
        self,
        session_id: str,
        *,
        title: str | None = None,
        status: SessionStatus | None = None,
        updated_at: datetime | None = None,
    ) -> None:
        fields: list[str] = []
        values: list[str] = []
        if title is not None:
            fields.append("title = ?")
            values.append(title)
        if status is not None:
            fields.append("status = ?")
            values.append(status.value)
        if updated_at is not None:
            fields.append("updated_at = ?")
            values.append(updated_at.isoformat())
        if not fields:
            return
        values.append(session_id)
        with self._conn:
            self._conn.execute(
                f"UPDATE chat_sessions SET {', '.join(fields)} WHERE id = ?",
                values,
            )

    def save_message(self, message: ChatMessage) -> None:
        with self._conn:
            self._conn.execute(
                """
                INSERT INTO chat_messages (id, session_id, role, content, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    message.id, message.session_id, message.role,
                    message.content, message.created_at.isoformat(),
                ),
            )

    def get_messages(self, session_id: str) -> list[ChatMessage]:
        rows = self._conn.execute(
            """
            SELECT * FROM chat_messages
            WHERE session_id = ?
            ORDER BY created_at ASC, seq ASC
            """,
            (session_id,),
        ).fetchall()
        return [self._row_to_message(r) for r in rows]

    def close(self) -> None:
        self._conn.close()
