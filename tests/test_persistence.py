from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from arc.shared.models.message import ChatMessage
from arc.shared.models.session import ChatSession, SessionStatus
from arc.shared.services.persistence import InMemoryChatStore, SqliteChatStore


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = InMemoryChatStore()
    else:
        s = SqliteChatStore(tmp_path / "db" / "arc.db")
    yield s
    s.close()


def test_session_round_trip(store) -> None:
    session = ChatSession(agent_id="helper", title="Trip")
    store.create_session(session)

    loaded = store.get_session(session.id)

    assert loaded.id == session.id
    assert loaded.agent_id == "helper"
    assert loaded.title == "Trip"
    assert loaded.status is SessionStatus.ACTIVE
    assert loaded.created_at == session.created_at
    assert store.get_session("missing") is None


def test_update_session_applies_only_given_fields(store) -> None:
    session = ChatSession(agent_id="helper", title="Trip")
    store.create_session(session)
    later = session.updated_at + timedelta(seconds=5)

    store.update_session(session.id, status=SessionStatus.ARCHIVED, updated_at=later)

    loaded = store.get_session(session.id)
    assert loaded.title == "Trip"
    assert loaded.status is SessionStatus.ARCHIVED
    assert loaded.updated_at == later


def test_list_sessions_most_recent_first_and_filtered(store) -> None:
    base = datetime(2026, 1, 1, tzinfo=timezone.utc)
    old = ChatSession(agent_id="helper", created_at=base, updated_at=base)
    new = ChatSession(agent_id="helper", created_at=base, updated_at=base + timedelta(hours=1))
    other = ChatSession(agent_id="other", created_at=base, updated_at=base + timedelta(hours=2))
    for s in (old, new, other):
        store.create_session(s)

    assert [s.id for s in store.list_sessions()] == [other.id, new.id, old.id]
    assert [s.id for s in store.list_sessions("helper")] == [new.id, old.id]


def test_messages_return_in_creation_order_with_insertion_tiebreak(store) -> None:
    session = ChatSession(agent_id="helper")
    store.create_session(session)
    t = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    first = ChatMessage(session_id=session.id, role="user", content="first", created_at=t)
    second = ChatMessage(session_id=session.id, role="assistant", content="second", created_at=t)
    earlier = ChatMessage(
        session_id=session.id, role="user", content="earlier",
        created_at=t - timedelta(minutes=1),
    )
    for m in (first, second, earlier):
        store.save_message(m)

    assert [m.content for m in store.get_messages(session.id)] == ["earlier", "first", "second"]
    assert store.get_messages("missing") == []


def test_sqlite_store_survives_reopen(tmp_path) -> None:
    path = tmp_path / "arc.db"
    first = SqliteChatStore(path)
    session = ChatSession(agent_id="helper")
    first.create_session(session)
    first.save_message(ChatMessage(session_id=session.id, role="user", content="kept"))
    first.close()

    reopened = SqliteChatStore(path)
    try:
        assert reopened.get_session(session.id).agent_id == "helper"
        assert [m.content for m in reopened.get_messages(session.id)] == ["kept"]
    finally:
        reopened.close()
