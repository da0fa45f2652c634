from arc.shared.models.message import ChatMessage
from arc.shared.models.session import (
    DEFAULT_SESSION_TITLE,
    ChatSession,
    SessionStatus,
    is_default_session_title,
    title_from_content,
)


def test_new_session_uses_default_title() -> None:
    session = ChatSession(agent_id="helper")
    assert session.title == DEFAULT_SESSION_TITLE
    assert session.status is SessionStatus.ACTIVE
    assert is_default_session_title(session.title)


def test_default_title_check_trims_whitespace_and_accepts_empty() -> None:
    assert is_default_session_title("  New Chat ")
    assert is_default_session_title("")
    assert is_default_session_title(None)
    assert not is_default_session_title("Trip planning")


def test_title_from_short_content_is_unchanged() -> None:
    assert title_from_content("Plan a trip") == "Plan a trip"


def test_title_from_long_content_is_truncated_with_ellipsis() -> None:
    content = "x" * 80
    assert title_from_content(content) == "x" * 50 + "..."


def test_to_dict_uses_iso_timestamps() -> None:
    session = ChatSession(agent_id="helper")
    data = session.to_dict()
    assert data["agent_id"] == "helper"
    assert data["status"] == "active"
    assert data["created_at"] == session.created_at.isoformat()

    msg = ChatMessage(session_id=session.id, role="assistant", content="hi")
    assert msg.is_assistant
    assert msg.to_dict()["session_id"] == session.id
