"""Bounded prompt construction from conversation history.

The wrapped CLI runs in one-shot print mode, so every turn re-sends the
conversation as a plain Human/Assistant transcript. History is capped by
message count and by total content length; the newest messages are
always kept whole.
"""
from __future__ import annotations

from collections.abc import Sequence

from arc.shared.models.message import ChatMessage

MAX_HISTORY_MESSAGES = 40
MAX_HISTORY_CHARS = 80_000

OMITTED_MARKER = "[Earlier conversation omitted: {count} messages]"


def _select_window(
    history: Sequence[ChatMessage],
    max_messages: int,
    max_chars: int,
) -> list[ChatMessage]:
    window = list(history[-max_messages:]) if max_messages > 0 else []
    total = sum(len(m.content) for m in window)
    start = 0
    while start < len(window) and total > max_chars:
        total -= len(window[start].content)
        start += 1
    return window[start:]


def _render_turn(message: ChatMessage) -> str:
    prefix = "Assistant" if message.is_assistant else "Human"
    return f"{prefix}: {message.content}"


def build_prompt(
    history: Sequence[ChatMessage],
    new_message: str,
    *,
    max_messages: int = MAX_HISTORY_MESSAGES,
    max_chars: int = MAX_HISTORY_CHARS,
) -> str:
    """Build the model input from prior messages plus the new user input.

    Returns *new_message* unchanged when there is no history. Otherwise
    renders the retained window as alternating turns, preceded by a
    single omission marker when older messages were dropped, and ends
    with the new input as the final Human turn.
    """
    if not history:
        return new_message

    window = _select_window(history, max_messages, max_chars)
    omitted = len(history) - len(window)

    parts: list[str] = []
    if omitted:
        parts.append(OMITTED_MARKER.format(count=omitted))
    parts.extend(_render_turn(m) for m in window)
    parts.append(f"Human: {new_message}")
    return "\n\n".join(parts)
