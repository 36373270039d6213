"""Prompt constants and conversation rendering."""

from __future__ import annotations

from typing import Sequence

from stream_relay.types import ChatMessage

DEFAULT_SYSTEM_PROMPT = "You are a helpful, precise assistant."

CONTINUE_PROMPT = (
    "Continue your prior response. IMPORTANT: Immediately begin from where you left off "
    "without any interruptions. Do not repeat any content, including artifact and action tags."
)

_ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


def render_prompt(messages: Sequence[ChatMessage], system_prompt: str = "") -> str:
    """Flatten a conversation into a single completion prompt.

    Used for backends that take one prompt string instead of a message list.
    The prompt ends with an open ``Assistant:`` turn.
    """
    parts: list[str] = []
    if system_prompt:
        parts.append(system_prompt)
    for msg in messages:
        parts.append(f"{_ROLE_LABELS.get(msg.role, msg.role.title())}: {msg.content}")
    parts.append("Assistant:")
    return "\n\n".join(parts)
