"""Approximate token estimation for context budgeting."""

from typing import Any, Iterable

CHARS_PER_TOKEN = 4  # Cross-model estimate (EN text/code/JSON)
MESSAGE_OVERHEAD = 4  # Per-message overhead (role, separators)


def estimate_tokens(text: str) -> int:
    """Estimate token count from character count."""
    return len(text) // CHARS_PER_TOKEN


def _content_of(message: Any) -> str:
    if isinstance(message, dict):
        return message.get("content") or ""
    return getattr(message, "content", "") or ""


def estimate_message_tokens(message: Any) -> int:
    """Estimate tokens for one message (ConversationMessage or role/content dict)."""
    return MESSAGE_OVERHEAD + estimate_tokens(_content_of(message))


def estimate_messages_tokens(messages: Iterable[Any]) -> int:
    """Estimate total tokens for a message list."""
    return sum(estimate_message_tokens(m) for m in messages)
