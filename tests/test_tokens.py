"""Tests for token estimation module."""

from plato.agent.tokens import (
    CHARS_PER_TOKEN,
    MESSAGE_OVERHEAD,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)
from plato.context.models import ConversationMessage, Role


class TestEstimateTokens:
    def test_empty_string(self):
        assert estimate_tokens("") == 0

    def test_basic_text(self):
        text = "Hello, world!"
        assert estimate_tokens(text) == len(text) // CHARS_PER_TOKEN

    def test_longer_text(self):
        assert estimate_tokens("a" * 400) == 100

    def test_code_text(self):
        code = "def hello():\n    return 'world'\n"
        assert estimate_tokens(code) == len(code) // CHARS_PER_TOKEN


class TestEstimateMessageTokens:
    def test_conversation_message(self):
        msg = ConversationMessage(Role.user, "a" * 40)
        assert estimate_message_tokens(msg) == MESSAGE_OVERHEAD + 10

    def test_dict_message(self):
        assert estimate_message_tokens({"role": "user", "content": "a" * 40}) == MESSAGE_OVERHEAD + 10

    def test_none_content_counts_overhead_only(self):
        assert estimate_message_tokens({"role": "assistant", "content": None}) == MESSAGE_OVERHEAD


class TestEstimateMessagesTokens:
    def test_empty_messages(self):
        assert estimate_messages_tokens([]) == 0

    def test_sums_messages(self):
        msgs = [
            ConversationMessage(Role.user, "a" * 400),
            ConversationMessage(Role.assistant, "b" * 200),
        ]
        assert estimate_messages_tokens(msgs) == 100 + 50 + 2 * MESSAGE_OVERHEAD
