"""Session state for a conversation transcript."""

import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable

from loguru import logger

from plato.context.models import ConversationMessage, Role, TranscriptSnapshot, parse_transcript


@dataclass
class Session:
    """
    A conversation session owned by the caller.

    ``revision`` increases on every mutation so the compaction service can
    tell whether the transcript changed under a pending preview. ``streaming``
    is set while a model response is still being appended.
    """

    key: str
    messages: list[ConversationMessage] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    revision: int = 0
    streaming: bool = False
    updated_at: datetime = field(default_factory=datetime.now)

    def add_message(self, role: Role | str, content: str | None) -> ConversationMessage:
        """Append a message to the session."""
        msg = ConversationMessage(role=Role(role), content=content or "")
        self.messages.append(msg)
        self._touch()
        return msg

    def replace_messages(self, messages: Iterable[ConversationMessage]) -> None:
        """Swap in a new transcript (a committed compaction or a rollback)."""
        self.messages = list(messages)
        self._touch()

    def begin_stream(self) -> None:
        self.streaming = True

    def end_stream(self, content: str | None = None) -> ConversationMessage | None:
        """Finish a streamed response, appending it when content is given."""
        self.streaming = False
        if content is not None:
            return self.add_message(Role.assistant, content)
        return None

    def snapshot(self) -> TranscriptSnapshot:
        return TranscriptSnapshot.capture(self.messages)

    def to_dicts(self) -> list[dict[str, str]]:
        return [m.to_dict() for m in self.messages]

    def _touch(self) -> None:
        self.revision += 1
        self.updated_at = datetime.now()


def load_transcript(path: Path) -> list[ConversationMessage]:
    """Read a transcript of role/content objects.

    Accepts a JSON array, a JSON object with a ``messages`` array, or JSONL.
    """
    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, list):
        return parse_transcript(data)
    if isinstance(data, dict):
        return parse_transcript(data.get("messages", [data]))

    entries = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            entries.append(json.loads(line))
        except json.JSONDecodeError as e:
            logger.warning(f"Skipping malformed line {line_no} in {path}: {e}")
    return parse_transcript(entries)


def save_transcript(path: Path, messages: Iterable[ConversationMessage]) -> None:
    """Write a transcript as JSONL."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for msg in messages:
            f.write(json.dumps(msg.to_dict(), ensure_ascii=False) + "\n")
