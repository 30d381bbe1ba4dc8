"""Data model shared by the compaction components."""

import hashlib
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from functools import cached_property
from typing import TYPE_CHECKING, Any, Iterable

from plato.context.errors import FailureKind, InputError

if TYPE_CHECKING:
    from plato.context.preview import CompactionPreview


class Role(str, Enum):
    system = "system"
    user = "user"
    assistant = "assistant"
    tool = "tool"


class CompressionLevel(str, Enum):
    light = "light"
    moderate = "moderate"
    aggressive = "aggressive"


class ContentType(str, Enum):
    code = "code"
    error = "error"
    question = "question"
    tool = "tool"
    social = "social"
    discussion = "discussion"


class DiffKind(str, Enum):
    kept = "kept"
    removed = "removed"
    summarized = "summarized"  # reserved for callers that substitute summaries


class PreviewState(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    expired = "expired"
    rolled_back = "rolled_back"


class PreservationRule(str, Enum):
    """Content classes whose messages are kept whatever their score."""

    error_resolution = "error-resolution"
    code_blocks = "code-blocks"
    technical_discussion = "technical-discussion"


class CompactionStage(str, Enum):
    analyze = "analyze"
    score = "score"
    select = "select"
    validate = "validate"
    commit = "commit"
    reject = "reject"


@dataclass(frozen=True)
class ConversationMessage:
    """One chat turn. Its position in the transcript is its sequence index."""

    role: Role
    content: str

    @classmethod
    def from_dict(cls, data: Any) -> "ConversationMessage":
        """Build a message from a ``{"role", "content"}`` mapping."""
        if isinstance(data, ConversationMessage):
            return data
        if not isinstance(data, dict):
            raise InputError(
                f"Malformed message entry: expected a mapping, got {type(data).__name__}"
            )
        raw_role = data.get("role")
        try:
            role = Role(raw_role)
        except (ValueError, TypeError):
            raise InputError(f"Malformed message entry: unknown role {raw_role!r}") from None
        content = data.get("content")
        if content is None:
            content = ""
        if not isinstance(content, str):
            raise InputError(
                f"Malformed message entry: content must be text, got {type(content).__name__}"
            )
        return cls(role=role, content=content)

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}

    @cached_property
    def content_hash(self) -> str:
        """Stable digest of role and content."""
        payload = f"{self.role.value}\x00{self.content}".encode("utf-8")
        return hashlib.sha1(payload).hexdigest()

    @property
    def has_code_block(self) -> bool:
        return "```" in self.content


def parse_transcript(entries: Iterable[Any]) -> list[ConversationMessage]:
    """Convert raw entries into messages, raising InputError on malformed input."""
    if entries is None:
        raise InputError("Transcript is missing")
    return [ConversationMessage.from_dict(entry) for entry in entries]


def transcript_digest(messages: Iterable[ConversationMessage]) -> str:
    """Digest of an ordered transcript; changes when any message is added, removed or edited."""
    h = hashlib.sha1()
    for msg in messages:
        h.update(msg.content_hash.encode("ascii"))
    return h.hexdigest()


@dataclass(frozen=True)
class Topic:
    label: str
    indices: tuple[int, ...]
    importance: float


@dataclass
class Thread:
    """A run of message indices forming one coherent exchange.

    ``index`` is the thread's slot in the thread arena; dependencies between
    threads are expressed as index pairs on the ThreadGraph, never as references.
    """

    index: int
    start: int
    end: int
    message_indices: tuple[int, ...]
    topic: str = ""
    keywords: tuple[str, ...] = ()
    importance: float = 0.0

    def __len__(self) -> int:
        return len(self.message_indices)


@dataclass(frozen=True)
class TranscriptSnapshot:
    """Immutable copy of a transcript, sufficient to restore it exactly."""

    messages: tuple[ConversationMessage, ...]
    digest: str

    @classmethod
    def capture(cls, messages: Iterable[ConversationMessage]) -> "TranscriptSnapshot":
        frozen = tuple(messages)
        return cls(messages=frozen, digest=transcript_digest(frozen))

    def restore(self) -> list[ConversationMessage]:
        return list(self.messages)


@dataclass(frozen=True)
class QualityMetrics:
    compression_ratio: float
    message_reduction: int
    token_reduction: float
    information_preservation: float
    effectiveness_score: float
    original_count: int = 0
    compacted_count: int = 0
    # Wall-clock values stay out of equality so repeated runs compare equal
    processing_time_ms: float = field(default=0.0, compare=False)
    timestamp: float = field(default_factory=time.time, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QualityMetrics":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class PreviewDiffEntry:
    index: int
    role: Role
    kind: DiffKind
    preview: str
    reason: str
    importance: float


@dataclass(frozen=True)
class CompactionResult:
    """The preserved subsequence plus everything needed to explain or undo it."""

    messages: tuple[ConversationMessage, ...]
    kept_indices: tuple[int, ...]
    removed_indices: tuple[int, ...]
    coherence_score: float
    low_coherence: bool
    snapshot: TranscriptSnapshot
    metrics: QualityMetrics
    level: CompressionLevel
    target_count: int
    preserved_threads: tuple[int, ...] = ()
    pulled_in: tuple[int, ...] = ()
    importance: tuple[float, ...] | None = None
    degraded: bool = False
    pinned: tuple[int, ...] = ()  # Kept by a preservation rule
    trimmed: bool = False  # Messages were dropped inside preserved threads
    topics_preserved: tuple[str, ...] = ()
    topics_removed: tuple[str, ...] = ()
    token: str = field(default_factory=lambda: uuid.uuid4().hex, compare=False)

    def rollback(self) -> list[ConversationMessage]:
        """Return the original transcript this result was computed from."""
        return self.snapshot.restore()


@dataclass(frozen=True)
class CompactionFailure:
    kind: FailureKind
    message: str


@dataclass
class CompactionOutcome:
    result: CompactionResult | None = None
    failure: CompactionFailure | None = None
    metrics: QualityMetrics | None = None
    stages: list[CompactionStage] = field(default_factory=list)
    preview: "CompactionPreview | None" = None

    @property
    def ok(self) -> bool:
        return self.result is not None and self.failure is None

    @classmethod
    def failed(
        cls,
        kind: FailureKind,
        message: str,
        metrics: QualityMetrics | None = None,
        stages: list[CompactionStage] | None = None,
    ) -> "CompactionOutcome":
        return cls(
            failure=CompactionFailure(kind=kind, message=message),
            metrics=metrics,
            stages=list(stages or []),
        )
