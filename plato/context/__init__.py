"""Conversation compaction core: data model and error types."""

from plato.context.errors import (
    CompactionError,
    CompactionInProgress,
    FailureKind,
    InputError,
    InternalAnalysisDegradation,
    QualityBelowThreshold,
    StreamActive,
)
from plato.context.models import (
    CompactionFailure,
    CompactionOutcome,
    CompactionResult,
    CompactionStage,
    CompressionLevel,
    ContentType,
    ConversationMessage,
    DiffKind,
    PreservationRule,
    PreviewDiffEntry,
    PreviewState,
    QualityMetrics,
    Role,
    Thread,
    Topic,
    TranscriptSnapshot,
)

__all__ = [
    "CompactionError",
    "CompactionFailure",
    "CompactionInProgress",
    "CompactionOutcome",
    "CompactionResult",
    "CompactionStage",
    "CompressionLevel",
    "ContentType",
    "ConversationMessage",
    "DiffKind",
    "FailureKind",
    "InputError",
    "InternalAnalysisDegradation",
    "PreservationRule",
    "PreviewDiffEntry",
    "PreviewState",
    "QualityBelowThreshold",
    "QualityMetrics",
    "Role",
    "StreamActive",
    "Thread",
    "Topic",
    "TranscriptSnapshot",
]
