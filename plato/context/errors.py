"""Error taxonomy for the compaction pipeline.

Exceptions are raised inside the components and converted into
``CompactionFailure`` values at the strategy and service boundary, so callers
only ever see typed failure results.
"""

from enum import Enum


class FailureKind(str, Enum):
    input_error = "input_error"
    quality_below_threshold = "quality_below_threshold"
    compaction_in_progress = "compaction_in_progress"
    stream_active = "stream_active"


class CompactionError(Exception):
    """Base class for compaction errors."""

    kind: FailureKind | None = None


class InputError(CompactionError):
    """Raised when a transcript is too short or contains malformed entries."""

    kind = FailureKind.input_error


class QualityBelowThreshold(CompactionError):
    """Raised when a result's effectiveness score misses the requested threshold."""

    kind = FailureKind.quality_below_threshold

    def __init__(self, message: str, metrics=None):
        super().__init__(message)
        self.metrics = metrics


class InternalAnalysisDegradation(CompactionError):
    """Raised when topic clustering or thread mapping cannot produce a usable result."""


class CompactionInProgress(CompactionError):
    """Raised when a session already has a compaction in flight or awaiting approval."""

    kind = FailureKind.compaction_in_progress


class StreamActive(CompactionError):
    """Raised when a model response is still streaming into the session."""

    kind = FailureKind.stream_active
