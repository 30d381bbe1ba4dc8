"""Quality metrics for compaction results and their rolling history."""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Sequence

from loguru import logger

from plato.agent.tokens import estimate_messages_tokens
from plato.context.models import ConversationMessage, QualityMetrics

PRESERVATION_WEIGHT = 0.6
ACCURACY_WEIGHT = 0.4
# Below this target accuracy the blended score is scaled down proportionally
MIN_TARGET_ACCURACY = 0.5
MIN_SESSIONS_FOR_COMPARISON = 5


@dataclass(frozen=True)
class MetricsTrends:
    total_sessions: int = 0
    avg_compression_ratio: float = 0.0
    avg_preservation: float = 0.0
    avg_effectiveness: float = 0.0
    avg_processing_time_ms: float = 0.0
    last_updated: float | None = None


@dataclass(frozen=True)
class QualityInsights:
    current_quality: float
    historical_comparison: str  # "above", "below" or "average"
    recommendation: str
    improvement_suggestions: list[str] = field(default_factory=list)
    confidence_score: float = 0.5


def match_subsequence(
    original: Sequence[ConversationMessage], compacted: Sequence[ConversationMessage]
) -> list[int] | None:
    """Original indices of the compacted messages, or None if not a subsequence.

    Matches by identity first, then by equality, scanning left to right.
    """
    indices = []
    j = 0
    for msg in compacted:
        while j < len(original) and original[j] is not msg and original[j] != msg:
            j += 1
        if j >= len(original):
            return None
        indices.append(j)
        j += 1
    return indices


class QualityMetricsSystem:
    """Computes quality metrics and keeps a bounded history for trend reports.

    The history is the only state that outlives a compaction call; the owner
    decides whether to persist it (see ``export_history``/``load_history``).
    """

    DEFAULT_HISTORY_SIZE = 1000

    def __init__(self, history_size: int = DEFAULT_HISTORY_SIZE):
        if history_size <= 0:
            raise ValueError("history_size must be positive")
        self.history_size = history_size
        self._history: deque[QualityMetrics] = deque(maxlen=history_size)

    def calculate_metrics(
        self,
        original: Sequence[ConversationMessage],
        compacted: Sequence[ConversationMessage],
        processing_time_ms: float = 0.0,
        importance: Sequence[float] | None = None,
        target_compression: float | None = None,
    ) -> QualityMetrics:
        """Metrics for one compaction.

        ``importance`` weights each original message for the preservation
        score (uniform when omitted). ``target_compression`` is the requested
        fraction of messages to remove; effectiveness blends preservation with
        how close the actual ratio landed to it. A result that misses the
        target badly loses the blend, so removing nothing scores zero.
        """
        n_original = len(original)
        n_compacted = len(compacted)
        if n_original == 0:
            return QualityMetrics(
                compression_ratio=0.0,
                message_reduction=0,
                token_reduction=0.0,
                information_preservation=1.0,
                effectiveness_score=0.0,
                processing_time_ms=processing_time_ms,
            )

        compression_ratio = 1.0 - n_compacted / n_original

        original_tokens = estimate_messages_tokens(original)
        compacted_tokens = estimate_messages_tokens(compacted)
        token_reduction = (
            1.0 - compacted_tokens / original_tokens if original_tokens > 0 else 0.0
        )

        kept = match_subsequence(original, compacted)
        if kept is None:
            logger.warning("Compacted transcript is not a subsequence of the original")
            kept = []
        preservation = self._preservation(n_original, set(kept), importance)
        accuracy = self._target_accuracy(compression_ratio, target_compression)
        effectiveness = self.effectiveness(preservation, accuracy)

        return QualityMetrics(
            compression_ratio=compression_ratio,
            message_reduction=n_original - n_compacted,
            token_reduction=max(0.0, min(1.0, token_reduction)),
            information_preservation=preservation,
            effectiveness_score=max(0.0, min(1.0, effectiveness)),
            original_count=n_original,
            compacted_count=n_compacted,
            processing_time_ms=processing_time_ms,
        )

    @staticmethod
    def effectiveness(preservation: float, accuracy: float) -> float:
        blend = PRESERVATION_WEIGHT * preservation + ACCURACY_WEIGHT * accuracy
        return blend * min(1.0, accuracy / MIN_TARGET_ACCURACY)

    @staticmethod
    def _preservation(
        n_original: int, kept: set[int], importance: Sequence[float] | None
    ) -> float:
        if importance is None or len(importance) != n_original:
            return len(kept) / n_original
        total = sum(importance)
        if total <= 0:
            return len(kept) / n_original
        return sum(importance[i] for i in kept) / total

    @staticmethod
    def _target_accuracy(actual: float, target: float | None) -> float:
        if target is None:
            return 1.0 if actual > 0 else 0.0
        span = max(target, 1.0 - target)
        if span <= 0:
            return 1.0
        return max(0.0, 1.0 - abs(actual - target) / span)

    # ── history ──────────────────────────────────────────────────

    def track_effectiveness(self, metrics: QualityMetrics) -> None:
        """Append to the rolling history; the oldest entry is evicted past the cap."""
        self._history.append(metrics)

    @property
    def history(self) -> list[QualityMetrics]:
        return list(self._history)

    def get_historical_trends(self) -> MetricsTrends:
        if not self._history:
            return MetricsTrends()
        n = len(self._history)
        return MetricsTrends(
            total_sessions=n,
            avg_compression_ratio=sum(m.compression_ratio for m in self._history) / n,
            avg_preservation=sum(m.information_preservation for m in self._history) / n,
            avg_effectiveness=sum(m.effectiveness_score for m in self._history) / n,
            avg_processing_time_ms=sum(m.processing_time_ms for m in self._history) / n,
            last_updated=self._history[-1].timestamp,
        )

    def generate_quality_insights(self, current: QualityMetrics) -> QualityInsights:
        """Recommendation and suggestions for one result, relative to history."""
        trends = self.get_historical_trends()

        comparison = "average"
        if trends.total_sessions > MIN_SESSIONS_FOR_COMPARISON:
            diff = current.effectiveness_score - trends.avg_effectiveness
            if diff > 0.05:
                comparison = "above"
            elif diff < -0.05:
                comparison = "below"

        suggestions = []
        if current.information_preservation < 0.8:
            suggestions.append("Consider reducing compression ratio to preserve more context")
        if current.processing_time_ms > 1000:
            suggestions.append("Processing time is high - consider a smaller transcript window")
        if current.compression_ratio < 0.3:
            suggestions.append("Compression ratio is low - consider more aggressive compaction")
        if current.effectiveness_score < 0.7:
            suggestions.append("Overall effectiveness is below target - review compaction settings")

        score = current.effectiveness_score
        if score >= 0.85:
            recommendation = "Excellent compaction quality - current settings are optimal"
        elif score >= 0.75:
            recommendation = "Good compaction quality with room for minor improvements"
        elif score >= 0.65:
            recommendation = "Moderate quality - consider adjusting preservation thresholds"
        else:
            recommendation = "Below-target quality - review compaction level and weights"

        return QualityInsights(
            current_quality=score,
            historical_comparison=comparison,
            recommendation=recommendation,
            improvement_suggestions=suggestions,
            confidence_score=self._confidence(current, trends),
        )

    @staticmethod
    def _confidence(current: QualityMetrics, trends: MetricsTrends) -> float:
        confidence = 0.5
        if trends.total_sessions > 10:
            confidence += 0.2
        if trends.total_sessions > 50:
            confidence += 0.2
        if trends.total_sessions > 0:
            if abs(current.effectiveness_score - trends.avg_effectiveness) < 0.1:
                confidence += 0.1
        if current.processing_time_ms > 2000:
            confidence -= 0.1
        if current.effectiveness_score < 0.3:
            confidence -= 0.1
        return max(0.1, min(1.0, confidence))

    def metrics_in_range(self, start: float, end: float) -> list[QualityMetrics]:
        """History entries with ``start <= timestamp <= end``."""
        return [m for m in self._history if start <= m.timestamp <= end]

    def clear_history(self) -> None:
        self._history.clear()

    def export_history(self) -> list[dict[str, Any]]:
        return [m.to_dict() for m in self._history]

    def load_history(self, entries: Sequence[dict[str, Any]]) -> int:
        """Replace the history with previously exported entries. Returns the count kept."""
        self._history.clear()
        for entry in entries:
            try:
                self._history.append(QualityMetrics.from_dict(entry))
            except TypeError as e:
                logger.warning(f"Skipping malformed metrics entry: {e}")
        return len(self._history)
