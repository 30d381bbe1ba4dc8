"""Compaction pipeline: analyze, score, select, validate, then commit or reject."""

import time
from dataclasses import dataclass
from typing import Any, Iterable, Sequence

from loguru import logger

from plato.agent.tokens import estimate_messages_tokens
from plato.config.schema import CompactionRequest, CompactionSettings
from plato.context.cache import ScoreCache
from plato.context.errors import (
    InputError,
    InternalAnalysisDegradation,
    QualityBelowThreshold,
)
from plato.context.metrics import QualityMetricsSystem, match_subsequence
from plato.context.models import (
    CompactionOutcome,
    CompactionResult,
    CompactionStage,
    CompressionLevel,
    ContentType,
    ConversationMessage,
    PreservationRule,
    QualityMetrics,
    Role,
    Thread,
    Topic,
    TranscriptSnapshot,
    parse_transcript,
)
from plato.context.scoring import ContextScoringSystem, UserInteractions
from plato.context.semantic import ERROR_RE, SOLUTION_RE, SemanticAnalyzer
from plato.context.threads import ThreadPreservationSystem

# Blend of thread-level and message-level signals used for thread selection
THREAD_IMPORTANCE_WEIGHT = 0.5
THREAD_MEAN_WEIGHT = 0.3
THREAD_PEAK_WEIGHT = 0.2

# Distinct technical terms that make a message technical discussion
TECHNICAL_DISCUSSION_TERMS = 2

# Token budget ratios (budget / current estimate) below which a level applies
LEVEL_RATIOS = ((0.3, CompressionLevel.aggressive), (0.6, CompressionLevel.moderate))


def select_level(current_tokens: int, budget_tokens: int) -> CompressionLevel:
    """Pick a compression level from how far a transcript overshoots its budget."""
    if current_tokens <= 0:
        return CompressionLevel.light
    ratio = budget_tokens / current_tokens
    for bound, level in LEVEL_RATIOS:
        if ratio < bound:
            return level
    return CompressionLevel.light


@dataclass(frozen=True)
class UtilityMetrics:
    """How usable a compacted transcript still is as conversation context."""

    questions_covered: float  # Share of user questions still present
    topic_continuity: float  # Share of topics with at least one message kept
    context_preservation: float  # Importance-weighted share of messages kept


@dataclass(frozen=True)
class _Plan:
    kept: tuple[int, ...]
    coherence: float
    low_coherence: bool
    preserved_threads: tuple[int, ...] = ()
    pulled_in: tuple[int, ...] = ()
    importance: tuple[float, ...] | None = None
    degraded: bool = False
    pinned: tuple[int, ...] = ()
    trimmed: bool = False
    topics_preserved: tuple[str, ...] = ()
    topics_removed: tuple[str, ...] = ()


class IntelligentCompactionStrategy:
    """One synchronous compaction pass over a transcript snapshot.

    The strategy holds no per-call state: the analyzer, scoring system (and
    its cache) and metrics history are injected by the owner, which is one
    long-lived Compactor per session. No exception escapes ``compact``;
    input and quality problems come back as failures, and analysis failures
    degrade to recency-based selection.
    """

    def __init__(
        self,
        settings: CompactionSettings | None = None,
        analyzer: SemanticAnalyzer | None = None,
        scoring: ContextScoringSystem | None = None,
        threads: ThreadPreservationSystem | None = None,
        metrics: QualityMetricsSystem | None = None,
    ):
        self.settings = settings or CompactionSettings()
        self.analyzer = analyzer or SemanticAnalyzer(self.settings.analyzer)
        self.scoring = scoring or ContextScoringSystem(
            self.analyzer, self.settings.scoring, ScoreCache(self.settings.cache_max_entries)
        )
        self.threads = threads or ThreadPreservationSystem(self.analyzer, self.settings.threads)
        self.metrics = metrics or QualityMetricsSystem(self.settings.history_size)

    def compact(
        self,
        transcript: Iterable[Any],
        request: CompactionRequest | None = None,
        interactions: UserInteractions | None = None,
    ) -> CompactionOutcome:
        """Compute a compaction of ``transcript``. Never mutates its input."""
        request = request or CompactionRequest()
        stages: list[CompactionStage] = []
        started = time.perf_counter()

        try:
            messages = self._validate_input(transcript)
        except InputError as e:
            logger.warning(f"Compaction rejected: {e}")
            return CompactionOutcome.failed(e.kind, str(e), stages=stages)

        n = len(messages)
        level = request.level or self.settings.level
        target_count = self.resolve_target(n, request, level)
        n_system = sum(1 for m in messages if m.role == Role.system)
        conversational_target = max(0, target_count - n_system)

        try:
            plan = self._plan(messages, request, conversational_target, stages, interactions)
        except Exception as e:
            logger.warning(f"Compaction analysis degraded to recency fallback: {e}")
            plan = self._recency_plan(messages, conversational_target)

        compacted = [messages[i] for i in plan.kept]
        elapsed_ms = (time.perf_counter() - started) * 1000
        stages.append(CompactionStage.validate)
        metrics = self.metrics.calculate_metrics(
            messages,
            compacted,
            processing_time_ms=elapsed_ms,
            importance=plan.importance,
            target_compression=1.0 - target_count / n,
        )

        try:
            self._validate_quality(metrics, request)
        except QualityBelowThreshold as e:
            stages.append(CompactionStage.reject)
            logger.warning(f"Compaction rejected: {e}")
            return CompactionOutcome.failed(e.kind, str(e), metrics=metrics, stages=stages)

        stages.append(CompactionStage.commit)
        kept = set(plan.kept)
        result = CompactionResult(
            messages=tuple(compacted),
            kept_indices=plan.kept,
            removed_indices=tuple(i for i in range(n) if i not in kept),
            coherence_score=plan.coherence,
            low_coherence=plan.low_coherence,
            snapshot=TranscriptSnapshot.capture(messages),
            metrics=metrics,
            level=level,
            target_count=target_count,
            preserved_threads=plan.preserved_threads,
            pulled_in=plan.pulled_in,
            importance=plan.importance,
            degraded=plan.degraded,
            pinned=plan.pinned,
            trimmed=plan.trimmed,
            topics_preserved=plan.topics_preserved,
            topics_removed=plan.topics_removed,
        )
        logger.debug(
            f"Compaction computed ({level.value}): kept {len(compacted)}/{n} messages, "
            f"effectiveness {metrics.effectiveness_score:.2f}, coherence {plan.coherence:.2f}"
        )
        return CompactionOutcome(result=result, metrics=metrics, stages=stages)

    # ── stages ───────────────────────────────────────────────────

    def _validate_input(self, transcript: Iterable[Any]) -> list[ConversationMessage]:
        try:
            messages = parse_transcript(transcript)
        except TypeError:
            raise InputError("Transcript must be a sequence of messages") from None
        if len(messages) < self.settings.min_messages:
            raise InputError(
                f"Transcript has {len(messages)} messages; "
                f"at least {self.settings.min_messages} are needed to compact"
            )
        return messages

    def resolve_target(
        self, n: int, request: CompactionRequest, level: CompressionLevel | None = None
    ) -> int:
        """Number of messages to keep: explicit count, else retention, else level policy."""
        if request.target_count is not None:
            if request.target_retention is not None:
                logger.warning("Both target_count and target_retention given; using target_count")
            return max(1, min(n, request.target_count))
        retention = request.target_retention
        if retention is None:
            retention = self.settings.retention_for(level or request.level or self.settings.level)
        return max(1, min(n, round(n * retention)))

    def _plan(
        self,
        messages: list[ConversationMessage],
        request: CompactionRequest,
        conversational_target: int,
        stages: list[CompactionStage],
        interactions: UserInteractions | None,
    ) -> _Plan:
        stages.append(CompactionStage.analyze)
        importance = self.analyzer.score_importance(messages)
        topics = self.analyzer.identify_topics(messages, importance)
        graph = self.threads.build_graph(messages)

        stages.append(CompactionStage.score)
        composite = self.scoring.composite_scores(messages, request.focus, interactions)

        stages.append(CompactionStage.select)
        weights = {**self.settings.content_weights, **request.content_weights}
        weighted = self._weighted_scores(messages, composite, weights)
        thread_scores = [self._thread_score(t, weighted) for t in graph.threads]
        rules = (
            request.preservation_rules
            if request.preservation_rules is not None
            else self.settings.preservation_rules
        )
        pinned = self.apply_preservation_rules(messages, rules)

        selected = self.threads.compact_with_thread_preservation(
            messages,
            max_threads=request.max_threads,
            target_count=conversational_target,
            graph=graph,
            scores=thread_scores,
            topics=topics,
            message_scores=weighted,
            pinned=pinned,
        )
        missing = pinned.difference(selected.kept_indices)
        if missing:
            raise InternalAnalysisDegradation(
                f"Messages {sorted(missing)} matched a preservation rule but were dropped"
            )

        preserved = set(selected.preserved_threads)
        for dependent, prerequisite in graph.edges:
            if dependent in preserved and prerequisite not in preserved:
                raise InternalAnalysisDegradation(
                    f"Thread {dependent} kept without its dependency {prerequisite}"
                )

        blended = tuple(
            max(0.0, min(1.0, 0.5 * importance[i] + 0.5 * weighted[i]))
            for i in range(len(messages))
        )
        preserved_topics, removed_topics = self._topic_report(topics, set(selected.kept_indices))
        return _Plan(
            kept=selected.kept_indices,
            coherence=selected.coherence_score,
            low_coherence=selected.low_coherence,
            preserved_threads=selected.preserved_threads,
            pulled_in=tuple(graph.message_indices(selected.pulled_in)),
            importance=blended,
            pinned=tuple(sorted(pinned)),
            trimmed=selected.trimmed,
            topics_preserved=preserved_topics,
            topics_removed=removed_topics,
        )

    def apply_preservation_rules(
        self, messages: Sequence[ConversationMessage], rules: Iterable[PreservationRule]
    ) -> set[int]:
        """Indices of conversational messages that a rule says must be kept."""
        rules = set(rules)
        if not rules:
            return set()
        pinned = set()
        for i, msg in enumerate(messages):
            if msg.role == Role.system:
                continue
            if PreservationRule.code_blocks in rules and msg.has_code_block:
                pinned.add(i)
            elif PreservationRule.error_resolution in rules and (
                ERROR_RE.search(msg.content) or SOLUTION_RE.search(msg.content)
            ):
                pinned.add(i)
            elif (
                PreservationRule.technical_discussion in rules
                and len(self.analyzer.profile(msg.content).technical) >= TECHNICAL_DISCUSSION_TERMS
            ):
                pinned.add(i)
        return pinned

    @staticmethod
    def _topic_report(
        topics: dict[str, Topic], kept: set[int]
    ) -> tuple[tuple[str, ...], tuple[str, ...]]:
        preserved = {label for label, t in topics.items() if kept.intersection(t.indices)}
        removed = set(topics) - preserved
        return tuple(sorted(preserved)), tuple(sorted(removed))

    def evaluate_utility(
        self,
        original: Sequence[ConversationMessage],
        compacted: Sequence[ConversationMessage],
    ) -> UtilityMetrics:
        """Score a compacted transcript against the one it came from.

        Transcripts with no user questions (or no topics) count as fully
        covered on that axis.
        """
        original = parse_transcript(original)
        compacted = parse_transcript(compacted)
        kept = match_subsequence(original, compacted)
        if kept is None:
            logger.warning("Compacted transcript is not a subsequence of the original")
            kept = []
        kept_set = set(kept)

        questions = [
            i for i, m in enumerate(original) if m.role == Role.user and "?" in m.content
        ]
        questions_covered = (
            sum(1 for i in questions if i in kept_set) / len(questions) if questions else 1.0
        )

        importance = self.analyzer.score_importance(original)
        topics = self.analyzer.identify_topics(original, importance)
        preserved, _ = self._topic_report(topics, kept_set)
        topic_continuity = len(preserved) / len(topics) if topics else 1.0

        context = self.metrics.calculate_metrics(original, compacted, importance=importance)
        return UtilityMetrics(
            questions_covered=questions_covered,
            topic_continuity=topic_continuity,
            context_preservation=context.information_preservation,
        )

    def _weighted_scores(
        self,
        messages: Sequence[ConversationMessage],
        composite: Sequence[float],
        weights: dict[ContentType, float],
    ) -> list[float]:
        """Composite scores scaled by content type; code never falls below the floor."""
        weighted = []
        for msg, score in zip(messages, composite):
            content_type = self.analyzer.classify_content(msg)
            value = score * weights.get(content_type, 1.0)
            if msg.has_code_block:
                value = max(value, self.settings.code_score_floor)
            weighted.append(max(0.0, min(1.0, value)))
        return weighted

    @staticmethod
    def _thread_score(thread: Thread, weighted: Sequence[float]) -> float:
        values = [weighted[i] for i in thread.message_indices]
        mean = sum(values) / len(values)
        return (
            THREAD_IMPORTANCE_WEIGHT * thread.importance
            + THREAD_MEAN_WEIGHT * mean
            + THREAD_PEAK_WEIGHT * max(values)
        )

    def _recency_plan(
        self, messages: Sequence[ConversationMessage], conversational_target: int
    ) -> _Plan:
        """All system messages plus the most recent conversational ones."""
        conversational = [i for i, m in enumerate(messages) if m.role != Role.system]
        keep = max(1, conversational_target) if conversational else 0
        recent = set(conversational[-keep:]) if keep else set()
        kept = tuple(
            i for i, m in enumerate(messages) if m.role == Role.system or i in recent
        )
        return _Plan(kept=kept, coherence=0.0, low_coherence=True, degraded=True)

    def _validate_quality(self, metrics: QualityMetrics, request: CompactionRequest) -> None:
        threshold = (
            request.quality_threshold
            if request.quality_threshold is not None
            else self.settings.quality_threshold
        )
        if request.force or metrics.effectiveness_score >= threshold:
            return
        raise QualityBelowThreshold(
            f"Effectiveness {metrics.effectiveness_score:.2f} is below "
            f"the quality threshold {threshold:.2f}",
            metrics=metrics,
        )

    def determine_level(
        self, messages: Sequence[ConversationMessage], budget_tokens: int
    ) -> CompressionLevel:
        return select_level(estimate_messages_tokens(messages), budget_tokens)
