"""Multi-dimensional importance scoring for transcript messages."""

import hashlib
import math
import re
from dataclasses import dataclass, field
from typing import Sequence

from plato.config.schema import ScoringConfig
from plato.context.cache import CachedScores, ScoreCache
from plato.context.models import ConversationMessage, Role
from plato.context.semantic import ERROR_RE, SemanticAnalyzer

_CORRECTION_RE = re.compile(
    r"^\W*(actually|correction|i meant|sorry,? i meant|edit:|to clarify|wait,? no)\b",
    re.IGNORECASE,
)
MIN_QUOTE_LENGTH = 8


@dataclass(frozen=True)
class MessageScore:
    index: int
    recency: float
    relevance: float
    interaction: float
    complexity: float
    composite: float


@dataclass
class UserInteractions:
    """Explicit interaction counts recorded by the caller, keyed by message index."""
    edits: dict[int, int] = field(default_factory=dict)
    references: dict[int, int] = field(default_factory=dict)
    follow_ups: dict[int, int] = field(default_factory=dict)

    def total(self, index: int) -> int:
        return (
            self.edits.get(index, 0)
            + self.references.get(index, 0)
            + self.follow_ups.get(index, 0)
        )


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


class ContextScoringSystem:
    """Scores every message on recency, relevance, interaction and complexity.

    Relevance and complexity depend only on message content (and the anchor),
    so they are memoized in the ScoreCache. Recency and interaction depend on
    position and are recomputed each call.
    """

    def __init__(
        self,
        analyzer: SemanticAnalyzer,
        config: ScoringConfig | None = None,
        cache: ScoreCache | None = None,
    ):
        self.analyzer = analyzer
        self.config = config or ScoringConfig()
        self.cache = cache if cache is not None else ScoreCache()

    def score(
        self,
        transcript: Sequence[ConversationMessage],
        focus: str | None = None,
        interactions: UserInteractions | None = None,
    ) -> list[MessageScore]:
        """Score each message. Every dimension and the composite lie in [0, 1]."""
        n = len(transcript)
        if n == 0:
            return []

        digest = self.analyzer.ensure_fitted(transcript)
        anchor = self.anchor_text(transcript, focus)
        anchor_key = hashlib.sha1(anchor.encode("utf-8")).hexdigest()
        self.cache.bind(anchor_key, digest)

        raw_relevance = []
        complexity = []
        for msg in transcript:
            cached = self.cache.get(msg.content_hash)
            if cached is None:
                cached = CachedScores(
                    relevance=self.analyzer.similarity(anchor, msg.content) if anchor else 0.0,
                    complexity=self._complexity(msg),
                )
                self.cache.put(msg.content_hash, cached)
            raw_relevance.append(cached.relevance)
            complexity.append(cached.complexity)

        peak = max(raw_relevance)
        relevance = [r / peak if peak > 0 else 0.0 for r in raw_relevance]

        counts = self._interaction_counts(transcript, interactions)
        peak_count = max(counts)
        interaction = [c / peak_count if peak_count > 0 else 0.0 for c in counts]

        decay = self.config.recency_decay
        w = self.config.weights
        scores = []
        for i in range(n):
            recency = math.exp(-decay * (n - 1 - i))
            composite = _clamp(
                w.recency * recency
                + w.relevance * relevance[i]
                + w.interaction * interaction[i]
                + w.complexity * complexity[i]
            )
            scores.append(MessageScore(
                index=i,
                recency=recency,
                relevance=relevance[i],
                interaction=interaction[i],
                complexity=complexity[i],
                composite=composite,
            ))
        return scores

    def composite_scores(
        self,
        transcript: Sequence[ConversationMessage],
        focus: str | None = None,
        interactions: UserInteractions | None = None,
    ) -> list[float]:
        return [s.composite for s in self.score(transcript, focus, interactions)]

    def prioritized_indices(
        self,
        transcript: Sequence[ConversationMessage],
        top_k: int | None = None,
        min_score: float = 0.0,
        focus: str | None = None,
    ) -> list[int]:
        """Message indices by descending composite score; later messages win ties."""
        ranked = sorted(
            (s for s in self.score(transcript, focus) if s.composite >= min_score),
            key=lambda s: (-s.composite, -s.index),
        )
        if top_k is not None:
            ranked = ranked[:top_k]
        return [s.index for s in ranked]

    def anchor_text(
        self, transcript: Sequence[ConversationMessage], focus: str | None = None
    ) -> str:
        """The current-context anchor: explicit focus, else the latest messages."""
        focus = focus if focus is not None else self.config.focus
        if focus and focus.strip():
            return focus.strip()
        recent = [m.content for m in transcript if m.role != Role.system]
        return "\n".join(recent[-self.config.anchor_window:])

    def _complexity(self, message: ConversationMessage) -> float:
        profile = self.analyzer.profile(message.content)
        density = len(profile.technical) / profile.term_count if profile.term_count else 0.0
        fences = message.content.count("```")
        blocks = (fences + 1) // 2
        score = min(0.5, 2.5 * density) + min(0.4, 0.2 * blocks)
        if ERROR_RE.search(message.content):
            score += 0.1
        return _clamp(score)

    def _interaction_counts(
        self,
        transcript: Sequence[ConversationMessage],
        interactions: UserInteractions | None,
    ) -> list[int]:
        """How often later messages point back at each message.

        Counts identifier references to the message that introduced the
        identifier, ``>`` quotes of earlier text, correction-style edits of the
        previous user turn, and direct follow-up replies.
        """
        n = len(transcript)
        counts = [0] * n
        introduced: dict[str, int] = {}
        prev: int | None = None
        prev_user: int | None = None

        for i, msg in enumerate(transcript):
            if msg.role == Role.system:
                continue
            text = msg.content

            referenced = set()
            for artifact in sorted(self.analyzer.artifacts(text)):
                first = introduced.setdefault(artifact, i)
                if first != i:
                    referenced.add(first)
            for j in referenced:
                counts[j] += 1

            for line in text.splitlines():
                stripped = line.strip()
                if not stripped.startswith(">"):
                    continue
                quoted = stripped.lstrip(">").strip()
                if len(quoted) < MIN_QUOTE_LENGTH:
                    continue
                for j in range(i - 1, -1, -1):
                    if quoted in transcript[j].content:
                        counts[j] += 1
                        break

            if msg.role == Role.user:
                if prev_user is not None and _CORRECTION_RE.match(text):
                    counts[prev_user] += 1
                prev_user = i

            if prev is not None and transcript[prev].role != msg.role:
                sim = self.analyzer.similarity(transcript[prev].content, text)
                if sim >= self.config.follow_up_similarity:
                    counts[prev] += 1
            prev = i

        if interactions is not None:
            for i in range(n):
                counts[i] += interactions.total(i)
        return counts
