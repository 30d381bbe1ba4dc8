"""Keyword extraction, similarity and topic segmentation over transcripts."""

import math
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Sequence

from loguru import logger

from plato.config.schema import AnalyzerConfig
from plato.context.models import (
    ContentType,
    ConversationMessage,
    Role,
    Topic,
    transcript_digest,
)

_TOKEN_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(?:[.\-][A-Za-z0-9_]+)*")
_CAMEL_RE = re.compile(r"[a-z0-9][A-Z]")

ERROR_RE = re.compile(
    r"\b(errors?|exceptions?|traceback|bugs?|crash\w*|fail\w*|broken|stacktrace|segfault)\b",
    re.IGNORECASE,
)
SOLUTION_RE = re.compile(
    r"\b(fix\w*|solution|solv\w*|resolv\w*|workaround|works now|that worked|patched)\b",
    re.IGNORECASE,
)
_SOCIAL_RE = re.compile(
    r"^\W*(thanks|thank you|thx|ty|you['’]?re welcome|you are welcome|welcome|"
    r"no problem|np|ok|okay|great|cool|awesome|nice|got it|sounds good|perfect|"
    r"hi|hello|hey|bye|goodbye|cheers|glad)\b",
    re.IGNORECASE,
)
_CONTINUATION_RE = re.compile(
    r"^\W*(also|additionally|furthermore|moreover|in addition|and also|plus)\b",
    re.IGNORECASE,
)
_NEW_TOPIC_RE = re.compile(
    r"^\W*(new question|new topic|different topic|different question|switching topics?|"
    r"changing topics?|on another note|unrelated|separate question|moving on|"
    r"hi|hello|hey)\b",
    re.IGNORECASE,
)

# Identifiers and file names a later message can refer back to
_ARTIFACT_RES = (
    re.compile(r"\b[A-Za-z][A-Za-z0-9]*_[A-Za-z0-9_]+\b"),  # snake_case
    re.compile(r"\b[a-z][a-z0-9]*[A-Z][A-Za-z0-9]*\b"),  # camelCase
    re.compile(r"\b[A-Z][a-z0-9]+[A-Z][A-Za-z0-9]*\b"),  # PascalCase
    re.compile(
        r"(?<![\w.])[\w\-/]+\.(?:py|pyi|js|jsx|ts|tsx|json|md|txt|yaml|yml|toml|cfg|ini|sh|"
        r"go|rs|java|kt|c|h|cc|cpp|hpp|rb|php|css|scss|html|sql|lock)\b"
    ),  # file names
)

STOP_WORDS = frozenset("""
a about above after again against all am an and any are aren as at be because been
before being below between both but by can cannot could did didn do does doesn doing
don down during each few for from further get got had has have having he her here hers
herself him himself his how i if in into is isn it its itself just let like me more most
my myself no nor not now of off on once only or other ought our ours ourselves out over
own please same she should so some such than that the their theirs them themselves then
there these they this those through to too under until up us very was we were what when
where which while who whom why will with would yes yet you your yours yourself
yourselves also really maybe well want need see know think going one two use using
""".split())

TECHNICAL_TERMS = frozenset("""
api algorithm array async await backend bash branch buffer build bug cache callback class
cli client commit compile compiler config container cpu css database debug decorator
dependency deploy deployment dict docker encode decode endpoint enum error exception
framework frontend function generator git hash http https import index interface iterator
javascript json kubernetes lambda library lint loop memory merge method migration module
mutex node npm null object parser pip pointer process promise protocol python query queue
react recursion refactor regex repository request response runtime rust schema script
serialize server shell socket sql stack string struct syntax test thread timeout token
traceback typescript undefined variable yaml
""".split())

# Words that carry no meaning beyond a pleasantry
SOCIAL_WORDS = frozenset("""
thanks thank thx welcome problem okay great cool awesome nice sounds good perfect hello
hey bye goodbye cheers much lot appreciate appreciated helpful help glad works worked
""".split())

LENGTH_BONUSES = ((20, 0.0), (200, 0.05), (1000, 0.1))  # (upper bound, bonus)
LONG_MESSAGE_BONUS = 0.15
SOCIAL_DAMPING = 0.4
POSITION_BOOST = 0.1
CANDIDATE_CLUSTERS = 16  # Most recently touched clusters considered per message


def is_technical(token: str) -> bool:
    """Code-identifier shape or known jargon."""
    if "_" in token or "." in token:
        return True
    if _CAMEL_RE.search(token):
        return True
    return token.lower() in TECHNICAL_TERMS


def tokenize(text: str) -> list[tuple[str, bool]]:
    """Split text into (normalized term, is_technical) pairs, dropping stop words."""
    terms = []
    for match in _TOKEN_RE.finditer(text):
        raw = match.group(0)
        term = raw.lower()
        technical = is_technical(raw)
        if term in STOP_WORDS and not technical:
            continue
        if len(term) < 3 and not technical:
            continue
        terms.append((term, technical))
    return terms


def extract_artifacts(text: str) -> set[str]:
    """Identifiers and file names mentioned in a message."""
    found: set[str] = set()
    for pattern in _ARTIFACT_RES:
        found.update(pattern.findall(text))
    return found


def weighted_jaccard(
    a: dict[str, float], b: dict[str, float], boosted: frozenset[str] = frozenset(), boost: float = 1.0
) -> float:
    """Sum of minimum weights over sum of maximum weights, with boosted terms counted extra."""
    num = den = 0.0
    for term in sorted(a.keys() | b.keys()):
        wa = a.get(term, 0.0)
        wb = b.get(term, 0.0)
        factor = boost if term in boosted else 1.0
        num += min(wa, wb) * factor
        den += max(wa, wb) * factor
    if den <= 0.0:
        return 0.0
    return min(1.0, num / den)


class BreakReason(str, Enum):
    cue = "cue"
    shift = "shift"


@dataclass(frozen=True)
class Breakpoint:
    index: int
    reason: BreakReason
    similarity: float


@dataclass(frozen=True)
class TermProfile:
    weights: dict[str, float]
    technical: frozenset[str]
    term_count: int


@dataclass
class _Cluster:
    ident: int
    indices: list[int] = field(default_factory=list)
    sums: dict[str, float] = field(default_factory=dict)
    total: float = 0.0
    touched: int = 0

    def add(self, index: int, weights: dict[str, float], tick: int) -> None:
        self.indices.append(index)
        for term, w in weights.items():
            self.sums[term] = self.sums.get(term, 0.0) + w
            self.total += w
        self.touched = tick

    def similarity(self, weights: dict[str, float]) -> float:
        # Weighted Jaccard against the mean vector: sum(max) = sum(a) + sum(b) - sum(min)
        n = len(self.indices)
        shared = 0.0
        for term, w in weights.items():
            c = self.sums.get(term)
            if c is not None:
                shared += min(w, c / n)
        union = sum(weights.values()) + self.total / n - shared
        return shared / union if union > 0 else 0.0


class SemanticAnalyzer:
    """Keyword weighting and topic structure for one transcript at a time.

    Term rarity comes from document frequencies over the fitted transcript.
    Every operation that takes a transcript refits when the transcript differs
    from the previous one, so callers never see IDF values from stale data.
    """

    def __init__(self, config: AnalyzerConfig | None = None):
        self.config = config or AnalyzerConfig()
        self._doc_freq: Counter = Counter()
        self._doc_count = 0
        self._fitted_digest: str | None = None
        self._profiles: dict[str, TermProfile] = {}
        self._artifacts: dict[str, frozenset[str]] = {}

    # ── fitting ────────────────────────────────────────────────

    def fit(self, transcript: Sequence[ConversationMessage]) -> str:
        """Compute document frequencies for a transcript. Returns its digest."""
        digest = transcript_digest(transcript)
        self._doc_freq = Counter()
        for msg in transcript:
            self._doc_freq.update({term for term, _ in tokenize(msg.content)})
        self._doc_count = len(transcript)
        self._fitted_digest = digest
        self._profiles.clear()
        self._artifacts.clear()
        return digest

    def ensure_fitted(self, transcript: Sequence[ConversationMessage]) -> str:
        """Refit only when the transcript changed since the last fit."""
        digest = transcript_digest(transcript)
        if digest != self._fitted_digest:
            self.fit(transcript)
        return digest

    def _idf(self, term: str) -> float:
        if not self._doc_count:
            return 1.0
        return math.log((1 + self._doc_count) / (1 + self._doc_freq.get(term, 0))) + 1.0

    # ── keywords and similarity ─────────────────────────────────

    def profile(self, text: str) -> TermProfile:
        """Normalized keyword weights and technical terms of a text (memoized)."""
        cached = self._profiles.get(text)
        if cached is not None:
            return cached

        tokens = tokenize(text)
        counts = Counter(term for term, _ in tokens)
        technical = frozenset(term for term, tech in tokens if tech)
        raw = {}
        for term, tf in counts.items():
            weight = (1.0 + math.log(tf)) * self._idf(term)
            if term in technical:
                weight *= self.config.technical_boost
            raw[term] = weight
        peak = max(raw.values(), default=0.0)
        weights = {term: w / peak for term, w in raw.items()} if peak > 0 else {}

        result = TermProfile(weights=weights, technical=technical, term_count=len(counts))
        self._profiles[text] = result
        return result

    def extract_keywords(self, text: str) -> list[tuple[str, float]]:
        """Weighted keywords, strongest first."""
        weights = self.profile(text).weights
        return sorted(weights.items(), key=lambda item: (-item[1], item[0]))

    def similarity(self, a: str, b: str) -> float:
        """Weighted Jaccard similarity in [0, 1], boosting shared technical terms."""
        sa, sb = a.strip(), b.strip()
        if not sa or not sb:
            return 0.0
        if sa == sb:
            return 1.0
        pa, pb = self.profile(a), self.profile(b)
        if not pa.weights or not pb.weights:
            return 0.0
        shared_technical = pa.technical & pb.technical
        return weighted_jaccard(
            pa.weights, pb.weights, shared_technical, self.config.technical_boost
        )

    def artifacts(self, text: str) -> frozenset[str]:
        """Identifiers and file names in a text (memoized)."""
        cached = self._artifacts.get(text)
        if cached is None:
            cached = frozenset(extract_artifacts(text))
            self._artifacts[text] = cached
        return cached

    # ── per-message signals ───────────────────────────────────────

    def is_social(self, message: ConversationMessage) -> bool:
        """Short pleasantry with no technical substance."""
        text = message.content
        if message.has_code_block or len(text) > 120:
            return False
        if not _SOCIAL_RE.match(text):
            return False
        terms = {term for term, _ in tokenize(text)}
        return len(terms - SOCIAL_WORDS) <= 1

    def classify_content(self, message: ConversationMessage) -> ContentType:
        if message.role == Role.tool:
            return ContentType.tool
        if message.has_code_block:
            return ContentType.code
        if ERROR_RE.search(message.content):
            return ContentType.error
        if self.is_social(message):
            return ContentType.social
        if "?" in message.content:
            return ContentType.question
        return ContentType.discussion

    def _message_importance(self, message: ConversationMessage) -> float:
        text = message.content
        score = self.config.role_weights.get(message.role, 0.2)

        if message.has_code_block:
            score += 0.25
        if ERROR_RE.search(text):
            score += 0.15
        if SOLUTION_RE.search(text):
            score += 0.15
        if "?" in text:
            score += 0.1

        length = len(text)
        for bound, bonus in LENGTH_BONUSES:
            if length < bound:
                score += bonus
                break
        else:
            score += LONG_MESSAGE_BONUS

        score += min(0.1, 0.02 * len(self.profile(text).technical))

        if self.is_social(message):
            score *= SOCIAL_DAMPING
        return score

    def score_importance(self, transcript: Sequence[ConversationMessage]) -> list[float]:
        """Per-message importance in [0, 1]."""
        self.ensure_fitted(transcript)
        n = len(transcript)
        scores = []
        for i, msg in enumerate(transcript):
            score = self._message_importance(msg)
            if i == 0 or i == n - 1:
                score += POSITION_BOOST
            scores.append(max(0.0, min(1.0, score)))
        return scores

    # ── topics and breakpoints ────────────────────────────────────

    def identify_topics(
        self,
        transcript: Sequence[ConversationMessage],
        importance: Sequence[float] | None = None,
    ) -> dict[str, Topic]:
        """Greedy single-pass clustering of messages into topics.

        A message joins the most similar recently active cluster if the
        similarity to that cluster's mean keyword vector reaches the threshold,
        otherwise it opens a new cluster. Clusters whose summed importance is
        below ``min_topic_importance`` are dropped.
        """
        self.ensure_fitted(transcript)
        if importance is None:
            importance = self.score_importance(transcript)

        clusters: list[_Cluster] = []
        postings: dict[str, set[int]] = defaultdict(set)

        for tick, (i, msg) in enumerate(enumerate(transcript), start=1):
            if msg.role == Role.system:
                continue
            weights = self.profile(msg.content).weights
            if not weights:
                continue

            candidate_ids: set[int] = set()
            for term in weights:
                candidate_ids.update(postings.get(term, ()))
            candidates = sorted(
                (clusters[c] for c in candidate_ids),
                key=lambda c: (-c.touched, c.ident),
            )[:CANDIDATE_CLUSTERS]

            best, best_sim = None, 0.0
            for cluster in candidates:
                sim = cluster.similarity(weights)
                if sim > best_sim:
                    best, best_sim = cluster, sim

            if best is None or best_sim < self.config.similarity_threshold:
                best = _Cluster(ident=len(clusters))
                clusters.append(best)
            best.add(i, weights, tick)
            for term in weights:
                postings[term].add(best.ident)

        topics: dict[str, Topic] = {}
        for cluster in clusters:
            aggregate = sum(importance[i] for i in cluster.indices)
            if aggregate < self.config.min_topic_importance:
                continue
            label = self._label(cluster, topics)
            topics[label] = Topic(
                label=label, indices=tuple(cluster.indices), importance=aggregate
            )

        logger.debug(f"Identified {len(topics)} topics from {len(clusters)} clusters")
        return topics

    @staticmethod
    def _label(cluster: _Cluster, taken: dict[str, Topic]) -> str:
        ranked = sorted(cluster.sums.items(), key=lambda item: (-item[1], item[0]))
        base = ranked[0][0] if ranked else f"topic-{cluster.ident}"
        label, suffix = base, 2
        while label in taken:
            label = f"{base}-{suffix}"
            suffix += 1
        return label

    def detect_breakpoints_detailed(
        self, transcript: Sequence[ConversationMessage]
    ) -> list[Breakpoint]:
        """Topic switches, opened only on user turns.

        A user turn is a breakpoint when it opens with an explicit new-topic
        cue or when its similarity to the previous conversational message
        drops below ``breakpoint_threshold``. Turns opening with a
        continuation cue never are.
        """
        self.ensure_fitted(transcript)
        breakpoints = []
        prev: int | None = None

        for i, msg in enumerate(transcript):
            if msg.role == Role.system:
                continue
            if prev is not None and msg.role == Role.user:
                text = msg.content
                if _CONTINUATION_RE.match(text):
                    pass
                elif _NEW_TOPIC_RE.match(text):
                    sim = self.similarity(transcript[prev].content, text)
                    breakpoints.append(Breakpoint(i, BreakReason.cue, sim))
                else:
                    sim = self.similarity(transcript[prev].content, text)
                    if sim < self.config.breakpoint_threshold:
                        breakpoints.append(Breakpoint(i, BreakReason.shift, sim))
            prev = i

        return breakpoints

    def detect_breakpoints(self, transcript: Sequence[ConversationMessage]) -> list[int]:
        """Sorted indices where a new topic starts."""
        return [bp.index for bp in self.detect_breakpoints_detailed(transcript)]

    def cluster_by_topic(
        self, transcript: Sequence[ConversationMessage]
    ) -> dict[str, list[ConversationMessage]]:
        topics = self.identify_topics(transcript)
        return {
            label: [transcript[i] for i in topic.indices]
            for label, topic in topics.items()
        }
