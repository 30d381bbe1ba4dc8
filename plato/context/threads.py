"""Thread segmentation, dependency mapping and threshold-search selection."""

import re
from bisect import bisect_right
from collections import defaultdict, deque
from dataclasses import dataclass, replace
from typing import Iterable, Sequence

from loguru import logger

from plato.config.schema import ThreadConfig
from plato.context.models import ConversationMessage, Role, Thread, Topic
from plato.context.semantic import (
    ERROR_RE,
    SOLUTION_RE,
    BreakReason,
    SemanticAnalyzer,
)

_SNIPPET_RES = (
    re.compile(r"`([^`\n]{4,})`"),
    re.compile(r"\"([^\"\n]{4,})\""),
)
THREAD_KEYWORDS = 5


class ThreadGraph:
    """Threads in a flat arena plus ``(dependent, prerequisite)`` index edges.

    Threads never hold references to each other; traversal goes through the
    adjacency map built from the edge set.
    """

    def __init__(self, threads: Iterable[Thread], edges: Iterable[tuple[int, int]] = ()):
        self.threads: tuple[Thread, ...] = tuple(threads)
        self.edges: frozenset[tuple[int, int]] = frozenset(
            (a, b) for a, b in edges if a != b
        )
        self._prerequisites: dict[int, set[int]] = defaultdict(set)
        for dependent, prerequisite in self.edges:
            self._prerequisites[dependent].add(prerequisite)

    def __len__(self) -> int:
        return len(self.threads)

    def prerequisites(self, index: int) -> tuple[int, ...]:
        return tuple(sorted(self._prerequisites.get(index, ())))

    def closure(self, indices: Iterable[int], max_depth: int = 32) -> set[int]:
        """Indices plus every thread they transitively depend on.

        Breadth-first with a visited set, so cycles terminate. Traversal stops
        ``max_depth`` edges away from the starting set.
        """
        selected = set(indices)
        frontier = deque((i, 0) for i in sorted(selected))
        truncated = False
        while frontier:
            node, depth = frontier.popleft()
            prereqs = self._prerequisites.get(node)
            if not prereqs:
                continue
            if depth >= max_depth:
                truncated = True
                continue
            for dep in sorted(prereqs):
                if dep not in selected:
                    selected.add(dep)
                    frontier.append((dep, depth + 1))
        if truncated:
            logger.warning(f"Dependency closure truncated at depth {max_depth}")
        return selected

    def message_count(self, indices: Iterable[int]) -> int:
        return sum(len(self.threads[i].message_indices) for i in indices)

    def message_indices(self, indices: Iterable[int]) -> list[int]:
        kept: set[int] = set()
        for i in indices:
            kept.update(self.threads[i].message_indices)
        return sorted(kept)


@dataclass(frozen=True)
class ThreadSelection:
    thread_indices: tuple[int, ...]
    message_count: int
    threshold: float
    iterations: int
    converged: bool
    pulled_in: tuple[int, ...] = ()  # Kept only because a selected thread depends on them


@dataclass(frozen=True)
class ThreadCompactionResult:
    messages: tuple[ConversationMessage, ...]
    kept_indices: tuple[int, ...]
    preserved_threads: tuple[int, ...]
    pulled_in: tuple[int, ...]
    coherence_score: float
    low_coherence: bool
    selection: ThreadSelection
    trimmed: bool = False


class _ArtifactIndex:
    """Positions at which each identifier or file name is mentioned."""

    def __init__(self, analyzer: SemanticAnalyzer, transcript: Sequence[ConversationMessage]):
        self.per_message: list[frozenset[str]] = []
        self.positions: dict[str, list[int]] = defaultdict(list)
        for i, msg in enumerate(transcript):
            found = analyzer.artifacts(msg.content) if msg.role != Role.system else frozenset()
            self.per_message.append(found)
            for artifact in found:
                self.positions[artifact].append(i)

    def later_mentions(self, artifacts: Iterable[str], after: int) -> set[int]:
        mentions: set[int] = set()
        for artifact in artifacts:
            positions = self.positions.get(artifact, [])
            mentions.update(positions[bisect_right(positions, after):])
        return mentions

    def introducers(self, index: int, pool: set[int]) -> set[int]:
        """``index`` plus the earlier messages in ``pool`` that first mentioned its artifacts."""
        needed = {index}
        stack = [index]
        while stack:
            current = stack.pop()
            for artifact in self.per_message[current]:
                first = self.positions[artifact][0]
                if first < current and first in pool and first not in needed:
                    needed.add(first)
                    stack.append(first)
        return needed


class ThreadPreservationSystem:
    """Groups messages into threads and chooses which threads survive compaction."""

    def __init__(self, analyzer: SemanticAnalyzer, config: ThreadConfig | None = None):
        self.analyzer = analyzer
        self.config = config or ThreadConfig()

    # ── segmentation ─────────────────────────────────────────────

    def identify_threads(self, transcript: Sequence[ConversationMessage]) -> list[Thread]:
        """Partition conversational messages at breakpoints, then merge similar neighbours.

        System messages belong to no thread. Partitions opened by an explicit
        new-topic cue are never merged into their predecessor.
        """
        self.analyzer.ensure_fitted(transcript)
        conversational = [i for i, m in enumerate(transcript) if m.role != Role.system]
        if not conversational:
            return []

        breakpoints = {
            bp.index: bp for bp in self.analyzer.detect_breakpoints_detailed(transcript)
        }

        partitions: list[list[int]] = []
        current: list[int] = []
        for i in conversational:
            if current and i in breakpoints:
                partitions.append(current)
                current = []
            current.append(i)
        partitions.append(current)

        merged = [partitions[0]]
        for part in partitions[1:]:
            opener = breakpoints.get(part[0])
            if opener is not None and opener.reason == BreakReason.cue:
                merged.append(part)
                continue
            sim = self.analyzer.similarity(
                self._joined(transcript, merged[-1]), self._joined(transcript, part)
            )
            if sim >= self.config.coherence_threshold:
                merged[-1] = merged[-1] + part
            else:
                merged.append(part)

        threads = []
        for k, part in enumerate(merged):
            keywords = [
                term for term, _ in self.analyzer.extract_keywords(self._joined(transcript, part))
            ][:THREAD_KEYWORDS]
            threads.append(Thread(
                index=k,
                start=part[0],
                end=part[-1],
                message_indices=tuple(part),
                topic=keywords[0] if keywords else f"thread-{k}",
                keywords=tuple(keywords),
            ))

        index = _ArtifactIndex(self.analyzer, transcript)
        threads = [
            replace(t, importance=self.score_thread_importance(t, transcript, index))
            for t in threads
        ]
        logger.debug(
            f"Identified {len(threads)} threads from {len(partitions)} partitions"
        )
        return threads

    @staticmethod
    def _joined(transcript: Sequence[ConversationMessage], indices: Iterable[int]) -> str:
        return "\n".join(transcript[i].content for i in indices)

    def score_thread_importance(
        self,
        thread: Thread,
        transcript: Sequence[ConversationMessage],
        index: _ArtifactIndex | None = None,
    ) -> float:
        """Thread importance in [0, 1].

        Engagement (follow-up user turns and later mentions of the thread's
        identifiers), code, resolution and problem language, questions, length
        and the recency of the thread's last message all add up; purely social
        threads are damped.
        """
        if index is None:
            index = _ArtifactIndex(self.analyzer, transcript)
        n = len(transcript)
        messages = [transcript[i] for i in thread.message_indices]
        joined = "\n".join(m.content for m in messages)

        user_turns = sum(1 for m in messages if m.role == Role.user)
        introduced = set().union(*(index.per_message[i] for i in thread.message_indices))
        later = index.later_mentions(introduced, thread.end)
        score = min(0.25, 0.1 * (max(0, user_turns - 1) + len(later)))

        if any(m.has_code_block for m in messages):
            score += 0.25
        if SOLUTION_RE.search(joined):
            score += 0.15
        if ERROR_RE.search(joined):
            score += 0.1
        if "?" in joined:
            score += 0.1
        score += min(0.15, 0.03 * len(messages))
        score += 0.2 * (thread.end + 1) / n if n else 0.0

        if messages and all(self.analyzer.is_social(m) for m in messages):
            score *= 0.3
        return max(0.0, min(1.0, score))

    # ── dependencies ─────────────────────────────────────────────

    def map_relationships(
        self, threads: Sequence[Thread], transcript: Sequence[ConversationMessage]
    ) -> set[tuple[int, int]]:
        """Edges ``(dependent, prerequisite)``.

        Thread B depends on thread A when B mentions an identifier, file name
        or quoted snippet that first appeared in A.
        """
        ordered = sorted(threads, key=lambda t: t.start)
        texts = {t.index: self._joined(transcript, t.message_indices) for t in ordered}
        introduced: dict[str, int] = {}
        edges: set[tuple[int, int]] = set()

        for pos, thread in enumerate(ordered):
            artifacts: set[str] = set()
            for i in thread.message_indices:
                artifacts.update(self.analyzer.artifacts(transcript[i].content))
            for artifact in sorted(artifacts):
                owner = introduced.setdefault(artifact, thread.index)
                if owner != thread.index:
                    edges.add((thread.index, owner))

            text = texts[thread.index]
            snippets = {s for pattern in _SNIPPET_RES for s in pattern.findall(text)}
            for snippet in sorted(snippets):
                for earlier in ordered[:pos]:
                    if snippet in texts[earlier.index]:
                        edges.add((thread.index, earlier.index))
                        break

        return edges

    def build_graph(self, transcript: Sequence[ConversationMessage]) -> ThreadGraph:
        threads = self.identify_threads(transcript)
        return ThreadGraph(threads, self.map_relationships(threads, transcript))

    # ── selection ─────────────────────────────────────────────────

    def select_threshold(
        self,
        graph: ThreadGraph,
        threshold: float,
        max_threads: int | None = None,
        scores: Sequence[float] | None = None,
        pinned: Iterable[int] = (),
    ) -> tuple[set[int], set[int]]:
        """Threads scoring at or above ``threshold``, closed over dependencies.

        ``scores`` overrides thread importance by arena index. Ties rank the
        thread nearer the end of the transcript first. ``pinned`` threads are
        always selected and do not count against ``max_threads``. Returns the
        selected indices and the subset pulled in only as dependencies.
        """
        if not graph.threads:
            return set(), set()

        def score_of(t: Thread) -> float:
            return scores[t.index] if scores is not None else t.importance

        ranking = sorted(graph.threads, key=lambda t: (-score_of(t), -t.end))
        chosen = [t.index for t in ranking if score_of(t) >= threshold]
        if not chosen:
            chosen = [ranking[0].index]
        if max_threads is not None:
            chosen = chosen[:max(1, max_threads)]
        chosen += [t for t in sorted(set(pinned)) if t not in chosen]

        closed = graph.closure(chosen, self.config.max_dependency_depth)
        return closed, closed - set(chosen)

    def selective_preserve(
        self,
        graph: ThreadGraph,
        target_reduction: float | None = None,
        max_threads: int | None = None,
        target_count: int | None = None,
        scores: Sequence[float] | None = None,
        pinned: Iterable[int] = (),
    ) -> ThreadSelection:
        """Binary search for the importance threshold that hits a message budget.

        ``target_reduction`` is the fraction of threaded messages to remove;
        ``target_count`` (which wins when given) is the number to keep. The
        search raises T while too many messages survive and lowers it while
        too few do, stopping within ``tolerance_ratio`` of the target (at least
        one message) or after ``max_iterations``.
        """
        if not graph.threads:
            return ThreadSelection((), 0, 0.0, 0, True)
        pinned = set(pinned)
        total = graph.message_count(t.index for t in graph.threads)
        target = self.resolve_target(graph, target_reduction, target_count)

        if target >= total:
            closed, pulled = self.select_threshold(graph, 0.0, max_threads, scores, pinned)
            if max_threads is None or len(closed) == len(graph.threads):
                return ThreadSelection(
                    tuple(sorted(closed)), graph.message_count(closed), 0.0, 0, True,
                    tuple(sorted(pulled)),
                )

        tolerance = self.tolerance(target)
        lo, hi = 0.0, 1.0
        best: tuple[tuple[int, int], ThreadSelection] | None = None

        for iteration in range(1, self.config.max_iterations + 1):
            threshold = (lo + hi) / 2
            chosen, pulled = self.select_threshold(graph, threshold, max_threads, scores, pinned)
            count = graph.message_count(chosen)
            diff = abs(count - target)
            converged = diff <= tolerance
            selection = ThreadSelection(
                thread_indices=tuple(sorted(chosen)),
                message_count=count,
                threshold=threshold,
                iterations=iteration,
                converged=converged,
                pulled_in=tuple(sorted(pulled)),
            )
            # Closest to target first, then the one that stays under budget
            rank = (diff, 1 if count > target else 0)
            if best is None or rank < best[0]:
                best = (rank, selection)
            if converged:
                break
            if count > target:
                lo = threshold
            else:
                hi = threshold

        result = replace(best[1], iterations=iteration)
        if not result.converged:
            logger.debug(
                f"Threshold search stopped after {iteration} iterations: "
                f"{result.message_count} messages for target {target}"
            )
        return result

    def compact_with_thread_preservation(
        self,
        transcript: Sequence[ConversationMessage],
        target_reduction: float | None = None,
        max_threads: int | None = None,
        target_count: int | None = None,
        graph: ThreadGraph | None = None,
        scores: Sequence[float] | None = None,
        topics: dict[str, Topic] | None = None,
        message_scores: Sequence[float] | None = None,
        pinned: Iterable[int] = (),
    ) -> ThreadCompactionResult:
        """Keep all system messages plus the selected threads, in transcript order.

        Threads holding a ``pinned`` message are always selected. When the
        selected threads still overshoot the budget (one long thread, or a
        thread dragged in by its dependants), they are trimmed message by
        message with ``message_scores`` (importance when omitted).
        """
        if graph is None:
            graph = self.build_graph(transcript)
        pinned = set(pinned)
        pinned_threads = {
            t.index for t in graph.threads if pinned.intersection(t.message_indices)
        }
        selection = self.selective_preserve(
            graph, target_reduction, max_threads, target_count, scores, pinned_threads
        )

        threaded = graph.message_indices(selection.thread_indices)
        target = self.resolve_target(graph, target_reduction, target_count)
        trimmed = len(threaded) > target + self.tolerance(target)
        if trimmed:
            if message_scores is None:
                message_scores = self.analyzer.score_importance(transcript)
            threaded = self.trim_threads(
                transcript, graph, selection.thread_indices, target, message_scores, pinned
            )

        kept = {i for i, m in enumerate(transcript) if m.role == Role.system}
        kept.update(threaded)
        kept_indices = tuple(sorted(kept))

        coherence = self.coherence(
            transcript, graph, set(selection.thread_indices), set(kept_indices), topics
        )
        return ThreadCompactionResult(
            messages=tuple(transcript[i] for i in kept_indices),
            kept_indices=kept_indices,
            preserved_threads=selection.thread_indices,
            pulled_in=selection.pulled_in,
            coherence_score=coherence,
            low_coherence=coherence < self.config.low_coherence_threshold,
            selection=selection,
            trimmed=trimmed,
        )

    def resolve_target(
        self,
        graph: ThreadGraph,
        target_reduction: float | None = None,
        target_count: int | None = None,
    ) -> int:
        """Threaded messages to keep; ``target_count`` wins over ``target_reduction``."""
        if target_count is None:
            total = graph.message_count(t.index for t in graph.threads)
            reduction = target_reduction if target_reduction is not None else 0.0
            target_count = round(total * (1.0 - reduction))
        return max(0, target_count)

    def tolerance(self, target: int) -> int:
        return max(1, round(self.config.tolerance_ratio * target))

    # ── trimming ──────────────────────────────────────────────────

    def trim_threads(
        self,
        transcript: Sequence[ConversationMessage],
        graph: ThreadGraph,
        thread_indices: Iterable[int],
        target: int,
        message_scores: Sequence[float],
        pinned: Iterable[int] = (),
    ) -> list[int]:
        """Messages of the selected threads to keep when they overshoot ``target``.

        Pinned messages are always kept, and every thread keeps its
        best-scoring message together with the turn it answers (or the reply
        to it). The rest of the budget goes to the highest-scoring messages;
        each is admitted only with the earlier messages that introduced the
        identifiers it mentions, and skipped if that unit does not fit.
        Returns message indices in transcript order.
        """
        threads = [graph.threads[t] for t in sorted(set(thread_indices))]
        pool = {i for t in threads for i in t.message_indices}
        index = _ArtifactIndex(self.analyzer, transcript)
        kept: set[int] = set()

        for i in sorted(pool.intersection(pinned)):
            kept |= index.introducers(i, pool)
        for thread in threads:
            best = max(thread.message_indices, key=lambda i: (message_scores[i], i))
            for i in self._exchange(transcript, thread, best):
                kept |= index.introducers(i, pool)

        for i in sorted(pool, key=lambda i: (-message_scores[i], -i)):
            if len(kept) >= target:
                break
            if i in kept:
                continue
            unit = index.introducers(i, pool) - kept
            if len(kept) + len(unit) <= target:
                kept |= unit

        logger.debug(
            f"Trimmed {len(threads)} threads from {len(pool)} to {len(kept)} messages "
            f"for target {target}"
        )
        return sorted(kept)

    @staticmethod
    def _exchange(
        transcript: Sequence[ConversationMessage], thread: Thread, anchor: int
    ) -> tuple[int, ...]:
        """``anchor`` plus the user turn it answers, or the first reply to it."""
        members = thread.message_indices
        pos = members.index(anchor)
        if transcript[anchor].role == Role.user:
            for j in members[pos + 1:]:
                if transcript[j].role != Role.user:
                    return (anchor, j)
        else:
            for j in reversed(members[:pos]):
                if transcript[j].role == Role.user:
                    return (j, anchor)
        return (anchor,)

    def coherence(
        self,
        transcript: Sequence[ConversationMessage],
        graph: ThreadGraph,
        preserved: set[int],
        kept: set[int],
        topics: dict[str, Topic] | None = None,
    ) -> float:
        """Mean of topic coverage and preserved dependency edges, in [0, 1]."""
        if topics is None:
            topics = self.analyzer.identify_topics(transcript)
        if topics:
            covered = sum(1 for t in topics.values() if any(i in kept for i in t.indices))
            topic_part = covered / len(topics)
        else:
            topic_part = 1.0

        if graph.edges:
            intact = sum(1 for a, b in graph.edges if a in preserved and b in preserved)
            edge_part = intact / len(graph.edges)
        else:
            edge_part = 1.0

        return max(0.0, min(1.0, 0.5 * topic_part + 0.5 * edge_part))
