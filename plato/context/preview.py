"""Message-by-message diff of a compaction result and its approval protocol."""

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Sequence

from loguru import logger

from plato.context.models import (
    CompactionResult,
    ContentType,
    ConversationMessage,
    DiffKind,
    PreviewDiffEntry,
    PreviewState,
    Role,
)
from plato.context.semantic import SOLUTION_RE, SemanticAnalyzer

PREVIEW_LENGTH = 150
HIGH_IMPORTANCE = 0.7
LOW_IMPORTANCE = 0.3
BRIEF_MESSAGE = 20
RECENT_WINDOW = 3


def truncate(text: str, limit: int = PREVIEW_LENGTH) -> str:
    """Collapse whitespace and cut at a word boundary."""
    flat = " ".join(text.split())
    if len(flat) <= limit:
        return flat
    cut = flat[:limit]
    space = cut.rfind(" ")
    if space > limit * 0.6:
        cut = cut[:space]
    return cut.rstrip() + "..."


@dataclass
class CompactionPreview:
    """A pending compaction awaiting approval.

    ``base_revision`` is the caller's transcript revision the result was
    computed from; the caller can refuse approval if it has moved on.
    """

    preview_id: str
    result: CompactionResult
    entries: list[PreviewDiffEntry]
    created_at: float
    base_revision: int = 0
    committed_revision: int | None = None  # Caller's revision right after the commit
    state: PreviewState = PreviewState.pending
    resolved_at: float | None = None
    reason: str | None = None

    @property
    def kept_count(self) -> int:
        return sum(1 for e in self.entries if e.kind == DiffKind.kept)

    @property
    def removed_count(self) -> int:
        return sum(1 for e in self.entries if e.kind == DiffKind.removed)

    @property
    def is_pending(self) -> bool:
        return self.state == PreviewState.pending


class CompactionPreviewSystem:
    """Builds previews and tracks their pending/approved/rejected/expired state.

    A preview is approved or rejected at most once; later calls are no-ops.
    Pending previews expire after ``expiry_seconds``; any preview older than
    ``max_age_seconds`` is dropped on the next ``collect_garbage`` call. Until
    then, its snapshot stays available for rollback.
    """

    def __init__(
        self,
        analyzer: SemanticAnalyzer | None = None,
        expiry_seconds: float = 600.0,
        max_age_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.analyzer = analyzer or SemanticAnalyzer()
        self.expiry_seconds = expiry_seconds
        self.max_age_seconds = max_age_seconds
        self.clock = clock
        self._previews: dict[str, CompactionPreview] = {}

    # ── diff ─────────────────────────────────────────────────────

    def build_diff(
        self, original: Sequence[ConversationMessage], result: CompactionResult
    ) -> list[PreviewDiffEntry]:
        """One entry per original message, in transcript order."""
        kept = set(result.kept_indices)
        pulled = set(result.pulled_in)
        pinned = set(result.pinned)
        importance = result.importance
        n = len(original)
        seen: set[str] = set()
        entries = []

        for i, msg in enumerate(original):
            score = importance[i] if importance is not None and i < len(importance) else 0.0
            duplicate = msg.content_hash in seen
            seen.add(msg.content_hash)
            if i in kept:
                kind = DiffKind.kept
                reason = self._kept_reason(msg, i, n, score, i in pulled, i in pinned)
            else:
                kind = DiffKind.removed
                reason = self._removed_reason(msg, score, duplicate)
            entries.append(PreviewDiffEntry(
                index=i,
                role=msg.role,
                kind=kind,
                preview=truncate(msg.content),
                reason=reason,
                importance=score,
            ))
        return entries

    def _kept_reason(
        self,
        msg: ConversationMessage,
        index: int,
        n: int,
        score: float,
        pulled: bool,
        pinned: bool = False,
    ) -> str:
        if msg.role == Role.system:
            return "system message, always preserved"
        if pulled:
            return "required by a later thread"
        if pinned:
            return "matched a preservation rule"
        content_type = self.analyzer.classify_content(msg)
        if content_type == ContentType.code:
            return "contains code block"
        if content_type == ContentType.error:
            return "error information"
        if SOLUTION_RE.search(msg.content):
            return "solution or fix"
        if score >= HIGH_IMPORTANCE:
            return "high importance"
        if index >= n - RECENT_WINDOW:
            return "recent context"
        return "relevant content"

    def _removed_reason(self, msg: ConversationMessage, score: float, duplicate: bool) -> str:
        if duplicate:
            return "duplicate content"
        if self.analyzer.is_social(msg):
            return "social exchange"
        if len(msg.content.strip()) < BRIEF_MESSAGE:
            return "brief message"
        if score < LOW_IMPORTANCE:
            return "low relevance"
        return "less critical for context"

    # ── protocol ─────────────────────────────────────────────────

    def generate_preview(
        self,
        original: Sequence[ConversationMessage],
        result: CompactionResult,
        base_revision: int = 0,
    ) -> CompactionPreview:
        """Register a pending preview for a computed result."""
        self.collect_garbage()
        preview = CompactionPreview(
            preview_id=uuid.uuid4().hex,
            result=result,
            entries=self.build_diff(original, result),
            created_at=self.clock(),
            base_revision=base_revision,
        )
        self._previews[preview.preview_id] = preview
        logger.debug(
            f"Preview {preview.preview_id[:8]} generated: "
            f"{preview.kept_count} kept, {preview.removed_count} removed"
        )
        return preview

    def get(self, preview_id: str) -> CompactionPreview | None:
        preview = self._previews.get(preview_id)
        if preview is not None:
            self._expire_if_due(preview)
        return preview

    def approve(self, preview_id: str) -> bool:
        """Mark a pending preview approved. True only on the transition."""
        return self._resolve(preview_id, PreviewState.approved, None)

    def reject(self, preview_id: str, reason: str | None = None) -> bool:
        """Mark a pending preview rejected. True only on the transition."""
        return self._resolve(preview_id, PreviewState.rejected, reason)

    def _resolve(self, preview_id: str, state: PreviewState, reason: str | None) -> bool:
        preview = self.get(preview_id)
        if preview is None or not preview.is_pending:
            return False
        preview.state = state
        preview.resolved_at = self.clock()
        preview.reason = reason
        logger.debug(f"Preview {preview_id[:8]} {state.value}")
        return True

    def mark_rolled_back(self, preview_id: str) -> bool:
        """Mark an approved preview rolled back. True only on the transition."""
        preview = self._previews.get(preview_id)
        if preview is None or preview.state != PreviewState.approved:
            return False
        preview.state = PreviewState.rolled_back
        preview.resolved_at = self.clock()
        logger.debug(f"Preview {preview_id[:8]} rolled back")
        return True

    def rollback(self, preview_id: str) -> list[ConversationMessage] | None:
        """The original transcript of a preview that has not been collected yet."""
        preview = self._previews.get(preview_id)
        if preview is None:
            return None
        return preview.result.rollback()

    def _expire_if_due(self, preview: CompactionPreview) -> None:
        if preview.is_pending and self.clock() - preview.created_at >= self.expiry_seconds:
            preview.state = PreviewState.expired
            preview.resolved_at = self.clock()

    def collect_garbage(self) -> int:
        """Expire stale pending previews and drop old ones. Returns the number dropped."""
        now = self.clock()
        dropped = []
        for preview_id, preview in self._previews.items():
            self._expire_if_due(preview)
            if now - preview.created_at >= self.max_age_seconds:
                dropped.append(preview_id)
        for preview_id in dropped:
            del self._previews[preview_id]
        if dropped:
            logger.debug(f"Collected {len(dropped)} old previews")
        return len(dropped)

    def pending(self) -> list[CompactionPreview]:
        self.collect_garbage()
        return [p for p in self._previews.values() if p.is_pending]

    def __len__(self) -> int:
        return len(self._previews)
