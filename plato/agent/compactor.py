"""Per-session compaction service."""

import time
from typing import Callable

from loguru import logger

from plato.agent.tokens import estimate_messages_tokens
from plato.config.schema import CompactionRequest, CompactionSettings
from plato.context.cache import ScoreCache
from plato.context.errors import CompactionInProgress, StreamActive
from plato.context.metrics import QualityMetricsSystem
from plato.context.models import CompactionOutcome, CompactionResult, PreviewState
from plato.context.preview import CompactionPreview, CompactionPreviewSystem
from plato.context.scoring import ContextScoringSystem
from plato.context.semantic import SemanticAnalyzer
from plato.context.strategy import IntelligentCompactionStrategy
from plato.context.threads import ThreadPreservationSystem
from plato.session.manager import Session


class Compactor:
    """Long-lived compaction service for a conversation session.

    Owns the only state that outlives a single compaction: the score cache,
    the rolling metrics history and the registry of previews. Guarantees at
    most one compaction in flight (or awaiting approval) per session, defers
    while a response is streaming, and applies results to the session only
    on commit.
    """

    def __init__(
        self,
        settings: CompactionSettings | None = None,
        max_context_tokens: int = 200_000,
        cache: ScoreCache | None = None,
        metrics: QualityMetricsSystem | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_context_tokens <= 0:
            raise ValueError("max_context_tokens must be positive")
        self.settings = settings or CompactionSettings()
        self.max_context_tokens = max_context_tokens
        self.cache = cache if cache is not None else ScoreCache(self.settings.cache_max_entries)
        self.metrics = metrics if metrics is not None else QualityMetricsSystem(
            self.settings.history_size
        )

        analyzer = SemanticAnalyzer(self.settings.analyzer)
        self.previews = CompactionPreviewSystem(
            analyzer,
            expiry_seconds=self.settings.preview_expiry_seconds,
            max_age_seconds=self.settings.preview_max_age_seconds,
            clock=clock,
        )
        self.strategy = IntelligentCompactionStrategy(
            self.settings,
            analyzer=analyzer,
            scoring=ContextScoringSystem(analyzer, self.settings.scoring, self.cache),
            threads=ThreadPreservationSystem(analyzer, self.settings.threads),
            metrics=self.metrics,
        )
        self._in_flight: set[str] = set()
        self._pending: dict[str, str] = {}  # session key -> preview id
        self._revisions: dict[str, int] = {}  # last revision scored per session

    # ── triggers ─────────────────────────────────────────────────

    def should_compact(self, session: Session) -> bool:
        """Check if the transcript crossed the token watermark."""
        total = estimate_messages_tokens(session.messages)
        return total >= self.settings.auto_compact_watermark * self.max_context_tokens

    def maybe_compact(self, session: Session) -> CompactionOutcome | None:
        """Compact when the watermark is crossed, with a level chosen from the overshoot."""
        if not self.should_compact(session):
            return None
        level = self.strategy.determine_level(session.messages, self.max_context_tokens)
        logger.info(f"Token watermark crossed for {session.key}; compacting at {level.value}")
        return self.compact(session, CompactionRequest(level=level))

    # ── compaction ───────────────────────────────────────────────

    def compact(
        self,
        session: Session,
        request: CompactionRequest | None = None,
        preview: bool | None = None,
    ) -> CompactionOutcome:
        """Compact a session's transcript.

        With preview (the default when ``preview_required`` is set) the result
        is registered as a pending preview and the session is left untouched
        until ``approve``. Without preview the result is committed directly.
        """
        use_preview = self.settings.preview_required if preview is None else preview

        if session.streaming:
            err = StreamActive("A response is still streaming; compaction deferred")
            logger.warning(f"Compaction skipped for {session.key}: {err}")
            return CompactionOutcome.failed(err.kind, str(err))

        self._release_resolved(session.key)
        if session.key in self._in_flight or session.key in self._pending:
            err = CompactionInProgress(
                f"Session {session.key} already has a compaction in progress"
            )
            logger.warning(f"Compaction skipped: {err}")
            return CompactionOutcome.failed(err.kind, str(err))

        self._in_flight.add(session.key)
        try:
            self._sync_revision(session)
            base_revision = session.revision
            outcome = self.strategy.compact(list(session.messages), request)
            if not outcome.ok:
                return outcome

            self.metrics.track_effectiveness(outcome.metrics)
            if use_preview:
                pending = self.previews.generate_preview(
                    outcome.result.snapshot.messages, outcome.result, base_revision
                )
                self._pending[session.key] = pending.preview_id
                outcome.preview = pending
                return outcome

            self._apply(session, outcome.result)
            return outcome
        finally:
            self._in_flight.discard(session.key)

    def approve(self, session: Session, preview_id: str) -> bool:
        """Commit a pending preview to the session.

        Refused while a response is streaming (the preview stays pending), and
        rejected outright if the session changed since the preview was made.
        """
        preview = self.previews.get(preview_id)
        if preview is None or not preview.is_pending:
            self._release(session.key, preview_id)
            return False
        if session.streaming:
            logger.warning(f"Approval deferred for {session.key}: a response is still streaming")
            return False
        if (
            session.revision != preview.base_revision
            or session.snapshot().digest != preview.result.snapshot.digest
        ):
            self.previews.reject(preview_id, "transcript changed since preview")
            self._release(session.key, preview_id)
            logger.warning(f"Preview {preview_id[:8]} discarded: transcript changed since preview")
            return False
        if not self.previews.approve(preview_id):
            return False

        self._apply(session, preview.result)
        preview.committed_revision = session.revision
        self._release(session.key, preview_id)
        return True

    def reject(self, session: Session, preview_id: str, reason: str | None = None) -> bool:
        """Discard a pending preview; the session is not touched."""
        changed = self.previews.reject(preview_id, reason)
        self._release(session.key, preview_id)
        if changed:
            suffix = f": {reason}" if reason else ""
            logger.info(f"Compaction preview {preview_id[:8]} rejected{suffix}")
        return changed

    def rollback(self, session: Session, preview_id: str) -> bool:
        """Restore the transcript an approved preview replaced.

        Works once, and only while the session is exactly as the commit left
        it; messages added since would otherwise be lost.
        """
        preview = self.previews.get(preview_id)
        if preview is None or preview.state != PreviewState.approved:
            return False
        if session.revision != preview.committed_revision:
            logger.warning(
                f"Rollback of {preview_id[:8]} refused for {session.key}: "
                "transcript changed since the commit"
            )
            return False
        session.replace_messages(preview.result.rollback())
        self.previews.mark_rolled_back(preview_id)
        self.notify_transcript_changed(session)
        logger.info(f"Compaction {preview_id[:8]} rolled back for {session.key}")
        return True

    def get_preview(self, preview_id: str) -> CompactionPreview | None:
        return self.previews.get(preview_id)

    def notify_transcript_changed(self, session: Session) -> None:
        """Drop cached scores after an external mutation of the transcript."""
        self.cache.invalidate()
        self._revisions[session.key] = session.revision

    # ── internals ────────────────────────────────────────────────

    def _apply(self, session: Session, result: CompactionResult) -> None:
        before = len(session.messages)
        session.replace_messages(result.messages)
        self.notify_transcript_changed(session)
        logger.info(
            f"Compaction committed ({result.level.value}) for {session.key}: "
            f"kept {len(result.messages)} of {before} messages, "
            f"effectiveness {result.metrics.effectiveness_score:.2f}"
        )

    def _sync_revision(self, session: Session) -> None:
        if self._revisions.get(session.key) != session.revision:
            self.cache.invalidate()
            self._revisions[session.key] = session.revision

    def _release(self, key: str, preview_id: str) -> None:
        if self._pending.get(key) == preview_id:
            del self._pending[key]

    def _release_resolved(self, key: str) -> None:
        preview_id = self._pending.get(key)
        if preview_id is None:
            return
        preview = self.previews.get(preview_id)
        if preview is None or not preview.is_pending:
            del self._pending[key]
