"""Score cache for content-dependent scoring dimensions."""

from dataclasses import dataclass

from loguru import logger


@dataclass(frozen=True)
class CachedScores:
    relevance: float  # Raw similarity to the anchor, before normalization
    complexity: float


class ScoreCache:
    """Memoizes per-message relevance and complexity.

    Entries are keyed by ``(content_hash, anchor_key)``. The cache is bound to
    one anchor and one transcript digest at a time: binding to a different
    anchor, or to a transcript that gained or lost a message, drops every
    entry so stale scores never leak into the next run. Callers that mutate a
    transcript outside a scoring call can also drop entries with
    ``invalidate()``.

    One instance is owned by each long-lived compaction service, so tests can
    construct isolated caches.
    """

    DEFAULT_MAX_ENTRIES = 10_000

    def __init__(self, max_entries: int = DEFAULT_MAX_ENTRIES):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: dict[tuple[str, str], CachedScores] = {}
        self._anchor_key: str | None = None
        self._digest: str | None = None
        self.hits = 0
        self.misses = 0

    def bind(self, anchor_key: str, transcript_digest: str) -> bool:
        """Attach the cache to an anchor and transcript.

        Returns True when the binding changed and entries were dropped.
        """
        if anchor_key == self._anchor_key and transcript_digest == self._digest:
            return False
        if self._entries:
            logger.debug(
                f"Score cache invalidated ({len(self._entries)} entries): "
                f"{'anchor' if anchor_key != self._anchor_key else 'transcript'} changed"
            )
        self._entries.clear()
        self._anchor_key = anchor_key
        self._digest = transcript_digest
        return True

    def get(self, content_hash: str) -> CachedScores | None:
        entry = self._entries.get((content_hash, self._anchor_key or ""))
        if entry is None:
            self.misses += 1
        else:
            self.hits += 1
        return entry

    def put(self, content_hash: str, scores: CachedScores) -> None:
        if len(self._entries) >= self.max_entries:
            self._entries.clear()
        self._entries[(content_hash, self._anchor_key or "")] = scores

    def invalidate(self) -> None:
        """Drop all entries and the current binding."""
        self._entries.clear()
        self._anchor_key = None
        self._digest = None

    @property
    def anchor_key(self) -> str | None:
        return self._anchor_key

    def stats(self) -> dict[str, int]:
        return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._entries)
