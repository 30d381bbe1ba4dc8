"""Tests for ContextScoringSystem and the score cache."""

import time

import pytest
from pydantic import ValidationError

from plato.config.schema import ScoringConfig, ScoringWeights
from plato.context.cache import CachedScores, ScoreCache
from plato.context.models import ConversationMessage, Role
from plato.context.scoring import ContextScoringSystem, UserInteractions
from plato.context.semantic import SemanticAnalyzer


def _msg(role, content):
    return ConversationMessage(Role(role), content)


def _scoring(config=None, cache=None):
    return ContextScoringSystem(SemanticAnalyzer(), config, cache)


def _conversation():
    return [
        _msg("system", "You are a helpful assistant."),
        _msg("user", "How do I read a csv file with pandas?"),
        _msg("assistant", "Use pandas.read_csv('data.csv') to load the file into a DataFrame."),
        _msg("user", "thanks"),
        _msg("user", "Now how do I filter rows in the DataFrame by a column value?"),
        _msg("assistant", "```python\nfiltered = df[df['age'] > 30]\n```"),
    ]


# ── weights ─────────────────────────────────────────────────────


class TestScoringWeights:
    def test_defaults_sum_to_one(self):
        w = ScoringWeights()
        assert w.recency + w.relevance + w.interaction + w.complexity == pytest.approx(1.0)

    def test_rejects_weights_not_summing_to_one(self):
        with pytest.raises(ValidationError):
            ScoringWeights(recency=0.5, relevance=0.5, interaction=0.5, complexity=0.5)

    def test_accepts_custom_weights(self):
        w = ScoringWeights(recency=0.4, relevance=0.4, interaction=0.1, complexity=0.1)
        assert w.recency == 0.4


# ── scoring ─────────────────────────────────────────────────────


class TestScore:
    def test_empty_transcript(self):
        assert _scoring().score([]) == []

    def test_all_dimensions_bounded(self):
        scores = _scoring().score(_conversation())
        assert len(scores) == 6
        for s in scores:
            for value in (s.recency, s.relevance, s.interaction, s.complexity, s.composite):
                assert 0.0 <= value <= 1.0

    def test_recency_increases_toward_the_end(self):
        scores = _scoring().score(_conversation())
        recency = [s.recency for s in scores]
        assert recency == sorted(recency)
        assert recency[-1] == pytest.approx(1.0)

    def test_code_is_more_complex_than_chitchat(self):
        scores = _scoring().score(_conversation())
        assert scores[5].complexity > scores[3].complexity

    def test_focus_drives_relevance(self):
        scoring = _scoring()
        scores = scoring.score(_conversation(), focus="pandas read_csv file")
        assert scores[2].relevance > scores[3].relevance
        assert max(s.relevance for s in scores) == pytest.approx(1.0)

    def test_anchor_defaults_to_recent_messages(self):
        scoring = _scoring()
        anchor = scoring.anchor_text(_conversation())
        assert "filter rows" in anchor
        assert "helpful assistant" not in anchor

    def test_configured_focus_used_when_no_explicit_focus(self):
        scoring = _scoring(ScoringConfig(focus="pandas"))
        assert scoring.anchor_text(_conversation()) == "pandas"

    def test_deterministic(self):
        first = _scoring().composite_scores(_conversation())
        second = _scoring().composite_scores(_conversation())
        assert first == second


class TestInteractions:
    def test_identifier_reference_counts_toward_introducer(self):
        transcript = [
            _msg("user", "Where is parse_config defined?"),
            _msg("assistant", "It lives in settings.py"),
            _msg("user", "Can parse_config handle missing keys?"),
        ]
        scores = _scoring().score(transcript)
        assert scores[0].interaction == pytest.approx(1.0)

    def test_quote_counts_toward_quoted_message(self):
        transcript = [
            _msg("assistant", "Restart the worker after changing the queue size."),
            _msg("user", "ok"),
            _msg("assistant", "noted"),
            _msg("user", "> Restart the worker after changing\nwhy is that needed?"),
        ]
        scores = _scoring().score(transcript)
        assert scores[0].interaction > 0.0

    def test_correction_counts_toward_previous_user_turn(self):
        scoring = _scoring()
        transcript = [
            _msg("user", "Set the limit to five"),
            _msg("assistant", "Done"),
            _msg("user", "Actually, make it ten"),
        ]
        counts = scoring._interaction_counts(transcript, None)
        assert counts[0] >= 1

    def test_explicit_interactions_added(self):
        transcript = [_msg("user", "alpha"), _msg("user", "beta"), _msg("user", "gamma")]
        interactions = UserInteractions(edits={1: 2}, references={1: 1})
        scores = _scoring().score(transcript, interactions=interactions)
        assert scores[1].interaction == pytest.approx(1.0)
        assert scores[0].interaction == 0.0


class TestPrioritizedIndices:
    def test_descending_composite(self):
        scoring = _scoring()
        transcript = _conversation()
        ranked = scoring.prioritized_indices(transcript)
        composites = scoring.composite_scores(transcript)
        assert sorted(ranked) == list(range(len(transcript)))
        assert [composites[i] for i in ranked] == sorted(composites, reverse=True)

    def test_top_k_and_min_score(self):
        scoring = _scoring()
        transcript = _conversation()
        assert len(scoring.prioritized_indices(transcript, top_k=2)) == 2
        assert scoring.prioritized_indices(transcript, min_score=2.0) == []


# ── cache ───────────────────────────────────────────────────────


class TestScoreCache:
    def test_rescoring_hits_cache(self):
        cache = ScoreCache()
        scoring = _scoring(cache=cache)
        transcript = _conversation()
        scoring.score(transcript)
        assert cache.misses == len(transcript)
        scoring.score(transcript)
        assert cache.hits == len(transcript)

    def test_cached_scores_match_fresh_scores(self):
        transcript = _conversation()
        scoring = _scoring()
        scoring.score(transcript)
        cached = scoring.composite_scores(transcript)
        assert cached == _scoring().composite_scores(transcript)

    def test_new_message_invalidates(self):
        cache = ScoreCache()
        scoring = _scoring(cache=cache)
        transcript = _conversation()
        scoring.score(transcript)
        transcript.append(_msg("user", "one more question about pandas"))
        scoring.score(transcript)
        assert cache.hits == 0
        assert len(cache) == len(transcript)

    def test_focus_change_invalidates(self):
        cache = ScoreCache()
        scoring = _scoring(cache=cache)
        transcript = _conversation()
        scoring.score(transcript, focus="pandas")
        first_key = cache.anchor_key
        scoring.score(transcript, focus="filtering")
        assert cache.anchor_key != first_key
        assert cache.hits == 0

    def test_bind_reports_change(self):
        cache = ScoreCache()
        assert cache.bind("a", "d1") is True
        assert cache.bind("a", "d1") is False
        assert cache.bind("a", "d2") is True

    def test_capacity_clears(self):
        cache = ScoreCache(max_entries=2)
        cache.bind("a", "d")
        cache.put("h1", CachedScores(0.1, 0.1))
        cache.put("h2", CachedScores(0.2, 0.2))
        cache.put("h3", CachedScores(0.3, 0.3))
        assert len(cache) == 1
        assert cache.get("h3") == CachedScores(0.3, 0.3)

    def test_invalidate(self):
        cache = ScoreCache()
        cache.bind("a", "d")
        cache.put("h", CachedScores(0.5, 0.5))
        cache.invalidate()
        assert len(cache) == 0
        assert cache.anchor_key is None

    def test_rejects_non_positive_capacity(self):
        with pytest.raises(ValueError):
            ScoreCache(max_entries=0)


# ── performance ─────────────────────────────────────────────────


class TestPerformance:
    def test_thousand_messages_under_a_second(self):
        transcript = []
        for k in range(500):
            transcript.append(_msg("user", f"How does module_{k % 40} handle request {k} in the queue?"))
            transcript.append(_msg("assistant", f"module_{k % 40} reads the payload and retries step {k}."))
        scoring = _scoring()
        start = time.perf_counter()
        scores = scoring.score(transcript)
        elapsed = time.perf_counter() - start
        assert len(scores) == 1000
        assert elapsed < 1.0
