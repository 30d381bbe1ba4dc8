"""Tests for the semantic analyzer."""

import pytest

from plato.config.schema import AnalyzerConfig
from plato.context.models import ContentType, ConversationMessage, Role
from plato.context.semantic import (
    BreakReason,
    SemanticAnalyzer,
    extract_artifacts,
    is_technical,
    tokenize,
)


def _msg(role, content):
    return ConversationMessage(Role(role), content)


def _transcript(*pairs):
    return [_msg(role, content) for role, content in pairs]


# ── tokenizing ──────────────────────────────────────────────────


class TestTokenize:
    def test_drops_stop_words(self):
        terms = [t for t, _ in tokenize("What is the best way to parse this file")]
        assert "the" not in terms
        assert "what" not in terms
        assert "parse" in terms
        assert "file" in terms

    def test_drops_short_non_technical_tokens(self):
        terms = [t for t, _ in tokenize("go to db ok")]
        assert terms == []

    def test_lowercases_terms(self):
        assert tokenize("Parser")[0][0] == "parser"


class TestIsTechnical:
    @pytest.mark.parametrize("token", [
        "load_widget_index", "loadWidgetIndex", "WidgetIndex", "os.path", "utils.py", "database",
    ])
    def test_technical(self, token):
        assert is_technical(token)

    @pytest.mark.parametrize("token", ["banana", "weather", "Hello"])
    def test_plain(self, token):
        assert not is_technical(token)


class TestExtractArtifacts:
    def test_identifiers_and_files(self):
        text = "Call load_widget_index from utils.py, then WidgetCache.getItem via fetchRows"
        found = extract_artifacts(text)
        assert "load_widget_index" in found
        assert "utils.py" in found
        assert "fetchRows" in found
        assert "WidgetCache" in found

    def test_plain_prose_has_none(self):
        assert extract_artifacts("The weather is lovely today") == set()


# ── keywords and similarity ─────────────────────────────────────


class TestExtractKeywords:
    def test_sorted_and_normalized(self):
        analyzer = SemanticAnalyzer()
        keywords = analyzer.extract_keywords("the load_widget_index function and banana")
        weights = dict(keywords)
        assert max(weights.values()) == pytest.approx(1.0)
        assert weights["load_widget_index"] == pytest.approx(1.0)
        assert weights["banana"] < weights["load_widget_index"]
        assert [w for _, w in keywords] == sorted((w for _, w in keywords), reverse=True)

    def test_empty_text(self):
        assert SemanticAnalyzer().extract_keywords("") == []

    def test_rare_terms_weigh_more_after_fit(self):
        analyzer = SemanticAnalyzer()
        analyzer.fit(_transcript(
            ("user", "banana common"),
            ("user", "apple common"),
            ("user", "cherry common"),
        ))
        weights = dict(analyzer.extract_keywords("banana common"))
        assert weights["banana"] > weights["common"]


class TestSimilarity:
    def test_identical_is_one(self):
        analyzer = SemanticAnalyzer()
        assert analyzer.similarity("fix the parser", "fix the parser") == 1.0

    def test_empty_is_zero(self):
        analyzer = SemanticAnalyzer()
        assert analyzer.similarity("", "fix the parser") == 0.0
        assert analyzer.similarity("   ", "   ") == 0.0

    def test_disjoint_is_zero(self):
        analyzer = SemanticAnalyzer()
        assert analyzer.similarity("banana smoothie", "kubernetes cluster") == 0.0

    def test_symmetric_and_bounded(self):
        analyzer = SemanticAnalyzer()
        a = "configure the database connection pool"
        b = "database pool timeout settings"
        ab = analyzer.similarity(a, b)
        assert ab == pytest.approx(analyzer.similarity(b, a))
        assert 0.0 < ab < 1.0

    def test_shared_technical_terms_count_extra(self):
        analyzer = SemanticAnalyzer()
        technical = analyzer.similarity("database banana", "database apple")
        plain = analyzer.similarity("orange banana", "orange apple")
        assert technical > plain


# ── per-message signals ─────────────────────────────────────────


class TestScoreImportance:
    def test_scores_in_unit_interval(self):
        analyzer = SemanticAnalyzer()
        transcript = _transcript(
            ("system", "You are a helpful coding assistant."),
            ("user", "fix bug X"),
            ("assistant", "```python\nprint('fixed')\n```"),
            ("user", "thanks"),
            ("assistant", "you're welcome"),
        )
        scores = analyzer.score_importance(transcript)
        assert len(scores) == len(transcript)
        assert all(0.0 <= s <= 1.0 for s in scores)

    def test_code_outranks_social(self):
        analyzer = SemanticAnalyzer()
        transcript = _transcript(
            ("user", "start"),
            ("assistant", "```python\ndef handler(event):\n    return event\n```"),
            ("user", "thanks"),
            ("assistant", "end"),
        )
        scores = analyzer.score_importance(transcript)
        assert scores[1] > scores[2]

    def test_role_weights_are_configurable(self):
        config = AnalyzerConfig(role_weights={"system": 0.1, "user": 0.9, "assistant": 0.1, "tool": 0.1})
        analyzer = SemanticAnalyzer(config)
        transcript = _transcript(
            ("assistant", "first"),
            ("user", "a plain remark here"),
            ("assistant", "a plain remark here too"),
            ("assistant", "last"),
        )
        scores = analyzer.score_importance(transcript)
        assert scores[1] > scores[2]

    def test_first_and_last_are_boosted(self):
        analyzer = SemanticAnalyzer()
        transcript = _transcript(
            ("user", "same plain words"),
            ("user", "same plain words"),
            ("user", "same plain words"),
        )
        scores = analyzer.score_importance(transcript)
        assert scores[0] > scores[1]
        assert scores[2] > scores[1]


class TestClassifyContent:
    def test_categories(self):
        analyzer = SemanticAnalyzer()
        assert analyzer.classify_content(_msg("assistant", "```\ncode\n```")) == ContentType.code
        assert analyzer.classify_content(_msg("user", "I get a Traceback on import")) == ContentType.error
        assert analyzer.classify_content(_msg("user", "thanks!")) == ContentType.social
        assert analyzer.classify_content(_msg("user", "how do I deploy this?")) == ContentType.question
        assert analyzer.classify_content(_msg("tool", "exit code 0")) == ContentType.tool
        assert analyzer.classify_content(_msg("user", "the plan looks fine")) == ContentType.discussion

    def test_greeting_with_substance_is_not_social(self):
        analyzer = SemanticAnalyzer()
        assert not analyzer.is_social(_msg("user", "hi, the parser crashes on nested arrays in config.yaml"))


# ── topics and breakpoints ──────────────────────────────────────


class TestDetectBreakpoints:
    def _transcript(self):
        return _transcript(
            ("system", "You are a helpful assistant."),
            ("user", "How do I configure the database connection pool?"),
            ("assistant", "Set pool_size in the database config section."),
            ("user", "Also, what about the database timeout setting?"),
            ("assistant", "Use the timeout key in the database config."),
            ("user", "Switching topics: how do I bake sourdough bread?"),
            ("assistant", "Sourdough bread needs flour, water, salt and an active starter."),
        )

    def test_explicit_cue_opens_breakpoint(self):
        detailed = SemanticAnalyzer().detect_breakpoints_detailed(self._transcript())
        by_index = {bp.index: bp for bp in detailed}
        assert 5 in by_index
        assert by_index[5].reason == BreakReason.cue

    def test_continuation_cue_suppresses_breakpoint(self):
        assert 3 not in SemanticAnalyzer().detect_breakpoints(self._transcript())

    def test_breakpoints_only_on_user_turns(self):
        transcript = self._transcript()
        breakpoints = SemanticAnalyzer().detect_breakpoints(transcript)
        assert breakpoints == sorted(breakpoints)
        assert all(transcript[i].role == Role.user for i in breakpoints)

    def test_similarity_drop_opens_breakpoint(self):
        transcript = _transcript(
            ("user", "docker container deploy kubernetes"),
            ("assistant", "docker container deploy kubernetes steps"),
            ("user", "bread flour recipe oven"),
        )
        detailed = SemanticAnalyzer().detect_breakpoints_detailed(transcript)
        assert [bp.index for bp in detailed] == [2]
        assert detailed[0].reason == BreakReason.shift


class TestIdentifyTopics:
    def _transcript(self):
        return _transcript(
            ("system", "You are a helpful assistant."),
            ("user", "docker container deploy kubernetes"),
            ("assistant", "docker container deploy kubernetes steps"),
            ("user", "bread flour recipe oven"),
            ("assistant", "bread flour recipe oven timing"),
        )

    def test_clusters_similar_messages(self):
        topics = SemanticAnalyzer().identify_topics(self._transcript())
        assert sorted(t.indices for t in topics.values()) == [(1, 2), (3, 4)]
        assert set(topics) == {"container", "bread"}

    def test_system_messages_excluded(self):
        topics = SemanticAnalyzer().identify_topics(self._transcript())
        assert all(0 not in t.indices for t in topics.values())

    def test_low_importance_clusters_dropped(self):
        analyzer = SemanticAnalyzer(AnalyzerConfig(min_topic_importance=5.0))
        assert analyzer.identify_topics(self._transcript()) == {}

    def test_cluster_by_topic_returns_messages(self):
        transcript = self._transcript()
        clusters = SemanticAnalyzer().cluster_by_topic(transcript)
        assert clusters["bread"] == [transcript[3], transcript[4]]


class TestFitting:
    def test_refits_when_transcript_changes(self):
        analyzer = SemanticAnalyzer()
        transcript = _transcript(("user", "alpha beta"), ("assistant", "gamma delta"))
        first = analyzer.ensure_fitted(transcript)
        assert analyzer.ensure_fitted(transcript) == first
        transcript.append(_msg("user", "epsilon"))
        assert analyzer.ensure_fitted(transcript) != first
