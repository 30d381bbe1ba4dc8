"""Tests for the configuration schema, presets and loader."""

import json

import pytest
from pydantic import ValidationError

from plato.config.loader import (
    camel_to_snake,
    convert_keys,
    load_config,
    save_config,
    snake_to_camel,
)
from plato.config.schema import (
    PRESETS,
    CompactionRequest,
    CompactionSettings,
    Config,
    ThreadConfig,
)
from plato.context.models import CompressionLevel, ContentType, PreservationRule


# ── settings ────────────────────────────────────────────────────


class TestCompactionSettings:
    def test_defaults(self):
        s = CompactionSettings()
        assert s.level == CompressionLevel.moderate
        assert s.quality_threshold == 0.5
        assert s.preview_required is True
        assert s.retention_for(CompressionLevel.light) == 0.7
        assert s.retention_for(CompressionLevel.aggressive) == 0.2
        assert s.content_weights[ContentType.code] == 1.3

    def test_retention_must_be_positive(self):
        with pytest.raises(ValidationError):
            CompactionSettings(level_retention={"light": 0.0})

    def test_retention_at_most_one(self):
        with pytest.raises(ValidationError):
            CompactionSettings(level_retention={"moderate": 1.5})

    def test_partial_retention_falls_back(self):
        s = CompactionSettings(level_retention={"light": 0.9})
        assert s.retention_for(CompressionLevel.light) == 0.9
        assert s.retention_for(CompressionLevel.moderate) == 0.4

    def test_preview_age_not_shorter_than_expiry(self):
        with pytest.raises(ValidationError):
            CompactionSettings(preview_expiry_seconds=600, preview_max_age_seconds=60)

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            CompactionSettings(quality_threshold=1.5)

    def test_iteration_cap_bounds(self):
        with pytest.raises(ValidationError):
            ThreadConfig(max_iterations=0)

    def test_warnings(self):
        assert CompactionSettings().warnings() == []
        risky = CompactionSettings(
            level="aggressive", quality_threshold=0.95, preview_required=True, history_size=20_000
        )
        assert len(risky.warnings()) == 2
        unattended = CompactionSettings(preview_required=False, quality_threshold=0.1)
        assert len(unattended.warnings()) == 1


class TestPresets:
    @pytest.mark.parametrize("name", list(PRESETS))
    def test_every_preset_builds(self, name):
        s = CompactionSettings.from_preset(name)
        assert s.level.value == PRESETS[name]["level"]
        assert s.quality_threshold == PRESETS[name]["quality_threshold"]

    def test_development_merges_content_weights(self):
        s = CompactionSettings.from_preset("development")
        assert s.content_weights[ContentType.code] == 1.5
        assert s.content_weights[ContentType.error] == 1.3
        assert s.content_weights[ContentType.social] == 0.5

    def test_development_preserves_code_and_errors(self):
        s = CompactionSettings.from_preset("development")
        assert s.preservation_rules == [PreservationRule.code_blocks, PreservationRule.error_resolution]
        assert CompactionSettings().preservation_rules == []

    def test_aggressive_skips_preview(self):
        assert CompactionSettings.from_preset("aggressive").preview_required is False

    def test_unknown_preset(self):
        with pytest.raises(ValueError, match="Unknown preset"):
            CompactionSettings.from_preset("turbo")


class TestCompactionRequest:
    def test_defaults_unset(self):
        r = CompactionRequest()
        assert r.level is None
        assert r.target_count is None
        assert r.force is False

    def test_validates_retention(self):
        with pytest.raises(ValidationError):
            CompactionRequest(target_retention=0.0)
        with pytest.raises(ValidationError):
            CompactionRequest(target_count=0)

    def test_preservation_rules_parsed(self):
        assert CompactionRequest().preservation_rules is None
        r = CompactionRequest(preservation_rules=["code-blocks", "technical-discussion"])
        assert r.preservation_rules == [
            PreservationRule.code_blocks, PreservationRule.technical_discussion,
        ]
        with pytest.raises(ValidationError):
            CompactionRequest(preservation_rules=["everything"])


# ── environment ─────────────────────────────────────────────────


class TestEnvironment:
    def test_nested_env_override(self, monkeypatch):
        monkeypatch.setenv("PLATO_COMPACTION__LEVEL", "aggressive")
        monkeypatch.setenv("PLATO_CONTEXT__MAX_CONTEXT_TOKENS", "50000")
        config = Config()
        assert config.compaction.level == CompressionLevel.aggressive
        assert config.context.max_context_tokens == 50000


# ── loader ──────────────────────────────────────────────────────


class TestLoader:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "missing.json")
        assert config.compaction.level == CompressionLevel.moderate

    def test_save_writes_camel_case(self, tmp_path):
        path = tmp_path / "sub" / "config.json"
        save_config(Config(), path)
        data = json.loads(path.read_text())
        assert "qualityThreshold" in data["compaction"]
        assert "maxContextTokens" in data["context"]

    def test_roundtrip(self, tmp_path):
        path = tmp_path / "config.json"
        config = Config()
        config.compaction.level = CompressionLevel.light
        config.compaction.quality_threshold = 0.65
        config.context.max_context_tokens = 32_000
        save_config(config, path)

        loaded = load_config(path)
        assert loaded.compaction.level == CompressionLevel.light
        assert loaded.compaction.quality_threshold == 0.65
        assert loaded.context.max_context_tokens == 32_000
        assert loaded.compaction.scoring.weights.relevance == 0.35

    def test_invalid_json_falls_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        config = load_config(path)
        assert config.compaction.quality_threshold == 0.5

    def test_invalid_values_fall_back(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"compaction": {"qualityThreshold": 7}}))
        config = load_config(path)
        assert config.compaction.quality_threshold == 0.5

    def test_snake_case_keys_accepted(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"compaction": {"min_messages": 5}}))
        assert load_config(path).compaction.min_messages == 5


class TestKeyConversion:
    @pytest.mark.parametrize("camel,snake", [
        ("qualityThreshold", "quality_threshold"),
        ("maxContextTokens", "max_context_tokens"),
        ("level", "level"),
    ])
    def test_conversion(self, camel, snake):
        assert camel_to_snake(camel) == snake
        assert snake_to_camel(snake) == camel

    def test_nested(self):
        assert convert_keys({"a": [{"fooBar": 1}]}) == {"a": [{"foo_bar": 1}]}
