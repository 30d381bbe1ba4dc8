"""Configuration schema using Pydantic."""

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from plato.context.models import CompressionLevel, ContentType, PreservationRule, Role


class ScoringWeights(BaseModel):
    """Weights of the four scoring dimensions. Must sum to 1.0."""
    recency: float = Field(default=0.25, ge=0.0, le=1.0)
    relevance: float = Field(default=0.35, ge=0.0, le=1.0)
    interaction: float = Field(default=0.20, ge=0.0, le=1.0)
    complexity: float = Field(default=0.20, ge=0.0, le=1.0)

    @model_validator(mode="after")
    def _check_sum(self) -> "ScoringWeights":
        total = self.recency + self.relevance + self.interaction + self.complexity
        if abs(total - 1.0) > 1e-6:
            raise ValueError(f"Scoring weights must sum to 1.0 (got {total:.4f})")
        return self


class ScoringConfig(BaseModel):
    """Per-message scoring configuration."""
    weights: ScoringWeights = Field(default_factory=ScoringWeights)
    focus: str | None = None  # Explicit relevance anchor; defaults to the latest messages
    recency_decay: float = Field(default=0.05, ge=0.0)  # lambda in exp(-lambda * distance)
    anchor_window: int = Field(default=3, ge=1)  # Trailing messages joined into the default anchor
    follow_up_similarity: float = Field(default=0.2, ge=0.0, le=1.0)


def _default_role_weights() -> dict[Role, float]:
    return {Role.system: 0.5, Role.assistant: 0.3, Role.user: 0.25, Role.tool: 0.2}


class AnalyzerConfig(BaseModel):
    """Semantic analysis thresholds."""
    similarity_threshold: float = Field(default=0.25, ge=0.0, le=1.0)  # Topic clustering
    breakpoint_threshold: float = Field(default=0.12, ge=0.0, le=1.0)
    min_topic_importance: float = Field(default=0.3, ge=0.0)
    technical_boost: float = Field(default=1.5, ge=1.0)
    role_weights: dict[Role, float] = Field(default_factory=_default_role_weights)


class ThreadConfig(BaseModel):
    """Thread segmentation and threshold search configuration."""
    coherence_threshold: float = Field(default=0.35, ge=0.0, le=1.0)  # Merge adjacent partitions
    tolerance_ratio: float = Field(default=0.05, ge=0.0, le=1.0)  # Accepted distance from target
    max_iterations: int = Field(default=15, ge=1, le=64)
    max_dependency_depth: int = Field(default=32, ge=1)
    low_coherence_threshold: float = Field(default=0.8, ge=0.0, le=1.0)


def _default_level_retention() -> dict[CompressionLevel, float]:
    return {
        CompressionLevel.light: 0.7,
        CompressionLevel.moderate: 0.4,
        CompressionLevel.aggressive: 0.2,
    }


def _default_content_weights() -> dict[ContentType, float]:
    return {
        ContentType.code: 1.3,
        ContentType.error: 1.15,
        ContentType.question: 1.05,
        ContentType.tool: 0.9,
        ContentType.social: 0.5,
        ContentType.discussion: 1.0,
    }


PRESETS: dict[str, dict] = {
    "conservative": {
        "description": "Minimal compression, maximum preservation",
        "level": "light",
        "quality_threshold": 0.6,
        "preview_required": True,
    },
    "balanced": {
        "description": "Balanced compression and preservation",
        "level": "moderate",
        "quality_threshold": 0.5,
        "preview_required": True,
    },
    "aggressive": {
        "description": "Maximum compression for large conversations",
        "level": "aggressive",
        "quality_threshold": 0.4,
        "preview_required": False,
    },
    "development": {
        "description": "Keeps code and errors, moderate compression",
        "level": "moderate",
        "quality_threshold": 0.55,
        "preview_required": True,
        "content_weights": {"code": 1.5, "error": 1.3},
        "preservation_rules": ["code-blocks", "error-resolution"],
    },
    "automated": {
        "description": "Unattended compaction when the token watermark is crossed",
        "level": "moderate",
        "quality_threshold": 0.5,
        "preview_required": False,
        "auto_compact_watermark": 0.75,
    },
}


class CompactionSettings(BaseModel):
    """Compaction policy settings."""
    level: CompressionLevel = CompressionLevel.moderate
    level_retention: dict[CompressionLevel, float] = Field(default_factory=_default_level_retention)
    quality_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    content_weights: dict[ContentType, float] = Field(default_factory=_default_content_weights)
    code_score_floor: float = Field(default=0.5, ge=0.0, le=1.0)
    preservation_rules: list[PreservationRule] = Field(default_factory=list)
    min_messages: int = Field(default=3, ge=1)
    preview_required: bool = True
    history_size: int = Field(default=1000, ge=1)
    preview_expiry_seconds: float = Field(default=600.0, gt=0.0)
    preview_max_age_seconds: float = Field(default=3600.0, gt=0.0)
    cache_max_entries: int = Field(default=10_000, ge=1)
    auto_compact_watermark: float = Field(default=0.85, gt=0.0, le=1.0)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    analyzer: AnalyzerConfig = Field(default_factory=AnalyzerConfig)
    threads: ThreadConfig = Field(default_factory=ThreadConfig)

    @model_validator(mode="after")
    def _check_retention(self) -> "CompactionSettings":
        for level, retention in self.level_retention.items():
            if not 0.0 < retention <= 1.0:
                raise ValueError(f"Retention for '{level.value}' must be in (0, 1], got {retention}")
        if self.preview_max_age_seconds < self.preview_expiry_seconds:
            raise ValueError("preview_max_age_seconds must not be shorter than preview_expiry_seconds")
        return self

    @classmethod
    def from_preset(cls, name: str) -> "CompactionSettings":
        """Build settings from a named preset."""
        if name not in PRESETS:
            raise ValueError(f"Unknown preset '{name}'. Available: {', '.join(PRESETS)}")
        overrides = {k: v for k, v in PRESETS[name].items() if k != "description"}
        if "content_weights" in overrides:
            overrides["content_weights"] = {
                **{k.value: v for k, v in _default_content_weights().items()},
                **overrides["content_weights"],
            }
        return cls.model_validate(overrides)

    def retention_for(self, level: CompressionLevel) -> float:
        return self.level_retention.get(level, _default_level_retention()[level])

    def warnings(self) -> list[str]:
        """Combinations that are valid but likely to surprise."""
        notes = []
        if self.quality_threshold > 0.9 and self.level == CompressionLevel.aggressive:
            notes.append(
                "High quality threshold with aggressive compression may result in frequent rejections"
            )
        if not self.preview_required and self.quality_threshold < 0.3:
            notes.append("Low quality threshold without preview may discard important context")
        if self.history_size > 10_000:
            notes.append("Large metrics history size may increase memory usage")
        return notes


class CompactionRequest(BaseModel):
    """Per-invocation compaction request.

    ``target_count`` and ``target_retention`` are alternatives; when both are
    given the explicit count wins. Unset fields fall back to CompactionSettings;
    ``preservation_rules`` replaces the configured rules when given.
    """
    target_retention: float | None = Field(default=None, gt=0.0, le=1.0)
    target_count: int | None = Field(default=None, ge=1)
    level: CompressionLevel | None = None
    focus: str | None = None
    content_weights: dict[ContentType, float] = Field(default_factory=dict)
    quality_threshold: float | None = Field(default=None, ge=0.0, le=1.0)
    force: bool = False
    max_threads: int | None = Field(default=None, ge=1)
    preservation_rules: list[PreservationRule] | None = None


class ContextConfig(BaseModel):
    """Context budget of the assistant the transcript is sent to."""
    max_context_tokens: int = Field(default=200_000, gt=0)


class Config(BaseSettings):
    """Root configuration for plato."""
    compaction: CompactionSettings = Field(default_factory=CompactionSettings)
    context: ContextConfig = Field(default_factory=ContextConfig)

    model_config = SettingsConfigDict(env_prefix="PLATO_", env_nested_delimiter="__")
