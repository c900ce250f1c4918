"""Immutable confidence policy passed to every pipeline stage."""

from __future__ import annotations

from dataclasses import dataclass

from config import settings


@dataclass(frozen=True)
class PipelinePolicy:
    """Confidence gating and context sizing for one pipeline run."""

    confidence_threshold: float = 0.9
    recent_entity_limit: int = 120
    default_suggestion_confidence: float = 0.85

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1.")
        if not 0.0 <= self.default_suggestion_confidence <= 1.0:
            raise ValueError("default_suggestion_confidence must be between 0 and 1.")
        if self.recent_entity_limit < 1:
            raise ValueError("recent_entity_limit must be >= 1.")

    @staticmethod
    def from_settings() -> "PipelinePolicy":
        """Build a policy from pipeline settings."""
        pipeline_config = settings.pipeline
        return PipelinePolicy(
            confidence_threshold=float(pipeline_config.confidence_threshold),
            recent_entity_limit=int(pipeline_config.recent_entity_limit),
            default_suggestion_confidence=float(pipeline_config.default_suggestion_confidence),
        )

    def is_confident(self, confidence: float | None) -> bool:
        """Return True when a confidence clears the auto-apply threshold."""
        return confidence is not None and confidence >= self.confidence_threshold
