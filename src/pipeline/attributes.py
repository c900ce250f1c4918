"""Type-specific attribute schemas for extracted entities.

Each entity variant carries its own attribute bag. Known keys are validated;
unknown keys pass through untouched so the oracle can attach extra detail.
"""

from __future__ import annotations

from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from pipeline.errors import ValidationError


class _AttributeModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class TaskAttributes(_AttributeModel):
    """Attributes recognized on task entities."""

    category: Literal["feature", "bug_fix", "improvement", "chore", "refactor", "story"] | None = (
        None
    )
    owner: str | None = None
    priority: Literal["critical", "high", "medium", "low"] | None = None
    complexity: Literal["small", "medium", "large"] | None = None


class DecisionAttributes(_AttributeModel):
    """Attributes recognized on decision entities."""

    options: list[str] | None = None
    chosen: str | None = None
    rationale: str | None = None
    decided_by: str | None = None


class InsightAttributes(_AttributeModel):
    """Attributes recognized on insight entities."""

    sentiment: str | None = None
    data_points: list[str] | None = None
    feasibility: str | None = None


ATTRIBUTE_MODELS: dict[str, type[_AttributeModel]] = {
    "task": TaskAttributes,
    "decision": DecisionAttributes,
    "insight": InsightAttributes,
}


def clean_attributes(attributes: _AttributeModel | Mapping[str, Any] | None) -> dict[str, Any]:
    """Return attributes as a plain dict with null values dropped."""
    if attributes is None:
        return {}
    if isinstance(attributes, BaseModel):
        return attributes.model_dump(exclude_none=True)
    return {key: value for key, value in attributes.items() if value is not None}


def validate_attributes(
    entity_type: str, attributes: Mapping[str, Any] | None
) -> dict[str, Any]:
    """Validate an attribute bag against its entity type's schema.

    Raises:
        ValidationError: If the type is unknown or a known key has a bad value.
    """
    model = ATTRIBUTE_MODELS.get(entity_type)
    if model is None:
        raise ValidationError(f"unknown entity type: {entity_type}")
    try:
        parsed = model.model_validate(dict(attributes or {}))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"attributes invalid for {entity_type}",
            details={"issues": exc.errors(include_url=False, include_context=False)},
        ) from exc
    return clean_attributes(parsed)


def attributes_fit_type(entity_type: str, attributes: Mapping[str, Any] | None) -> bool:
    """Return True when the attribute bag is valid for ``entity_type``."""
    try:
        validate_attributes(entity_type, attributes)
    except ValidationError:
        return False
    return True


__all__ = [
    "ATTRIBUTE_MODELS",
    "DecisionAttributes",
    "InsightAttributes",
    "TaskAttributes",
    "attributes_fit_type",
    "clean_attributes",
    "validate_attributes",
]
