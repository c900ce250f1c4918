"""Pydantic schemas for oracle outputs and review suggestion payloads.

The extraction and organization schemas double as the tool input schema sent
to the oracle (via ``model_json_schema``) and as the validator applied to its
reply. Nothing the oracle returns is trusted until it passes through here.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from pipeline.attributes import DecisionAttributes, InsightAttributes, TaskAttributes
from pipeline.constants import DUPLICATE_SIMILARITY_FLOOR

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]
BatchIndex = Annotated[int, Field(ge=0)]


class EvidenceSpan(BaseModel):
    """Quoted span of the note supporting an extracted entity."""

    quote: str
    start_offset: int | None = Field(default=None, ge=0)
    end_offset: int | None = Field(default=None, ge=0)


class FieldConfidence(BaseModel):
    """Oracle confidence for one extracted field."""

    confidence: Confidence
    reason: str | None = None


class _ExtractedEntityBase(BaseModel):
    content: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    evidence: list[EvidenceSpan] = Field(min_length=1)
    field_confidence: dict[str, FieldConfidence] = Field(default_factory=dict)
    confidence: Confidence


class ExtractedTask(_ExtractedEntityBase):
    type: Literal["task"]
    status: Literal["captured"]
    attributes: TaskAttributes = Field(default_factory=TaskAttributes)


class ExtractedDecision(_ExtractedEntityBase):
    type: Literal["decision"]
    status: Literal["pending", "decided"]
    attributes: DecisionAttributes = Field(default_factory=DecisionAttributes)


class ExtractedInsight(_ExtractedEntityBase):
    type: Literal["insight"]
    status: Literal["captured"]
    attributes: InsightAttributes = Field(default_factory=InsightAttributes)


ExtractedEntity = Annotated[
    Union[ExtractedTask, ExtractedDecision, ExtractedInsight],
    Field(discriminator="type"),
]


class ExtractedRelationship(BaseModel):
    """Edge between two entities of the same batch, by batch index."""

    source_index: BatchIndex
    target_index: BatchIndex
    relationship_type: Literal["derived_from", "related_to"]


class ExtractionResult(BaseModel):
    """Full extraction reply for one note."""

    entities: list[ExtractedEntity]
    relationships: list[ExtractedRelationship] = Field(default_factory=list)


class DuplicateCandidate(BaseModel):
    """Existing entity the oracle believes duplicates a batch entity."""

    entity_id: UUID
    similarity_score: float = Field(ge=DUPLICATE_SIMILARITY_FLOOR, le=1.0)
    reason: str


class EntityOrganization(BaseModel):
    """Organization verdict for one batch entity."""

    entity_index: BatchIndex

    project_id: UUID | None
    project_confidence: Confidence
    project_reason: str

    epic_id: UUID | None
    epic_confidence: Confidence
    epic_reason: str

    duplicate_candidates: list[DuplicateCandidate] = Field(default_factory=list)

    assignee_id: UUID | None
    assignee_confidence: Confidence | None
    assignee_reason: str | None


class EpicSuggestion(BaseModel):
    """Proposal to create an epic grouping several batch entities."""

    name: str = Field(min_length=1)
    description: str | None
    project_id: UUID
    entity_indices: list[BatchIndex] = Field(default_factory=list)
    confidence: Confidence | None = None
    reason: str


class ProjectSuggestion(BaseModel):
    """Proposal to create a project grouping several batch entities."""

    name: str = Field(min_length=1)
    description: str | None
    entity_indices: list[BatchIndex] = Field(default_factory=list)
    confidence: Confidence | None = None
    reason: str


class OrganizationResult(BaseModel):
    """Full organization reply for one batch."""

    entity_organizations: list[EntityOrganization] = Field(default_factory=list)
    epic_suggestions: list[EpicSuggestion] = Field(default_factory=list)
    project_suggestions: list[ProjectSuggestion] = Field(default_factory=list)


class ReviewSuggestion(BaseModel):
    """Suggestion payload stored on review items and supplied by resolvers.

    Only the keys relevant to the item's review type are populated; unknown
    keys are preserved.
    """

    model_config = ConfigDict(extra="allow")

    suggested_type: Literal["task", "decision", "insight"] | None = None
    suggested_project_id: UUID | None = None
    suggested_epic_id: UUID | None = None
    suggested_assignee_id: UUID | None = None
    suggested_assignee_name: str | None = None
    duplicate_entity_id: UUID | None = None
    similarity_score: float | None = None
    proposed_epic_name: str | None = None
    proposed_epic_description: str | None = None
    proposed_epic_project_id: UUID | None = None
    proposed_project_name: str | None = None
    proposed_project_description: str | None = None
    candidate_entity_ids: list[UUID] | None = None
    field_key: str | None = None
    suggested_value: Any = None
    explanation: str | None = None


def suggestion_payload(**values: Any) -> dict[str, Any]:
    """Build a JSON-ready suggestion dict, dropping unset keys."""
    suggestion = ReviewSuggestion(**values)
    return suggestion.model_dump(mode="json", exclude_none=True)


def tool_input_schema(model: type[BaseModel]) -> dict[str, Any]:
    """Return the JSON schema advertised to the oracle for ``model``."""
    return model.model_json_schema()


__all__ = [
    "DuplicateCandidate",
    "EntityOrganization",
    "EpicSuggestion",
    "EvidenceSpan",
    "ExtractedDecision",
    "ExtractedEntity",
    "ExtractedInsight",
    "ExtractedRelationship",
    "ExtractedTask",
    "ExtractionResult",
    "FieldConfidence",
    "OrganizationResult",
    "ProjectSuggestion",
    "ReviewSuggestion",
    "suggestion_payload",
    "tool_input_schema",
]
