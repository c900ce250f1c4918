"""Unit tests for entity attribute and suggestion schemas."""

from __future__ import annotations

import pytest
from pydantic import ValidationError as PydanticValidationError

from pipeline.attributes import attributes_fit_type, clean_attributes, validate_attributes
from pipeline.errors import ValidationError
from pipeline.schemas import DuplicateCandidate, ExtractionResult, suggestion_payload


def test_validate_attributes_drops_nulls_and_keeps_unknown_keys() -> None:
    """Known keys are validated, nulls dropped, and extra keys preserved."""
    cleaned = validate_attributes(
        "task", {"priority": "high", "owner": None, "ticket": "API-12"}
    )

    assert cleaned == {"priority": "high", "ticket": "API-12"}


def test_validate_attributes_rejects_bad_known_value() -> None:
    """An out-of-range enum value on a known key is rejected."""
    with pytest.raises(ValidationError) as excinfo:
        validate_attributes("task", {"priority": "urgent"})

    assert excinfo.value.details["issues"]


def test_validate_attributes_rejects_unknown_type() -> None:
    """Unknown entity types are rejected."""
    with pytest.raises(ValidationError):
        validate_attributes("story", {})


def test_attributes_fit_type_checks_target_schema() -> None:
    """A bag valid for one type may not fit another."""
    attributes = {"options": "rewrite or patch"}

    assert attributes_fit_type("task", attributes) is True
    assert attributes_fit_type("decision", attributes) is False


def test_clean_attributes_handles_none() -> None:
    """A missing attribute bag cleans to an empty dict."""
    assert clean_attributes(None) == {}


def test_extraction_result_enforces_status_per_type() -> None:
    """Decision entities may not carry task statuses."""
    with pytest.raises(PydanticValidationError):
        ExtractionResult.model_validate(
            {
                "entities": [
                    {
                        "type": "decision",
                        "content": "Use Postgres",
                        "status": "captured",
                        "confidence": 0.9,
                        "evidence": [{"quote": "Use Postgres"}],
                    }
                ]
            }
        )


def test_duplicate_candidates_below_floor_are_rejected() -> None:
    """Similarity scores under the reporting floor fail validation."""
    with pytest.raises(PydanticValidationError):
        DuplicateCandidate.model_validate(
            {
                "entity_id": "0b6f1b3e-3f0c-4d5b-9c86-0d6f7a4a1e11",
                "similarity_score": 0.5,
                "reason": "weak",
            }
        )


def test_suggestion_payload_omits_unset_keys() -> None:
    """Suggestion payloads only carry populated keys, serialized to JSON types."""
    payload = suggestion_payload(
        suggested_project_id="0b6f1b3e-3f0c-4d5b-9c86-0d6f7a4a1e11",
        explanation=None,
    )

    assert payload == {"suggested_project_id": "0b6f1b3e-3f0c-4d5b-9c86-0d6f7a4a1e11"}
