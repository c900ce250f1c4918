"""Unit tests for the organization stage."""

from __future__ import annotations

from contextlib import closing
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy import func, select

from models import Entity, EntityRelationship, Epic, Project, ReviewQueueItem
from pipeline.constants import (
    EVENT_ENTITY_UPDATED,
    EVENT_EPIC_CREATED,
    EVENT_PROJECT_CREATED,
    EVENT_PROJECT_STATS_UPDATED,
)
from pipeline.oracle import OracleClient
from pipeline.organization import OrganizationStage
from pipeline.policy import PipelinePolicy
from test.helpers.factories import make_entity, make_epic, make_note, make_project, make_user
from test.helpers.pipeline_stubs import RecordingNotifier, StubLLMClient, tool_reply


def _organization(index: int = 0, **overrides: Any) -> dict[str, Any]:
    organization = {
        "entity_index": index,
        "project_id": None,
        "project_confidence": 0.0,
        "project_reason": "no matching project",
        "epic_id": None,
        "epic_confidence": 0.0,
        "epic_reason": "no matching epic",
        "duplicate_candidates": [],
        "assignee_id": None,
        "assignee_confidence": None,
        "assignee_reason": None,
    }
    organization.update(
        {key: str(value) if isinstance(value, UUID) else value for key, value in overrides.items()}
    )
    return organization


def _reply(organizations=(), epics=(), projects=()):
    return tool_reply(
        {
            "entity_organizations": list(organizations),
            "epic_suggestions": list(epics),
            "project_suggestions": list(projects),
        },
        tool_name="organize_entities",
    )


def _run(session_factory, policy, reply, entity_ids, notifier=None):
    note_id = make_note(session_factory, processed=True)
    llm = StubLLMClient(*(reply if isinstance(reply, list) else [reply]))
    stage = OrganizationStage(
        session_factory, OracleClient(llm), policy=policy, notifier=notifier
    )
    return stage.run(note_id, entity_ids), llm


def _entity(session_factory, entity_id) -> Entity:
    with closing(session_factory()) as session:
        return session.get(Entity, entity_id)


def _reviews(session_factory, review_type: str | None = None) -> list[ReviewQueueItem]:
    with closing(session_factory()) as session:
        stmt = select(ReviewQueueItem)
        if review_type is not None:
            stmt = stmt.where(ReviewQueueItem.review_type == review_type)
        return list(session.execute(stmt).scalars())


def test_confident_project_is_applied_directly(sqlite_session_factory, policy) -> None:
    """A confident, known project id is written without a review item."""
    project_id = make_project(sqlite_session_factory)
    entity_id = make_entity(sqlite_session_factory)
    notifier = RecordingNotifier()

    outcome, llm = _run(
        sqlite_session_factory,
        policy,
        _reply([_organization(project_id=project_id, project_confidence=0.95)]),
        [entity_id],
        notifier,
    )

    assert _entity(sqlite_session_factory, entity_id).project_id == project_id
    assert _reviews(sqlite_session_factory) == []
    assert list(outcome.updated_entity_ids) == [entity_id]
    assert notifier.of_type(EVENT_ENTITY_UPDATED)[0]["id"] == str(entity_id)
    assert notifier.of_type(EVENT_PROJECT_STATS_UPDATED) == [{"project_id": str(project_id)}]
    assert "Platform API" in llm.calls[0]["messages"][-1]["content"]


def test_uncertain_project_becomes_review_item(sqlite_session_factory, policy) -> None:
    """Below the threshold the suggestion is queued, never applied."""
    project_id = make_project(sqlite_session_factory)
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply([_organization(project_id=project_id, project_confidence=0.7)]),
        [entity_id],
    )

    assert _entity(sqlite_session_factory, entity_id).project_id is None
    [item] = _reviews(sqlite_session_factory, "project_assignment")
    assert item.entity_id == entity_id
    assert item.project_id == project_id
    assert item.ai_suggestion["suggested_project_id"] == str(project_id)
    assert item.ai_confidence == pytest.approx(0.7)


def test_zero_confidence_null_project_is_suppressed(sqlite_session_factory, policy) -> None:
    """A null project at exactly zero confidence creates nothing."""
    entity_id = make_entity(sqlite_session_factory)

    _run(sqlite_session_factory, policy, _reply([_organization()]), [entity_id])

    assert _entity(sqlite_session_factory, entity_id).project_id is None
    assert _reviews(sqlite_session_factory) == []


def test_null_project_with_confidence_is_queued(sqlite_session_factory, policy) -> None:
    """A null project with nonzero confidence is still review-worthy."""
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply([_organization(project_confidence=0.3)]),
        [entity_id],
    )

    [item] = _reviews(sqlite_session_factory, "project_assignment")
    assert "suggested_project_id" not in item.ai_suggestion
    assert item.ai_suggestion["explanation"] == "no matching project"


def test_unknown_project_id_is_treated_as_null(sqlite_session_factory, policy) -> None:
    """Ids outside the supplied context are never written."""
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply([_organization(project_id=uuid4(), project_confidence=0.97)]),
        [entity_id],
    )

    assert _entity(sqlite_session_factory, entity_id).project_id is None
    [item] = _reviews(sqlite_session_factory, "project_assignment")
    assert "suggested_project_id" not in item.ai_suggestion


def test_confident_epic_and_assignee_are_applied(sqlite_session_factory, policy) -> None:
    """Epic and assignee follow the same confidence gate as projects."""
    project_id = make_project(sqlite_session_factory)
    epic_id = make_epic(sqlite_session_factory, project_id)
    user_id = make_user(sqlite_session_factory)
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [
                _organization(
                    project_id=project_id,
                    project_confidence=0.95,
                    epic_id=epic_id,
                    epic_confidence=0.92,
                    assignee_id=user_id,
                    assignee_confidence=0.91,
                    assignee_reason="named as owner",
                )
            ]
        ),
        [entity_id],
    )

    entity = _entity(sqlite_session_factory, entity_id)
    assert entity.epic_id == epic_id
    assert entity.assignee_id == user_id
    assert _reviews(sqlite_session_factory) == []


def test_absent_assignee_verdict_is_ignored(sqlite_session_factory, policy) -> None:
    """Without an assignee confidence no assignee review is created."""
    entity_id = make_entity(sqlite_session_factory)

    _run(sqlite_session_factory, policy, _reply([_organization()]), [entity_id])

    assert _reviews(sqlite_session_factory, "assignee_suggestion") == []


def test_uncertain_assignee_is_queued(sqlite_session_factory, policy) -> None:
    """A low-confidence assignee becomes an assignee_suggestion item."""
    user_id = make_user(sqlite_session_factory)
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [
                _organization(
                    assignee_id=user_id, assignee_confidence=0.5, assignee_reason="maybe"
                )
            ]
        ),
        [entity_id],
    )

    [item] = _reviews(sqlite_session_factory, "assignee_suggestion")
    assert item.ai_suggestion["suggested_assignee_id"] == str(user_id)


def test_confident_duplicate_creates_single_edge(sqlite_session_factory, policy) -> None:
    """A confident duplicate links the entities once, even when re-run."""
    existing_id = make_entity(sqlite_session_factory, content="Rate limit the public API")
    entity_id = make_entity(sqlite_session_factory)
    duplicate = {
        "entity_id": str(existing_id),
        "similarity_score": 0.95,
        "reason": "same request",
    }
    reply = _reply([_organization(duplicate_candidates=[duplicate])])

    _run(sqlite_session_factory, policy, reply, [entity_id])
    _run(sqlite_session_factory, policy, reply, [entity_id])

    with closing(sqlite_session_factory()) as session:
        edges = session.execute(select(EntityRelationship)).scalars().all()
    assert len(edges) == 1
    assert edges[0].source_id == entity_id
    assert edges[0].target_id == existing_id
    assert edges[0].relationship_type == "duplicate_of"
    assert edges[0].meta["created_by"] == "ai"
    assert _reviews(sqlite_session_factory, "duplicate_detection") == []


def test_uncertain_duplicate_becomes_review_item(sqlite_session_factory, policy) -> None:
    """Below the threshold the best candidate is queued for review."""
    first = make_entity(sqlite_session_factory, content="Throttle API clients")
    second = make_entity(sqlite_session_factory, content="API quotas")
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [
                _organization(
                    duplicate_candidates=[
                        {"entity_id": str(first), "similarity_score": 0.75, "reason": "close"},
                        {"entity_id": str(second), "similarity_score": 0.85, "reason": "closer"},
                        {"entity_id": str(uuid4()), "similarity_score": 0.99, "reason": "ghost"},
                    ]
                )
            ]
        ),
        [entity_id],
    )

    [item] = _reviews(sqlite_session_factory, "duplicate_detection")
    assert item.ai_suggestion["duplicate_entity_id"] == str(second)
    assert item.ai_suggestion["similarity_score"] == pytest.approx(0.85)
    assert len(item.ai_suggestion["duplicate_candidates"]) == 2
    with closing(sqlite_session_factory()) as session:
        assert session.execute(select(func.count(EntityRelationship.id))).scalar_one() == 0


def test_confident_epic_suggestion_creates_epic(sqlite_session_factory, policy) -> None:
    """A confident epic suggestion with candidates is created and assigned."""
    project_id = make_project(sqlite_session_factory)
    first = make_entity(sqlite_session_factory)
    second = make_entity(sqlite_session_factory, content="Document rate limits")
    notifier = RecordingNotifier()

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [_organization(0), _organization(1)],
            epics=[
                {
                    "name": "Rate limiting",
                    "description": "Protect the API",
                    "project_id": str(project_id),
                    "entity_indices": [0, 1],
                    "confidence": 0.93,
                    "reason": "both about limits",
                }
            ],
        ),
        [first, second],
        notifier,
    )

    with closing(sqlite_session_factory()) as session:
        epic = session.execute(select(Epic)).scalar_one()
    assert epic.created_by == "ai_suggestion"
    for entity_id in (first, second):
        entity = _entity(sqlite_session_factory, entity_id)
        assert entity.epic_id == epic.id
        assert entity.project_id == project_id
    assert notifier.of_type(EVENT_EPIC_CREATED)[0]["name"] == "Rate limiting"


def test_epic_suggestion_defaults_to_review(sqlite_session_factory, policy) -> None:
    """Without a confidence the default 0.85 falls below 0.9 and is queued once."""
    project_id = make_project(sqlite_session_factory)
    entity_id = make_entity(sqlite_session_factory)
    epic = {
        "name": "Rate limiting",
        "description": None,
        "project_id": str(project_id),
        "entity_indices": [0],
        "reason": "groups limit work",
    }
    reply = _reply([_organization()], epics=[epic])

    _run(sqlite_session_factory, policy, reply, [entity_id])
    _run(sqlite_session_factory, policy, reply, [entity_id])

    [item] = _reviews(sqlite_session_factory, "epic_creation")
    assert item.entity_id is None
    assert item.project_id == project_id
    assert item.ai_confidence == pytest.approx(0.85)
    assert item.ai_suggestion["proposed_epic_name"] == "Rate limiting"
    assert item.ai_suggestion["candidate_entity_ids"] == [str(entity_id)]
    with closing(sqlite_session_factory()) as session:
        assert session.execute(select(func.count(Epic.id))).scalar_one() == 0


def test_epic_suggestion_for_unknown_project_is_skipped(sqlite_session_factory, policy) -> None:
    """Epic suggestions must name a project from the context."""
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [_organization()],
            epics=[
                {
                    "name": "Ghost epic",
                    "description": None,
                    "project_id": str(uuid4()),
                    "entity_indices": [0],
                    "confidence": 0.99,
                    "reason": "made up",
                }
            ],
        ),
        [entity_id],
    )

    assert _reviews(sqlite_session_factory) == []


def _project_suggestion(name: str, indices: list[int], **extra: Any) -> dict[str, Any]:
    suggestion = {
        "name": name,
        "description": None,
        "entity_indices": indices,
        "reason": "api work",
    }
    suggestion.update(extra)
    return suggestion


def _epic_suggestion(name: str, project_id: UUID, indices: list[int]) -> dict[str, Any]:
    return {
        "name": name,
        "description": None,
        "project_id": str(project_id),
        "entity_indices": indices,
        "confidence": 0.6,
        "reason": "groups limit work",
    }


def test_pending_project_creation_is_not_proposed_twice(sqlite_session_factory, policy) -> None:
    """A second note proposing the same project name, in any case, adds no item."""
    first = make_entity(sqlite_session_factory)
    second = make_entity(sqlite_session_factory, content="Version the public API")

    _run(
        sqlite_session_factory,
        policy,
        _reply([_organization()], projects=[_project_suggestion("Platform API", [0])]),
        [first],
    )
    _run(
        sqlite_session_factory,
        policy,
        _reply([_organization()], projects=[_project_suggestion("platform api ", [0])]),
        [second],
    )

    [item] = _reviews(sqlite_session_factory, "project_creation")
    assert item.entity_id == first
    assert item.ai_suggestion["proposed_project_name"] == "Platform API"
    with closing(sqlite_session_factory()) as session:
        assert session.execute(select(func.count(Project.id))).scalar_one() == 0


def test_pending_epic_creation_is_scoped_to_its_project(sqlite_session_factory, policy) -> None:
    """Same-name epic proposals collapse per project, ignoring case."""
    platform = make_project(sqlite_session_factory)
    billing = make_project(sqlite_session_factory, name="Billing")
    entity_id = make_entity(sqlite_session_factory)

    for name, project_id in (
        ("Rate limiting", platform),
        ("RATE LIMITING", platform),
        ("Rate limiting", billing),
    ):
        _run(
            sqlite_session_factory,
            policy,
            _reply([_organization()], epics=[_epic_suggestion(name, project_id, [0])]),
            [entity_id],
        )

    items = _reviews(sqlite_session_factory, "epic_creation")
    assert sorted(item.project_id for item in items) == sorted([platform, billing])
    platform_item = next(item for item in items if item.project_id == platform)
    assert platform_item.ai_suggestion["proposed_epic_name"] == "Rate limiting"


@pytest.mark.parametrize("confidence", [0.95, 0.5])
def test_project_suggestion_without_entities_is_ignored(
    sqlite_session_factory, policy, confidence
) -> None:
    """A project with no candidate entities is neither created nor queued."""
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [_organization()],
            projects=[_project_suggestion("Platform API", [], confidence=confidence)],
        ),
        [entity_id],
    )

    with closing(sqlite_session_factory()) as session:
        assert session.execute(select(func.count(Project.id))).scalar_one() == 0
    assert _reviews(sqlite_session_factory) == []
    assert _entity(sqlite_session_factory, entity_id).project_id is None


def test_project_suggestion_matching_existing_name_is_dropped(
    sqlite_session_factory, policy
) -> None:
    """A case-insensitive name collision creates neither project nor review item."""
    make_project(sqlite_session_factory, name="platform api")
    entity_id = make_entity(sqlite_session_factory)

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [_organization()],
            projects=[
                {
                    "name": "Platform API",
                    "description": None,
                    "entity_indices": [0],
                    "confidence": 0.5,
                    "reason": "api work",
                }
            ],
        ),
        [entity_id],
    )

    with closing(sqlite_session_factory()) as session:
        assert session.execute(select(func.count(Project.id))).scalar_one() == 1
    assert _reviews(sqlite_session_factory) == []


def test_uncertain_project_suggestion_is_anchored_on_first_candidate(
    sqlite_session_factory, policy
) -> None:
    """Project creation items hang off the first candidate entity."""
    first = make_entity(sqlite_session_factory)
    second = make_entity(sqlite_session_factory, content="Document limits")

    _run(
        sqlite_session_factory,
        policy,
        _reply(
            [_organization(0), _organization(1)],
            projects=[
                {
                    "name": "Platform API",
                    "description": "Public API",
                    "entity_indices": [1, 0],
                    "reason": "api work",
                }
            ],
        ),
        [first, second],
    )

    [item] = _reviews(sqlite_session_factory, "project_creation")
    assert item.entity_id == second
    assert item.ai_suggestion["candidate_entity_ids"] == [str(second), str(first)]


def test_lower_threshold_auto_creates_project(sqlite_session_factory) -> None:
    """The threshold comes from the policy passed to the stage."""
    entity_id = make_entity(sqlite_session_factory)
    notifier = RecordingNotifier()

    _run(
        sqlite_session_factory,
        PipelinePolicy(confidence_threshold=0.8),
        _reply(
            [_organization()],
            projects=[
                {
                    "name": "Platform API",
                    "description": None,
                    "entity_indices": [0],
                    "reason": "api work",
                }
            ],
        ),
        [entity_id],
        notifier,
    )

    with closing(sqlite_session_factory()) as session:
        project = session.execute(select(Project)).scalar_one()
    assert project.created_by == "ai_suggestion"
    assert _entity(sqlite_session_factory, entity_id).project_id == project.id
    assert notifier.of_type(EVENT_PROJECT_CREATED) == [
        {"id": str(project.id), "name": "Platform API"}
    ]


def test_failure_rolls_back_the_whole_batch(
    sqlite_session_factory, policy, monkeypatch
) -> None:
    """An error on the second entity undoes the first entity's changes."""
    project_id = make_project(sqlite_session_factory)
    existing_id = make_entity(sqlite_session_factory, content="Old entity")
    first = make_entity(sqlite_session_factory)
    second = make_entity(sqlite_session_factory, content="Second")
    notifier = RecordingNotifier()

    def _boom(*args, **kwargs):
        raise RuntimeError("edge insert failed")

    monkeypatch.setattr("pipeline.organization.insert_relationship", _boom)

    with pytest.raises(RuntimeError):
        _run(
            sqlite_session_factory,
            policy,
            _reply(
                [
                    _organization(0, project_id=project_id, project_confidence=0.95),
                    _organization(
                        1,
                        duplicate_candidates=[
                            {
                                "entity_id": str(existing_id),
                                "similarity_score": 0.97,
                                "reason": "same",
                            }
                        ],
                    ),
                ]
            ),
            [first, second],
            notifier,
        )

    assert _entity(sqlite_session_factory, first).project_id is None
    assert notifier.events == []


def test_empty_batch_is_a_no_op(sqlite_session_factory, policy) -> None:
    """No entity ids means no oracle call."""
    outcome, llm = _run(sqlite_session_factory, policy, [], [])

    assert outcome.skipped is True
    assert llm.calls == []
