"""Organization stage: place freshly extracted entities into projects and epics.

Context is read outside any transaction; the oracle's verdicts are then
applied in one transaction covering the whole batch. Every dimension (project,
epic, assignee, duplicates) is gated on confidence independently: confident
suggestions are written directly, the rest become pending review items. Ids
the oracle returns are only honored when they were part of the context it saw.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Sequence
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Entity, EntityTag, Epic, Project, RawNote, Tag, User
from pipeline import prompts
from pipeline.constants import (
    EVENT_ENTITY_UPDATED,
    EVENT_EPIC_CREATED,
    EVENT_PROJECT_CREATED,
    EVENT_PROJECT_STATS_UPDATED,
    EVENT_REVIEW_CREATED,
)
from pipeline.notifier import EventNotifier, NullNotifier, publish_safely
from pipeline.oracle import OracleClient, OracleRequest
from pipeline.policy import PipelinePolicy
from pipeline.repository import (
    CreatedReview,
    find_project_by_name,
    insert_relationship,
    insert_review_item,
    pending_creation_exists,
)
from pipeline.schemas import (
    EntityOrganization,
    EpicSuggestion,
    OrganizationResult,
    ProjectSuggestion,
    suggestion_payload,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrganizationContext:
    """Read-only snapshot handed to the organization oracle."""

    raw_note_id: UUID
    entity_ids: list[UUID]
    source: str
    source_meta: dict[str, Any] | None
    entities: list[dict[str, Any]]
    projects: list[dict[str, Any]]
    recent_entities: list[dict[str, Any]]
    users: list[dict[str, Any]]

    @property
    def project_ids(self) -> set[UUID]:
        return {UUID(project["id"]) for project in self.projects}

    @property
    def epic_ids(self) -> set[UUID]:
        return {UUID(epic["id"]) for project in self.projects for epic in project["epics"]}

    @property
    def user_ids(self) -> set[UUID]:
        return {UUID(user["id"]) for user in self.users}

    @property
    def known_entity_ids(self) -> set[UUID]:
        return {UUID(entity["id"]) for entity in self.recent_entities} | set(self.entity_ids)


@dataclass
class OrganizationOutcome:
    """Effects of one organization run, used for post-commit notifications."""

    raw_note_id: UUID
    skipped: bool = False
    updated_entity_ids: dict[UUID, None] = field(default_factory=dict)
    updated_project_ids: dict[UUID, None] = field(default_factory=dict)
    review_items: list[CreatedReview] = field(default_factory=list)
    created_projects: list[dict[str, Any]] = field(default_factory=list)
    created_epics: list[dict[str, Any]] = field(default_factory=list)

    def entity_updated(self, entity_id: UUID) -> None:
        self.updated_entity_ids.setdefault(entity_id, None)

    def project_touched(self, project_id: UUID | None) -> None:
        if project_id is not None:
            self.updated_project_ids.setdefault(project_id, None)

    def review_created(self, item: CreatedReview | None) -> None:
        if item is not None:
            self.review_items.append(item)


class OrganizationStage:
    """Assign, link, and suggest structure for one batch of entities."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        oracle: OracleClient,
        *,
        policy: PipelinePolicy,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._oracle = oracle
        self._policy = policy
        self._notifier = notifier or NullNotifier()

    def run(self, raw_note_id: UUID, entity_ids: Sequence[UUID]) -> OrganizationOutcome:
        """Organize the entities extracted from one note.

        Raises:
            SchemaViolation: If the oracle output stays invalid after its retry.
            OracleCallError: If the oracle is unreachable.
        """
        if not entity_ids:
            return OrganizationOutcome(raw_note_id=raw_note_id, skipped=True)

        context = self._load_context(raw_note_id, list(entity_ids))
        if not context.entities:
            logger.info("no live entities to organize")
            return OrganizationOutcome(raw_note_id=raw_note_id, skipped=True)

        try:
            result = self._oracle.request(
                OracleRequest(
                    tool_name=prompts.ORGANIZATION_TOOL_NAME,
                    tool_description=prompts.ORGANIZATION_TOOL_DESCRIPTION,
                    system_prompt=prompts.ORGANIZATION_SYSTEM_PROMPT,
                    user_message=prompts.build_organization_message(
                        entities=context.entities,
                        projects=context.projects,
                        recent_entities=context.recent_entities,
                        users=context.users,
                        source=context.source,
                        source_meta=context.source_meta,
                    ),
                    output_model=OrganizationResult,
                    prompt_version=prompts.ORGANIZATION_PROMPT_VERSION,
                )
            )
            outcome = self._apply(context, result.value)
        except Exception:
            logger.exception("entity organization failed", extra={"raw_note_id": str(raw_note_id)})
            raise

        self._publish(outcome)
        return outcome

    def _load_context(self, raw_note_id: UUID, entity_ids: list[UUID]) -> OrganizationContext:
        with closing(self._session_factory()) as session:
            note = session.get(RawNote, raw_note_id)
            rows = {
                entity.id: entity
                for entity in session.execute(
                    select(Entity)
                    .where(Entity.id.in_(entity_ids))
                    .where(Entity.deleted_at.is_(None))
                ).scalars()
            }
            recent = list(
                session.execute(
                    select(Entity)
                    .where(Entity.deleted_at.is_(None))
                    .where(Entity.id.not_in(entity_ids))
                    .order_by(Entity.created_at.desc(), Entity.id.desc())
                    .limit(self._policy.recent_entity_limit)
                ).scalars()
            )
            tags = _tags_by_entity(session, [*rows, *(entity.id for entity in recent)])

            entities = [
                {
                    "index": index,
                    "type": rows[entity_id].type,
                    "content": rows[entity_id].content,
                    "status": rows[entity_id].status,
                    "attributes": rows[entity_id].attributes or {},
                    "tags": tags.get(entity_id, []),
                }
                for index, entity_id in enumerate(entity_ids)
                if entity_id in rows
            ]
            return OrganizationContext(
                raw_note_id=raw_note_id,
                entity_ids=entity_ids,
                source=note.source if note is not None else "api",
                source_meta=note.source_meta if note is not None else None,
                entities=entities,
                projects=_active_projects(session),
                recent_entities=[
                    {
                        "id": str(entity.id),
                        "type": entity.type,
                        "content": entity.content,
                        "tags": tags.get(entity.id, []),
                        "project_id": str(entity.project_id) if entity.project_id else None,
                    }
                    for entity in recent
                ],
                users=[
                    {"id": str(user.id), "name": user.name, "email": user.email}
                    for user in session.execute(select(User).order_by(User.name)).scalars()
                ],
            )

    def _apply(
        self, context: OrganizationContext, result: OrganizationResult
    ) -> OrganizationOutcome:
        outcome = OrganizationOutcome(raw_note_id=context.raw_note_id)
        with closing(self._session_factory()) as session:
            try:
                for organization in result.entity_organizations:
                    self._apply_entity(session, context, organization, outcome)
                for suggestion in result.epic_suggestions:
                    self._apply_epic_suggestion(session, context, suggestion, outcome)
                for suggestion in result.project_suggestions:
                    self._apply_project_suggestion(session, context, suggestion, outcome)
                session.commit()
            except Exception:
                session.rollback()
                raise
        return outcome

    def _apply_entity(
        self,
        session: Session,
        context: OrganizationContext,
        org: EntityOrganization,
        outcome: OrganizationOutcome,
    ) -> None:
        if org.entity_index >= len(context.entity_ids):
            return
        entity_id = context.entity_ids[org.entity_index]
        entity = session.get(Entity, entity_id)
        if entity is None or entity.deleted_at is not None:
            return
        now = datetime.now(timezone.utc)

        project_id = org.project_id if org.project_id in context.project_ids else None
        if project_id is not None and self._policy.is_confident(org.project_confidence):
            if entity.project_id != project_id:
                outcome.project_touched(entity.project_id)
                outcome.project_touched(project_id)
                entity.project_id = project_id
                entity.updated_at = now
                outcome.entity_updated(entity_id)
        elif project_id is not None or org.project_confidence != 0:
            outcome.review_created(
                insert_review_item(
                    session,
                    review_type="project_assignment",
                    entity_id=entity_id,
                    project_id=project_id or entity.project_id,
                    ai_suggestion=suggestion_payload(
                        suggested_project_id=project_id, explanation=org.project_reason
                    ),
                    ai_confidence=org.project_confidence,
                )
            )

        epic_id = org.epic_id if org.epic_id in context.epic_ids else None
        if epic_id is not None and self._policy.is_confident(org.epic_confidence):
            if entity.epic_id != epic_id:
                entity.epic_id = epic_id
                entity.updated_at = now
                outcome.entity_updated(entity_id)
        elif epic_id is not None or org.epic_confidence != 0:
            outcome.review_created(
                insert_review_item(
                    session,
                    review_type="epic_assignment",
                    entity_id=entity_id,
                    project_id=entity.project_id or project_id,
                    ai_suggestion=suggestion_payload(
                        suggested_epic_id=epic_id, explanation=org.epic_reason
                    ),
                    ai_confidence=org.epic_confidence,
                )
            )

        if org.assignee_confidence is not None:
            assignee_id = org.assignee_id if org.assignee_id in context.user_ids else None
            if assignee_id is not None and self._policy.is_confident(org.assignee_confidence):
                if entity.assignee_id != assignee_id:
                    entity.assignee_id = assignee_id
                    entity.updated_at = now
                    outcome.entity_updated(entity_id)
            elif assignee_id is not None or org.assignee_confidence != 0:
                outcome.review_created(
                    insert_review_item(
                        session,
                        review_type="assignee_suggestion",
                        entity_id=entity_id,
                        project_id=entity.project_id or project_id,
                        ai_suggestion=suggestion_payload(
                            suggested_assignee_id=assignee_id,
                            explanation=org.assignee_reason,
                        ),
                        ai_confidence=org.assignee_confidence,
                    )
                )

        candidates = [
            candidate
            for candidate in org.duplicate_candidates
            if candidate.entity_id != entity_id and candidate.entity_id in context.known_entity_ids
        ]
        if candidates:
            best = max(candidates, key=lambda candidate: candidate.similarity_score)
            if self._policy.is_confident(best.similarity_score):
                insert_relationship(
                    session,
                    source_id=entity_id,
                    target_id=best.entity_id,
                    relationship_type="duplicate_of",
                    meta={
                        "created_by": "ai",
                        "reason": best.reason,
                        "confidence": best.similarity_score,
                    },
                )
                outcome.entity_updated(entity_id)
            else:
                outcome.review_created(
                    insert_review_item(
                        session,
                        review_type="duplicate_detection",
                        entity_id=entity_id,
                        project_id=entity.project_id or project_id,
                        ai_suggestion=suggestion_payload(
                            duplicate_candidates=[
                                candidate.model_dump(mode="json") for candidate in candidates
                            ],
                            duplicate_entity_id=best.entity_id,
                            similarity_score=best.similarity_score,
                            explanation=best.reason,
                        ),
                        ai_confidence=best.similarity_score,
                    )
                )

    def _candidate_ids(self, context: OrganizationContext, indices: Sequence[int]) -> list[UUID]:
        seen: dict[UUID, None] = {}
        for index in indices:
            if index < len(context.entity_ids):
                seen.setdefault(context.entity_ids[index], None)
        return list(seen)

    def _apply_epic_suggestion(
        self,
        session: Session,
        context: OrganizationContext,
        suggestion: EpicSuggestion,
        outcome: OrganizationOutcome,
    ) -> None:
        if suggestion.project_id not in context.project_ids:
            logger.warning("ignoring epic suggestion for unknown project")
            return
        candidates = self._candidate_ids(context, suggestion.entity_indices)
        confidence = (
            suggestion.confidence
            if suggestion.confidence is not None
            else self._policy.default_suggestion_confidence
        )

        if self._policy.is_confident(confidence) and candidates:
            epic = Epic(
                id=uuid4(),
                project_id=suggestion.project_id,
                name=suggestion.name,
                description=suggestion.description,
                created_by="ai_suggestion",
            )
            session.add(epic)
            session.flush()
            now = datetime.now(timezone.utc)
            for entity_id in candidates:
                entity = session.get(Entity, entity_id)
                if entity is None:
                    continue
                outcome.project_touched(entity.project_id)
                entity.epic_id = epic.id
                entity.project_id = suggestion.project_id
                entity.updated_at = now
                outcome.entity_updated(entity_id)
            outcome.project_touched(suggestion.project_id)
            outcome.created_epics.append(
                {"id": str(epic.id), "project_id": str(epic.project_id), "name": epic.name}
            )
            logger.info(
                "auto-created epic",
                extra={"epic_id": str(epic.id), "confidence": confidence},
            )
            return

        if pending_creation_exists(
            session,
            "epic_creation",
            "proposed_epic_name",
            suggestion.name,
            project_id=suggestion.project_id,
        ):
            return
        outcome.review_created(
            insert_review_item(
                session,
                review_type="epic_creation",
                project_id=suggestion.project_id,
                ai_suggestion=suggestion_payload(
                    proposed_epic_name=suggestion.name,
                    proposed_epic_description=suggestion.description,
                    proposed_epic_project_id=suggestion.project_id,
                    candidate_entity_ids=candidates,
                    explanation=suggestion.reason,
                ),
                ai_confidence=confidence,
            )
        )

    def _apply_project_suggestion(
        self,
        session: Session,
        context: OrganizationContext,
        suggestion: ProjectSuggestion,
        outcome: OrganizationOutcome,
    ) -> None:
        if find_project_by_name(session, suggestion.name) is not None:
            return
        candidates = self._candidate_ids(context, suggestion.entity_indices)
        confidence = (
            suggestion.confidence
            if suggestion.confidence is not None
            else self._policy.default_suggestion_confidence
        )

        if self._policy.is_confident(confidence) and candidates:
            project = Project(
                id=uuid4(),
                name=suggestion.name,
                description=suggestion.description,
                created_by="ai_suggestion",
            )
            session.add(project)
            session.flush()
            now = datetime.now(timezone.utc)
            for entity_id in candidates:
                entity = session.get(Entity, entity_id)
                if entity is None:
                    continue
                outcome.project_touched(entity.project_id)
                entity.project_id = project.id
                entity.updated_at = now
                outcome.entity_updated(entity_id)
            outcome.project_touched(project.id)
            outcome.created_projects.append({"id": str(project.id), "name": project.name})
            logger.info(
                "auto-created project",
                extra={"project_id": str(project.id), "confidence": confidence},
            )
            return

        if not candidates:
            return
        if pending_creation_exists(
            session, "project_creation", "proposed_project_name", suggestion.name
        ):
            return
        outcome.review_created(
            insert_review_item(
                session,
                review_type="project_creation",
                entity_id=candidates[0],
                ai_suggestion=suggestion_payload(
                    proposed_project_name=suggestion.name,
                    proposed_project_description=suggestion.description,
                    candidate_entity_ids=candidates,
                    explanation=suggestion.reason,
                ),
                ai_confidence=confidence,
            )
        )

    def _publish(self, outcome: OrganizationOutcome) -> None:
        note_id = str(outcome.raw_note_id)
        for entity_id in outcome.updated_entity_ids:
            publish_safely(
                self._notifier, EVENT_ENTITY_UPDATED, {"id": str(entity_id), "raw_note_id": note_id}
            )
        for item in outcome.review_items:
            publish_safely(self._notifier, EVENT_REVIEW_CREATED, item.to_event())
        for project_id in outcome.updated_project_ids:
            publish_safely(
                self._notifier, EVENT_PROJECT_STATS_UPDATED, {"project_id": str(project_id)}
            )
        for project in outcome.created_projects:
            publish_safely(self._notifier, EVENT_PROJECT_CREATED, project)
        for epic in outcome.created_epics:
            publish_safely(self._notifier, EVENT_EPIC_CREATED, epic)


def _tags_by_entity(session: Session, entity_ids: Sequence[UUID]) -> dict[UUID, list[str]]:
    if not entity_ids:
        return {}
    rows = session.execute(
        select(EntityTag.entity_id, Tag.name)
        .join(Tag, Tag.id == EntityTag.tag_id)
        .where(EntityTag.entity_id.in_(list(entity_ids)))
        .order_by(Tag.name)
    ).all()
    tags: dict[UUID, list[str]] = {}
    for entity_id, name in rows:
        tags.setdefault(entity_id, []).append(name)
    return tags


def _active_projects(session: Session) -> list[dict[str, Any]]:
    projects = list(
        session.execute(
            select(Project)
            .where(Project.status == "active")
            .where(Project.deleted_at.is_(None))
            .order_by(Project.updated_at.desc(), Project.created_at.desc())
        ).scalars()
    )
    if not projects:
        return []
    epics_by_project: dict[UUID, list[dict[str, Any]]] = {}
    for epic in session.execute(
        select(Epic)
        .where(Epic.project_id.in_([project.id for project in projects]))
        .where(Epic.deleted_at.is_(None))
        .order_by(Epic.updated_at.desc(), Epic.created_at.desc())
    ).scalars():
        epics_by_project.setdefault(epic.project_id, []).append(
            {"id": str(epic.id), "name": epic.name, "description": epic.description}
        )
    return [
        {
            "id": str(project.id),
            "name": project.name,
            "description": project.description,
            "epics": epics_by_project.get(project.id, []),
        }
        for project in projects
    ]


__all__ = ["OrganizationContext", "OrganizationOutcome", "OrganizationStage"]
