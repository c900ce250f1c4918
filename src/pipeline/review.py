"""Human resolution of pending review queue items.

Resolving an item moves it from ``pending`` to a terminal status and applies
the confirmed change to the entity, project, or epic it concerns. Each item is
resolved inside one transaction; a batch shares one transaction and is
all-or-nothing. Notifications are published only after the commit.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Sequence
from uuid import UUID, uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from models import Entity, Epic, Project, ReviewQueueItem, User
from pipeline.attributes import attributes_fit_type
from pipeline.constants import (
    ACCEPTED,
    DEFAULT_STATUS_BY_TYPE,
    EVENT_ENTITY_UPDATED,
    EVENT_EPIC_CREATED,
    EVENT_PROJECT_CREATED,
    EVENT_PROJECT_STATS_UPDATED,
    EVENT_REVIEW_CREATED,
    EVENT_REVIEW_RESOLVED,
    MODIFIED,
    PENDING,
    REJECTED,
)
from pipeline.errors import Conflict, NotFound, ValidationError
from pipeline.notifier import EventNotifier, NullNotifier, publish_safely
from pipeline.repository import (
    CreatedReview,
    append_event,
    find_project_by_name,
    insert_relationship,
    insert_review_item,
)
from pipeline.schemas import ReviewSuggestion, suggestion_payload

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = (ACCEPTED, REJECTED, MODIFIED)
TYPE_CHANGE_REJECTION = "Auto-rejected due to entity type change"


@dataclass(frozen=True)
class ResolutionRequest:
    """One requested resolution."""

    review_id: UUID
    status: str
    user_resolution: Mapping[str, Any] | None = None
    training_comment: str | None = None


@dataclass
class ResolveEffects:
    """Side effects of one resolution, for notification without re-querying."""

    updated_entity_ids: list[UUID] = field(default_factory=list)
    created_epic_id: UUID | None = None
    created_project_id: UUID | None = None
    created_relationship_id: UUID | None = None
    auto_resolved_review_ids: list[UUID] = field(default_factory=list)
    created_reviews: list[CreatedReview] = field(default_factory=list)
    touched_project_ids: list[UUID] = field(default_factory=list)

    @property
    def created_review_ids(self) -> list[UUID]:
        return [review.id for review in self.created_reviews]

    def entity_updated(self, entity_id: UUID) -> None:
        if entity_id not in self.updated_entity_ids:
            self.updated_entity_ids.append(entity_id)

    def project_touched(self, project_id: UUID | None) -> None:
        if project_id is not None and project_id not in self.touched_project_ids:
            self.touched_project_ids.append(project_id)


@dataclass(frozen=True)
class ResolutionResult:
    """Resolved review item plus the effects its resolution applied."""

    item: ReviewQueueItem
    effects: ResolveEffects
    created_epic: Mapping[str, Any] | None = None
    created_project: Mapping[str, Any] | None = None


@dataclass
class _Resolution:
    """Working state for one item while its transaction is open."""

    item: ReviewQueueItem
    status: str
    suggestion: ReviewSuggestion | None
    resolved_by: UUID
    now: datetime
    effects: ResolveEffects = field(default_factory=ResolveEffects)
    created_epic: dict[str, Any] | None = None
    created_project: dict[str, Any] | None = None

    @property
    def rejected(self) -> bool:
        return self.status == REJECTED


def _parse_suggestion(payload: Mapping[str, Any] | None, *, source: str) -> ReviewSuggestion:
    try:
        return ReviewSuggestion.model_validate(dict(payload or {}))
    except PydanticValidationError as exc:
        raise ValidationError(
            f"{source} is malformed",
            details={"issues": exc.errors(include_url=False, include_context=False)},
        ) from exc


class ReviewResolver:
    """Apply human decisions to review queue items."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._notifier = notifier or NullNotifier()
        self._handlers: dict[str, Callable[[Session, _Resolution], None]] = {
            "type_classification": self._apply_type_classification,
            "project_assignment": self._apply_project_assignment,
            "epic_assignment": self._apply_epic_assignment,
            "assignee_suggestion": self._apply_assignee_suggestion,
            "duplicate_detection": self._apply_duplicate_detection,
            "epic_creation": self._apply_epic_creation,
            "project_creation": self._apply_project_creation,
            "low_confidence": self._apply_low_confidence,
        }

    def resolve(
        self,
        review_id: UUID,
        status: str,
        *,
        resolved_by: UUID,
        user_resolution: Mapping[str, Any] | None = None,
        training_comment: str | None = None,
    ) -> ResolutionResult:
        """Resolve one pending review item.

        Raises:
            NotFound: If the item does not exist.
            Conflict: If the item is no longer pending.
            ValidationError: If the status or resolution payload is malformed.
        """
        results = self.resolve_batch(
            [
                ResolutionRequest(
                    review_id=review_id,
                    status=status,
                    user_resolution=user_resolution,
                    training_comment=training_comment,
                )
            ],
            resolved_by=resolved_by,
        )
        return results[0]

    def resolve_batch(
        self, requests: Sequence[ResolutionRequest], *, resolved_by: UUID
    ) -> list[ResolutionResult]:
        """Resolve several items in one transaction; any failure aborts them all."""
        results: list[ResolutionResult] = []
        with closing(self._session_factory()) as session:
            try:
                for request in requests:
                    results.append(self._resolve_in_session(session, request, resolved_by))
                session.commit()
            except Exception:
                session.rollback()
                raise

        for result in results:
            self._publish(result)
        return results

    def _resolve_in_session(
        self, session: Session, request: ResolutionRequest, resolved_by: UUID
    ) -> ResolutionResult:
        if request.status not in TERMINAL_STATUSES:
            raise ValidationError(
                f"invalid resolution status: {request.status}",
                details={"allowed": list(TERMINAL_STATUSES)},
            )
        if request.status == MODIFIED and request.user_resolution is None:
            raise ValidationError("a modified resolution requires a user_resolution")

        item = session.get(ReviewQueueItem, request.review_id)
        if item is None:
            raise NotFound(
                f"review item {request.review_id} not found",
                details={"review_id": str(request.review_id)},
            )
        if item.status != PENDING:
            raise Conflict(
                "review item is no longer pending",
                details={"review_id": str(item.id), "status": item.status},
            )

        if request.status == ACCEPTED:
            suggestion = _parse_suggestion(item.ai_suggestion, source="stored ai_suggestion")
        elif request.status == MODIFIED:
            suggestion = _parse_suggestion(request.user_resolution, source="user_resolution")
        else:
            suggestion = None

        resolution = _Resolution(
            item=item,
            status=request.status,
            suggestion=suggestion,
            resolved_by=resolved_by,
            now=datetime.now(timezone.utc),
        )
        self._handlers[item.review_type](session, resolution)

        user_payload = (
            suggestion.model_dump(mode="json", exclude_none=True)
            if request.status == MODIFIED and suggestion is not None
            else None
        )
        updated = session.execute(
            update(ReviewQueueItem)
            .where(ReviewQueueItem.id == item.id)
            .where(ReviewQueueItem.status == PENDING)
            .values(
                status=request.status,
                resolved_by=resolved_by,
                resolved_at=resolution.now,
                user_resolution=user_payload,
                training_comment=request.training_comment,
                updated_at=resolution.now,
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if not updated:
            raise Conflict("review item is no longer pending", details={"review_id": str(item.id)})
        session.flush()
        session.refresh(item)

        logger.info(
            "review item resolved",
            extra={
                "review_id": str(item.id),
                "review_type": item.review_type,
                "status": item.status,
            },
        )
        return ResolutionResult(
            item=item,
            effects=resolution.effects,
            created_epic=resolution.created_epic,
            created_project=resolution.created_project,
        )

    def _entity(self, session: Session, resolution: _Resolution) -> Entity:
        item = resolution.item
        if item.entity_id is None:
            raise ValidationError(f"{item.review_type} review item has no entity")
        entity = session.get(Entity, item.entity_id)
        if entity is None:
            raise NotFound(
                f"entity {item.entity_id} not found", details={"entity_id": str(item.entity_id)}
            )
        return entity

    def _audit(
        self,
        session: Session,
        resolution: _Resolution,
        entity_id: UUID,
        body: str,
        meta: Mapping[str, Any] | None = None,
    ) -> None:
        append_event(
            session,
            entity_id,
            body,
            actor_user_id=resolution.resolved_by,
            meta={
                "review_id": str(resolution.item.id),
                "review_type": resolution.item.review_type,
                "resolution_status": resolution.status,
                **dict(meta or {}),
            },
        )

    def _apply_type_classification(self, session: Session, resolution: _Resolution) -> None:
        entity = self._entity(session, resolution)
        if resolution.rejected:
            return
        new_type = resolution.suggestion.suggested_type
        if new_type is None:
            raise ValidationError("type_classification resolution requires suggested_type")
        if entity.type == new_type:
            return

        old_type, old_status = entity.type, entity.status
        new_status = DEFAULT_STATUS_BY_TYPE[new_type]
        if not attributes_fit_type(new_type, entity.attributes):
            entity.attributes = {}
        entity.type = new_type
        entity.status = new_status
        entity.updated_at = resolution.now
        resolution.effects.entity_updated(entity.id)
        self._audit(
            session,
            resolution,
            entity.id,
            f"Type set to '{new_type}' (status normalized to '{new_status}')",
            {
                "old_type": old_type,
                "old_status": old_status,
                "new_type": new_type,
                "new_status": new_status,
            },
        )

        stale_ids = list(
            session.execute(
                select(ReviewQueueItem.id)
                .where(ReviewQueueItem.entity_id == entity.id)
                .where(ReviewQueueItem.status == PENDING)
                .where(ReviewQueueItem.id != resolution.item.id)
            ).scalars()
        )
        if not stale_ids:
            return
        session.execute(
            update(ReviewQueueItem)
            .where(ReviewQueueItem.id.in_(stale_ids))
            .where(ReviewQueueItem.status == PENDING)
            .values(
                status=REJECTED,
                resolved_by=resolution.resolved_by,
                resolved_at=resolution.now,
                user_resolution={"explanation": TYPE_CHANGE_REJECTION},
                updated_at=resolution.now,
            )
            .execution_options(synchronize_session=False)
        )
        for stale in session.execute(
            select(ReviewQueueItem).where(ReviewQueueItem.id.in_(stale_ids))
        ).scalars():
            session.refresh(stale)
        resolution.effects.auto_resolved_review_ids.extend(stale_ids)

    def _apply_project_assignment(self, session: Session, resolution: _Resolution) -> None:
        entity = self._entity(session, resolution)
        project_id = None if resolution.rejected else resolution.suggestion.suggested_project_id
        if project_id is not None and session.get(Project, project_id) is None:
            raise NotFound(f"project {project_id} not found", details={"project_id": str(project_id)})
        resolution.effects.project_touched(entity.project_id)
        resolution.effects.project_touched(project_id)
        entity.project_id = project_id
        entity.updated_at = resolution.now
        resolution.effects.entity_updated(entity.id)
        self._audit(
            session,
            resolution,
            entity.id,
            "Project assigned" if project_id else "Project cleared",
            {"project_id": str(project_id) if project_id else None},
        )

    def _apply_epic_assignment(self, session: Session, resolution: _Resolution) -> None:
        entity = self._entity(session, resolution)
        epic_id = None if resolution.rejected else resolution.suggestion.suggested_epic_id
        if epic_id is not None and session.get(Epic, epic_id) is None:
            raise NotFound(f"epic {epic_id} not found", details={"epic_id": str(epic_id)})
        entity.epic_id = epic_id
        entity.updated_at = resolution.now
        resolution.effects.entity_updated(entity.id)
        self._audit(
            session,
            resolution,
            entity.id,
            "Epic assigned" if epic_id else "Epic cleared",
            {"epic_id": str(epic_id) if epic_id else None},
        )

    def _apply_assignee_suggestion(self, session: Session, resolution: _Resolution) -> None:
        entity = self._entity(session, resolution)
        assignee_id = None
        if not resolution.rejected:
            assignee_id = self._resolve_assignee(session, resolution.suggestion)
        entity.assignee_id = assignee_id
        entity.updated_at = resolution.now
        resolution.effects.entity_updated(entity.id)
        self._audit(
            session,
            resolution,
            entity.id,
            "Assignee set" if assignee_id else "Assignee cleared",
            {"assignee_id": str(assignee_id) if assignee_id else None},
        )

    def _resolve_assignee(self, session: Session, suggestion: ReviewSuggestion) -> UUID | None:
        """Map a suggested assignee id or name to a known user id."""
        if suggestion.suggested_assignee_id is not None:
            if session.get(User, suggestion.suggested_assignee_id) is None:
                raise NotFound(
                    f"user {suggestion.suggested_assignee_id} not found",
                    details={"user_id": str(suggestion.suggested_assignee_id)},
                )
            return suggestion.suggested_assignee_id
        name = (suggestion.suggested_assignee_name or "").strip().lower()
        if not name:
            return None
        user_id = session.execute(
            select(User.id)
            .where(or_(func.lower(User.name) == name, func.lower(User.email) == name))
            .order_by(User.created_at)
            .limit(1)
        ).scalar_one_or_none()
        if user_id is None:
            raise ValidationError(
                "suggested assignee does not match a known user",
                details={"suggested_assignee_name": suggestion.suggested_assignee_name},
            )
        return user_id

    def _apply_duplicate_detection(self, session: Session, resolution: _Resolution) -> None:
        entity = self._entity(session, resolution)
        if resolution.rejected:
            return
        duplicate_id = resolution.suggestion.duplicate_entity_id
        if duplicate_id is None:
            raise ValidationError("duplicate_detection resolution requires duplicate_entity_id")
        if duplicate_id == entity.id:
            raise ValidationError("an entity cannot duplicate itself")
        if session.get(Entity, duplicate_id) is None:
            raise NotFound(f"entity {duplicate_id} not found", details={"entity_id": str(duplicate_id)})

        resolution.effects.created_relationship_id = insert_relationship(
            session,
            source_id=entity.id,
            target_id=duplicate_id,
            relationship_type="duplicate_of",
            meta={
                "created_by": "user",
                "reason": resolution.suggestion.explanation,
                "confidence": resolution.suggestion.similarity_score,
            },
        )
        resolution.effects.entity_updated(entity.id)
        self._audit(
            session,
            resolution,
            entity.id,
            f"Marked as duplicate of {duplicate_id}",
            {
                "duplicate_entity_id": str(duplicate_id),
                "similarity_score": resolution.suggestion.similarity_score,
            },
        )

    def _apply_epic_creation(self, session: Session, resolution: _Resolution) -> None:
        item = resolution.item
        if item.project_id is None:
            raise ValidationError("epic_creation review item has no project")
        if resolution.rejected:
            return
        suggestion = resolution.suggestion
        name = (suggestion.proposed_epic_name or "").strip()
        if not name:
            raise ValidationError("epic_creation resolution requires proposed_epic_name")
        project_id = suggestion.proposed_epic_project_id or item.project_id
        if session.get(Project, project_id) is None:
            raise NotFound(f"project {project_id} not found", details={"project_id": str(project_id)})

        epic = Epic(
            id=uuid4(),
            project_id=project_id,
            name=name,
            description=suggestion.proposed_epic_description,
            created_by="ai_suggestion",
        )
        session.add(epic)
        session.flush()
        resolution.effects.created_epic_id = epic.id
        resolution.effects.project_touched(project_id)
        resolution.created_epic = {
            "id": str(epic.id),
            "project_id": str(project_id),
            "name": name,
        }
        self._create_follow_ups(
            session,
            resolution,
            review_type="epic_assignment",
            project_id=project_id,
            payload=suggestion_payload(
                suggested_epic_id=epic.id,
                explanation=f"Assign to newly created epic '{name}'",
            ),
        )

    def _apply_project_creation(self, session: Session, resolution: _Resolution) -> None:
        if resolution.rejected:
            return
        suggestion = resolution.suggestion
        name = (suggestion.proposed_project_name or "").strip()
        if not name:
            raise ValidationError("project_creation resolution requires proposed_project_name")
        existing = find_project_by_name(session, name)
        if existing is not None:
            raise Conflict(
                f"a project named {name!r} already exists",
                details={"project_id": str(existing.id)},
            )

        project = Project(
            id=uuid4(),
            name=name,
            description=suggestion.proposed_project_description,
            created_by="ai_suggestion",
        )
        session.add(project)
        session.flush()
        resolution.effects.created_project_id = project.id
        resolution.created_project = {"id": str(project.id), "name": name}
        self._create_follow_ups(
            session,
            resolution,
            review_type="project_assignment",
            project_id=project.id,
            payload=suggestion_payload(
                suggested_project_id=project.id,
                explanation=f"Assign to newly created project '{name}'",
            ),
        )

    def _create_follow_ups(
        self,
        session: Session,
        resolution: _Resolution,
        *,
        review_type: str,
        project_id: UUID,
        payload: dict[str, Any],
    ) -> None:
        """Replace stale pending items of ``review_type`` for every candidate entity."""
        candidates: dict[UUID, None] = {}
        for entity_id in resolution.suggestion.candidate_entity_ids or []:
            candidates.setdefault(entity_id, None)

        for entity_id in candidates:
            if session.get(Entity, entity_id) is None:
                continue
            session.execute(
                delete(ReviewQueueItem)
                .where(ReviewQueueItem.entity_id == entity_id)
                .where(ReviewQueueItem.review_type == review_type)
                .where(ReviewQueueItem.status == PENDING)
                .execution_options(synchronize_session=False)
            )
            created = insert_review_item(
                session,
                review_type=review_type,
                entity_id=entity_id,
                project_id=project_id,
                ai_suggestion=payload,
                ai_confidence=resolution.item.ai_confidence,
            )
            if created is not None:
                resolution.effects.created_reviews.append(created)

    def _apply_low_confidence(self, session: Session, resolution: _Resolution) -> None:
        # Acknowledgement only; the flagged field is edited through the entity itself.
        return None

    def _publish(self, result: ResolutionResult) -> None:
        item = result.item
        effects = result.effects
        publish_safely(
            self._notifier,
            EVENT_REVIEW_RESOLVED,
            {
                "id": str(item.id),
                "entity_id": str(item.entity_id) if item.entity_id else None,
                "project_id": str(item.project_id) if item.project_id else None,
                "review_type": item.review_type,
                "status": item.status,
            },
        )
        for review_id in effects.auto_resolved_review_ids:
            publish_safely(
                self._notifier,
                EVENT_REVIEW_RESOLVED,
                {"id": str(review_id), "entity_id": str(item.entity_id), "status": REJECTED},
            )
        for entity_id in effects.updated_entity_ids:
            publish_safely(self._notifier, EVENT_ENTITY_UPDATED, {"id": str(entity_id)})
        if result.created_project is not None:
            publish_safely(self._notifier, EVENT_PROJECT_CREATED, result.created_project)
        if result.created_epic is not None:
            publish_safely(self._notifier, EVENT_EPIC_CREATED, result.created_epic)
        for review in effects.created_reviews:
            publish_safely(self._notifier, EVENT_REVIEW_CREATED, review.to_event())
        for project_id in effects.touched_project_ids:
            publish_safely(
                self._notifier, EVENT_PROJECT_STATS_UPDATED, {"project_id": str(project_id)}
            )


__all__ = [
    "ResolutionRequest",
    "ResolutionResult",
    "ResolveEffects",
    "ReviewResolver",
    "TERMINAL_STATUSES",
    "TYPE_CHANGE_REJECTION",
]
