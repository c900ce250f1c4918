"""Store helpers shared by the extraction, organization, and review stages.

Every insert that may race with a concurrent or repeated run goes through
``insert_ignoring_conflicts`` so a collision on a unique constraint resolves to
a no-op instead of an error.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping
from uuid import UUID

from sqlalchemy import Table, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.orm import Session

from models import (
    EntityEvent,
    EntityRelationship,
    EntityTag,
    Project,
    ReviewQueueItem,
    Tag,
)
from pipeline.constants import PENDING


@dataclass(frozen=True)
class CreatedReview:
    """Summary of a review item inserted during a stage run."""

    id: UUID
    entity_id: UUID | None
    project_id: UUID | None
    review_type: str
    status: str = PENDING

    def to_event(self) -> dict[str, Any]:
        """Return the notification payload for this review item."""
        return {
            "id": str(self.id),
            "entity_id": str(self.entity_id) if self.entity_id else None,
            "project_id": str(self.project_id) if self.project_id else None,
            "review_type": self.review_type,
            "status": self.status,
        }


def _dialect_insert(session: Session, table: Table):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(table)
    if dialect == "sqlite":
        return sqlite_insert(table)
    raise RuntimeError(f"conflict-tolerant insert unsupported for dialect {dialect!r}")


def insert_ignoring_conflicts(
    session: Session,
    table: Table,
    values: Mapping[str, Any],
) -> UUID | None:
    """Insert one row, doing nothing on any unique conflict.

    Returns:
        The new row id for tables with an ``id`` column, or None when the row
        already existed. Tables keyed without ``id`` always return None.
    """
    stmt = _dialect_insert(session, table).values(**dict(values)).on_conflict_do_nothing()
    if "id" not in table.c:
        session.execute(stmt)
        return None
    return session.execute(stmt.returning(table.c.id)).scalar_one_or_none()


def normalize_tag_names(names: Iterable[str]) -> list[str]:
    """Trim, lowercase, and de-duplicate tag names, preserving order."""
    seen: dict[str, None] = {}
    for name in names:
        normalized = name.strip().lower()
        if normalized:
            seen.setdefault(normalized, None)
    return list(seen)


def upsert_tags(session: Session, names: Iterable[str]) -> dict[str, UUID]:
    """Ensure tags exist and return a mapping of normalized name to id."""
    normalized = normalize_tag_names(names)
    if not normalized:
        return {}
    for name in normalized:
        insert_ignoring_conflicts(session, Tag.__table__, {"name": name})
    rows = session.execute(select(Tag.name, Tag.id).where(Tag.name.in_(normalized))).all()
    return {name: tag_id for name, tag_id in rows}


def attach_tags(session: Session, entity_id: UUID, tag_ids: Iterable[UUID]) -> None:
    """Link tags to an entity, ignoring links that already exist."""
    for tag_id in tag_ids:
        insert_ignoring_conflicts(
            session, EntityTag.__table__, {"entity_id": entity_id, "tag_id": tag_id}
        )


def insert_relationship(
    session: Session,
    *,
    source_id: UUID,
    target_id: UUID,
    relationship_type: str,
    meta: Mapping[str, Any] | None = None,
) -> UUID | None:
    """Create a typed edge unless the same edge already exists."""
    return insert_ignoring_conflicts(
        session,
        EntityRelationship.__table__,
        {
            "source_id": source_id,
            "target_id": target_id,
            "relationship_type": relationship_type,
            "metadata": dict(meta) if meta is not None else None,
        },
    )


def insert_review_item(
    session: Session,
    *,
    review_type: str,
    ai_suggestion: Mapping[str, Any],
    ai_confidence: float,
    entity_id: UUID | None = None,
    project_id: UUID | None = None,
) -> CreatedReview | None:
    """Queue a pending review item.

    Returns None when an equivalent pending item already exists for the entity.
    """
    review_id = insert_ignoring_conflicts(
        session,
        ReviewQueueItem.__table__,
        {
            "entity_id": entity_id,
            "project_id": project_id,
            "review_type": review_type,
            "status": PENDING,
            "ai_suggestion": dict(ai_suggestion),
            "ai_confidence": ai_confidence,
        },
    )
    if review_id is None:
        return None
    return CreatedReview(
        id=review_id,
        entity_id=entity_id,
        project_id=project_id,
        review_type=review_type,
    )


def append_event(
    session: Session,
    entity_id: UUID,
    body: str | None,
    *,
    event_type: str = "comment",
    actor_user_id: UUID | None = None,
    raw_note_id: UUID | None = None,
    old_status: str | None = None,
    new_status: str | None = None,
    meta: Mapping[str, Any] | None = None,
) -> EntityEvent:
    """Append an audit event to an entity's log."""
    event = EntityEvent(
        entity_id=entity_id,
        type=event_type,
        actor_user_id=actor_user_id,
        raw_note_id=raw_note_id,
        body=body,
        old_status=old_status,
        new_status=new_status,
        meta=dict(meta) if meta is not None else None,
    )
    session.add(event)
    return event


def find_project_by_name(session: Session, name: str) -> Project | None:
    """Return a non-deleted project whose name matches case-insensitively."""
    return session.execute(
        select(Project)
        .where(func.lower(Project.name) == name.strip().lower())
        .where(Project.deleted_at.is_(None))
        .limit(1)
    ).scalar_one_or_none()


def pending_creation_exists(
    session: Session,
    review_type: str,
    name_key: str,
    name: str,
    *,
    project_id: UUID | None = None,
) -> bool:
    """Return True when a pending creation item already proposes ``name``.

    Names compare case-insensitively. When ``project_id`` is given only items
    anchored to that project count.
    """
    wanted = name.strip().casefold()
    stmt = (
        select(ReviewQueueItem.ai_suggestion)
        .where(ReviewQueueItem.review_type == review_type)
        .where(ReviewQueueItem.status == PENDING)
    )
    if project_id is not None:
        stmt = stmt.where(ReviewQueueItem.project_id == project_id)
    for suggestion in session.execute(stmt).scalars():
        proposed = (suggestion or {}).get(name_key)
        if isinstance(proposed, str) and proposed.strip().casefold() == wanted:
            return True
    return False


__all__ = [
    "CreatedReview",
    "append_event",
    "attach_tags",
    "find_project_by_name",
    "insert_ignoring_conflicts",
    "insert_relationship",
    "insert_review_item",
    "normalize_tag_names",
    "pending_creation_exists",
    "upsert_tags",
]
