"""Data models for the notetriage pipeline."""

from datetime import datetime, timezone
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    PrimaryKeyConstraint,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests).
JsonColumnType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


ENTITY_TYPES = ("task", "decision", "insight")
NOTE_SOURCES = (
    "cli",
    "slack",
    "voice_memo",
    "meeting_transcript",
    "obsidian",
    "mcp",
    "api",
)
REVIEW_TYPES = (
    "type_classification",
    "project_assignment",
    "epic_assignment",
    "epic_creation",
    "project_creation",
    "duplicate_detection",
    "low_confidence",
    "assignee_suggestion",
)
REVIEW_STATUSES = ("pending", "accepted", "rejected", "modified")
RELATIONSHIP_TYPES = ("derived_from", "related_to", "promoted_to", "duplicate_of")
STATUSES_BY_TYPE = {
    "task": ("captured", "needs_action", "in_progress", "done"),
    "decision": ("pending", "decided"),
    "insight": ("captured", "acknowledged"),
}

EntityTypeEnum = Enum(*ENTITY_TYPES, name="entity_type", native_enum=False)
NoteSourceEnum = Enum(*NOTE_SOURCES, name="note_source", native_enum=False)
ProjectStatusEnum = Enum("active", "archived", name="project_status", native_enum=False)
CreatorEnum = Enum("user", "ai_suggestion", name="creator", native_enum=False)
RelationshipTypeEnum = Enum(*RELATIONSHIP_TYPES, name="relationship_type", native_enum=False)
ReviewTypeEnum = Enum(*REVIEW_TYPES, name="review_type", native_enum=False)
ReviewStatusEnum = Enum(*REVIEW_STATUSES, name="review_status", native_enum=False)
EntityEventTypeEnum = Enum(
    "comment",
    "status_change",
    "reprocess",
    name="entity_event_type",
    native_enum=False,
)

_VALID_ENTITY_STATUS_SQL = " OR ".join(
    "(type = '{}' AND status IN ({}))".format(
        entity_type, ", ".join(f"'{status}'" for status in statuses)
    )
    for entity_type, statuses in STATUSES_BY_TYPE.items()
)
_PENDING_REVIEW_UNIQUE_SQL = (
    "status = 'pending' AND entity_id IS NOT NULL AND review_type <> 'low_confidence'"
)


class User(Base):
    """Known person that entities can be assigned to."""

    __tablename__ = "users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    email = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class RawNote(Base):
    """Captured unstructured input awaiting or past extraction."""

    __tablename__ = "raw_notes"
    __table_args__ = (
        Index(
            "raw_notes_source_external_id_uq",
            "source",
            "external_id",
            unique=True,
            postgresql_where=text("external_id IS NOT NULL"),
            sqlite_where=text("external_id IS NOT NULL"),
        ),
        Index(
            "raw_notes_unprocessed_captured_at_idx",
            "captured_at",
            "id",
            postgresql_where=text("processed = false"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    content = Column(Text, nullable=False)
    source = Column(NoteSourceEnum, nullable=False)
    external_id = Column(Text, nullable=True)
    source_meta = Column(JsonColumnType, nullable=True)
    captured_by = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    captured_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed = Column(Boolean, nullable=False, default=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    processing_error = Column(Text, nullable=True)


class Project(Base):
    """Organizational container for entities."""

    __tablename__ = "projects"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(ProjectStatusEnum, nullable=False, default="active")
    created_by = Column(CreatorEnum, nullable=False, default="user")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Epic(Base):
    """Group of related entities inside exactly one project."""

    __tablename__ = "epics"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False)
    description = Column(Text, nullable=True)
    project_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_by = Column(CreatorEnum, nullable=False, default="user")
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class Entity(Base):
    """Task, decision, or insight derived from one or more notes."""

    __tablename__ = "entities"
    __table_args__ = (
        CheckConstraint(_VALID_ENTITY_STATUS_SQL, name="valid_entity_status"),
        CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_entities_confidence"),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    type = Column(EntityTypeEnum, nullable=False)
    content = Column(Text, nullable=False)
    status = Column(Text, nullable=False)
    project_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    epic_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("epics.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assignee_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    confidence = Column(Float, nullable=False, default=1.0)
    attributes = Column(JsonColumnType, nullable=True)
    ai_meta = Column(JsonColumnType, nullable=True)
    evidence = Column(JsonColumnType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class EntitySource(Base):
    """Join between an entity and a note it was extracted from."""

    __tablename__ = "entity_sources"
    __table_args__ = (PrimaryKeyConstraint("entity_id", "raw_note_id"),)

    entity_id = Column(
        Uuid(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    raw_note_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("raw_notes.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EntityRelationship(Base):
    """Directed typed edge between two entities."""

    __tablename__ = "entity_relationships"
    __table_args__ = (
        UniqueConstraint(
            "source_id",
            "target_id",
            "relationship_type",
            name="entity_rel_unique_edge_uq",
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    source_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    target_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    relationship_type = Column(RelationshipTypeEnum, nullable=False)
    meta = Column("metadata", JsonColumnType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Tag(Base):
    """Normalized lowercase label."""

    __tablename__ = "tags"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(Text, nullable=False, unique=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EntityTag(Base):
    """Many-to-many link between entities and tags."""

    __tablename__ = "entity_tags"
    __table_args__ = (PrimaryKeyConstraint("entity_id", "tag_id"),)

    entity_id = Column(
        Uuid(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    tag_id = Column(Uuid(as_uuid=True), ForeignKey("tags.id", ondelete="CASCADE"), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ReviewQueueItem(Base):
    """Deferred decision awaiting a human resolution."""

    __tablename__ = "review_queue"
    __table_args__ = (
        CheckConstraint(
            "entity_id IS NOT NULL OR project_id IS NOT NULL",
            name="review_queue_entity_or_project",
        ),
        Index(
            "review_queue_pending_unique_entity_review_type",
            "entity_id",
            "review_type",
            unique=True,
            postgresql_where=text(_PENDING_REVIEW_UNIQUE_SQL),
            sqlite_where=text(_PENDING_REVIEW_UNIQUE_SQL),
        ),
        Index(
            "review_queue_pending_idx",
            "created_at",
            postgresql_where=text("status = 'pending'"),
        ),
    )

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("entities.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    project_id = Column(
        Uuid(as_uuid=True),
        ForeignKey("projects.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    review_type = Column(ReviewTypeEnum, nullable=False)
    status = Column(ReviewStatusEnum, nullable=False, default="pending")
    ai_suggestion = Column(JsonColumnType, nullable=False)
    ai_confidence = Column(Float, nullable=False)
    resolved_by = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    resolved_at = Column(DateTime(timezone=True), nullable=True)
    user_resolution = Column(JsonColumnType, nullable=True)
    training_comment = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class EntityEvent(Base):
    """Append-only audit and comment log entry for an entity."""

    __tablename__ = "entity_events"
    __table_args__ = (Index("entity_events_entity_id_created_at_idx", "entity_id", "created_at"),)

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    entity_id = Column(
        Uuid(as_uuid=True), ForeignKey("entities.id", ondelete="CASCADE"), nullable=False
    )
    type = Column(EntityEventTypeEnum, nullable=False)
    actor_user_id = Column(
        Uuid(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    raw_note_id = Column(
        Uuid(as_uuid=True), ForeignKey("raw_notes.id", ondelete="SET NULL"), nullable=True
    )
    body = Column(Text, nullable=True)
    old_status = Column(Text, nullable=True)
    new_status = Column(Text, nullable=True)
    meta = Column(JsonColumnType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
