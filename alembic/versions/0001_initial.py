"""Initial note triage schema.

Revision ID: 0001_initial
Revises:
Create Date: 2026-01-05 00:00:00.000000

"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_UUID = sa.Uuid(as_uuid=True)

_ENTITY_TYPE = sa.Enum("task", "decision", "insight", name="entity_type", native_enum=False)
_NOTE_SOURCE = sa.Enum(
    "cli",
    "slack",
    "voice_memo",
    "meeting_transcript",
    "obsidian",
    "mcp",
    "api",
    name="note_source",
    native_enum=False,
)
_PROJECT_STATUS = sa.Enum("active", "archived", name="project_status", native_enum=False)
_CREATOR = sa.Enum("user", "ai_suggestion", name="creator", native_enum=False)
_RELATIONSHIP_TYPE = sa.Enum(
    "derived_from",
    "related_to",
    "promoted_to",
    "duplicate_of",
    name="relationship_type",
    native_enum=False,
)
_REVIEW_TYPE = sa.Enum(
    "type_classification",
    "project_assignment",
    "epic_assignment",
    "epic_creation",
    "project_creation",
    "duplicate_detection",
    "low_confidence",
    "assignee_suggestion",
    name="review_type",
    native_enum=False,
)
_REVIEW_STATUS = sa.Enum(
    "pending", "accepted", "rejected", "modified", name="review_status", native_enum=False
)
_EVENT_TYPE = sa.Enum(
    "comment", "status_change", "reprocess", name="entity_event_type", native_enum=False
)


def _timestamp(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    """Create users, notes, projects, epics, entities, and review tables."""
    op.create_table(
        "users",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=False, unique=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "raw_notes",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("source", _NOTE_SOURCE, nullable=False),
        sa.Column("external_id", sa.Text(), nullable=True),
        sa.Column("source_meta", _JSON, nullable=True),
        sa.Column(
            "captured_by",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("captured_at"),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        _timestamp("processed_at", nullable=True),
        sa.Column("processing_error", sa.Text(), nullable=True),
    )
    op.create_index(
        "raw_notes_source_external_id_uq",
        "raw_notes",
        ["source", "external_id"],
        unique=True,
        postgresql_where=sa.text("external_id IS NOT NULL"),
        sqlite_where=sa.text("external_id IS NOT NULL"),
    )
    op.create_index(
        "raw_notes_unprocessed_captured_at_idx",
        "raw_notes",
        ["captured_at", "id"],
        postgresql_where=sa.text("processed = false"),
    )

    op.create_table(
        "projects",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("status", _PROJECT_STATUS, nullable=False, server_default="active"),
        sa.Column("created_by", _CREATOR, nullable=False, server_default="user"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
    )
    op.create_table(
        "epics",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "project_id",
            _UUID,
            sa.ForeignKey("projects.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_by", _CREATOR, nullable=False, server_default="user"),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
    )
    op.create_index("ix_epics_project_id", "epics", ["project_id"])

    op.create_table(
        "entities",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("type", _ENTITY_TYPE, nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column(
            "project_id",
            _UUID,
            sa.ForeignKey("projects.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("epic_id", _UUID, sa.ForeignKey("epics.id", ondelete="SET NULL"), nullable=True),
        sa.Column(
            "assignee_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="1"),
        sa.Column("attributes", _JSON, nullable=True),
        sa.Column("ai_meta", _JSON, nullable=True),
        sa.Column("evidence", _JSON, nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        _timestamp("deleted_at", nullable=True),
        sa.CheckConstraint(
            "(type = 'task' AND status IN ('captured', 'needs_action', 'in_progress', 'done'))"
            " OR (type = 'decision' AND status IN ('pending', 'decided'))"
            " OR (type = 'insight' AND status IN ('captured', 'acknowledged'))",
            name="valid_entity_status",
        ),
        sa.CheckConstraint("confidence >= 0 AND confidence <= 1", name="ck_entities_confidence"),
    )
    op.create_index("ix_entities_project_id", "entities", ["project_id"])
    op.create_index("ix_entities_epic_id", "entities", ["epic_id"])
    op.create_index("ix_entities_assignee_id", "entities", ["assignee_id"])

    op.create_table(
        "entity_sources",
        sa.Column(
            "entity_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "raw_note_id",
            _UUID,
            sa.ForeignKey("raw_notes.id", ondelete="CASCADE"),
            nullable=False,
        ),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("entity_id", "raw_note_id"),
    )
    op.create_index("ix_entity_sources_raw_note_id", "entity_sources", ["raw_note_id"])

    op.create_table(
        "entity_relationships",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column(
            "source_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "target_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("relationship_type", _RELATIONSHIP_TYPE, nullable=False),
        sa.Column("metadata", _JSON, nullable=True),
        _timestamp("created_at"),
        sa.UniqueConstraint(
            "source_id",
            "target_id",
            "relationship_type",
            name="entity_rel_unique_edge_uq",
        ),
    )
    op.create_index("ix_entity_relationships_source_id", "entity_relationships", ["source_id"])
    op.create_index("ix_entity_relationships_target_id", "entity_relationships", ["target_id"])

    op.create_table(
        "tags",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column("name", sa.Text(), nullable=False, unique=True),
        _timestamp("created_at"),
    )
    op.create_table(
        "entity_tags",
        sa.Column(
            "entity_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("tag_id", _UUID, sa.ForeignKey("tags.id", ondelete="CASCADE"), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("entity_id", "tag_id"),
    )

    op.create_table(
        "review_queue",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column(
            "entity_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=True,
        ),
        sa.Column(
            "project_id",
            _UUID,
            sa.ForeignKey("projects.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("review_type", _REVIEW_TYPE, nullable=False),
        sa.Column("status", _REVIEW_STATUS, nullable=False, server_default="pending"),
        sa.Column("ai_suggestion", _JSON, nullable=False),
        sa.Column("ai_confidence", sa.Float(), nullable=False),
        sa.Column(
            "resolved_by",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        _timestamp("resolved_at", nullable=True),
        sa.Column("user_resolution", _JSON, nullable=True),
        sa.Column("training_comment", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.CheckConstraint(
            "entity_id IS NOT NULL OR project_id IS NOT NULL",
            name="review_queue_entity_or_project",
        ),
    )
    op.create_index("ix_review_queue_entity_id", "review_queue", ["entity_id"])
    op.create_index("ix_review_queue_project_id", "review_queue", ["project_id"])
    op.create_index(
        "review_queue_pending_unique_entity_review_type",
        "review_queue",
        ["entity_id", "review_type"],
        unique=True,
        postgresql_where=sa.text(
            "status = 'pending' AND entity_id IS NOT NULL AND review_type <> 'low_confidence'"
        ),
    )
    op.create_index(
        "review_queue_pending_idx",
        "review_queue",
        ["created_at"],
        postgresql_where=sa.text("status = 'pending'"),
    )

    op.create_table(
        "entity_events",
        sa.Column("id", _UUID, primary_key=True),
        sa.Column(
            "entity_id",
            _UUID,
            sa.ForeignKey("entities.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("type", _EVENT_TYPE, nullable=False),
        sa.Column(
            "actor_user_id",
            _UUID,
            sa.ForeignKey("users.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "raw_note_id",
            _UUID,
            sa.ForeignKey("raw_notes.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("body", sa.Text(), nullable=True),
        sa.Column("old_status", sa.Text(), nullable=True),
        sa.Column("new_status", sa.Text(), nullable=True),
        sa.Column("meta", _JSON, nullable=True),
        _timestamp("created_at"),
    )
    op.create_index(
        "entity_events_entity_id_created_at_idx", "entity_events", ["entity_id", "created_at"]
    )


def downgrade() -> None:
    """Drop all note triage tables."""
    op.drop_table("entity_events")
    op.drop_table("review_queue")
    op.drop_table("entity_tags")
    op.drop_table("tags")
    op.drop_table("entity_relationships")
    op.drop_table("entity_sources")
    op.drop_table("entities")
    op.drop_table("epics")
    op.drop_table("projects")
    op.drop_table("raw_notes")
    op.drop_table("users")
