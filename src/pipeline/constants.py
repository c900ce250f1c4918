"""Shared constants for the note triage pipeline."""

from __future__ import annotations

from typing import Mapping

from models import ENTITY_TYPES, RELATIONSHIP_TYPES, REVIEW_STATUSES, REVIEW_TYPES

__all__ = [
    "DEFAULT_STATUS_BY_TYPE",
    "DUPLICATE_SIMILARITY_FLOOR",
    "ENTITY_TYPES",
    "EVENT_ENTITY_CREATED",
    "EVENT_ENTITY_UPDATED",
    "EVENT_EPIC_CREATED",
    "EVENT_PROJECT_CREATED",
    "EVENT_PROJECT_STATS_UPDATED",
    "EVENT_RAW_NOTE_PROCESSED",
    "EVENT_REVIEW_CREATED",
    "EVENT_REVIEW_RESOLVED",
    "QUEUE_EXTRACT",
    "QUEUE_ORGANIZE",
    "QUEUE_REPROCESS",
    "RELATIONSHIP_TYPES",
    "REVIEW_STATUSES",
    "REVIEW_TYPES",
]

DEFAULT_STATUS_BY_TYPE: Mapping[str, str] = {
    "task": "captured",
    "decision": "pending",
    "insight": "captured",
}
"""Status assigned when an entity is created or changes type."""

DUPLICATE_SIMILARITY_FLOOR = 0.7
"""Minimum similarity for a duplicate candidate to be reported at all."""

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"
MODIFIED = "modified"

# Job queue names.
QUEUE_EXTRACT = "notes.extract"
QUEUE_ORGANIZE = "entities.organize"
QUEUE_REPROCESS = "notes.reprocess"

# Domain event types published after commit.
EVENT_RAW_NOTE_PROCESSED = "raw_note:processed"
EVENT_ENTITY_CREATED = "entity:created"
EVENT_ENTITY_UPDATED = "entity:updated"
EVENT_REVIEW_CREATED = "review_queue:created"
EVENT_REVIEW_RESOLVED = "review_queue:resolved"
EVENT_PROJECT_STATS_UPDATED = "project:stats_updated"
EVENT_PROJECT_CREATED = "project:created"
EVENT_EPIC_CREATED = "epic:created"
