"""Extraction stage: turn one captured note into entities and review items.

The stage calls the extraction oracle outside any transaction, then applies the
validated result in a single transaction that begins by claiming the note
(``processed`` flips from false to true). A concurrent or repeated run loses
the claim and becomes a no-op, so a note is never extracted twice.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID, uuid4

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from config import settings
from models import Entity, EntitySource, RawNote
from pipeline import prompts
from pipeline.attributes import clean_attributes
from pipeline.constants import (
    EVENT_ENTITY_CREATED,
    EVENT_RAW_NOTE_PROCESSED,
    EVENT_REVIEW_CREATED,
    QUEUE_ORGANIZE,
)
from pipeline.notifier import EventNotifier, NullNotifier, publish_safely
from pipeline.oracle import OracleClient, OracleRequest, OracleResult
from pipeline.policy import PipelinePolicy
from pipeline.queue import Backoff, EnqueuedJob, JobQueue
from pipeline.repository import (
    CreatedReview,
    append_event,
    attach_tags,
    insert_relationship,
    insert_review_item,
    upsert_tags,
)
from pipeline.schemas import ExtractionResult

logger = logging.getLogger(__name__)

ORGANIZE_ENQUEUE_FAILED = "organize_enqueue_failed"
_TOP_LEVEL_FIELDS = frozenset({"content", "status", "tags", "confidence"})
_MAX_ERROR_LENGTH = 2000


@dataclass(frozen=True)
class ExtractionOutcome:
    """Result of one extraction run."""

    raw_note_id: UUID
    skipped: bool = False
    entity_ids: list[UUID] = field(default_factory=list)
    review_items: list[CreatedReview] = field(default_factory=list)
    organize_job: EnqueuedJob | None = None


class ExtractionStage:
    """Extract entities from a raw note and persist them atomically."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        oracle: OracleClient,
        *,
        policy: PipelinePolicy,
        job_queue: JobQueue | None = None,
        notifier: EventNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._oracle = oracle
        self._policy = policy
        self._job_queue = job_queue
        self._notifier = notifier or NullNotifier()

    def run(self, raw_note_id: UUID, *, run_id: str | None = None) -> ExtractionOutcome:
        """Extract one note.

        Raises:
            SchemaViolation: If the oracle output stays invalid after its retry.
            OracleCallError: If the oracle is unreachable.
            ServiceUnavailable: If the organization job cannot be enqueued.
        """
        note = self._load_note(raw_note_id)
        if note is None:
            logger.info("raw note missing; skipping extraction")
            return ExtractionOutcome(raw_note_id=raw_note_id, skipped=True)
        if note.processed:
            if (note.processing_error or "").startswith(ORGANIZE_ENQUEUE_FAILED):
                return self._resume_organize(note)
            logger.info("raw note already processed; skipping extraction")
            return ExtractionOutcome(raw_note_id=raw_note_id, skipped=True)

        run_id = run_id or uuid4().hex
        try:
            result = self._oracle.request(
                OracleRequest(
                    tool_name=prompts.EXTRACTION_TOOL_NAME,
                    tool_description=prompts.EXTRACTION_TOOL_DESCRIPTION,
                    system_prompt=prompts.EXTRACTION_SYSTEM_PROMPT,
                    user_message=prompts.build_extraction_message(
                        content=note.content,
                        source=note.source,
                        captured_at=note.captured_at,
                        source_meta=note.source_meta,
                    ),
                    output_model=ExtractionResult,
                    prompt_version=prompts.EXTRACTION_PROMPT_VERSION,
                )
            )
            outcome = self._apply(note, result, run_id)
        except Exception as exc:
            self._record_failure(raw_note_id, str(exc))
            raise

        if outcome.skipped:
            return outcome

        self._publish(outcome)
        if not outcome.entity_ids:
            return outcome
        job = self._enqueue_organize(raw_note_id, outcome.entity_ids)
        return ExtractionOutcome(
            raw_note_id=raw_note_id,
            entity_ids=outcome.entity_ids,
            review_items=outcome.review_items,
            organize_job=job,
        )

    def _load_note(self, raw_note_id: UUID) -> RawNote | None:
        with closing(self._session_factory()) as session:
            note = session.get(RawNote, raw_note_id)
            if note is not None:
                session.expunge(note)
            return note

    def _apply(
        self,
        note: RawNote,
        result: OracleResult[ExtractionResult],
        run_id: str,
    ) -> ExtractionOutcome:
        extracted = result.value
        now = datetime.now(timezone.utc)
        permalink = (note.source_meta or {}).get("permalink")
        entity_ids: list[UUID] = []
        review_items: list[CreatedReview] = []

        with closing(self._session_factory()) as session:
            try:
                claimed = session.execute(
                    update(RawNote)
                    .where(RawNote.id == note.id)
                    .where(RawNote.processed.is_(False))
                    .values(processed=True, processed_at=now, processing_error=None)
                ).rowcount
                if not claimed:
                    session.rollback()
                    logger.info("raw note claimed by another run; skipping extraction")
                    return ExtractionOutcome(raw_note_id=note.id, skipped=True)

                for ent in extracted.entities:
                    entity_id = uuid4()
                    entity_ids.append(entity_id)
                    session.add(
                        Entity(
                            id=entity_id,
                            type=ent.type,
                            content=ent.content,
                            status=ent.status,
                            confidence=ent.confidence,
                            attributes=clean_attributes(ent.attributes),
                            evidence=[
                                _evidence_entry(span.model_dump(exclude_none=True), note.id, permalink)
                                for span in ent.evidence
                            ],
                            ai_meta={
                                "model": result.model,
                                "prompt_version": result.prompt_version,
                                "extraction_run_id": run_id,
                                "extracted_at": now.isoformat(),
                                "token_usage": result.usage,
                                "field_confidence": {
                                    key: fc.model_dump(exclude_none=True)
                                    for key, fc in ent.field_confidence.items()
                                },
                            },
                        )
                    )
                session.flush()

                for entity_id in entity_ids:
                    session.add(EntitySource(entity_id=entity_id, raw_note_id=note.id))
                    append_event(
                        session,
                        entity_id,
                        "Extracted from raw note",
                        raw_note_id=note.id,
                        meta={
                            "job_id": run_id,
                            "model": result.model,
                            "prompt_version": result.prompt_version,
                        },
                    )

                for rel in extracted.relationships:
                    if rel.source_index >= len(entity_ids) or rel.target_index >= len(entity_ids):
                        continue
                    insert_relationship(
                        session,
                        source_id=entity_ids[rel.source_index],
                        target_id=entity_ids[rel.target_index],
                        relationship_type=rel.relationship_type,
                        meta={"created_by": "ai", "reason": "extracted_in_note"},
                    )

                tag_ids = upsert_tags(
                    session, [tag for ent in extracted.entities for tag in ent.tags]
                )
                for entity_id, ent in zip(entity_ids, extracted.entities):
                    names = {tag.strip().lower() for tag in ent.tags}
                    attach_tags(session, entity_id, [tag_ids[n] for n in names if n in tag_ids])

                for entity_id, ent in zip(entity_ids, extracted.entities):
                    review_items.extend(self._queue_low_confidence(session, entity_id, ent))

                session.commit()
            except Exception:
                session.rollback()
                raise

        logger.info(
            "extraction committed",
            extra={"entity_count": len(entity_ids), "review_count": len(review_items)},
        )
        return ExtractionOutcome(
            raw_note_id=note.id, entity_ids=entity_ids, review_items=review_items
        )

    def _queue_low_confidence(
        self, session: Session, entity_id: UUID, ent: Any
    ) -> list[CreatedReview]:
        created: list[CreatedReview] = []
        attributes = clean_attributes(ent.attributes)

        for field_key, fc in ent.field_confidence.items():
            if self._policy.is_confident(fc.confidence):
                continue
            if field_key == "type":
                review_type = "type_classification"
                suggestion = {"suggested_type": ent.type, "explanation": fc.reason}
            elif field_key == "owner":
                owner = attributes.get("owner")
                if not owner:
                    continue
                review_type = "assignee_suggestion"
                suggestion = {"suggested_assignee_name": owner, "explanation": fc.reason}
            else:
                review_type = "low_confidence"
                if field_key in _TOP_LEVEL_FIELDS:
                    value = getattr(ent, field_key)
                else:
                    value = attributes.get(field_key)
                suggestion = {
                    "field_key": field_key,
                    "suggested_value": value,
                    "explanation": fc.reason,
                }
            item = insert_review_item(
                session,
                review_type=review_type,
                entity_id=entity_id,
                ai_suggestion=_drop_none(suggestion),
                ai_confidence=fc.confidence,
            )
            if item is not None:
                created.append(item)

        if not self._policy.is_confident(ent.confidence):
            item = insert_review_item(
                session,
                review_type="low_confidence",
                entity_id=entity_id,
                ai_suggestion={"explanation": "Low overall extraction confidence"},
                ai_confidence=ent.confidence,
            )
            if item is not None:
                created.append(item)
        return created

    def _publish(self, outcome: ExtractionOutcome) -> None:
        note_id = str(outcome.raw_note_id)
        publish_safely(
            self._notifier,
            EVENT_RAW_NOTE_PROCESSED,
            {"id": note_id, "entity_count": len(outcome.entity_ids)},
        )
        for entity_id in outcome.entity_ids:
            publish_safely(
                self._notifier,
                EVENT_ENTITY_CREATED,
                {"id": str(entity_id), "raw_note_id": note_id},
            )
        for item in outcome.review_items:
            publish_safely(self._notifier, EVENT_REVIEW_CREATED, item.to_event())

    def _enqueue_organize(self, raw_note_id: UUID, entity_ids: list[UUID]) -> EnqueuedJob | None:
        if self._job_queue is None:
            return None
        queue_config = settings.queue
        try:
            return self._job_queue.enqueue(
                QUEUE_ORGANIZE,
                {
                    "raw_note_id": str(raw_note_id),
                    "entity_ids": [str(entity_id) for entity_id in entity_ids],
                },
                dedupe_key=str(raw_note_id),
                attempts=queue_config.organize_attempts,
                backoff=Backoff(
                    strategy=queue_config.backoff_strategy,
                    base_seconds=queue_config.backoff_base_seconds,
                ),
            )
        except Exception as exc:
            self._record_failure(raw_note_id, f"{ORGANIZE_ENQUEUE_FAILED}: {exc}")
            raise

    def _resume_organize(self, note: RawNote) -> ExtractionOutcome:
        """Re-enqueue organization for a note whose earlier enqueue failed."""
        with closing(self._session_factory()) as session:
            entity_ids = list(
                session.execute(
                    select(EntitySource.entity_id)
                    .where(EntitySource.raw_note_id == note.id)
                    .order_by(EntitySource.created_at, EntitySource.entity_id)
                ).scalars()
            )
        logger.info("resuming organization enqueue for processed note")
        job = self._enqueue_organize(note.id, entity_ids) if entity_ids else None
        self._record_failure(note.id, None)
        return ExtractionOutcome(raw_note_id=note.id, entity_ids=entity_ids, organize_job=job)

    def _record_failure(self, raw_note_id: UUID, message: str | None) -> None:
        """Store (or clear) the processing error in its own transaction."""
        with closing(self._session_factory()) as session:
            try:
                session.execute(
                    update(RawNote)
                    .where(RawNote.id == raw_note_id)
                    .values(processing_error=message[:_MAX_ERROR_LENGTH] if message else None)
                )
                session.commit()
            except Exception:
                session.rollback()
                logger.exception("failed to record processing error on raw note")


def _evidence_entry(
    span: dict[str, Any], raw_note_id: UUID, permalink: str | None
) -> dict[str, Any]:
    entry = {"raw_note_id": str(raw_note_id), **span}
    if permalink:
        entry["permalink"] = permalink
    return entry


def _drop_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


__all__ = ["ExtractionOutcome", "ExtractionStage", "ORGANIZE_ENQUEUE_FAILED"]
