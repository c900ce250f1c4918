"""Note capture and reprocessing entry points.

Capture persists the note first and enqueues extraction second; a failed
enqueue leaves the note stored (with the failure recorded) and surfaces as
``ServiceUnavailable``.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from uuid import UUID

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import NOTE_SOURCES, EntitySource, RawNote
from pipeline.constants import QUEUE_EXTRACT, QUEUE_REPROCESS
from pipeline.errors import NotFound, ServiceUnavailable, ValidationError
from pipeline.queue import Backoff, EnqueuedJob, JobQueue
from pipeline.repository import append_event

logger = logging.getLogger(__name__)

ENQUEUE_FAILED = "enqueue_failed"


class NoteInput(BaseModel):
    """Caller-supplied note fields."""

    content: str = Field(min_length=1)
    source: str
    source_meta: dict[str, Any] | None = None
    captured_at: datetime | None = None
    external_id: str | None = Field(default=None, min_length=1)


@dataclass(frozen=True)
class CaptureResult:
    raw_note_id: UUID
    deduped: bool
    job: EnqueuedJob | None = None


def _backoff() -> Backoff:
    return Backoff(
        strategy=settings.queue.backoff_strategy,
        base_seconds=settings.queue.backoff_base_seconds,
    )


def _parse_input(values: NoteInput | dict[str, Any]) -> NoteInput:
    if isinstance(values, NoteInput):
        note_input = values
    else:
        try:
            note_input = NoteInput.model_validate(values)
        except PydanticValidationError as exc:
            raise ValidationError(
                "note input is malformed",
                details={"issues": exc.errors(include_url=False, include_context=False)},
            ) from exc
    if not note_input.content.strip():
        raise ValidationError("note content must not be blank")
    if note_input.source not in NOTE_SOURCES:
        raise ValidationError(
            f"unknown note source: {note_input.source}",
            details={"allowed": list(NOTE_SOURCES)},
        )
    return note_input


def _record_error(
    session_factory: Callable[[], Session], raw_note_id: UUID, message: str | None
) -> None:
    with closing(session_factory()) as session:
        try:
            session.execute(
                update(RawNote).where(RawNote.id == raw_note_id).values(processing_error=message)
            )
            session.commit()
        except Exception:
            session.rollback()
            logger.exception("failed to record processing error on raw note")


def _enqueue_extract(job_queue: JobQueue, raw_note_id: UUID) -> EnqueuedJob | None:
    return job_queue.enqueue(
        QUEUE_EXTRACT,
        {"raw_note_id": str(raw_note_id)},
        dedupe_key=str(raw_note_id),
        attempts=settings.queue.extract_attempts,
        backoff=_backoff(),
    )


def _find_by_external_id(session: Session, source: str, external_id: str) -> RawNote | None:
    return session.execute(
        select(RawNote)
        .where(RawNote.source == source)
        .where(RawNote.external_id == external_id)
    ).scalar_one_or_none()


def capture_note(
    session_factory: Callable[[], Session],
    job_queue: JobQueue,
    values: NoteInput | dict[str, Any],
    *,
    captured_by: UUID | None = None,
) -> CaptureResult:
    """Persist a note and enqueue its extraction.

    A note whose (source, external_id) was already captured is returned as
    ``deduped`` without enqueuing anything.

    Raises:
        ValidationError: If the input is malformed.
        ServiceUnavailable: If the note was stored but extraction could not be
            enqueued.
    """
    note_input = _parse_input(values)

    with closing(session_factory()) as session:
        if note_input.external_id is not None:
            existing = _find_by_external_id(session, note_input.source, note_input.external_id)
            if existing is not None:
                return CaptureResult(raw_note_id=existing.id, deduped=True)

        note = RawNote(
            content=note_input.content,
            source=note_input.source,
            source_meta=note_input.source_meta,
            external_id=note_input.external_id,
            captured_by=captured_by,
        )
        if note_input.captured_at is not None:
            note.captured_at = note_input.captured_at
        session.add(note)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if note_input.external_id is None:
                raise
            existing = _find_by_external_id(session, note_input.source, note_input.external_id)
            if existing is None:
                raise
            return CaptureResult(raw_note_id=existing.id, deduped=True)
        raw_note_id = note.id

    try:
        job = _enqueue_extract(job_queue, raw_note_id)
    except Exception as exc:
        _record_error(session_factory, raw_note_id, f"{ENQUEUE_FAILED}: {exc}")
        logger.warning(
            "note saved but extraction not queued", extra={"raw_note_id": str(raw_note_id)}
        )
        raise ServiceUnavailable(
            "failed to enqueue note extraction", details={"raw_note_id": str(raw_note_id)}
        ) from exc
    return CaptureResult(raw_note_id=raw_note_id, deduped=False, job=job)


def request_reprocess(
    session_factory: Callable[[], Session],
    job_queue: JobQueue,
    raw_note_id: UUID,
    *,
    requested_by: UUID | None = None,
) -> EnqueuedJob | None:
    """Queue a note to be reset and extracted again.

    Raises:
        NotFound: If the note does not exist.
        ServiceUnavailable: If the reprocess job could not be enqueued.
    """
    with closing(session_factory()) as session:
        if session.get(RawNote, raw_note_id) is None:
            raise NotFound(
                f"raw note {raw_note_id} not found", details={"raw_note_id": str(raw_note_id)}
            )

    try:
        return job_queue.enqueue(
            QUEUE_REPROCESS,
            {
                "raw_note_id": str(raw_note_id),
                "requested_by": str(requested_by) if requested_by else None,
            },
            dedupe_key=str(raw_note_id),
            attempts=settings.queue.reprocess_attempts,
            backoff=_backoff(),
        )
    except Exception as exc:
        _record_error(session_factory, raw_note_id, f"{ENQUEUE_FAILED}: {exc}")
        raise ServiceUnavailable(
            "failed to enqueue note reprocessing", details={"raw_note_id": str(raw_note_id)}
        ) from exc


def run_reprocess(
    session_factory: Callable[[], Session],
    job_queue: JobQueue,
    raw_note_id: UUID,
    *,
    requested_by: UUID | None = None,
    job_id: str | None = None,
) -> EnqueuedJob | None:
    """Reset a note to unprocessed and enqueue a fresh extraction.

    Entities already extracted from the note are kept; each gets a
    ``reprocess`` event. A missing note is a no-op.
    """
    with closing(session_factory()) as session:
        try:
            reset = session.execute(
                update(RawNote)
                .where(RawNote.id == raw_note_id)
                .values(processed=False, processed_at=None, processing_error=None)
            ).rowcount
            if not reset:
                session.rollback()
                logger.info("raw note missing; skipping reprocess")
                return None
            entity_ids = list(
                session.execute(
                    select(EntitySource.entity_id).where(EntitySource.raw_note_id == raw_note_id)
                ).scalars()
            )
            for entity_id in entity_ids:
                append_event(
                    session,
                    entity_id,
                    None,
                    event_type="reprocess",
                    actor_user_id=requested_by,
                    raw_note_id=raw_note_id,
                    meta={"job_id": job_id, "reason": "note_reprocess"},
                )
            session.commit()
        except Exception:
            session.rollback()
            raise

    try:
        return _enqueue_extract(job_queue, raw_note_id)
    except Exception:
        logger.error(
            "failed to enqueue extraction after reprocess",
            extra={"raw_note_id": str(raw_note_id)},
        )
        raise


__all__ = [
    "CaptureResult",
    "ENQUEUE_FAILED",
    "NoteInput",
    "capture_note",
    "request_reprocess",
    "run_reprocess",
]
