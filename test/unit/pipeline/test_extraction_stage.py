"""Unit tests for the extraction stage."""

from __future__ import annotations

from contextlib import closing
from typing import Any

import pytest
from sqlalchemy import func, select

from models import (
    Entity,
    EntityEvent,
    EntityRelationship,
    EntitySource,
    EntityTag,
    RawNote,
    ReviewQueueItem,
    Tag,
)
from pipeline.constants import (
    EVENT_ENTITY_CREATED,
    EVENT_RAW_NOTE_PROCESSED,
    EVENT_REVIEW_CREATED,
    QUEUE_ORGANIZE,
)
from pipeline.errors import SchemaViolation, ServiceUnavailable
from pipeline.extraction import ORGANIZE_ENQUEUE_FAILED, ExtractionStage
from pipeline.oracle import OracleClient
from test.helpers.factories import make_note
from test.helpers.pipeline_stubs import (
    RecordingJobQueue,
    RecordingNotifier,
    StubLLMClient,
    tool_reply,
)


def _task(content: str = "Add rate limiting to the API", **overrides: Any) -> dict[str, Any]:
    entity = {
        "type": "task",
        "content": content,
        "status": "captured",
        "confidence": 0.95,
        "tags": ["API", "security "],
        "evidence": [{"quote": content, "start_offset": 0, "end_offset": len(content)}],
        "attributes": {"priority": "high"},
    }
    entity.update(overrides)
    return entity


def _stage(session_factory, policy, llm, *, job_queue=None, notifier=None) -> ExtractionStage:
    return ExtractionStage(
        session_factory,
        OracleClient(llm),
        policy=policy,
        job_queue=job_queue if job_queue is not None else RecordingJobQueue(),
        notifier=notifier,
    )


def _count(session_factory, model) -> int:
    with closing(session_factory()) as session:
        return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_extraction_persists_entities_and_enqueues_organization(
    sqlite_session_factory, policy
) -> None:
    """A confident extraction stores the entity and queues organization."""
    note_id = make_note(
        sqlite_session_factory, source="slack", source_meta={"permalink": "https://x/1"}
    )
    queue = RecordingJobQueue()
    notifier = RecordingNotifier()
    llm = StubLLMClient(tool_reply({"entities": [_task()], "relationships": []}))

    outcome = _stage(
        sqlite_session_factory, policy, llm, job_queue=queue, notifier=notifier
    ).run(note_id, run_id="run-1")

    assert len(outcome.entity_ids) == 1
    with closing(sqlite_session_factory()) as session:
        note = session.get(RawNote, note_id)
        entity = session.get(Entity, outcome.entity_ids[0])
        assert note.processed is True
        assert note.processed_at is not None
        assert entity.type == "task"
        assert entity.status == "captured"
        assert entity.attributes == {"priority": "high"}
        assert entity.ai_meta["extraction_run_id"] == "run-1"
        assert entity.ai_meta["prompt_version"] == "v1"
        assert entity.evidence[0]["raw_note_id"] == str(note_id)
        assert entity.evidence[0]["permalink"] == "https://x/1"
        source = session.get(EntitySource, (entity.id, note_id))
        assert source is not None
        event = session.execute(
            select(EntityEvent).where(EntityEvent.entity_id == entity.id)
        ).scalar_one()
        assert event.body == "Extracted from raw note"
        tag_names = set(
            session.execute(
                select(Tag.name)
                .join(EntityTag, EntityTag.tag_id == Tag.id)
                .where(EntityTag.entity_id == entity.id)
            ).scalars()
        )
        assert tag_names == {"api", "security"}

    assert _count(sqlite_session_factory, ReviewQueueItem) == 0
    [call] = queue.for_queue(QUEUE_ORGANIZE)
    assert call.payload == {
        "raw_note_id": str(note_id),
        "entity_ids": [str(outcome.entity_ids[0])],
    }
    assert call.dedupe_key == str(note_id)
    assert notifier.of_type(EVENT_RAW_NOTE_PROCESSED) == [
        {"id": str(note_id), "entity_count": 1}
    ]
    assert len(notifier.of_type(EVENT_ENTITY_CREATED)) == 1


def test_extraction_is_idempotent_for_processed_notes(sqlite_session_factory, policy) -> None:
    """Re-running extraction on a processed note creates nothing."""
    note_id = make_note(sqlite_session_factory)
    llm = StubLLMClient(tool_reply({"entities": [_task()]}))
    stage = _stage(sqlite_session_factory, policy, llm)

    stage.run(note_id)
    second = stage.run(note_id)

    assert second.skipped is True
    assert len(llm.calls) == 1
    assert _count(sqlite_session_factory, Entity) == 1


def test_missing_note_is_skipped(sqlite_session_factory, policy) -> None:
    """An unknown note id is a no-op."""
    from uuid import uuid4

    outcome = _stage(sqlite_session_factory, policy, StubLLMClient()).run(uuid4())

    assert outcome.skipped is True


def test_low_confidence_fields_become_review_items(sqlite_session_factory, policy) -> None:
    """Per-field and overall low confidence queue the matching review types."""
    note_id = make_note(sqlite_session_factory)
    notifier = RecordingNotifier()
    entity = _task(
        confidence=0.6,
        attributes={"owner": "Dana", "priority": "high"},
        field_confidence={
            "type": {"confidence": 0.5, "reason": "could be a decision"},
            "owner": {"confidence": 0.4, "reason": "name mentioned once"},
            "priority": {"confidence": 0.7},
            "content": {"confidence": 0.95},
        },
    )
    llm = StubLLMClient(tool_reply({"entities": [entity]}))

    outcome = _stage(sqlite_session_factory, policy, llm, notifier=notifier).run(note_id)

    with closing(sqlite_session_factory()) as session:
        items = session.execute(select(ReviewQueueItem)).scalars().all()
    by_type: dict[str, list[ReviewQueueItem]] = {}
    for item in items:
        by_type.setdefault(item.review_type, []).append(item)

    assert by_type["type_classification"][0].ai_suggestion == {
        "suggested_type": "task",
        "explanation": "could be a decision",
    }
    assert by_type["assignee_suggestion"][0].ai_suggestion["suggested_assignee_name"] == "Dana"
    low = {tuple(sorted(item.ai_suggestion)) for item in by_type["low_confidence"]}
    assert ("field_key", "suggested_value") in low
    assert ("explanation",) in low
    assert len(by_type["low_confidence"]) == 2
    assert len(outcome.review_items) == 4
    assert len(notifier.of_type(EVENT_REVIEW_CREATED)) == 4


def test_relationships_use_batch_indices(sqlite_session_factory, policy) -> None:
    """Relationships link entities of the batch; out-of-range indices are skipped."""
    note_id = make_note(sqlite_session_factory)
    decision = {
        "type": "decision",
        "content": "Use a token bucket",
        "status": "decided",
        "confidence": 0.93,
        "evidence": [{"quote": "token bucket"}],
        "attributes": {"chosen": "token bucket"},
    }
    llm = StubLLMClient(
        tool_reply(
            {
                "entities": [_task(), decision],
                "relationships": [
                    {"source_index": 0, "target_index": 1, "relationship_type": "derived_from"},
                    {"source_index": 0, "target_index": 5, "relationship_type": "related_to"},
                ],
            }
        )
    )

    outcome = _stage(sqlite_session_factory, policy, llm).run(note_id)

    with closing(sqlite_session_factory()) as session:
        edge = session.execute(select(EntityRelationship)).scalar_one()
    assert edge.source_id == outcome.entity_ids[0]
    assert edge.target_id == outcome.entity_ids[1]
    assert edge.meta == {"created_by": "ai", "reason": "extracted_in_note"}


def test_schema_violation_records_error_and_leaves_note_unprocessed(
    sqlite_session_factory, policy
) -> None:
    """A deterministic oracle failure writes nothing but the error."""
    note_id = make_note(sqlite_session_factory)
    bad = {"entities": [{"type": "task", "content": ""}]}
    llm = StubLLMClient(tool_reply(bad), tool_reply(bad))
    queue = RecordingJobQueue()

    with pytest.raises(SchemaViolation):
        _stage(sqlite_session_factory, policy, llm, job_queue=queue).run(note_id)

    with closing(sqlite_session_factory()) as session:
        note = session.get(RawNote, note_id)
        assert note.processed is False
        assert "schema validation" in note.processing_error
    assert _count(sqlite_session_factory, Entity) == 0
    assert queue.calls == []


def test_apply_failure_rolls_back_the_whole_note(
    sqlite_session_factory, policy, monkeypatch
) -> None:
    """A failure after entities are inserted leaves no partial rows behind."""
    note_id = make_note(sqlite_session_factory)
    llm = StubLLMClient(tool_reply({"entities": [_task(), _task("Document limits")]}))

    def _boom(*args, **kwargs):
        raise RuntimeError("tag store down")

    monkeypatch.setattr("pipeline.extraction.upsert_tags", _boom)

    with pytest.raises(RuntimeError):
        _stage(sqlite_session_factory, policy, llm).run(note_id)

    assert _count(sqlite_session_factory, Entity) == 0
    assert _count(sqlite_session_factory, EntitySource) == 0
    with closing(sqlite_session_factory()) as session:
        note = session.get(RawNote, note_id)
        assert note.processed is False
        assert note.processing_error == "tag store down"


def test_organize_enqueue_failure_is_recovered_on_rerun(sqlite_session_factory, policy) -> None:
    """A failed organization enqueue is retried without extracting again."""
    note_id = make_note(sqlite_session_factory)
    llm = StubLLMClient(tool_reply({"entities": [_task()]}))
    failing = RecordingJobQueue(fail_with=ServiceUnavailable("broker down"))

    with pytest.raises(ServiceUnavailable):
        _stage(sqlite_session_factory, policy, llm, job_queue=failing).run(note_id)

    with closing(sqlite_session_factory()) as session:
        note = session.get(RawNote, note_id)
        assert note.processed is True
        assert note.processing_error.startswith(ORGANIZE_ENQUEUE_FAILED)

    queue = RecordingJobQueue()
    outcome = _stage(sqlite_session_factory, policy, StubLLMClient(), job_queue=queue).run(
        note_id
    )

    assert outcome.organize_job is not None
    assert len(queue.for_queue(QUEUE_ORGANIZE)) == 1
    assert _count(sqlite_session_factory, Entity) == 1
    with closing(sqlite_session_factory()) as session:
        assert session.get(RawNote, note_id).processing_error is None


def test_empty_extraction_marks_note_processed_without_organization(
    sqlite_session_factory, policy
) -> None:
    """A note with nothing actionable is processed and not organized."""
    note_id = make_note(sqlite_session_factory, content="lunch was good")
    queue = RecordingJobQueue()
    llm = StubLLMClient(tool_reply({"entities": []}))

    outcome = _stage(sqlite_session_factory, policy, llm, job_queue=queue).run(note_id)

    assert outcome.entity_ids == []
    assert queue.calls == []
    with closing(sqlite_session_factory()) as session:
        assert session.get(RawNote, note_id).processed is True
