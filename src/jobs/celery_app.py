"""Celery entry point for the note triage pipeline workers.

Start one worker per queue so each job type gets its own concurrency, e.g.
``celery -A jobs.celery_app worker -Q notes.extract``.
"""

from __future__ import annotations

import logging
from contextlib import closing
from typing import Any, Callable, Mapping
from uuid import UUID

from celery import Celery
from celery.signals import celeryd_init, worker_process_init
from sqlalchemy import update

from config import settings
from jobs.retry_policy import RetryPolicy, decide_retry
from llm import LLMClient
from models import RawNote
from observability.config import configure_logging
from observability.context import job_log_context
from pipeline.capture import run_reprocess
from pipeline.constants import QUEUE_EXTRACT, QUEUE_ORGANIZE, QUEUE_REPROCESS
from pipeline.extraction import ExtractionStage
from pipeline.notifier import build_notifier
from pipeline.oracle import OracleClient
from pipeline.organization import OrganizationStage
from pipeline.policy import PipelinePolicy
from pipeline.queue import build_job_queue
from services.database import get_sync_session

LOGGER = logging.getLogger(__name__)

celery_app = Celery("notetriage.pipeline")
celery_app.conf.broker_url = settings.queue.broker_url
celery_app.conf.result_backend = settings.queue.result_backend
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"
celery_app.conf.task_acks_late = True
celery_app.conf.task_reject_on_worker_lost = True
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.task_routes = {
    QUEUE_EXTRACT: {"queue": QUEUE_EXTRACT},
    QUEUE_ORGANIZE: {"queue": QUEUE_ORGANIZE},
    QUEUE_REPROCESS: {"queue": QUEUE_REPROCESS},
}

QUEUE_CONCURRENCY = {
    QUEUE_EXTRACT: settings.queue.extract_concurrency,
    QUEUE_ORGANIZE: settings.queue.organize_concurrency,
    QUEUE_REPROCESS: settings.queue.reprocess_concurrency,
}

_PARKED_ERROR_LENGTH = 2000


def concurrency_for_queues(queues: Any) -> int | None:
    """Return the configured concurrency when a worker consumes one known queue."""
    if isinstance(queues, str):
        names = [name.strip() for name in queues.split(",") if name.strip()]
    else:
        names = list(queues or [])
    if len(names) != 1:
        return None
    return QUEUE_CONCURRENCY.get(names[0])


@celeryd_init.connect
def _configure_worker(sender: Any = None, conf: Any = None, options: Any = None, **_: Any) -> None:
    """Apply per-queue concurrency unless the command line set one."""
    options = options or {}
    if options.get("concurrency"):
        return
    concurrency = concurrency_for_queues(options.get("queues"))
    if concurrency is not None and conf is not None:
        conf.worker_concurrency = concurrency


@worker_process_init.connect
def _configure_worker_logging(**_: Any) -> None:
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service="notetriage-worker",
    )


def _session_factory():
    """Return a new synchronous SQLAlchemy session for pipeline tasks."""
    return get_sync_session()


def build_extraction_stage() -> ExtractionStage:
    """Build the extraction stage from settings."""
    return ExtractionStage(
        _session_factory,
        OracleClient(LLMClient(settings.llm.extraction_model)),
        policy=PipelinePolicy.from_settings(),
        job_queue=build_job_queue(),
        notifier=build_notifier(),
    )


def build_organization_stage() -> OrganizationStage:
    """Build the organization stage from settings."""
    return OrganizationStage(
        _session_factory,
        OracleClient(LLMClient(settings.llm.organization_model)),
        policy=PipelinePolicy.from_settings(),
        notifier=build_notifier(),
    )


def record_parked_error(
    session_factory: Callable[[], Any], raw_note_id: UUID, queue_name: str, exc: BaseException
) -> None:
    """Record a parked job's error on the owning note for operator inspection."""
    message = f"{queue_name} failed: {exc}"[:_PARKED_ERROR_LENGTH]
    try:
        with closing(session_factory()) as session:
            session.execute(
                update(RawNote).where(RawNote.id == raw_note_id).values(processing_error=message)
            )
            session.commit()
    except Exception:
        LOGGER.exception("Failed to record parked job error on raw note %s", raw_note_id)


def run_job(
    *,
    queue_name: str,
    job_id: str | None,
    attempt: int,
    payload: Mapping[str, Any],
    policy: RetryPolicy,
    handler: Callable[[Mapping[str, Any]], dict[str, Any]],
    retry: Callable[[BaseException, int], BaseException],
    release_guard: Callable[[], None],
    session_factory: Callable[[], Any] = _session_factory,
) -> dict[str, Any]:
    """Run one job attempt, then retry, park, or release its guard.

    ``retry`` schedules redelivery after the given countdown and raises (or
    returns) the exception that ends this attempt, as ``Task.retry`` does.
    """
    raw_note_id = payload.get("raw_note_id")
    with job_log_context(queue_name, job_id, attempt, raw_note_id):
        try:
            result = handler(payload)
        except Exception as exc:
            decision = decide_retry(exc, attempt, policy)
            if decision.retry:
                LOGGER.warning(
                    "Job attempt failed; retrying in %ss: %s",
                    decision.delay_seconds,
                    exc,
                )
                raise retry(exc, decision.delay_seconds)
            LOGGER.error(
                "Job parked after attempt %s (%s): %s",
                attempt,
                decision.reason,
                exc,
                exc_info=True,
            )
            if raw_note_id and queue_name != QUEUE_EXTRACT:
                record_parked_error(session_factory, UUID(str(raw_note_id)), queue_name, exc)
            release_guard()
            raise
        release_guard()
        return result


def _release_guard(guard: str | None) -> Callable[[], None]:
    def release() -> None:
        if guard:
            build_job_queue().release(guard)

    return release


def _task_retry(task: Any, max_attempts: int) -> Callable[[BaseException, int], BaseException]:
    def retry(exc: BaseException, countdown: int) -> BaseException:
        return task.retry(exc=exc, countdown=countdown, max_retries=max_attempts - 1)

    return retry


def job_retry_policy(
    queue_name: str,
    max_attempts: int | None,
    backoff_strategy: str | None,
    backoff_base_seconds: int | None,
) -> RetryPolicy:
    """Merge the retry options sent with a job over the queue's configured policy."""
    configured = RetryPolicy.from_settings(queue_name, max_attempts)
    return RetryPolicy(
        max_attempts=configured.max_attempts,
        backoff_strategy=str(backoff_strategy or configured.backoff_strategy),
        backoff_base_seconds=int(
            configured.backoff_base_seconds
            if backoff_base_seconds is None
            else backoff_base_seconds
        ),
    )


def _extract(payload: Mapping[str, Any], job_id: str | None) -> dict[str, Any]:
    outcome = build_extraction_stage().run(UUID(payload["raw_note_id"]), run_id=job_id)
    return {
        "skipped": outcome.skipped,
        "entity_ids": [str(entity_id) for entity_id in outcome.entity_ids],
        "organize_job_id": outcome.organize_job.job_id if outcome.organize_job else None,
    }


def _organize(payload: Mapping[str, Any]) -> dict[str, Any]:
    outcome = build_organization_stage().run(
        UUID(payload["raw_note_id"]),
        [UUID(entity_id) for entity_id in payload.get("entity_ids") or []],
    )
    return {
        "skipped": outcome.skipped,
        "updated_entity_ids": [str(entity_id) for entity_id in outcome.updated_entity_ids],
        "review_ids": [str(item.id) for item in outcome.review_items],
    }


def _reprocess(payload: Mapping[str, Any], job_id: str | None) -> dict[str, Any]:
    requested_by = payload.get("requested_by")
    job = run_reprocess(
        _session_factory,
        build_job_queue(),
        UUID(payload["raw_note_id"]),
        requested_by=UUID(requested_by) if requested_by else None,
        job_id=job_id,
    )
    return {"extract_job_id": job.job_id if job else None}


@celery_app.task(
    bind=True,
    name=QUEUE_EXTRACT,
    acks_late=True,
    autoretry_for=(),
    reject_on_worker_lost=True,
)
def extract_note(
    self,
    payload: dict[str, Any],
    max_attempts: int | None = None,
    backoff_strategy: str | None = None,
    backoff_base_seconds: int | None = None,
    dedupe_guard: str | None = None,
) -> dict[str, Any]:
    """Extract entities from one raw note."""
    job_id = getattr(self.request, "id", None)
    policy = job_retry_policy(QUEUE_EXTRACT, max_attempts, backoff_strategy, backoff_base_seconds)
    return run_job(
        queue_name=QUEUE_EXTRACT,
        job_id=job_id,
        attempt=getattr(self.request, "retries", 0) + 1,
        payload=payload,
        policy=policy,
        handler=lambda data: _extract(data, job_id),
        retry=_task_retry(self, policy.max_attempts),
        release_guard=_release_guard(dedupe_guard),
    )


@celery_app.task(
    bind=True,
    name=QUEUE_ORGANIZE,
    acks_late=True,
    autoretry_for=(),
    reject_on_worker_lost=True,
)
def organize_entities(
    self,
    payload: dict[str, Any],
    max_attempts: int | None = None,
    backoff_strategy: str | None = None,
    backoff_base_seconds: int | None = None,
    dedupe_guard: str | None = None,
) -> dict[str, Any]:
    """Organize the entities extracted from one raw note."""
    policy = job_retry_policy(QUEUE_ORGANIZE, max_attempts, backoff_strategy, backoff_base_seconds)
    return run_job(
        queue_name=QUEUE_ORGANIZE,
        job_id=getattr(self.request, "id", None),
        attempt=getattr(self.request, "retries", 0) + 1,
        payload=payload,
        policy=policy,
        handler=_organize,
        retry=_task_retry(self, policy.max_attempts),
        release_guard=_release_guard(dedupe_guard),
    )


@celery_app.task(
    bind=True,
    name=QUEUE_REPROCESS,
    acks_late=True,
    autoretry_for=(),
    reject_on_worker_lost=True,
)
def reprocess_note(
    self,
    payload: dict[str, Any],
    max_attempts: int | None = None,
    backoff_strategy: str | None = None,
    backoff_base_seconds: int | None = None,
    dedupe_guard: str | None = None,
) -> dict[str, Any]:
    """Reset a raw note and queue it for extraction again."""
    job_id = getattr(self.request, "id", None)
    policy = job_retry_policy(QUEUE_REPROCESS, max_attempts, backoff_strategy, backoff_base_seconds)
    return run_job(
        queue_name=QUEUE_REPROCESS,
        job_id=job_id,
        attempt=getattr(self.request, "retries", 0) + 1,
        payload=payload,
        policy=policy,
        handler=lambda data: _reprocess(data, job_id),
        retry=_task_retry(self, policy.max_attempts),
        release_guard=_release_guard(dedupe_guard),
    )
