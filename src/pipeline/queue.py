"""Job queue interface and its Celery-backed implementation.

Jobs are keyed for de-duplication: while a job with a given key is queued or
running, enqueuing the same key again collapses to the existing job. The key
is held in Redis (``SET NX`` with a TTL) and released by the worker once the
job finishes, successfully or terminally.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Protocol
from uuid import uuid4

from redis import Redis

from config import settings
from pipeline.errors import ServiceUnavailable
from services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

_DEDUPE_PREFIX = "notetriage:job"


@dataclass(frozen=True)
class Backoff:
    """Retry backoff carried with each job."""

    strategy: str = "exponential"
    base_seconds: int = 2


@dataclass(frozen=True)
class EnqueuedJob:
    """Handle for a job accepted by the queue."""

    job_id: str
    queue_name: str
    payload: dict[str, Any]
    dedupe_key: str | None = None
    attempts: int = 1
    backoff: Backoff = field(default_factory=Backoff)


class JobQueue(Protocol):
    """Durable, at-least-once job queue with per-key de-duplication."""

    def enqueue(
        self,
        queue_name: str,
        payload: Mapping[str, Any],
        *,
        dedupe_key: str | None = None,
        attempts: int = 1,
        backoff: Backoff | None = None,
    ) -> EnqueuedJob | None:
        """Enqueue a job; return None when it collapsed into an existing one.

        Raises:
            ServiceUnavailable: If the broker cannot be reached.
        """
        ...


def dedupe_guard_key(queue_name: str, dedupe_key: str) -> str:
    """Return the Redis key guarding one logical job."""
    return f"{_DEDUPE_PREFIX}:{queue_name}:{dedupe_key}"


def _get_celery_app():
    """Import the Celery app lazily to avoid import cycles."""
    from jobs.celery_app import celery_app

    return celery_app


class CeleryJobQueue:
    """Enqueue jobs through Celery with a Redis de-duplication guard."""

    def __init__(
        self,
        redis_client: Redis,
        *,
        send_task: Callable[..., object] | None = None,
        dedupe_ttl_seconds: int | None = None,
    ) -> None:
        self._redis = redis_client
        self._send_task = send_task
        self._ttl = (
            settings.queue.dedupe_ttl_seconds if dedupe_ttl_seconds is None else dedupe_ttl_seconds
        )

    def enqueue(
        self,
        queue_name: str,
        payload: Mapping[str, Any],
        *,
        dedupe_key: str | None = None,
        attempts: int = 1,
        backoff: Backoff | None = None,
    ) -> EnqueuedJob | None:
        job = EnqueuedJob(
            job_id=str(uuid4()),
            queue_name=queue_name,
            payload=dict(payload),
            dedupe_key=dedupe_key,
            attempts=attempts,
            backoff=backoff or Backoff(),
        )
        guard = dedupe_guard_key(queue_name, dedupe_key) if dedupe_key else None
        if guard is not None and not self._acquire(guard, job.job_id):
            logger.info(
                "job collapsed into pending job",
                extra={"queue": queue_name, "dedupe_key": dedupe_key},
            )
            return None

        sender = self._send_task or _get_celery_app().send_task
        try:
            sender(
                queue_name,
                kwargs={
                    "payload": job.payload,
                    "max_attempts": job.attempts,
                    "backoff_strategy": job.backoff.strategy,
                    "backoff_base_seconds": job.backoff.base_seconds,
                    "dedupe_guard": guard,
                },
                task_id=job.job_id,
                queue=queue_name,
            )
        except Exception as exc:
            if guard is not None:
                self.release(guard)
            raise ServiceUnavailable(
                f"failed to enqueue {queue_name}: {exc}", details={"queue": queue_name}
            ) from exc
        return job

    def release(self, guard: str) -> None:
        """Drop a de-duplication guard so the key can be enqueued again."""
        try:
            self._redis.delete(guard)
        except Exception:
            logger.warning("failed to release job guard", exc_info=True, extra={"guard": guard})

    def _acquire(self, guard: str, job_id: str) -> bool:
        try:
            return bool(self._redis.set(guard, job_id, nx=True, ex=self._ttl or None))
        except Exception as exc:
            raise ServiceUnavailable(f"job de-duplication store unavailable: {exc}") from exc


def build_job_queue() -> CeleryJobQueue:
    """Build the configured Celery job queue."""
    return CeleryJobQueue(get_redis_client())


__all__ = [
    "Backoff",
    "CeleryJobQueue",
    "EnqueuedJob",
    "JobQueue",
    "build_job_queue",
    "dedupe_guard_key",
]
