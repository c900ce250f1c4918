"""Context propagation helpers for structured logging.

The logging context lives in a ``ContextVar`` so correlation fields bound by a
job wrapper are attached to every record emitted inside that job, including
records from pipeline modules that know nothing about the job.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import ContextManager, Iterator, Mapping

from . import fields

_LOG_CONTEXT: ContextVar[dict[str, str]] = ContextVar("notetriage_log_context", default={})


def get_context() -> dict[str, str]:
    """Return a shallow copy of current logging context."""
    return dict(_LOG_CONTEXT.get())


def bind_context(**values: object) -> None:
    """Bind non-empty values into the current logging context.

    Values are stringified; ``None`` values are ignored.
    """
    if not values:
        return
    current = _LOG_CONTEXT.get().copy()
    for key, value in values.items():
        if value is None:
            continue
        current[str(key)] = str(value)
    _LOG_CONTEXT.set(current)


def clear_context(*keys: str) -> None:
    """Clear selected keys or the entire logging context."""
    if not keys:
        _LOG_CONTEXT.set({})
        return
    current = _LOG_CONTEXT.get().copy()
    for key in keys:
        current.pop(key, None)
    _LOG_CONTEXT.set(current)


@contextmanager
def log_context(values: Mapping[str, object]) -> Iterator[None]:
    """Temporarily bind logging context for the duration of a block."""
    token = _LOG_CONTEXT.set(_LOG_CONTEXT.get().copy())
    try:
        bind_context(**dict(values))
        yield
    finally:
        _LOG_CONTEXT.reset(token)


def job_log_context(
    queue_name: str, job_id: str | None, attempt: int, raw_note_id: object = None
) -> ContextManager[None]:
    """Bind the correlation fields of one pipeline job attempt.

    Every record emitted by the stages while the job runs carries the queue,
    job id, 1-based attempt number and, when known, the owning raw note.
    """
    return log_context(
        {
            fields.QUEUE: queue_name,
            fields.JOB_ID: job_id,
            fields.ATTEMPT: attempt,
            fields.RAW_NOTE_ID: raw_note_id,
        }
    )
