"""Structured logging for notetriage workers.

Wraps Python's ``logging`` module with stdout emission and contextvars-based
context propagation so per-job fields (note id, queue, job id) reach every
log line emitted while a job runs.
"""

from .config import configure_logging
from .context import bind_context, clear_context, get_context, job_log_context, log_context

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_context",
    "job_log_context",
    "log_context",
]
