"""Retry and backoff policy helpers for pipeline jobs."""

from __future__ import annotations

from dataclasses import dataclass

from config import settings
from pipeline.constants import QUEUE_EXTRACT, QUEUE_ORGANIZE, QUEUE_REPROCESS
from pipeline.errors import is_retryable

BACKOFF_STRATEGIES = ("fixed", "exponential", "none")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry/backoff configuration for one job."""

    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: int

    @staticmethod
    def from_settings(queue_name: str, max_attempts: int | None = None) -> "RetryPolicy":
        """Build the retry policy configured for ``queue_name``."""
        queue_config = settings.queue
        configured = {
            QUEUE_EXTRACT: queue_config.extract_attempts,
            QUEUE_ORGANIZE: queue_config.organize_attempts,
            QUEUE_REPROCESS: queue_config.reprocess_attempts,
        }
        if queue_name not in configured:
            raise ValueError(f"unknown queue: {queue_name}")
        return RetryPolicy(
            max_attempts=int(max_attempts or configured[queue_name]),
            backoff_strategy=str(queue_config.backoff_strategy),
            backoff_base_seconds=int(queue_config.backoff_base_seconds),
        )


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of a failed attempt: retry after ``delay_seconds`` or park."""

    retry: bool
    delay_seconds: int = 0
    reason: str = ""


def resolve_retry_policy(policy: RetryPolicy) -> RetryPolicy:
    """Return ``policy`` after validating it."""
    _validate_policy(policy)
    return policy


def should_retry(attempt_count: int, max_attempts: int) -> bool:
    """Return whether another retry attempt is permitted."""
    return int(attempt_count) < int(max_attempts)


def compute_backoff_delay_seconds(
    backoff_strategy: str,
    retry_count: int,
    backoff_base_seconds: int,
) -> int:
    """Compute a retry delay in seconds for a given backoff strategy."""
    if retry_count <= 0:
        raise ValueError("retry_count must be >= 1.")
    if backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
    if backoff_strategy == "none":
        return 0
    if backoff_strategy == "fixed":
        return backoff_base_seconds
    if backoff_strategy == "exponential":
        return backoff_base_seconds * (2 ** (retry_count - 1))
    raise ValueError("Unsupported backoff_strategy.")


def decide_retry(exc: BaseException, attempt: int, policy: RetryPolicy) -> RetryDecision:
    """Decide whether attempt number ``attempt`` (1-based) should be retried.

    Deterministic failures park immediately; transient ones retry with backoff
    until the attempt budget is spent.
    """
    policy = resolve_retry_policy(policy)
    if not is_retryable(exc):
        return RetryDecision(retry=False, reason="non_retryable")
    if not should_retry(attempt, policy.max_attempts):
        return RetryDecision(retry=False, reason="attempts_exhausted")
    return RetryDecision(
        retry=True,
        delay_seconds=compute_backoff_delay_seconds(
            policy.backoff_strategy, attempt, policy.backoff_base_seconds
        ),
        reason="transient",
    )


def _validate_policy(policy: RetryPolicy) -> None:
    """Validate retry policy settings."""
    if policy.max_attempts < 1:
        raise ValueError("max_attempts must be >= 1.")
    if policy.backoff_strategy not in BACKOFF_STRATEGIES:
        raise ValueError("backoff_strategy must be valid.")
    if policy.backoff_base_seconds < 0:
        raise ValueError("backoff_base_seconds must be >= 0.")
