"""Best-effort fan-out of domain events after a transaction commits.

Publishing never raises into the caller. The Redis implementation shares one
pub/sub channel between all processes; events travel as JSON objects of the
form ``{"type": ..., "ts": ..., "data": ...}``.
"""

from __future__ import annotations

import json
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol

from redis import Redis

from config import settings
from services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

EventHandler = Callable[["DomainEvent"], None]
Unsubscribe = Callable[[], None]


@dataclass(frozen=True)
class DomainEvent:
    """One published domain event."""

    type: str
    ts: str
    data: dict[str, Any]

    @classmethod
    def create(cls, event_type: str, payload: Mapping[str, Any]) -> "DomainEvent":
        return cls(
            type=event_type,
            ts=datetime.now(timezone.utc).isoformat(),
            data=dict(payload),
        )

    def to_json(self) -> str:
        return json.dumps(
            {"type": self.type, "ts": self.ts, "data": self.data},
            default=str,
            separators=(",", ":"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "DomainEvent":
        parsed = json.loads(raw)
        return cls(type=parsed["type"], ts=parsed["ts"], data=dict(parsed.get("data") or {}))


class EventNotifier(Protocol):
    """Publish/subscribe contract for domain events."""

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        """Publish one event. Implementations must not raise."""
        ...

    def subscribe(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        """Register a handler for one event type, or ``ALL_EVENTS``."""
        ...


class NullNotifier:
    """Notifier that drops every event."""

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        return None

    def subscribe(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        return lambda: None


class LocalEventNotifier:
    """In-process fan-out; handler failures are logged and swallowed."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = defaultdict(list)
        self._lock = threading.Lock()

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        self.dispatch(DomainEvent.create(event_type, payload))

    def dispatch(self, event: DomainEvent) -> None:
        """Deliver an already-built event to matching handlers."""
        with self._lock:
            handlers = [*self._handlers.get(event.type, ()), *self._handlers.get(ALL_EVENTS, ())]
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.warning("event handler failed", exc_info=True, extra={"event": event.type})

    def subscribe(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        with self._lock:
            self._handlers[event_type].append(handler)

        def unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(event_type, [])
                if handler in handlers:
                    handlers.remove(handler)

        return unsubscribe

    def handler_count(self) -> int:
        with self._lock:
            return sum(len(handlers) for handlers in self._handlers.values())


class RedisEventNotifier:
    """Publish events to a Redis channel and relay them to local subscribers."""

    def __init__(self, client: Redis, channel: str | None = None) -> None:
        self._client = client
        self._channel = channel or settings.notifier.channel
        self._local = LocalEventNotifier()
        self._listener = None
        self._listener_lock = threading.Lock()

    @property
    def channel(self) -> str:
        return self._channel

    def publish(self, event_type: str, payload: Mapping[str, Any]) -> None:
        event = DomainEvent.create(event_type, payload)
        try:
            self._client.publish(self._channel, event.to_json())
        except Exception:
            logger.warning(
                "event publish failed", exc_info=True, extra={"event": event_type}
            )

    def subscribe(self, event_type: str, handler: EventHandler) -> Unsubscribe:
        unsubscribe_local = self._local.subscribe(event_type, handler)
        self._ensure_listener()

        def unsubscribe() -> None:
            unsubscribe_local()
            if self._local.handler_count() == 0:
                self._stop_listener()

        return unsubscribe

    def _on_message(self, message: Mapping[str, Any]) -> None:
        try:
            event = DomainEvent.from_json(message["data"])
        except (KeyError, TypeError, ValueError):
            logger.debug("ignoring malformed event message")
            return
        self._local.dispatch(event)

    def _ensure_listener(self) -> None:
        with self._listener_lock:
            if self._listener is not None:
                return
            pubsub = self._client.pubsub(ignore_subscribe_messages=True)
            pubsub.subscribe(**{self._channel: self._on_message})
            self._listener = pubsub.run_in_thread(sleep_time=0.5, daemon=True)

    def _stop_listener(self) -> None:
        with self._listener_lock:
            if self._listener is None:
                return
            self._listener.stop()
            self._listener = None


def publish_safely(notifier: EventNotifier, event_type: str, payload: Mapping[str, Any]) -> None:
    """Publish an event, logging and discarding any failure."""
    try:
        notifier.publish(event_type, payload)
    except Exception:
        logger.warning("event publish failed", exc_info=True, extra={"event": event_type})


def build_notifier() -> EventNotifier:
    """Build the configured notifier."""
    if not settings.notifier.enabled:
        return NullNotifier()
    return RedisEventNotifier(get_redis_client(), settings.notifier.channel)


__all__ = [
    "ALL_EVENTS",
    "DomainEvent",
    "EventNotifier",
    "LocalEventNotifier",
    "NullNotifier",
    "RedisEventNotifier",
    "build_notifier",
    "publish_safely",
]
