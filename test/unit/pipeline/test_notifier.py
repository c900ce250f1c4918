"""Unit tests for domain event notifiers."""

from __future__ import annotations

import json

from pipeline.notifier import (
    ALL_EVENTS,
    DomainEvent,
    LocalEventNotifier,
    RedisEventNotifier,
    publish_safely,
)


class _RecordingRedis:
    """Redis stub capturing published messages."""

    def __init__(self, *, fail: bool = False) -> None:
        self.published: list[tuple[str, str]] = []
        self.fail = fail

    def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


class _ExplodingNotifier:
    def publish(self, event_type, payload) -> None:
        raise RuntimeError("boom")


def test_local_notifier_fans_out_to_type_and_wildcard_handlers() -> None:
    """Handlers for the type and for every event both receive it."""
    notifier = LocalEventNotifier()
    typed: list[DomainEvent] = []
    everything: list[DomainEvent] = []
    notifier.subscribe("entity:created", typed.append)
    notifier.subscribe(ALL_EVENTS, everything.append)

    notifier.publish("entity:created", {"id": "e1"})
    notifier.publish("entity:updated", {"id": "e1"})

    assert [event.data for event in typed] == [{"id": "e1"}]
    assert [event.type for event in everything] == ["entity:created", "entity:updated"]


def test_local_notifier_isolates_failing_handlers() -> None:
    """One failing handler does not stop delivery to the next."""
    notifier = LocalEventNotifier()
    received: list[DomainEvent] = []

    def _broken(event: DomainEvent) -> None:
        raise ValueError("handler bug")

    notifier.subscribe("review_queue:created", _broken)
    notifier.subscribe("review_queue:created", received.append)

    notifier.publish("review_queue:created", {"id": "r1"})

    assert len(received) == 1


def test_unsubscribe_stops_delivery() -> None:
    """An unsubscribed handler receives nothing further."""
    notifier = LocalEventNotifier()
    received: list[DomainEvent] = []
    unsubscribe = notifier.subscribe("entity:created", received.append)

    unsubscribe()
    notifier.publish("entity:created", {"id": "e1"})

    assert received == []
    assert notifier.handler_count() == 0


def test_redis_notifier_publishes_json_envelope() -> None:
    """Events go out as type/ts/data JSON on the configured channel."""
    client = _RecordingRedis()
    notifier = RedisEventNotifier(client, channel="notetriage:test")

    notifier.publish("raw_note:processed", {"id": "n1", "entity_count": 2})

    [(channel, message)] = client.published
    decoded = json.loads(message)
    assert channel == "notetriage:test"
    assert decoded["type"] == "raw_note:processed"
    assert decoded["data"] == {"id": "n1", "entity_count": 2}
    assert decoded["ts"]


def test_redis_notifier_swallows_publish_failures() -> None:
    """A Redis outage never reaches the publisher."""
    notifier = RedisEventNotifier(_RecordingRedis(fail=True), channel="notetriage:test")

    notifier.publish("entity:created", {"id": "e1"})


def test_redis_notifier_relays_incoming_messages() -> None:
    """Messages from the channel are dispatched to local subscribers."""
    notifier = RedisEventNotifier(_RecordingRedis(), channel="notetriage:test")
    received: list[DomainEvent] = []
    notifier._local.subscribe("entity:created", received.append)

    notifier._on_message({"data": DomainEvent.create("entity:created", {"id": "e1"}).to_json()})
    notifier._on_message({"data": "not json"})

    assert [event.data for event in received] == [{"id": "e1"}]


def test_publish_safely_discards_errors() -> None:
    """publish_safely tolerates notifiers that raise."""
    publish_safely(_ExplodingNotifier(), "entity:created", {"id": "e1"})


def test_domain_event_round_trips_through_json() -> None:
    """from_json reverses to_json."""
    event = DomainEvent.create("project:created", {"id": "p1", "name": "API"})

    assert DomainEvent.from_json(event.to_json()) == event
