from __future__ import annotations

import threading
from datetime import datetime, timezone

from phoneops.db.models import SessionStatus
from phoneops.sessions.broadcaster import ProgressBroadcaster
from phoneops.sessions.types import ProgressEvent, event_to_dict


def make_event(percent: int, status: SessionStatus = SessionStatus.RUNNING, event: str = "progress") -> ProgressEvent:
    return ProgressEvent(
        session_id="session-1",
        event=event,
        status=status,
        progress_percent=percent,
        counters={"items_done": percent},
        phase_label="recovering",
        timestamp=datetime.now(tz=timezone.utc),
    )


def test_initial_event_is_delivered_first() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    subscription = broadcaster.subscribe("session-1", initial=make_event(10, event="snapshot"))

    broadcaster.publish("session-1", make_event(20))

    assert subscription.get(timeout=1).event == "snapshot"
    assert subscription.get(timeout=1).progress_percent == 20


def test_publish_fans_out_to_every_subscriber_of_the_session() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    first = broadcaster.subscribe("session-1")
    second = broadcaster.subscribe("session-1")
    other = broadcaster.subscribe("session-2")

    delivered = broadcaster.publish("session-1", make_event(30))

    assert delivered == 2
    assert first.get(timeout=1).progress_percent == 30
    assert second.get(timeout=1).progress_percent == 30
    assert other.get(timeout=0.05) is None
    assert broadcaster.subscriber_count("session-1") == 2
    assert broadcaster.subscriber_count() == 3


def test_slow_subscriber_is_disconnected_on_overflow() -> None:
    broadcaster = ProgressBroadcaster(queue_size=2)
    slow = broadcaster.subscribe("session-1")
    fast = broadcaster.subscribe("session-1")

    for percent in (10, 20):
        broadcaster.publish("session-1", make_event(percent))
    fast.get(timeout=1)
    fast.get(timeout=1)
    delivered = broadcaster.publish("session-1", make_event(30))

    assert delivered == 1
    assert slow.overflowed
    assert slow.closed
    assert broadcaster.subscriber_count("session-1") == 1
    assert [event.progress_percent for event in slow.events()] == [10, 20]


def test_events_stop_after_terminal_event_and_unsubscribe() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    subscription = broadcaster.subscribe("session-1")

    broadcaster.publish("session-1", make_event(50))
    broadcaster.publish("session-1", make_event(100, status=SessionStatus.COMPLETED, event="status"))
    broadcaster.publish("session-1", make_event(100))

    events = list(subscription.events())

    assert [event.status for event in events] == [SessionStatus.RUNNING, SessionStatus.COMPLETED]
    assert broadcaster.subscriber_count("session-1") == 0


def test_events_yield_keepalive_when_idle() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    subscription = broadcaster.subscribe("session-1")
    stream = subscription.events(keepalive_seconds=0.01)

    assert next(stream) is None

    stream.close()
    assert subscription.closed


def test_close_all_wakes_blocked_consumers() -> None:
    broadcaster = ProgressBroadcaster(queue_size=8)
    subscription = broadcaster.subscribe("session-1")
    received: list[object] = []

    consumer = threading.Thread(target=lambda: received.extend(subscription.events()))
    consumer.start()
    broadcaster.close_all()
    consumer.join(timeout=2)

    assert not consumer.is_alive()
    assert received == []
    assert broadcaster.subscriber_count() == 0


def test_event_to_dict_is_json_ready() -> None:
    payload = event_to_dict(make_event(42))

    assert payload["status"] == "running"
    assert payload["progress_percent"] == 42
    assert payload["pending_command"] is None
    assert isinstance(payload["timestamp"], str)
