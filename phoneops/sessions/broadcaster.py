from __future__ import annotations

import logging
import queue
import threading
from typing import Iterator

from phoneops.sessions.types import ProgressEvent

logger = logging.getLogger(__name__)


class Subscription:
    """One observer's view of a session's event stream.

    Events are buffered in a bounded queue. A subscriber that falls behind by
    more than the queue size is disconnected (``overflowed``) rather than
    slowing the publisher down; reconnecting yields a fresh snapshot.
    """

    def __init__(self, broadcaster: "ProgressBroadcaster", session_id: str, maxsize: int):
        self.session_id = session_id
        self._broadcaster = broadcaster
        self._queue: queue.Queue[ProgressEvent | None] = queue.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize
        self._closed = threading.Event()
        self.overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _offer(self, event: ProgressEvent) -> bool:
        if self.closed:
            return False
        if self._queue.qsize() >= self._maxsize:
            self.overflowed = True
            self._finish()
            return False
        self._queue.put_nowait(event)
        return True

    def _finish(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        # Sentinel wakes a consumer blocked in get(); the spare slot keeps this non-blocking.
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None on timeout or once the subscription is closed and drained."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def events(self, keepalive_seconds: float | None = None) -> Iterator[ProgressEvent | None]:
        """Yield events until a terminal one is delivered or the subscription closes.

        With ``keepalive_seconds`` set, None is yielded whenever that much time
        passes without an event so transports can emit keep-alive frames.
        """
        try:
            while True:
                event = self.get(timeout=keepalive_seconds)
                if event is None:
                    if self.closed and self._queue.empty():
                        return
                    if keepalive_seconds is not None:
                        yield None
                    continue
                yield event
                if event.is_terminal:
                    return
        finally:
            self.close()

    def close(self) -> None:
        self._broadcaster.unsubscribe(self)
        self._finish()


class ProgressBroadcaster:
    """Per-session fan-out of progress and status events to any number of subscribers."""

    def __init__(self, queue_size: int = 256):
        self._queue_size = queue_size
        self._lock = threading.Lock()
        self._rooms: dict[str, list[Subscription]] = {}

    def subscribe(self, session_id: str, initial: ProgressEvent | None = None) -> Subscription:
        subscription = Subscription(self, session_id, self._queue_size)
        if initial is not None:
            subscription._offer(initial)
        with self._lock:
            self._rooms.setdefault(session_id, []).append(subscription)
        logger.debug("Subscriber attached to session %s", session_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            room = self._rooms.get(subscription.session_id)
            if not room:
                return
            try:
                room.remove(subscription)
            except ValueError:
                return
            if not room:
                del self._rooms[subscription.session_id]
        logger.debug("Subscriber detached from session %s", subscription.session_id)

    def publish(self, session_id: str, event: ProgressEvent) -> int:
        with self._lock:
            room = list(self._rooms.get(session_id, ()))

        delivered = 0
        for subscription in room:
            if subscription._offer(event):
                delivered += 1
            elif subscription.overflowed:
                logger.warning("Dropping slow subscriber on session %s", session_id)
                self.unsubscribe(subscription)
        return delivered

    def subscriber_count(self, session_id: str | None = None) -> int:
        with self._lock:
            if session_id is not None:
                return len(self._rooms.get(session_id, ()))
            return sum(len(room) for room in self._rooms.values())

    def close_all(self) -> None:
        with self._lock:
            rooms = [sub for room in self._rooms.values() for sub in room]
            self._rooms.clear()
        for subscription in rooms:
            subscription._finish()
