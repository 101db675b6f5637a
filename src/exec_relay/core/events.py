"""Per-session event stream with fan-out and replay."""

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone

from exec_relay.models.events import Event, EventKind

logger = logging.getLogger(__name__)

# Marks the end of a subscription queue
_CLOSED = None


class Subscription:
    """One reader of an event stream.

    A subscription starts with every buffered event at or after the
    requested sequence number and then receives live events in publish
    order. Iterating it ends once the stream is closed and drained.
    """

    def __init__(self, stream: "EventStream"):
        self._stream = stream
        self._queue: asyncio.Queue[Event | None] = asyncio.Queue()
        self._finished = False

    def _push(self, event: Event | None) -> None:
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> Event | None:
        """Get next event, optionally with timeout.

        Args:
            timeout: Maximum seconds to wait for an event

        Returns:
            Next event or None if timeout/empty/closed
        """
        if self._finished:
            return None
        try:
            if timeout:
                item = await asyncio.wait_for(self._queue.get(), timeout=timeout)
            else:
                item = self._queue.get_nowait()
        except (asyncio.TimeoutError, asyncio.QueueEmpty):
            return None
        if item is _CLOSED:
            self._finished = True
        return item

    async def get_all(self, timeout: float | None = None) -> list[Event]:
        """Get all pending events.

        If timeout is specified and no events are pending, waits up to
        timeout seconds for at least one event (long-polling).

        Args:
            timeout: Seconds to wait if nothing is pending

        Returns:
            List of all pending events
        """
        events: list[Event] = []
        while True:
            event = await self.get()
            if event is None:
                break
            events.append(event)

        if not events and timeout and not self._finished:
            event = await self.get(timeout=timeout)
            if event is not None:
                events.append(event)
                while True:
                    event = await self.get()
                    if event is None:
                        break
                    events.append(event)

        return events

    def close(self) -> None:
        """Stop receiving events."""
        self._stream._unsubscribe(self)
        self._finished = True

    @property
    def finished(self) -> bool:
        """True once the end of the stream has been consumed."""
        return self._finished

    def __aiter__(self) -> AsyncIterator[Event]:
        return self

    async def __anext__(self) -> Event:
        if self._finished:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED:
            self._finished = True
            raise StopAsyncIteration
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()


class EventStream:
    """Ordered, append-only event log for one session.

    Sequence numbers are assigned when an event is published, so the
    order reflects arrival across stdout, stderr and internal markers
    rather than the stream the line came from. Publishing never blocks:
    every subscriber owns an unbounded queue.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self._events: list[Event] = []
        self._subscribers: set[Subscription] = set()
        self._closed = False
        self._wakeup = asyncio.Event()

    def publish(self, kind: EventKind, payload: str) -> Event:
        """Stamp and append an event, then fan it out to subscribers.

        Args:
            kind: Event kind
            payload: Event text

        Returns:
            The published event
        """
        if self._closed:
            raise RuntimeError(f"Event stream for {self.session_id} is closed")

        event = Event(
            session_id=self.session_id,
            seq=len(self._events) + 1,
            kind=kind,
            payload=payload,
            timestamp=datetime.now(timezone.utc),
        )
        self._events.append(event)

        for subscriber in self._subscribers:
            subscriber._push(event)

        self._notify()
        return event

    def subscribe(self, from_seq: int = 1) -> Subscription:
        """Subscribe to buffered events with ``seq >= from_seq`` plus live ones.

        The snapshot and the registration happen without yielding to the
        event loop, so no event can be missed or delivered twice.
        """
        subscription = Subscription(self)
        for event in self.replay(from_seq):
            subscription._push(event)

        if self._closed:
            subscription._push(_CLOSED)
        else:
            self._subscribers.add(subscription)
        return subscription

    def replay(self, from_seq: int = 1) -> list[Event]:
        """Buffered events with ``seq >= from_seq`` in order."""
        start = max(from_seq, 1) - 1
        return self._events[start:]

    async def get_since(self, after_seq: int, timeout: float | None = None) -> list[Event]:
        """Long-poll for events with ``seq > after_seq``.

        Returns immediately if such events are buffered or the stream is
        closed; otherwise waits up to ``timeout`` seconds for one.
        """
        events = self.replay(after_seq + 1)
        if events or self._closed or not timeout:
            return events

        wakeup = self._wakeup
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(wakeup.wait(), timeout=timeout)
        return self.replay(after_seq + 1)

    def close(self) -> None:
        """Close the stream; subscribers finish after draining."""
        if self._closed:
            return
        self._closed = True
        for subscriber in self._subscribers:
            subscriber._push(_CLOSED)
        self._subscribers.clear()
        self._notify()
        logger.debug(f"Stream {self.session_id}: closed after {self.last_seq} events")

    def _unsubscribe(self, subscription: Subscription) -> None:
        self._subscribers.discard(subscription)

    def _notify(self) -> None:
        # Wake current long-pollers; later ones wait on a fresh event
        self._wakeup.set()
        self._wakeup = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def last_seq(self) -> int:
        """Sequence number of the newest event, 0 if empty."""
        return len(self._events)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    @property
    def events(self) -> list[Event]:
        """All buffered events (read-only copy)."""
        return list(self._events)
