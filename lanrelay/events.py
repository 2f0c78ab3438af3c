"""Lifecycle notifications for streams.

The orchestrator publishes one event per state change (``created``,
``started``, ``stopped``, ``error``, ``deleted``). Consumers get an
``asyncio.Queue`` of plain dicts from :meth:`StreamEventBus.subscribe`; a
subscriber that reconnects can pass the last id it saw and is replayed what
it missed, as far back as the retained history reaches.
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, Iterable

LIFECYCLE_EVENTS = frozenset({"created", "started", "stopped", "error", "deleted"})


@dataclass(frozen=True)
class StreamEvent:
    seq: int
    event: str
    stream_id: str
    payload: Any = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": str(self.seq),
            "seq": self.seq,
            "event": self.event,
            "streamId": self.stream_id,
            "timestamp": self.timestamp,
            # Copied per consumer.
            "payload": copy.deepcopy(self.payload),
        }


@dataclass
class _Subscription:
    queue: asyncio.Queue
    stream_id: str | None = None

    def wants(self, event: StreamEvent) -> bool:
        return self.stream_id is None or self.stream_id == event.stream_id

    def offer(self, event: StreamEvent) -> None:
        if not self.wants(event):
            return
        if self.queue.full():
            # Drop the oldest entry for this subscriber.
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
        try:
            self.queue.put_nowait(event.to_dict())
        except asyncio.QueueFull:
            pass


class StreamEventBus:
    """Thread-safe fan-out of lifecycle events to asyncio subscribers."""

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        max_queue_size: int = 128,
        history_limit: int = 256,
    ) -> None:
        if max_queue_size <= 0 or history_limit <= 0:
            raise ValueError("queue size and history limit must be positive")
        self._loop = loop
        self._queue_size = max_queue_size
        self._history: Deque[StreamEvent] = deque(maxlen=history_limit)
        self._subscriptions: Dict[int, _Subscription] = {}
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def set_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Loop on which queues are fed when publishing from another thread."""

        with self._lock:
            self._loop = loop

    async def subscribe(
        self,
        *,
        last_event_id: str | None = None,
        stream_id: str | None = None,
    ) -> asyncio.Queue:
        subscription = _Subscription(asyncio.Queue(maxsize=self._queue_size), stream_id)
        after = _event_seq(last_event_id)
        with self._lock:
            self._loop = asyncio.get_running_loop()
            self._subscriptions[id(subscription.queue)] = subscription
            missed = [event for event in self._history if after is not None and event.seq > after]
        for event in missed:
            subscription.offer(event)
        return subscription.queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        with self._lock:
            self._subscriptions.pop(id(queue), None)

    def publish(self, event: str, stream_id: str, payload: Any = None) -> str:
        """Record and deliver one event; returns its id."""

        if event not in LIFECYCLE_EVENTS:
            raise ValueError(f"unknown lifecycle event: {event!r}")
        with self._lock:
            record = StreamEvent(
                seq=next(self._counter),
                event=event,
                stream_id=stream_id,
                payload=copy.deepcopy(payload),
            )
            self._history.append(record)
            targets = list(self._subscriptions.values())
            loop = self._loop
        if targets:
            self._dispatch(loop, targets, record)
        return str(record.seq)

    @staticmethod
    def _dispatch(
        loop: asyncio.AbstractEventLoop | None,
        targets: Iterable[_Subscription],
        record: StreamEvent,
    ) -> None:
        def deliver() -> None:
            for subscription in targets:
                subscription.offer(record)

        try:
            on_loop = asyncio.get_running_loop() is loop
        except RuntimeError:
            on_loop = False
        if loop is None or on_loop or loop.is_closed():
            deliver()
        else:
            loop.call_soon_threadsafe(deliver)

    def history_snapshot(self) -> list[dict[str, Any]]:
        with self._lock:
            return [event.to_dict() for event in self._history]


def _event_seq(value: str | None) -> int | None:
    if value in (None, ""):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


__all__ = ["LIFECYCLE_EVENTS", "StreamEvent", "StreamEventBus"]
