"""
Typed status events and the channel that delivers them.

The verifier publishes events onto a StatusChannel; every observer (the
status reporter, a cutover controller, a test harness) holds its own
Subscription and receives every matching event in publish order.
"""

import queue
import threading
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class StatusKind(str, Enum):
    ROW_COPY_COMPLETED = "ROW_COPY_COMPLETED"
    VERIFIED = "VERIFIED"
    FATAL = "FATAL"


def _now() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class RowCopyCompleted:
    """The bulk copy finished for ``tables``."""

    tables: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_now, compare=False)

    @property
    def kind(self) -> StatusKind:
        return StatusKind.ROW_COPY_COMPLETED


@dataclass(frozen=True)
class Verified:
    """Cutover verification finished; an empty ``failing_tables`` is a pass."""

    failing_tables: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=_now, compare=False)

    @property
    def kind(self) -> StatusKind:
        return StatusKind.VERIFIED

    @property
    def passed(self) -> bool:
        return not self.failing_tables


@dataclass(frozen=True)
class Fatal:
    """The migration must halt; ``mismatches`` maps table -> offending keys."""

    message: str
    mismatches: Mapping[str, tuple[Any, ...]] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=_now, compare=False)

    @property
    def kind(self) -> StatusKind:
        return StatusKind.FATAL


StatusEvent = RowCopyCompleted | Verified | Fatal

_CLOSED = object()


class Subscription:
    """A private queue of events for one observer."""

    def __init__(self, channel: "StatusChannel", kinds: frozenset[StatusKind]):
        self._channel = channel
        self._queue: queue.Queue = queue.Queue()
        self.kinds = kinds
        self.closed = False

    def accepts(self, event: StatusEvent) -> bool:
        return not self.kinds or event.kind in self.kinds

    def get(self, timeout: float | None = None) -> StatusEvent | None:
        """
        Next event, blocking up to ``timeout`` seconds.

        Returns None once the subscription is closed.

        Raises:
            queue.Empty: If no event arrived within ``timeout``
        """
        item = self._queue.get(timeout=timeout)
        if item is _CLOSED:
            self._queue.put(_CLOSED)
            return None
        return item

    def drain(self) -> list[StatusEvent]:
        """All events delivered so far, without blocking."""
        events = []
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return events
            if item is _CLOSED:
                self._queue.put(_CLOSED)
                return events
            events.append(item)

    def close(self) -> None:
        self._channel.unsubscribe(self)

    def _deliver(self, event: StatusEvent) -> None:
        self._queue.put(event)

    def _finish(self) -> None:
        self.closed = True
        self._queue.put(_CLOSED)

    def __iter__(self) -> Iterator[StatusEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event


class StatusChannel:
    """Fan-out of status events to any number of subscriptions."""

    def __init__(self):
        self._subscriptions: list[Subscription] = []
        self._lock = threading.Lock()
        self.closed = False

    def subscribe(self, *kinds: StatusKind) -> Subscription:
        """Subscribe to ``kinds`` (all kinds when none are given)."""
        subscription = Subscription(self, frozenset(kinds))
        with self._lock:
            if self.closed:
                subscription._finish()
            else:
                self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)
        subscription._finish()

    def publish(self, event: StatusEvent) -> int:
        """Deliver ``event``; returns how many subscriptions received it."""
        with self._lock:
            if self.closed:
                raise RuntimeError("Cannot publish on a closed status channel")
            targets = [s for s in self._subscriptions if s.accepts(event)]
            for subscription in targets:
                subscription._deliver(event)
        return len(targets)

    def close(self) -> None:
        with self._lock:
            self.closed = True
            subscriptions, self._subscriptions = self._subscriptions, []
        for subscription in subscriptions:
            subscription._finish()
