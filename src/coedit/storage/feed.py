"""Change feed: push-style subscriptions over the document store.

Repositories publish a topic (a container id for locks, a user id for time
entries) after every committed write. A Subscription turns those
notifications into an ordered stream of fresh snapshots: it yields one
snapshot immediately, then one more after each change, until closed.

Snapshots are produced on the consumer side by re-reading the store, so a
burst of changes collapses into a single up-to-date snapshot rather than a
backlog of stale ones.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Callable, Generic, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """Iterator of snapshots for one topic.

    Usage::

        with repo.subscribe("shoot-1") as sub:
            for locks in sub:
                render(locks)
    """

    def __init__(
        self,
        feed: ChangeFeed,
        topic: str,
        snapshot: Callable[[], T],
    ) -> None:
        self._feed = feed
        self._topic = topic
        self._snapshot = snapshot
        self._cond = threading.Condition()
        self._dirty = True  # deliver the initial snapshot
        self._closed = False

    @property
    def topic(self) -> str:
        return self._topic

    @property
    def closed(self) -> bool:
        return self._closed

    def notify(self) -> None:
        """Mark the topic changed; wakes a waiting consumer."""
        with self._cond:
            self._dirty = True
            self._cond.notify_all()

    def next(self, timeout: float | None = None) -> T | None:
        """Block until a snapshot is due; returns None on timeout or close."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._dirty or self._closed, timeout):
                return None
            if self._closed:
                return None
            self._dirty = False
        return self._snapshot()

    def close(self) -> None:
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
        self._feed._remove(self)

    def __iter__(self) -> Iterator[T]:
        while True:
            snap = self.next()
            if snap is None and self._closed:
                return
            yield snap  # type: ignore[misc]

    def __enter__(self) -> Subscription[T]:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class ChangeFeed:
    """In-process topic registry shared by the repositories of one store."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[str, list[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str, snapshot: Callable[[], T]) -> Subscription[T]:
        sub: Subscription[T] = Subscription(self, topic, snapshot)
        with self._lock:
            self._subscribers[topic].append(sub)
        logger.debug("Subscribed to %s", topic)
        return sub

    def publish(self, topic: str) -> None:
        with self._lock:
            subs = list(self._subscribers.get(topic, ()))
        for sub in subs:
            sub.notify()

    def subscriber_count(self, topic: str) -> int:
        with self._lock:
            return len(self._subscribers.get(topic, ()))

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            subs = self._subscribers.get(sub.topic)
            if subs and sub in subs:
                subs.remove(sub)
                if not subs:
                    del self._subscribers[sub.topic]
