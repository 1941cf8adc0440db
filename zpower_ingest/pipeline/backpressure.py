"""Bounded queue between the broker thread and the store workers.

Smart plugs report at low frequency, so hitting the limit means the store
is stalled; the oldest messages are sacrificed first.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class BackpressureConfig:
    """Backpressure settings."""
    max_queue_size: int = 1000
    drop_oldest: bool = True  # True = drop oldest, False = drop newest

    @classmethod
    def from_env(cls) -> "BackpressureConfig":
        return cls(
            max_queue_size=int(os.getenv("ZPOWER_QUEUE_MAX_SIZE", "1000")),
            drop_oldest=os.getenv("ZPOWER_QUEUE_DROP_OLDEST", "true").lower() == "true",
        )


@dataclass
class BackpressureStats:
    enqueued: int = 0
    dequeued: int = 0
    dropped: int = 0


class BackpressureQueue(Generic[T]):
    """Thread-safe bounded queue with drop-on-full.

    Usage:
        queue = BackpressureQueue[Message](BackpressureConfig(max_queue_size=100))

        # Producer (paho thread)
        queue.put(message)

        # Consumer (worker)
        message = queue.get(timeout=1.0)
        try:
            ...
        finally:
            queue.task_done()
    """

    def __init__(
        self,
        config: Optional[BackpressureConfig] = None,
        on_drop: Optional[Callable[[T], None]] = None,
    ):
        self._config = config or BackpressureConfig.from_env()
        if self._config.max_queue_size < 1:
            raise ValueError("max_queue_size must be >= 1")
        self._queue: deque[T] = deque()  # limit handled manually
        self._lock = threading.Lock()
        self._not_empty = threading.Condition(self._lock)
        self._all_done = threading.Condition(self._lock)
        self._unfinished = 0
        self._on_drop = on_drop
        self._stats = BackpressureStats()

    def put(self, item: T) -> bool:
        """Add an item, dropping one if the queue is full.

        Returns:
            False when ``item`` itself was dropped (drop-newest mode).
        """
        dropped: Optional[T] = None
        accepted = True
        with self._lock:
            if len(self._queue) >= self._config.max_queue_size:
                self._stats.dropped += 1
                if self._config.drop_oldest:
                    dropped = self._queue.popleft()
                    self._finish_locked()
                else:
                    dropped = item
                    accepted = False

            if accepted:
                self._queue.append(item)
                self._unfinished += 1
                self._stats.enqueued += 1
                self._not_empty.notify()

        if dropped is not None:
            logger.warning(
                "[BACKPRESSURE] Queue full (max=%d), dropped %s message",
                self._config.max_queue_size,
                "oldest" if self._config.drop_oldest else "newest",
            )
            if self._on_drop:
                self._on_drop(dropped)
        return accepted

    def get(self, timeout: Optional[float] = None) -> Optional[T]:
        """Remove and return the oldest item, or None on timeout."""
        with self._not_empty:
            if not self._queue:
                self._not_empty.wait(timeout)
            if not self._queue:
                return None
            self._stats.dequeued += 1
            return self._queue.popleft()

    def task_done(self) -> None:
        with self._lock:
            self._finish_locked()

    def _finish_locked(self) -> None:
        self._unfinished -= 1
        if self._unfinished <= 0:
            self._unfinished = 0
            self._all_done.notify_all()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued item was processed.

        Returns:
            True if drained, False if the timeout elapsed first.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._all_done:
            while self._unfinished > 0:
                if deadline is None:
                    self._all_done.wait()
                    continue
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._all_done.wait(remaining)
            return True

    def clear(self) -> int:
        """Discard queued items. Returns how many were discarded."""
        with self._lock:
            count = len(self._queue)
            self._queue.clear()
            self._unfinished = max(self._unfinished - count, 0)
            if self._unfinished == 0:
                self._all_done.notify_all()
            return count

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._queue)

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "enqueued": self._stats.enqueued,
                "dequeued": self._stats.dequeued,
                "dropped": self._stats.dropped,
                "current_size": len(self._queue),
                "max_size": self._config.max_queue_size,
            }
