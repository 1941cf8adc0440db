"""Pipeline coordinator: decoder → store, off the broker thread.

The paho callback only enqueues (handle_message). Worker threads decode
and write. A failure is terminal for its message only: decode errors are
logged and dropped, store errors are retried a bounded number of times and
then logged and dropped.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List, Optional

from .. import metrics
from ..decoding.decoder import PayloadDecoder
from ..domain.errors import DecodeError, StoreError
from ..domain.reading import DeviceRegistry
from .backpressure import BackpressureConfig, BackpressureQueue
from .idle import IdleDeviceMonitor
from .retry import RetryConfig, RetryExecutor, RetryExhausted

logger = logging.getLogger(__name__)


class MessageOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    DROPPED = "dropped"


@dataclass(frozen=True)
class InboundMessage:
    topic: str
    payload: bytes
    received_at: datetime


@dataclass
class CoordinatorConfig:
    workers: int = 1
    queue: BackpressureConfig = field(default_factory=BackpressureConfig)
    store_retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(max_attempts=3, base_delay=0.2, max_delay=2.0)
    )
    drain_timeout: float = 10.0
    idle_timeout: float = 30.0
    poll_interval: float = 1.0


class CoordinatorStats:
    """Counters of the coordinator, safe to update from several workers."""

    def __init__(self):
        self._lock = threading.Lock()
        self.received = 0
        self.stored = 0
        self.duplicates = 0
        self.rejected = 0
        self.dropped = 0
        self.queue_dropped = 0
        self.last_message_at: float = 0

    def incr(self, name: str, amount: int = 1) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + amount)

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} stored={self.stored} "
            f"duplicates={self.duplicates} rejected={self.rejected} "
            f"dropped={self.dropped} queue_dropped={self.queue_dropped}"
        )

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "received": self.received,
                "stored": self.stored,
                "duplicates": self.duplicates,
                "rejected": self.rejected,
                "dropped": self.dropped,
                "queue_dropped": self.queue_dropped,
                "last_message_at": self.last_message_at,
            }


class PipelineCoordinator:
    """Wires decoder output to store input.

    Usage:
        coordinator = PipelineCoordinator(decoder, store, registry)
        coordinator.start()
        manager = SubscriptionManager(client, topics, coordinator.handle_message)
        ...
        coordinator.stop()
    """

    def __init__(
        self,
        decoder: PayloadDecoder,
        store,
        registry: Optional[DeviceRegistry] = None,
        config: Optional[CoordinatorConfig] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self._decoder = decoder
        self._store = store
        self._registry = registry or DeviceRegistry()
        self._config = config or CoordinatorConfig()
        self._clock = clock
        self._stats = CoordinatorStats()

        self._retry = RetryExecutor(
            self._config.store_retry,
            retryable=(StoreError,),
            retry_if=lambda e: getattr(e, "retryable", False),
            sleep=sleep,
        )
        self._queue: BackpressureQueue[InboundMessage] = BackpressureQueue(
            self._config.queue, on_drop=self._on_queue_drop
        )
        self._idle = IdleDeviceMonitor(
            store, self._registry, self._config.idle_timeout, clock=clock
        )
        self._last_idle_check = 0.0

        self._stop_event = threading.Event()
        self._accepting = False
        self._workers: List[threading.Thread] = []

    @property
    def stats(self) -> CoordinatorStats:
        return self._stats

    @property
    def queue(self) -> BackpressureQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Broker side
    # ------------------------------------------------------------------

    def handle_message(self, topic: str, payload: bytes) -> None:
        """Entry point for the subscription manager; never blocks on the store."""
        now = self._clock()
        self._stats.incr("received")
        self._stats.last_message_at = now

        if not self._accepting:
            logger.warning("[PIPELINE] Not accepting messages, dropped topic=%s", topic)
            self._record(MessageOutcome.DROPPED)
            return

        self._queue.put(
            InboundMessage(
                topic=topic,
                payload=bytes(payload),
                received_at=datetime.fromtimestamp(now, tz=timezone.utc),
            )
        )
        metrics.QUEUE_DEPTH.set(self._queue.size)

    def _on_queue_drop(self, message: InboundMessage) -> None:
        self._stats.incr("queue_dropped")
        metrics.QUEUE_DROPPED.inc()
        self._record(MessageOutcome.DROPPED)
        logger.warning("[PIPELINE] Dropped topic=%s reason=queue_full", message.topic)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def process_message(
        self,
        topic: str,
        payload: bytes,
        received_at: Optional[datetime] = None,
    ) -> MessageOutcome:
        """Decode and persist one message. Never raises for per-message errors."""
        try:
            reading = self._decoder.decode(topic, payload, received_at)
        except DecodeError as e:
            metrics.DECODE_ERRORS.labels(reason=e.reason).inc()
            logger.warning("[PIPELINE] Rejected topic=%s reason=%s: %s", topic, e.reason, e)
            return self._record(MessageOutcome.REJECTED)

        self._registry.mark_seen(reading.device_id, self._clock())

        try:
            inserted = self._retry.execute(
                self._store.upsert,
                reading,
                on_retry=lambda attempt, err, delay: metrics.STORE_RETRIES.inc(),
            )
        except RetryExhausted as e:
            logger.warning(
                "[PIPELINE] Dropped device=%s ts=%d reason=store_unavailable attempts=%d: %s",
                reading.device_id, reading.timestamp_ms, e.attempts, e.last_error,
            )
            return self._record(MessageOutcome.DROPPED)
        except StoreError as e:
            logger.error(
                "[PIPELINE] Dropped device=%s ts=%d reason=%s: %s",
                reading.device_id, reading.timestamp_ms, type(e).__name__, e,
            )
            return self._record(MessageOutcome.DROPPED)

        if not inserted:
            logger.debug("[PIPELINE] Duplicate device=%s ts=%d", reading.device_id, reading.timestamp_ms)
            return self._record(MessageOutcome.DUPLICATE)

        logger.info(
            "[PIPELINE] Stored device=%s power=%.1fW energy=%s",
            reading.device_id, reading.power_watts, reading.energy_wh,
        )
        return self._record(MessageOutcome.STORED)

    def _record(self, outcome: MessageOutcome) -> MessageOutcome:
        counter = {
            MessageOutcome.STORED: "stored",
            MessageOutcome.DUPLICATE: "duplicates",
            MessageOutcome.REJECTED: "rejected",
            MessageOutcome.DROPPED: "dropped",
        }[outcome]
        self._stats.incr(counter)
        metrics.MESSAGES_TOTAL.labels(outcome=outcome.value).inc()
        if outcome is MessageOutcome.STORED and self._stats.stored % 100 == 0:
            logger.info("[PIPELINE] %s", self._stats)
        return outcome

    def check_idle(self) -> None:
        now = self._clock()
        if now - self._last_idle_check < self._config.poll_interval:
            return
        self._last_idle_check = now
        self._idle.check(now)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._stop_event.clear()
        self._accepting = True
        # Devices silent since startup still get idle filler.
        self._registry.mark_all_seen(self._clock())
        for i in range(max(self._config.workers, 1)):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i,),
                daemon=True,
                name=f"zpower-writer-{i}",
            )
            t.start()
            self._workers.append(t)
        logger.info(
            "[PIPELINE] Started workers=%d queue_max=%d",
            len(self._workers), self._config.queue.max_queue_size,
        )

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            message = self._queue.get(timeout=self._config.poll_interval)
            if message is not None:
                try:
                    self.process_message(message.topic, message.payload, message.received_at)
                except Exception:
                    logger.exception("[PIPELINE] Worker %d unexpected error", worker_id)
                finally:
                    self._queue.task_done()
                    metrics.QUEUE_DEPTH.set(self._queue.size)
            if worker_id == 0 and self._idle.enabled:
                self.check_idle()

    def stop(self, timeout: Optional[float] = None) -> bool:
        """Stop accepting, drain queued messages, then stop the workers.

        Returns:
            True if everything queued was processed within the timeout.
        """
        timeout = self._config.drain_timeout if timeout is None else timeout
        self._accepting = False
        deadline = time.monotonic() + timeout

        drained = self._queue.join(timeout) if self._workers else self._queue.size == 0
        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=max(deadline - time.monotonic(), 0.1))
        self._workers.clear()

        if not drained:
            abandoned = self._queue.clear()
            logger.warning("[PIPELINE] Drain timed out, abandoned %d queued messages", abandoned)
        logger.info("[PIPELINE] Stopped. %s", self._stats)
        logger.info("[PIPELINE] Store retries: %s", self._retry.stats)
        return drained
