"""Subscription manager: keeps the broker session alive.

States:

    DISCONNECTED --connect_requested--> CONNECTING
    CONNECTING   --connect_succeeded--> SUBSCRIBED
    CONNECTING   --connect_failed-----> DISCONNECTED   (backoff, retry forever)
    SUBSCRIBED   --connection_lost----> DISCONNECTED
    any          --stop_requested-----> SHUTTING_DOWN  (terminal)

Subscriptions do not survive a reconnect (clean session), so every entry
into SUBSCRIBED re-issues all configured topics.
"""

from __future__ import annotations

import logging
import random
import threading
from enum import Enum
from typing import Callable, Optional, Sequence

from .. import metrics
from ..domain.errors import BrokerConnectionError
from ..pipeline.retry import RetryConfig
from .broker_client import BrokerClient, MessageHandler

logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    SHUTTING_DOWN = "shutting_down"


class SubscriptionEvent(str, Enum):
    CONNECT_REQUESTED = "connect_requested"
    CONNECT_SUCCEEDED = "connect_succeeded"
    CONNECT_FAILED = "connect_failed"
    CONNECTION_LOST = "connection_lost"
    STOP_REQUESTED = "stop_requested"


class InvalidTransition(Exception):
    def __init__(self, state: SubscriptionState, event: SubscriptionEvent):
        self.state = state
        self.event = event
        super().__init__(f"No transition from {state.value} on {event.value}")


_TRANSITIONS = {
    (SubscriptionState.DISCONNECTED, SubscriptionEvent.CONNECT_REQUESTED): SubscriptionState.CONNECTING,
    (SubscriptionState.CONNECTING, SubscriptionEvent.CONNECT_SUCCEEDED): SubscriptionState.SUBSCRIBED,
    (SubscriptionState.CONNECTING, SubscriptionEvent.CONNECT_FAILED): SubscriptionState.DISCONNECTED,
    (SubscriptionState.SUBSCRIBED, SubscriptionEvent.CONNECTION_LOST): SubscriptionState.DISCONNECTED,
}


def transition(state: SubscriptionState, event: SubscriptionEvent) -> SubscriptionState:
    """Next state for ``event``. Pure."""
    if state is SubscriptionState.SHUTTING_DOWN or event is SubscriptionEvent.STOP_REQUESTED:
        return SubscriptionState.SHUTTING_DOWN
    try:
        return _TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransition(state, event) from None


DEFAULT_RECONNECT = RetryConfig(max_attempts=None, base_delay=1.0, max_delay=60.0, jitter=0.25)


class SubscriptionManager:
    """Drives a BrokerClient through the state machine above.

    Messages are forwarded untouched to ``on_message``; decoding and
    persistence happen elsewhere.

    Args:
        client: Broker client (paho in production, a fake in tests).
        topics: Topics to (re)subscribe on every connection.
        on_message: Called with (topic, payload) on the polling thread.
        qos: Subscription QoS.
        reconnect: Backoff policy; ``max_attempts`` is ignored (never gives up).
        sleep: Wait between attempts; defaults to a wait that a stop request interrupts.
        rng: Random source for the backoff jitter.
        poll_interval: Max seconds per network poll.
    """

    def __init__(
        self,
        client: BrokerClient,
        topics: Sequence[str],
        on_message: MessageHandler,
        qos: int = 1,
        reconnect: RetryConfig = DEFAULT_RECONNECT,
        sleep: Optional[Callable[[float], object]] = None,
        rng: Optional[random.Random] = None,
        poll_interval: float = 1.0,
    ):
        if not topics:
            raise ValueError("at least one topic is required")
        self._client = client
        self._topics = tuple(topics)
        self._on_message = on_message
        self._qos = qos
        self._reconnect = reconnect
        self._rng = rng
        self._poll_interval = poll_interval

        self._stop_event = threading.Event()
        self._sleep = sleep or self._stop_event.wait
        self._lock = threading.RLock()  # request_stop may run inside a signal handler
        self._state = SubscriptionState.DISCONNECTED
        self._failed_attempts = 0

        self._connects = 0
        self._connect_failures = 0
        self._connections_lost = 0

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def topics(self) -> tuple:
        return self._topics

    def _fire(self, event: SubscriptionEvent) -> SubscriptionState:
        with self._lock:
            previous = self._state
            self._state = transition(previous, event)
            current = self._state
        if current is not previous:
            logger.debug("[MQTT] %s --%s--> %s", previous.value, event.value, current.value)
            metrics.BROKER_CONNECTED.set(1 if current is SubscriptionState.SUBSCRIBED else 0)
        return current

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run_forever(self) -> None:
        """Connect, subscribe and poll until request_stop() is called."""
        self._client.set_message_handler(self._on_message)
        while True:
            state = self._state
            if state is SubscriptionState.SHUTTING_DOWN or self._stop_event.is_set():
                break
            if state is SubscriptionState.DISCONNECTED:
                self._wait_before_connect()
                self._fire(SubscriptionEvent.CONNECT_REQUESTED)
            elif state is SubscriptionState.CONNECTING:
                self.step_connect()
            elif state is SubscriptionState.SUBSCRIBED:
                self.step_poll()
        self._fire(SubscriptionEvent.STOP_REQUESTED)
        logger.info("[MQTT] Subscription loop finished. %s", self.stats)

    def _wait_before_connect(self) -> None:
        if self._failed_attempts == 0:
            return
        delay = self._reconnect.calculate_delay(self._failed_attempts, self._rng)
        logger.info(
            "[MQTT] Reconnecting in %.1fs (attempt %d)", delay, self._failed_attempts + 1
        )
        self._sleep(delay)

    def step_connect(self) -> SubscriptionState:
        """One connection attempt from CONNECTING."""
        try:
            self._client.connect()
        except BrokerConnectionError as e:
            self._failed_attempts += 1
            self._connect_failures += 1
            logger.warning("[MQTT] Connect failed (attempt %d): %s", self._failed_attempts, e)
            return self._fire(SubscriptionEvent.CONNECT_FAILED)

        state = self._fire(SubscriptionEvent.CONNECT_SUCCEEDED)
        if state is not SubscriptionState.SUBSCRIBED:
            return state
        return self._on_subscribed()

    def _on_subscribed(self) -> SubscriptionState:
        try:
            self._client.subscribe(self._topics, self._qos)
        except BrokerConnectionError as e:
            self._failed_attempts += 1
            logger.warning("[MQTT] Subscribe failed: %s", e)
            return self._fire(SubscriptionEvent.CONNECTION_LOST)

        self._connects += 1
        if self._connects > 1:
            metrics.BROKER_RECONNECTS.inc()
        self._failed_attempts = 0
        for topic in self._topics:
            logger.info("[MQTT] Subscribed to %s (qos=%d)", topic, self._qos)
        return self._state

    def step_poll(self) -> SubscriptionState:
        """One network poll from SUBSCRIBED."""
        if self._client.poll(self._poll_interval):
            return self._state
        self._connections_lost += 1
        # Back off a little even on the first retry after a drop.
        self._failed_attempts = 1
        logger.warning("[MQTT] Connection lost, will reconnect")
        return self._fire(SubscriptionEvent.CONNECTION_LOST)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Make run_forever() return; safe from any thread or a signal handler."""
        self._stop_event.set()
        self._fire(SubscriptionEvent.STOP_REQUESTED)

    def close(self) -> None:
        """Disconnect from the broker. Call after run_forever() returned."""
        try:
            self._client.disconnect()
        except Exception as e:
            logger.warning("[MQTT] Error disconnecting: %s", e)
        metrics.BROKER_CONNECTED.set(0)

    @property
    def stats(self) -> dict:
        return {
            "state": self._state.value,
            "topics": list(self._topics),
            "connects": self._connects,
            "reconnects": max(self._connects - 1, 0),
            "connect_failures": self._connect_failures,
            "connections_lost": self._connections_lost,
        }
