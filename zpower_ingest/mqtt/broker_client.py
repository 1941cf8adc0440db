"""Broker client interface and its paho-mqtt implementation.

The subscription manager drives the client (connect, subscribe, poll)
itself, so reconnection logic can be tested against a fake client.
"""

from __future__ import annotations

import logging
import random
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

import paho.mqtt.client as mqtt

from ..domain.errors import BrokerConnectionError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], None]


class BrokerClient(ABC):
    """Minimal MQTT client surface used by the subscription manager."""

    @abstractmethod
    def set_message_handler(self, handler: MessageHandler) -> None:
        """Handler called with (topic, payload) for every PUBLISH received."""

    @abstractmethod
    def connect(self) -> None:
        """Open the session. Raises BrokerConnectionError on failure."""

    @abstractmethod
    def subscribe(self, topics: Sequence[str], qos: int) -> None:
        """Subscribe to every topic. Raises BrokerConnectionError on failure."""

    @abstractmethod
    def poll(self, timeout: float) -> bool:
        """Run network I/O for up to ``timeout`` seconds.

        Returns:
            False once the connection is lost.
        """

    @abstractmethod
    def disconnect(self) -> None:
        pass


class PahoBrokerClient(BrokerClient):
    """paho-mqtt client driven through ``loop()`` calls.

    No paho background thread and no paho auto-reconnect: retries and
    backoff belong to the subscription manager.
    """

    def __init__(
        self,
        broker_host: str = "localhost",
        broker_port: int = 1883,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_id: str = "zpowergraph",
        keepalive: int = 30,
        connect_timeout: float = 10.0,
    ):
        self.broker_host = broker_host
        self.broker_port = broker_port
        self.keepalive = keepalive
        self.connect_timeout = connect_timeout
        self.client_id = f"{client_id}-{random.randint(0, 99999)}"

        self._connected = False
        self._connack: Optional[object] = None
        self._message_handler: Optional[MessageHandler] = None

        self._client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        self._client.on_connect = self._on_connect
        self._client.on_disconnect = self._on_disconnect
        self._client.on_message = self._on_message

        if username and password:
            self._client.username_pw_set(username, password)

    def set_message_handler(self, handler: MessageHandler) -> None:
        self._message_handler = handler

    def connect(self) -> None:
        self._connack = None
        logger.info("[MQTT] Connecting to %s:%d as %s", self.broker_host, self.broker_port, self.client_id)
        try:
            self._client.connect(self.broker_host, self.broker_port, keepalive=self.keepalive)
        except (OSError, ValueError) as e:
            raise BrokerConnectionError(self.broker_host, self.broker_port, str(e)) from e

        # Wait for CONNACK
        deadline = time.monotonic() + self.connect_timeout
        while self._connack is None:
            rc = self._client.loop(timeout=0.1)
            if rc != mqtt.MQTT_ERR_SUCCESS:
                raise BrokerConnectionError(
                    self.broker_host, self.broker_port, mqtt.error_string(rc)
                )
            if time.monotonic() > deadline:
                self._client.disconnect()
                raise BrokerConnectionError(self.broker_host, self.broker_port, "CONNACK timeout")

        if not self._connected:
            raise BrokerConnectionError(
                self.broker_host, self.broker_port, f"refused: {self._connack}"
            )

    def subscribe(self, topics: Sequence[str], qos: int) -> None:
        result, _mid = self._client.subscribe([(topic, qos) for topic in topics])
        if result != mqtt.MQTT_ERR_SUCCESS:
            raise BrokerConnectionError(
                self.broker_host, self.broker_port, f"subscribe failed: {mqtt.error_string(result)}"
            )

    def poll(self, timeout: float) -> bool:
        rc = self._client.loop(timeout=timeout)
        if rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning("[MQTT] Network loop error: %s", mqtt.error_string(rc))
            self._connected = False
        return self._connected

    def disconnect(self) -> None:
        self._client.disconnect()
        self._connected = False

    def _on_connect(self, client, userdata, flags, reason_code, properties=None):
        self._connack = reason_code
        if reason_code == 0:
            self._connected = True
            logger.info("[MQTT] Connected to broker")
        else:
            self._connected = False
            logger.error("[MQTT] Connection refused: %s", reason_code)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None):
        self._connected = False
        logger.warning("[MQTT] Disconnected (%s)", reason_code)

    def _on_message(self, client, userdata, msg):
        if self._message_handler:
            self._message_handler(msg.topic, msg.payload)
