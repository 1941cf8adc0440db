"""Process-level wiring.

All shared state (settings, device registry, store, broker client) lives in
one IngestContext built at startup and torn down on shutdown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .common.config import Settings
from .decoding import PayloadDecoder, get_payload_format
from .domain.reading import DeviceRegistry
from .mqtt import BrokerClient, PahoBrokerClient, SubscriptionManager
from .pipeline import (
    BackpressureConfig,
    CoordinatorConfig,
    PipelineCoordinator,
    RetryConfig,
)
from .storage import ReadingStore

logger = logging.getLogger(__name__)


@dataclass
class IngestContext:
    settings: Settings
    registry: DeviceRegistry
    store: ReadingStore
    decoder: PayloadDecoder
    coordinator: PipelineCoordinator
    manager: SubscriptionManager

    @classmethod
    def build(
        cls,
        settings: Settings,
        client: Optional[BrokerClient] = None,
        store: Optional[ReadingStore] = None,
    ) -> "IngestContext":
        """Create every component. Raises SchemaMismatch for an incompatible database."""
        payload_format = get_payload_format(settings.payload_format)
        registry = DeviceRegistry(settings.devices)
        store = store or ReadingStore.open(settings.db_path)

        decoder = PayloadDecoder(
            base_topic=settings.base_topic,
            registry=registry,
            payload_format=payload_format,
            clock_skew=timedelta(seconds=settings.clock_skew_seconds),
        )
        coordinator = PipelineCoordinator(
            decoder,
            store,
            registry,
            CoordinatorConfig(
                workers=settings.workers,
                queue=BackpressureConfig(max_queue_size=settings.queue_max_size),
                store_retry=RetryConfig(
                    max_attempts=settings.store_retry_attempts,
                    base_delay=settings.store_retry_base_delay,
                    max_delay=2.0,
                ),
                drain_timeout=settings.drain_timeout_seconds,
                idle_timeout=settings.idle_timeout_seconds,
            ),
        )

        client = client or PahoBrokerClient(
            broker_host=settings.mqtt_host,
            broker_port=settings.mqtt_port,
            username=settings.mqtt_username,
            password=settings.mqtt_password,
        )
        manager = SubscriptionManager(
            client,
            settings.topics,
            coordinator.handle_message,
            qos=settings.mqtt_qos,
            reconnect=RetryConfig(
                max_attempts=None,
                base_delay=settings.reconnect_base_delay,
                max_delay=settings.reconnect_max_delay,
            ),
        )

        return cls(
            settings=settings,
            registry=registry,
            store=store,
            decoder=decoder,
            coordinator=coordinator,
            manager=manager,
        )

    def run(self) -> None:
        """Block until request_stop(), then shut down in order."""
        logger.info(
            "[SERVICE] Starting broker=%s:%d topics=%s db=%s",
            self.settings.mqtt_host,
            self.settings.mqtt_port,
            ",".join(self.settings.topics),
            self.store.path,
        )
        self.coordinator.start()
        try:
            self.manager.run_forever()
        finally:
            self.shutdown()

    def request_stop(self) -> None:
        self.manager.request_stop()

    def shutdown(self) -> None:
        # In-flight writes first, then the broker, then the database.
        self.manager.request_stop()
        self.coordinator.stop(self.settings.drain_timeout_seconds)
        self.manager.close()
        self.store.close()
        logger.info("[SERVICE] Stopped")
