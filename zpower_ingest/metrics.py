"""Prometheus metrics for the ingest daemon.

Dropped and rejected messages are counted here in addition to the warning
log line each of them gets.
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, start_http_server

logger = logging.getLogger(__name__)

MESSAGES_TOTAL = Counter(
    "zpower_messages_total",
    "Broker messages by pipeline outcome",
    ["outcome"],  # stored, duplicate, rejected, dropped
)
DECODE_ERRORS = Counter(
    "zpower_decode_errors_total",
    "Messages rejected by the payload decoder",
    ["reason"],
)
STORE_RETRIES = Counter(
    "zpower_store_retries_total",
    "Store write attempts that were retried",
)
QUEUE_DROPPED = Counter(
    "zpower_queue_dropped_total",
    "Messages dropped by the backpressure queue",
)
QUEUE_DEPTH = Gauge(
    "zpower_queue_depth",
    "Messages waiting for a store worker",
)
IDLE_READINGS = Counter(
    "zpower_idle_readings_total",
    "Zero-power readings synthesized for silent devices",
)
BROKER_CONNECTED = Gauge(
    "zpower_broker_connected",
    "1 while subscribed to the MQTT broker",
)
BROKER_RECONNECTS = Counter(
    "zpower_broker_reconnects_total",
    "Successful connections after the first one",
)


def start_metrics_server(port: int) -> None:
    start_http_server(port)
    logger.info("[METRICS] Exporter listening on :%d", port)
