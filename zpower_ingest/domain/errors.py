"""Error taxonomy for the ingest pipeline.

- DecodeError: one bad message, logged and dropped.
- StoreError: retried a bounded number of times, then the message is dropped.
- BrokerConnectionError: retried forever with backoff.
- SchemaMismatch: fatal at startup.
"""

from __future__ import annotations


class DecodeError(Exception):
    """Base class for payload decoding failures."""

    reason = "decode_error"

    def __init__(self, message: str, topic: str = ""):
        self.topic = topic
        super().__init__(message)


class MalformedPayload(DecodeError):
    """Payload is not a JSON object or lacks/mistypes a required field."""

    reason = "malformed_payload"


class UnknownDevice(DecodeError):
    """Topic does not map to a tracked device."""

    reason = "unknown_device"


class OutOfRange(DecodeError):
    """Value outside its physical range or timestamp beyond skew tolerance."""

    reason = "out_of_range"


class StoreError(Exception):
    """Base class for persistence failures."""

    retryable = True


class ConnectionLost(StoreError):
    """Database unreachable, locked or otherwise operationally failing."""


class ConstraintViolation(StoreError):
    """A constraint other than the (device_id, timestamp) conflict fired."""

    retryable = False


class SchemaMismatch(StoreError):
    """Database file was created with an incompatible schema."""

    retryable = False

    def __init__(self, path: str, detail: str):
        self.path = path
        self.detail = detail
        super().__init__(f"Incompatible schema in '{path}': {detail}")


class BrokerConnectionError(Exception):
    """Connecting to the MQTT broker failed."""

    def __init__(self, host: str, port: int, detail: str):
        self.host = host
        self.port = port
        super().__init__(f"Cannot connect to {host}:{port}: {detail}")
