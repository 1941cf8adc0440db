"""Payload decoding: broker bytes → Reading."""

from .decoder import PayloadDecoder, TelemetryFields
from .payload_format import (
    GENERIC,
    PAYLOAD_FORMATS,
    ZIGBEE2MQTT,
    PayloadFormat,
    get_payload_format,
)

__all__ = [
    "PayloadDecoder",
    "TelemetryFields",
    "PayloadFormat",
    "PAYLOAD_FORMATS",
    "ZIGBEE2MQTT",
    "GENERIC",
    "get_payload_format",
]
