"""Payload decoder: broker message bytes → Reading.

Pure function of (topic, payload, received_at). Malformed input raises a
DecodeError subclass and never reaches the store.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from ..domain.errors import MalformedPayload, OutOfRange, UnknownDevice
from ..domain.reading import DeviceRegistry, Reading, from_epoch_millis
from .payload_format import ZIGBEE2MQTT, PayloadFormat

logger = logging.getLogger(__name__)

# Zigbee2MQTT publishes these under <base>/<device>/... and <base>/bridge/...
RESERVED_SUFFIXES = frozenset({"availability", "set", "get"})
RESERVED_DEVICES = frozenset({"bridge"})


class TelemetryFields(BaseModel):
    """Typed view of the values pulled out of a payload."""

    # Strict: numeric strings are a wrong type, not a number.
    model_config = ConfigDict(extra="ignore", strict=True)

    power: float
    energy: Optional[float] = None
    voltage: Optional[float] = None
    current: Optional[float] = None
    timestamp: Optional[Union[int, float, str]] = None

    @field_validator("power", "energy", "voltage", "current", "timestamp", mode="before")
    @classmethod
    def reject_booleans(cls, v):
        if isinstance(v, bool):
            raise ValueError("boolean is not a number or timestamp")
        return v


def _lookup(data: dict, path: Optional[str]) -> Any:
    if not path:
        return None
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _finite(name: str, value: Optional[float], topic: str) -> None:
    if value is None:
        return
    if math.isnan(value):
        raise OutOfRange(f"{name} is NaN", topic)
    if math.isinf(value):
        raise OutOfRange(f"{name} is infinite", topic)


class PayloadDecoder:
    """Decodes telemetry published on ``<base_topic>/<device_id>``.

    Args:
        base_topic: Topic prefix the devices publish under.
        registry: Tracked devices; an empty registry accepts any device.
        payload_format: Field layout of the payload.
        clock_skew: Allowed distance of a payload timestamp into the future.
    """

    def __init__(
        self,
        base_topic: str = "zigbee2mqtt",
        registry: Optional[DeviceRegistry] = None,
        payload_format: PayloadFormat = ZIGBEE2MQTT,
        clock_skew: timedelta = timedelta(seconds=60),
    ):
        self._base = base_topic.rstrip("/")
        self._registry = registry or DeviceRegistry()
        self._format = payload_format
        self._clock_skew = clock_skew

    def device_for_topic(self, topic: str) -> str:
        prefix = self._base + "/"
        if not topic.startswith(prefix):
            raise UnknownDevice(f"Topic outside base '{self._base}': {topic}", topic)

        device_id = topic[len(prefix):]
        if not device_id:
            raise UnknownDevice(f"Topic has no device segment: {topic}", topic)

        if self._registry.tracks_all:
            segments = device_id.split("/")
            if segments[0] in RESERVED_DEVICES or segments[-1] in RESERVED_SUFFIXES:
                raise UnknownDevice(f"Not a telemetry topic: {topic}", topic)
            return device_id

        if not self._registry.is_tracked(device_id):
            raise UnknownDevice(f"Device '{device_id}' is not tracked", topic)
        return device_id

    def decode(
        self,
        topic: str,
        payload: bytes,
        received_at: Optional[datetime] = None,
    ) -> Reading:
        device_id = self.device_for_topic(topic)

        try:
            data = orjson.loads(payload)
        except orjson.JSONDecodeError as e:
            raise MalformedPayload(f"Invalid JSON: {e}", topic) from e
        if not isinstance(data, dict):
            raise MalformedPayload(f"Expected JSON object, got {type(data).__name__}", topic)

        fmt = self._format
        raw_power = _lookup(data, fmt.power_field)
        if raw_power is None:
            raise MalformedPayload(f"Missing '{fmt.power_field}' field", topic)

        try:
            fields = TelemetryFields(
                power=raw_power,
                energy=_lookup(data, fmt.energy_field),
                voltage=_lookup(data, fmt.voltage_field),
                current=_lookup(data, fmt.current_field),
                timestamp=_lookup(data, fmt.timestamp_field),
            )
        except ValidationError as e:
            raise MalformedPayload(f"Invalid field types: {e.errors()[0]['msg']}", topic) from e

        _finite("power", fields.power, topic)
        _finite("energy", fields.energy, topic)
        _finite("voltage", fields.voltage, topic)
        _finite("current", fields.current, topic)
        if fields.power < 0:
            raise OutOfRange(f"Negative power: {fields.power}", topic)
        if fields.energy is not None and fields.energy < 0:
            raise OutOfRange(f"Negative energy: {fields.energy}", topic)

        now = received_at or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        timestamp = now
        if fields.timestamp is not None:
            timestamp = self._parse_timestamp(fields.timestamp, topic)
            if timestamp > now + self._clock_skew:
                raise OutOfRange(
                    f"Timestamp {timestamp.isoformat()} too far in the future", topic
                )

        energy_wh = None
        if fields.energy is not None:
            energy_wh = fields.energy * fmt.energy_scale

        logger.debug("[DECODER] topic=%s device=%s power=%s", topic, device_id, fields.power)
        return Reading(
            device_id=device_id,
            timestamp=timestamp,
            power_watts=float(fields.power),
            energy_wh=energy_wh,
            voltage_v=fields.voltage,
            current_a=fields.current,
            raw_payload=bytes(payload),
        )

    @staticmethod
    def _parse_timestamp(value: Union[int, float, str], topic: str) -> datetime:
        # Numbers are epoch milliseconds (Zigbee2MQTT last_seen: epoch).
        if isinstance(value, (int, float)):
            if isinstance(value, float) and not math.isfinite(value):
                raise OutOfRange("Timestamp is not finite", topic)
            try:
                return from_epoch_millis(int(value))
            except OverflowError as e:
                raise OutOfRange(f"Timestamp out of range: {value}", topic) from e
        try:
            dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as e:
            raise MalformedPayload(f"Invalid timestamp '{value}'", topic) from e
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)
