"""Domain model for power-consumption readings."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Optional

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def truncate_to_millis(dt: datetime) -> datetime:
    """Normalize to UTC and drop sub-millisecond precision (storage precision)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(microsecond=(dt.microsecond // 1000) * 1000)


def to_epoch_millis(dt: datetime) -> int:
    delta = truncate_to_millis(dt) - EPOCH
    return (delta.days * 86400 + delta.seconds) * 1000 + delta.microseconds // 1000


def from_epoch_millis(value: int) -> datetime:
    return EPOCH + timedelta(milliseconds=int(value))


@dataclass(frozen=True)
class Reading:
    """One power sample of a smart plug.

    This is the single contract flowing through the pipeline:
    MQTT → decoder → coordinator → store.
    """
    device_id: str
    timestamp: datetime
    power_watts: float
    raw_payload: bytes
    energy_wh: Optional[float] = None
    voltage_v: Optional[float] = None
    current_a: Optional[float] = None

    def __post_init__(self):
        object.__setattr__(self, "timestamp", truncate_to_millis(self.timestamp))

    @property
    def timestamp_ms(self) -> int:
        return to_epoch_millis(self.timestamp)

    def to_row(self) -> dict:
        """Row values for the readings table."""
        return {
            "device_id": self.device_id,
            "timestamp": self.timestamp_ms,
            "power_watts": float(self.power_watts),
            "energy_wh": self.energy_wh,
            "voltage_v": self.voltage_v,
            "current_a": self.current_a,
            "raw_payload": bytes(self.raw_payload),
        }

    @classmethod
    def from_row(cls, row) -> "Reading":
        return cls(
            device_id=row["device_id"],
            timestamp=from_epoch_millis(row["timestamp"]),
            power_watts=row["power_watts"],
            energy_wh=row["energy_wh"],
            voltage_v=row["voltage_v"],
            current_a=row["current_a"],
            raw_payload=bytes(row["raw_payload"]),
        )


class DeviceRegistry:
    """Tracked friendly names plus the last time each one reported.

    An empty registry tracks every device published under the base topic.
    """

    def __init__(self, device_ids: Iterable[str] = ()):
        self._tracked = frozenset(d.strip() for d in device_ids if d and d.strip())
        self._last_seen: Dict[str, float] = {}
        self._lock = threading.Lock()

    @property
    def tracks_all(self) -> bool:
        return not self._tracked

    def is_tracked(self, device_id: str) -> bool:
        return self.tracks_all or device_id in self._tracked

    def mark_seen(self, device_id: str, at: float) -> None:
        with self._lock:
            self._last_seen[device_id] = at

    def mark_all_seen(self, at: float) -> None:
        """Start the idle clock of every tracked device that has not reported yet."""
        with self._lock:
            for device_id in self._tracked:
                self._last_seen.setdefault(device_id, at)

    def last_seen(self, device_id: str) -> Optional[float]:
        with self._lock:
            return self._last_seen.get(device_id)

    def seen_devices(self) -> Dict[str, float]:
        with self._lock:
            return dict(self._last_seen)
