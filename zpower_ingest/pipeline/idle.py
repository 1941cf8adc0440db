"""Zero-power filler for silent devices.

A plug that draws nothing stops publishing, which leaves gaps that graph
as "last value held". After ``idle_timeout`` seconds without a message the
device gets a synthesized zero-power reading carrying its last energy
counter and voltage.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from typing import Callable, List, Optional

import orjson

from .. import metrics
from ..domain.errors import StoreError
from ..domain.reading import DeviceRegistry, Reading

logger = logging.getLogger(__name__)


class IdleDeviceMonitor:
    def __init__(
        self,
        store,
        registry: DeviceRegistry,
        idle_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ):
        self._store = store
        self._registry = registry
        self._idle_timeout = idle_timeout
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self._idle_timeout > 0

    def check(self, now: Optional[float] = None) -> List[Reading]:
        """Write a zero-power reading for every device idle past the timeout.

        Returns:
            The readings that were stored.
        """
        if not self.enabled:
            return []

        now = self._clock() if now is None else now
        written: List[Reading] = []
        for device_id, last_seen in self._registry.seen_devices().items():
            if now - last_seen < self._idle_timeout:
                continue

            # New window regardless of the outcome, like a real message would.
            self._registry.mark_seen(device_id, now)
            logger.info(
                "[IDLE] No data for device \"%s\" in the last %.0fs", device_id, now - last_seen
            )
            try:
                reading = self._fill(device_id, now)
            except StoreError as e:
                logger.warning("[IDLE] Could not fill device=%s: %s", device_id, e)
                continue
            if reading is not None:
                written.append(reading)
        return written

    def _fill(self, device_id: str, now: float) -> Optional[Reading]:
        last = self._store.latest(device_id)
        if last is None:
            return None

        reading = Reading(
            device_id=device_id,
            timestamp=datetime.fromtimestamp(now, tz=timezone.utc),
            power_watts=0.0,
            energy_wh=last.energy_wh,
            voltage_v=last.voltage_v,
            current_a=0.0,
            raw_payload=orjson.dumps(
                {"idle": True, "device": device_id, "last_timestamp": last.timestamp_ms}
            ),
        )
        if not self._store.upsert(reading):
            return None
        metrics.IDLE_READINGS.inc()
        return reading
