"""Telemetry payload formats.

Field names and units differ between gateways and plug firmwares, so the
decoder is driven by a PayloadFormat instead of hard-coded keys.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional


@dataclass(frozen=True)
class PayloadFormat:
    """Where each value lives in a JSON telemetry object.

    Dotted names (``"ENERGY.Power"``) address nested objects.
    ``energy_scale`` converts the reported energy unit into watt-hours.
    """
    name: str
    power_field: str = "power"
    energy_field: Optional[str] = "energy"
    energy_scale: float = 1.0
    voltage_field: Optional[str] = "voltage"
    current_field: Optional[str] = "current"
    timestamp_field: Optional[str] = None


# Zigbee2MQTT reports energy in kWh; last_seen only when enabled in its config.
ZIGBEE2MQTT = PayloadFormat(
    name="zigbee2mqtt",
    energy_scale=1000.0,
    timestamp_field="last_seen",
)

GENERIC = PayloadFormat(
    name="generic",
    timestamp_field="timestamp",
)

PAYLOAD_FORMATS: Dict[str, PayloadFormat] = {
    ZIGBEE2MQTT.name: ZIGBEE2MQTT,
    GENERIC.name: GENERIC,
}


def get_payload_format(name: str) -> PayloadFormat:
    try:
        return PAYLOAD_FORMATS[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown payload format '{name}'. Available: {', '.join(sorted(PAYLOAD_FORMATS))}"
        ) from None
