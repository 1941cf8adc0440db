"""Payload decoder tests.

Run:
    pytest tests/test_decoder.py -v
"""

from datetime import datetime, timedelta, timezone

import orjson
import pytest

from zpower_ingest.decoding import (
    GENERIC,
    PayloadDecoder,
    PayloadFormat,
    get_payload_format,
)
from zpower_ingest.domain import (
    DeviceRegistry,
    MalformedPayload,
    OutOfRange,
    Reading,
    UnknownDevice,
)
from zpower_ingest.domain.reading import from_epoch_millis, to_epoch_millis


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def registry() -> DeviceRegistry:
    return DeviceRegistry(["plug-kitchen", "plug-office"])


@pytest.fixture
def decoder(registry) -> PayloadDecoder:
    return PayloadDecoder(base_topic="zigbee2mqtt", registry=registry)


@pytest.fixture
def z2m_payload() -> bytes:
    """Full Nous A1Z message as published by Zigbee2MQTT."""
    return orjson.dumps({
        "child_lock": "UNLOCK",
        "current": 0.19,
        "energy": 1.25,
        "indicator_mode": "off/on",
        "linkquality": 120,
        "power": 42,
        "power_outage_memory": "restore",
        "state": "ON",
        "voltage": 231,
    })


# =============================================================================
# WELL-FORMED PAYLOADS
# =============================================================================

class TestWellFormedPayload:

    def test_power_only_payload(self, decoder, t0):
        payload = b'{"power": 42.5}'

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

        assert reading == Reading(
            device_id="plug-kitchen",
            timestamp=t0,
            power_watts=42.5,
            raw_payload=payload,
        )

    def test_decoding_is_deterministic(self, decoder, z2m_payload, t0):
        first = decoder.decode("zigbee2mqtt/plug-kitchen", z2m_payload, received_at=t0)
        second = decoder.decode("zigbee2mqtt/plug-kitchen", z2m_payload, received_at=t0)

        assert first == second

    def test_full_zigbee2mqtt_payload(self, decoder, z2m_payload, t0):
        reading = decoder.decode("zigbee2mqtt/plug-office", z2m_payload, received_at=t0)

        assert reading.device_id == "plug-office"
        assert reading.power_watts == 42.0
        assert reading.energy_wh == pytest.approx(1250.0)  # kWh → Wh
        assert reading.voltage_v == 231
        assert reading.current_a == pytest.approx(0.19)
        assert reading.raw_payload == z2m_payload

    def test_missing_optional_fields_are_absent_not_zero(self, decoder, t0):
        reading = decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 3}', received_at=t0)

        assert reading.energy_wh is None
        assert reading.voltage_v is None
        assert reading.current_a is None

    def test_unknown_fields_are_ignored(self, decoder, t0):
        payload = b'{"power": 1.5, "firmware": {"v": 2}, "update": {"state": "idle"}}'

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

        assert reading.power_watts == 1.5

    def test_zero_power_is_valid(self, decoder, t0):
        reading = decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 0}', received_at=t0)
        assert reading.power_watts == 0.0

    def test_received_at_defaults_to_now(self, decoder):
        before = datetime.now(timezone.utc) - timedelta(milliseconds=1)
        reading = decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 1}')
        after = datetime.now(timezone.utc)

        assert before <= reading.timestamp <= after
        assert reading.timestamp.tzinfo is not None


# =============================================================================
# TIMESTAMPS
# =============================================================================

class TestPayloadTimestamp:

    def test_last_seen_iso_is_used(self, decoder, t0):
        seen = t0 - timedelta(seconds=2)
        payload = orjson.dumps({"power": 5, "last_seen": seen.isoformat()})

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

        assert reading.timestamp == seen

    def test_last_seen_epoch_millis_is_used(self, decoder, t0):
        seen_ms = to_epoch_millis(t0) - 1500
        payload = orjson.dumps({"power": 5, "last_seen": seen_ms})

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

        assert reading.timestamp_ms == seen_ms

    def test_timestamp_within_skew_is_accepted(self, decoder, t0):
        payload = orjson.dumps({"power": 5, "last_seen": (t0 + timedelta(seconds=30)).isoformat()})

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

        assert reading.timestamp == t0 + timedelta(seconds=30)

    def test_timestamp_beyond_skew_is_out_of_range(self, decoder, t0):
        payload = orjson.dumps({"power": 5, "last_seen": (t0 + timedelta(minutes=10)).isoformat()})

        with pytest.raises(OutOfRange) as exc:
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)
        assert "future" in str(exc.value)

    def test_invalid_timestamp_string_is_malformed(self, decoder, t0):
        payload = b'{"power": 5, "last_seen": "yesterday-ish"}'

        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

    def test_timestamps_are_truncated_to_millis(self, t0):
        reading = Reading("plug", t0.replace(microsecond=123456), 1.0, b"{}")

        assert reading.timestamp.microsecond == 123000
        assert from_epoch_millis(reading.timestamp_ms) == reading.timestamp


# =============================================================================
# OUT OF RANGE
# =============================================================================

class TestOutOfRange:

    @pytest.mark.parametrize("power", [-5, -0.001, -1e9])
    def test_negative_power(self, decoder, t0, power):
        payload = orjson.dumps({"power": power})

        with pytest.raises(OutOfRange):
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

    def test_negative_energy(self, decoder, t0):
        with pytest.raises(OutOfRange):
            decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 1, "energy": -2}', received_at=t0)

    def test_error_carries_topic(self, decoder, t0):
        with pytest.raises(OutOfRange) as exc:
            decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": -5}', received_at=t0)
        assert exc.value.topic == "zigbee2mqtt/plug-kitchen"
        assert exc.value.reason == "out_of_range"


# =============================================================================
# MALFORMED PAYLOADS
# =============================================================================

class TestMalformedPayload:

    @pytest.mark.parametrize("payload", [
        b"",
        b"not json",
        b'{"power": 4',
        b"[1, 2, 3]",
        b'"power"',
        b"42",
    ])
    def test_unparseable_or_not_an_object(self, decoder, t0, payload):
        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

    def test_missing_power(self, decoder, t0):
        with pytest.raises(MalformedPayload) as exc:
            decoder.decode("zigbee2mqtt/plug-kitchen", b'{"energy": 1.0}', received_at=t0)
        assert "power" in str(exc.value)

    def test_null_power(self, decoder, t0):
        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": null}', received_at=t0)

    @pytest.mark.parametrize("value", ['"lots"', "true", "[1]", '{"w": 1}'])
    def test_power_of_wrong_type(self, decoder, t0, value):
        payload = b'{"power": ' + value.encode() + b"}"

        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)

    def test_optional_field_of_wrong_type(self, decoder, t0):
        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 1, "voltage": "high"}', received_at=t0)

    @pytest.mark.parametrize("payload", [
        b'{"power": "42.5"}',
        b'{"power": 1, "energy": "1.0"}',
        b'{"power": 1, "voltage": "230"}',
        b'{"power": 1, "current": false}',
        b'{"power": 1, "last_seen": true}',
    ])
    def test_numeric_strings_and_booleans_are_not_numbers(self, decoder, t0, payload):
        with pytest.raises(MalformedPayload):
            decoder.decode("zigbee2mqtt/plug-kitchen", payload, received_at=t0)


# =============================================================================
# TOPICS
# =============================================================================

class TestTopicMapping:

    def test_untracked_device(self, decoder, t0):
        with pytest.raises(UnknownDevice):
            decoder.decode("zigbee2mqtt/plug-garage", b'{"power": 1}', received_at=t0)

    def test_other_base_topic(self, decoder, t0):
        with pytest.raises(UnknownDevice):
            decoder.decode("tasmota/plug-kitchen", b'{"power": 1}', received_at=t0)

    def test_availability_subtopic(self, decoder, t0):
        with pytest.raises(UnknownDevice):
            decoder.decode("zigbee2mqtt/plug-kitchen/availability", b'{"state": "online"}', received_at=t0)

    def test_empty_registry_accepts_any_device(self, t0):
        decoder = PayloadDecoder(base_topic="zigbee2mqtt/", registry=DeviceRegistry())

        reading = decoder.decode("zigbee2mqtt/plug-garage", b'{"power": 1}', received_at=t0)

        assert reading.device_id == "plug-garage"

    @pytest.mark.parametrize("topic", [
        "zigbee2mqtt/bridge/state",
        "zigbee2mqtt/bridge",
        "zigbee2mqtt/plug-garage/set",
        "zigbee2mqtt/",
    ])
    def test_empty_registry_rejects_non_telemetry_topics(self, t0, topic):
        decoder = PayloadDecoder(registry=DeviceRegistry())

        with pytest.raises(UnknownDevice):
            decoder.decode(topic, b'{"power": 1}', received_at=t0)

    def test_friendly_names_with_slashes(self, t0):
        decoder = PayloadDecoder(registry=DeviceRegistry(["kitchen/coffee"]))

        reading = decoder.decode("zigbee2mqtt/kitchen/coffee", b'{"power": 1200}', received_at=t0)

        assert reading.device_id == "kitchen/coffee"


# =============================================================================
# PAYLOAD FORMATS
# =============================================================================

class TestPayloadFormats:

    def test_generic_format_keeps_energy_unit(self, registry, t0):
        decoder = PayloadDecoder(registry=registry, payload_format=GENERIC)

        reading = decoder.decode("zigbee2mqtt/plug-kitchen", b'{"power": 10, "energy": 250}', received_at=t0)

        assert reading.energy_wh == 250

    def test_nested_fields(self, t0):
        tasmota = PayloadFormat(
            name="tasmota",
            power_field="ENERGY.Power",
            energy_field="ENERGY.Total",
            energy_scale=1000.0,
            voltage_field="ENERGY.Voltage",
            current_field="ENERGY.Current",
        )
        decoder = PayloadDecoder(base_topic="tele", registry=DeviceRegistry(["plug1"]), payload_format=tasmota)
        payload = orjson.dumps({"Time": "2026-05-04T12:30:15", "ENERGY": {
            "Total": 0.5, "Power": 17, "Voltage": 229, "Current": 0.08,
        }})

        reading = decoder.decode("tele/plug1", payload, received_at=t0)

        assert reading.power_watts == 17
        assert reading.energy_wh == pytest.approx(500.0)
        assert reading.voltage_v == 229
        assert reading.current_a == pytest.approx(0.08)

    def test_lookup_by_name(self):
        assert get_payload_format("Zigbee2MQTT").energy_scale == 1000.0
        assert get_payload_format("generic") is GENERIC

    def test_unknown_format_name(self):
        with pytest.raises(ValueError) as exc:
            get_payload_format("shelly")
        assert "zigbee2mqtt" in str(exc.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
