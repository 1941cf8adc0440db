"""zpowergraph ingest: Zigbee2MQTT smart-plug telemetry → SQLite."""

__version__ = "1.1.2"
