"""Persistent schema of the readings database."""

from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    Float,
    Integer,
    LargeBinary,
    MetaData,
    Table,
    Text,
    UniqueConstraint,
)

# Stored in PRAGMA user_version. Bump on every incompatible change.
SCHEMA_VERSION = 1

metadata = MetaData()

readings = Table(
    "readings",
    metadata,
    Column("device_id", Text, nullable=False),
    Column("timestamp", Integer, nullable=False),  # epoch milliseconds, UTC
    Column("power_watts", Float, nullable=False),
    Column("energy_wh", Float, nullable=True),
    Column("voltage_v", Float, nullable=True),
    Column("current_a", Float, nullable=True),
    Column("raw_payload", LargeBinary, nullable=False),
    UniqueConstraint("device_id", "timestamp", name="uq_readings_device_timestamp"),
    CheckConstraint("power_watts >= 0", name="ck_readings_power_non_negative"),
)

REQUIRED_COLUMNS = frozenset(c.name for c in readings.columns)
UNIQUE_KEY = ("device_id", "timestamp")
