"""Domain model: readings, device registry and the error taxonomy."""

from .errors import (
    BrokerConnectionError,
    ConnectionLost,
    ConstraintViolation,
    DecodeError,
    MalformedPayload,
    OutOfRange,
    SchemaMismatch,
    StoreError,
    UnknownDevice,
)
from .reading import DeviceRegistry, Reading

__all__ = [
    "Reading",
    "DeviceRegistry",
    "DecodeError",
    "MalformedPayload",
    "UnknownDevice",
    "OutOfRange",
    "StoreError",
    "ConnectionLost",
    "ConstraintViolation",
    "SchemaMismatch",
    "BrokerConnectionError",
]
