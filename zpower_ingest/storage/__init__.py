"""SQLite persistence for readings."""

from .reading_store import ReadingStore
from .schema import SCHEMA_VERSION, readings

__all__ = ["ReadingStore", "SCHEMA_VERSION", "readings"]
