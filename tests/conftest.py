"""Shared fixtures: temporary stores and a fixed reference time."""

from datetime import datetime, timezone

import pytest

from zpower_ingest.storage import ReadingStore


@pytest.fixture
def db_path(tmp_path) -> str:
    return str(tmp_path / "zpowergraph.db")


@pytest.fixture
def store(db_path):
    s = ReadingStore.open(db_path)
    yield s
    s.close()


@pytest.fixture
def t0() -> datetime:
    return datetime(2026, 5, 4, 12, 30, 15, 123000, tzinfo=timezone.utc)
