"""Reading store over SQLite.

Idempotent writes: the (device_id, timestamp) unique key turns broker
re-deliveries into no-ops (first written row wins).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator, Optional

from sqlalchemy import func, inspect, select
from sqlalchemy import exc as sa_exc
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from ..common.db import get_engine
from ..domain.errors import ConnectionLost, ConstraintViolation, SchemaMismatch, StoreError
from ..domain.reading import Reading, to_epoch_millis
from .schema import REQUIRED_COLUMNS, SCHEMA_VERSION, UNIQUE_KEY, metadata, readings

logger = logging.getLogger(__name__)


@contextmanager
def _translate_errors(operation: str):
    """Map SQLAlchemy exceptions onto the StoreError taxonomy."""
    try:
        yield
    except sa_exc.IntegrityError as e:
        raise ConstraintViolation(f"{operation}: {e.orig}") from e
    except (sa_exc.OperationalError, sa_exc.InterfaceError) as e:
        raise ConnectionLost(f"{operation}: {e.orig}") from e
    except sa_exc.SQLAlchemyError as e:
        raise StoreError(f"{operation}: {e}") from e


class ReadingStore:
    """Owns the readings schema and all reads/writes against it.

    Usage:
        store = ReadingStore.open("./zpowergraph.db")
        store.upsert(reading)
        for r in store.query_range("plug-kitchen", start, end):
            ...
    """

    def __init__(self, engine: Engine, path: str = ""):
        self._engine = engine
        self._path = path or str(engine.url.database)
        self._closed = False
        self._ensure_schema()

    @classmethod
    def open(cls, db_path: str) -> "ReadingStore":
        try:
            engine = get_engine(db_path)
        except sa_exc.SQLAlchemyError as e:
            raise ConnectionLost(f"open {db_path}: {e}") from e
        try:
            return cls(engine, db_path)
        except SchemaMismatch:
            engine.dispose()
            raise

    @property
    def path(self) -> str:
        return self._path

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        with _translate_errors("schema check"), self._engine.begin() as conn:
            version = conn.exec_driver_sql("PRAGMA user_version").scalar() or 0
            if version not in (0, SCHEMA_VERSION):
                raise SchemaMismatch(
                    self._path, f"schema version {version}, expected {SCHEMA_VERSION}"
                )

            if inspect(conn).has_table(readings.name):
                self._check_existing_table(conn)
            else:
                metadata.create_all(conn)
                logger.info("[STORE] Created schema v%d in %s", SCHEMA_VERSION, self._path)

            if version == 0:
                conn.exec_driver_sql(f"PRAGMA user_version = {SCHEMA_VERSION}")

    def _check_existing_table(self, conn: Connection) -> None:
        insp = inspect(conn)
        columns = {c["name"] for c in insp.get_columns(readings.name)}
        missing = REQUIRED_COLUMNS - columns
        if missing:
            raise SchemaMismatch(
                self._path, f"readings table lacks columns {sorted(missing)}"
            )

        unique_keys = [tuple(u["column_names"]) for u in insp.get_unique_constraints(readings.name)]
        unique_keys += [
            tuple(i["column_names"]) for i in insp.get_indexes(readings.name) if i.get("unique")
        ]
        if UNIQUE_KEY not in unique_keys:
            raise SchemaMismatch(
                self._path, "readings table has no UNIQUE(device_id, timestamp)"
            )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def upsert(self, reading: Reading) -> bool:
        """Insert the reading unless its key is already stored.

        Returns:
            True if a row was written, False for a duplicate delivery.
        """
        self._check_open()
        stmt = (
            sqlite_insert(readings)
            .values(**reading.to_row())
            .on_conflict_do_nothing(index_elements=list(UNIQUE_KEY))
        )
        with _translate_errors("upsert"), self._engine.begin() as conn:
            result = conn.execute(stmt)
            inserted = result.rowcount == 1

        logger.debug(
            "[STORE] upsert device=%s ts=%d inserted=%s",
            reading.device_id,
            reading.timestamp_ms,
            inserted,
        )
        return inserted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def query_range(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
    ) -> Iterator[Reading]:
        """Readings of a device with start <= timestamp <= end, oldest first.

        Lazy: nothing is queried until the first item is requested. Every
        call runs a fresh query.
        """
        self._check_open()
        stmt = (
            select(readings)
            .where(readings.c.device_id == device_id)
            .where(readings.c.timestamp >= to_epoch_millis(start))
            .where(readings.c.timestamp <= to_epoch_millis(end))
            .order_by(readings.c.timestamp.asc())
        )
        return self._iter_readings(stmt)

    def _iter_readings(self, stmt) -> Iterator[Reading]:
        with _translate_errors("query"), self._engine.connect() as conn:
            for row in conn.execute(stmt).mappings():
                yield Reading.from_row(row)

    def latest(self, device_id: str) -> Optional[Reading]:
        self._check_open()
        stmt = (
            select(readings)
            .where(readings.c.device_id == device_id)
            .order_by(readings.c.timestamp.desc())
            .limit(1)
        )
        with _translate_errors("latest"), self._engine.connect() as conn:
            row = conn.execute(stmt).mappings().first()
        return Reading.from_row(row) if row is not None else None

    def count(self, device_id: Optional[str] = None) -> int:
        self._check_open()
        stmt = select(func.count()).select_from(readings)
        if device_id is not None:
            stmt = stmt.where(readings.c.device_id == device_id)
        with _translate_errors("count"), self._engine.connect() as conn:
            return int(conn.execute(stmt).scalar_one())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_open(self) -> None:
        if self._closed:
            raise ConnectionLost(f"store {self._path} is closed")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._engine.dispose()
        logger.info("[STORE] Closed %s", self._path)
