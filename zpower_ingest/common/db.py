from __future__ import annotations

import logging
from pathlib import Path

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

BUSY_TIMEOUT_MS = 5000


def build_sqlalchemy_url(db_path: str) -> str:
    if db_path == ":memory:":
        return "sqlite+pysqlite:///:memory:"
    return f"sqlite+pysqlite:///{Path(db_path).expanduser()}"


def _configure_sqlite(dbapi_conn, _record) -> None:
    cursor = dbapi_conn.cursor()
    try:
        cursor.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
    finally:
        cursor.close()


def get_engine(db_path: str) -> Engine:
    """Engine for the SQLite file; the parent directory is created if missing."""
    if db_path != ":memory:":
        Path(db_path).expanduser().parent.mkdir(parents=True, exist_ok=True)

    url = build_sqlalchemy_url(db_path)
    logger.info("[DB] Opening SQLite database path=%s", db_path)

    # Worker threads share the pool; SQLite serializes the writes itself.
    kwargs = {}
    if db_path == ":memory:":
        # One shared connection, otherwise every checkout sees an empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(
        url,
        future=True,
        connect_args={"check_same_thread": False, "timeout": BUSY_TIMEOUT_MS / 1000},
        **kwargs,
    )
    event.listen(engine, "connect", _configure_sqlite)

    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    logger.info("[DB] Connection test OK")

    return engine
