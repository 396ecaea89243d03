from __future__ import annotations

import sqlite3
import time
from typing import Callable, Iterable

import psycopg
from psycopg.rows import dict_row

from .config import Settings

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS payment_orders (
    order_id TEXT PRIMARY KEY,
    payment_id TEXT,
    amount INTEGER,
    amount_paid INTEGER,
    currency TEXT NOT NULL,
    status TEXT NOT NULL,
    customer_email TEXT,
    service_name TEXT,
    payment_gateway TEXT NOT NULL,
    payment_method TEXT,
    receipt TEXT,
    notes_json TEXT,
    failure_reason TEXT,
    verified INTEGER NOT NULL DEFAULT 0,
    verified_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_payment_orders_updated_at ON payment_orders (updated_at);
"""

ConnectionFactory = Callable[[], object]


def connection_factory(settings: Settings) -> ConnectionFactory:
    """Return a callable opening connections against Postgres or SQLite, with connect retries."""

    def get_connection():
        retries = max(settings.db_connect_retries, 1)
        last_exc: Exception | None = None
        for attempt in range(retries):
            try:
                return _connect_once(settings.database_url)
            except (psycopg.OperationalError, sqlite3.OperationalError) as exc:  # pragma: no cover
                last_exc = exc
                if attempt == retries - 1:
                    raise
                time.sleep(settings.db_connect_retry_delay)
        raise last_exc  # pragma: no cover

    return get_connection


def _connect_once(database_url: str):
    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite:///", "")
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return conn

    return psycopg.connect(database_url, autocommit=True, row_factory=dict_row)


def init_db(factory: ConnectionFactory) -> None:
    conn = factory()
    try:
        apply_schema(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
