from __future__ import annotations

import os
import sqlite3
import time
from contextlib import contextmanager
from typing import Callable, Iterable

import psycopg
from psycopg.rows import dict_row

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    username TEXT NOT NULL,
    balance REAL NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS stocks (
    id INTEGER PRIMARY KEY,
    product_id INTEGER NOT NULL,
    code TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'ready',
    sold_to INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transactions (
    id INTEGER PRIMARY KEY,
    order_id TEXT NOT NULL UNIQUE,
    user_id INTEGER,
    product_id INTEGER,
    quantity INTEGER NOT NULL DEFAULT 1,
    price REAL NOT NULL,
    total_amount REAL,
    payment_method TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    assigned_stocks TEXT,
    created_at TEXT NOT NULL,
    expired_at TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS transaction_queues (
    transaction_id INTEGER NOT NULL,
    stock_id INTEGER NOT NULL,
    PRIMARY KEY (transaction_id, stock_id)
);

CREATE TABLE IF NOT EXISTS deposits (
    id INTEGER PRIMARY KEY,
    ref_id TEXT NOT NULL UNIQUE,
    user_id INTEGER,
    amount REAL NOT NULL,
    payment_channel TEXT,
    status TEXT NOT NULL DEFAULT 'pending',
    paid_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS transactions_status_idx ON transactions (status, created_at);

CREATE INDEX IF NOT EXISTS deposits_status_idx ON deposits (status, created_at)
"""

# Postgres spells auto-increment keys differently.
_POSTGRES_ID = ("id INTEGER PRIMARY KEY", "id BIGSERIAL PRIMARY KEY")

ConnectionFactory = Callable[[], object]


def connection_factory(database_url: str) -> ConnectionFactory:
    """Return a callable opening connections against Postgres or SQLite."""

    def factory():
        retries = int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30"))
        delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
        last_exc: Exception | None = None
        for attempt in range(retries):
            try:
                return _connect_once(database_url)
            except Exception as exc:  # pragma: no cover - only hits when DB down
                last_exc = exc
                if attempt == retries - 1:
                    raise
                time.sleep(delay)
        raise last_exc  # pragma: no cover

    return factory


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
        for statement in _split_statements(SCHEMA_SQL.replace(*_POSTGRES_ID)):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


@contextmanager
def atomic(conn):
    """Group several statements into one database transaction."""
    if hasattr(conn, "transaction"):
        with conn.transaction():
            yield conn
        return

    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
