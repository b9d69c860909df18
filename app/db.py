"""Postgres access for the session store: a lazily built pool and timed query helpers."""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Any, Iterable

import psycopg2.extras
from psycopg2.pool import SimpleConnectionPool

logger = logging.getLogger("cascade.db")
query_logger = logging.getLogger("cascade.db.query")

SLOW_QUERY_MS = float(os.getenv("CASCADE_QUERY_SLOW_MS", "200"))
LOG_ALL_QUERIES = os.getenv("CASCADE_QUERY_LOG", "").strip() == "1"

_pool: SimpleConnectionPool | None = None
_pool_lock = threading.Lock()


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL or SUPABASE_DB_URL is required when USE_DB=1")
    return url


def _shorten(value: Any) -> Any:
    # long values (configuration documents) are truncated
    if isinstance(value, str) and len(value) > 80:
        return f"{value[:40]}...<{len(value)} chars>"
    return value


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> SimpleConnectionPool:
    global _pool
    with _pool_lock:
        if _pool is None:
            low = minconn if minconn is not None else int(os.getenv("CASCADE_DB_POOL_MIN", "1"))
            high = maxconn if maxconn is not None else int(os.getenv("CASCADE_DB_POOL_MAX", "5"))
            _pool = SimpleConnectionPool(low, high, dsn=get_db_url())
            logger.info("db_pool_ready min=%s max=%s", low, high)
        return _pool


@contextmanager
def get_conn():
    """Borrow a pooled connection; commit on success, roll back on error."""
    pool = _pool or init_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


@contextmanager
def _timed(query_name: str | None, params: Iterable[Any] | None):
    started = time.perf_counter()
    stats = {"rowcount": None}
    yield stats
    elapsed_ms = (time.perf_counter() - started) * 1000
    if not (query_name or LOG_ALL_QUERIES or elapsed_ms >= SLOW_QUERY_MS):
        return
    shown = [_shorten(p) for p in params] if params is not None else None
    if elapsed_ms >= SLOW_QUERY_MS:
        query_logger.warning("db_slow_query name=%s ms=%.2f rowcount=%s params=%s", query_name, elapsed_ms, stats["rowcount"], shown)
    else:
        query_logger.info("db_query name=%s ms=%.2f rowcount=%s params=%s", query_name, elapsed_ms, stats["rowcount"], shown)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    with _timed(query_name, params) as stats:
        with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
            cur.execute(sql, params or [])
            row = cur.fetchone()
            stats["rowcount"] = cur.rowcount
    return dict(row) if row else None


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    with _timed(query_name, params) as stats:
        with conn.cursor() as cur:
            cur.execute(sql, params or [])
            stats["rowcount"] = cur.rowcount
    return stats["rowcount"]
