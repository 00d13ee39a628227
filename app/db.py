"""Postgres access for run, audit, connection and tool-state stores."""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
import contextvars
from typing import Any, Callable, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool


def get_db_url() -> str:
    url = os.getenv("SUPABASE_DB_URL") or os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("SUPABASE_DB_URL or DATABASE_URL is required when USE_DB=1")
    return url


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_logger = logging.getLogger("toolos.db")
_query_logger = logging.getLogger("toolos.db.query")
_DB_STATS: contextvars.ContextVar[dict | None] = contextvars.ContextVar("toolos_db_stats", default=None)
_SLOW_MS = float(os.getenv("TOOLOS_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("TOOLOS_QUERY_LOG", "").strip() == "1"


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, psycopg2.extras.Json):
            redacted.append("<json>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}...{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(query_name: str | None, params: Iterable[Any] | None, elapsed_ms: float, rowcount: int | None) -> None:
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "rowcount": rowcount,
        "params": _redact_params(params),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            if minconn is None:
                minconn = int(os.getenv("TOOLOS_DB_POOL_MIN", "1"))
            if maxconn is None:
                maxconn = int(os.getenv("TOOLOS_DB_POOL_MAX", "10"))
            _POOL = ThreadedConnectionPool(minconn, maxconn, dsn=get_db_url())
            _logger.info("db_pool_ready min=%s max=%s", minconn, maxconn)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


def reset_db_stats() -> None:
    _DB_STATS.set({"queries": 0, "total_ms": 0.0})


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


def _add_db_ms(delta: float) -> None:
    # Mutate in place; worker threads see a copied context.
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        stats = {"queries": 0, "total_ms": 0.0}
        _DB_STATS.set(stats)
    stats["total_ms"] += delta
    stats["queries"] += 1


@contextmanager
def get_conn():
    pool = _get_pool()
    conn = pool.getconn()
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)


def _timed(conn, sql: str, params: Iterable[Any] | None, query_name: str | None, dict_rows: bool, read: Callable[[Any], Any]) -> Any:
    start = time.perf_counter()
    factory = psycopg2.extras.RealDictCursor if dict_rows else None
    with conn.cursor(cursor_factory=factory) as cur:
        cur.execute(sql, params or [])
        result = read(cur)
        rowcount = cur.rowcount
    elapsed_ms = (time.perf_counter() - start) * 1000
    _add_db_ms(elapsed_ms)
    _log_query(query_name, params, elapsed_ms, rowcount)
    return result


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    def read(cur) -> dict | None:
        row = cur.fetchone()
        return dict(row) if row else None

    return _timed(conn, sql, params, query_name, True, read)


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    return _timed(conn, sql, params, query_name, True, lambda cur: [dict(r) for r in cur.fetchall()])


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    return _timed(conn, sql, params, query_name, False, lambda cur: cur.rowcount)
