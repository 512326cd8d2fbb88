"""Postgres connection pool and query helpers."""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
import contextvars
from typing import Any, Iterable

import psycopg2
import psycopg2.extras
from psycopg2.pool import ThreadedConnectionPool
import threading
import logging


def get_db_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is required when USE_DB=1")
    return url


_POOL: ThreadedConnectionPool | None = None
_POOL_LOCK = threading.Lock()
_DB_MS = 0.0
_DB_LOCK = threading.Lock()
_logger = logging.getLogger("appstore.db")
_query_logger = logging.getLogger("appstore.db.query")
_DB_STATS: contextvars.ContextVar[dict] = contextvars.ContextVar("appstore_db_stats", default=None)
_SLOW_MS = float(os.getenv("APPSTORE_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("APPSTORE_QUERY_LOG", "").strip() == "1"


def _empty_stats() -> dict:
    return {"queries": 0, "acquire_ms": 0.0, "execute_ms": 0.0, "total_ms": 0.0}


def _redact_params(params: Iterable[Any] | None) -> list[Any] | None:
    if params is None:
        return None
    redacted: list[Any] = []
    for val in params:
        if isinstance(val, (bytes, bytearray)):
            redacted.append(f"<bytes:{len(val)}>")
        elif isinstance(val, str) and len(val) > 80:
            redacted.append(f"{val[:40]}…{val[-10:]}")
        else:
            redacted.append(val)
    return redacted


def _log_query(
    *,
    query_name: str | None,
    params: Iterable[Any] | None,
    elapsed_ms: float,
    rowcount: int | None,
) -> None:
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
    elif _LOG_ALL:
        _query_logger.info("db_query=%s", message)
    else:
        _query_logger.debug("db_query=%s", message)


def init_pool(minconn: int | None = None, maxconn: int | None = None) -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is None:
            if minconn is None:
                minconn = int(os.getenv("APPSTORE_DB_POOL_MIN", "1"))
            if maxconn is None:
                maxconn = int(os.getenv("APPSTORE_DB_POOL_MAX", "10"))
            _POOL = ThreadedConnectionPool(minconn, maxconn, dsn=get_db_url())
            _logger.info("db_pool_ready min=%s max=%s", minconn, maxconn)


def close_pool() -> None:
    global _POOL
    with _POOL_LOCK:
        if _POOL is not None:
            _POOL.closeall()
            _POOL = None


def reset_db_ms() -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS = 0.0
    _DB_STATS.set(_empty_stats())


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return _empty_stats()
    return stats


def add_db_ms(delta: float) -> None:
    global _DB_MS
    with _DB_LOCK:
        _DB_MS += delta
    stats = get_db_stats()
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1
    _DB_STATS.set(stats)


def add_db_acquire_ms(delta: float) -> None:
    stats = get_db_stats()
    stats["acquire_ms"] = stats.get("acquire_ms", 0.0) + delta
    _DB_STATS.set(stats)


def add_db_execute_ms(delta: float) -> None:
    stats = get_db_stats()
    stats["execute_ms"] = stats.get("execute_ms", 0.0) + delta
    _DB_STATS.set(stats)


def get_db_ms() -> float:
    with _DB_LOCK:
        return _DB_MS


def _get_pool() -> ThreadedConnectionPool:
    if _POOL is None:
        init_pool()
    return _POOL


@contextmanager
def get_conn(read_only: bool = False):
    pool = _get_pool()
    acquire_start = time.perf_counter()
    conn = pool.getconn()
    add_db_acquire_ms((time.perf_counter() - acquire_start) * 1000)
    _logger.debug("db_conn borrowed")
    try:
        if read_only:
            with conn.cursor() as cur:
                cur.execute("set transaction read only")
        yield conn
        if read_only:
            conn.rollback()
        else:
            conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        pool.putconn(conn)
        _logger.debug("db_conn returned")


def _finish(query_name: str | None, params, start: float, exec_ms: float, rowcount: int | None) -> None:
    elapsed_ms = (time.perf_counter() - start) * 1000
    add_db_ms(elapsed_ms)
    add_db_execute_ms(exec_ms)
    _log_query(query_name=query_name, params=params, elapsed_ms=elapsed_ms, rowcount=rowcount)


def fetch_one(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> dict | None:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        exec_start = time.perf_counter()
        cur.execute(sql, params or [])
        exec_ms = (time.perf_counter() - exec_start) * 1000
        row = cur.fetchone()
        result = dict(row) if row else None
        rowcount = cur.rowcount
    _finish(query_name, params, start, exec_ms, rowcount)
    return result


def fetch_all(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> list[dict]:
    start = time.perf_counter()
    with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
        exec_start = time.perf_counter()
        cur.execute(sql, params or [])
        exec_ms = (time.perf_counter() - exec_start) * 1000
        result = [dict(r) for r in cur.fetchall()]
        rowcount = cur.rowcount
    _finish(query_name, params, start, exec_ms, rowcount)
    return result


def fetch_columns(conn, sql: str, query_name: str | None = None) -> tuple[list[str], list[tuple]]:
    """Run caller-supplied SQL and keep column order and duplicate names intact."""
    start = time.perf_counter()
    with conn.cursor() as cur:
        exec_start = time.perf_counter()
        cur.execute(sql)
        exec_ms = (time.perf_counter() - exec_start) * 1000
        columns = [col.name for col in (cur.description or [])]
        rows = cur.fetchall() if cur.description else []
        rowcount = cur.rowcount
    _finish(query_name, None, start, exec_ms, rowcount)
    return columns, rows


def execute(conn, sql: str, params: Iterable[Any] | None = None, query_name: str | None = None) -> int:
    start = time.perf_counter()
    with conn.cursor() as cur:
        exec_start = time.perf_counter()
        cur.execute(sql, params or [])
        exec_ms = (time.perf_counter() - exec_start) * 1000
        rowcount = cur.rowcount
    _finish(query_name, params, start, exec_ms, rowcount)
    return rowcount


def is_caller_sql_error(exc: Exception) -> bool:
    """SQL errors attributable to the statement text (syntax, data, read-only violation)."""
    code = getattr(exc, "pgcode", None) or ""
    return isinstance(exc, psycopg2.Error) and code[:2] in {"42", "22", "25", "0A"}
