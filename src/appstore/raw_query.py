"""Guard and row coercion for the raw read-only query passthrough."""

from __future__ import annotations

import json
import math
from collections import OrderedDict
from datetime import date, datetime, time
from decimal import Decimal
from typing import Any, Iterable, Sequence
from uuid import UUID

from .documents import QueryRejected


READ_ONLY_PREFIXES = ("select", "pragma")

_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1

_MISSING = object()


def is_read_only(sql: Any) -> bool:
    if not isinstance(sql, str):
        return False
    head = sql.strip().lower()
    return head.startswith(READ_ONLY_PREFIXES)


def is_single_statement(sql: str) -> bool:
    """One statement, optionally ending in a single `;`.

    A separator inside a string literal also counts, so such queries are
    refused too.
    """
    body = sql.strip()
    if body.endswith(";"):
        body = body[:-1]
    return ";" not in body


def check_read_only(sql: Any) -> str:
    if not is_read_only(sql):
        raise QueryRejected(
            message="Only SELECT and PRAGMA statements are allowed",
            reason="not_read_only",
        )
    if not is_single_statement(sql):
        raise QueryRejected(
            message="Only one statement per query is allowed",
            reason="multiple_statements",
        )
    return sql


def _as_string(value: Any) -> Any:
    if isinstance(value, str):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        try:
            return bytes(value).decode("utf-8")
        except UnicodeDecodeError:
            return _MISSING
    if isinstance(value, (dict, list)):
        # jsonb columns come back decoded; hand them out as the stored text
        return json.dumps(value, separators=(",", ":"), default=str)
    return _MISSING


def _as_int64(value: Any) -> Any:
    if isinstance(value, int) and not isinstance(value, bool):
        if _INT64_MIN <= value <= _INT64_MAX:
            return value
    return _MISSING


def _as_float(value: Any) -> Any:
    if isinstance(value, (float, Decimal)):
        number = float(value)
        return number if math.isfinite(number) else 0.0
    return _MISSING


def _as_bool(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    return _MISSING


def _as_nullable_string(value: Any) -> Any:
    if value is None:
        return None
    return _MISSING


_COERCIONS = (_as_string, _as_int64, _as_float, _as_bool, _as_nullable_string)


def coerce_value(value: Any) -> Any:
    """Map one column value to a JSON value; the first matching coercion wins."""
    for coerce in _COERCIONS:
        result = coerce(value)
        if result is not _MISSING:
            return result
    return None


def coerce_row(columns: Sequence[str], values: Iterable[Any]) -> "OrderedDict[str, Any]":
    row: "OrderedDict[str, Any]" = OrderedDict()
    for name, value in zip(columns, values):
        row[name] = coerce_value(value)
    return row
