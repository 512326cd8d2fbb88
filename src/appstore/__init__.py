"""App store kernel utilities."""

from .documents import (
    DEFAULT_LIST_LIMIT,
    MAX_LIST_LIMIT,
    Document,
    DocumentPage,
    DocumentStoreError,
    QueryRejected,
    StorageError,
    clamp_limit,
    clamp_offset,
    format_timestamp,
    utc_now,
)
from .raw_query import check_read_only, coerce_row, coerce_value, is_read_only

__all__ = [
    "DEFAULT_LIST_LIMIT",
    "MAX_LIST_LIMIT",
    "Document",
    "DocumentPage",
    "DocumentStoreError",
    "QueryRejected",
    "StorageError",
    "check_read_only",
    "clamp_limit",
    "clamp_offset",
    "coerce_row",
    "coerce_value",
    "format_timestamp",
    "is_read_only",
    "utc_now",
]
