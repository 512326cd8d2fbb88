"""Document record shared by the memory and Postgres document stores."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, List


DEFAULT_LIST_LIMIT = 100
MAX_LIST_LIMIT = 1000


@dataclass
class DocumentStoreError(Exception):
    message: str
    code: str = "STORE_ERROR"

    def __str__(self) -> str:  # pragma: no cover - simple formatting
        return f"{self.code}: {self.message}"


@dataclass
class StorageError(DocumentStoreError):
    code: str = "STORAGE_ERROR"
    operation: str | None = None


@dataclass
class QueryRejected(DocumentStoreError):
    code: str = "QUERY_REJECTED"
    reason: str = "not_read_only"


@dataclass
class Document:
    id: str
    collection: str
    data: Any
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "collection": self.collection,
            "data": self.data,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
        }


@dataclass
class DocumentPage:
    documents: List[Document] = field(default_factory=list)
    count: int = 0


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def clamp_limit(limit: int | None) -> int:
    if limit is None or limit < 0:
        return DEFAULT_LIST_LIMIT
    return min(limit, MAX_LIST_LIMIT)


def clamp_offset(offset: int | None) -> int:
    if offset is None or offset < 0:
        return 0
    return offset
