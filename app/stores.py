"""In-memory document store used when USE_DB is off."""

from __future__ import annotations

import copy
import itertools
import logging
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Tuple

from appstore.documents import Document, DocumentPage, QueryRejected, clamp_limit, clamp_offset
from appstore.raw_query import check_read_only

logger = logging.getLogger("appstore.db")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _copy(doc: Document) -> Document:
    return Document(
        id=doc.id,
        collection=doc.collection,
        data=copy.deepcopy(doc.data),
        created_at=doc.created_at,
        updated_at=doc.updated_at,
    )


class MemoryDocumentStore:
    def __init__(self, seeder: Callable[["MemoryDocumentStore"], Any] | None = None) -> None:
        self._seeder = seeder
        self._lock = threading.RLock()
        self._docs: Dict[str, Tuple[int, Document]] = {}
        self._seq = itertools.count(1)

    def ensure_schema(self) -> None:
        if self._seeder:
            self._seeder(self)

    def create(self, collection: str, data: Any) -> Document:
        now = _now()
        doc = Document(
            id=str(uuid.uuid4()),
            collection=collection,
            data=copy.deepcopy(data),
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._docs[doc.id] = (next(self._seq), doc)
        return _copy(doc)

    def _find(self, collection: str, doc_id: str) -> Tuple[int, Document] | None:
        entry = self._docs.get(doc_id)
        if entry is None or entry[1].collection != collection:
            return None
        return entry

    def get(self, collection: str, doc_id: str) -> Document | None:
        with self._lock:
            entry = self._find(collection, doc_id)
            return _copy(entry[1]) if entry else None

    def update(self, collection: str, doc_id: str, data: Any) -> Document | None:
        with self._lock:
            entry = self._find(collection, doc_id)
            if entry is None:
                return None
            seq, current = entry
            updated_at = _now()
            if updated_at <= current.updated_at:
                updated_at = current.updated_at + timedelta(microseconds=1)
            doc = Document(
                id=current.id,
                collection=collection,
                data=copy.deepcopy(data),
                created_at=current.created_at,
                updated_at=updated_at,
            )
            self._docs[doc_id] = (seq, doc)
            return _copy(doc)

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            if self._find(collection, doc_id) is None:
                return False
            del self._docs[doc_id]
            return True

    def list(self, collection: str, limit: int | None = None, offset: int | None = None) -> DocumentPage:
        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        with self._lock:
            entries = [entry for entry in self._docs.values() if entry[1].collection == collection]
        entries.sort(key=lambda entry: (entry[1].created_at, entry[0]), reverse=True)
        documents: List[Document] = [_copy(doc) for _, doc in entries[offset : offset + limit]]
        return DocumentPage(documents=documents, count=len(entries))

    def list_collections(self) -> list[str]:
        with self._lock:
            return sorted({doc.collection for _, doc in self._docs.values()})

    def raw_query(self, sql: str) -> list[dict]:
        check_read_only(sql)
        raise QueryRejected(message="Raw SQL requires the Postgres store (USE_DB=1)", reason="unsupported")

    def reset_all(self) -> None:
        with self._lock:
            self._docs.clear()
        logger.info("documents_reset")
        if self._seeder:
            self._seeder(self)
