"""DB-backed document store."""

from __future__ import annotations

import json
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Callable, List

import psycopg2

from appstore.documents import (
    Document,
    DocumentPage,
    QueryRejected,
    StorageError,
    clamp_limit,
    clamp_offset,
)
from appstore.raw_query import check_read_only, coerce_row

from app.db import execute, fetch_all, fetch_columns, fetch_one, get_conn, is_caller_sql_error

logger = logging.getLogger("appstore.db")


_SCHEMA_SQL = (
    """
    create table if not exists documents (
        id text primary key,
        seq bigserial not null,
        collection text not null,
        data jsonb not null,
        created_at timestamptz not null,
        updated_at timestamptz not null
    )
    """,
    "create index if not exists idx_documents_collection on documents (collection, created_at desc, seq desc)",
    "create index if not exists idx_documents_created_at on documents (created_at)",
)

_DOC_COLUMNS = "id, collection, data, created_at, updated_at"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _json_dumps(value: object) -> str:
    return json.dumps(value, default=str)


def _row_to_document(row: dict) -> Document:
    data = row.get("data")
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise StorageError(message=f"stored document {row.get('id')} is not valid JSON", operation="decode") from exc
    created_at = row.get("created_at")
    updated_at = row.get("updated_at")
    if not isinstance(created_at, datetime) or not isinstance(updated_at, datetime):
        raise StorageError(message=f"stored document {row.get('id')} has invalid timestamps", operation="decode")
    return Document(
        id=str(row.get("id")),
        collection=row.get("collection"),
        data=data,
        created_at=created_at,
        updated_at=updated_at,
    )


def _storage_error(operation: str, exc: Exception) -> StorageError:
    logger.error("document_store_failed op=%s error=%s", operation, exc)
    return StorageError(message=f"{operation} failed: {exc}", operation=operation)


class DbDocumentStore:
    def __init__(self, seeder: Callable[["DbDocumentStore"], Any] | None = None) -> None:
        self._seeder = seeder

    def _create_schema(self, conn) -> None:
        for statement in _SCHEMA_SQL:
            execute(conn, statement, query_name="documents.schema")

    def ensure_schema(self) -> None:
        try:
            with get_conn() as conn:
                self._create_schema(conn)
        except psycopg2.Error as exc:
            raise _storage_error("ensure_schema", exc) from exc
        if self._seeder:
            self._seeder(self)

    def create(self, collection: str, data: Any) -> Document:
        now = _now()
        doc_id = str(uuid.uuid4())
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    f"""
                    insert into documents (id, collection, data, created_at, updated_at)
                    values (%s, %s, %s::jsonb, %s, %s)
                    returning {_DOC_COLUMNS}
                    """,
                    [doc_id, collection, _json_dumps(data), now, now],
                    query_name="documents.create",
                )
        except psycopg2.Error as exc:
            raise _storage_error("create", exc) from exc
        return _row_to_document(row)

    def get(self, collection: str, doc_id: str) -> Document | None:
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    f"select {_DOC_COLUMNS} from documents where collection=%s and id=%s",
                    [collection, doc_id],
                    query_name="documents.get",
                )
        except psycopg2.Error as exc:
            raise _storage_error("get", exc) from exc
        return _row_to_document(row) if row else None

    def update(self, collection: str, doc_id: str, data: Any) -> Document | None:
        try:
            with get_conn() as conn:
                row = fetch_one(
                    conn,
                    f"""
                    update documents
                    set data=%s::jsonb,
                        updated_at=greatest(%s, updated_at + interval '1 microsecond')
                    where collection=%s and id=%s
                    returning {_DOC_COLUMNS}
                    """,
                    [_json_dumps(data), _now(), collection, doc_id],
                    query_name="documents.update",
                )
        except psycopg2.Error as exc:
            raise _storage_error("update", exc) from exc
        return _row_to_document(row) if row else None

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            with get_conn() as conn:
                count = execute(
                    conn,
                    "delete from documents where collection=%s and id=%s",
                    [collection, doc_id],
                    query_name="documents.delete",
                )
        except psycopg2.Error as exc:
            raise _storage_error("delete", exc) from exc
        return count > 0

    def list(self, collection: str, limit: int | None = None, offset: int | None = None) -> DocumentPage:
        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        try:
            with get_conn() as conn:
                rows = fetch_all(
                    conn,
                    f"""
                    select {_DOC_COLUMNS}
                    from documents
                    where collection=%s
                    order by created_at desc, seq desc
                    limit %s offset %s
                    """,
                    [collection, limit, offset],
                    query_name="documents.list",
                )
                total = fetch_one(
                    conn,
                    "select count(*) as count from documents where collection=%s",
                    [collection],
                    query_name="documents.count",
                )
        except psycopg2.Error as exc:
            raise _storage_error("list", exc) from exc
        documents: List[Document] = [_row_to_document(row) for row in rows]
        return DocumentPage(documents=documents, count=int((total or {}).get("count") or 0))

    def list_collections(self) -> list[str]:
        try:
            with get_conn() as conn:
                rows = fetch_all(
                    conn,
                    "select distinct collection from documents order by collection",
                    query_name="documents.collections",
                )
        except psycopg2.Error as exc:
            raise _storage_error("list_collections", exc) from exc
        return [row["collection"] for row in rows]

    def raw_query(self, sql: str) -> list[dict]:
        check_read_only(sql)
        try:
            with get_conn(read_only=True) as conn:
                columns, rows = fetch_columns(conn, sql, query_name="documents.raw_query")
        except psycopg2.Error as exc:
            if is_caller_sql_error(exc):
                logger.info("raw_query_rejected pgcode=%s error=%s", getattr(exc, "pgcode", None), exc)
                raise QueryRejected(message=str(exc).strip(), reason="invalid_sql") from exc
            raise _storage_error("raw_query", exc) from exc
        return [dict(coerce_row(columns, row)) for row in rows]

    def reset_all(self) -> None:
        try:
            with get_conn() as conn:
                execute(conn, "drop table if exists documents", query_name="documents.drop")
                self._create_schema(conn)
        except psycopg2.Error as exc:
            raise _storage_error("reset_all", exc) from exc
        logger.info("documents_reset")
        if self._seeder:
            self._seeder(self)
