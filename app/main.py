"""FastAPI app for the P2P app store backend."""

from __future__ import annotations

import os
import re
import sys
from contextlib import asynccontextmanager
from functools import partial
from pathlib import Path
from typing import Any

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse, Response, StreamingResponse

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


_load_env_file(ROOT / "app" / ".env")

import time
import anyio
import logging

from appstore.documents import QueryRejected, StorageError, clamp_limit, clamp_offset
from completion_relay import GENERATE_LABELS, MODIFY_LABELS
from entity_views import widget_from_payload
from repositories import (
    AppRepository,
    DashboardLayoutRepository,
    ProjectRepository,
    release_version,
)
from app.anthropic_client import (
    AnthropicClient,
    ProviderNotConfigured,
    UpstreamError,
    code_generation_body,
    code_modification_body,
)
from app.db import close_pool, get_db_ms, get_db_stats, reset_db_ms
from app.generation_stream import SSE_HEADERS, relay_completion, sse_frames
from app.seed import seed_default_apps
from app.stores import MemoryDocumentStore
from app.stores_db import DbDocumentStore

logger = logging.getLogger("appstore")
logging.basicConfig(level=logging.INFO)

USE_DB = os.getenv("USE_DB", "").strip() == "1"
APP_ENV = os.getenv("APP_ENV", os.getenv("ENV", "dev")).strip().lower() or "dev"
IS_DEV = APP_ENV == "dev"
REQ_SLOW_MS = float(os.getenv("APPSTORE_REQ_SLOW_MS", "500"))
FRONTEND_URL = os.getenv("FRONTEND_URL", "").strip() or "https://node-alpha-lovat.vercel.app/"
STREAM_KEEPALIVE_SECONDS = float(os.getenv("STREAM_KEEPALIVE_SECONDS", "1.0"))
_CORS_ORIGINS = {
    origin.strip().rstrip("/")
    for origin in os.getenv("APPSTORE_CORS_ORIGINS", "*").split(",")
    if origin.strip()
}
_LOCAL_CORS_REGEX = re.compile(r"^http://(localhost|127\.0\.0\.1):\d+$")

if USE_DB:
    document_store = DbDocumentStore(seeder=seed_default_apps)
else:
    document_store = MemoryDocumentStore(seeder=seed_default_apps)

apps = AppRepository(document_store)
projects = ProjectRepository(document_store)
dashboard = DashboardLayoutRepository(document_store)
provider = AnthropicClient.from_env()

logger.info("store=%s provider_configured=%s", "db" if USE_DB else "memory", provider.configured)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await anyio.to_thread.run_sync(document_store.ensure_schema)
    yield
    await provider.aclose()
    if USE_DB:
        close_pool()


app = FastAPI(title="P2P App Store", lifespan=lifespan)


async def _run(fn, *args, **kwargs) -> Any:
    return await anyio.to_thread.run_sync(partial(fn, *args, **kwargs))


def _error_response(code: str, message: str, path: str | None = None, detail: dict | None = None, status: int = 400) -> JSONResponse:
    body = {
        "ok": False,
        "errors": [{"code": code, "message": message, "path": path, "detail": detail}],
        "warnings": [],
    }
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _ok_response(payload: dict, warnings: list | None = None, status: int = 200) -> JSONResponse:
    body = {"ok": True, **payload, "errors": [], "warnings": warnings or []}
    return JSONResponse(jsonable_encoder(body), status_code=status)


def _not_found(message: str) -> JSONResponse:
    return _error_response("NOT_FOUND", message, status=404)


async def _safe_json(request: Request) -> dict:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _require_str(body: dict, key: str) -> str | None:
    value = body.get(key)
    return value if isinstance(value, str) and value.strip() else None


def _optional_number(body: dict, key: str) -> tuple[bool, float | None]:
    value = body.get(key)
    if value is None:
        return True, None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False, None
    return True, float(value)


def _optional_int(body: dict, key: str) -> int | None:
    value = body.get(key)
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _page_meta(count: int, limit: int | None, offset: int | None) -> dict:
    return {"count": count, "limit": clamp_limit(limit), "offset": clamp_offset(offset)}


@app.middleware("http")
async def local_cors_fallback_middleware(request: Request, call_next):
    origin = request.headers.get("origin")
    if request.method == "OPTIONS":
        response = JSONResponse({}, status_code=200)
    else:
        response = await call_next(request)
    normalized_origin = origin.rstrip("/") if isinstance(origin, str) else origin
    if normalized_origin and ("*" in _CORS_ORIGINS or normalized_origin in _CORS_ORIGINS or _LOCAL_CORS_REGEX.match(normalized_origin)):
        response.headers.setdefault("Access-Control-Allow-Origin", origin)
        response.headers.setdefault("Access-Control-Allow-Headers", "*")
        response.headers.setdefault("Access-Control-Allow-Methods", "*")
        response.headers.setdefault("Vary", "Origin")
    return response


@app.middleware("http")
async def timing_middleware(request: Request, call_next):
    reset_db_ms()
    start = time.perf_counter()
    response = await call_next(request)
    total_ms = (time.perf_counter() - start) * 1000
    db_ms = get_db_ms()
    db_stats = get_db_stats()
    logger.info(
        "%s %s %s total_ms=%.1f db_ms=%.1f db_q=%s db_acquire_ms=%.1f",
        request.method,
        request.url.path,
        response.status_code,
        total_ms,
        db_ms,
        db_stats.get("queries", 0),
        db_stats.get("acquire_ms", 0.0),
    )
    streamed = response.headers.get("content-type", "").startswith("text/event-stream")
    if total_ms >= REQ_SLOW_MS and not streamed:
        logger.warning("slow_request method=%s path=%s total_ms=%.1f status=%s", request.method, request.url.path, total_ms, response.status_code)
    if IS_DEV:
        response.headers["X-Req-MS"] = f"{total_ms:.1f}"
        response.headers["X-DB-MS"] = f"{db_ms:.1f}"
        response.headers["X-Queries"] = str(db_stats.get("queries", 0))
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted(_CORS_ORIGINS),
    allow_origin_regex=r"http://localhost:\d+|http://127\.0\.0\.1:\d+",
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(part) for part in err.get("loc") or ()], "msg": err.get("msg"), "type": err.get("type")}
        for err in exc.errors()
    ]
    first = errors[0] if errors else {"loc": [], "msg": "Invalid request"}
    path = ".".join(first["loc"][1:]) or None
    return _error_response("INVALID_BODY", first["msg"] or "Invalid request", path=path, detail={"errors": errors})


@app.exception_handler(StorageError)
async def storage_error_handler(request: Request, exc: StorageError):
    logger.error("storage_error path=%s op=%s error=%s", request.url.path, exc.operation, exc.message)
    return _error_response(exc.code, "Storage operation failed", detail={"operation": exc.operation}, status=500)


@app.exception_handler(QueryRejected)
async def query_rejected_handler(request: Request, exc: QueryRejected):
    return _error_response(exc.code, exc.message, path="query", detail={"reason": exc.reason}, status=400)


@app.exception_handler(ProviderNotConfigured)
async def provider_not_configured_handler(request: Request, exc: ProviderNotConfigured):
    return _error_response(exc.code, exc.message, status=501)


@app.exception_handler(UpstreamError)
async def upstream_error_handler(request: Request, exc: UpstreamError):
    return _error_response(exc.code, exc.message, detail={"status": exc.status}, status=502)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("unhandled_error path=%s", request.url.path)
    return _error_response("INTERNAL_ERROR", "Unexpected server error", detail={"error": str(exc)}, status=500)


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/")
async def root_redirect():
    return RedirectResponse(FRONTEND_URL, status_code=307)


# ---- generic documents ----


@app.get("/api/db")
async def list_collections():
    collections = await _run(document_store.list_collections)
    return _ok_response({"data": collections, "links": {"self": "/api/db", "collections": "/api/db"}})


@app.post("/api/db/reset")
@app.post("/api/reset")
async def reset_database():
    await _run(document_store.reset_all)
    return _ok_response({"message": "Database reset successfully", "links": {"self": "/api/db/reset", "collections": "/api/db"}})


@app.post("/api/query")
async def execute_query(request: Request):
    body = await _safe_json(request)
    query = body.get("query")
    if not isinstance(query, str):
        return _error_response("INVALID_BODY", "query must be a string", path="query")
    rows = await _run(document_store.raw_query, query)
    return _ok_response({"data": rows, "meta": {"count": len(rows), "query": query}, "links": {"self": "/api/query"}})


@app.post("/api/db/{collection}")
async def create_document(collection: str, request: Request):
    body = await _safe_json(request)
    if "data" not in body:
        return _error_response("INVALID_BODY", "data is required", path="data")
    doc = await _run(document_store.create, collection, body["data"])
    return _ok_response({"data": doc.to_dict(), "links": {"self": f"/api/db/{collection}/{doc.id}"}})


@app.get("/api/db/{collection}")
async def list_documents(collection: str, limit: int | None = None, offset: int | None = None):
    page = await _run(document_store.list, collection, limit, offset)
    meta = _page_meta(page.count, limit, offset)
    return _ok_response(
        {
            "data": [doc.to_dict() for doc in page.documents],
            "meta": meta,
            "links": {
                "self": f"/api/db/{collection}?limit={meta['limit']}&offset={meta['offset']}",
                "collection": f"/api/db/{collection}",
            },
        }
    )


@app.get("/api/db/{collection}/{doc_id}")
async def get_document(collection: str, doc_id: str):
    doc = await _run(document_store.get, collection, doc_id)
    if doc is None:
        return _not_found("Document not found")
    return _ok_response({"data": doc.to_dict(), "links": {"self": f"/api/db/{collection}/{doc_id}", "collection": f"/api/db/{collection}"}})


@app.put("/api/db/{collection}/{doc_id}")
async def update_document(collection: str, doc_id: str, request: Request):
    body = await _safe_json(request)
    if "data" not in body:
        return _error_response("INVALID_BODY", "data is required", path="data")
    doc = await _run(document_store.update, collection, doc_id, body["data"])
    if doc is None:
        return _not_found("Document not found")
    return _ok_response({"data": doc.to_dict(), "links": {"self": f"/api/db/{collection}/{doc_id}", "collection": f"/api/db/{collection}"}})


@app.delete("/api/db/{collection}/{doc_id}")
async def delete_document(collection: str, doc_id: str):
    deleted = await _run(document_store.delete, collection, doc_id)
    if not deleted:
        return _not_found("Document not found")
    return Response(status_code=204)


# ---- apps ----


@app.get("/api/apps")
async def list_apps(limit: int | None = None, offset: int | None = None):
    items, count = await _run(apps.list, limit, offset)
    meta = _page_meta(count, limit, offset)
    return _ok_response(
        {
            "data": [item.to_dict() for item in items],
            "meta": meta,
            "links": {"self": f"/api/apps?limit={meta['limit']}&offset={meta['offset']}", "collection": "/api/apps"},
        }
    )


@app.post("/api/apps")
async def create_app(request: Request):
    body = await _safe_json(request)
    ok, price = _optional_number(body, "price")
    if not ok:
        return _error_response("INVALID_BODY", "price must be a number", path="price")
    fields = {key: body.get(key) for key in ("prompt", "model", "name", "description", "icon", "source_code") if isinstance(body.get(key), str)}
    version = body.get("version")
    if isinstance(version, (str, int, float)) and not isinstance(version, bool):
        fields["version"] = version
    fields["price"] = price
    created = await _run(apps.create, fields)
    return _ok_response({"data": created.to_dict(), "links": {"self": "/api/apps"}})


@app.put("/api/apps/{app_id}/source")
async def update_app_source(app_id: str, request: Request):
    body = await _safe_json(request)
    source_code = body.get("source_code")
    if not isinstance(source_code, str):
        return _error_response("INVALID_BODY", "source_code must be a string", path="source_code")
    updated = await _run(apps.update_source_code, app_id, source_code)
    if updated is None:
        return _not_found("App not found")
    return _ok_response({"data": updated.to_dict(), "links": {"self": f"/api/apps/{app_id}/source"}})


@app.get("/api/published-apps")
async def list_published_apps(limit: int | None = None, offset: int | None = None):
    items, count = await _run(apps.list_published, limit, offset)
    return _ok_response(
        {
            "data": [item.to_dict() for item in items],
            "meta": _page_meta(count, limit, offset),
            "links": {"self": "/api/published-apps", "collection": "/api/apps"},
        }
    )


# ---- projects ----


@app.post("/api/projects")
async def create_project(request: Request):
    body = await _safe_json(request)
    prompt = _require_str(body, "prompt")
    if prompt is None:
        return _error_response("INVALID_BODY", "prompt is required", path="prompt")
    model = _require_str(body, "model")
    metadata = await provider.generate_metadata(prompt, model)
    project = await _run(projects.create, prompt, model, metadata)
    return _ok_response({"data": project.to_dict(), "links": {"self": f"/api/projects/{project.id}"}})


@app.get("/api/projects")
async def list_projects(limit: int | None = None, offset: int | None = None):
    items, count = await _run(projects.list, limit, offset)
    return _ok_response(
        {
            "data": [item.to_dict() for item in items],
            "meta": _page_meta(count, limit, offset),
            "links": {"self": "/api/projects", "collections": "/api/db"},
        }
    )


@app.get("/api/published-projects")
async def list_published_projects(limit: int | None = None, offset: int | None = None):
    items, count = await _run(projects.list_published, limit, offset)
    return _ok_response(
        {
            "data": [item.to_dict() for item in items],
            "meta": _page_meta(count, limit, offset),
            "links": {"self": "/api/published-projects", "collection": "/api/projects"},
        }
    )


@app.get("/api/projects/{project_id}")
async def get_project(project_id: str):
    project = await _run(projects.get_with_versions, project_id)
    if project is None:
        return _not_found("Project not found")
    return _ok_response({"data": project.to_dict(), "links": {"self": f"/api/projects/{project_id}", "versions": f"/api/projects/{project_id}/versions"}})


@app.put("/api/projects/{project_id}")
async def update_project(project_id: str, request: Request):
    body = await _safe_json(request)
    for key in ("name", "description", "icon", "status"):
        if key in body and not isinstance(body[key], str):
            return _error_response("INVALID_BODY", f"{key} must be a string", path=key)
    project = await _run(projects.update, project_id, body)
    if project is None:
        return _not_found("Project not found")
    return _ok_response({"data": project.to_dict(), "links": {"self": f"/api/projects/{project_id}"}})


@app.delete("/api/projects/{project_id}")
async def delete_project(project_id: str):
    deleted = await _run(projects.delete, project_id)
    if not deleted:
        return _not_found("Project not found")
    return Response(status_code=204)


@app.post("/api/projects/{project_id}/versions")
async def create_project_version(project_id: str, request: Request):
    body = await _safe_json(request)
    prompt = body.get("prompt")
    source_code = body.get("source_code")
    if not isinstance(prompt, str):
        return _error_response("INVALID_BODY", "prompt must be a string", path="prompt")
    if not isinstance(source_code, str):
        return _error_response("INVALID_BODY", "source_code must be a string", path="source_code")
    version = await _run(projects.create_version, project_id, prompt, source_code, _require_str(body, "model"))
    if version is None:
        return _not_found("Project not found")
    return _ok_response({"data": version.to_dict(), "links": {"self": f"/api/projects/{project_id}/versions", "project": f"/api/projects/{project_id}"}})


@app.get("/api/projects/{project_id}/versions")
async def list_project_versions(project_id: str):
    versions = await _run(projects.versions.list_for_project, project_id)
    return _ok_response(
        {
            "data": [version.to_dict() for version in versions],
            "meta": {"count": len(versions), "project_id": project_id},
            "links": {"self": f"/api/projects/{project_id}/versions", "project": f"/api/projects/{project_id}"},
        }
    )


async def _release(project_id: str, request: Request, version_key: str) -> JSONResponse:
    body = await _safe_json(request)
    version_number = _optional_int(body, version_key)
    if version_number is None:
        return _error_response("INVALID_BODY", f"{version_key} must be an integer", path=version_key)
    ok, price = _optional_number(body, "price")
    if not ok:
        return _error_response("INVALID_BODY", "price must be a number", path="price")
    released = await _run(release_version, document_store, project_id, version_number, price)
    if released is None:
        return _not_found("Project or version not found")
    return _ok_response({"data": released.to_dict(), "links": {"self": "/api/apps", "project": f"/api/projects/{project_id}"}})


@app.post("/api/projects/{project_id}/release")
async def release_project_version(project_id: str, request: Request):
    return await _release(project_id, request, "version_number")


@app.post("/api/projects/{project_id}/convert")
async def convert_project_to_app(project_id: str, request: Request):
    return await _release(project_id, request, "version")


# ---- dashboard ----


@app.get("/api/dashboard/layout")
async def get_dashboard_layout():
    layout = await _run(dashboard.get)
    return _ok_response({"data": layout.to_dict(), "links": {"self": "/api/dashboard/layout"}})


@app.put("/api/dashboard/layout")
async def save_dashboard_layout(request: Request):
    body = await _safe_json(request)
    raw_widgets = body.get("widgets")
    if not isinstance(raw_widgets, list):
        return _error_response("INVALID_BODY", "widgets must be a list", path="widgets")
    try:
        widgets = [widget_from_payload(raw, index) for index, raw in enumerate(raw_widgets)]
    except ValueError as exc:
        return _error_response("INVALID_BODY", str(exc), path="widgets")
    layout = await _run(dashboard.save, widgets)
    return _ok_response({"data": layout.to_dict(), "links": {"self": "/api/dashboard/layout"}})


# ---- generation ----


@app.get("/api/models")
async def list_models():
    models = await provider.list_models()
    return _ok_response(models)


@app.post("/api/generate")
async def generate_code(request: Request):
    body = await _safe_json(request)
    prompt = _require_str(body, "prompt")
    if prompt is None:
        return _error_response("INVALID_BODY", "prompt is required", path="prompt")
    model = _require_str(body, "model")
    source_code = await provider.generate_code(prompt, model)
    return _ok_response({"data": {"source_code": source_code, "model": model or provider.default_model}})


def _stream_response(request: Request, body: dict, labels) -> StreamingResponse:
    events = relay_completion(provider, body, labels)
    frames = sse_frames(events, keepalive=STREAM_KEEPALIVE_SECONDS, is_disconnected=request.is_disconnected)
    return StreamingResponse(frames, media_type="text/event-stream", headers=SSE_HEADERS)


@app.post("/generate")
async def generate_code_stream(request: Request):
    body = await _safe_json(request)
    prompt = _require_str(body, "prompt")
    if prompt is None:
        return _error_response("INVALID_BODY", "prompt is required", path="prompt")
    if not provider.configured:
        raise ProviderNotConfigured(message="ANTHROPIC_API_KEY is not configured")
    return _stream_response(request, code_generation_body(prompt, model=_require_str(body, "model")), GENERATE_LABELS)


@app.post("/generate/modify")
async def modify_code_stream(request: Request):
    body = await _safe_json(request)
    prompt = _require_str(body, "prompt")
    code = body.get("code")
    if prompt is None:
        return _error_response("INVALID_BODY", "prompt is required", path="prompt")
    if not isinstance(code, str):
        return _error_response("INVALID_BODY", "code must be a string", path="code")
    if not provider.configured:
        raise ProviderNotConfigured(message="ANTHROPIC_API_KEY is not configured")
    return _stream_response(request, code_modification_body(code, prompt, model=_require_str(body, "model")), MODIFY_LABELS)
