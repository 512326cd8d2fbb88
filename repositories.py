"""Entity repositories over the generic document store.

Relationships between collections are kept by convention only (no foreign
keys), so the multi-step operations here are sequential and best effort:
a failed secondary step is logged and never undoes the committed first step.
"""

from __future__ import annotations

import copy
import logging
import uuid
from typing import Any, Callable, Iterable, List, Tuple

from appstore.documents import (
    Document,
    DocumentStoreError,
    clamp_limit,
    clamp_offset,
    format_timestamp,
    utc_now,
)
from entity_views import (
    DEFAULT_APP_ICON,
    DEFAULT_APP_NAME,
    DEFAULT_PROJECT_ICON,
    DEFAULT_PROJECT_NAME,
    DEFAULT_STATUS,
    DASHBOARD_LAYOUT_ID,
    PUBLISHED_STATUS,
    App,
    DashboardLayout,
    DashboardWidget,
    Project,
    ProjectVersion,
    app_view,
    layout_view,
    project_view,
    version_view,
)

logger = logging.getLogger("appstore.repositories")

APPS = "apps"
PROJECTS = "projects"
PROJECT_VERSIONS = "project_versions"
DASHBOARD_LAYOUTS = "dashboard_layouts"

LOOKUP_SCAN_LIMIT = 1000
PROJECT_EDITABLE_FIELDS = ("name", "description", "icon", "status")


def _stamp() -> str:
    return format_timestamp(utc_now())


def _data(doc: Document) -> dict:
    return doc.data if isinstance(doc.data, dict) else {}


def _text_or(value: Any, default: str) -> str:
    return value if isinstance(value, str) and value else default


def scan(store, collection: str, limit: int = LOOKUP_SCAN_LIMIT) -> List[Document]:
    return store.list(collection, limit=limit, offset=0).documents


def find_by_logical_id(store, collection: str, logical_id: str) -> Document | None:
    """Newest document whose data.id matches; only the newest LOOKUP_SCAN_LIMIT are searched."""
    for doc in scan(store, collection):
        if _data(doc).get("id") == logical_id:
            return doc
    return None


def _published_page(
    store,
    collection: str,
    view: Callable[[Document], Any],
    limit: int | None,
    offset: int | None,
) -> Tuple[list, int]:
    published = [view(doc) for doc in scan(store, collection) if _data(doc).get("status") == PUBLISHED_STATUS]
    limit = clamp_limit(limit)
    offset = clamp_offset(offset)
    return published[offset : offset + limit], len(published)


class AppRepository:
    def __init__(self, store) -> None:
        self.store = store

    def list(self, limit: int | None = None, offset: int | None = None) -> Tuple[List[App], int]:
        page = self.store.list(APPS, limit=limit, offset=offset)
        return [app_view(doc) for doc in page.documents], page.count

    def list_published(self, limit: int | None = None, offset: int | None = None) -> Tuple[List[App], int]:
        return _published_page(self.store, APPS, app_view, limit, offset)

    def create(self, fields: dict) -> App:
        data = {
            "id": str(uuid.uuid4()),
            "name": fields.get("name") or DEFAULT_APP_NAME,
            "description": fields.get("description") or "",
            "version": fields.get("version") if fields.get("version") is not None else "1",
            "price": fields.get("price") if fields.get("price") is not None else 0,
            "icon": fields.get("icon") or DEFAULT_APP_ICON,
            "installed": 1,
            "status": DEFAULT_STATUS,
            "prompt": fields.get("prompt"),
            "model": fields.get("model"),
            "created_at": _stamp(),
        }
        if fields.get("source_code") is not None:
            data["source_code"] = fields["source_code"]
        return app_view(self.store.create(APPS, data))

    def create_release(self, project_doc: Document, version: ProjectVersion, price: float) -> App:
        project = _data(project_doc)
        data = {
            "id": str(uuid.uuid4()),
            "name": _text_or(project.get("name"), DEFAULT_APP_NAME),
            "description": _text_or(project.get("description"), ""),
            "version": version.version_number,
            "price": price,
            "icon": _text_or(project.get("icon"), DEFAULT_APP_ICON),
            "installed": 1,
            "source_code": version.source_code,
            "prompt": version.prompt,
            "model": version.model,
            "status": PUBLISHED_STATUS,
            "project_id": version.project_id,
            "project_version": version.version_number,
            "created_at": _stamp(),
        }
        return app_view(self.store.create(APPS, data))

    def update_source_code(self, app_id: str, source_code: str) -> App | None:
        doc = find_by_logical_id(self.store, APPS, app_id)
        if doc is None:
            return None
        data = copy.deepcopy(_data(doc))
        data["source_code"] = source_code
        updated = self.store.update(APPS, doc.id, data)
        return app_view(updated) if updated else None


class VersionRepository:
    def __init__(self, store) -> None:
        self.store = store

    def _documents_for(self, project_id: str) -> Iterable[Document]:
        offset = 0
        while True:
            page = self.store.list(PROJECT_VERSIONS, limit=LOOKUP_SCAN_LIMIT, offset=offset)
            for doc in page.documents:
                if _data(doc).get("project_id") == project_id:
                    yield doc
            offset += len(page.documents)
            if not page.documents or offset >= page.count:
                return

    def list_for_project(self, project_id: str) -> List[ProjectVersion]:
        return [version_view(doc) for doc in scan(self.store, PROJECT_VERSIONS) if _data(doc).get("project_id") == project_id]

    def find(self, project_id: str, version_number: int) -> ProjectVersion | None:
        for version in self.list_for_project(project_id):
            if version.version_number == version_number:
                return version
        return None

    def create(self, project_id: str, version_number: int, prompt: str, source_code: str, model: str | None) -> ProjectVersion:
        data = {
            "id": str(uuid.uuid4()),
            "project_id": project_id,
            "version_number": version_number,
            "prompt": prompt,
            "source_code": source_code,
            "model": model,
            "created_at": _stamp(),
        }
        return version_view(self.store.create(PROJECT_VERSIONS, data))

    def delete_for_project(self, project_id: str) -> int:
        doc_ids = [doc.id for doc in self._documents_for(project_id)]
        removed = 0
        for doc_id in doc_ids:
            try:
                if self.store.delete(PROJECT_VERSIONS, doc_id):
                    removed += 1
            except DocumentStoreError as exc:
                logger.warning("version_cascade_delete_failed project_id=%s doc_id=%s error=%s", project_id, doc_id, exc)
        return removed


class ProjectRepository:
    def __init__(self, store) -> None:
        self.store = store
        self.versions = VersionRepository(store)

    def list(self, limit: int | None = None, offset: int | None = None) -> Tuple[List[Project], int]:
        page = self.store.list(PROJECTS, limit=limit, offset=offset)
        return [project_view(doc) for doc in page.documents], page.count

    def list_published(self, limit: int | None = None, offset: int | None = None) -> Tuple[List[Project], int]:
        return _published_page(self.store, PROJECTS, project_view, limit, offset)

    def find(self, project_id: str) -> Project | None:
        doc = find_by_logical_id(self.store, PROJECTS, project_id)
        return project_view(doc) if doc else None

    def get_with_versions(self, project_id: str) -> Project | None:
        doc = find_by_logical_id(self.store, PROJECTS, project_id)
        if doc is None:
            return None
        return project_view(doc, versions=self.versions.list_for_project(project_id))

    def create(self, prompt: str, model: str | None, metadata: dict | None = None) -> Project:
        metadata = metadata or {}
        now = _stamp()
        data = {
            "id": str(uuid.uuid4()),
            "name": metadata.get("name") if isinstance(metadata.get("name"), str) else DEFAULT_PROJECT_NAME,
            "description": metadata.get("description") if isinstance(metadata.get("description"), str) else "",
            "icon": metadata.get("icon") if isinstance(metadata.get("icon"), str) else DEFAULT_PROJECT_ICON,
            "status": DEFAULT_STATUS,
            "current_version": 0,
            "initial_prompt": prompt,
            "initial_model": model,
            "created_at": now,
            "updated_at": now,
        }
        return project_view(self.store.create(PROJECTS, data))

    def update(self, project_id: str, changes: dict) -> Project | None:
        doc = find_by_logical_id(self.store, PROJECTS, project_id)
        if doc is None:
            return None
        data = copy.deepcopy(_data(doc))
        for key in PROJECT_EDITABLE_FIELDS:
            if isinstance(changes.get(key), str):
                data[key] = changes[key]
        data["updated_at"] = _stamp()
        updated = self.store.update(PROJECTS, doc.id, data)
        return project_view(updated) if updated else None

    def delete(self, project_id: str) -> bool:
        doc = find_by_logical_id(self.store, PROJECTS, project_id)
        if doc is None or not self.store.delete(PROJECTS, doc.id):
            return False
        removed = self.versions.delete_for_project(project_id)
        logger.info("project_deleted project_id=%s versions_removed=%s", project_id, removed)
        return True

    def create_version(self, project_id: str, prompt: str, source_code: str, model: str | None) -> ProjectVersion | None:
        doc = find_by_logical_id(self.store, PROJECTS, project_id)
        if doc is None:
            return None
        # read-then-write without locking; concurrent calls can reuse a number
        next_number = project_view(doc).current_version + 1
        version = self.versions.create(project_id, next_number, prompt, source_code, model)
        data = copy.deepcopy(_data(doc))
        data["current_version"] = next_number
        data["updated_at"] = _stamp()
        try:
            if self.store.update(PROJECTS, doc.id, data) is None:
                logger.warning("version_counter_not_updated project_id=%s reason=missing", project_id)
        except DocumentStoreError as exc:
            logger.warning("version_counter_not_updated project_id=%s error=%s", project_id, exc)
        return version


def release_version(store, project_id: str, version_number: int, price: float | None = None) -> App | None:
    """Copy one project version into the app catalogue as a published app."""
    project_doc = find_by_logical_id(store, PROJECTS, project_id)
    if project_doc is None:
        return None
    version = VersionRepository(store).find(project_id, version_number)
    if version is None:
        return None
    app = AppRepository(store).create_release(project_doc, version, price if price is not None else 0.0)
    logger.info("project_released project_id=%s version=%s app_id=%s", project_id, version_number, app.id)
    return app


class DashboardLayoutRepository:
    def __init__(self, store) -> None:
        self.store = store

    def _find(self) -> Document | None:
        for doc in scan(self.store, DASHBOARD_LAYOUTS, limit=100):
            if _data(doc).get("id") == DASHBOARD_LAYOUT_ID:
                return doc
        return None

    def get(self) -> DashboardLayout:
        return layout_view(self._find())

    def save(self, widgets: List[DashboardWidget]) -> DashboardLayout:
        data = {
            "id": DASHBOARD_LAYOUT_ID,
            "widgets": [widget.to_dict() for widget in widgets],
            "updated_at": _stamp(),
        }
        doc = self._find()
        saved = self.store.update(DASHBOARD_LAYOUTS, doc.id, data) if doc else None
        if saved is None:
            saved = self.store.create(DASHBOARD_LAYOUTS, data)
        return layout_view(saved)
