"""Typed views derived from stored documents.

Derivation never fails: missing or mistyped fields fall back to defaults so a
hand-edited document still renders.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List

from appstore.documents import Document, format_timestamp


DEFAULT_APP_NAME = "Untitled App"
DEFAULT_APP_ICON = "📱"
DEFAULT_APP_VERSION = "1"
DEFAULT_PROJECT_NAME = "Untitled Project"
DEFAULT_PROJECT_ICON = "📋"
DEFAULT_STATUS = "draft"
PUBLISHED_STATUS = "published"
DASHBOARD_LAYOUT_ID = "default_layout"

_WIDGET_BOUNDS = ("min_w", "min_h", "max_w", "max_h")
_WIDGET_FLAGS = ("no_resize", "no_move")


def parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _fields(doc: Document) -> dict:
    return doc.data if isinstance(doc.data, dict) else {}


def _str(data: dict, key: str, default: str = "") -> str:
    value = data.get(key)
    return value if isinstance(value, str) else default


def _opt_str(data: dict, key: str) -> str | None:
    value = data.get(key)
    return value if isinstance(value, str) else None


def _int(value: Any, default: int | None = None) -> int | None:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return default


def _version_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return DEFAULT_APP_VERSION
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else str(value)
    return DEFAULT_APP_VERSION


def _price(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _timestamp(data: dict, key: str, fallback: datetime) -> datetime:
    return parse_timestamp(data.get(key)) or fallback


def _drop_none(payload: dict) -> dict:
    return {key: val for key, val in payload.items() if val is not None}


@dataclass
class App:
    id: str
    name: str = DEFAULT_APP_NAME
    description: str = ""
    version: str = DEFAULT_APP_VERSION
    price: float = 0.0
    icon: str = DEFAULT_APP_ICON
    installed: int = 1
    source_code: str | None = None
    prompt: str | None = None
    model: str | None = None
    status: str = DEFAULT_STATUS
    project_id: str | None = None
    project_version: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "version": self.version,
            "price": self.price,
            "icon": self.icon,
            "installed": self.installed,
            "source_code": self.source_code,
            "prompt": self.prompt,
            "model": self.model,
            "status": self.status,
            "project_id": self.project_id,
            "project_version": self.project_version,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
        }


@dataclass
class ProjectVersion:
    id: str
    project_id: str
    version_number: int = 0
    prompt: str = ""
    source_code: str = ""
    model: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "version_number": self.version_number,
            "prompt": self.prompt,
            "source_code": self.source_code,
            "model": self.model,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
        }


@dataclass
class Project:
    id: str
    name: str = DEFAULT_PROJECT_NAME
    description: str = ""
    icon: str = DEFAULT_PROJECT_ICON
    status: str = DEFAULT_STATUS
    current_version: int = 0
    initial_prompt: str = ""
    initial_model: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    versions: List[ProjectVersion] | None = None

    def to_dict(self) -> dict:
        payload = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "status": self.status,
            "current_version": self.current_version,
            "initial_prompt": self.initial_prompt,
            "initial_model": self.initial_model,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
        }
        if self.versions is not None:
            payload["versions"] = [version.to_dict() for version in self.versions]
        return payload


@dataclass
class DashboardWidget:
    id: str
    x: int
    y: int
    w: int
    h: int
    min_w: int | None = None
    min_h: int | None = None
    max_w: int | None = None
    max_h: int | None = None
    no_resize: bool | None = None
    no_move: bool | None = None

    def to_dict(self) -> dict:
        return _drop_none(
            {
                "id": self.id,
                "x": self.x,
                "y": self.y,
                "w": self.w,
                "h": self.h,
                "min_w": self.min_w,
                "min_h": self.min_h,
                "max_w": self.max_w,
                "max_h": self.max_h,
                "no_resize": self.no_resize,
                "no_move": self.no_move,
            }
        )


@dataclass
class DashboardLayout:
    id: str = DASHBOARD_LAYOUT_ID
    widgets: List[DashboardWidget] = field(default_factory=list)
    updated_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "widgets": [widget.to_dict() for widget in self.widgets],
            "updated_at": format_timestamp(self.updated_at) if self.updated_at else None,
        }


def app_view(doc: Document) -> App:
    data = _fields(doc)
    installed = _int(data.get("installed"), 1)
    return App(
        id=_str(data, "id"),
        name=_str(data, "name", DEFAULT_APP_NAME),
        description=_str(data, "description"),
        version=_version_text(data.get("version")),
        price=_price(data.get("price")),
        icon=_str(data, "icon", DEFAULT_APP_ICON),
        installed=1 if installed else 0,
        source_code=_opt_str(data, "source_code"),
        prompt=_opt_str(data, "prompt"),
        model=_opt_str(data, "model"),
        status=_str(data, "status", DEFAULT_STATUS),
        project_id=_opt_str(data, "project_id"),
        project_version=_int(data.get("project_version")),
        created_at=_timestamp(data, "created_at", doc.created_at),
    )


def version_view(doc: Document) -> ProjectVersion:
    data = _fields(doc)
    return ProjectVersion(
        id=_str(data, "id"),
        project_id=_str(data, "project_id"),
        version_number=_int(data.get("version_number"), 0),
        prompt=_str(data, "prompt"),
        source_code=_str(data, "source_code"),
        model=_opt_str(data, "model"),
        created_at=_timestamp(data, "created_at", doc.created_at),
    )


def project_view(doc: Document, versions: List[ProjectVersion] | None = None) -> Project:
    data = _fields(doc)
    return Project(
        id=_str(data, "id"),
        name=_str(data, "name", DEFAULT_PROJECT_NAME),
        description=_str(data, "description"),
        icon=_str(data, "icon", DEFAULT_PROJECT_ICON),
        status=_str(data, "status", DEFAULT_STATUS),
        current_version=_int(data.get("current_version"), 0),
        initial_prompt=_str(data, "initial_prompt"),
        initial_model=_opt_str(data, "initial_model"),
        created_at=_timestamp(data, "created_at", doc.created_at),
        updated_at=_timestamp(data, "updated_at", doc.updated_at),
        versions=versions,
    )


def _stored_widget(raw: Any) -> DashboardWidget | None:
    if not isinstance(raw, dict) or not isinstance(raw.get("id"), str):
        return None
    coords = {key: _int(raw.get(key)) for key in ("x", "y", "w", "h")}
    if any(val is None for val in coords.values()):
        return None
    extras: Dict[str, Any] = {key: _int(raw.get(key)) for key in _WIDGET_BOUNDS}
    for key in _WIDGET_FLAGS:
        flag = raw.get(key)
        extras[key] = flag if isinstance(flag, bool) else None
    return DashboardWidget(id=raw["id"], **coords, **extras)


def layout_view(doc: Document | None) -> DashboardLayout:
    if doc is None:
        return DashboardLayout()
    data = _fields(doc)
    raw_widgets = data.get("widgets")
    widgets: List[DashboardWidget] = []
    if isinstance(raw_widgets, list):
        for raw in raw_widgets:
            widget = _stored_widget(raw)
            if widget is not None:
                widgets.append(widget)
    return DashboardLayout(
        id=_str(data, "id", DASHBOARD_LAYOUT_ID),
        widgets=widgets,
        updated_at=_timestamp(data, "updated_at", doc.updated_at),
    )


def widget_from_payload(raw: Any, index: int = 0) -> DashboardWidget:
    """Validate one client-supplied widget; raises ValueError naming the bad field."""
    path = f"widgets[{index}]"
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must be an object")
    if not isinstance(raw.get("id"), str) or not raw["id"]:
        raise ValueError(f"{path}.id must be a non-empty string")
    values: Dict[str, Any] = {"id": raw["id"]}
    for key in ("x", "y", "w", "h"):
        value = raw.get(key)
        if not isinstance(value, int) or isinstance(value, bool):
            raise ValueError(f"{path}.{key} must be an integer")
        values[key] = value
    for key in _WIDGET_BOUNDS:
        value = raw.get(key)
        if value is not None and (not isinstance(value, int) or isinstance(value, bool)):
            raise ValueError(f"{path}.{key} must be an integer")
        values[key] = value
    for key in _WIDGET_FLAGS:
        value = raw.get(key)
        if value is not None and not isinstance(value, bool):
            raise ValueError(f"{path}.{key} must be a boolean")
        values[key] = value
    return DashboardWidget(**values)
