"""Default catalogue seeded into an empty apps collection."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger("appstore.seed")

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

# source_file entries ship bundled JavaScript from app/templates
DEFAULT_APPS = [
    {
        "id": "notepad",
        "name": "Notepad",
        "description": "A simple notepad for quick notes and ideas.",
        "version": "1.0.0",
        "price": 0,
        "icon": "📝",
        "installed": 1,
        "source_file": "notepad.js",
    },
    {
        "id": "db-viewer",
        "name": "DB Viewer",
        "description": "Browse and manage your database collections and documents.",
        "version": "1.0.0",
        "price": 0,
        "icon": "🗃️",
        "installed": 1,
        "source_file": "db-viewer.js",
    },
    {"id": "to-do-list", "name": "To-Do List", "description": "Manage your tasks and stay organized.", "version": "1.2.3", "price": 2.99, "icon": "✅", "installed": 0},
    {"id": "calendar", "name": "Calendar", "description": "View and schedule your events easily.", "version": "2.1.0", "price": 4.99, "icon": "📅", "installed": 0},
    {"id": "chess", "name": "Chess", "description": "Play chess and challenge your mind.", "version": "1.8.7", "price": 7.50, "icon": "♟️", "installed": 0},
    {"id": "file-drive", "name": "File Drive", "description": "Store and access your files securely.", "version": "3.0.2", "price": 9.99, "icon": "🗂️", "installed": 0},
    {"id": "calculator", "name": "Calculator", "description": "Perform quick calculations and solve equations.", "version": "2.4.1", "price": 1.99, "icon": "🧮", "installed": 0},
    {"id": "stocks", "name": "Stocks", "description": "Track stock prices and market trends.", "version": "1.5.9", "price": 8.99, "icon": "📈", "installed": 0},
]


def _source(name: str) -> str:
    return (TEMPLATES_DIR / name).read_text(encoding="utf-8")


def seed_default_apps(store) -> int:
    """Insert the default apps when the apps collection is empty; returns how many were created."""
    if store.list("apps", limit=1).documents:
        logger.info("seed_skipped reason=apps_present")
        return 0
    created = 0
    for entry in DEFAULT_APPS:
        data = {key: val for key, val in entry.items() if key != "source_file"}
        if entry.get("source_file"):
            data["source_code"] = _source(entry["source_file"])
        store.create("apps", data)
        created += 1
    logger.info("seed_complete apps=%s", created)
    return created
