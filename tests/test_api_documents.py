import os
import sys
import unittest
from unittest.mock import patch

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"

import app.main as main
from app.stores import MemoryDocumentStore
from appstore.documents import StorageError
from repositories import AppRepository, DashboardLayoutRepository, ProjectRepository


class ApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryDocumentStore(seeder=main.seed_default_apps)
        patches = [
            patch.object(main, "document_store", self.store),
            patch.object(main, "apps", AppRepository(self.store)),
            patch.object(main, "projects", ProjectRepository(self.store)),
            patch.object(main, "dashboard", DashboardLayoutRepository(self.store)),
        ]
        for item in patches:
            item.start()
            self.addCleanup(item.stop)
        self.client = TestClient(main.app)


class TestDocumentApi(ApiTestCase):
    def test_crud_cycle(self) -> None:
        res = self.client.post("/api/db/notes", json={"data": {"title": "hello"}})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        doc_id = body["data"]["id"]
        self.assertEqual(body["links"]["self"], f"/api/db/notes/{doc_id}")
        self.assertEqual(body["data"]["created_at"], body["data"]["updated_at"])

        res = self.client.put(f"/api/db/notes/{doc_id}", json={"data": {"title": "bye"}})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["data"]["data"], {"title": "bye"})

        res = self.client.get(f"/api/db/notes/{doc_id}")
        self.assertEqual(res.json()["data"]["data"], {"title": "bye"})
        self.assertEqual(res.json()["links"]["collection"], "/api/db/notes")

        self.assertEqual(self.client.delete(f"/api/db/notes/{doc_id}").status_code, 204)
        self.assertEqual(self.client.delete(f"/api/db/notes/{doc_id}").status_code, 404)
        res = self.client.get(f"/api/db/notes/{doc_id}")
        self.assertEqual(res.status_code, 404)
        self.assertEqual(res.json()["errors"][0]["code"], "NOT_FOUND")

    def test_update_missing(self) -> None:
        res = self.client.put("/api/db/notes/nope", json={"data": {}})
        self.assertEqual(res.status_code, 404)

    def test_create_requires_data(self) -> None:
        res = self.client.post("/api/db/notes", json={"title": "x"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["path"], "data")

    def test_list_meta_and_clamp(self) -> None:
        for n in range(3):
            self.client.post("/api/db/notes", json={"data": {"n": n}})
        res = self.client.get("/api/db/notes", params={"limit": 5000, "offset": 1})
        body = res.json()
        self.assertEqual(body["meta"], {"count": 3, "limit": 1000, "offset": 1})
        self.assertEqual([doc["data"]["n"] for doc in body["data"]], [1, 0])
        self.assertEqual(body["links"]["self"], "/api/db/notes?limit=1000&offset=1")

    def test_list_rejects_non_integer_limit(self) -> None:
        res = self.client.get("/api/db/notes", params={"limit": "many"})
        self.assertEqual(res.status_code, 400)
        body = res.json()
        self.assertFalse(body["ok"])
        self.assertEqual(body["warnings"], [])
        self.assertEqual(body["errors"][0]["code"], "INVALID_BODY")
        self.assertEqual(body["errors"][0]["path"], "limit")

    def test_cors_preflight(self) -> None:
        res = self.client.options(
            "/api/apps",
            headers={"Origin": "http://localhost:5173", "Access-Control-Request-Method": "POST"},
        )
        self.assertEqual(res.status_code, 200)
        self.assertIn(res.headers.get("access-control-allow-origin"), ("*", "http://localhost:5173"))
        self.assertIn("POST", res.headers.get("access-control-allow-methods", ""))

    def test_list_collections(self) -> None:
        self.client.post("/api/db/zeta", json={"data": 1})
        self.client.post("/api/db/alpha", json={"data": 2})
        self.assertEqual(self.client.get("/api/db").json()["data"], ["alpha", "zeta"])

    def test_raw_query_rejected(self) -> None:
        res = self.client.post("/api/query", json={"query": "DROP TABLE documents"})
        self.assertEqual(res.status_code, 400)
        error = res.json()["errors"][0]
        self.assertEqual(error["code"], "QUERY_REJECTED")
        self.assertEqual(error["detail"], {"reason": "not_read_only"})

    def test_raw_query_rejects_stacked_statements(self) -> None:
        res = self.client.post("/api/query", json={"query": "select 1; commit; delete from documents"})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["detail"], {"reason": "multiple_statements"})

    def test_raw_query_requires_string(self) -> None:
        res = self.client.post("/api/query", json={"query": 5})
        self.assertEqual(res.status_code, 400)
        self.assertEqual(res.json()["errors"][0]["code"], "INVALID_BODY")

    def test_raw_query_rows(self) -> None:
        with patch.object(self.store, "raw_query", return_value=[{"n": 1}]):
            res = self.client.post("/api/query", json={"query": "select 1 as n"})
        body = res.json()
        self.assertEqual(body["data"], [{"n": 1}])
        self.assertEqual(body["meta"], {"count": 1, "query": "select 1 as n"})

    def test_storage_error_maps_to_500(self) -> None:
        with patch.object(self.store, "list_collections", side_effect=StorageError(message="db down", operation="list_collections")):
            res = self.client.get("/api/db")
        self.assertEqual(res.status_code, 500)
        self.assertEqual(res.json()["errors"][0]["code"], "STORAGE_ERROR")

    def test_reset_reseeds(self) -> None:
        self.client.post("/api/db/notes", json={"data": {}})
        for path in ("/api/reset", "/api/db/reset"):
            res = self.client.post(path)
            self.assertTrue(res.json()["ok"])
            self.assertEqual(self.client.get("/api/db").json()["data"], ["apps"])

    def test_health(self) -> None:
        self.assertEqual(self.client.get("/health").json(), {"ok": True})


class TestAppsApi(ApiTestCase):
    def test_seeded_catalogue(self) -> None:
        self.store.ensure_schema()
        body = self.client.get("/api/apps", params={"limit": 3}).json()
        self.assertEqual(body["meta"], {"count": 8, "limit": 3, "offset": 0})
        self.assertEqual(len(body["data"]), 3)
        self.assertEqual(body["links"]["collection"], "/api/apps")

    def test_create_and_update_source(self) -> None:
        res = self.client.post("/api/apps", json={"name": "Timer", "prompt": "timer", "version": 2, "price": 1.5})
        created = res.json()["data"]
        self.assertEqual(created["status"], "draft")
        self.assertEqual(created["installed"], 1)
        self.assertEqual(created["version"], "2")
        res = self.client.put(f"/api/apps/{created['id']}/source", json={"source_code": "function T() {}"})
        self.assertEqual(res.json()["data"]["source_code"], "function T() {}")
        res = self.client.put("/api/apps/missing/source", json={"source_code": "x"})
        self.assertEqual(res.status_code, 404)

    def test_create_rejects_bad_price(self) -> None:
        res = self.client.post("/api/apps", json={"name": "Timer", "price": "free"})
        self.assertEqual(res.status_code, 400)

    def test_published_apps(self) -> None:
        for n in range(8):
            self.store.create("apps", {"id": f"app-{n}", "status": "published" if n < 5 else "draft"})
        body = self.client.get("/api/published-apps", params={"limit": 2, "offset": 1}).json()
        self.assertEqual(body["meta"]["count"], 5)
        self.assertEqual([item["id"] for item in body["data"]], ["app-3", "app-2"])


class TestDashboardApi(ApiTestCase):
    def test_layout_round_trip(self) -> None:
        body = self.client.get("/api/dashboard/layout").json()
        self.assertEqual(body["data"], {"id": "default_layout", "widgets": [], "updated_at": None})
        widgets = [{"id": "notes", "x": 0, "y": 0, "w": 4, "h": 3, "min_w": 2}]
        res = self.client.put("/api/dashboard/layout", json={"widgets": widgets})
        self.assertEqual(res.json()["data"]["widgets"], widgets)
        self.client.put("/api/dashboard/layout", json={"widgets": []})
        self.assertEqual(self.store.list("dashboard_layouts").count, 1)
        self.assertEqual(self.client.get("/api/dashboard/layout").json()["data"]["widgets"], [])

    def test_layout_validation(self) -> None:
        res = self.client.put("/api/dashboard/layout", json={"widgets": [{"id": "a", "x": "0", "y": 0, "w": 1, "h": 1}]})
        self.assertEqual(res.status_code, 400)
        self.assertIn("widgets[0].x", res.json()["errors"][0]["message"])


if __name__ == "__main__":
    unittest.main()
