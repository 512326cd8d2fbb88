import json
import os
import sys
import unittest
from unittest.mock import patch

import httpx

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)

from fastapi.testclient import TestClient

os.environ["USE_DB"] = "0"

import app.main as main
from app.anthropic_client import AnthropicClient
from app.stores import MemoryDocumentStore
from repositories import AppRepository, DashboardLayoutRepository, ProjectRepository


METADATA = {"id": "timer", "name": "Timer", "description": "Counts down", "version": "1.0.0", "price": 0, "icon": "⏱️"}


def _message(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}]}


def _sse(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


class ProjectApiTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryDocumentStore()
        self.requests: list = []
        provider = AnthropicClient(api_key="test-key", transport=httpx.MockTransport(self._handle))
        patches = [
            patch.object(main, "document_store", self.store),
            patch.object(main, "apps", AppRepository(self.store)),
            patch.object(main, "projects", ProjectRepository(self.store)),
            patch.object(main, "dashboard", DashboardLayoutRepository(self.store)),
            patch.object(main, "provider", provider),
        ]
        for item in patches:
            item.start()
            self.addCleanup(item.stop)
        self.client = TestClient(main.app)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append(body)
        if body.get("stream"):
            frames = [
                _sse({"type": "message_start"}),
                _sse({"type": "content_block_delta", "delta": {"text": " App() {}"}}),
                _sse({"type": "message_delta", "usage": {"input_tokens": 5, "output_tokens": 4}}),
                _sse({"type": "message_stop"}),
            ]
            return httpx.Response(200, content="".join(frames).encode("utf-8"))
        if body.get("max_tokens") == 1024:
            return httpx.Response(200, json=_message(json.dumps(METADATA)))
        return httpx.Response(200, json=_message(" App() {}"))

    def _create_project(self) -> dict:
        res = self.client.post("/api/projects", json={"prompt": "a countdown timer", "model": "claude-3-haiku-20240307"})
        body = res.json()
        self.assertTrue(body.get("ok"), body)
        return body["data"]


class TestProjectsApi(ProjectApiTestCase):
    def test_create_uses_generated_metadata(self) -> None:
        project = self._create_project()
        self.assertEqual(project["name"], "Timer")
        self.assertEqual(project["icon"], "⏱️")
        self.assertEqual(project["status"], "draft")
        self.assertEqual(project["current_version"], 0)
        self.assertEqual(project["initial_prompt"], "a countdown timer")

    def test_create_requires_prompt(self) -> None:
        res = self.client.post("/api/projects", json={})
        self.assertEqual(res.status_code, 400)

    def test_metadata_upstream_failure(self) -> None:
        failing = AnthropicClient(api_key="k", transport=httpx.MockTransport(lambda r: httpx.Response(500, text="boom")))
        with patch.object(main, "provider", failing):
            res = self.client.post("/api/projects", json={"prompt": "x"})
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["errors"][0]["code"], "UPSTREAM_ERROR")
        self.assertEqual(self.store.list("projects").count, 0)

    def test_versions_detail_and_cascade(self) -> None:
        project = self._create_project()
        pid = project["id"]
        for n in range(3):
            res = self.client.post(f"/api/projects/{pid}/versions", json={"prompt": f"v{n}", "source_code": f"function V{n}() {{}}"})
            self.assertEqual(res.json()["data"]["version_number"], n + 1)
        listed = self.client.get(f"/api/projects/{pid}/versions").json()
        self.assertEqual(listed["meta"], {"count": 3, "project_id": pid})
        detail = self.client.get(f"/api/projects/{pid}").json()["data"]
        self.assertEqual(detail["current_version"], 3)
        self.assertEqual([v["version_number"] for v in detail["versions"]], [3, 2, 1])

        self.assertEqual(self.client.delete(f"/api/projects/{pid}").status_code, 204)
        self.assertEqual(self.client.get(f"/api/projects/{pid}").status_code, 404)
        self.assertEqual(self.store.list("project_versions").count, 0)
        self.assertEqual(self.client.delete(f"/api/projects/{pid}").status_code, 404)

    def test_version_for_missing_project(self) -> None:
        res = self.client.post("/api/projects/missing/versions", json={"prompt": "p", "source_code": "c"})
        self.assertEqual(res.status_code, 404)

    def test_update_project(self) -> None:
        pid = self._create_project()["id"]
        res = self.client.put(f"/api/projects/{pid}", json={"name": "Renamed", "status": "published"})
        self.assertEqual(res.json()["data"]["name"], "Renamed")
        self.assertEqual(res.json()["data"]["status"], "published")
        published = self.client.get("/api/published-projects").json()
        self.assertEqual(published["meta"]["count"], 1)
        res = self.client.put(f"/api/projects/{pid}", json={"name": 5})
        self.assertEqual(res.status_code, 400)

    def test_list_projects(self) -> None:
        self._create_project()
        self._create_project()
        body = self.client.get("/api/projects", params={"limit": 1}).json()
        self.assertEqual(body["meta"], {"count": 2, "limit": 1, "offset": 0})
        self.assertNotIn("versions", body["data"][0])

    def test_release_and_convert(self) -> None:
        pid = self._create_project()["id"]
        self.client.post(f"/api/projects/{pid}/versions", json={"prompt": "first", "source_code": "function One() {}", "model": "m1"})
        res = self.client.post(f"/api/projects/{pid}/release", json={"version_number": 1, "price": 2.5})
        app = res.json()["data"]
        self.assertEqual(app["status"], "published")
        self.assertEqual(app["price"], 2.5)
        self.assertEqual(app["source_code"], "function One() {}")
        self.assertEqual(app["project_id"], pid)
        self.assertEqual(app["project_version"], 1)
        self.assertEqual(app["version"], "1")

        res = self.client.post(f"/api/projects/{pid}/convert", json={"version": 1})
        self.assertEqual(res.json()["data"]["price"], 0.0)
        self.assertEqual(self.client.get("/api/published-apps").json()["meta"]["count"], 2)

    def test_release_missing_version(self) -> None:
        pid = self._create_project()["id"]
        res = self.client.post(f"/api/projects/{pid}/release", json={"version_number": 4})
        self.assertEqual(res.status_code, 404)
        res = self.client.post(f"/api/projects/{pid}/release", json={})
        self.assertEqual(res.status_code, 400)


class TestGenerationApi(ProjectApiTestCase):
    def test_sync_generation(self) -> None:
        res = self.client.post("/api/generate", json={"prompt": "app"})
        self.assertEqual(res.json()["data"]["source_code"], "function App() {}")

    def test_stream_generation(self) -> None:
        res = self.client.post("/generate", json={"prompt": "app"})
        self.assertEqual(res.status_code, 200)
        self.assertTrue(res.headers["content-type"].startswith("text/event-stream"))
        self.assertEqual(res.headers["cache-control"], "no-cache")
        text = res.text
        self.assertIn("data: Starting generation...\n\n", text)
        self.assertIn('event: token\ndata: {"type":"token","text":"function App() {}"}\n\n', text)
        self.assertIn('event: usage\ndata: {"type":"usage","input_tokens":5,"output_tokens":4}\n\n', text)
        self.assertTrue(text.endswith("data: Generation complete!\n\n"))

    def test_stream_modification(self) -> None:
        res = self.client.post("/generate/modify", json={"prompt": "make it red", "code": "function A() {}"})
        self.assertIn("data: Starting code modification...\n\n", res.text)
        self.assertTrue(res.text.endswith("data: Code modification complete!\n\n"))
        sent = self.requests[-1]
        self.assertIn("function A() {}", sent["messages"][0]["content"][0]["text"])

    def test_stream_requires_key(self) -> None:
        with patch.object(main, "provider", AnthropicClient(api_key=None)):
            res = self.client.post("/generate", json={"prompt": "app"})
        self.assertEqual(res.status_code, 501)
        self.assertEqual(res.json()["errors"][0]["code"], "PROVIDER_NOT_CONFIGURED")

    def test_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"data": [{"id": "claude-3-5-sonnet-20241022"}], "has_more": False, "first_id": None, "last_id": None})

        with patch.object(main, "provider", AnthropicClient(api_key="k", transport=httpx.MockTransport(handler))):
            body = self.client.get("/api/models").json()
        self.assertEqual(body["data"][0]["name"], "Claude 3.5 Sonnet")
        self.assertEqual(body["data"][0]["label"], "flagship")


if __name__ == "__main__":
    unittest.main()
