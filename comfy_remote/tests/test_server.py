"""
Tests for the HTTP API.

Runs the FastAPI app in-process over httpx.ASGITransport; backend traffic
goes to the in-memory fake ComfyUI.
"""

import json
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
import pytest_asyncio
from pydantic import SecretStr

from comfy_remote.auth import session_token
from comfy_remote.config import ServerConfig, Settings, StorageConfig
from comfy_remote.server import create_app
from comfy_remote.validation import normalize_base_url

PASSWORD = "hunter2"
BASE_URL = "http://comfy.test:8188"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        storage=StorageConfig(data_dir=tmp_path),
        server=ServerConfig(password=SecretStr(PASSWORD), auth_secret=SecretStr("test-secret")),
    )


@pytest.fixture
def app(settings, backend):
    return create_app(settings, transport=backend.transport)


@pytest_asyncio.fixture
async def anon(app):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        yield client


@pytest_asyncio.fixture
async def client(app, settings):
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://testserver"
    ) as client:
        client.cookies.set(settings.server.cookie_name, session_token(settings))
        yield client


async def _import_sample(client, sample_graph):
    payload = {"workflows": [{"id": "sample", "name": "Sample", "raw": sample_graph}]}
    files = {"file": ("workflows.json", json.dumps(payload).encode(), "application/json")}
    return await client.post("/api/workflows", files=files)


class TestSession:
    @pytest.mark.asyncio
    async def test_health_is_public(self, anon):
        response = await anon.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert response.headers["X-Request-ID"]

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, anon):
        response = await anon.get("/api/health", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"

    @pytest.mark.asyncio
    async def test_protected_routes_need_session(self, anon):
        response = await anon.get("/api/workflows")
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHORIZED"

    @pytest.mark.asyncio
    async def test_login_sets_cookie(self, anon, settings):
        response = await anon.post("/api/login", data={"password": PASSWORD})

        assert response.status_code == 200
        assert response.cookies.get(settings.server.cookie_name) == session_token(settings)
        assert "httponly" in response.headers["set-cookie"].lower()

    @pytest.mark.asyncio
    async def test_wrong_password(self, anon):
        response = await anon.post("/api/login", data={"password": "nope"})
        assert response.status_code == 401
        assert response.json()["error"] == "Invalid password"

    @pytest.mark.asyncio
    async def test_empty_password(self, anon):
        response = await anon.post("/api/login", data={"password": ""})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_session_status(self, client, anon):
        assert (await client.get("/api/session")).json() == {
            "authenticated": True,
            "password_configured": True,
        }
        assert (await anon.get("/api/session")).json()["authenticated"] is False

    @pytest.mark.asyncio
    async def test_logout_clears_cookie(self, client, settings):
        response = await client.post("/api/logout")
        assert response.status_code == 200
        assert settings.server.cookie_name in response.headers["set-cookie"]


class TestWorkflowRoutes:
    @pytest.mark.asyncio
    async def test_import_and_list(self, client, sample_graph):
        response = await _import_sample(client, sample_graph)
        assert response.status_code == 200
        assert response.json()["saved"] is True

        listed = (await client.get("/api/workflows")).json()["workflows"]
        assert [wf["id"] for wf in listed] == ["sample"]
        assert "raw" not in listed[0]
        assert listed[0]["summary"]["workflow_type"] == "text-to-image"

    @pytest.mark.asyncio
    async def test_import_invalid_json(self, client):
        files = {"file": ("bad.json", b"{nope", "application/json")}
        response = await client.post("/api/workflows", files=files)
        assert response.status_code == 400
        assert "Could not parse JSON" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_import_without_workflows(self, client):
        files = {"file": ("empty.json", b"[]", "application/json")}
        response = await client.post("/api/workflows", files=files)
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_rename(self, client, sample_graph):
        await _import_sample(client, sample_graph)
        response = await client.patch("/api/workflows", json={"id": "sample", "name": "Renamed"})

        assert response.status_code == 200
        assert response.json()["workflows"][0]["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_rename_bad_body(self, client):
        response = await client.patch("/api/workflows", json={"id": "sample"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_rename_unknown(self, client):
        response = await client.patch("/api/workflows", json={"id": "zzz", "name": "x"})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_delete(self, client, sample_graph):
        await _import_sample(client, sample_graph)
        response = await client.delete("/api/workflows", params={"id": "sample"})

        assert response.json() == {"workflows": [], "deleted": "sample"}
        missing = await client.delete("/api/workflows", params={"id": "sample"})
        assert missing.status_code == 404


class TestRunRoutes:
    @pytest.mark.asyncio
    async def test_run_and_wait(self, client, backend, sample_graph):
        await _import_sample(client, sample_graph)
        response = await client.post(
            "/api/run",
            data={
                "workflow_id": "sample",
                "base_url": BASE_URL,
                "positive_prompt": "a dog",
                "seed": "11",
                "steps": "4",
                "wait": "true",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["state"] == "done"
        assert body["image"]["filename"] == "job-1.png"
        assert body["record"]["seed"] == 11
        assert backend.prompts[0]["prompt"]["3"]["inputs"]["steps"] == 4

        proxy = urlparse(body["proxy_url"])
        assert proxy.path == "/api/image"
        assert parse_qs(proxy.query)["base_url"] == [BASE_URL]

    @pytest.mark.asyncio
    async def test_run_with_input_image(self, client, backend, img2img_graph):
        payload = json.dumps([{"id": "edit", "raw": img2img_graph}]).encode()
        await client.post("/api/workflows", files={"file": ("wf.json", payload, "application/json")})

        response = await client.post(
            "/api/run",
            data={"workflow_id": "edit", "base_url": BASE_URL, "wait": "true"},
            files={"image": ("cat.png", b"\x89PNGcat", "image/png")},
        )

        assert response.status_code == 200
        assert len(backend.uploads) == 1
        assert backend.prompts[0]["prompt"]["1"]["inputs"]["image"] == "input.png"

    @pytest.mark.asyncio
    async def test_checkpointed_flow(self, client, backend, sample_graph):
        backend.polls_until_done = 1
        await _import_sample(client, sample_graph)

        submitted = await client.post(
            "/api/run", data={"workflow_id": "sample", "base_url": BASE_URL}
        )
        assert submitted.status_code == 200
        ticket = submitted.json()["ticket"]
        assert submitted.json()["state"] == "polling"

        first = await client.post("/api/run/status", json=ticket)
        assert first.status_code == 200
        assert first.json()["state"] == "polling"

        second = await client.post("/api/run/status", json=ticket)
        assert second.json()["state"] == "done"
        assert (await client.get("/api/history")).json()["items"][0]["job_id"] == "job-1"

    @pytest.mark.asyncio
    async def test_expired_ticket(self, client):
        ticket = {"job_id": "job-1", "base_url": BASE_URL, "started_at": 1}
        response = await client.post("/api/run/status", json=ticket)

        assert response.status_code == 504
        assert response.json()["state"] == "timed_out"

    @pytest.mark.asyncio
    async def test_status_requires_ticket_fields(self, client):
        response = await client.post("/api/run/status", json={"job_id": "x"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_submit_rejected(self, client, backend, sample_graph):
        backend.submit_status = 400
        await _import_sample(client, sample_graph)

        response = await client.post(
            "/api/run", data={"workflow_id": "sample", "base_url": BASE_URL, "wait": "true"}
        )

        assert response.status_code == 502
        assert response.json()["state"] == "failed"
        assert "invalid prompt" in response.json()["error"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("wait", ["true", "false"])
    async def test_dropped_backend_connection(self, client, backend, sample_graph, wait):
        backend.dropped_paths.add("/prompt")
        await _import_sample(client, sample_graph)

        response = await client.post(
            "/api/run", data={"workflow_id": "sample", "base_url": BASE_URL, "wait": wait}
        )

        assert response.status_code == 502
        assert response.json()["code"] == "BACKEND_CONNECTION_ERROR"

    @pytest.mark.asyncio
    async def test_missing_workflow_id(self, client):
        response = await client.post("/api/run", data={"base_url": BASE_URL})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        response = await client.post("/api/run", data={"workflow_id": "nope", "base_url": BASE_URL})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_bad_seed(self, client, sample_graph):
        await _import_sample(client, sample_graph)
        response = await client.post(
            "/api/run", data={"workflow_id": "sample", "base_url": BASE_URL, "seed": "abc"}
        )
        assert response.status_code == 400


class TestImageAndHistoryRoutes:
    @pytest.mark.asyncio
    async def test_image_proxy_with_token(self, anon, settings):
        response = await anon.get(
            "/api/image",
            params={"filename": "x.png", "base_url": BASE_URL, "token": session_token(settings)},
        )
        assert response.status_code == 200
        assert response.content == b"\x89PNGx.png"
        assert response.headers["content-type"] == "image/png"

    @pytest.mark.asyncio
    async def test_image_proxy_rejects_bad_token(self, anon):
        response = await anon.get("/api/image", params={"filename": "x.png", "token": "wrong"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_image_proxy_passes_backend_status(self, client, backend):
        backend.view_status = 404
        response = await client.get("/api/image", params={"filename": "x.png", "base_url": BASE_URL})
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_connection_test(self, client):
        response = await client.get("/api/test", params={"base_url": BASE_URL})
        assert response.status_code == 200
        assert response.json()["ok"] is True

    @pytest.mark.asyncio
    async def test_history_lifecycle(self, client, sample_graph):
        await _import_sample(client, sample_graph)
        await client.post(
            "/api/run", data={"workflow_id": "sample", "base_url": BASE_URL, "wait": "true"}
        )

        items = (await client.get("/api/history")).json()["items"]
        assert len(items) == 1
        record = items[0]

        single = await client.get("/api/history", params={"id": record["id"]})
        assert single.json()["item"]["stored_filename"] == record["stored_filename"]

        file_response = await client.get(
            "/api/history/file", params={"name": record["stored_filename"], "download": "1"}
        )
        assert file_response.status_code == 200
        assert file_response.content == b"\x89PNGjob-1.png"
        assert "attachment" in file_response.headers["content-disposition"]

        deleted = await client.delete("/api/history", params={"id": record["id"]})
        assert deleted.json() == {"deleted": record["id"]}
        assert (await client.get("/api/history")).json()["items"] == []

    @pytest.mark.asyncio
    async def test_history_file_rejects_traversal(self, client):
        response = await client.get("/api/history/file", params={"name": "../history.json"})
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_history_item(self, client):
        assert (await client.get("/api/history", params={"id": "nope"})).status_code == 404
        assert (await client.delete("/api/history", params={"id": "nope"})).status_code == 404


class TestBackendPools:
    @pytest.mark.asyncio
    async def test_only_configured_backend_is_pooled(self, settings):
        from comfy_remote import http_client

        app = create_app(settings)
        factory = app.state.client_factory
        default = normalize_base_url(settings.backend.url)

        shared = factory(default)
        adhoc = factory("http://elsewhere.test:8188")
        try:
            assert shared._http is http_client.get_async_http_client(default)
            assert adhoc._http is not shared._http
            assert "http://elsewhere.test:8188" not in http_client._async_clients
        finally:
            await adhoc.close()
            await http_client.close_all_clients()
