"""Tests for the remote job client against a mocked ComfyUI."""

import json

import httpx
import pytest

from comfy_remote.client import PROBE_ENDPOINTS, RemoteJobClient
from comfy_remote.exceptions import BackendConnectionError, SubmitError, UploadError
from comfy_remote.extraction import ImageRef
from comfy_remote.graph import JobDescription, Scalar

BASE_URL = "http://comfy.test:8188"


def _client(backend) -> RemoteJobClient:
    return RemoteJobClient(BASE_URL, transport=backend.transport)


class TestUpload:
    @pytest.mark.asyncio
    async def test_upload_returns_backend_name(self, backend):
        async with _client(backend) as client:
            name = await client.upload_image("cat.png", b"\x89PNGdata", "image/png")

        assert name == "input.png"
        assert len(backend.uploads) == 1
        assert b'name="image"' in backend.uploads[0]
        assert b"\x89PNGdata" in backend.uploads[0]

    @pytest.mark.asyncio
    async def test_upload_prefixes_subfolder(self, backend):
        backend.upload_response = {"name": "cat.png", "subfolder": "remote/", "type": "input"}
        async with _client(backend) as client:
            assert await client.upload_image("cat.png", b"x") == "remote/cat.png"

    @pytest.mark.asyncio
    async def test_upload_rejected(self, backend):
        backend.upload_status = 413
        async with _client(backend) as client:
            with pytest.raises(UploadError) as exc_info:
                await client.upload_image("cat.png", b"x")

        assert exc_info.value.status_code == 413
        assert exc_info.value.body == "upload rejected"
        assert exc_info.value.http_status == 502

    @pytest.mark.asyncio
    async def test_upload_non_json_body(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="<html>"))
        async with RemoteJobClient(BASE_URL, transport=transport) as client:
            with pytest.raises(UploadError) as exc_info:
                await client.upload_image("cat.png", b"x")
        assert "<html>" in exc_info.value.user_message


class TestSubmit:
    @pytest.mark.asyncio
    async def test_submit_posts_payload(self, backend):
        job = JobDescription()
        job.add("1", "SaveImage").set_if_absent("filename_prefix", Scalar("ComfyUI"))

        async with _client(backend) as client:
            job_id = await client.submit(job, client_id="client-1")

        assert job_id == "job-1"
        assert backend.prompts == [
            {
                "client_id": "client-1",
                "prompt": {"1": {"class_type": "SaveImage", "inputs": {"filename_prefix": "ComfyUI"}}},
            }
        ]

    @pytest.mark.asyncio
    async def test_submit_generates_client_id(self, backend):
        async with _client(backend) as client:
            await client.submit({"1": {"class_type": "X", "inputs": {}}})
        assert backend.prompts[0]["client_id"]

    @pytest.mark.asyncio
    async def test_submit_rejected_carries_body(self, backend):
        backend.submit_status = 400
        async with _client(backend) as client:
            with pytest.raises(SubmitError) as exc_info:
                await client.submit({"1": {"class_type": "X", "inputs": {}}})

        error = exc_info.value
        assert error.status_code == 400
        assert "invalid prompt" in error.body
        assert "invalid prompt" in error.to_dict()["error"]

    @pytest.mark.asyncio
    async def test_submit_without_prompt_id(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"number": 1}))
        async with RemoteJobClient(BASE_URL, transport=transport) as client:
            with pytest.raises(SubmitError, match="prompt_id"):
                await client.submit({})

    @pytest.mark.asyncio
    async def test_submit_unreachable_backend(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(refuse)) as client:
            with pytest.raises(BackendConnectionError):
                await client.submit({})

    @pytest.mark.parametrize(
        "error_type",
        [httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError, httpx.UnsupportedProtocol],
    )
    @pytest.mark.asyncio
    async def test_transport_errors_become_connection_errors(self, error_type):
        def fail(request):
            raise error_type("transport failure", request=request)

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(fail)) as client:
            with pytest.raises(BackendConnectionError) as excinfo:
                await client.submit({})

        assert isinstance(excinfo.value.__cause__, error_type)


class TestPolling:
    @pytest.mark.asyncio
    async def test_pending_job_reports_no_image(self, backend):
        backend.polls_until_done = 1
        async with _client(backend) as client:
            snapshot = await client.fetch_status("job-1")

        assert snapshot.found is False
        assert snapshot.history == {}
        assert snapshot.full_history == {}
        assert "/history" in backend.paths

    @pytest.mark.asyncio
    async def test_finished_job_reports_image(self, backend):
        async with _client(backend) as client:
            snapshot = await client.fetch_status("job-1")

        assert snapshot.image == ImageRef("job-1.png", "", "output")
        assert snapshot.full_history is None
        assert backend.paths == ["/history/job-1"]

    @pytest.mark.asyncio
    async def test_full_history_fallback(self):
        def handler(request):
            if request.url.path == "/history":
                return httpx.Response(
                    200, json={"job-9": {"outputs": {"1": {"images": [{"filename": "late.png"}]}}}}
                )
            return httpx.Response(200, json={})

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(handler)) as client:
            snapshot = await client.fetch_status("job-9")
        assert snapshot.image.filename == "late.png"

    @pytest.mark.asyncio
    async def test_poll_failures_are_transient(self, backend):
        backend.history_status = 500
        async with _client(backend) as client:
            snapshot = await client.fetch_status("job-1")
        assert snapshot.found is False
        assert snapshot.history is None

    @pytest.mark.asyncio
    async def test_poll_connection_error_swallowed(self):
        def refuse(request):
            raise httpx.ConnectError("down", request=request)

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(refuse)) as client:
            snapshot = await client.fetch_status("job-1")
        assert snapshot.found is False


class TestDownload:
    @pytest.mark.asyncio
    async def test_download_bytes(self, backend):
        async with _client(backend) as client:
            data = await client.download_image(ImageRef("out.png", "", "output"))
        assert data == b"\x89PNGout.png"

    @pytest.mark.asyncio
    async def test_download_non_success(self, backend):
        backend.view_status = 404
        async with _client(backend) as client:
            with pytest.raises(BackendConnectionError):
                await client.download_image(ImageRef("gone.png"))

    @pytest.mark.asyncio
    async def test_fetch_view_passes_params(self, backend):
        async with _client(backend) as client:
            response = await client.fetch_view({"filename": "a.png", "subfolder": "", "type": "temp"})
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/png"

    def test_view_url(self, backend):
        client = _client(backend)
        assert client.view_url(ImageRef("a.png")) == (
            f"{BASE_URL}/view?filename=a.png&subfolder=&type=output"
        )


class TestConnectionCheck:
    @pytest.mark.asyncio
    async def test_first_endpoint_succeeds(self, backend):
        async with _client(backend) as client:
            result = await client.check_connection()

        assert result.ok is True
        assert result.endpoint == "/system_stats"
        assert result.to_dict()["status"] == 200

    @pytest.mark.asyncio
    async def test_falls_through_probe_list(self):
        seen = []

        def handler(request):
            seen.append(request.url.path)
            if request.url.path == "/":
                return httpx.Response(200, text="ok")
            return httpx.Response(404)

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(handler)) as client:
            result = await client.check_connection()

        assert result.ok is True
        assert result.endpoint == "/"
        assert seen == list(PROBE_ENDPOINTS)

    @pytest.mark.asyncio
    async def test_unreachable(self):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        async with RemoteJobClient(BASE_URL, transport=httpx.MockTransport(refuse)) as client:
            result = await client.check_connection()

        assert result.ok is False
        assert result.error
        assert len(result.attempts) == len(PROBE_ENDPOINTS)
        assert json.dumps(result.to_dict())
