"""
Comfy Remote - Remote Job Client
=================================

Async HTTP client for the ComfyUI endpoints a run needs:

- POST /upload/image   upload an input image
- POST /prompt         submit a compiled job
- GET  /history/{id}   per-job history (polled)
- GET  /history        full history (polled fallback)
- GET  /view           download an artifact

Backend failures on upload / submit raise typed errors carrying the
backend's status and body. Polling never raises: a failed poll is
transient and simply reports "no image yet".

Usage:
    from comfy_remote.client import RemoteJobClient

    async with RemoteJobClient("http://localhost:8188") as client:
        job_id = await client.submit(compiled.job, client_id="abc")
        snapshot = await client.fetch_status(job_id)
        if snapshot.image:
            data = await client.download_image(snapshot.image)
"""

import json
import mimetypes
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import httpx

from .config import settings
from .exceptions import (
    BackendConnectionError,
    ComfyRemoteError,
    SubmitError,
    UploadError,
)
from .extraction import ImageRef, build_view_url, extract_image
from .graph import JobDescription
from .http_client import AsyncHttpClient
from .logging_config import get_logger
from .retry import retry_async

logger = get_logger(__name__)

__all__ = [
    "RemoteJobClient",
    "PollSnapshot",
    "ConnectionCheck",
    "PROBE_ENDPOINTS",
]

# Tried in order by the connection test
PROBE_ENDPOINTS = ("/system_stats", "/queue", "/")


def _safe_json(response: httpx.Response, context: str = "") -> Any:
    """
    Parse a JSON body, returning None instead of raising.

    Args:
        response: The httpx Response object
        context: Description of what we were trying to do (for logs)
    """
    try:
        return response.json()
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.debug(
            f"Invalid JSON response{f' ({context})' if context else ''}",
            extra={"error": str(e), "response_text": response.text[:200]},
        )
        return None


@dataclass
class PollSnapshot:
    """Outcome of one poll attempt."""

    image: ImageRef | None = None
    history: Any = None
    full_history: Any = None

    @property
    def found(self) -> bool:
        return self.image is not None


@dataclass
class ConnectionCheck:
    """Result of probing a backend URL."""

    ok: bool
    base_url: str
    endpoint: str | None = None
    status_code: int | None = None
    error: str | None = None
    attempts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "base_url": self.base_url,
            "endpoint": self.endpoint,
            "status": self.status_code,
            "error": self.error,
            "attempts": self.attempts,
        }


class RemoteJobClient:
    """
    Client for one render backend.

    Attributes:
        base_url: Backend URL without trailing slash
    """

    def __init__(
        self,
        base_url: str,
        transport: httpx.AsyncBaseTransport | None = None,
        http: AsyncHttpClient | None = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Backend URL (already normalized)
            transport: Optional httpx transport (tests inject MockTransport)
            http: Optional pre-built AsyncHttpClient to share a pool
        """
        self.base_url = base_url.rstrip("/")
        self._owns_http = http is None
        self._http = http or AsyncHttpClient(self.base_url, transport=transport)

    async def close(self):
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_http:
            await self._http.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    # =========================================================================
    # UPLOAD
    # =========================================================================

    async def upload_image(
        self,
        filename: str,
        content: bytes,
        content_type: str | None = None,
    ) -> str:
        """
        Upload an input image and return the name LoadImage should reference.

        Raises:
            UploadError: Non-2xx status or unusable response body
            BackendConnectionError: Backend unreachable
        """
        mime = content_type or mimetypes.guess_type(filename)[0] or "application/octet-stream"
        response = await self._http.post(
            "/upload/image",
            files={"image": (filename, content, mime)},
            timeout=settings.backend.timeout_upload,
        )

        if not response.is_success:
            logger.warning(
                "Image upload rejected",
                extra={"status": response.status_code, "file_name": filename},
            )
            raise UploadError(
                f"Backend responded with {response.status_code} on /upload/image",
                status_code=response.status_code,
                body=response.text,
            )

        data = _safe_json(response, "uploading image")
        if not isinstance(data, Mapping):
            raise UploadError(
                "Unexpected response from /upload/image",
                status_code=response.status_code,
                body=response.text,
                user_message=f"Unexpected response from ComfyUI upload: {response.text[:200]}",
            )

        name = data.get("name") or data.get("filename") or filename
        if not isinstance(name, str) or not name:
            raise UploadError(
                "Upload response carried no file name",
                status_code=response.status_code,
                body=response.text,
            )

        subfolder = data.get("subfolder")
        if isinstance(subfolder, str) and subfolder.strip("/"):
            name = f"{subfolder.strip('/')}/{name}"

        logger.info("Uploaded input image", extra={"file_name": name})
        return name

    # =========================================================================
    # SUBMIT
    # =========================================================================

    async def submit(
        self,
        job: JobDescription | Mapping[str, Any],
        client_id: str | None = None,
    ) -> str:
        """
        Submit a compiled job and return the backend's job id.

        Not retried: a repeated POST could queue the job twice.

        Raises:
            SubmitError: Non-2xx status or missing prompt_id
            BackendConnectionError: Backend unreachable
        """
        prompt = job.to_payload() if isinstance(job, JobDescription) else dict(job)
        payload = {"client_id": client_id or str(uuid.uuid4()), "prompt": prompt}

        response = await self._http.post(
            "/prompt", json=payload, timeout=settings.backend.timeout_submit
        )

        if not response.is_success:
            logger.warning(
                f"Submit failed with status {response.status_code}",
                extra={"status": response.status_code},
            )
            raise SubmitError(
                f"Backend responded with {response.status_code} on /prompt",
                status_code=response.status_code,
                body=response.text,
            )

        data = _safe_json(response, "submitting job")
        job_id = data.get("prompt_id") if isinstance(data, Mapping) else None
        if job_id is None or job_id == "":
            raise SubmitError(
                "Backend did not return a prompt_id",
                status_code=response.status_code,
                body=response.text,
                user_message=f"ComfyUI did not return a prompt_id. Response: {response.text[:200]}",
            )

        job_id = str(job_id)
        logger.info("Submitted job", extra={"job_id": job_id[:8], "nodes": len(prompt)})
        return job_id

    # =========================================================================
    # POLL
    # =========================================================================

    async def _get_history(self, endpoint: str) -> Any:
        try:
            response = await self._http.get(endpoint, timeout=settings.backend.timeout_history)
        except (httpx.HTTPError, ComfyRemoteError) as e:
            logger.debug(f"History poll failed: {endpoint}", extra={"error": str(e)})
            return None

        if not response.is_success:
            logger.debug(
                f"History poll returned {response.status_code}: {endpoint}",
                extra={"status": response.status_code},
            )
            return None
        return _safe_json(response, "reading history")

    async def fetch_status(self, job_id: str) -> PollSnapshot:
        """
        One poll attempt: per-job history first, then the full history.

        Never raises for backend failures; image is None while running.
        """
        history = await self._get_history(f"/history/{job_id}")
        image = extract_image(history, job_id) if history is not None else None
        if image is not None:
            return PollSnapshot(image=image, history=history)

        full_history = await self._get_history("/history")
        if full_history is not None:
            image = extract_image(full_history, job_id)
        return PollSnapshot(image=image, history=history, full_history=full_history)

    # =========================================================================
    # DOWNLOAD
    # =========================================================================

    @retry_async(exceptions=(BackendConnectionError, httpx.TransportError))
    async def _fetch_view(self, params: dict[str, str]) -> httpx.Response:
        return await self._http.get(
            "/view", params=params, timeout=settings.backend.timeout_view
        )

    async def fetch_view(self, params: Mapping[str, str]) -> httpx.Response:
        """Raw /view response (used by the image proxy)."""
        return await self._fetch_view(dict(params))

    async def download_image(self, image: ImageRef) -> bytes:
        """
        Download an artifact's bytes. Transport failures are retried.

        Raises:
            BackendConnectionError: Non-2xx status or backend unreachable
        """
        response = await self._fetch_view(image.view_params())
        if not response.is_success:
            raise BackendConnectionError(
                f"Backend responded with {response.status_code} on /view for {image.filename}",
                url=self.base_url,
                details={"status_code": response.status_code},
            )
        logger.debug(f"Downloaded image: {image.filename}", extra={"bytes": len(response.content)})
        return response.content

    def view_url(self, image: ImageRef) -> str:
        return build_view_url(self.base_url, image)

    # =========================================================================
    # CONNECTION TEST
    # =========================================================================

    async def check_connection(self) -> ConnectionCheck:
        """Probe the backend; the first endpoint answering 2xx wins."""
        attempts: list[dict[str, Any]] = []
        last_status = None
        last_error = None

        for endpoint in PROBE_ENDPOINTS:
            try:
                response = await self._http.get(endpoint, timeout=settings.backend.timeout_probe)
            except (httpx.HTTPError, ComfyRemoteError) as e:
                last_error = str(e)
                attempts.append({"endpoint": endpoint, "error": last_error})
                continue

            last_status = response.status_code
            attempts.append({"endpoint": endpoint, "status": last_status})
            if response.is_success:
                logger.info(
                    "Backend reachable",
                    extra={"base_url": self.base_url, "endpoint": endpoint},
                )
                return ConnectionCheck(
                    ok=True,
                    base_url=self.base_url,
                    endpoint=endpoint,
                    status_code=last_status,
                    attempts=attempts,
                )

        logger.warning("Backend unreachable", extra={"base_url": self.base_url})
        return ConnectionCheck(
            ok=False,
            base_url=self.base_url,
            status_code=last_status,
            error=last_error or (f"Backend responded with {last_status}" if last_status else None),
            attempts=attempts,
        )
