"""
Comfy Remote - HTTP API
========================

Password-gated FastAPI application in front of a render backend.

Routes (all JSON unless noted):

    GET    /api/health             version + status
    GET    /api/session            {authenticated, password_configured}
    POST   /api/login              form "password"; sets the session cookie
    POST   /api/logout             clears the session cookie
    GET    /api/workflows          stored workflows (raw graphs omitted)
    POST   /api/workflows          multipart "file" JSON import
    PATCH  /api/workflows          {"id", "name"} rename
    DELETE /api/workflows?id=      delete
    POST   /api/run                multipart run request (wait=true blocks until done)
    POST   /api/run/status         one checkpointed poll for a ticket
    GET    /api/image              proxies backend /view bytes
    GET    /api/history[?id=]      run history / one record
    DELETE /api/history?id=        delete record + artifact
    GET    /api/history/file       serve a stored artifact
    GET    /api/test?base_url=     backend connection test

Every route except health, session, login and logout requires the session
cookie. The image routes also accept ``?token=`` so they work in <img> tags.

Usage:
    import uvicorn
    from comfy_remote.server import create_app

    uvicorn.run(create_app(), host="127.0.0.1", port=3000)
"""

import asyncio
import json
import mimetypes
import uuid
from contextlib import asynccontextmanager
from typing import Any

import httpx
import pydantic
from fastapi import Body, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse, Response

from .auth import password_configured, session_token, verify_password, verify_session
from .client import RemoteJobClient
from .config import Settings, get_settings
from .exceptions import (
    AuthenticationError,
    ComfyRemoteError,
    InvalidParameterError,
    ValidationError,
)
from .extraction import ImageRef, build_proxy_url
from .history import HistoryStore
from .http_client import close_all_clients, get_async_http_client
from .logging_config import LogContext, get_logger
from .orchestrator import InputImage, RunOrchestrator, RunRequest, RunState, RunTicket
from .validation import (
    RenameWorkflowRequest,
    StatusCheckRequest,
    normalize_base_url,
    validate_seed,
    validate_steps,
)
from .workflow_store import WorkflowStore

logger = get_logger(__name__)

__all__ = ["create_app"]

_STATE_STATUS = {
    RunState.DONE: 200,
    RunState.POLLING: 200,
    RunState.TIMED_OUT: 504,
}


def _model_error(e: pydantic.ValidationError) -> ValidationError:
    first = e.errors()[0] if e.errors() else {}
    field = ".".join(str(part) for part in first.get("loc", ())) or "body"
    reason = first.get("msg", "invalid value")
    return ValidationError(
        f"Invalid request body: {e}",
        user_message=f"Invalid {field}: {reason}",
        details={"errors": json.loads(e.json())},
    )


def create_app(
    settings: Settings | None = None,
    *,
    workflow_store: WorkflowStore | None = None,
    history_store: HistoryStore | None = None,
    orchestrator: RunOrchestrator | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """
    Build the web application.

    Args:
        settings: Settings to use (default: cached settings)
        workflow_store: Workflow store (default: from settings.storage)
        history_store: History store (default: from settings.storage)
        orchestrator: Run orchestrator (default: built from the stores)
        transport: httpx transport for backend traffic (tests inject MockTransport)
    """
    cfg = settings or get_settings()
    workflows = workflow_store or WorkflowStore(cfg.storage.workflows_path)
    history = history_store or HistoryStore(cfg.storage.history_path, cfg.storage.outputs_path)

    default_backend = normalize_base_url(cfg.backend.url)

    def client_factory(base_url: str) -> RemoteJobClient:
        if transport is not None:
            return RemoteJobClient(base_url, transport=transport)
        if base_url == default_backend:
            return RemoteJobClient(base_url, http=get_async_http_client(base_url))
        # Caller-supplied URLs get a throwaway pool, closed when the client exits
        return RemoteJobClient(base_url)

    def proxy_url(base_url: str, image: ImageRef) -> str:
        return build_proxy_url(base_url, image, token=session_token(cfg))

    runs = orchestrator or RunOrchestrator(
        workflows,
        history,
        client_factory=client_factory,
        proxy_url_builder=proxy_url,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Comfy Remote starting",
            extra={"version": cfg.version, "data_dir": str(cfg.storage.data_dir)},
        )
        if not password_configured(cfg):
            logger.warning("Default password in use; set COMFY_REMOTE_SERVER__PASSWORD")
        yield
        await close_all_clients()

    app = FastAPI(title="Comfy Remote", version=cfg.version, lifespan=lifespan)
    app.state.settings = cfg
    app.state.workflow_store = workflows
    app.state.history_store = history
    app.state.orchestrator = runs
    app.state.client_factory = client_factory

    # =========================================================================
    # PLUMBING
    # =========================================================================

    @app.exception_handler(ComfyRemoteError)
    async def comfy_remote_error_handler(request: Request, exc: ComfyRemoteError):
        if exc.http_status >= 500:
            logger.error(exc.developer_message)
        else:
            logger.info(exc.developer_message)
        return JSONResponse(exc.to_dict(), status_code=exc.http_status)

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or uuid.uuid4().hex[:8]
        with LogContext(request_id):
            response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    def require_session(request: Request) -> None:
        if not verify_session(request.cookies.get(cfg.server.cookie_name), cfg):
            raise AuthenticationError("Not authenticated")

    def require_session_or_token(request: Request, token: str | None = Query(None)) -> None:
        cookie = request.cookies.get(cfg.server.cookie_name)
        if not (verify_session(cookie, cfg) or verify_session(token, cfg)):
            raise AuthenticationError("Not authenticated")

    authed = [Depends(require_session)]
    token_authed = [Depends(require_session_or_token)]

    # =========================================================================
    # SESSION
    # =========================================================================

    @app.get("/api/health")
    async def health():
        return {"status": "ok", "version": cfg.version}

    @app.get("/api/session")
    async def session(request: Request):
        return {
            "authenticated": verify_session(request.cookies.get(cfg.server.cookie_name), cfg),
            "password_configured": password_configured(cfg),
        }

    @app.post("/api/login")
    async def login(password: str = Form("")):
        if not password:
            raise ValidationError("Empty password", user_message="Password is required")
        if not verify_password(password, cfg):
            raise AuthenticationError("Invalid password", user_message="Invalid password")

        response = JSONResponse({"authenticated": True})
        response.set_cookie(
            cfg.server.cookie_name,
            session_token(cfg),
            max_age=cfg.server.cookie_max_age,
            path="/",
            httponly=True,
            samesite="lax",
            secure=cfg.server.secure_cookies,
        )
        return response

    @app.post("/api/logout")
    async def logout():
        response = JSONResponse({"authenticated": False})
        response.delete_cookie(cfg.server.cookie_name, path="/")
        return response

    # =========================================================================
    # WORKFLOWS
    # =========================================================================

    def _listing(items) -> list[dict[str, Any]]:
        return [wf.to_dict(include_raw=False) for wf in items]

    @app.get("/api/workflows", dependencies=authed)
    async def list_workflows():
        items = await asyncio.to_thread(workflows.read_all)
        return {"workflows": _listing(items), "source": "stored"}

    @app.post("/api/workflows", dependencies=authed)
    async def import_workflows(file: UploadFile | None = File(None)):
        if file is None:
            raise ValidationError(
                "Missing upload", user_message="Upload a JSON file under the 'file' field."
            )
        content = await file.read()
        try:
            payload = json.loads(content.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(
                f"Could not parse JSON: {e}", user_message=f"Could not parse JSON: {e}"
            ) from e

        merged = await asyncio.to_thread(workflows.import_payload, payload)
        return {"workflows": _listing(merged), "saved": True}

    @app.patch("/api/workflows", dependencies=authed)
    async def rename_workflow(body: Any = Body(None)):
        try:
            request = RenameWorkflowRequest.model_validate(body)
        except pydantic.ValidationError as e:
            raise _model_error(e) from e
        updated = await asyncio.to_thread(workflows.rename, request.id, request.name)
        return {"workflows": _listing(updated), "updated": request.id}

    @app.delete("/api/workflows", dependencies=authed)
    async def delete_workflow(id: str = Query("")):
        workflow_id = id.strip()
        if not workflow_id:
            raise InvalidParameterError("id", id, "missing id to delete")
        remaining = await asyncio.to_thread(workflows.delete, workflow_id)
        return {"workflows": _listing(remaining), "deleted": workflow_id}

    # =========================================================================
    # RUNS
    # =========================================================================

    @app.post("/api/run", dependencies=authed)
    async def run(
        workflow_id: str = Form(""),
        base_url: str = Form(""),
        positive_prompt: str | None = Form(None),
        negative_prompt: str | None = Form(None),
        seed: str | None = Form(None),
        steps: str | None = Form(None),
        wait: bool = Form(False),
        image: UploadFile | None = File(None),
    ):
        if not workflow_id.strip():
            raise InvalidParameterError(
                "workflow_id", workflow_id, user_message="Select a workflow before running."
            )

        input_image = None
        if image is not None and image.filename:
            input_image = InputImage(
                filename=image.filename,
                content=await image.read(),
                content_type=image.content_type,
            )

        request = RunRequest(
            workflow_id=workflow_id.strip(),
            base_url=normalize_base_url(base_url or cfg.backend.url),
            positive_prompt=positive_prompt,
            negative_prompt=negative_prompt,
            seed=validate_seed(seed),
            steps=validate_steps(steps),
            input_image=input_image,
        )

        if wait:
            status = await runs.run(request)
            code = (
                status.error.http_status
                if status.state is RunState.FAILED and status.error
                else _STATE_STATUS.get(status.state, 500)
            )
            return JSONResponse(status.to_dict(), status_code=code)

        ticket = await runs.submit(request)
        return {"state": RunState.POLLING.value, "job_id": ticket.job_id, "ticket": ticket.to_dict()}

    @app.post("/api/run/status", dependencies=authed)
    async def run_status(body: Any = Body(None)):
        try:
            checkpoint = StatusCheckRequest.model_validate(body)
        except pydantic.ValidationError as e:
            raise _model_error(e) from e

        ticket = RunTicket.from_dict(checkpoint.model_dump())
        status = await runs.check(ticket)
        return JSONResponse(status.to_dict(), status_code=_STATE_STATUS.get(status.state, 500))

    @app.get("/api/image", dependencies=token_authed)
    async def image_proxy(
        filename: str = Query(...),
        subfolder: str = Query(""),
        type: str = Query("output"),
        base_url: str | None = Query(None),
    ):
        backend = normalize_base_url(base_url or cfg.backend.url)
        ref = ImageRef(filename=filename, subfolder=subfolder, type=type)
        async with client_factory(backend) as client:
            upstream = await client.fetch_view(ref.view_params())

        if not upstream.is_success:
            return JSONResponse(
                {"error": f"ComfyUI responded with {upstream.status_code} on /view"},
                status_code=upstream.status_code,
            )
        return Response(
            content=upstream.content,
            media_type=upstream.headers.get("content-type", "application/octet-stream"),
            headers={"Cache-Control": "no-store"},
        )

    @app.get("/api/test", dependencies=authed)
    async def test_connection(base_url: str = Query("")):
        backend = normalize_base_url(base_url or cfg.backend.url)
        async with client_factory(backend) as client:
            check = await client.check_connection()
        return JSONResponse(check.to_dict(), status_code=200 if check.ok else 502)

    # =========================================================================
    # HISTORY
    # =========================================================================

    @app.get("/api/history", dependencies=authed)
    async def list_history(id: str | None = Query(None)):
        if id:
            record = await asyncio.to_thread(history.get, id)
            return {"item": record.to_dict()}
        records = await asyncio.to_thread(history.read_all)
        return {"items": [record.to_dict() for record in records]}

    @app.delete("/api/history", dependencies=authed)
    async def delete_history(id: str = Query("")):
        if not id.strip():
            raise InvalidParameterError("id", id, "missing id to delete")
        record = await asyncio.to_thread(history.delete, id.strip())
        return {"deleted": record.id}

    @app.get("/api/history/file", dependencies=token_authed)
    async def history_file(name: str = Query(""), download: str | None = Query(None)):
        path = history.file_path(name)
        media_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        if download in ("1", "true", "yes"):
            return FileResponse(path, media_type=media_type, filename=path.name)
        return FileResponse(path, media_type=media_type)

    return app
