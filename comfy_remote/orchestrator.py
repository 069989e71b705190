"""
Comfy Remote - Run Orchestrator
================================

Drives one run through its lifecycle:

    SUBMITTING --submit ok--> POLLING --image found--> DONE
         |                       |
         | (upload/submit error) +--elapsed > max_wait--> TIMED_OUT
         v
       FAILED

Two ways to drive it share the same transition and timeout rules:

- long-lived:   ``await orchestrator.run(request)`` submits and polls every
                ``poll_interval`` seconds until a terminal state
- checkpointed: ``await orchestrator.submit(request)`` returns a ticket; each
                ``await orchestrator.check(ticket)`` performs exactly one poll.
                The caller keeps the ticket (and its ``started_at``) between
                calls, so no server-side state is needed.

A failed poll is transient and never ends a run. Only the wall-clock ceiling
measured from ``started_at`` does.

Usage:
    orchestrator = RunOrchestrator(WorkflowStore(), HistoryStore())
    status = await orchestrator.run(RunRequest(workflow_id="wf", base_url="localhost:8188"))
    if status.state is RunState.DONE:
        print(status.view_url)
"""

import asyncio
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import httpx

from .auth import mask_url_credentials
from .client import RemoteJobClient
from .compiler import compile_graph, validate_job
from .config import settings
from .exceptions import ComfyRemoteError, NoResultFoundError
from .extraction import ImageRef, build_proxy_url, build_view_url
from .graph import WorkflowGraph
from .history import HistoryStore, RunRecord
from .logging_config import LogContext, get_logger, log_timing, traced_operation
from .normalizer import normalize
from .overrides import inject_input_image, inject_prompts, inject_sampler_params, resolve_seed
from .validation import normalize_base_url, validate_prompt_text, validate_steps
from .workflow_store import WorkflowStore, summarize_workflow

logger = get_logger(__name__)

__all__ = [
    "RunState",
    "InputImage",
    "RunRequest",
    "RunTicket",
    "RunStatus",
    "RunOrchestrator",
]


class RunState(str, Enum):
    """Lifecycle states of a run."""

    SUBMITTING = "submitting"
    POLLING = "polling"
    DONE = "done"
    TIMED_OUT = "timed_out"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.DONE, RunState.TIMED_OUT, RunState.FAILED)


@dataclass
class InputImage:
    """An input image supplied with a run request."""

    filename: str
    content: bytes
    content_type: str | None = None


@dataclass
class RunRequest:
    """User-supplied parameters of one run."""

    workflow_id: str
    base_url: str
    positive_prompt: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None
    steps: int | None = None
    input_image: InputImage | None = None


@dataclass
class RunTicket:
    """
    Everything needed to continue a submitted run.

    Serializable so the checkpointed variant can hand it to the caller and
    rebuild it on the next status call.
    """

    job_id: str
    base_url: str
    started_at: float
    client_id: str | None = None
    workflow_id: str | None = None
    workflow_name: str | None = None
    positive_prompt: str | None = None
    negative_prompt: str | None = None
    seed: int | None = None
    steps: int | None = None
    input_filename: str | None = None
    summary: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)
    # Last payloads seen while polling; reported on timeout
    last_history: Any = None
    last_full_history: Any = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "client_id": self.client_id,
            "base_url": self.base_url,
            "started_at": self.started_at,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "positive_prompt": self.positive_prompt,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "steps": self.steps,
            "input_filename": self.input_filename,
            "summary": self.summary,
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunTicket":
        warnings = data.get("warnings")
        summary = data.get("summary")
        return cls(
            job_id=str(data["job_id"]),
            base_url=str(data["base_url"]),
            started_at=float(data["started_at"]),
            client_id=data.get("client_id"),
            workflow_id=data.get("workflow_id"),
            workflow_name=data.get("workflow_name"),
            positive_prompt=data.get("positive_prompt"),
            negative_prompt=data.get("negative_prompt"),
            seed=data.get("seed"),
            steps=data.get("steps"),
            input_filename=data.get("input_filename"),
            summary=summary if isinstance(summary, dict) else None,
            warnings=list(warnings) if isinstance(warnings, list) else [],
        )

    def record_metadata(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "workflow_id": self.workflow_id,
            "workflow_name": self.workflow_name,
            "positive_prompt": self.positive_prompt,
            "negative_prompt": self.negative_prompt,
            "seed": self.seed,
            "steps": self.steps,
            "input_filename": self.input_filename,
        }


@dataclass
class RunStatus:
    """Observable state of a run after a transition."""

    state: RunState
    ticket: RunTicket | None = None
    image: ImageRef | None = None
    view_url: str | None = None
    proxy_url: str | None = None
    record: RunRecord | None = None
    error: ComfyRemoteError | None = None
    elapsed_ms: float | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "state": self.state.value,
            "elapsed_ms": round(self.elapsed_ms) if self.elapsed_ms is not None else None,
        }
        if self.ticket is not None:
            data["ticket"] = self.ticket.to_dict()
            data["job_id"] = self.ticket.job_id
        if self.image is not None:
            data["image"] = self.image.to_dict()
            data["view_url"] = self.view_url
            data["proxy_url"] = self.proxy_url
            data["record"] = self.record.to_dict() if self.record else None
        if self.error is not None:
            data.update(self.error.to_dict())
        if self.state is RunState.TIMED_OUT and self.ticket is not None:
            data["history"] = self.ticket.last_history
            data["full_history"] = self.ticket.last_full_history
        return data


def _now_ms() -> float:
    return time.time() * 1000


class RunOrchestrator:
    """
    Coordinates workflow lookup, parameter injection, compilation,
    submission, polling and persistence for runs.
    """

    def __init__(
        self,
        workflow_store: WorkflowStore,
        history_store: HistoryStore,
        client_factory: Callable[[str], RemoteJobClient] = RemoteJobClient,
        poll_interval: float | None = None,
        max_wait_ms: float | None = None,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        proxy_url_builder: Callable[[str, ImageRef], str] | None = None,
    ):
        """
        Args:
            workflow_store: Source of stored graphs
            history_store: Destination of finished runs
            client_factory: Builds a RemoteJobClient for a backend URL
            poll_interval: Seconds between polls (default from settings)
            max_wait_ms: Polling ceiling from started_at (default from settings)
            clock: Milliseconds since the epoch (injectable for tests)
            sleep: Awaitable sleep (injectable for tests)
            proxy_url_builder: Builds the same-origin image URL
        """
        self.workflow_store = workflow_store
        self.history_store = history_store
        self.client_factory = client_factory
        self.poll_interval = poll_interval if poll_interval is not None else settings.poll.interval
        self.max_wait_ms = max_wait_ms if max_wait_ms is not None else settings.poll.max_wait_ms
        self.clock = clock or _now_ms
        self.sleep = sleep
        self.proxy_url_builder = proxy_url_builder or build_proxy_url

    # =========================================================================
    # SUBMITTING
    # =========================================================================

    async def submit(self, request: RunRequest) -> RunTicket:
        """
        Prepare and submit a run.

        Raises:
            WorkflowNotFoundError: Unknown workflow id
            InvalidParameterError: Bad base URL or parameters
            UploadError / SubmitError / BackendConnectionError: Backend failures
        """
        base_url = normalize_base_url(request.base_url)
        positive = validate_prompt_text(request.positive_prompt, name="positive_prompt")
        negative = validate_prompt_text(request.negative_prompt, name="negative_prompt")
        steps = validate_steps(request.steps)

        workflow = await asyncio.to_thread(self.workflow_store.get, request.workflow_id)

        with traced_operation("run.submit", {"workflow_id": workflow.id}):
            graph = normalize(WorkflowGraph.from_raw(workflow.raw))

            async with self.client_factory(base_url) as client:
                input_filename = None
                if request.input_image is not None:
                    input_filename = await client.upload_image(
                        request.input_image.filename,
                        request.input_image.content,
                        request.input_image.content_type,
                    )
                    inject_input_image(graph, input_filename)

                inject_prompts(graph, positive, negative)
                seed = resolve_seed(request.seed)
                inject_sampler_params(graph, seed=seed, steps=steps)

                compiled = compile_graph(graph)
                for problem in validate_job(compiled.job):
                    logger.debug(problem, extra={"workflow_id": workflow.id})

                client_id = str(uuid.uuid4())
                with log_timing(logger, "submit_job", workflow_id=workflow.id):
                    job_id = await client.submit(compiled.job, client_id=client_id)

        ticket = RunTicket(
            job_id=job_id,
            base_url=base_url,
            started_at=self.clock(),
            client_id=client_id,
            workflow_id=workflow.id,
            workflow_name=workflow.name,
            positive_prompt=positive,
            negative_prompt=negative,
            seed=seed,
            steps=steps,
            input_filename=input_filename,
            summary=summarize_workflow(graph.to_raw()).to_dict(),
            warnings=list(compiled.warnings),
        )
        logger.info(
            "Run submitted",
            extra={
                "job_id": job_id,
                "workflow_id": workflow.id,
                "base_url": mask_url_credentials(base_url),
                "job_hash": compiled.job_hash,
            },
        )
        return ticket

    # =========================================================================
    # POLLING
    # =========================================================================

    async def check(self, ticket: RunTicket) -> RunStatus:
        """
        Exactly one polling attempt.

        Returns TIMED_OUT once the ceiling has passed, DONE when an image is
        found, otherwise POLLING.
        """
        elapsed = self.clock() - ticket.started_at
        if elapsed > self.max_wait_ms:
            logger.warning(
                "Run timed out waiting for an image",
                extra={"job_id": ticket.job_id, "elapsed_ms": round(elapsed)},
            )
            return RunStatus(
                state=RunState.TIMED_OUT,
                ticket=ticket,
                elapsed_ms=elapsed,
                error=NoResultFoundError(
                    "Timed out or no image found in history",
                    job_id=ticket.job_id,
                    elapsed_ms=elapsed,
                    history=ticket.last_history,
                    full_history=ticket.last_full_history,
                ),
            )

        async with self.client_factory(ticket.base_url) as client:
            snapshot = await client.fetch_status(ticket.job_id)
            if snapshot.history is not None:
                ticket.last_history = snapshot.history
            if snapshot.full_history is not None:
                ticket.last_full_history = snapshot.full_history

            if not snapshot.found:
                return RunStatus(state=RunState.POLLING, ticket=ticket, elapsed_ms=elapsed)

            return await self._complete(client, ticket, snapshot.image, elapsed)

    async def _complete(
        self,
        client: RemoteJobClient,
        ticket: RunTicket,
        image: ImageRef,
        elapsed: float,
    ) -> RunStatus:
        """DONE: download and persist best-effort; the image stays viewable either way."""
        record = None
        try:
            content = await client.download_image(image)
        except (ComfyRemoteError, httpx.HTTPError) as e:
            logger.warning(
                f"Failed to download result: {e}",
                extra={"job_id": ticket.job_id, "file_name": image.filename},
            )
            content = None

        if content is not None:
            try:
                record = await asyncio.to_thread(
                    self.history_store.append,
                    content,
                    image.filename,
                    ticket.record_metadata(),
                )
            except (OSError, ComfyRemoteError) as e:
                logger.warning(
                    f"Failed to save result to history: {e}",
                    extra={"job_id": ticket.job_id},
                )

        logger.info(
            "Run completed",
            extra={"job_id": ticket.job_id, "elapsed_ms": round(elapsed), "saved": record is not None},
        )
        return RunStatus(
            state=RunState.DONE,
            ticket=ticket,
            image=image,
            view_url=build_view_url(ticket.base_url, image),
            proxy_url=self.proxy_url_builder(ticket.base_url, image),
            record=record,
            elapsed_ms=elapsed,
        )

    # =========================================================================
    # LONG-LIVED
    # =========================================================================

    async def wait(self, ticket: RunTicket) -> RunStatus:
        """Poll until a terminal state, sleeping poll_interval between attempts."""
        with LogContext(f"run-{ticket.job_id[:8]}"):
            while True:
                status = await self.check(ticket)
                if status.is_terminal:
                    return status
                await self.sleep(self.poll_interval)

    async def run(self, request: RunRequest) -> RunStatus:
        """Submit then wait. Submit-phase errors become a FAILED status."""
        with LogContext(f"run-{uuid.uuid4().hex[:8]}"):
            try:
                ticket = await self.submit(request)
            except ComfyRemoteError as e:
                logger.warning(f"Run failed before polling: {e.message}", extra={"code": e.code})
                return RunStatus(state=RunState.FAILED, error=e)
        return await self.wait(ticket)
