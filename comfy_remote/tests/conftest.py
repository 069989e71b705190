"""Shared fixtures: a sample editor graph and a fake ComfyUI backend."""

import copy
import json

import httpx
import pytest


SAMPLE_GRAPH = {
    "nodes": [
        {
            "id": 4,
            "type": "CheckpointLoaderSimple",
            "inputs": [],
            "widgets_values": ["sd_xl_base_1.0.safetensors"],
        },
        {
            "id": 6,
            "type": "CLIPTextEncode",
            "title": "Positive Prompt",
            "inputs": [{"name": "clip", "link": 3}],
            "widgets_values": ["a cat"],
        },
        {
            "id": 7,
            "type": "CLIPTextEncode",
            "title": "Negative Prompt",
            "inputs": [{"name": "clip", "link": 5}],
            "widgets_values": ["ugly"],
        },
        {
            "id": 5,
            "type": "EmptyLatentImage",
            "inputs": [],
            "widgets_values": [512, 512, 1],
        },
        {
            "id": 3,
            "type": "KSampler",
            "inputs": [
                {"name": "model", "link": 1},
                {"name": "positive", "link": 4},
                {"name": "negative", "link": 6},
                {"name": "latent_image", "link": 2},
            ],
            "widgets_values": [42, "fixed", 20, 7.5, "euler", "normal", 1.0],
        },
        {
            "id": 8,
            "type": "VAEDecode",
            "inputs": [{"name": "samples", "link": 7}, {"name": "vae", "link": 8}],
            "widgets_values": [],
        },
        {
            "id": 9,
            "type": "SaveImage",
            "inputs": [{"name": "images", "link": 9}],
            "widgets_values": ["ComfyUI"],
        },
        {
            "id": 10,
            "type": "Note",
            "widgets_values": ["Remember to pick a checkpoint"],
        },
    ],
    "links": [
        [1, 4, 0, 3, 0, "MODEL"],
        [2, 5, 0, 3, 3, "LATENT"],
        [3, 4, 1, 6, 0, "CLIP"],
        [4, 6, 0, 3, 1, "CONDITIONING"],
        [5, 4, 1, 7, 0, "CLIP"],
        [6, 7, 0, 3, 2, "CONDITIONING"],
        [7, 3, 0, 8, 0, "LATENT"],
        [8, 4, 2, 8, 1, "VAE"],
        [9, 8, 0, 9, 0, "IMAGE"],
        [10, 99, 0, 9, 0, "IMAGE"],
    ],
}


IMG2IMG_GRAPH = {
    "nodes": [
        {"id": 1, "type": "LoadImage", "inputs": [], "widgets_values": ["example.png", "image"]},
        {
            "id": 2,
            "type": "TextEncodeQwenImageEdit",
            "inputs": [{"name": "clip", "link": 1}],
            "widgets_values": ["make it blue"],
        },
        {"id": 3, "type": "SaveImage", "inputs": [], "widgets_values": []},
        {
            "id": 4,
            "type": "CLIPLoader",
            "inputs": [],
            "widgets_values": ["qwen_2.5_vl_7b.safetensors", "qwen_image", "default"],
        },
    ],
    "links": [[1, 4, 0, 2, 0, "CLIP"]],
}


@pytest.fixture
def sample_graph():
    """A fresh copy of a small text-to-image editor graph."""
    return copy.deepcopy(SAMPLE_GRAPH)


@pytest.fixture
def img2img_graph():
    return copy.deepcopy(IMG2IMG_GRAPH)


class FakeComfyBackend:
    """
    In-memory stand-in for a ComfyUI server, served through httpx.MockTransport.

    A job reports its image after ``polls_until_done`` history polls; with
    ``never_finish`` it never does. Requests to ``dropped_paths`` fail with a
    transport error before any response.
    """

    def __init__(self, polls_until_done: int = 0, never_finish: bool = False):
        self.polls_until_done = polls_until_done
        self.never_finish = never_finish
        self.prompts: list[dict] = []
        self.uploads: list[bytes] = []
        self.polls: dict[str, int] = {}
        self.paths: list[str] = []
        self.upload_status = 200
        self.submit_status = 200
        self.history_status = 200
        self.view_status = 200
        self.upload_response: dict = {"name": "input.png", "subfolder": "", "type": "input"}
        self.dropped_paths: set[str] = set()

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def _finished(self, job_id: str) -> bool:
        return not self.never_finish and self.polls.get(job_id, 0) > self.polls_until_done

    def _entry(self, job_id: str) -> dict:
        return {
            "prompt": [],
            "outputs": {
                "9": {
                    "images": [
                        {"filename": f"{job_id}.png", "subfolder": "", "type": "output"}
                    ]
                }
            },
            "status": {"status_str": "success", "completed": True},
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.paths.append(path)

        if path in self.dropped_paths:
            raise httpx.RemoteProtocolError(
                "Server disconnected without sending a response.", request=request
            )

        if path == "/upload/image":
            self.uploads.append(request.content)
            if self.upload_status != 200:
                return httpx.Response(self.upload_status, text="upload rejected")
            return httpx.Response(200, json=self.upload_response)

        if path == "/prompt":
            if self.submit_status != 200:
                return httpx.Response(
                    self.submit_status, json={"error": {"message": "invalid prompt"}}
                )
            body = json.loads(request.content)
            self.prompts.append(body)
            return httpx.Response(
                200, json={"prompt_id": f"job-{len(self.prompts)}", "number": len(self.prompts)}
            )

        if path.startswith("/history/"):
            job_id = path.rsplit("/", 1)[1]
            self.polls[job_id] = self.polls.get(job_id, 0) + 1
            if self.history_status != 200:
                return httpx.Response(self.history_status, text="boom")
            if self._finished(job_id):
                return httpx.Response(200, json={job_id: self._entry(job_id)})
            return httpx.Response(200, json={})

        if path == "/history":
            if self.history_status != 200:
                return httpx.Response(self.history_status, text="boom")
            return httpx.Response(200, json={})

        if path == "/view":
            if self.view_status != 200:
                return httpx.Response(self.view_status, text="missing")
            filename = request.url.params.get("filename", "")
            return httpx.Response(
                200,
                content=b"\x89PNG" + filename.encode(),
                headers={"content-type": "image/png"},
            )

        if path == "/system_stats":
            return httpx.Response(200, json={"system": {"os": "posix"}, "devices": []})

        return httpx.Response(404, text="not found")


@pytest.fixture
def backend():
    return FakeComfyBackend()


class FakeClock:
    """Millisecond clock advanced by the fake sleep."""

    def __init__(self, start: float = 1_700_000_000_000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds * 1000


@pytest.fixture
def clock():
    return FakeClock()
