"""
Comfy Remote - Result Extraction
=================================

Locates the first produced image in a ComfyUI history response.

History bodies come in several shapes depending on the endpoint and the
backend version:

    GET /history/{id}  -> {"<id>": {"outputs": {...}, ...}}
    GET /history       -> {"<id>": {...}, "<other id>": {...}}
    some proxies       -> {"history": {"<id>": {...}}}
    single entry       -> {"prompt_id": "<id>", "outputs": {...}}

Usage:
    image = extract_image(body, job_id="abc")
    if image:
        url = build_view_url("http://localhost:8188", image)
"""

from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

__all__ = [
    "ImageRef",
    "extract_image",
    "build_view_url",
    "build_proxy_url",
]

OUTPUT_GROUP_KEYS = ("outputs", "output", "data")


@dataclass(frozen=True)
class ImageRef:
    """Identifies an artifact on the backend's /view endpoint."""

    filename: str
    subfolder: str | None = None
    type: str | None = None

    def view_params(self) -> dict[str, str]:
        return {
            "filename": self.filename,
            "subfolder": self.subfolder or "",
            "type": self.type or "output",
        }

    def to_dict(self) -> dict[str, str]:
        return self.view_params()


def _output_groups(entry: Mapping[str, Any]) -> Mapping[str, Any] | None:
    for key in OUTPUT_GROUP_KEYS:
        groups = entry.get(key)
        if isinstance(groups, Mapping):
            return groups
    return None


def _first_image(entry: Any) -> ImageRef | None:
    if not isinstance(entry, Mapping):
        return None
    groups = _output_groups(entry)
    if groups is None:
        return None

    for group in groups.values():
        if not isinstance(group, Mapping):
            continue
        images = group.get("images")
        if not isinstance(images, list):
            continue
        for image in images:
            if not isinstance(image, Mapping):
                continue
            filename = image.get("filename")
            if isinstance(filename, str) and filename:
                subfolder = image.get("subfolder")
                kind = image.get("type")
                return ImageRef(
                    filename=filename,
                    subfolder=subfolder if isinstance(subfolder, str) else None,
                    type=kind if isinstance(kind, str) else None,
                )
    return None


def _candidates(body: Any, job_id: str | None) -> Iterator[Any]:
    if isinstance(body, Mapping):
        if "outputs" in body:
            prompt_id = body.get("prompt_id")
            if prompt_id is None or job_id is None or str(prompt_id) == job_id:
                yield body

        if job_id is not None:
            yield body.get(job_id)
            nested = body.get("history")
            if isinstance(nested, Mapping):
                yield nested.get(job_id)
            return

        nested = body.get("history")
        if isinstance(nested, Mapping):
            yield from nested.values()
        yield from body.values()

    elif isinstance(body, list) and job_id is None:
        yield from body


def extract_image(body: Any, job_id: str | None = None) -> ImageRef | None:
    """Return the first image in *body* belonging to *job_id*, or None."""
    for candidate in _candidates(body, job_id):
        image = _first_image(candidate)
        if image is not None:
            return image
    return None


def build_view_url(base_url: str, image: ImageRef) -> str:
    """Direct URL of *image* on the backend."""
    return f"{base_url.rstrip('/')}/view?{urlencode(image.view_params())}"


def build_proxy_url(
    base_url: str,
    image: ImageRef,
    token: str | None = None,
    path: str = "/api/image",
) -> str:
    """Same-origin proxy URL for *image*, served by the web layer."""
    params = image.view_params()
    params["base_url"] = base_url
    if token:
        params["token"] = token
    return f"{path}?{urlencode(params)}"
