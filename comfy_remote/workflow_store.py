"""
Comfy Remote - Workflow Store
==============================

Persistent store of imported editor graphs.

Storage layout (JSON file, default data/workflows.json):

    {"workflows": [
        {"id": "...", "name": "...", "path": null,
         "summary": {...}, "raw": {<editor graph>}}
    ]}

Provides:
- Lenient import of several export shapes (single graph, list,
  {"workflows": [...]}, {"items": [...]}, id-keyed mapping)
- Id de-duplication on import (existing entries keep their id)
- Rename / delete
- Structural summary (node counts, prompt and image nodes, workflow type)
"""

import copy
import json
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .config import settings
from .exceptions import ValidationError, WorkflowNotFoundError
from .logging_config import get_logger
from .overrides import is_negative_title, is_prompt_kind
from .retry import retry_with_backoff

logger = get_logger(__name__)

__all__ = [
    "WorkflowSummary",
    "StoredWorkflow",
    "WorkflowStore",
    "summarize_workflow",
    "normalize_workflows",
]


# =============================================================================
# SUMMARY
# =============================================================================


@dataclass
class WorkflowSummary:
    """Structural overview of an editor graph."""

    total_nodes: int = 0
    workflow_type: str = "unknown"
    type_counts: dict[str, int] = field(default_factory=dict)
    load_image_nodes: list[dict[str, Any]] = field(default_factory=list)
    save_image_nodes: list[dict[str, Any]] = field(default_factory=list)
    prompt_nodes: list[dict[str, Any]] = field(default_factory=list)
    positive_prompt_nodes: list[dict[str, Any]] = field(default_factory=list)
    negative_prompt_nodes: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_nodes": self.total_nodes,
            "workflow_type": self.workflow_type,
            "type_counts": dict(self.type_counts),
            "load_image_nodes": list(self.load_image_nodes),
            "save_image_nodes": list(self.save_image_nodes),
            "prompt_nodes": list(self.prompt_nodes),
            "positive_prompt_nodes": list(self.positive_prompt_nodes),
            "negative_prompt_nodes": list(self.negative_prompt_nodes),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowSummary":
        return cls(
            total_nodes=int(data.get("total_nodes", 0)),
            workflow_type=str(data.get("workflow_type", "unknown")),
            type_counts=dict(data.get("type_counts") or {}),
            load_image_nodes=list(data.get("load_image_nodes") or []),
            save_image_nodes=list(data.get("save_image_nodes") or []),
            prompt_nodes=list(data.get("prompt_nodes") or []),
            positive_prompt_nodes=list(data.get("positive_prompt_nodes") or []),
            negative_prompt_nodes=list(data.get("negative_prompt_nodes") or []),
        )


def summarize_workflow(raw: Any) -> WorkflowSummary:
    """Summarize a raw editor graph. Anything without a node list is empty."""
    nodes = raw.get("nodes") if isinstance(raw, Mapping) else None
    if not isinstance(nodes, list):
        nodes = []

    summary = WorkflowSummary(total_nodes=len(nodes))
    for node in nodes:
        if not isinstance(node, Mapping):
            continue
        kind = node.get("type") or node.get("class_type") or "Unknown"
        kind = str(kind)
        summary.type_counts[kind] = summary.type_counts.get(kind, 0) + 1

        title = node.get("title") if isinstance(node.get("title"), str) else None
        brief = {"id": node.get("id"), "type": kind, "title": title}
        kind_lower = kind.lower()

        if "loadimage" in kind_lower:
            summary.load_image_nodes.append(brief)
        if "saveimage" in kind_lower:
            summary.save_image_nodes.append(brief)
        if is_prompt_kind(kind_lower):
            summary.prompt_nodes.append(brief)
            if is_negative_title((title or "").lower()):
                summary.negative_prompt_nodes.append(brief)
            else:
                summary.positive_prompt_nodes.append(brief)

    if summary.load_image_nodes:
        summary.workflow_type = "image-to-image"
    elif summary.prompt_nodes:
        summary.workflow_type = "text-to-image"
    return summary


# =============================================================================
# STORED WORKFLOW
# =============================================================================


@dataclass
class StoredWorkflow:
    """One imported workflow."""

    id: str
    name: str
    raw: Any
    summary: WorkflowSummary = field(default_factory=WorkflowSummary)
    path: str | None = None

    def to_dict(self, include_raw: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "path": self.path,
            "summary": self.summary.to_dict(),
        }
        if include_raw:
            data["raw"] = self.raw
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StoredWorkflow":
        raw = data.get("raw")
        summary = data.get("summary")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            raw=raw,
            summary=(
                WorkflowSummary.from_dict(summary)
                if isinstance(summary, Mapping)
                else summarize_workflow(raw)
            ),
            path=data.get("path") if isinstance(data.get("path"), str) else None,
        )


def _is_graph(value: Any) -> bool:
    return isinstance(value, Mapping) and ("nodes" in value or "raw" in value)


def _entries(payload: Any) -> list[tuple[str | None, Any]]:
    """Flatten the accepted import shapes into (key, entry) pairs."""
    if isinstance(payload, list):
        return [(None, item) for item in payload]
    if not isinstance(payload, Mapping):
        return []
    for key in ("workflows", "items"):
        listed = payload.get(key)
        if isinstance(listed, list):
            return [(None, item) for item in listed]
    if _is_graph(payload):
        return [(None, payload)]
    if payload and all(_is_graph(value) for value in payload.values()):
        return [(str(key), value) for key, value in payload.items()]
    return [(None, payload)]


def normalize_workflows(payload: Any) -> list[StoredWorkflow]:
    """
    Turn an import payload into stored workflows.

    Entries are re-summarized; ids fall back to name, title, then a
    generated "workflow-N-<ms>" id. Duplicate ids within the payload are
    dropped (first one wins).
    """
    stamp = int(time.time() * 1000)
    workflows: list[StoredWorkflow] = []
    seen: set[str] = set()

    for index, (key, entry) in enumerate(_entries(payload)):
        if not isinstance(entry, Mapping):
            continue

        raw = entry.get("raw", entry)
        raw = copy.deepcopy(raw)
        workflow_id = entry.get("id") or key or entry.get("name") or entry.get("title")
        workflow_id = str(workflow_id) if workflow_id else f"workflow-{index + 1}-{stamp}"
        name = entry.get("name") or entry.get("title") or key or entry.get("id")
        name = str(name) if name else f"Workflow {index + 1}"

        if workflow_id in seen:
            continue
        seen.add(workflow_id)

        workflows.append(
            StoredWorkflow(
                id=workflow_id,
                name=name,
                raw=raw,
                summary=summarize_workflow(raw),
                path=entry.get("path") if isinstance(entry.get("path"), str) else None,
            )
        )
    return workflows


# =============================================================================
# STORE
# =============================================================================


class WorkflowStore:
    """
    JSON-file backed workflow store.

    Writers are serialized with a lock; readers always see the last fully
    written file.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path) if path else settings.storage.workflows_path
        self._lock = threading.Lock()

    def read_all(self) -> list[StoredWorkflow]:
        """Load every stored workflow. Missing or unreadable files give []."""
        if not self.path.exists():
            return []
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to read workflow store: {e}", extra={"path": str(self.path)})
            return []

        listed = data.get("workflows", []) if isinstance(data, Mapping) else data
        if not isinstance(listed, list):
            return []

        workflows = []
        for item in listed:
            if isinstance(item, Mapping) and item.get("id"):
                workflows.append(StoredWorkflow.from_dict(item))
        return workflows

    def get(self, workflow_id: str) -> StoredWorkflow:
        """
        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        for workflow in self.read_all():
            if workflow.id == workflow_id:
                return workflow
        raise WorkflowNotFoundError(workflow_id)

    @retry_with_backoff(exceptions=(OSError,))
    def _persist(self, workflows: list[StoredWorkflow]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump({"workflows": [wf.to_dict() for wf in workflows]}, f, indent=2)
        tmp.replace(self.path)

    def import_payload(self, payload: Any) -> list[StoredWorkflow]:
        """
        Merge an import payload into the store and return the merged list.

        Existing workflows keep their ids; colliding imports get "-1", "-2"...

        Raises:
            ValidationError: If the payload holds no workflows
        """
        incoming = normalize_workflows(payload)
        if not incoming:
            raise ValidationError(
                "Import payload contained no workflows",
                user_message=(
                    "No workflows found in the uploaded file. Expect an array of "
                    "workflows or an object with a 'workflows' array."
                ),
            )

        with self._lock:
            merged = {wf.id: wf for wf in self.read_all()}
            for wf in incoming:
                candidate = wf.id
                counter = 1
                while candidate in merged:
                    candidate = f"{wf.id}-{counter}"
                    counter += 1
                wf.id = candidate
                merged[candidate] = wf

            result = list(merged.values())
            self._persist(result)

        logger.info(
            f"Imported {len(incoming)} workflow(s)",
            extra={"total": len(result)},
        )
        return result

    def rename(self, workflow_id: str, name: str) -> list[StoredWorkflow]:
        """
        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        with self._lock:
            workflows = self.read_all()
            target = next((wf for wf in workflows if wf.id == workflow_id), None)
            if target is None:
                raise WorkflowNotFoundError(workflow_id)
            target.name = name
            self._persist(workflows)

        logger.info("Renamed workflow", extra={"workflow_id": workflow_id})
        return workflows

    def delete(self, workflow_id: str) -> list[StoredWorkflow]:
        """
        Raises:
            WorkflowNotFoundError: If no workflow has this id
        """
        with self._lock:
            workflows = self.read_all()
            remaining = [wf for wf in workflows if wf.id != workflow_id]
            if len(remaining) == len(workflows):
                raise WorkflowNotFoundError(workflow_id)
            self._persist(remaining)

        logger.info("Deleted workflow", extra={"workflow_id": workflow_id})
        return remaining
