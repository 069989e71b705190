"""
Comfy Remote - Graph Data Model
================================

Typed views over the two graph shapes the proxy deals with:

- WorkflowGraph: the editor ("workspace") export with nodes, input slots,
  widget values and link tuples. Parsed leniently; malformed pieces are
  skipped rather than rejected.
- JobDescription: the execution form submitted to ComfyUI's POST /prompt,
  keyed by node id with named inputs that are either plain values or
  references to another node's output.

Usage:
    graph = WorkflowGraph.from_raw(json.loads(path.read_text()))
    for node in graph.nodes:
        print(node.id, node.kind, node.widget_values)

    job = JobDescription()
    job.add("3", "KSampler").set_if_absent("seed", Scalar(42))
    payload = job.to_payload()
"""

import copy
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from typing import Any, Union

from .exceptions import MalformedGraphError

__all__ = [
    "UNKNOWN_KIND",
    "InputSlot",
    "Node",
    "Link",
    "WorkflowGraph",
    "Scalar",
    "Reference",
    "InputValue",
    "JobNode",
    "JobDescription",
]

UNKNOWN_KIND = "Unknown"


# =============================================================================
# WORKFLOW GRAPH
# =============================================================================


@dataclass
class InputSlot:
    """
    A declared input on a node. Bound when an incoming link is attached.

    ``widget`` records the editor's "widget" descriptor so it survives a
    round trip; compilation treats marked and unmarked slots alike.
    """

    name: str | None
    link: int | str | None = None
    widget: bool = False

    @property
    def is_bound(self) -> bool:
        return self.link is not None

    @classmethod
    def from_raw(cls, raw: Any) -> "InputSlot":
        if not isinstance(raw, Mapping):
            return cls(name=None)
        name = raw.get("name")
        return cls(
            name=name if isinstance(name, str) and name else None,
            link=raw.get("link"),
            widget=bool(raw.get("widget")),
        )

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {"name": self.name, "link": self.link}
        if self.widget:
            raw["widget"] = {"name": self.name}
        return raw


@dataclass
class Node:
    """One editor node: kind tag, optional title, declared inputs, widget values."""

    id: str
    kind: str | None = None
    title: str | None = None
    inputs: list[InputSlot] = field(default_factory=list)
    widget_values: list[Any] | dict[str, Any] = field(default_factory=list)

    @classmethod
    def from_raw(cls, raw: Mapping[str, Any], index: int) -> "Node":
        raw_id = raw.get("id")
        node_id = str(raw_id) if raw_id is not None and raw_id != "" else f"node-{index}"

        kind = raw.get("type")
        if not isinstance(kind, str) or not kind.strip():
            kind = raw.get("class_type")
        if not isinstance(kind, str) or not kind.strip():
            kind = None

        title = raw.get("title")
        raw_inputs = raw.get("inputs")
        inputs = (
            [InputSlot.from_raw(item) for item in raw_inputs]
            if isinstance(raw_inputs, list)
            else []
        )

        widgets = raw.get("widgets_values")
        if isinstance(widgets, (list, dict)):
            widget_values = copy.deepcopy(widgets)
        else:
            widget_values = []

        return cls(
            id=node_id,
            kind=kind,
            title=title if isinstance(title, str) else None,
            inputs=inputs,
            widget_values=widget_values,
        )

    def to_raw(self) -> dict[str, Any]:
        raw: dict[str, Any] = {
            "id": self.id,
            "type": self.kind,
            "inputs": [slot.to_raw() for slot in self.inputs],
            "widgets_values": copy.deepcopy(self.widget_values),
        }
        if self.title is not None:
            raw["title"] = self.title
        return raw

    @property
    def kind_lower(self) -> str:
        return (self.kind or "").lower()

    @property
    def title_lower(self) -> str:
        return (self.title or "").lower()

    def set_first_widget(self, value: Any) -> None:
        """Overwrite widget slot 0, creating it when the node has none."""
        if isinstance(self.widget_values, dict):
            if self.widget_values:
                self.widget_values[next(iter(self.widget_values))] = value
            else:
                self.widget_values = [value]
            return
        if self.widget_values:
            self.widget_values[0] = value
        else:
            self.widget_values.append(value)


@dataclass
class Link:
    """Directed edge source output -> destination input."""

    id: Any
    source_id: str
    source_slot: int
    dest_id: str
    dest_slot: int

    @classmethod
    def from_raw(cls, raw: Any) -> "Link | None":
        """Parse a link tuple; returns None for anything malformed."""
        if not isinstance(raw, (list, tuple)) or len(raw) < 5:
            return None
        link_id, source, source_slot, dest, dest_slot = raw[:5]
        if source is None or dest is None:
            return None
        return cls(
            id=link_id,
            source_id=str(source),
            source_slot=_as_index(source_slot),
            dest_id=str(dest),
            dest_slot=_as_index(dest_slot),
        )

    def to_raw(self) -> list[Any]:
        return [self.id, self.source_id, self.source_slot, self.dest_id, self.dest_slot]


def _as_index(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value)
    return 0


@dataclass
class WorkflowGraph:
    """Working copy of an editor graph. Mutated by the normalizer and injectors."""

    nodes: list[Node] = field(default_factory=list)
    links: list[Link] = field(default_factory=list)

    @classmethod
    def from_raw(cls, payload: Any) -> "WorkflowGraph":
        """
        Build a working copy from a stored graph payload.

        Raises:
            MalformedGraphError: If the payload is not a JSON object
        """
        if not isinstance(payload, Mapping):
            raise MalformedGraphError(
                f"Workflow graph must be a JSON object, got {type(payload).__name__}"
            )

        raw_nodes = payload.get("nodes")
        nodes = []
        if isinstance(raw_nodes, list):
            for index, raw in enumerate(raw_nodes):
                if isinstance(raw, Mapping):
                    nodes.append(Node.from_raw(raw, index))

        raw_links = payload.get("links")
        links = []
        if isinstance(raw_links, list):
            for raw in raw_links:
                link = Link.from_raw(raw)
                if link is not None:
                    links.append(link)

        return cls(nodes=nodes, links=links)

    def to_raw(self) -> dict[str, Any]:
        return {
            "nodes": [node.to_raw() for node in self.nodes],
            "links": [link.to_raw() for link in self.links],
        }

    def node_ids(self) -> set[str]:
        return {node.id for node in self.nodes}

    def get(self, node_id: str) -> Node | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None


# =============================================================================
# JOB DESCRIPTION
# =============================================================================


@dataclass(frozen=True)
class Scalar:
    """A literal input value."""

    value: Any

    def to_payload(self) -> Any:
        return self.value


@dataclass(frozen=True)
class Reference:
    """A data dependency on another job node's output slot."""

    node_id: str
    output_index: int

    def to_payload(self) -> list[Any]:
        return [self.node_id, self.output_index]


InputValue = Union[Scalar, Reference]


@dataclass
class JobNode:
    """One executable node: its kind and resolved named inputs."""

    kind: str
    inputs: dict[str, InputValue] = field(default_factory=dict)

    def set_if_absent(self, name: str, value: InputValue) -> bool:
        """First writer wins. Returns True when the input was written."""
        if name in self.inputs:
            return False
        self.inputs[name] = value
        return True

    def value(self, name: str, default: Any = None) -> Any:
        """Payload form of an input (scalar value or [node_id, index])."""
        item = self.inputs.get(name)
        return default if item is None else item.to_payload()

    def references(self) -> Iterator[tuple[str, Reference]]:
        for name, item in self.inputs.items():
            if isinstance(item, Reference):
                yield name, item

    def to_payload(self) -> dict[str, Any]:
        return {
            "class_type": self.kind,
            "inputs": {name: item.to_payload() for name, item in self.inputs.items()},
        }


@dataclass
class JobDescription:
    """Compiled job keyed by node id, ready for POST /prompt."""

    nodes: dict[str, JobNode] = field(default_factory=dict)

    def add(self, node_id: str, kind: str) -> JobNode:
        job_node = JobNode(kind=kind)
        self.nodes[node_id] = job_node
        return job_node

    def __getitem__(self, node_id: str) -> JobNode:
        return self.nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self.nodes

    def __len__(self) -> int:
        return len(self.nodes)

    def dangling_references(self) -> list[str]:
        """Describe every reference whose source node is missing."""
        problems = []
        for node_id, job_node in self.nodes.items():
            for name, ref in job_node.references():
                if ref.node_id not in self.nodes:
                    problems.append(
                        f"Node '{node_id}' input '{name}' references "
                        f"non-existent node '{ref.node_id}'"
                    )
        return problems

    def to_payload(self) -> dict[str, dict[str, Any]]:
        return {node_id: job_node.to_payload() for node_id, job_node in self.nodes.items()}
