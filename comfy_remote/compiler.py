"""
Comfy Remote - Graph Compiler
==============================

Turns a normalized editor graph into the job description ComfyUI executes.

Editor exports only carry positional widget values, so named inputs are
reconstructed from several overlapping sources. Earlier sources always win
(first writer wins):

1. links            - explicit wiring, rendered as [source_id, output_index]
2. declared slots   - input slots consume widget values in order
3. widget table     - known node kinds map widget positions to input names
4. text fallback    - text-encoding kinds send their first free value to "text"
5. positional       - anything left at widget position i becomes value{i}

Graph-shape anomalies never fail compilation. Suspicious widget layouts for
known kinds are reported in CompiledJob.warnings instead.

Usage:
    from comfy_remote.compiler import compile_graph

    compiled = compile_graph(graph)
    payload = compiled.job.to_payload()
    for warning in compiled.warnings:
        logger.warning(warning)
"""

import hashlib
import json
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .exceptions import MalformedGraphError
from .graph import (
    UNKNOWN_KIND,
    JobDescription,
    JobNode,
    Node,
    Reference,
    Scalar,
    WorkflowGraph,
)
from .logging_config import get_logger
from .normalizer import normalize

logger = get_logger(__name__)

__all__ = [
    "WIDGET_INPUT_TABLE",
    "CONTROL_AFTER_GENERATE_VALUES",
    "SEED_INPUT_NAMES",
    "CompiledJob",
    "compile_graph",
    "compile_raw",
    "lookup_widget_names",
    "validate_job",
    "compute_job_hash",
]


# =============================================================================
# WIDGET TABLE
# =============================================================================

# Widget order per node kind. None marks a position that is not a real input
# (control_after_generate combos, upload buttons).
WIDGET_INPUT_TABLE: Mapping[str, tuple[str | None, ...]] = MappingProxyType(
    {
        # Samplers
        "KSampler": ("seed", None, "steps", "cfg", "sampler_name", "scheduler", "denoise"),
        "KSamplerAdvanced": (
            "add_noise",
            "noise_seed",
            None,
            "steps",
            "cfg",
            "sampler_name",
            "scheduler",
            "start_at_step",
            "end_at_step",
            "return_with_leftover_noise",
        ),
        "SamplerCustom": ("add_noise", "noise_seed", None, "cfg"),
        "RandomNoise": ("noise_seed", None),
        "BasicScheduler": ("scheduler", "steps", "denoise"),
        # Loaders
        "CheckpointLoaderSimple": ("ckpt_name",),
        "VAELoader": ("vae_name",),
        "CLIPLoader": ("clip_name", "type", "device"),
        "DualCLIPLoader": ("clip_name1", "clip_name2", "type", "device"),
        "UNETLoader": ("unet_name", "weight_dtype"),
        "LoraLoader": ("lora_name", "strength_model", "strength_clip"),
        "LoraLoaderModelOnly": ("lora_name", "strength_model"),
        "UpscaleModelLoader": ("model_name",),
        "ControlNetLoader": ("control_net_name",),
        # Images
        "LoadImage": ("image", None),
        "SaveImage": ("filename_prefix",),
        "ImageScaleToTotalPixels": ("upscale_method", "megapixels"),
        "ImageScale": ("upscale_method", "width", "height", "crop"),
        "LatentUpscale": ("upscale_method", "width", "height", "crop"),
        "EmptyLatentImage": ("width", "height", "batch_size"),
        "EmptySD3LatentImage": ("width", "height", "batch_size"),
        # Conditioning
        "CLIPTextEncode": ("text",),
        "TextEncodeQwenImageEdit": ("prompt",),
        "FluxGuidance": ("guidance",),
        "CLIPSetLastLayer": ("stop_at_clip_layer",),
        "ControlNetApply": ("strength",),
        # Model patches
        "ModelSamplingAuraFlow": ("shift",),
        "CFGNorm": ("strength",),
    }
)

_TABLE_BY_LOWER = MappingProxyType({kind.lower(): kind for kind in WIDGET_INPUT_TABLE})

CONTROL_AFTER_GENERATE_VALUES = frozenset({"fixed", "increment", "decrement", "randomize"})
SEED_INPUT_NAMES = frozenset({"seed", "noise_seed"})

DEFAULT_FILENAME_PREFIX = "ComfyUI"


def lookup_widget_names(kind: str | None) -> tuple[str | None, ...] | None:
    """Find the widget table entry for a kind: exact, then trimmed, then case-insensitive."""
    if not kind:
        return None
    entry = WIDGET_INPUT_TABLE.get(kind)
    if entry is not None:
        return entry
    trimmed = kind.strip()
    entry = WIDGET_INPUT_TABLE.get(trimmed)
    if entry is not None:
        return entry
    canonical = _TABLE_BY_LOWER.get(trimmed.lower())
    return WIDGET_INPUT_TABLE[canonical] if canonical else None


def _is_control_value(value: Any) -> bool:
    return isinstance(value, str) and value.lower() in CONTROL_AFTER_GENERATE_VALUES


def _is_text_kind(kind_lower: str) -> bool:
    return "textencode" in kind_lower or "prompt" in kind_lower


# =============================================================================
# COMPILED RESULT
# =============================================================================


def compute_job_hash(payload: dict[str, Any]) -> str:
    """
    Compute a deterministic hash for a job payload.

    Used to correlate log lines and spot identical resubmissions.
    """
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()[:16]


@dataclass
class CompiledJob:
    """A compiled job ready for submission."""

    job: JobDescription
    warnings: list[str] = field(default_factory=list)
    job_hash: str = ""
    compiled_at: float = field(default_factory=time.time)

    def __post_init__(self):
        if not self.job_hash and self.job.nodes:
            self.job_hash = compute_job_hash(self.job.to_payload())

    @property
    def payload(self) -> dict[str, dict[str, Any]]:
        return self.job.to_payload()


# =============================================================================
# WIDGET RESOLUTION
# =============================================================================


class _WidgetCursor:
    """Tracks which widget positions of one node have been claimed."""

    def __init__(self, values: Sequence[Any]):
        self.values = values
        self.consumed = [False] * len(values)

    def next_free(self) -> int | None:
        for index, used in enumerate(self.consumed):
            if not used:
                return index
        return None

    def take(self, index: int) -> Any:
        self.consumed[index] = True
        return self.values[index]

    def free(self, index: int) -> bool:
        return 0 <= index < len(self.values) and not self.consumed[index]

    def remaining(self) -> list[int]:
        return [index for index, used in enumerate(self.consumed) if not used]


def _consume_declared_slots(
    node: Node,
    job_node: JobNode,
    cursor: _WidgetCursor,
) -> None:
    """
    Let declared input slots claim widget values.

    Every unbound slot takes the next unconsumed value, in input order.
    Unnamed slots are keyed by their slot index, as links are. A seed slot
    also swallows the control_after_generate value that follows it.
    """
    for slot_index, slot in enumerate(node.inputs):
        if slot.is_bound:
            continue
        name = slot.name or str(slot_index)
        if name in job_node.inputs:
            continue

        position = cursor.next_free()
        if position is None:
            break
        job_node.set_if_absent(name, Scalar(cursor.take(position)))

        if name in SEED_INPUT_NAMES:
            follower = position + 1
            if cursor.free(follower) and _is_control_value(cursor.values[follower]):
                cursor.take(follower)


def _apply_table(
    node: Node,
    job_node: JobNode,
    cursor: _WidgetCursor,
    table: tuple[str | None, ...],
    warnings: list[str],
) -> None:
    values = cursor.values
    if len(values) != len(table):
        warnings.append(
            f"Node '{node.id}' ({node.kind}): expected {len(table)} widget values, "
            f"found {len(values)}; positional mapping may be off"
        )

    for position, name in enumerate(table):
        if position >= len(values):
            break
        if not cursor.free(position):
            continue
        value = cursor.take(position)
        if name is None:
            continue

        if name in SEED_INPUT_NAMES and (isinstance(value, bool) or not isinstance(value, int)):
            warnings.append(
                f"Node '{node.id}' ({node.kind}): widget {position} mapped to '{name}' "
                f"is {value!r}, not an integer"
            )
        job_node.set_if_absent(name, Scalar(value))

    for position, name in enumerate(table[:-1]):
        if name in SEED_INPUT_NAMES and table[position + 1] is None:
            control = position + 1
            if control < len(values) and not _is_control_value(values[control]):
                warnings.append(
                    f"Node '{node.id}' ({node.kind}): widget {control} is {values[control]!r}, "
                    f"expected a control_after_generate value"
                )


def _resolve_widgets(node: Node, job_node: JobNode, warnings: list[str]) -> None:
    widget_values = node.widget_values

    if isinstance(widget_values, Mapping):
        # Some custom nodes export widgets keyed by input name already
        for name, value in widget_values.items():
            if isinstance(name, str) and name:
                job_node.set_if_absent(name, Scalar(value))
        return

    cursor = _WidgetCursor(list(widget_values))
    table = lookup_widget_names(node.kind)

    _consume_declared_slots(node, job_node, cursor)

    if table is not None:
        _apply_table(node, job_node, cursor, table, warnings)

    if _is_text_kind(node.kind_lower) and "text" not in job_node.inputs:
        position = cursor.next_free()
        if position is not None:
            job_node.set_if_absent("text", Scalar(cursor.take(position)))

    # Keyed by original widget position so names stay stable across runs
    for position in cursor.remaining():
        job_node.set_if_absent(f"value{position}", Scalar(cursor.take(position)))


def _slot_name(node: Node, slot_index: int) -> str:
    if 0 <= slot_index < len(node.inputs):
        name = node.inputs[slot_index].name
        if name:
            return name
    return str(slot_index)


# =============================================================================
# COMPILER
# =============================================================================


def compile_graph(graph: WorkflowGraph) -> CompiledJob:
    """
    Compile a normalized graph into a job description.

    Raises:
        MalformedGraphError: If *graph* is not a WorkflowGraph
    """
    if not isinstance(graph, WorkflowGraph):
        raise MalformedGraphError(
            f"Expected a WorkflowGraph, got {type(graph).__name__}"
        )

    job = JobDescription()
    warnings: list[str] = []
    nodes_by_id: dict[str, Node] = {}

    for node in graph.nodes:
        kind = node.kind if isinstance(node.kind, str) and node.kind.strip() else UNKNOWN_KIND
        job.add(node.id, kind)
        nodes_by_id[node.id] = node

    skipped_links = 0
    for link in graph.links:
        if link.source_id not in nodes_by_id or link.dest_id not in nodes_by_id:
            skipped_links += 1
            continue
        name = _slot_name(nodes_by_id[link.dest_id], link.dest_slot)
        job[link.dest_id].set_if_absent(name, Reference(link.source_id, link.source_slot))

    for node in graph.nodes:
        job_node = job[node.id]
        _resolve_widgets(node, job_node, warnings)
        if "saveimage" in node.kind_lower:
            job_node.set_if_absent("filename_prefix", Scalar(DEFAULT_FILENAME_PREFIX))

    for warning in warnings:
        logger.warning(warning)

    compiled = CompiledJob(job=job, warnings=warnings)
    logger.debug(
        f"Compiled {len(job)} node(s), skipped {skipped_links} link(s)",
        extra={"job_hash": compiled.job_hash, "warnings": len(warnings)},
    )
    return compiled


def compile_raw(payload: Any) -> CompiledJob:
    """
    Parse, normalize and compile a raw stored graph.

    Raises:
        MalformedGraphError: If *payload* is not a JSON object
    """
    return compile_graph(normalize(WorkflowGraph.from_raw(payload)))


# =============================================================================
# JOB VALIDATION (diagnostics only)
# =============================================================================


def _find_cycle(job: JobDescription) -> str | None:
    """Check for cycles in the dependency graph using DFS."""
    edges: dict[str, set[str]] = {node_id: set() for node_id in job.nodes}
    for node_id, job_node in job.nodes.items():
        for _name, ref in job_node.references():
            if ref.node_id in edges:
                edges[node_id].add(ref.node_id)

    visited: set[str] = set()
    on_stack: set[str] = set()

    def visit(node_id: str) -> bool:
        visited.add(node_id)
        on_stack.add(node_id)
        for neighbor in edges[node_id]:
            if neighbor not in visited:
                if visit(neighbor):
                    return True
            elif neighbor in on_stack:
                return True
        on_stack.discard(node_id)
        return False

    for node_id in edges:
        if node_id not in visited and visit(node_id):
            return f"Job contains a cycle through node '{node_id}'"
    return None


def validate_job(job: JobDescription) -> list[str]:
    """
    Return structural problems of a compiled job (empty list when clean).

    Compilation never fails on these; they are surfaced for diagnostics.
    """
    if not job.nodes:
        return ["Job is empty"]

    errors = []
    cycle = _find_cycle(job)
    if cycle:
        errors.append(cycle)
    errors.extend(job.dangling_references())
    return errors
