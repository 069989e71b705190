"""
Comfy Remote - Parameter Override Injection
============================================

Writes run-time parameters into a normalized working copy of a graph
before compilation. Matching is by node kind only:

- prompt-like kinds ("prompt" / "textencode") receive the prompt text;
  a title containing "negative" routes the node to the negative prompt
- "loadimage" kinds receive the uploaded input filename
- kinds with a known seed / steps widget position receive those values

Every injector mutates the graph in place and returns how many nodes it
rewrote.
"""

import random

from .compiler import SEED_INPUT_NAMES, lookup_widget_names
from .graph import WorkflowGraph
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "MAX_RANDOM_SEED",
    "is_prompt_kind",
    "is_negative_title",
    "inject_prompts",
    "inject_input_image",
    "inject_sampler_params",
    "resolve_seed",
]

MAX_RANDOM_SEED = 9_999_999_999


def is_prompt_kind(kind_lower: str) -> bool:
    return "prompt" in kind_lower or "textencode" in kind_lower


def is_negative_title(title_lower: str) -> bool:
    return "negative" in title_lower


def inject_prompts(
    graph: WorkflowGraph,
    positive: str | None,
    negative: str | None,
) -> int:
    """
    Overwrite widget slot 0 of every prompt-like node.

    A None value leaves nodes of that polarity untouched.
    """
    touched = 0
    for node in graph.nodes:
        if not is_prompt_kind(node.kind_lower):
            continue
        text = negative if is_negative_title(node.title_lower) else positive
        if text is None:
            continue
        node.set_first_widget(text)
        touched += 1

    logger.debug(f"Injected prompts into {touched} node(s)")
    return touched


def inject_input_image(graph: WorkflowGraph, filename: str) -> int:
    """Point every image-loading node at the uploaded *filename*."""
    touched = 0
    for node in graph.nodes:
        if "loadimage" in node.kind_lower:
            node.set_first_widget(filename)
            touched += 1

    if touched == 0:
        logger.warning(
            "Input image uploaded but the workflow has no LoadImage node",
            extra={"file_name": filename},
        )
    return touched


def inject_sampler_params(
    graph: WorkflowGraph,
    seed: int | None = None,
    steps: int | None = None,
) -> int:
    """
    Overwrite seed / steps widgets on nodes whose layout is known.

    Only positions that already exist in the node's widget list are written.
    """
    if seed is None and steps is None:
        return 0

    touched = 0
    for node in graph.nodes:
        table = lookup_widget_names(node.kind)
        if table is None or not isinstance(node.widget_values, list):
            continue

        changed = False
        for position, name in enumerate(table):
            if position >= len(node.widget_values):
                break
            if seed is not None and name in SEED_INPUT_NAMES:
                node.widget_values[position] = seed
                changed = True
            elif steps is not None and name == "steps":
                node.widget_values[position] = steps
                changed = True

        if changed:
            touched += 1

    logger.debug(
        f"Injected sampler params into {touched} node(s)",
        extra={"seed": seed, "steps": steps},
    )
    return touched


def resolve_seed(seed: int | None) -> int:
    """Return *seed*, or a fresh random one when unset or negative."""
    if seed is None or seed < 0:
        return random.randint(0, MAX_RANDOM_SEED)
    return int(seed)
