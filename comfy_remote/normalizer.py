"""
Comfy Remote - Graph Normalizer
================================

Cleans an editor graph before parameter injection and compilation:

- drops annotation-only nodes (Note, MarkdownNote) which carry no computation
- drops links whose endpoints no longer exist (or never did)
- gives every node a kind tag, defaulting to "Unknown"

Never raises for loosely structured graphs.
"""

from .graph import UNKNOWN_KIND, WorkflowGraph
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = ["ANNOTATION_KINDS", "is_annotation_kind", "normalize"]

# Compared after lower-casing and removing spaces/underscores
ANNOTATION_KINDS = frozenset({"note", "markdownnote"})


def is_annotation_kind(kind: str | None) -> bool:
    if not kind:
        return False
    key = kind.lower().replace(" ", "").replace("_", "")
    return key in ANNOTATION_KINDS


def normalize(graph: WorkflowGraph) -> WorkflowGraph:
    """Normalize *graph* in place and return it."""
    before_nodes = len(graph.nodes)
    before_links = len(graph.links)

    graph.nodes = [node for node in graph.nodes if not is_annotation_kind(node.kind)]

    for node in graph.nodes:
        if not isinstance(node.kind, str) or not node.kind.strip():
            node.kind = UNKNOWN_KIND
        else:
            node.kind = node.kind.strip()

    surviving = graph.node_ids()
    graph.links = [
        link
        for link in graph.links
        if link.source_id in surviving and link.dest_id in surviving
    ]

    removed_nodes = before_nodes - len(graph.nodes)
    removed_links = before_links - len(graph.links)
    if removed_nodes or removed_links:
        logger.debug(
            f"Normalized graph: dropped {removed_nodes} annotation node(s), "
            f"{removed_links} dangling link(s)",
            extra={"nodes": len(graph.nodes), "links": len(graph.links)},
        )

    return graph
