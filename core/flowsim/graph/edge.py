"""
Edge model - directed connections between nodes.

Edges can be addressed to specific ports ("handles") on multi-port nodes:

- condition nodes emit ``true`` / ``false``
- parallel nodes emit ``branch-0`` .. ``branch-(k-1)``
- loop containers emit ``loop-output`` (continuation after the loop) and
  ``loop-start`` (first step inside the loop), and accept ``loop-input``

Each node has at most one outgoing edge per handle value; an edge without a
handle counts as the ``None`` handle.
"""

import re

from pydantic import BaseModel, Field

from flowsim.graph.node import Node, NodeType

HANDLE_TRUE = "true"
HANDLE_FALSE = "false"
LOOP_INPUT = "loop-input"
LOOP_OUTPUT = "loop-output"
LOOP_START = "loop-start"

_BRANCH_HANDLE = re.compile(r"^branch-(\d+)$")


def branch_handle(index: int) -> str:
    return f"branch-{index}"


def parse_branch_handle(handle: str | None) -> int | None:
    """Return the branch index encoded in ``branch-i``, or None."""
    if not handle:
        return None
    match = _BRANCH_HANDLE.match(handle)
    return int(match.group(1)) if match else None


class Edge(BaseModel):
    """A directed connection from ``source`` to ``target``."""

    id: str
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")

    model_config = {"extra": "allow", "populate_by_name": True}


def allowed_source_handles(node: Node) -> list[str | None] | None:
    """Handles an outgoing edge of ``node`` may use, in preference order.

    Returns None when any handle value is acceptable.
    """
    match node.type:
        case NodeType.CONDITION:
            return [HANDLE_TRUE, HANDLE_FALSE]
        case NodeType.PARALLEL:
            return [branch_handle(i) for i in range(len(node.config.branches))]
        case NodeType.LOOP:
            return [LOOP_OUTPUT, LOOP_START]
        case _:
            return None


def default_source_handle(node: Node, occupied: set[str | None]) -> str | None:
    """Pick the handle for a new edge leaving ``node`` after another node.

    Loops continue on ``loop-output``; branch nodes take their first free
    output. If every branch output is taken the first one is returned and the
    caller's occupancy check reports the collision.
    """
    match node.type:
        case NodeType.LOOP:
            return LOOP_OUTPUT
        case NodeType.CONDITION | NodeType.PARALLEL:
            handles = allowed_source_handles(node) or []
            for handle in handles:
                if handle not in occupied:
                    return handle
            return handles[0] if handles else None
        case _:
            return None


def default_target_handle(node: Node) -> str | None:
    return LOOP_INPUT if node.type == NodeType.LOOP else None


def make_edge_id(source: str, target: str, existing: set[str]) -> str:
    """``e{source}-{target}``, suffixed when that id is already in use."""
    base = f"e{source}-{target}"
    if base not in existing:
        return base
    n = 2
    while f"{base}-{n}" in existing:
        n += 1
    return f"{base}-{n}"
