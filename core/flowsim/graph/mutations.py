"""
Pure state transitions over ``GraphState``.

Every function takes a snapshot and returns a new snapshot. A function either
returns the fully updated state or raises a ``GraphStructureError`` before
building anything, so callers never observe a partial mutation.
"""

import logging
import uuid
from typing import Any

from flowsim.graph.containment import absolute_position, to_parent_frame
from flowsim.graph.edge import (
    LOOP_OUTPUT,
    LOOP_START,
    Edge,
    allowed_source_handles,
    default_source_handle,
    default_target_handle,
    make_edge_id,
)
from flowsim.graph.errors import (
    DuplicateIdError,
    EdgeNotFoundError,
    HandleOccupiedError,
    InvalidConnectionError,
    InvalidParentError,
    NodeNotFoundError,
)
from flowsim.graph.node import (
    DEFAULT_CONTAINER_SIZE,
    DEFAULT_NODE_SIZE,
    Node,
    NodeType,
    Position,
    config_for,
    merge_config,
)
from flowsim.graph.state import GraphState

logger = logging.getLogger(__name__)

APPEND_OFFSET_Y = 150.0

# First child of a container sits centered in the default container box.
CHILD_OFFSET = Position(
    x=(DEFAULT_CONTAINER_SIZE[0] - DEFAULT_NODE_SIZE[0]) / 2,
    y=(DEFAULT_CONTAINER_SIZE[1] - DEFAULT_NODE_SIZE[1]) / 2,
)

DEFAULT_LABELS: dict[NodeType, str] = {
    NodeType.START: "Start",
    NodeType.END: "End",
    NodeType.APPROVAL: "Approval",
    NodeType.CC: "CC",
    NodeType.CONDITION: "Condition",
    NodeType.API_CALL: "API Call",
    NodeType.NOTIFICATION: "Notification",
    NodeType.DELAY: "Delay",
    NodeType.DATA_OP: "Data Operation",
    NodeType.SCRIPT: "Script",
    NodeType.PARALLEL: "Parallel",
    NodeType.LLM: "LLM",
    NodeType.KNOWLEDGE_RETRIEVAL: "Knowledge Retrieval",
    NodeType.DOCUMENT_EXTRACTOR: "Document Extractor",
    NodeType.LOOP: "Loop",
    NodeType.SQL: "SQL",
    NodeType.CLOUD_PHONE: "Cloud Phone",
    NodeType.STORAGE: "Storage",
}


def new_node_id(node_type: NodeType) -> str:
    return f"{node_type.value}_{uuid.uuid4().hex[:8]}"


def new_node(
    node_type: NodeType,
    position: Position,
    parent_id: str | None = None,
    node_id: str | None = None,
    label: str | None = None,
) -> Node:
    """Build a node of ``node_type`` with its default configuration."""
    return Node(
        id=node_id or new_node_id(node_type),
        type=node_type,
        label=label or DEFAULT_LABELS.get(node_type, node_type.value),
        position=position,
        parent_id=parent_id,
        config=config_for(node_type),
    )


# ---------------------------------------------------------------------------
# Checks
# ---------------------------------------------------------------------------


def _require_node(state: GraphState, node_id: str) -> Node:
    node = state.get_node(node_id)
    if node is None:
        raise NodeNotFoundError(f"Node '{node_id}' not found", node_id=node_id)
    return node


def _check_parent(state: GraphState, node_id: str, parent_id: str | None) -> None:
    if parent_id is None:
        return
    parent = state.get_node(parent_id)
    if parent is None:
        raise InvalidParentError(f"Parent '{parent_id}' not found", node_id=node_id)
    if not parent.is_container:
        raise InvalidParentError(
            f"Parent '{parent_id}' is a {parent.type} node, not a container",
            node_id=node_id,
        )
    if parent_id == node_id or node_id in state.ancestor_ids(parent_id):
        raise InvalidParentError(
            f"Node '{node_id}' cannot be placed inside itself",
            node_id=node_id,
        )


def _check_handle(state: GraphState, source: Node, handle: str | None) -> None:
    allowed = allowed_source_handles(source)
    if allowed is not None and handle not in allowed:
        raise InvalidConnectionError(
            f"{source.type} node '{source.id}' has no output handle {handle!r}",
            node_id=source.id,
        )
    for edge in state.get_outgoing_edges(source.id):
        if edge.source_handle == handle:
            raise HandleOccupiedError(
                f"Handle {handle!r} of '{source.id}' is already connected by '{edge.id}'",
                node_id=source.id,
                edge_id=edge.id,
            )


def check_structure(nodes: list[Node], edges: list[Edge]) -> None:
    """Referential integrity for a bulk replacement (import, generated candidate).

    Raises on duplicate ids, edges to unknown nodes, and invalid parents.
    Handle-rule violations are left to the validator.
    """
    node_ids: set[str] = set()
    for node in nodes:
        if node.id in node_ids:
            raise DuplicateIdError(f"Duplicate node id '{node.id}'", node_id=node.id)
        node_ids.add(node.id)

    edge_ids: set[str] = set()
    for edge in edges:
        if edge.id in edge_ids:
            raise DuplicateIdError(f"Duplicate edge id '{edge.id}'", edge_id=edge.id)
        edge_ids.add(edge.id)
        for endpoint in (edge.source, edge.target):
            if endpoint not in node_ids:
                raise NodeNotFoundError(
                    f"Edge '{edge.id}' references unknown node '{endpoint}'",
                    node_id=endpoint,
                    edge_id=edge.id,
                )

    candidate = GraphState(nodes=nodes, edges=edges)
    for node in nodes:
        _check_parent(candidate, node.id, node.parent_id)


# ---------------------------------------------------------------------------
# Node operations
# ---------------------------------------------------------------------------


def add_node(state: GraphState, node: Node) -> GraphState:
    if state.get_node(node.id) is not None:
        raise DuplicateIdError(f"Node id '{node.id}' already exists", node_id=node.id)
    if node.parent_id is not None:
        candidate = state.model_copy(update={"nodes": [*state.nodes, node]})
        _check_parent(candidate, node.id, node.parent_id)
    return state.model_copy(update={"nodes": [*state.nodes, node]})


def delete_node(state: GraphState, node_id: str) -> GraphState:
    """Remove a node, everything it contains, and every edge touching them.

    Unknown ids are a no-op.
    """
    if state.get_node(node_id) is None:
        return state

    removed = {node_id} | {d.id for d in state.descendants_of(node_id)}
    nodes = [n for n in state.nodes if n.id not in removed]
    edges = [e for e in state.edges if e.source not in removed and e.target not in removed]
    selected = None if state.selected_node_id in removed else state.selected_node_id

    logger.debug("Deleted %d node(s) and %d edge(s)", len(removed), len(state.edges) - len(edges))
    return state.model_copy(update={"nodes": nodes, "edges": edges, "selected_node_id": selected})


def _replace_node(state: GraphState, updated: Node) -> GraphState:
    nodes = [updated if n.id == updated.id else n for n in state.nodes]
    return state.model_copy(update={"nodes": nodes})


def update_node(
    state: GraphState,
    node_id: str,
    label: str | None = None,
    config: dict[str, Any] | None = None,
) -> GraphState:
    """Relabel a node and/or merge keys into its configuration."""
    node = _require_node(state, node_id)
    changes: dict[str, Any] = {}
    if label is not None:
        changes["label"] = label
    if config is not None:
        changes["config"] = merge_config(node.config, config)
    return _replace_node(state, node.model_copy(update=changes))


def move_node(state: GraphState, node_id: str, position: Position) -> GraphState:
    """Set the stored position (in the node's current frame)."""
    node = _require_node(state, node_id)
    return _replace_node(state, node.model_copy(update={"position": position}))


def reparent(
    state: GraphState,
    node_id: str,
    new_parent_id: str | None,
    absolute: Position | None = None,
) -> GraphState:
    """Move ``node_id`` under ``new_parent_id`` (or to the root).

    ``absolute`` is the node's absolute position; it defaults to the current
    one. The stored position is converted into the new parent's frame.
    """
    node = _require_node(state, node_id)
    _check_parent(state, node_id, new_parent_id)
    index = state.node_index()
    if absolute is None:
        absolute = absolute_position(node, index)
    parent = index.get(new_parent_id) if new_parent_id else None
    position = to_parent_frame(absolute, parent, index)
    updated = node.model_copy(update={"parent_id": new_parent_id, "position": position})
    return _replace_node(state, updated)


def select_node(state: GraphState, node_id: str | None) -> GraphState:
    if node_id is not None:
        _require_node(state, node_id)
    return state.model_copy(update={"selected_node_id": node_id})


# ---------------------------------------------------------------------------
# Edge operations
# ---------------------------------------------------------------------------


def connect(
    state: GraphState,
    source_id: str,
    target_id: str,
    source_handle: str | None = None,
    target_handle: str | None = None,
    edge_id: str | None = None,
) -> GraphState:
    source = _require_node(state, source_id)
    target = _require_node(state, target_id)
    if source.id == target.id:
        raise InvalidConnectionError(
            f"Node '{source_id}' cannot connect to itself", node_id=source_id
        )
    _check_handle(state, source, source_handle)
    if edge_id is not None and state.get_edge(edge_id) is not None:
        raise DuplicateIdError(f"Edge id '{edge_id}' already exists", edge_id=edge_id)

    edge = Edge(
        id=edge_id or make_edge_id(source.id, target.id, state.edge_ids()),
        source=source.id,
        target=target.id,
        source_handle=source_handle,
        target_handle=target_handle,
    )
    return state.model_copy(update={"edges": [*state.edges, edge]})


def disconnect(state: GraphState, edge_id: str) -> GraphState:
    if state.get_edge(edge_id) is None:
        raise EdgeNotFoundError(f"Edge '{edge_id}' not found", edge_id=edge_id)
    return state.model_copy(update={"edges": [e for e in state.edges if e.id != edge_id]})


# ---------------------------------------------------------------------------
# Placement operations
# ---------------------------------------------------------------------------


def insert_between(
    state: GraphState,
    edge_id: str,
    node_type: NodeType,
    node_id: str | None = None,
) -> tuple[GraphState, Node]:
    """Split ``edge_id`` into source -> new node -> target.

    The first new edge keeps the original source handle so branch wiring is
    preserved. The new node stays inside the container its endpoints share.
    """
    edge = state.get_edge(edge_id)
    if edge is None:
        raise EdgeNotFoundError(f"Edge '{edge_id}' not found", edge_id=edge_id)
    source = _require_node(state, edge.source)
    target = _require_node(state, edge.target)
    if node_id is not None and state.get_node(node_id) is not None:
        raise DuplicateIdError(f"Node id '{node_id}' already exists", node_id=node_id)

    index = state.node_index()
    if source.parent_id == target.parent_id:
        parent_id = source.parent_id
        a, b = source.position, target.position
    else:
        parent_id = None
        a, b = absolute_position(source, index), absolute_position(target, index)
    midpoint = Position(x=(a.x + b.x) / 2, y=(a.y + b.y) / 2)

    node = new_node(node_type, midpoint, parent_id=parent_id, node_id=node_id)

    first_handle = edge.source_handle
    if first_handle is None and source.type == NodeType.LOOP:
        first_handle = LOOP_OUTPUT

    remaining = [e for e in state.edges if e.id != edge.id]
    taken = {e.id for e in remaining}
    first = Edge(
        id=make_edge_id(source.id, node.id, taken),
        source=source.id,
        target=node.id,
        source_handle=first_handle,
        target_handle=default_target_handle(node),
    )
    taken.add(first.id)
    second = Edge(
        id=make_edge_id(node.id, target.id, taken),
        source=node.id,
        target=target.id,
        source_handle=default_source_handle(node, set()),
        target_handle=edge.target_handle or default_target_handle(target),
    )

    logger.debug("Inserted %s %s into edge %s", node_type, node.id, edge.id)
    updated = state.model_copy(
        update={"nodes": [*state.nodes, node], "edges": [*remaining, first, second]}
    )
    return updated, node


def append_after(
    state: GraphState,
    anchor_id: str,
    node_type: NodeType,
    inside: bool = False,
    node_id: str | None = None,
) -> tuple[GraphState, Node]:
    """Create a node wired after ``anchor_id``.

    With ``inside=False`` the node is placed below the anchor in the same
    container and connected from the anchor's next free output. With
    ``inside=True`` the anchor must be a container; the node becomes its first
    child, wired from the container's ``loop-start`` handle.
    """
    anchor = _require_node(state, anchor_id)
    if node_id is not None and state.get_node(node_id) is not None:
        raise DuplicateIdError(f"Node id '{node_id}' already exists", node_id=node_id)

    if inside:
        if not anchor.is_container:
            raise InvalidParentError(
                f"Cannot append inside {anchor.type} node '{anchor.id}'",
                node_id=anchor.id,
            )
        _check_handle(state, anchor, LOOP_START)
        node = new_node(
            node_type,
            Position(x=CHILD_OFFSET.x, y=CHILD_OFFSET.y),
            parent_id=anchor.id,
            node_id=node_id,
        )
        edge = Edge(
            id=f"e{anchor.id}-start-{node.id}",
            source=anchor.id,
            target=node.id,
            source_handle=LOOP_START,
            target_handle=default_target_handle(node),
        )
    else:
        occupied = {e.source_handle for e in state.get_outgoing_edges(anchor.id)}
        handle = default_source_handle(anchor, occupied)
        _check_handle(state, anchor, handle)
        node = new_node(
            node_type,
            Position(x=anchor.position.x, y=anchor.position.y + APPEND_OFFSET_Y),
            parent_id=anchor.parent_id,
            node_id=node_id,
        )
        edge = Edge(
            id=make_edge_id(anchor.id, node.id, state.edge_ids()),
            source=anchor.id,
            target=node.id,
            source_handle=handle,
            target_handle=default_target_handle(node),
        )

    updated = state.model_copy(
        update={"nodes": [*state.nodes, node], "edges": [*state.edges, edge]}
    )
    return updated, node


def replace_graph(state: GraphState, nodes: list[Node], edges: list[Edge]) -> GraphState:
    """Bulk replace after a structural integrity check. Selection is cleared."""
    check_structure(nodes, edges)
    return GraphState(nodes=list(nodes), edges=list(edges), selected_node_id=None)
