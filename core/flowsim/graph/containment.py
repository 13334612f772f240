"""
Containment resolution for drag-and-drop re-parenting.

When a node is dropped, its center point is tested against the absolute
bounding box of every container. The node becomes a child of the container
that holds its center; when several overlapping containers match, the
innermost one (smallest area, then deepest nesting) wins. Positions are
converted between the absolute frame and the parent-relative frame on every
transition.
"""

import logging
from dataclasses import dataclass

from flowsim.graph.node import Node, Position
from flowsim.graph.state import GraphState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Box:
    """Axis-aligned rectangle in absolute canvas coordinates."""

    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> tuple[float, float]:
        return self.x + self.width / 2, self.y + self.height / 2

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height


@dataclass(frozen=True)
class DropDecision:
    """Outcome of resolving a drop: where the node should live afterwards."""

    node_id: str
    current_parent_id: str | None
    new_parent_id: str | None
    absolute: Position
    position: Position  # in the frame of new_parent_id

    @property
    def changed(self) -> bool:
        return self.current_parent_id != self.new_parent_id


def absolute_position(node: Node, index: dict[str, Node]) -> Position:
    """Sum relative positions up the parent chain.

    A parent id that does not resolve ends the walk (the node is treated as
    top-level from that point); an ownership cycle is cut at the repeat.
    """
    x, y = node.position.x, node.position.y
    seen = {node.id}
    current = node
    while current.parent_id and current.parent_id not in seen:
        parent = index.get(current.parent_id)
        if parent is None:
            break
        x += parent.position.x
        y += parent.position.y
        seen.add(parent.id)
        current = parent
    return Position(x=x, y=y)


def bounding_box(node: Node, index: dict[str, Node]) -> Box:
    origin = absolute_position(node, index)
    width, height = node.dimensions()
    return Box(origin.x, origin.y, width, height)


def to_parent_frame(absolute: Position, parent: Node | None, index: dict[str, Node]) -> Position:
    """Express an absolute position relative to ``parent`` (identity for the root)."""
    if parent is None:
        return Position(x=absolute.x, y=absolute.y)
    origin = absolute_position(parent, index)
    return Position(x=absolute.x - origin.x, y=absolute.y - origin.y)


def _depth(node: Node, index: dict[str, Node]) -> int:
    depth = 0
    seen = {node.id}
    current = node
    while current.parent_id and current.parent_id in index and current.parent_id not in seen:
        seen.add(current.parent_id)
        current = index[current.parent_id]
        depth += 1
    return depth


def find_container_at(
    state: GraphState,
    px: float,
    py: float,
    exclude: set[str] | None = None,
) -> Node | None:
    """Innermost container whose absolute box contains the point."""
    exclude = exclude or set()
    index = state.node_index()
    matches: list[tuple[float, int, int, Node]] = []
    for order, candidate in enumerate(state.nodes):
        if not candidate.is_container or candidate.id in exclude:
            continue
        box = bounding_box(candidate, index)
        if box.contains(px, py):
            matches.append((box.area, -_depth(candidate, index), order, candidate))
    if not matches:
        return None
    matches.sort(key=lambda m: (m[0], m[1], m[2]))
    return matches[0][3]


def resolve_drop(state: GraphState, node_id: str) -> DropDecision | None:
    """Decide the parent for ``node_id`` from its current geometry.

    Returns None if the node does not exist. The dragged node and everything
    it owns are never candidate parents.
    """
    index = state.node_index()
    node = index.get(node_id)
    if node is None:
        return None

    absolute = absolute_position(node, index)
    width, height = node.dimensions()
    center_x, center_y = absolute.x + width / 2, absolute.y + height / 2

    excluded = {node.id} | {d.id for d in state.descendants_of(node.id)}
    container = find_container_at(state, center_x, center_y, exclude=excluded)
    new_parent_id = container.id if container else None

    if new_parent_id == node.parent_id:
        return DropDecision(node.id, node.parent_id, new_parent_id, absolute, node.position)

    position = to_parent_frame(absolute, container, index)
    logger.debug(
        "Drop of %s resolves parent %s -> %s",
        node.id,
        node.parent_id,
        new_parent_id,
    )
    return DropDecision(node.id, node.parent_id, new_parent_id, absolute, position)
