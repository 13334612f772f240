"""
GraphState - an immutable snapshot of the workflow graph.

Mutations never edit a snapshot in place; they build and return a new one
(see ``flowsim.graph.mutations``). Lookups mirror the query helpers every
consumer needs: nodes by id, edges by endpoint, container children.
"""

from collections import deque

from pydantic import BaseModel, Field

from flowsim.graph.edge import Edge
from flowsim.graph.node import Node, NodeType


class GraphState(BaseModel):
    """Nodes, edges and the current selection."""

    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)
    selected_node_id: str | None = None

    model_config = {"extra": "allow"}

    def get_node(self, node_id: str | None) -> Node | None:
        if node_id is None:
            return None
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_edge(self, edge_id: str) -> Edge | None:
        for edge in self.edges:
            if edge.id == edge_id:
                return edge
        return None

    def node_index(self) -> dict[str, Node]:
        return {node.id: node for node in self.nodes}

    def get_outgoing_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[Edge]:
        return [e for e in self.edges if e.target == node_id]

    def children_of(self, container_id: str) -> list[Node]:
        return [n for n in self.nodes if n.parent_id == container_id]

    def descendants_of(self, container_id: str) -> list[Node]:
        """All nodes owned directly or transitively by ``container_id``."""
        found: list[Node] = []
        queue = deque([container_id])
        seen = {container_id}
        while queue:
            current = queue.popleft()
            for child in self.children_of(current):
                if child.id not in seen:
                    seen.add(child.id)
                    found.append(child)
                    queue.append(child.id)
        return found

    def ancestor_ids(self, node_id: str) -> list[str]:
        """Parent chain of ``node_id``, nearest first. Stops on a broken or cyclic chain."""
        chain: list[str] = []
        index = self.node_index()
        current = index.get(node_id)
        while current is not None and current.parent_id and current.parent_id not in chain:
            if current.parent_id == node_id:
                break
            chain.append(current.parent_id)
            current = index.get(current.parent_id)
        return chain

    def start_nodes(self) -> list[Node]:
        return [n for n in self.nodes if n.type == NodeType.START]

    def node_ids(self) -> set[str]:
        return {n.id for n in self.nodes}

    def edge_ids(self) -> set[str]:
        return {e.id for e in self.edges}
