"""Structural errors raised at the graph mutation boundary.

A structural error always means the operation was rejected and the graph is
exactly as it was before the call.
"""


class GraphStructureError(Exception):
    """Base class for rejected graph mutations."""

    def __init__(self, message: str, *, node_id: str | None = None, edge_id: str | None = None):
        self.message = message
        self.node_id = node_id
        self.edge_id = edge_id
        super().__init__(message)


class DuplicateIdError(GraphStructureError):
    """A node or edge with this id already exists."""


class NodeNotFoundError(GraphStructureError):
    """The referenced node id does not exist."""


class EdgeNotFoundError(GraphStructureError):
    """The referenced edge id does not exist (or is stale)."""


class HandleOccupiedError(GraphStructureError):
    """The source handle already has an outgoing edge."""


class InvalidConnectionError(GraphStructureError):
    """The edge uses a handle the source cannot emit, or connects a node to itself."""


class InvalidParentError(GraphStructureError):
    """The parent is missing, is not a container, or would create an ownership cycle."""
