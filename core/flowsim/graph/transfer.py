"""
Import / export of workflow documents, and intake of generated candidates.

A document is the JSON artifact exchanged at the boundary:

    {
        "nodes": [...], "edges": [...],
        "categories": [...], "activeCategoryId": "general",
        "globalVariables": [...], "viewport": {...},
        "exportedAt": "2024-01-01T00:00:00", "version": "1.4"
    }

Only ``nodes`` and ``edges`` are required. Parsing never touches a store;
``GraphStore.import_document`` applies a parsed document all-or-nothing.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

from flowsim.graph.category import Category
from flowsim.graph.edge import Edge
from flowsim.graph.node import Node
from flowsim.graph.variables import GlobalVariable

if TYPE_CHECKING:
    from flowsim.graph.store import GraphStore

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.4"


class WorkflowImportError(Exception):
    """Base class for import failures. The store is never modified."""


class InvalidFormatError(WorkflowImportError):
    """The content is not a workflow document."""


class UnreadableFileError(WorkflowImportError):
    """The file could not be read."""


class WorkflowDocument(BaseModel):
    nodes: list[Node]
    edges: list[Edge]
    categories: list[Category] = Field(default_factory=list)
    active_category_id: str | None = Field(default=None, alias="activeCategoryId")
    global_variables: list[GlobalVariable] = Field(default_factory=list, alias="globalVariables")
    viewport: dict[str, Any] | None = None
    exported_at: str | None = Field(default=None, alias="exportedAt")
    version: str = DOCUMENT_VERSION

    model_config = {"extra": "allow", "populate_by_name": True}

    def to_json(self, indent: int | None = 2) -> str:
        return self.model_dump_json(by_alias=True, indent=indent, exclude_none=True)


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def parse_document(text: str | bytes) -> WorkflowDocument:
    """Parse document text.

    Raises:
        InvalidFormatError: Invalid JSON, not an object, missing ``nodes`` or
            ``edges``, or entries that are not nodes/edges.
    """
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise InvalidFormatError(f"Not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise InvalidFormatError("Workflow document must be a JSON object")

    missing = [key for key in ("nodes", "edges") if key not in data]
    if missing:
        raise InvalidFormatError(f"Workflow document is missing: {', '.join(missing)}")
    if not isinstance(data["nodes"], list) or not isinstance(data["edges"], list):
        raise InvalidFormatError("'nodes' and 'edges' must be arrays")

    try:
        return WorkflowDocument.model_validate(data)
    except ValidationError as e:
        raise InvalidFormatError(
            f"Invalid workflow document: {e.error_count()} error(s)\n{e}"
        ) from e


def load_document(path: Path | str) -> WorkflowDocument:
    """Read and parse a document file.

    Raises:
        UnreadableFileError: The file is missing or cannot be read.
        InvalidFormatError: The content is not a workflow document.
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        raise UnreadableFileError(f"Cannot read {path}: {e}") from e
    logger.debug("Loaded workflow document from %s", path)
    return parse_document(text)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def export_document(
    store: "GraphStore", viewport: dict[str, Any] | None = None
) -> WorkflowDocument:
    """Snapshot the store into a document stamped with the current time."""
    return WorkflowDocument(
        nodes=[n.model_copy(deep=True) for n in store.nodes],
        edges=[e.model_copy() for e in store.edges],
        categories=[c.model_copy(deep=True) for c in store.categories],
        active_category_id=store.active_category_id,
        global_variables=list(store.global_variables),
        viewport=viewport,
        exported_at=datetime.now().isoformat(),
        version=DOCUMENT_VERSION,
    )


def save_document(store: "GraphStore", path: Path | str) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(export_document(store).to_json(), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Generated candidates
# ---------------------------------------------------------------------------


def sanitize_candidate(
    nodes: list[Node], edges: list[Edge]
) -> tuple[list[Node], list[Edge], list[str]]:
    """Repair a generated (nodes, edges) pair so it passes structural checks.

    Drops duplicate node and edge ids (first wins), edges whose endpoints are
    unknown, and parent links to missing or non-container nodes.

    Returns:
        (nodes, edges, fixes) where ``fixes`` describes every change made.
    """
    fixes: list[str] = []

    kept_nodes: list[Node] = []
    seen: set[str] = set()
    for node in nodes:
        if node.id in seen:
            fixes.append(f"Dropped duplicate node '{node.id}'")
            continue
        seen.add(node.id)
        kept_nodes.append(node)

    index = {n.id: n for n in kept_nodes}
    for i, node in enumerate(kept_nodes):
        if node.parent_id is None:
            continue
        parent = index.get(node.parent_id)
        if parent is None or not parent.is_container or parent.id == node.id:
            fixes.append(f"Cleared invalid parent '{node.parent_id}' of '{node.id}'")
            kept_nodes[i] = node.model_copy(update={"parent_id": None})
    index = {n.id: n for n in kept_nodes}

    # Parent chains that loop back on themselves are cut at the repeating link.
    for i, node in enumerate(kept_nodes):
        chain = {node.id}
        current = index[node.id]
        while current.parent_id is not None:
            if current.parent_id in chain:
                fixes.append(f"Cleared cyclic parent '{node.parent_id}' of '{node.id}'")
                kept_nodes[i] = node.model_copy(update={"parent_id": None})
                index[node.id] = kept_nodes[i]
                break
            chain.add(current.parent_id)
            current = index[current.parent_id]

    kept_edges: list[Edge] = []
    edge_ids: set[str] = set()
    for edge in edges:
        if edge.source not in index or edge.target not in index:
            fixes.append(f"Dropped edge '{edge.id}' to unknown node")
            continue
        if edge.id in edge_ids:
            fixes.append(f"Dropped duplicate edge '{edge.id}'")
            continue
        edge_ids.add(edge.id)
        kept_edges.append(edge)

    if fixes:
        logger.info(f"Sanitized generated workflow: {len(fixes)} fix(es)")
    return kept_nodes, kept_edges, fixes
