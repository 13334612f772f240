"""
GraphStore - the authoritative in-memory workflow.

The store holds the current ``GraphState`` snapshot plus everything attached
to a workflow that is not graph structure: categories, global variables, and
the artifacts of the latest simulation. Every structural operation delegates
to a pure function in ``flowsim.graph.mutations`` and swaps in the returned
snapshot only after that function succeeds, so a failed operation leaves the
store untouched.
"""

import logging
from collections.abc import Sequence
from typing import Any

from flowsim.config import SimulatorConfig
from flowsim.graph import mutations
from flowsim.graph.category import GENERAL_CATEGORY_ID, Category, default_categories
from flowsim.graph.containment import DropDecision, resolve_drop
from flowsim.graph.edge import Edge
from flowsim.graph.errors import DuplicateIdError, GraphStructureError
from flowsim.graph.executor import Simulator
from flowsim.graph.node import Node, NodeType, Position
from flowsim.graph.state import GraphState
from flowsim.graph.transfer import (
    InvalidFormatError,
    WorkflowDocument,
    export_document,
    parse_document,
    sanitize_candidate,
)
from flowsim.graph.validator import WorkflowValidationResult, validate_workflow
from flowsim.graph.variables import GlobalVariable, VariableOption, available_variables
from flowsim.schemas.execution import ExecutionLogEntry, NodeExecutionStatus, RunResult

logger = logging.getLogger(__name__)


class CategoryError(Exception):
    """Invalid category operation (unknown id, duplicate id, system category)."""


class GraphStore:
    """
    Single-writer workflow state.

    Usage:
        store = GraphStore()
        start = store.add_node(new_node(NodeType.START, Position(x=0, y=0)))
        branch = store.append_after(start.id, NodeType.CONDITION)
        store.update_node(branch.id, config={"expression": "amount > 5000"})
        result = await store.run_simulation('{"amount": 8500}')
    """

    def __init__(
        self,
        nodes: Sequence[Node] = (),
        edges: Sequence[Edge] = (),
        config: SimulatorConfig | None = None,
        workflow_id: str = "",
    ):
        self.workflow_id = workflow_id
        self.simulator = Simulator(config)
        self._state = mutations.replace_graph(GraphState(), list(nodes), list(edges))

        self.categories: list[Category] = default_categories()
        self.active_category_id: str = GENERAL_CATEGORY_ID
        self.global_variables: list[GlobalVariable] = []

        self.last_run: RunResult | None = None
        self.simulation_log: list[ExecutionLogEntry] = []
        self.execution_status: dict[str, NodeExecutionStatus] = {}
        self.node_outputs: dict[str, Any] = {}

    # =========================================================================
    # Snapshot access
    # =========================================================================

    @property
    def state(self) -> GraphState:
        return self._state

    @property
    def nodes(self) -> list[Node]:
        return list(self._state.nodes)

    @property
    def edges(self) -> list[Edge]:
        return list(self._state.edges)

    @property
    def selected_node_id(self) -> str | None:
        return self._state.selected_node_id

    def get_node(self, node_id: str) -> Node | None:
        return self._state.get_node(node_id)

    def get_edge(self, edge_id: str) -> Edge | None:
        return self._state.get_edge(edge_id)

    def _commit(self, state: GraphState) -> None:
        self._state = state

    # =========================================================================
    # Node operations
    # =========================================================================

    def add_node(self, node: Node) -> Node:
        self._commit(mutations.add_node(self._state, node))
        logger.debug("Added %s node %s", node.type, node.id)
        return node

    def delete_node(self, node_id: str) -> None:
        """Delete a node with its descendants and touching edges. Unknown ids are ignored."""
        self._commit(mutations.delete_node(self._state, node_id))

    def update_node(
        self,
        node_id: str,
        label: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> Node:
        self._commit(mutations.update_node(self._state, node_id, label=label, config=config))
        return self._state.get_node(node_id)

    def move_node(self, node_id: str, position: Position) -> None:
        self._commit(mutations.move_node(self._state, node_id, position))

    def select_node(self, node_id: str | None) -> None:
        self._commit(mutations.select_node(self._state, node_id))

    def reparent(
        self,
        node_id: str,
        new_parent_id: str | None,
        absolute: Position | None = None,
    ) -> Node:
        self._commit(mutations.reparent(self._state, node_id, new_parent_id, absolute))
        return self._state.get_node(node_id)

    def drag_stop(self, node_id: str, position: Position | None = None) -> DropDecision | None:
        """
        Finish a drag: optionally store the dropped position, then let the
        containment resolver pick the node's parent.

        Args:
            node_id: Dragged node
            position: Drop position in the node's current frame

        Returns:
            The resolver's decision, or None for an unknown node. Dropping
            within the current parent changes nothing but the position.
        """
        if self._state.get_node(node_id) is None:
            return None
        state = self._state
        if position is not None:
            state = mutations.move_node(state, node_id, position)

        decision = resolve_drop(state, node_id)
        if decision is not None and decision.changed:
            state = mutations.reparent(state, node_id, decision.new_parent_id, decision.absolute)
            logger.info(
                f"Reparented {node_id}: {decision.current_parent_id} -> {decision.new_parent_id}"
            )
        self._commit(state)
        return decision

    # =========================================================================
    # Edge and placement operations
    # =========================================================================

    def connect(
        self,
        source_id: str,
        target_id: str,
        source_handle: str | None = None,
        target_handle: str | None = None,
        edge_id: str | None = None,
    ) -> Edge:
        state = mutations.connect(
            self._state, source_id, target_id, source_handle, target_handle, edge_id
        )
        self._commit(state)
        return state.edges[-1]

    def disconnect(self, edge_id: str) -> None:
        self._commit(mutations.disconnect(self._state, edge_id))

    def insert_between(
        self, edge_id: str, node_type: NodeType, node_id: str | None = None
    ) -> Node:
        state, node = mutations.insert_between(self._state, edge_id, node_type, node_id)
        self._commit(state)
        return node

    def append_after(
        self,
        anchor_id: str,
        node_type: NodeType,
        inside: bool = False,
        node_id: str | None = None,
    ) -> Node:
        state, node = mutations.append_after(self._state, anchor_id, node_type, inside, node_id)
        self._commit(state)
        return node

    # =========================================================================
    # Bulk replacement
    # =========================================================================

    def set_workflow(
        self,
        nodes: Sequence[Node],
        edges: Sequence[Edge],
        categories: Sequence[Category] | None = None,
        active_category_id: str | None = None,
    ) -> None:
        """Replace the whole graph. Structural problems reject the call unchanged."""
        state = mutations.replace_graph(self._state, list(nodes), list(edges))
        if categories is not None:
            category_ids = [c.id for c in categories]
            if len(set(category_ids)) != len(category_ids):
                raise DuplicateIdError("Duplicate category id in workflow")
        self._commit(state)
        if categories:
            self.categories = [c.model_copy(deep=True) for c in categories]
        if active_category_id and any(c.id == active_category_id for c in self.categories):
            self.active_category_id = active_category_id
        self.reset_simulation()

    def import_document(self, document: WorkflowDocument | str | bytes) -> WorkflowDocument:
        """
        Apply an exported document, all or nothing.

        Raises:
            InvalidFormatError: Unparseable text or a structurally broken graph
                (duplicate ids, edges to unknown nodes, invalid parents).
        """
        if not isinstance(document, WorkflowDocument):
            document = parse_document(document)
        try:
            self.set_workflow(
                document.nodes,
                document.edges,
                categories=document.categories or None,
                active_category_id=document.active_category_id,
            )
        except GraphStructureError as e:
            raise InvalidFormatError(f"Workflow graph is inconsistent: {e}") from e
        self.global_variables = list(document.global_variables)
        logger.info(
            f"Imported workflow: {len(document.nodes)} nodes, {len(document.edges)} edges"
        )
        return document

    def export_document(self, viewport: dict[str, Any] | None = None) -> WorkflowDocument:
        return export_document(self, viewport)

    def accept_candidate(self, nodes: Sequence[Node], edges: Sequence[Edge]) -> list[str]:
        """Sanitize and apply a generated (nodes, edges) pair. Returns the fixes applied."""
        clean_nodes, clean_edges, fixes = sanitize_candidate(list(nodes), list(edges))
        self.set_workflow(clean_nodes, clean_edges)
        return fixes

    # =========================================================================
    # Validation and variables
    # =========================================================================

    def validate(self) -> list[str]:
        """Advisory messages; never blocks editing or simulation."""
        return validate_workflow(self._state).messages()

    def validate_workflow(self) -> WorkflowValidationResult:
        return validate_workflow(self._state)

    def set_global_variables(self, variables: Sequence[GlobalVariable]) -> None:
        names = [v.name for v in variables]
        if len(set(names)) != len(names):
            raise ValueError("Global variable names must be unique")
        self.global_variables = list(variables)

    def available_variables(
        self, node_id: str, payload_text: str | None = None
    ) -> list[VariableOption]:
        return available_variables(self._state, node_id, payload_text, self.global_variables)

    # =========================================================================
    # Categories
    # =========================================================================

    def get_category(self, category_id: str) -> Category | None:
        for category in self.categories:
            if category.id == category_id:
                return category
        return None

    @property
    def active_category(self) -> Category:
        return self.get_category(self.active_category_id) or self.categories[0]

    def allowed_types(self) -> list[NodeType]:
        """Node types the active category offers for placement."""
        category = self.active_category
        return [t for t in NodeType if category.allows(t)]

    def set_active_category(self, category_id: str) -> None:
        if self.get_category(category_id) is None:
            raise CategoryError(f"Category '{category_id}' not found")
        self.active_category_id = category_id

    def add_category(self, category: Category) -> Category:
        if self.get_category(category.id) is not None:
            raise CategoryError(f"Category '{category.id}' already exists")
        added = category.model_copy(update={"is_system": False})
        self.categories.append(added)
        return added

    def update_category(self, category_id: str, **updates: Any) -> Category:
        category = self.get_category(category_id)
        if category is None:
            raise CategoryError(f"Category '{category_id}' not found")
        updates.pop("id", None)
        updates.pop("is_system", None)
        updated = Category.model_validate({**category.model_dump(), **updates})
        self.categories = [updated if c.id == category_id else c for c in self.categories]
        return updated

    def delete_category(self, category_id: str) -> None:
        category = self.get_category(category_id)
        if category is None:
            raise CategoryError(f"Category '{category_id}' not found")
        if category.is_system:
            raise CategoryError(f"Category '{category_id}' is a system category")
        self.categories = [c for c in self.categories if c.id != category_id]
        if self.active_category_id == category_id:
            self.active_category_id = GENERAL_CATEGORY_ID

    # =========================================================================
    # Simulation
    # =========================================================================

    async def run_simulation(self, custom_input: Any = None) -> RunResult:
        """Simulate the current snapshot; replaces the previous run's artifacts."""
        self.reset_simulation()
        snapshot = self._state
        result = await self.simulator.run(
            snapshot.nodes,
            snapshot.edges,
            custom_input,
            workflow_id=self.workflow_id,
            global_variables=self.global_variables,
        )
        self.last_run = result
        self.simulation_log = list(result.log)
        self.execution_status = dict(result.status_map)
        self.node_outputs = dict(result.node_outputs)
        return result

    def reset_simulation(self) -> None:
        self.last_run = None
        self.simulation_log = []
        self.execution_status = {}
        self.node_outputs = {}
