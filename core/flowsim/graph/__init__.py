"""Workflow graph: model, structural mutations, containment, variables and simulation."""

from flowsim.graph.category import DEFAULT_CATEGORIES, Category
from flowsim.graph.containment import DropDecision, absolute_position, resolve_drop
from flowsim.graph.edge import (
    HANDLE_FALSE,
    HANDLE_TRUE,
    LOOP_INPUT,
    LOOP_OUTPUT,
    LOOP_START,
    Edge,
    branch_handle,
)
from flowsim.graph.errors import (
    DuplicateIdError,
    EdgeNotFoundError,
    GraphStructureError,
    HandleOccupiedError,
    InvalidConnectionError,
    InvalidParentError,
    NodeNotFoundError,
)
from flowsim.graph.executor import Simulator
from flowsim.graph.mutations import new_node
from flowsim.graph.node import LoopMode, Node, NodeConfig, NodeType, Position, Size
from flowsim.graph.safe_eval import SafeEvalError, safe_eval
from flowsim.graph.state import GraphState
from flowsim.graph.store import CategoryError, GraphStore
from flowsim.graph.transfer import (
    InvalidFormatError,
    UnreadableFileError,
    WorkflowDocument,
    WorkflowImportError,
    export_document,
    load_document,
    parse_document,
    sanitize_candidate,
)
from flowsim.graph.validator import (
    Severity,
    ValidationIssue,
    WorkflowValidationResult,
    validate_workflow,
)
from flowsim.graph.variables import (
    UNDEFINED,
    GlobalVariable,
    RuntimeContext,
    VariableOption,
    available_variables,
    render_template,
)

__all__ = [
    # Model
    "Node",
    "NodeType",
    "NodeConfig",
    "LoopMode",
    "Position",
    "Size",
    "Edge",
    "branch_handle",
    "HANDLE_TRUE",
    "HANDLE_FALSE",
    "LOOP_INPUT",
    "LOOP_OUTPUT",
    "LOOP_START",
    "Category",
    "DEFAULT_CATEGORIES",
    # State
    "GraphState",
    "GraphStore",
    "CategoryError",
    "new_node",
    # Errors
    "GraphStructureError",
    "DuplicateIdError",
    "NodeNotFoundError",
    "EdgeNotFoundError",
    "HandleOccupiedError",
    "InvalidConnectionError",
    "InvalidParentError",
    # Containment
    "DropDecision",
    "absolute_position",
    "resolve_drop",
    # Variables
    "UNDEFINED",
    "GlobalVariable",
    "RuntimeContext",
    "VariableOption",
    "available_variables",
    "render_template",
    "safe_eval",
    "SafeEvalError",
    # Simulation
    "Simulator",
    # Validation
    "Severity",
    "ValidationIssue",
    "WorkflowValidationResult",
    "validate_workflow",
    # Import / export
    "WorkflowDocument",
    "WorkflowImportError",
    "InvalidFormatError",
    "UnreadableFileError",
    "parse_document",
    "load_document",
    "export_document",
    "sanitize_candidate",
]
