"""Workflow validation.

Produces an advisory report for a graph snapshot. Nothing here blocks
editing or simulation; structural integrity is enforced separately by the
mutation layer.
"""

import json
import logging
from enum import StrEnum

from pydantic import BaseModel, Field, computed_field

from flowsim.graph.edge import LOOP_OUTPUT, allowed_source_handles
from flowsim.graph.node import Node, NodeType
from flowsim.graph.state import GraphState
from flowsim.graph.variables import TEMPLATE_TOKEN, split_path, upstream_node_ids

logger = logging.getLogger(__name__)

HTTP_METHODS = frozenset({"GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS", "TRACE"})
MAX_DELAY_SECONDS = 86_400


class Severity(StrEnum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class IssueCategory(StrEnum):
    WORKFLOW = "workflow"
    NODE_CONFIG = "node_config"
    CONNECTION = "connection"
    VARIABLE = "variable"


class ValidationIssue(BaseModel):
    """One finding."""

    severity: Severity
    category: IssueCategory
    message: str
    suggestion: str = ""
    node_id: str | None = None
    node_label: str | None = None
    edge_id: str | None = None


class ValidationSummary(BaseModel):
    total_nodes: int = 0
    total_edges: int = 0
    error_count: int = 0
    warning_count: int = 0
    info_count: int = 0


class WorkflowValidationResult(BaseModel):
    """Every issue found, in check order, plus counts."""

    issues: list[ValidationIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)

    @computed_field
    @property
    def valid(self) -> bool:
        return self.summary.error_count == 0

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.ERROR]

    @property
    def warnings(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity == Severity.WARNING]

    def for_node(self, node_id: str) -> list[ValidationIssue]:
        return [i for i in self.issues if i.node_id == node_id]

    def messages(self) -> list[str]:
        return [f"[{i.severity}] {i.message}" for i in self.issues]


class WorkflowValidator:
    """
    Checks a graph snapshot for problems a user should fix before relying on
    a simulation.

    Usage:
        result = WorkflowValidator(state).validate()
        for issue in result.errors:
            print(issue.message)
    """

    def __init__(self, state: GraphState):
        self.state = state
        self.issues: list[ValidationIssue] = []

    def validate(self) -> WorkflowValidationResult:
        self.issues = []

        self._check_structure()
        for node in self.state.nodes:
            self._check_node_config(node)
        self._check_connections()
        self._check_variables()

        counts = {severity: 0 for severity in Severity}
        for issue in self.issues:
            counts[issue.severity] += 1
        summary = ValidationSummary(
            total_nodes=len(self.state.nodes),
            total_edges=len(self.state.edges),
            error_count=counts[Severity.ERROR],
            warning_count=counts[Severity.WARNING],
            info_count=counts[Severity.INFO],
        )
        logger.debug(
            "Validated %d nodes: %d errors, %d warnings",
            summary.total_nodes,
            summary.error_count,
            summary.warning_count,
        )
        return WorkflowValidationResult(issues=list(self.issues), summary=summary)

    def _add(
        self,
        severity: Severity,
        category: IssueCategory,
        message: str,
        suggestion: str = "",
        node: Node | None = None,
        edge_id: str | None = None,
    ) -> None:
        self.issues.append(
            ValidationIssue(
                severity=severity,
                category=category,
                message=message,
                suggestion=suggestion,
                node_id=node.id if node else None,
                node_label=node.display_name() if node else None,
                edge_id=edge_id,
            )
        )

    def _config_issue(
        self, node: Node, message: str, suggestion: str = "", severity: Severity = Severity.ERROR
    ) -> None:
        self._add(severity, IssueCategory.NODE_CONFIG, message, suggestion, node=node)

    # =========================================================================
    # Workflow structure
    # =========================================================================

    def _check_structure(self) -> None:
        starts = self.state.start_nodes()
        if not starts:
            self._add(
                Severity.ERROR,
                IssueCategory.WORKFLOW,
                "Workflow has no start node",
                "Add a start node to the canvas",
            )
        elif len(starts) > 1:
            self._add(
                Severity.ERROR,
                IssueCategory.WORKFLOW,
                f"Workflow has {len(starts)} start nodes; exactly one is allowed",
                "Delete the extra start nodes",
            )

        if not any(n.type == NodeType.END for n in self.state.nodes):
            self._add(
                Severity.WARNING,
                IssueCategory.WORKFLOW,
                "Workflow has no end node",
                "Add an end node to mark where the flow finishes",
            )

        if self.state.nodes and not self.state.edges:
            self._add(
                Severity.WARNING,
                IssueCategory.WORKFLOW,
                "Workflow nodes are not connected",
                "Connect the nodes to define the flow",
            )

    # =========================================================================
    # Per-type configuration
    # =========================================================================

    def _check_node_config(self, node: Node) -> None:
        config = node.config
        match node.type:
            case NodeType.END:
                if not node.label.strip():
                    self._config_issue(
                        node, "End node has no label", severity=Severity.WARNING
                    )
            case NodeType.API_CALL:
                if not config.url.strip():
                    self._config_issue(node, "API call has no URL", "Set the target URL")
                if config.method.upper() not in HTTP_METHODS:
                    self._config_issue(node, f"API call uses invalid HTTP method {config.method!r}")
                if "{{" in config.url:
                    self._add(
                        Severity.INFO,
                        IssueCategory.VARIABLE,
                        "API URL contains variable references",
                        "Make sure the paths resolve at run time",
                        node=node,
                    )
            case NodeType.CONDITION:
                if not config.expression.strip() and not config.condition_groups:
                    self._config_issue(
                        node,
                        "Condition has no expression or condition groups",
                        "Configure an expression or add a condition group",
                    )
            case NodeType.LOOP:
                self._check_loop(node)
            case NodeType.PARALLEL:
                branch_count = len(config.branches)
                if branch_count == 0:
                    self._config_issue(node, "Parallel node has no branches")
                elif branch_count < 2:
                    self._config_issue(
                        node,
                        "Parallel node has a single branch",
                        "Add a second branch or use a plain connection",
                        severity=Severity.WARNING,
                    )
                wired = len(self.state.get_outgoing_edges(node.id))
                if wired < branch_count:
                    self._add(
                        Severity.WARNING,
                        IssueCategory.CONNECTION,
                        f"Parallel node defines {branch_count} branches but has {wired} outputs",
                        "Connect every branch",
                        node=node,
                    )
            case NodeType.APPROVAL:
                if not config.approver.strip():
                    self._config_issue(node, "Approval has no approver")
                if config.approval_type not in ("single", "any", "all"):
                    self._config_issue(node, f"Unknown approval type {config.approval_type!r}")
            case NodeType.NOTIFICATION:
                if not config.channel.strip():
                    self._config_issue(node, "Notification has no channel")
                if not config.recipients.strip():
                    self._config_issue(node, "Notification has no recipients")
            case NodeType.CC:
                if not config.recipients.strip():
                    self._config_issue(node, "CC has no recipients")
            case NodeType.DELAY:
                seconds = _delay_seconds(config.duration, config.unit)
                if config.duration <= 0:
                    self._config_issue(node, "Delay has no duration")
                elif seconds > MAX_DELAY_SECONDS:
                    self._config_issue(
                        node, "Delay is longer than 24 hours", severity=Severity.WARNING
                    )
            case NodeType.SCRIPT:
                if not config.code.strip():
                    self._config_issue(node, "Script has no code")
            case NodeType.DATA_OP:
                if not config.operation.strip():
                    self._config_issue(node, "Data operation has no operation type")
            case NodeType.LLM:
                if not config.model.strip():
                    self._config_issue(node, "LLM node has no model")
                if not config.prompt.strip():
                    self._config_issue(node, "LLM node has no prompt")
                if not 0 <= config.temperature <= 2:
                    self._config_issue(
                        node,
                        "LLM temperature is outside 0-2",
                        severity=Severity.WARNING,
                    )
            case NodeType.SQL:
                if not config.sql.strip():
                    self._config_issue(node, "SQL node has no statement")
                if not config.database_id.strip():
                    self._config_issue(node, "SQL node has no database")
                if config.unsafe_mode:
                    self._config_issue(
                        node,
                        "SQL node runs in unsafe mode",
                        "Unsafe mode allows arbitrary statements",
                        severity=Severity.WARNING,
                    )
            case NodeType.KNOWLEDGE_RETRIEVAL:
                if not config.dataset_ids:
                    self._config_issue(node, "Knowledge retrieval has no knowledge base")
                if not config.query.strip():
                    self._config_issue(node, "Knowledge retrieval has no query")
            case NodeType.DOCUMENT_EXTRACTOR:
                if not config.file_url.strip():
                    self._config_issue(node, "Document extractor has no file URL")
            case _:
                pass

    def _check_loop(self, node: Node) -> None:
        if not node.config.target_array.strip():
            self._config_issue(
                node,
                "Loop has no target array",
                "Set the path of the array to iterate over",
                severity=Severity.WARNING,
            )
        children = self.state.children_of(node.id)
        if not children:
            self._config_issue(
                node,
                "Loop has no child nodes",
                "Drag nodes into the loop to define its body",
                severity=Severity.WARNING,
            )
        has_output = any(
            e.source_handle == LOOP_OUTPUT for e in self.state.get_outgoing_edges(node.id)
        )
        if children and not has_output:
            self._add(
                Severity.WARNING,
                IssueCategory.CONNECTION,
                "Loop has no loop-output connection",
                "Connect the loop output to the next step",
                node=node,
            )

    # =========================================================================
    # Connections
    # =========================================================================

    def _check_connections(self) -> None:
        if not self.state.nodes:
            return
        index = self.state.node_index()
        connected: set[str] = set()
        used_handles: set[tuple[str, str | None]] = set()

        for edge in self.state.edges:
            connected.update((edge.source, edge.target))
            for role, endpoint in (("source", edge.source), ("target", edge.target)):
                if endpoint not in index:
                    self._add(
                        Severity.ERROR,
                        IssueCategory.CONNECTION,
                        f"Edge '{edge.id}' references missing {role} node '{endpoint}'",
                        "Delete the connection",
                        edge_id=edge.id,
                    )

            source = index.get(edge.source)
            if source is None:
                continue
            allowed = allowed_source_handles(source)
            if allowed is not None and edge.source_handle not in allowed:
                self._add(
                    Severity.ERROR,
                    IssueCategory.CONNECTION,
                    f"Edge '{edge.id}' leaves {source.type} node through unknown handle "
                    f"{edge.source_handle!r}",
                    node=source,
                    edge_id=edge.id,
                )
            key = (edge.source, edge.source_handle)
            if key in used_handles:
                self._add(
                    Severity.ERROR,
                    IssueCategory.CONNECTION,
                    f"Handle {edge.source_handle!r} of '{source.id}' has more than one edge",
                    node=source,
                    edge_id=edge.id,
                )
            used_handles.add(key)

        for node in self.state.nodes:
            if node.id not in connected:
                self._add(
                    Severity.WARNING,
                    IssueCategory.CONNECTION,
                    f"Node '{node.display_name()}' is not connected to anything",
                    "Connect it or delete it",
                    node=node,
                )

        for cycle in self._find_cycles():
            labels = " → ".join(index[n].display_name() for n in cycle if n in index)
            self._add(
                Severity.ERROR,
                IssueCategory.CONNECTION,
                f"Cycle detected: {labels}",
                "Remove one of the connections so the flow can finish",
            )

    def _find_cycles(self) -> list[list[str]]:
        """Depth-first search; one entry per back edge found."""
        adjacency: dict[str, list[str]] = {n.id: [] for n in self.state.nodes}
        for edge in self.state.edges:
            if edge.source in adjacency and edge.target in adjacency:
                adjacency[edge.source].append(edge.target)

        visited: set[str] = set()
        on_stack: list[str] = []
        cycles: list[list[str]] = []

        # Explicit stack of (node, remaining neighbors) so long chains don't recurse
        for root in adjacency:
            if root in visited:
                continue
            visited.add(root)
            on_stack.append(root)
            stack = [(root, iter(adjacency[root]))]
            while stack:
                _, neighbors = stack[-1]
                neighbor = next(neighbors, None)
                if neighbor is None:
                    stack.pop()
                    on_stack.pop()
                elif neighbor in on_stack:
                    cycles.append(on_stack[on_stack.index(neighbor) :])
                elif neighbor not in visited:
                    visited.add(neighbor)
                    on_stack.append(neighbor)
                    stack.append((neighbor, iter(adjacency[neighbor])))
        return cycles

    # =========================================================================
    # Variable references
    # =========================================================================

    def _check_variables(self) -> None:
        index = self.state.node_index()
        for node in self.state.nodes:
            text = json.dumps(node.config.model_dump(mode="json"), default=str)
            upstream: set[str] | None = None
            for match in TEMPLATE_TOKEN.finditer(text):
                reference = match.group(1).strip()
                parts = split_path(reference)
                if len(parts) < 2 or parts[0] != "nodes":
                    continue
                referenced = index.get(parts[1])
                if referenced is None:
                    self._add(
                        Severity.ERROR,
                        IssueCategory.VARIABLE,
                        f"Reference {{{{{reference}}}}} points to a missing node",
                        "Fix the path or restore the source node",
                        node=node,
                    )
                    continue
                if upstream is None:
                    upstream = set(upstream_node_ids(self.state, node.id))
                if referenced.id not in upstream and referenced.type != NodeType.START:
                    self._add(
                        Severity.WARNING,
                        IssueCategory.VARIABLE,
                        f"Reference {{{{{reference}}}}} reads a node that does not run before "
                        f"'{node.display_name()}'",
                        "Connect the source node upstream of this node",
                        node=node,
                    )


def _delay_seconds(duration: float, unit: str) -> float:
    factor = {"milliseconds": 0.001, "ms": 0.001, "minutes": 60, "hours": 3600}.get(unit, 1)
    return duration * factor


def validate_workflow(state: GraphState) -> WorkflowValidationResult:
    return WorkflowValidator(state).validate()
