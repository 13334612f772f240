"""
Variable resolution - what a node can reference, and what a reference means.

Two halves:

Discovery (design time)
    ``available_variables()`` lists every path a node may bind to: payload
    fields from the start node's development input, outputs of every upstream
    node, the enclosing loop's ``item``/``index``, system values and
    configured global variables.

Resolution (run time)
    ``RuntimeContext`` carries one traversal path's accumulated outputs and
    loop frames. ``render_template()`` replaces ``{{path}}`` tokens against
    the context's value tree; unresolvable paths become ``UNDEFINED`` and are
    reported as warnings instead of raising.
"""

from __future__ import annotations

import json
import re
from collections import deque
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from flowsim.graph.node import Node, NodeConfig, NodeType
from flowsim.graph.state import GraphState

TEMPLATE_TOKEN = re.compile(r"\{\{(.*?)\}\}")
UNDEFINED_TEXT = "undefined"
JSON_ERROR_LABEL = "(JSON Error)"

SYSTEM_VARIABLES = ("system.timestamp", "system.workflow_id", "system.execution_id")

# Fields each node type exposes to downstream nodes as nodes.<id>.<field>.
OUTPUT_FIELDS: dict[NodeType, tuple[str, ...]] = {
    NodeType.API_CALL: ("data", "status", "headers"),
    NodeType.LLM: ("text", "response"),
    NodeType.SQL: ("data", "affectedRows", "output"),
    NodeType.SCRIPT: ("output",),
    NodeType.DATA_OP: ("result",),
    NodeType.CONDITION: ("result",),
    NodeType.LOOP: ("result",),
    NodeType.KNOWLEDGE_RETRIEVAL: ("result", "context", "references"),
    NodeType.DOCUMENT_EXTRACTOR: ("text",),
}
GENERIC_OUTPUT_FIELDS = ("output",)


class _Undefined:
    """Marker for a reference that did not resolve."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return UNDEFINED_TEXT

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class GlobalVariable(BaseModel):
    """A workflow-level variable configured outside any node."""

    name: str
    display_name: str = Field(default="", alias="displayName")
    type: str = "string"
    default_value: Any = Field(default=None, alias="defaultValue")
    required: bool = False
    hidden: bool = False
    options: list[Any] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}


class VariableOption(BaseModel):
    """One bindable path offered to a node."""

    path: str
    label: str
    source: str = Field(description="payload, upstream, loop, system, or global")
    node_id: str | None = None
    node_label: str | None = None
    type: str | None = None


@dataclass(frozen=True)
class LoopFrame:
    item: Any
    index: int
    loop_id: str = ""


@dataclass(frozen=True)
class RuntimeContext:
    """
    Per-path execution context.

    Contexts are never mutated: ``with_output`` and ``push_loop`` return new
    contexts, so a fork (parallel branch, loop iteration) can hand each path
    its own copy without locking.
    """

    payload: Any = None
    node_outputs: Mapping[str, Any] = field(default_factory=dict)
    loop_frames: tuple[LoopFrame, ...] = ()
    system: Mapping[str, Any] = field(default_factory=dict)
    global_values: Mapping[str, Any] = field(default_factory=dict)

    def with_output(self, node_id: str, output: Any) -> RuntimeContext:
        outputs = dict(self.node_outputs)
        outputs[node_id] = output
        return RuntimeContext(
            payload=self.payload,
            node_outputs=outputs,
            loop_frames=self.loop_frames,
            system=self.system,
            global_values=self.global_values,
        )

    def push_loop(self, item: Any, index: int, loop_id: str = "") -> RuntimeContext:
        return RuntimeContext(
            payload=self.payload,
            node_outputs=dict(self.node_outputs),
            loop_frames=(*self.loop_frames, LoopFrame(item, index, loop_id)),
            system=self.system,
            global_values=self.global_values,
        )

    @property
    def current_loop(self) -> LoopFrame | None:
        return self.loop_frames[-1] if self.loop_frames else None

    def value_tree(self) -> dict[str, Any]:
        loop: dict[str, Any] = {}
        frame = self.current_loop
        if frame is not None:
            loop = {
                "item": frame.item,
                "index": frame.index,
                "frames": [{"item": f.item, "index": f.index} for f in self.loop_frames],
            }
        return {
            "payload": self.payload,
            "nodes": dict(self.node_outputs),
            "loop": loop,
            "system": dict(self.system),
            "global": dict(self.global_values),
        }

    def eval_namespace(self) -> dict[str, Any]:
        """Names visible to branch expressions: payload keys plus the namespaces."""
        namespace: dict[str, Any] = {}
        if isinstance(self.payload, Mapping):
            namespace.update(self.payload)
        namespace.update(self.value_tree())
        return namespace


@dataclass
class TemplateResult:
    value: Any
    warnings: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Path lookup and template rendering
# ---------------------------------------------------------------------------

_INDEX_SUFFIX = re.compile(r"\[(\d+)\]")


def split_path(path: str) -> list[str]:
    """``a.b[0].c`` -> ``["a", "b", "0", "c"]``."""
    normalized = _INDEX_SUFFIX.sub(r".\1", path.strip())
    return [part for part in normalized.split(".") if part]


def get_path(tree: Any, path: str) -> Any:
    """Dotted lookup; returns UNDEFINED when any segment is missing."""
    parts = split_path(path)
    if not parts:
        return UNDEFINED
    current = tree
    for part in parts:
        if isinstance(current, Mapping):
            if part not in current:
                return UNDEFINED
            current = current[part]
        elif isinstance(current, Sequence) and not isinstance(current, str) and part.isdigit():
            index = int(part)
            if index >= len(current):
                return UNDEFINED
            current = current[index]
        else:
            return UNDEFINED
    return current


def strip_braces(text: str) -> str:
    return TEMPLATE_TOKEN.sub(lambda m: m.group(1).strip(), text).strip()


def resolve_reference(path: str, tree: Mapping[str, Any]) -> Any:
    """Resolve a path against the value tree.

    Bare payload keys (``amount`` rather than ``payload.amount``) fall back to
    the payload.
    """
    path = strip_braces(path)
    value = get_path(tree, path)
    if value is UNDEFINED and isinstance(tree.get("payload"), Mapping):
        value = get_path(tree["payload"], path)
    return value


def _stringify(value: Any) -> str:
    if value is UNDEFINED:
        return UNDEFINED_TEXT
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)


def render_template(template: Any, tree: Mapping[str, Any]) -> TemplateResult:
    """Replace ``{{path}}`` tokens in ``template``.

    A template consisting of exactly one token yields the raw referenced value
    (which may be UNDEFINED); otherwise tokens are rendered into the text.
    Non-string templates are returned unchanged.
    """
    if not isinstance(template, str) or "{{" not in template:
        return TemplateResult(template)

    warnings: list[str] = []
    whole = TEMPLATE_TOKEN.fullmatch(template.strip())
    if whole:
        path = whole.group(1).strip()
        value = resolve_reference(path, tree)
        if value is UNDEFINED:
            warnings.append(f"Unresolved variable '{{{{{path}}}}}'")
        return TemplateResult(value, warnings)

    def _replace(match: re.Match) -> str:
        path = match.group(1).strip()
        value = resolve_reference(path, tree)
        if value is UNDEFINED:
            warnings.append(f"Unresolved variable '{{{{{path}}}}}'")
        return _stringify(value)

    return TemplateResult(TEMPLATE_TOKEN.sub(_replace, template), warnings)


def render_value(value: Any, tree: Mapping[str, Any], warnings: list[str]) -> Any:
    """Recursively render every string inside ``value``."""
    if isinstance(value, str):
        result = render_template(value, tree)
        warnings.extend(result.warnings)
        return UNDEFINED_TEXT if result.value is UNDEFINED else result.value
    if isinstance(value, Mapping):
        return {k: render_value(v, tree, warnings) for k, v in value.items()}
    if isinstance(value, list):
        return [render_value(v, tree, warnings) for v in value]
    return value


def materialize_config(
    config: NodeConfig, context: RuntimeContext
) -> tuple[dict[str, Any], list[str]]:
    """Render a node's configuration into its effective input.

    Fields listed in the config's ``raw_fields`` (paths, expressions, SQL) are
    copied verbatim; they are interpreted by the node's own semantics.
    """
    tree = context.value_tree()
    warnings: list[str] = []
    rendered: dict[str, Any] = {}
    for key, value in config.model_dump(mode="json").items():
        if key in config.raw_fields:
            rendered[key] = value
        else:
            rendered[key] = render_value(value, tree, warnings)
    return rendered, warnings


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def parse_payload(text: str | None) -> tuple[Any, str | None]:
    """Parse a development payload. Returns (value, error message)."""
    if text is None or not text.strip():
        return {}, None
    try:
        return json.loads(text), None
    except json.JSONDecodeError as e:
        return text, f"Invalid JSON payload: {e.msg} (line {e.lineno}, column {e.colno})"


def flatten_payload(value: Any, prefix: str = "payload") -> list[str]:
    """Every addressable leaf path of ``value``.

    Arrays are exposed as a path of their own and then described through their
    first element (``items[0].name``).
    """
    paths: list[str] = []
    if isinstance(value, Mapping):
        for key, child in value.items():
            child_path = f"{prefix}.{key}"
            if isinstance(child, Mapping) and child:
                paths.extend(flatten_payload(child, child_path))
            elif isinstance(child, list):
                paths.append(child_path)
                if child and isinstance(child[0], Mapping):
                    paths.extend(flatten_payload(child[0], f"{child_path}[0]"))
            else:
                paths.append(child_path)
    return paths


def upstream_node_ids(state: GraphState, node_id: str) -> list[str]:
    """Every node with a path to ``node_id``, nearest first (backward BFS)."""
    seen = {node_id}
    order: list[str] = []
    queue = deque([node_id])
    while queue:
        current = queue.popleft()
        for edge in state.get_incoming_edges(current):
            if edge.source not in seen:
                seen.add(edge.source)
                order.append(edge.source)
                queue.append(edge.source)
    return order


def nearest_loop(state: GraphState, node: Node) -> Node | None:
    """The innermost loop container owning ``node`` (or the node itself if it is a loop)."""
    if node.type == NodeType.LOOP:
        return node
    for ancestor_id in state.ancestor_ids(node.id):
        ancestor = state.get_node(ancestor_id)
        if ancestor is not None and ancestor.type == NodeType.LOOP:
            return ancestor
    return None


def output_fields(node_type: NodeType) -> tuple[str, ...]:
    return OUTPUT_FIELDS.get(node_type, GENERIC_OUTPUT_FIELDS)


def available_variables(
    state: GraphState,
    node_id: str,
    payload_text: str | None = None,
    global_variables: Sequence[GlobalVariable] = (),
) -> list[VariableOption]:
    """List the variables ``node_id`` may reference.

    ``payload_text`` defaults to the start node's development input.
    """
    node = state.get_node(node_id)
    if node is None:
        return []

    start = next(iter(state.start_nodes()), None)
    if payload_text is None and start is not None:
        payload_text = getattr(start.config, "dev_input", "")

    options: list[VariableOption] = []

    payload, error = parse_payload(payload_text)
    if error:
        options.append(VariableOption(path="payload", label=JSON_ERROR_LABEL, source="payload"))
        payload_paths: list[str] = []
    else:
        payload_paths = flatten_payload(payload)
        options.extend(
            VariableOption(path=path, label=path.removeprefix("payload."), source="payload")
            for path in payload_paths
        )

    for upstream_id in upstream_node_ids(state, node_id):
        upstream = state.get_node(upstream_id)
        if upstream is None:
            continue
        if upstream.type == NodeType.START:
            fields = [p.removeprefix("payload.") for p in payload_paths]
        else:
            fields = list(output_fields(upstream.type))
        for name in fields:
            options.append(
                VariableOption(
                    path=f"nodes.{upstream.id}.{name}",
                    label=name,
                    source="upstream",
                    node_id=upstream.id,
                    node_label=upstream.display_name(),
                )
            )

    loop = nearest_loop(state, node)
    if loop is not None:
        for name in ("item", "index"):
            options.append(
                VariableOption(
                    path=f"loop.{name}",
                    label=name,
                    source="loop",
                    node_id=loop.id,
                    node_label=loop.display_name(),
                    type="number" if name == "index" else None,
                )
            )

    for path in SYSTEM_VARIABLES:
        options.append(VariableOption(path=path, label=path.split(".", 1)[1], source="system"))

    for variable in global_variables:
        options.append(
            VariableOption(
                path=f"global.{variable.name}",
                label=variable.display_name or variable.name,
                source="global",
                type=variable.type,
            )
        )

    return options
