"""
Node model - typed units of work on the workflow canvas.

Every node carries a ``type`` and a configuration record. The configuration
is a closed tagged union: each ``NodeType`` maps to its own pydantic config
model, so the simulator dispatches on the node type and reads strongly-typed
fields instead of probing an untyped blob. Unknown keys are still accepted
and preserved so documents written by newer editors round-trip intact.

Node types:
- start / end: entry and terminal points of a path
- condition: two-way branch (``true`` / ``false`` handles)
- parallel: fan-out over ``branch-0..branch-(k-1)`` handles
- loop: bounded-loop container that owns child nodes
- everything else: pass-through action steps with simulated effects
"""

from enum import StrEnum
from typing import Any, ClassVar

from pydantic import BaseModel, Field, SerializeAsAny, field_validator, model_validator
from pydantic.alias_generators import to_camel


class NodeType(StrEnum):
    """Fixed set of node types the editor can place."""

    START = "start"
    END = "end"
    APPROVAL = "approval"
    CC = "cc"
    CONDITION = "condition"
    API_CALL = "api_call"
    NOTIFICATION = "notification"
    DELAY = "delay"
    DATA_OP = "data_op"
    SCRIPT = "script"
    PARALLEL = "parallel"
    LLM = "llm"
    KNOWLEDGE_RETRIEVAL = "knowledge_retrieval"
    DOCUMENT_EXTRACTOR = "document_extractor"
    LOOP = "loop"
    SQL = "sql"
    CLOUD_PHONE = "cloud_phone"
    STORAGE = "storage"


CONTAINER_TYPES = frozenset({NodeType.LOOP})

DEFAULT_NODE_SIZE = (200.0, 80.0)
DEFAULT_CONTAINER_SIZE = (350.0, 250.0)


# ---------------------------------------------------------------------------
# Shared config pieces
# ---------------------------------------------------------------------------


class NodeConfig(BaseModel):
    """Base configuration shared by every node type.

    ``raw_fields`` names fields that hold paths or expressions. They are read
    by the simulator as-is and are never passed through template rendering.
    """

    raw_fields: ClassVar[frozenset[str]] = frozenset()

    model_config = {"extra": "allow", "populate_by_name": True, "alias_generator": to_camel}


class LogicalOperator(StrEnum):
    AND = "AND"
    OR = "OR"


class ConditionClause(BaseModel):
    """One ``variable <operator> value`` comparison inside a condition group."""

    variable: str = ""
    operator: str = "=="
    value: Any = None

    model_config = {"extra": "allow"}


class ConditionGroup(BaseModel):
    """Clauses joined by one logical operator. Groups are OR-ed together."""

    logical_operator: LogicalOperator = Field(default=LogicalOperator.AND, alias="logicalOperator")
    conditions: list[ConditionClause] = Field(default_factory=list)

    model_config = {"extra": "allow", "populate_by_name": True}


class KeyValueParam(BaseModel):
    key: str = ""
    value: str = ""
    enabled: bool = True


class EndOutput(BaseModel):
    key: str = ""
    value: str = ""


class ApiAuth(BaseModel):
    type: str = "none"  # none | basic | bearer | api_key
    username: str = ""
    password: str = ""
    token: str = ""
    api_key: str = Field(default="", alias="apiKey")
    api_key_name: str = Field(default="X-API-Key", alias="apiKeyName")
    api_key_location: str = Field(default="header", alias="apiKeyLocation")

    model_config = {"populate_by_name": True}


class ResponseHandling(BaseModel):
    extract_path: str = Field(default="", alias="extractPath")

    model_config = {"extra": "allow", "populate_by_name": True}


class LoopMode(StrEnum):
    LOOP = "loop"  # sequential
    ITERATION = "iteration"  # concurrent chunks


# ---------------------------------------------------------------------------
# Per-type configs
# ---------------------------------------------------------------------------


class StartConfig(NodeConfig):
    raw_fields: ClassVar[frozenset[str]] = frozenset({"dev_input"})

    dev_mode: bool = True
    dev_input: str = Field(default="", description="JSON payload used when simulating")


class EndConfig(NodeConfig):
    raw_fields: ClassVar[frozenset[str]] = frozenset({"outputs"})

    outputs: list[EndOutput] = Field(default_factory=list)


class ApprovalConfig(NodeConfig):
    approver: str = "manager"
    approval_type: str = "single"
    approval_strategy: str = "all"
    form_title: str = "Approval form"
    timeout: float = 24
    timeout_unit: str = "hours"


class CcConfig(NodeConfig):
    recipients: str = ""


class ConditionConfig(NodeConfig):
    raw_fields: ClassVar[frozenset[str]] = frozenset({"expression", "condition_groups"})

    expression: str = ""
    condition_groups: list[ConditionGroup] = Field(default_factory=list)


class ApiCallConfig(NodeConfig):
    url: str = ""
    method: str = "GET"
    query_params: list[KeyValueParam] = Field(default_factory=list)
    headers: list[KeyValueParam] = Field(default_factory=list)
    auth: ApiAuth = Field(default_factory=ApiAuth)
    body_type: str = "none"
    body: str = ""
    timeout: int = 30000
    response_handling: ResponseHandling = Field(default_factory=ResponseHandling)


class NotificationConfig(NodeConfig):
    channel: str = "email"
    recipients: str = "requester"
    content: str = ""


class DelayConfig(NodeConfig):
    duration: float = 0
    unit: str = "seconds"  # milliseconds | seconds | minutes | hours


class DataOpConfig(NodeConfig):
    operation: str = "map"
    source: str = ""


class ScriptConfig(NodeConfig):
    language: str = "python"
    code: str = ""


class ParallelConfig(NodeConfig):
    branches: list[str] = Field(default_factory=lambda: ["Branch 1", "Branch 2"])


class LlmConfig(NodeConfig):
    model: str = ""
    prompt: str = ""
    system_prompt: str = ""
    temperature: float = 0.7


class KnowledgeRetrievalConfig(NodeConfig):
    query: str = ""
    dataset_ids: list[str] = Field(default_factory=list, alias="dataset_ids")
    top_k: int = Field(default=2, alias="top_k")


class DocumentExtractorConfig(NodeConfig):
    file_url: str = Field(default="", alias="file_url")
    extraction_mode: str = Field(default="text", alias="extraction_mode")


class LoopConfig(NodeConfig):
    raw_fields: ClassVar[frozenset[str]] = frozenset(
        {"target_array", "termination_conditions", "export_output"}
    )

    target_array: str = ""
    mode: LoopMode = LoopMode.LOOP
    concurrency: int = Field(default=10, ge=1)
    termination_conditions: list[ConditionGroup] = Field(default_factory=list)
    export_output: str = ""


class SqlConfig(NodeConfig):
    raw_fields: ClassVar[frozenset[str]] = frozenset({"sql"})

    sql: str = ""
    database_id: str = "default"
    return_single_record: bool = False
    unsafe_mode: bool = False


CONFIG_MODELS: dict[NodeType, type[NodeConfig]] = {
    NodeType.START: StartConfig,
    NodeType.END: EndConfig,
    NodeType.APPROVAL: ApprovalConfig,
    NodeType.CC: CcConfig,
    NodeType.CONDITION: ConditionConfig,
    NodeType.API_CALL: ApiCallConfig,
    NodeType.NOTIFICATION: NotificationConfig,
    NodeType.DELAY: DelayConfig,
    NodeType.DATA_OP: DataOpConfig,
    NodeType.SCRIPT: ScriptConfig,
    NodeType.PARALLEL: ParallelConfig,
    NodeType.LLM: LlmConfig,
    NodeType.KNOWLEDGE_RETRIEVAL: KnowledgeRetrievalConfig,
    NodeType.DOCUMENT_EXTRACTOR: DocumentExtractorConfig,
    NodeType.LOOP: LoopConfig,
    NodeType.SQL: SqlConfig,
    NodeType.CLOUD_PHONE: NodeConfig,
    NodeType.STORAGE: NodeConfig,
}


def config_for(node_type: NodeType, raw: Any = None) -> NodeConfig:
    """Validate ``raw`` into the config model registered for ``node_type``."""
    model = CONFIG_MODELS.get(node_type, NodeConfig)
    if isinstance(raw, model):
        return raw
    if isinstance(raw, NodeConfig):
        raw = raw.model_dump(by_alias=True)
    return model.model_validate(raw or {})


# ---------------------------------------------------------------------------
# Node
# ---------------------------------------------------------------------------


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Size(BaseModel):
    width: float
    height: float


class Node(BaseModel):
    """
    A typed step on the canvas.

    ``position`` is relative to the parent container when ``parent_id`` is set,
    absolute otherwise. Only container types may be referenced as a parent.
    """

    id: str
    type: NodeType
    label: str = ""
    description: str = ""
    position: Position = Field(default_factory=Position)
    size: Size | None = None
    parent_id: str | None = Field(default=None, alias="parentId")
    config: SerializeAsAny[NodeConfig] = Field(default_factory=NodeConfig, validate_default=True)

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _lift_canvas_shape(cls, data: Any) -> Any:
        """Accept the canvas shape (``data.label``, ``parentNode``, ``width``)."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        canvas_data = data.pop("data", None)
        if isinstance(canvas_data, dict):
            for key in ("label", "description", "config"):
                if key in canvas_data and key not in data:
                    data[key] = canvas_data[key]
        if "parentNode" in data and "parentId" not in data and "parent_id" not in data:
            data["parentId"] = data.pop("parentNode")
        if "size" not in data and data.get("width") and data.get("height"):
            data["size"] = {"width": data.pop("width"), "height": data.pop("height")}
        data.pop("extent", None)
        return data

    @field_validator("config", mode="before")
    @classmethod
    def _coerce_config(cls, value: Any, info) -> NodeConfig:
        node_type = info.data.get("type")
        if node_type is None:
            return NodeConfig.model_validate(value or {})
        return config_for(node_type, value)

    @property
    def is_container(self) -> bool:
        return self.type in CONTAINER_TYPES

    def dimensions(self) -> tuple[float, float]:
        """Width and height, falling back to the per-type default size."""
        if self.size is not None:
            return self.size.width, self.size.height
        return DEFAULT_CONTAINER_SIZE if self.is_container else DEFAULT_NODE_SIZE

    def display_name(self) -> str:
        return self.label or self.id


def merge_config(config: NodeConfig, updates: dict[str, Any]) -> NodeConfig:
    """Return a copy of ``config`` with ``updates`` applied.

    Keys may be field names or their camelCase aliases.
    """
    model = type(config)
    names: dict[str, str] = {}
    for name, info in model.model_fields.items():
        names[name] = name
        names[to_camel(name)] = name
        if info.alias:
            names[info.alias] = name
    data = config.model_dump()
    for key, value in updates.items():
        data[names.get(key, key)] = value
    return model.model_validate(data)
