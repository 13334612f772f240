"""
Categories - capability profiles that decide which node types placement
tooling offers.

Profiles are advisory: a node of a type the active category does not allow
stays valid and executable.
"""

from pydantic import BaseModel, Field

from flowsim.graph.node import NodeType

GENERAL_CATEGORY_ID = "general"


class Category(BaseModel):
    """A named set of allowed node types."""

    id: str
    name: str
    description: str = ""
    allowed_types: list[NodeType] = Field(default_factory=list, alias="allowedNodeTypes")
    is_system: bool = Field(default=False, alias="isSystem")

    model_config = {"extra": "allow", "populate_by_name": True}

    def allows(self, node_type: NodeType) -> bool:
        """An empty allow-list means every type is allowed."""
        return not self.allowed_types or node_type in self.allowed_types


DEFAULT_CATEGORIES: list[Category] = [
    Category(
        id=GENERAL_CATEGORY_ID,
        name="General",
        description="Every node type",
        is_system=True,
    ),
    Category(
        id="business_approval",
        name="Business Approval",
        description="Approval flows with notifications and simple integrations",
        allowed_types=[
            NodeType.START,
            NodeType.END,
            NodeType.APPROVAL,
            NodeType.CC,
            NodeType.CONDITION,
            NodeType.NOTIFICATION,
            NodeType.DELAY,
            NodeType.PARALLEL,
            NodeType.API_CALL,
        ],
        is_system=True,
    ),
    Category(
        id="ai_agent",
        name="AI Agent",
        description="Model calls, retrieval and data processing",
        allowed_types=[
            NodeType.START,
            NodeType.END,
            NodeType.CONDITION,
            NodeType.LLM,
            NodeType.KNOWLEDGE_RETRIEVAL,
            NodeType.DOCUMENT_EXTRACTOR,
            NodeType.API_CALL,
            NodeType.SCRIPT,
            NodeType.DATA_OP,
            NodeType.LOOP,
            NodeType.SQL,
            NodeType.PARALLEL,
        ],
        is_system=True,
    ),
]


def default_categories() -> list[Category]:
    return [category.model_copy(deep=True) for category in DEFAULT_CATEGORIES]
