"""
Execution schemas - the trace produced by one simulated run.

A run yields an ordered, append-only list of log entries (one per executed
step), a status map projected from that log for live highlighting, and the
output each node produced. All three are replaced wholesale by the next run.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, computed_field


class StepStatus(StrEnum):
    """Final status of one log entry."""

    SUCCESS = "success"
    FAILED = "failed"


class NodeExecutionStatus(StrEnum):
    """Live status of a node during and after a run."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class RunStatus(StrEnum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"  # structural failure or step budget exhausted


class AbortReason(StrEnum):
    NO_START_NODE = "no_start_node"
    MULTIPLE_START_NODES = "multiple_start_nodes"
    STEP_BUDGET_EXHAUSTED = "step_budget_exhausted"


class ExecutionLogEntry(BaseModel):
    """One executed step. Immutable once produced."""

    step_id: str
    node_id: str
    node_label: str = ""
    node_type: str = ""
    status: StepStatus = StepStatus.SUCCESS
    input: Any = None
    output: Any = None
    error_message: str | None = None
    duration_ms: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    loop_index: int | None = None
    warnings: list[str] = Field(default_factory=list)

    model_config = {"frozen": True}

    @property
    def success(self) -> bool:
        return self.status == StepStatus.SUCCESS


class RunResult(BaseModel):
    """
    Everything one run produced.

    ``status_map`` is the latest status per node; ``node_outputs`` holds the
    last output each node produced on any path.
    """

    run_id: str
    workflow_id: str = ""
    status: RunStatus = RunStatus.COMPLETED
    abort_reason: AbortReason | None = None
    error: str | None = None
    log: list[ExecutionLogEntry] = Field(default_factory=list)
    status_map: dict[str, NodeExecutionStatus] = Field(default_factory=dict)
    node_outputs: dict[str, Any] = Field(default_factory=dict)
    steps_executed: int = 0
    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @computed_field
    @property
    def failed_steps(self) -> int:
        return sum(1 for entry in self.log if not entry.success)

    @computed_field
    @property
    def success(self) -> bool:
        """Completed with no failed step."""
        return self.status == RunStatus.COMPLETED and self.failed_steps == 0

    def entries_for(self, node_id: str) -> list[ExecutionLogEntry]:
        return [entry for entry in self.log if entry.node_id == node_id]

    def visited(self) -> list[str]:
        """Node ids in log order (duplicates kept)."""
        return [entry.node_id for entry in self.log]
