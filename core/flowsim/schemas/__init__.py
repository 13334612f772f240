"""Schemas for simulated runs."""

from flowsim.schemas.execution import (
    AbortReason,
    ExecutionLogEntry,
    NodeExecutionStatus,
    RunResult,
    RunStatus,
    StepStatus,
)

__all__ = [
    "AbortReason",
    "ExecutionLogEntry",
    "NodeExecutionStatus",
    "RunResult",
    "RunStatus",
    "StepStatus",
]
