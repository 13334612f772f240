"""
Observability for simulated runs.

Log records pick up the current run, workflow and node automatically
through a ContextVar; output is JSON in production and colorized text
during development.
"""

from flowsim.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    reset_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "reset_trace_context",
    "clear_trace_context",
]
