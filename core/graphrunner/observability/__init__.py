"""
Observability: structured logging with run context propagation.

- Run context (workflow_id, run_id, node_id) rides a ContextVar
- JSON output for production, colored lines for development
"""

from graphrunner.observability.logging import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "get_trace_context",
    "set_trace_context",
    "clear_trace_context",
]
