"""
Structured logging with automatic run context propagation.

Every log line emitted while a graph run executes carries the run it
belongs to, without callers passing ids around:

    GraphExecutionHost.start_workflow() → sets workflow_id, run_id
        ↓ (ContextVar copied into the run's task)
    NodeExecutor.run() → adds node_id
        ↓ (ContextVar copied into each node task)
    logger.info("message") → record carries all of the above

Two output modes: JSON for production, colored single lines for development.
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

ANSI_ESCAPE_PATTERN = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    """Remove ANSI escape codes from text for clean JSON logging."""
    return ANSI_ESCAPE_PATTERN.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Produces one JSON object per record with:
    - Standard fields (timestamp, level, logger, message)
    - Run context (workflow_id, run_id, node_id) from the ContextVar
    - Selected fields passed through ``extra``
    """

    EXTRA_FIELDS = ("event", "node_id", "tool_name", "model", "latency_ms")

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}

        log_entry = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
        }
        log_entry.update(context)

        for name in self.EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                log_entry[name] = value

        if record.exc_info:
            log_entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))

        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Colorized single-line formatter with a short run context prefix."""

    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = trace_context.get() or {}
        workflow_id = context.get("workflow_id", "")
        run_id = context.get("run_id", "")
        node_id = context.get("node_id", "")

        prefix_parts = []
        if workflow_id:
            prefix_parts.append(f"wf:{workflow_id[:12]}")
        if run_id:
            prefix_parts.append(f"run:{run_id[-8:]}")
        if node_id:
            prefix_parts.append(f"node:{node_id}")

        context_prefix = f"[{' | '.join(prefix_parts)}] " if prefix_parts else ""

        color = self.COLORS.get(record.levelname, "")
        level = f"{record.levelname:<8}"

        event = ""
        record_event = getattr(record, "event", None)
        if record_event is not None:
            event = f" [{record_event}]"

        message = f"{color}[{level}]{self.RESET} {context_prefix}{record.getMessage()}{event}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def configure_logging(
    level: str = "INFO",
    format: str = "auto",  # "json", "human", or "auto"
) -> None:
    """
    Configure logging for the process.

    Call once at startup (the CLI does this).

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Output format:
            - "json": Machine-parseable JSON
            - "human": Human-readable with colors
            - "auto": JSON if LOG_FORMAT=json or ENV=production, else human
    """
    if format == "auto":
        log_format_env = os.getenv("LOG_FORMAT", "").lower()
        env = os.getenv("ENV", "development").lower()
        format = "json" if log_format_env == "json" or env == "production" else "human"

    if format == "json":
        formatter: logging.Formatter = StructuredFormatter()
        _disable_third_party_colors()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())

    # Route chatty libraries through the root handler
    for logger_name in ("LiteLLM", "httpcore", "httpx", "openai"):
        lib_logger = logging.getLogger(logger_name)
        lib_logger.handlers.clear()
        lib_logger.propagate = True
        if level.upper() != "DEBUG":
            lib_logger.setLevel(logging.WARNING)


def _disable_third_party_colors() -> None:
    os.environ["NO_COLOR"] = "1"
    os.environ["FORCE_COLOR"] = "0"

    import litellm

    litellm.suppress_debug_info = True


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the current run context.

    The context lives in a ContextVar, so it follows the current task and
    is copied into tasks created from it.

    Args:
        **kwargs: Context fields (workflow_id, run_id, node_id, ...)
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current run context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    trace_context.set(None)
