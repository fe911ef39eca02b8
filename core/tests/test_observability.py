"""Tests for structured logging and run context propagation."""

import asyncio
import json
import logging

import pytest

from graphrunner.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from graphrunner.observability.logging import HumanReadableFormatter, StructuredFormatter


@pytest.fixture(autouse=True)
def clean_context():
    clear_trace_context()
    yield
    clear_trace_context()


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("graphrunner.test", logging.INFO, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_context_merges_and_copies():
    set_trace_context(run_id="run-1")
    set_trace_context(node_id="A")

    context = get_trace_context()
    context["node_id"] = "changed"

    assert get_trace_context() == {"run_id": "run-1", "node_id": "A"}


async def test_context_follows_tasks():
    set_trace_context(run_id="run-1")

    async def node(node_id):
        set_trace_context(node_id=node_id)
        await asyncio.sleep(0)
        return get_trace_context()

    first, second = await asyncio.gather(node("A"), node("B"))

    assert first == {"run_id": "run-1", "node_id": "A"}
    assert second == {"run_id": "run-1", "node_id": "B"}
    assert get_trace_context() == {"run_id": "run-1"}


def test_structured_formatter():
    set_trace_context(workflow_id="wf-1", run_id="run-1")

    entry = json.loads(
        StructuredFormatter().format(make_record("\x1b[31mhello\x1b[0m", tool_name="fetchUrl", latency_ms=12))
    )

    assert entry["message"] == "hello"
    assert entry["level"] == "info"
    assert entry["logger"] == "graphrunner.test"
    assert entry["workflow_id"] == "wf-1"
    assert entry["run_id"] == "run-1"
    assert entry["tool_name"] == "fetchUrl"
    assert entry["latency_ms"] == 12
    assert "model" not in entry


def test_human_formatter_prefix():
    set_trace_context(workflow_id="wf-1", run_id="team-run-12345678", node_id="A")

    line = HumanReadableFormatter().format(make_record("started", event="node_started"))

    assert "[wf:wf-1 | run:12345678 | node:A] started [node_started]" in line


def test_configure_logging_installs_one_handler(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "")
    monkeypatch.setenv("FORCE_COLOR", "")
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    try:
        configure_logging(level="debug", format="json")
        configure_logging(level="warning", format="human")

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, HumanReadableFormatter)
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
