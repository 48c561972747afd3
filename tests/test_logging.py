"""
Tests for structured logging and trace context propagation.
"""

import json
import logging

import pytest

from stepgraph.graph.builder import GraphBuilder
from stepgraph.observability import (
    clear_trace_context,
    configure_logging,
    get_trace_context,
    set_trace_context,
)
from stepgraph.observability.logging import HumanReadableFormatter, StructuredFormatter


def make_record(message, **extra):
    record = logging.LogRecord(
        name="stepgraph.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_trace_context_merges_and_clears():
    set_trace_context(run_id="run_1", graph_id="g")
    set_trace_context(superstep=2)

    assert get_trace_context() == {"run_id": "run_1", "graph_id": "g", "superstep": 2}

    clear_trace_context()
    assert get_trace_context() == {}


def test_get_trace_context_returns_copy():
    set_trace_context(run_id="run_1")
    get_trace_context()["run_id"] = "changed"

    assert get_trace_context()["run_id"] == "run_1"


def test_structured_formatter():
    set_trace_context(run_id="run_1", superstep=3, node_id="writer")

    line = StructuredFormatter().format(
        make_record("\033[32mdone\033[0m", event="task_finished", latency_ms=12)
    )
    entry = json.loads(line)

    assert entry["message"] == "done"
    assert entry["level"] == "info"
    assert entry["logger"] == "stepgraph.test"
    assert entry["run_id"] == "run_1"
    assert entry["superstep"] == 3
    assert entry["node_id"] == "writer"
    assert entry["event"] == "task_finished"
    assert entry["latency_ms"] == 12


def test_human_formatter_prefix():
    set_trace_context(run_id="run_20240101_abcdef12", superstep=4, node_id="critic")

    line = HumanReadableFormatter().format(make_record("reviewing"))

    assert "[run:abcdef12 | step:4 | node:critic] reviewing" in line


def test_human_formatter_without_context():
    line = HumanReadableFormatter().format(make_record("plain"))

    assert "[INFO" in line
    assert "run:" not in line
    assert line.endswith("plain")


@pytest.mark.parametrize(
    "fmt,formatter_type",
    [("json", StructuredFormatter), ("human", HumanReadableFormatter)],
)
def test_configure_logging_installs_formatter(restore_root_logger, fmt, formatter_type):
    configure_logging(level="debug", format=fmt)

    root = restore_root_logger
    assert len(root.handlers) == 1
    assert isinstance(root.handlers[0].formatter, formatter_type)
    assert root.level == logging.DEBUG


def test_configure_logging_auto_uses_env(restore_root_logger, monkeypatch):
    monkeypatch.setenv("LOG_FORMAT", "json")

    configure_logging(format="auto")

    assert isinstance(restore_root_logger.handlers[0].formatter, StructuredFormatter)


@pytest.mark.asyncio
async def test_nodes_run_inside_trace_context(executor):
    seen = {}

    def sync_node(state):
        seen["sync"] = get_trace_context()
        return {"a": 1}

    async def async_node(state):
        seen["async"] = get_trace_context()
        return {"b": 2}

    builder = GraphBuilder(state_schema={"a": None, "b": None}, graph_id="traced")
    builder.add_node("sync_node", sync_node)
    builder.add_node("async_node", async_node)
    builder.set_entry_point("sync_node")
    builder.add_edge("sync_node", "async_node")

    await executor.start(builder.compile(), run_id="run-traced")

    assert seen["sync"]["run_id"] == "run-traced"
    assert seen["sync"]["graph_id"] == "traced"
    assert seen["sync"]["superstep"] == 1
    assert seen["sync"]["node_id"] == "sync_node"
    assert seen["sync"]["task_id"] == "1:sync_node:0"
    assert seen["async"]["superstep"] == 2
    assert seen["async"]["node_id"] == "async_node"
