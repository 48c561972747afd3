import logging

import pytest

from stepgraph.config import ExecutorConfig
from stepgraph.graph.executor import GraphExecutor
from stepgraph.observability import clear_trace_context


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's ~/.stepgraph/configuration.json out of the tests."""
    monkeypatch.setenv("STEPGRAPH_CONFIG", str(tmp_path / "no-config.json"))
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def executor():
    return GraphExecutor(config=ExecutorConfig(max_supersteps=50))
