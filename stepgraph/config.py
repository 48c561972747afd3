"""Shared stepgraph configuration utilities.

Centralises reading of ~/.stepgraph/configuration.json so that the
executor, logging setup and embedding applications share one
implementation. Set STEPGRAPH_CONFIG to point at a different file.

Example file:

    {
      "executor": {"max_supersteps": 50, "max_node_visits": 10, "max_concurrency": 8},
      "logging": {"level": "DEBUG", "format": "human"}
    }
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STEPGRAPH_CONFIG_FILE = Path.home() / ".stepgraph" / "configuration.json"

DEFAULT_MAX_SUPERSTEPS = 100


def get_config_path() -> Path:
    """Return the config file path, honoring the STEPGRAPH_CONFIG override."""
    override = os.environ.get("STEPGRAPH_CONFIG")
    if override:
        return Path(override).expanduser()
    return STEPGRAPH_CONFIG_FILE


def get_stepgraph_config() -> dict[str, Any]:
    """Load stepgraph configuration; missing or unreadable files yield {}."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _executor_section() -> dict[str, Any]:
    return get_stepgraph_config().get("executor", {})


def get_max_supersteps() -> int:
    """Return the configured per-run superstep ceiling."""
    return int(_executor_section().get("max_supersteps", DEFAULT_MAX_SUPERSTEPS))


def get_max_node_visits() -> int:
    """Return the configured default per-node visit ceiling (0 = unlimited)."""
    return int(_executor_section().get("max_node_visits", 0))


def get_max_concurrency() -> int | None:
    """Return the configured task concurrency limit, or None for unbounded."""
    value = _executor_section().get("max_concurrency")
    return int(value) if value else None


def get_strict_reducers() -> bool:
    return bool(_executor_section().get("strict_reducers", False))


def get_logging_settings() -> dict[str, str]:
    """Return {"level": ..., "format": ...} for configure_logging()."""
    section = get_stepgraph_config().get("logging", {})
    return {
        "level": str(section.get("level", "INFO")),
        "format": str(section.get("format", "auto")),
    }


def configure_logging_from_config() -> None:
    """Configure logging from the "logging" section of the config file."""
    from stepgraph.observability import configure_logging

    configure_logging(**get_logging_settings())


# ---------------------------------------------------------------------------
# ExecutorConfig – run limits shared by every GraphExecutor
# ---------------------------------------------------------------------------


@dataclass
class ExecutorConfig:
    """Executor limits loaded from ~/.stepgraph/configuration.json."""

    max_supersteps: int = field(default_factory=get_max_supersteps)
    max_node_visits: int = field(default_factory=get_max_node_visits)
    max_concurrency: int | None = field(default_factory=get_max_concurrency)
    strict_reducers: bool = field(default_factory=get_strict_reducers)
