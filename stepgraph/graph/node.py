"""
Node Protocol - The building block of a graph.

A node wraps a user-supplied executable. The engine treats the body as
opaque: it hands the executable a private copy of the committed state
(plus a NodeContext when the executable asks for one) and interprets the
returned value as an Update, Route, Spawn or Gate.

Executables may be plain functions (run on a worker thread) or coroutine
functions (run on the event loop):

    def classify(state):
        return Route(goto="path_b", update={"classification": "category_b"})

    async def fetch(state, context):
        cached = await context.store.get(("cache",), state["url"])
        ...
"""

import asyncio
import inspect
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from stepgraph.graph.directives import NodeResult, normalize_result


@dataclass(frozen=True)
class NodeSpec:
    """Compiled description of a node."""

    id: str
    executable: Callable[..., Any]
    defer: bool = False

    # Fields this node may write (used for compile-time reducer coverage)
    output_keys: tuple[str, ...] = ()
    # Possible Route targets / Spawn targets (used for reachability checks)
    destinations: tuple[str, ...] = ()
    spawns: tuple[str, ...] = ()

    # Per-node iteration ceiling; None falls back to the executor default, 0 = unlimited
    max_visits: int | None = None
    description: str = ""

    accepts_context: bool = False
    is_async: bool = False


@dataclass
class NodeContext:
    """Execution context handed to executables that accept a second argument."""

    run_id: str
    graph_id: str
    node_id: str
    task_id: str
    superstep: int
    store: Any | None = None
    spawned: bool = False


def _is_coroutine_callable(fn: Callable[..., Any]) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    call = getattr(fn, "__call__", None)
    return call is not None and inspect.iscoroutinefunction(call)


def _accepts_context(fn: Callable[..., Any]) -> bool:
    try:
        params = list(inspect.signature(fn).parameters.values())
    except (TypeError, ValueError):
        return False
    if any(p.name == "context" for p in params):
        return True
    positional = [
        p
        for p in params
        if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    has_varargs = any(p.kind == inspect.Parameter.VAR_POSITIONAL for p in params)
    return len(positional) >= 2 or (has_varargs and len(positional) < 2)


def make_node_spec(
    name: str,
    executable: Callable[..., Any],
    *,
    defer: bool = False,
    output_keys: list[str] | tuple[str, ...] | None = None,
    destinations: list[str] | tuple[str, ...] | None = None,
    spawns: list[str] | tuple[str, ...] | None = None,
    max_visits: int | None = None,
    description: str = "",
) -> NodeSpec:
    """Inspect an executable once and freeze it into a NodeSpec."""
    if not callable(executable):
        raise TypeError(f"Node '{name}' executable must be callable, got {executable!r}")
    return NodeSpec(
        id=name,
        executable=executable,
        defer=defer,
        output_keys=tuple(output_keys or ()),
        destinations=tuple(destinations or ()),
        spawns=tuple(spawns or ()),
        max_visits=max_visits,
        description=description or (inspect.getdoc(executable) or "").split("\n")[0],
        accepts_context=_accepts_context(executable),
        is_async=_is_coroutine_callable(executable),
    )


async def invoke_node(spec: NodeSpec, state: dict[str, Any], context: NodeContext) -> NodeResult:
    """Run a node executable and normalize its return value."""
    args: tuple[Any, ...] = (state, context) if spec.accepts_context else (state,)
    if spec.is_async:
        value = await spec.executable(*args)
    else:
        value = await asyncio.to_thread(spec.executable, *args)
        if inspect.isawaitable(value):
            value = await value
    return normalize_result(value)
