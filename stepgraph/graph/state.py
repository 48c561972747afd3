"""
State Store - Shared run state with per-field reducers.

State is a mapping of field name -> value. Every field is declared up front
as a Channel with exactly one reducer. Nodes never mutate state directly:
the executor stages their partial updates and commits them at the superstep
barrier, where each field's reducer merges all staged values.

Fields without a reducer are "last value" fields. A single writer per
superstep overwrites the value; two or more writers in the same superstep
is a ReducerConflictError rather than silent data loss.
"""

import copy
import logging
import operator
import typing
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from stepgraph.errors import InvalidUpdateError, ReducerConflictError

logger = logging.getLogger(__name__)

Reducer = Callable[[Any, Any], Any]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


# ---------------------------------------------------------------------------
# Built-in reducers
# ---------------------------------------------------------------------------


def overwrite(old: Any, new: Any) -> Any:
    """Explicit last-writer-wins. Opting in allows concurrent writers."""
    return new


def append(old: Any, new: Any) -> list:
    """List accumulation. Non-list values are appended as single items."""
    base = list(old) if old is not None else []
    if isinstance(new, (list, tuple)):
        return base + list(new)
    return base + [new]


def extend_unique(old: Any, new: Any) -> list:
    """List accumulation that skips values already present."""
    result = list(old) if old is not None else []
    for item in new if isinstance(new, (list, tuple)) else [new]:
        if item not in result:
            result.append(item)
    return result


def merge_dicts(old: Any, new: Any) -> dict:
    """Shallow dict merge, keys from the newer value win."""
    return {**(old or {}), **(new or {})}


def add(old: Any, new: Any) -> Any:
    """Numeric (or any `+`-able) accumulation."""
    if old is None:
        return new
    return operator.add(old, new)


# ---------------------------------------------------------------------------
# Channels
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Channel:
    """Declaration of a single state field."""

    name: str
    reducer: Reducer | None = None
    default: Any = MISSING
    default_factory: Callable[[], Any] | None = None

    @property
    def has_reducer(self) -> bool:
        return self.reducer is not None

    def initial(self) -> Any:
        """Return a fresh default value, or MISSING when the field has none."""
        if self.default_factory is not None:
            return self.default_factory()
        if self.default is MISSING:
            return MISSING
        return copy.deepcopy(self.default)


def channels_from_schema(schema: Any) -> dict[str, Channel]:
    """
    Build channel declarations from a state schema.

    Accepted forms:
        {"field": None, "results": append}          # reducer per field
        [Channel("field"), Channel("results", append)]
        class S(TypedDict):                          # Annotated metadata = reducer
            field: str
            results: Annotated[list, append]
    """
    if schema is None:
        return {}

    if isinstance(schema, Mapping):
        channels = {}
        for name, spec in schema.items():
            if isinstance(spec, Channel):
                channels[name] = spec
            elif spec is None or callable(spec):
                channels[name] = Channel(name=name, reducer=spec)
            else:
                raise TypeError(f"Unsupported schema entry for '{name}': {spec!r}")
        return channels

    if isinstance(schema, Iterable) and not isinstance(schema, (str, bytes, type)):
        channels = {}
        for item in schema:
            if not isinstance(item, Channel):
                raise TypeError(f"Expected Channel, got {type(item).__name__}")
            channels[item.name] = item
        return channels

    if isinstance(schema, type):
        hints = typing.get_type_hints(schema, include_extras=True)
        channels = {}
        for name, hint in hints.items():
            reducer = None
            if typing.get_origin(hint) is typing.Annotated:
                for meta in hint.__metadata__:
                    if callable(meta):
                        reducer = meta
                        break
            channels[name] = Channel(name=name, reducer=reducer)
        return channels

    raise TypeError(f"Unsupported state schema: {schema!r}")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


def _same_contents(a: Any, b: Any) -> bool:
    """Compare reducer results; sequences compare as multisets."""
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return sorted(map(repr, a)) == sorted(map(repr, b))
    return a == b


class StateStore:
    """
    Committed state plus a buffer of staged writes for the current superstep.

    Example:
        store = StateStore({"results": Channel("results", append)})
        store.stage("results", ["a"], writer="1:worker:0")
        store.stage("results", ["b"], writer="1:worker:1")
        store.read("results")    # MISSING/default - nothing committed yet
        store.commit()           # {"results": ["a", "b"]}
    """

    def __init__(
        self,
        channels: Mapping[str, Channel],
        values: Mapping[str, Any] | None = None,
        strict_reducers: bool = False,
    ):
        self._channels = dict(channels)
        self._values: dict[str, Any] = {}
        self._staged: list[tuple[str, Any, str]] = []
        self.strict_reducers = strict_reducers
        if values:
            self.seed(values)

    @property
    def channels(self) -> dict[str, Channel]:
        return dict(self._channels)

    @property
    def has_staged(self) -> bool:
        return bool(self._staged)

    def _check_field(self, field: str) -> Channel:
        channel = self._channels.get(field)
        if channel is None:
            raise InvalidUpdateError(
                f"Unknown state field '{field}'. Declared fields: {sorted(self._channels)}"
            )
        return channel

    def read(self, field: str, default: Any = None) -> Any:
        """Read the last committed value of a field."""
        channel = self._check_field(field)
        if field in self._values:
            return self._values[field]
        initial = channel.initial()
        return default if initial is MISSING else initial

    def snapshot(self) -> dict[str, Any]:
        """Return all committed values (fields with defaults included)."""
        result = {}
        for name, channel in self._channels.items():
            if name in self._values:
                result[name] = self._values[name]
            else:
                initial = channel.initial()
                if initial is not MISSING:
                    result[name] = initial
        return result

    def seed(self, values: Mapping[str, Any]) -> None:
        """Set committed values directly, bypassing reducers (run start / restore)."""
        for field, value in values.items():
            self._check_field(field)
            self._values[field] = value

    def stage(self, field: str, value: Any, writer: str) -> None:
        """Buffer a write. It becomes visible only after commit()."""
        self._check_field(field)
        self._staged.append((field, value, writer))

    def stage_update(self, update: Mapping[str, Any], writer: str) -> None:
        """Validate and stage every key of a partial update."""
        if not isinstance(update, Mapping):
            raise InvalidUpdateError(
                f"Task {writer} returned {type(update).__name__}, expected a mapping"
            )
        unknown = [key for key in update if key not in self._channels]
        if unknown:
            raise InvalidUpdateError(
                f"Task {writer} wrote undeclared field(s) {unknown}. "
                f"Declared fields: {sorted(self._channels)}"
            )
        for field, value in update.items():
            self._staged.append((field, value, writer))

    def discard(self) -> None:
        """Drop all staged writes."""
        self._staged.clear()

    def commit(self) -> dict[str, Any]:
        """
        Merge staged writes through their reducers.

        Writes are applied in staging order (task completion order). Either
        every field is committed or, on conflict, none is.

        Returns:
            Delta of committed values: {field: new_value}

        Raises:
            ReducerConflictError: multiple writers to a reducer-less field, or
                an order-dependent reducer when strict_reducers is enabled
        """
        grouped: dict[str, list[tuple[str, Any]]] = {}
        for field, value, writer in self._staged:
            grouped.setdefault(field, []).append((writer, value))
        self._staged = []

        delta: dict[str, Any] = {}
        for field, writes in grouped.items():
            channel = self._channels[field]
            writers = [w for w, _ in writes]
            values = [v for _, v in writes]

            if channel.reducer is None:
                if len(writes) > 1:
                    raise ReducerConflictError(field, writers)
                delta[field] = values[0]
                continue

            merged = self._reduce(channel, values)
            if self.strict_reducers and len(values) > 1:
                merged_reversed = self._reduce(channel, list(reversed(values)))
                if not _same_contents(merged, merged_reversed):
                    raise ReducerConflictError(
                        field,
                        writers,
                        message=(
                            f"Reducer for field '{field}' is order-dependent: merging "
                            f"{len(values)} writes in reverse order gave a different result"
                        ),
                    )
            delta[field] = merged

        self._values.update(delta)
        if delta:
            logger.debug(f"Committed fields: {sorted(delta)}")
        return delta

    def _reduce(self, channel: Channel, values: list[Any]) -> Any:
        current = self._values.get(channel.name, MISSING)
        if current is MISSING:
            current = channel.initial()
        if current is MISSING:
            current = None
        for value in values:
            current = channel.reducer(current, value)
        return current
