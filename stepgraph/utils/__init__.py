"""Utility helpers."""

from stepgraph.utils.io import atomic_write

__all__ = ["atomic_write"]
