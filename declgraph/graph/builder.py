"""Declarative list sugar: optional blocks, nested groups and generated nodes."""

from __future__ import annotations

from typing import Any, Iterable

from declgraph.graph.node import Node


def flatten_nodes(declarations: Iterable[Any]) -> list[Node]:
    """Flatten a declaration into an ordered node list.

    Accepts nodes, nested lists / tuples, generators (for repeated blocks)
    and None (an optional block left out).

    Example:
        >>> flatten_nodes([
        ...     PlaceHolder(shape=[2], name="x"),
        ...     Negative() if negate else None,
        ...     [Square(), SquareRoot(name="y")],
        ... ])
    """
    nodes: list[Node] = []
    stack = [iter(declarations)]
    while stack:
        item = next(stack[-1], _END)
        if item is _END:
            stack.pop()
        elif item is None:
            continue
        elif isinstance(item, Node):
            nodes.append(item)
        elif isinstance(item, Iterable) and not isinstance(item, (str, bytes)):
            stack.append(iter(item))
        else:
            raise TypeError(f"Graph declarations must be nodes, got {type(item).__name__}")
    return nodes


def graph_nodes(*declarations: Any) -> list[Node]:
    """Variadic form of flatten_nodes."""
    return flatten_nodes(declarations)


_END = object()
