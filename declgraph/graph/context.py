"""Name resolution state used while a graph is constructed.

ResolutionContext holds the symbol table, the previous-output cursor, the
sub-graph prefix stack and the active input / data-tensor maps.
ReferenceMarker walks the same scopes ahead of emission to find which nodes
are read by other nodes.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator, Sequence

from declgraph.errors import (
    NamedTensorNotFoundError,
    NameNotUniqueError,
    NoPreviousNodeError,
    SubGraphPlaceHolderNotInInputMapError,
)

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.data.types import Tensor
    from declgraph.graph.node import Node


SCOPE_SEPARATOR = "_"


@dataclass
class _ScopeFrame:
    input_map: dict[str, str | None]
    data_map: dict[str, Tensor]
    entry_cursor: SymbolicTensor | None


class ResolutionContext:
    """Symbol table plus the scope state of the node currently being emitted."""

    def __init__(self):
        self.symbols: dict[str, SymbolicTensor] = {}
        self.cursor: SymbolicTensor | None = None
        self.prefix_stack: list[str] = [""]
        self.input_map: dict[str, str | None] = {}
        self.data_map: dict[str, Tensor] = {}
        self._frames: list[_ScopeFrame] = []

    @property
    def current_prefix(self) -> str:
        return self.prefix_stack[-1]

    def full_name(self, name: str | None) -> str | None:
        if name is None:
            return None
        return self.current_prefix + name

    def bind(self, full_name: str, tensor: SymbolicTensor) -> None:
        if full_name in self.symbols:
            raise NameNotUniqueError(full_name)
        self.symbols[full_name] = tensor

    def push_prefix(self, segment: str) -> None:
        self.prefix_stack.append(self.current_prefix + segment + SCOPE_SEPARATOR)

    def pop_prefix(self) -> None:
        if len(self.prefix_stack) > 1:
            self.prefix_stack.pop()

    def find(self, name: str, depth: int | None = None) -> SymbolicTensor | None:
        """Look `name` up from scope `depth` (default innermost) out to the top level."""
        prefixes = self.prefix_stack if depth is None else self.prefix_stack[:depth + 1]
        for prefix in reversed(prefixes):
            tensor = self.symbols.get(prefix + name)
            if tensor is not None:
                return tensor
        return None

    def lookup(self, name: str, depth: int | None = None) -> SymbolicTensor:
        tensor = self.find(name, depth)
        if tensor is None:
            raise NamedTensorNotFoundError(self.full_name(name) if depth is None else name)
        return tensor

    def resolve(self, name: str | None) -> SymbolicTensor:
        """Tensor for a named input, or the previous output when `name` is None."""
        if name is None:
            if self.cursor is None:
                raise NoPreviousNodeError()
            return self.cursor
        return self.lookup(name)

    def resolve_mapped_input(self, placeholder_name: str) -> SymbolicTensor:
        """Outer tensor the active input map supplies for a sub-graph placeholder."""
        if placeholder_name not in self.input_map:
            raise SubGraphPlaceHolderNotInInputMapError(placeholder_name)
        outer_name = self.input_map[placeholder_name]
        frame = self._frames[-1]
        if outer_name is None:
            if frame.entry_cursor is None:
                raise NoPreviousNodeError()
            return frame.entry_cursor
        return self.lookup(outer_name, depth=len(self.prefix_stack) - 2)

    @contextmanager
    def scope(
        self,
        name: str,
        input_map: dict[str, str | None],
        data_map: dict[str, Tensor]
    ) -> Iterator[None]:
        """Enter a sub-graph instance; restores maps and prefix on exit.

        The inner chain starts with no previous output. On exit the outer
        cursor moves to the last output emitted inside, if any.
        """
        frame = _ScopeFrame(
            input_map=self.input_map,
            data_map=self.data_map,
            entry_cursor=self.cursor,
        )
        self._frames.append(frame)
        self.input_map = dict(input_map)
        self.data_map = dict(data_map)
        self.push_prefix(name)
        self.cursor = None
        try:
            yield
        finally:
            inner_cursor = self.cursor
            self.pop_prefix()
            self.input_map = frame.input_map
            self.data_map = frame.data_map
            self._frames.pop()
            self.cursor = inner_cursor if inner_cursor is not None else frame.entry_cursor


@dataclass
class _MarkScope:
    declared: dict[str, Node]
    input_map: dict[str, str | None] = field(default_factory=dict)
    previous: Node | None = None
    entry_previous: Node | None = None


class ReferenceMarker:
    """Marks every node that another node reads, mirroring emission scoping.

    Named references resolve innermost scope first; a name with an output
    suffix (`k_values`) marks the node declaring `k`, and a name reaching into
    a sub-graph instance (`S_inner`) marks the inner node. Omitted inputs mark
    the node that will supply the previous output.
    """

    def __init__(self):
        self._scopes: list[_MarkScope] = []

    def walk(
        self,
        nodes: Sequence[Node],
        input_map: dict[str, str | None] | None = None
    ) -> Node | None:
        """Mark references in `nodes` as one scope; returns the last output supplier."""
        entry_previous = self._scopes[-1].previous if self._scopes else None
        scope = _MarkScope(
            declared=declared_names(nodes),
            input_map=dict(input_map or {}),
            entry_previous=entry_previous,
        )
        self._scopes.append(scope)
        try:
            for node in nodes:
                supplier = node.mark_references(self)
                if supplier is not None:
                    scope.previous = supplier
        finally:
            self._scopes.pop()
        return scope.previous

    def mark(self, reference: str | None) -> None:
        if reference is None:
            node = self._scopes[-1].previous
        else:
            node = self._owner(reference, len(self._scopes) - 1)
        if node is not None:
            node.referenced = True

    def mark_mapped(self, placeholder_name: str) -> None:
        scope = self._scopes[-1]
        if placeholder_name not in scope.input_map:
            return
        outer_name = scope.input_map[placeholder_name]
        if outer_name is None:
            node = scope.entry_previous
        else:
            node = self._owner(outer_name, len(self._scopes) - 2)
        if node is not None:
            node.referenced = True

    def _owner(self, name: str, depth: int) -> Node | None:
        for scope in reversed(self._scopes[:depth + 1]):
            node = owner_of(scope.declared, name)
            if node is not None:
                return node
        return None


def declared_names(nodes: Sequence[Node]) -> dict[str, Node]:
    return {node.name: node for node in nodes if node.name is not None}


def owner_of(declared: dict[str, Node], name: str) -> Node | None:
    """Node in `declared` whose name, possibly plus a suffix, is `name`."""
    node = declared.get(name)
    if node is not None:
        return node

    best: str | None = None
    for declared_name in declared:
        if name.startswith(declared_name + SCOPE_SEPARATOR):
            if best is None or len(declared_name) > len(best):
                best = declared_name
    if best is None:
        return None

    candidate = declared[best]
    inner = candidate.declared_children()
    if inner:
        inner_owner = owner_of(inner, name[len(best) + len(SCOPE_SEPARATOR):])
        if inner_owner is not None:
            return inner_owner
    return candidate
