"""Node: a declarative description of one step in a graph.

A node can be:
- A leaf (placeholder, constant, variable)
- An operation on one, two or three named inputs
- A layer emitting several tensors under suffixed names
- A SubGraph instance (graphs are nodes!)

Declaring a node never raises. Mistakes found at declaration time are stored
on the node and raised when the graph reaches it during construction.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Callable, Sequence

import numpy as np

from declgraph.errors import (
    BinaryShapesDontMatchError,
    DeclGraphError,
    TargetNodesMustBeNamedError,
    TernaryShapesDontMatchError,
    UnreferencedNodeError,
)

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.context import ReferenceMarker
    from declgraph.graph.graph import Graph


class Node:
    """Base class for graph nodes.

    Args:
        name: Optional name; the node's tensors are bound under it (plus the
            enclosing sub-graph prefixes and any output suffix)

    Example:
        >>> node = Negative("x", name="negated").target_for_modes(["infer"])
    """

    def __init__(self, name: str | None = None):
        self.name = name
        self.target_modes: list[str] = []
        self.referenced = False
        self.build_error: DeclGraphError | None = None

    @property
    def type_name(self) -> str:
        return type(self).__name__

    @property
    def binds_outputs(self) -> bool:
        """Whether emitted tensors are bound in the symbol table and targetable."""
        return True

    def target_for_modes(self, modes: Sequence[str]) -> Node:
        """Mark this node's eligible outputs as results of the given modes."""
        if self.name is None:
            self.build_error = TargetNodesMustBeNamedError(self.type_name)
        self.target_modes = list(modes)
        return self

    def fail(self, error: DeclGraphError) -> Node:
        """Record a declaration-time error, raised when the node is emitted."""
        if self.build_error is None:
            self.build_error = error
        return self

    # ------------------------------------------------------------------
    # Emission contract
    # ------------------------------------------------------------------

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        raise NotImplementedError(f"{self.type_name} must implement resolve")

    def output_suffixes(self) -> list[str]:
        """Name suffix for each emitted tensor, in emission order."""
        return [""]

    def target_indices(self) -> list[int] | None:
        """Indices of emitted tensors that may be targets (None = all)."""
        return None

    def primary_output_index(self) -> int:
        """Index of the emitted tensor that becomes the previous output."""
        return 0

    # ------------------------------------------------------------------
    # Reference tracking
    # ------------------------------------------------------------------

    def input_references(self) -> list[str | None]:
        """Names this node reads; None stands for the previous output."""
        return []

    def mark_references(self, marker: ReferenceMarker) -> Node | None:
        """Mark the nodes this node reads; returns the node supplying its output."""
        for reference in self.input_references():
            marker.mark(reference)
        return self

    def declared_children(self) -> dict[str, Node] | None:
        """Named nodes reachable under this node's name prefix (sub-graphs only)."""
        return None

    def clear_referenced_flag(self) -> None:
        self.referenced = False

    def check_referenced(self) -> None:
        if not self.referenced and not self.target_modes:
            raise UnreferencedNodeError(self.type_name, self.name)

    def __repr__(self) -> str:
        targets = f", targets={self.target_modes}" if self.target_modes else ""
        return f"{self.type_name}(name={self.name!r}{targets})"


class UnaryNode(Node):
    """Node with one input; an omitted input reads the previous output.

    Subclasses implement `operation(x)` with jax.numpy.
    """

    def __init__(self, input_name: str | None = None, name: str | None = None):
        super().__init__(name)
        self.input_name = input_name

    def input_references(self) -> list[str | None]:
        return [self.input_name]

    def operation(self, x: Any) -> Any:
        raise NotImplementedError

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        return [graph.program.apply(self.operation, [x], name=graph.full_name(self.name))]


class BinaryNode(Node):
    """Node with two inputs, each independently defaulting to the previous output.

    Element-wise subclasses broadcast their inputs; incompatible shapes raise
    BinaryShapesDontMatchError naming both inputs.
    """

    require_equal_shapes = False

    def __init__(
        self,
        first_input: str | None = None,
        second_input: str | None = None,
        name: str | None = None
    ):
        super().__init__(name)
        self.first_input = first_input
        self.second_input = second_input

    def input_references(self) -> list[str | None]:
        return [self.first_input, self.second_input]

    def check_equal_input_shapes(self, first: SymbolicTensor, second: SymbolicTensor) -> None:
        if first.shape == second.shape:
            return
        if not self.require_equal_shapes and _broadcastable(first.shape, second.shape):
            return
        raise BinaryShapesDontMatchError(self.first_input, self.second_input)

    def resolve_inputs(self, graph: Graph) -> tuple[SymbolicTensor, SymbolicTensor]:
        first = graph.resolve(self.first_input)
        second = graph.resolve(self.second_input)
        self.check_equal_input_shapes(first, second)
        return first, second

    def operation(self, a: Any, b: Any) -> Any:
        raise NotImplementedError

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        first, second = self.resolve_inputs(graph)
        return [graph.program.apply(self.operation, [first, second], name=graph.full_name(self.name))]


class TernaryNode(Node):
    """Node with three inputs, each independently defaulting to the previous output."""

    require_equal_shapes = False

    def __init__(
        self,
        first_input: str | None = None,
        second_input: str | None = None,
        third_input: str | None = None,
        name: str | None = None
    ):
        super().__init__(name)
        self.first_input = first_input
        self.second_input = second_input
        self.third_input = third_input

    def input_references(self) -> list[str | None]:
        return [self.first_input, self.second_input, self.third_input]

    def check_equal_input_shapes(
        self,
        first: SymbolicTensor,
        second: SymbolicTensor,
        third: SymbolicTensor
    ) -> None:
        if first.shape == second.shape == third.shape:
            return
        if not self.require_equal_shapes and _broadcastable(first.shape, second.shape, third.shape):
            return
        raise TernaryShapesDontMatchError(self.first_input, self.second_input, self.third_input)

    def resolve_inputs(self, graph: Graph) -> tuple[SymbolicTensor, SymbolicTensor, SymbolicTensor]:
        first = graph.resolve(self.first_input)
        second = graph.resolve(self.second_input)
        third = graph.resolve(self.third_input)
        self.check_equal_input_shapes(first, second, third)
        return first, second, third

    def operation(self, a: Any, b: Any, c: Any) -> Any:
        raise NotImplementedError

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        inputs = self.resolve_inputs(graph)
        return [graph.program.apply(self.operation, list(inputs), name=graph.full_name(self.name))]


def _broadcastable(*shapes: tuple[int, ...]) -> bool:
    try:
        np.broadcast_shapes(*shapes)
    except ValueError:
        return False
    return True


def elementwise(fn: Callable[..., Any], doc: str | None = None) -> Callable[..., Any]:
    """Wrap a jax.numpy function as a node `operation` method."""
    def operation(self, *args):
        return fn(*args)
    operation.__name__ = getattr(fn, "__name__", "operation")
    operation.__doc__ = doc
    return operation
