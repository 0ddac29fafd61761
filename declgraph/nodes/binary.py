"""Two-input nodes: arithmetic, comparisons, logic and matrix multiplication."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import jax.numpy as jnp

from declgraph.errors import InputShapeError
from declgraph.graph.node import BinaryNode, UnaryNode, elementwise

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph


# ============================================================================
# Arithmetic
# ============================================================================

class Addition(BinaryNode):
    operation = elementwise(jnp.add)


class Subtraction(BinaryNode):
    operation = elementwise(jnp.subtract)


class Multiplication(BinaryNode):
    operation = elementwise(jnp.multiply)


class Division(BinaryNode):
    """Element-wise division; with no_nans a zero divisor gives zero."""

    def __init__(
        self,
        first_input: str | None = None,
        second_input: str | None = None,
        name: str | None = None,
        no_nans: bool = False
    ):
        super().__init__(first_input, second_input, name)
        self.no_nans = no_nans

    def operation(self, a: Any, b: Any) -> Any:
        if self.no_nans:
            safe = jnp.where(b == 0, jnp.ones_like(b), b)
            return jnp.where(b == 0, jnp.zeros_like(a / safe), a / safe)
        return a / b


class Power(BinaryNode):
    operation = elementwise(jnp.power)


class Modulo(BinaryNode):
    """Truncated remainder (sign of the dividend)."""
    operation = elementwise(jnp.fmod)


class FloorModulo(BinaryNode):
    """Floored remainder (sign of the divisor)."""
    operation = elementwise(jnp.mod)


class ArcTangent2(BinaryNode):
    operation = elementwise(jnp.arctan2)


class Maximum(BinaryNode):
    """Element-wise maximum; NaNs are ignored unless propagate_nans is set."""

    def __init__(
        self,
        first_input: str | None = None,
        second_input: str | None = None,
        propagate_nans: bool = False,
        name: str | None = None
    ):
        super().__init__(first_input, second_input, name)
        self.propagate_nans = propagate_nans

    def operation(self, a: Any, b: Any) -> Any:
        return jnp.maximum(a, b) if self.propagate_nans else jnp.fmax(a, b)


class Minimum(BinaryNode):
    """Element-wise minimum; NaNs are ignored unless propagate_nans is set."""

    def __init__(
        self,
        first_input: str | None = None,
        second_input: str | None = None,
        propagate_nans: bool = False,
        name: str | None = None
    ):
        super().__init__(first_input, second_input, name)
        self.propagate_nans = propagate_nans

    def operation(self, a: Any, b: Any) -> Any:
        return jnp.minimum(a, b) if self.propagate_nans else jnp.fmin(a, b)


class MatrixMultiplication(BinaryNode):
    """Matrix product of `primary` and `secondary` (batched over leading axes).

    Example:
        >>> MatrixMultiplication("inputs", "weights", name="product")
    """

    def __init__(
        self,
        primary: str | None = None,
        secondary: str | None = None,
        name: str | None = None
    ):
        super().__init__(primary, secondary, name)

    def operation(self, a: Any, b: Any) -> Any:
        return jnp.matmul(a, b)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        primary = graph.resolve(self.first_input)
        secondary = graph.resolve(self.second_input)
        if primary.rank in (1, 2) and secondary.rank == 2:
            if primary.shape[-1] != secondary.shape[0]:
                raise InputShapeError(
                    "Matrix multiplication requires the inner dimensions of the two tensors to match."
                )
        return [graph.program.apply(self.operation, [primary, secondary], name=graph.full_name(self.name))]


# ============================================================================
# Comparisons (boolean results)
# ============================================================================

class Equal(BinaryNode):
    operation = elementwise(jnp.equal)


class NotEqual(BinaryNode):
    operation = elementwise(jnp.not_equal)


class GreaterThan(BinaryNode):
    operation = elementwise(jnp.greater)


class GreaterThanOrEqualTo(BinaryNode):
    operation = elementwise(jnp.greater_equal)


class LessThan(BinaryNode):
    operation = elementwise(jnp.less)


class LessThanOrEqualTo(BinaryNode):
    operation = elementwise(jnp.less_equal)


# ============================================================================
# Logic
# ============================================================================

class LogicalAND(BinaryNode):
    operation = elementwise(jnp.logical_and)


class LogicalOR(BinaryNode):
    operation = elementwise(jnp.logical_or)


class LogicalXOR(BinaryNode):
    operation = elementwise(jnp.logical_xor)


class LogicalNAND(BinaryNode):
    operation = elementwise(lambda a, b: jnp.logical_not(jnp.logical_and(a, b)))


class LogicalNOR(BinaryNode):
    operation = elementwise(lambda a, b: jnp.logical_not(jnp.logical_or(a, b)))


class LogicalXNOR(BinaryNode):
    operation = elementwise(lambda a, b: jnp.logical_not(jnp.logical_xor(a, b)))


class NOT(UnaryNode):
    operation = elementwise(jnp.logical_not)
