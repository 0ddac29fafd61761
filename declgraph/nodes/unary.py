"""Single-input nodes: element-wise math, activations, trigonometry and statistics."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

import jax
import jax.numpy as jnp
import jax.scipy.special as special

from declgraph.graph.node import Node, UnaryNode, elementwise

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph


# ============================================================================
# Element-wise math
# ============================================================================

class Absolute(UnaryNode):
    operation = elementwise(jnp.abs)


class Negative(UnaryNode):
    operation = elementwise(jnp.negative)


class Square(UnaryNode):
    operation = elementwise(jnp.square)


class SquareRoot(UnaryNode):
    operation = elementwise(jnp.sqrt)


class Exponent(UnaryNode):
    operation = elementwise(jnp.exp)


class Base10Exponent(UnaryNode):
    operation = elementwise(lambda x: jnp.power(10.0, x))


class Base2Exponent(UnaryNode):
    operation = elementwise(jnp.exp2)


class Logarithm(UnaryNode):
    operation = elementwise(jnp.log)


class Base10Logarithm(UnaryNode):
    operation = elementwise(jnp.log10)


class Base2Logarithm(UnaryNode):
    operation = elementwise(jnp.log2)


class Ceiling(UnaryNode):
    operation = elementwise(jnp.ceil)


class Floor(UnaryNode):
    operation = elementwise(jnp.floor)


class Round(UnaryNode):
    """Round half to even."""
    operation = elementwise(jnp.round)


class Truncate(UnaryNode):
    operation = elementwise(jnp.trunc)


class Sign(UnaryNode):
    operation = elementwise(jnp.sign)


class Reciprocal(UnaryNode):
    operation = elementwise(jnp.reciprocal)


class ReciprocalSquareRoot(UnaryNode):
    operation = elementwise(jax.lax.rsqrt)


class ErrorFunction(UnaryNode):
    operation = elementwise(special.erf)


class IsFinite(UnaryNode):
    operation = elementwise(jnp.isfinite)


class IsInfinite(UnaryNode):
    operation = elementwise(jnp.isinf)


class IsNaN(UnaryNode):
    operation = elementwise(jnp.isnan)


class Identity(UnaryNode):
    """Copy of the input under a new name."""
    operation = elementwise(lambda x: x)


# ============================================================================
# Trigonometry
# ============================================================================

class Sine(UnaryNode):
    operation = elementwise(jnp.sin)


class Cosine(UnaryNode):
    operation = elementwise(jnp.cos)


class Tangent(UnaryNode):
    operation = elementwise(jnp.tan)


class ArcSine(UnaryNode):
    operation = elementwise(jnp.arcsin)


class ArcCosine(UnaryNode):
    operation = elementwise(jnp.arccos)


class ArcTangent(UnaryNode):
    operation = elementwise(jnp.arctan)


class HyperbolicSine(UnaryNode):
    operation = elementwise(jnp.sinh)


class HyperbolicCosine(UnaryNode):
    operation = elementwise(jnp.cosh)


class HyperbolicTangent(UnaryNode):
    operation = elementwise(jnp.tanh)


class Tanh(HyperbolicTangent):
    """Tanh activation (HyperbolicTangent under its activation name)."""


# ============================================================================
# Activations
# ============================================================================

class ReLU(UnaryNode):
    operation = elementwise(jax.nn.relu)


class Sigmoid(UnaryNode):
    operation = elementwise(jax.nn.sigmoid)


class LeakyReLU(Node):
    """Leaky ReLU with a constant alpha, or alpha read from another tensor.

    Example:
        >>> LeakyReLU(alpha=0.1)
        >>> LeakyReLU("x", alpha_tensor="alpha", name="activated")
    """

    def __init__(
        self,
        input_name: str | None = None,
        alpha: float = 0.01,
        alpha_tensor: str | None = None,
        alpha_from_tensor: bool = False,
        name: str | None = None
    ):
        super().__init__(name)
        self.input_name = input_name
        self.alpha = alpha
        self.alpha_tensor = alpha_tensor
        self.alpha_from_tensor = alpha_from_tensor or alpha_tensor is not None

    def input_references(self) -> list[str | None]:
        if self.alpha_from_tensor:
            return [self.input_name, self.alpha_tensor]
        return [self.input_name]

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        full_name = graph.full_name(self.name)
        if self.alpha_from_tensor:
            alpha = graph.resolve(self.alpha_tensor)
            return [graph.program.apply(
                lambda v, a: jnp.where(v >= 0, v, a * v), [x, alpha], name=full_name
            )]
        alpha = self.alpha
        return [graph.program.apply(
            lambda v: jax.nn.leaky_relu(v, negative_slope=alpha), [x], name=full_name
        )]


class SoftMax(UnaryNode):
    """Softmax along one axis (default: the last)."""

    def __init__(self, input_name: str | None = None, axis: int = -1, name: str | None = None):
        super().__init__(input_name, name)
        self.axis = axis

    def operation(self, x: Any) -> Any:
        return jax.nn.softmax(x, axis=self.axis)


# ============================================================================
# Statistics
# ============================================================================

class Mean(UnaryNode):
    """Mean over `axes`, keeping the reduced axes with size 1."""

    def __init__(self, input_name: str | None = None, axes: Sequence[int] = (0,), name: str | None = None):
        super().__init__(input_name, name)
        self.axes = tuple(axes)

    def operation(self, x: Any) -> Any:
        return jnp.mean(x, axis=self.axes, keepdims=True)


class Variance(Node):
    """Population variance over `axes`, optionally around a precomputed mean.

    Args:
        input_name: Input tensor (None = previous output)
        axes: Axes to reduce; the reduced axes are kept with size 1
        mean_tensor: Name of a tensor holding the mean (None with
            use_mean_tensor = previous output)
        use_mean_tensor: Read the mean from mean_tensor instead of computing it
        name: Node name
    """

    def __init__(
        self,
        input_name: str | None = None,
        axes: Sequence[int] = (0,),
        mean_tensor: str | None = None,
        use_mean_tensor: bool = False,
        name: str | None = None
    ):
        super().__init__(name)
        self.input_name = input_name
        self.axes = tuple(axes)
        self.mean_tensor = mean_tensor
        self.use_mean_tensor = use_mean_tensor or mean_tensor is not None

    def input_references(self) -> list[str | None]:
        if self.use_mean_tensor:
            return [self.input_name, self.mean_tensor]
        return [self.input_name]

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axes = self.axes
        full_name = graph.full_name(self.name)
        if self.use_mean_tensor:
            mean = graph.resolve(self.mean_tensor)
            return [graph.program.apply(
                lambda v, m: jnp.mean(jnp.square(v - m), axis=axes, keepdims=True),
                [x, mean],
                name=full_name,
            )]
        return [graph.program.apply(
            lambda v: jnp.var(v, axis=axes, keepdims=True), [x], name=full_name
        )]
