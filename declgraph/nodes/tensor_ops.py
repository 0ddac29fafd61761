"""Shape and layout nodes: reshape, transpose, reductions, top-k, concatenation, casts."""

from __future__ import annotations

import enum
import math
from typing import TYPE_CHECKING, Any, Sequence

import jax
import jax.numpy as jnp

from declgraph.data.types import MAX_SUPPORTED_DIMENSIONS, DataType, TensorShape, with_batch_dimension
from declgraph.errors import (
    DoesNotContainDimensionError,
    EntryRequiredForEachDimensionError,
    InputShapeError,
    InvalidValueError,
    MultipleDimensionsNotSupportedError,
    NaNPropagationNotSupportedError,
)
from declgraph.graph.node import Node, UnaryNode

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph


def _check_axis(axis: int, rank: int) -> int:
    """Normalise a possibly negative axis, raising when it is out of range."""
    if not -rank <= axis < rank:
        raise DoesNotContainDimensionError(axis, rank)
    return axis % rank


class Reshape(UnaryNode):
    """Reshape to `shape`; batch graphs prepend the batch dimension.

    Example:
        >>> Reshape(shape=[4, 2], name="matrix")
        >>> Reshape("features", shape=[8], name="flat").batch_exempt()
    """

    def __init__(self, input_name: str | None = None, shape: Sequence[int] = (), name: str | None = None):
        super().__init__(input_name, name)
        self.shape = TensorShape(shape)
        self.is_batch_exempt = False

    def batch_exempt(self) -> Reshape:
        """Use the declared shape as-is in batch graphs."""
        self.is_batch_exempt = True
        return self

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        shape = with_batch_dimension(
            self.shape, graph.batch_graph and not self.is_batch_exempt, graph.batch_size
        )
        if math.prod(x.shape) != math.prod(shape):
            raise InputShapeError("Number of elements in input tensor shape and new shape must equal")
        return [graph.program.apply(
            lambda v: jnp.reshape(v, shape), [x], name=graph.full_name(self.name)
        )]


class Flatten2D(UnaryNode):
    """Collapse to a matrix: axes before `axis` form the rows, the rest the columns."""

    def __init__(self, input_name: str | None = None, axis: int = 1, name: str | None = None):
        super().__init__(input_name, name)
        self.axis = axis

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        if not 0 <= self.axis <= x.rank:
            raise DoesNotContainDimensionError(self.axis, x.rank)
        shape = (math.prod(x.shape[:self.axis]), math.prod(x.shape[self.axis:]))
        return [graph.program.apply(
            lambda v: jnp.reshape(v, shape), [x], name=graph.full_name(self.name)
        )]


class Transpose(UnaryNode):
    """Swap two axes (default 0 and 1) or apply a full permutation.

    Args:
        input_name: Input tensor (None = previous output)
        swap: Pair of axes to exchange
        permutation: New order of every axis (one entry per axis)
        name: Node name
    """

    def __init__(
        self,
        input_name: str | None = None,
        swap: tuple[int, int] | None = None,
        permutation: Sequence[int] | None = None,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.swap = swap
        self.permutation = None if permutation is None else tuple(permutation)
        if swap is not None and permutation is not None:
            self.fail(InvalidValueError("Transpose takes either a swap pair or a permutation, not both"))

    def _permutation(self, rank: int) -> tuple[int, ...]:
        if rank > MAX_SUPPORTED_DIMENSIONS:
            raise InputShapeError(
                f"Transpose supports at most {MAX_SUPPORTED_DIMENSIONS} dimensions, got {rank}"
            )
        if rank < 2:
            raise InputShapeError("Transpose of a vector is not supported")
        if self.permutation is not None:
            if sorted(self.permutation) != list(range(rank)):
                raise EntryRequiredForEachDimensionError("transpose permutation")
            return self.permutation
        if self.swap is None:
            if rank > 2:
                raise InputShapeError("Transpose of a tensor above rank 2 needs the axes to swap")
            first, second = 0, 1
        else:
            first, second = (_check_axis(axis, rank) for axis in self.swap)
        order = list(range(rank))
        order[first], order[second] = order[second], order[first]
        return tuple(order)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        order = self._permutation(x.rank)
        return [graph.program.apply(
            lambda v: jnp.transpose(v, order), [x], name=graph.full_name(self.name)
        )]


# ============================================================================
# Reductions
# ============================================================================

class ReductionOperation(enum.Enum):
    SUM = "sum"
    MEAN = "mean"
    PRODUCT = "product"
    MAXIMUM = "maximum"
    MINIMUM = "minimum"
    ARG_MAXIMUM = "argMaximum"
    ARG_MINIMUM = "argMinimum"
    AND = "and"
    OR = "or"


_ARG_REDUCTIONS = (ReductionOperation.ARG_MAXIMUM, ReductionOperation.ARG_MINIMUM)
_NAN_REDUCTIONS = (ReductionOperation.MAXIMUM, ReductionOperation.MINIMUM)


class Reduction(UnaryNode):
    """Reduce over one axis or several; reduced axes are kept with size 1.

    Maximum and minimum skip NaNs unless propagate_nans is set; no other
    operation accepts propagate_nans. Arg reductions work on a single axis.

    Example:
        >>> Reduction(operation=ReductionOperation.SUM, axis=0, name="total")
        >>> Reduction(operation=ReductionOperation.MAXIMUM, axes=[0, 1], propagate_nans=True)
    """

    def __init__(
        self,
        input_name: str | None = None,
        operation: ReductionOperation = ReductionOperation.SUM,
        axis: int | None = None,
        axes: Sequence[int] | None = None,
        propagate_nans: bool = False,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.reduction = operation
        self.axes = (0 if axis is None else axis,) if axes is None else tuple(axes)
        self.propagate_nans = propagate_nans

        if axes is not None and operation in _ARG_REDUCTIONS:
            self.fail(MultipleDimensionsNotSupportedError(operation.value))
        if propagate_nans and operation not in _NAN_REDUCTIONS:
            self.fail(NaNPropagationNotSupportedError(operation.value))

    def _reduce(self, v: Any, axes: tuple[int, ...]) -> Any:
        op = self.reduction
        if op == ReductionOperation.SUM:
            return jnp.sum(v, axis=axes, keepdims=True)
        if op == ReductionOperation.MEAN:
            return jnp.mean(v, axis=axes, keepdims=True)
        if op == ReductionOperation.PRODUCT:
            return jnp.prod(v, axis=axes, keepdims=True)
        if op == ReductionOperation.MAXIMUM:
            reduce = jnp.max if self.propagate_nans else jnp.nanmax
            return reduce(v, axis=axes, keepdims=True)
        if op == ReductionOperation.MINIMUM:
            reduce = jnp.min if self.propagate_nans else jnp.nanmin
            return reduce(v, axis=axes, keepdims=True)
        if op == ReductionOperation.ARG_MAXIMUM:
            return jnp.argmax(v, axis=axes[0], keepdims=True).astype(jnp.int32)
        if op == ReductionOperation.ARG_MINIMUM:
            return jnp.argmin(v, axis=axes[0], keepdims=True).astype(jnp.int32)
        if op == ReductionOperation.AND:
            return jnp.all(v, axis=axes, keepdims=True)
        return jnp.any(v, axis=axes, keepdims=True)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axes = tuple(_check_axis(axis, x.rank) for axis in self.axes)
        return [graph.program.apply(
            lambda v: self._reduce(v, axes), [x], name=graph.full_name(self.name)
        )]


class TopK(UnaryNode):
    """The k largest values along an axis and their indices.

    Emits `<name>_values` and `<name>_indices`; only the values are targets
    unless `target_indices` says otherwise.
    """

    def __init__(
        self,
        input_name: str | None = None,
        k: int = 1,
        axis: int = -1,
        target_indices: Sequence[int] = (0,),
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.k = k
        self.axis = axis
        self._target_indices = list(target_indices)
        if k < 1:
            self.fail(InvalidValueError(f"TopK needs k >= 1, got {k}"))

    def output_suffixes(self) -> list[str]:
        return ["_values", "_indices"]

    def target_indices(self) -> list[int] | None:
        return self._target_indices

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axis = _check_axis(self.axis, x.rank)
        if self.k > x.shape[axis]:
            raise InputShapeError(f"TopK k={self.k} exceeds axis {axis} of size {x.shape[axis]}")
        k = self.k

        def top_k(v):
            moved = jnp.moveaxis(v, axis, -1)
            values, indices = jax.lax.top_k(moved, k)
            return jnp.moveaxis(values, -1, axis), jnp.moveaxis(indices, -1, axis).astype(jnp.int32)

        return graph.program.apply_multi(top_k, [x], 2, name=graph.full_name(self.name))


# ============================================================================
# Joining and splitting
# ============================================================================

class Concatenate(Node):
    """Join tensors along an existing axis.

    Example:
        >>> Concatenate(["left", "right"], axis=1, name="joined")
    """

    def __init__(self, inputs: Sequence[str | None], axis: int = 0, name: str | None = None):
        super().__init__(name)
        self.inputs = list(inputs)
        self.axis = axis

    def input_references(self) -> list[str | None]:
        return list(self.inputs)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        tensors = [graph.resolve(name) for name in self.inputs]
        for tensor in tensors:
            _check_axis(self.axis, tensor.rank)
        axis = self.axis
        return [graph.program.apply(
            lambda *vs: jnp.concatenate(vs, axis=axis), tensors, name=graph.full_name(self.name)
        )]


class Stack(Node):
    """Stack same-shaped tensors along a new axis."""

    def __init__(self, inputs: Sequence[str | None], axis: int = 0, name: str | None = None):
        super().__init__(name)
        self.inputs = list(inputs)
        self.axis = axis

    def input_references(self) -> list[str | None]:
        return list(self.inputs)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        tensors = [graph.resolve(name) for name in self.inputs]
        for tensor in tensors:
            _check_axis(self.axis, tensor.rank + 1)
        axis = self.axis
        return [graph.program.apply(
            lambda *vs: jnp.stack(vs, axis=axis), tensors, name=graph.full_name(self.name)
        )]


class Split(UnaryNode):
    """Split along an axis into equal parts or parts of the given sizes.

    Parts are named `<name>_1`, `<name>_2`, ...
    """

    def __init__(
        self,
        input_name: str | None = None,
        axis: int = 0,
        number_of_splits: int | None = None,
        split_sizes: Sequence[int] | None = None,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.axis = axis
        self.number_of_splits = number_of_splits
        self.split_sizes = None if split_sizes is None else list(split_sizes)
        self._suffixes: list[str] = []
        if (number_of_splits is None) == (split_sizes is None):
            self.fail(InvalidValueError("Split needs either number_of_splits or split_sizes"))
        elif number_of_splits is not None and number_of_splits < 1:
            self.fail(InvalidValueError(f"Split needs at least one part, got {number_of_splits}"))
        elif split_sizes is not None and any(s < 1 for s in self.split_sizes):
            self.fail(InvalidValueError(f"Split sizes must all be positive, got {self.split_sizes}"))

    def output_suffixes(self) -> list[str]:
        return self._suffixes

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axis = _check_axis(self.axis, x.rank)
        size = x.shape[axis]
        if self.split_sizes is not None:
            if sum(self.split_sizes) != size:
                raise InputShapeError(f"Split sizes {self.split_sizes} do not add up to {size}")
            sizes = self.split_sizes
        else:
            parts = self.number_of_splits
            if parts > size or size % parts:
                raise InputShapeError(f"Cannot split axis of size {size} into {parts} equal parts")
            sizes = [size // parts] * parts

        boundaries = [sum(sizes[:i]) for i in range(1, len(sizes))]
        self._suffixes = [f"_{i + 1}" for i in range(len(sizes))]
        return graph.program.apply_multi(
            lambda v: tuple(jnp.split(v, boundaries, axis=axis)),
            [x],
            len(sizes),
            name=graph.full_name(self.name),
        )


class ExpandDimension(UnaryNode):
    """Insert a size-1 axis."""

    def __init__(self, input_name: str | None = None, axis: int = 0, name: str | None = None):
        super().__init__(input_name, name)
        self.axis = axis

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axis = _check_axis(self.axis, x.rank + 1)
        return [graph.program.apply(
            lambda v: jnp.expand_dims(v, axis), [x], name=graph.full_name(self.name)
        )]


class Squeeze(UnaryNode):
    """Remove size-1 axes (all of them, or the listed ones)."""

    def __init__(self, input_name: str | None = None, axes: Sequence[int] | None = None, name: str | None = None):
        super().__init__(input_name, name)
        self.axes = None if axes is None else tuple(axes)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        axes = self.axes
        if axes is not None:
            axes = tuple(_check_axis(axis, x.rank) for axis in axes)
            if any(x.shape[axis] != 1 for axis in axes):
                raise InputShapeError(f"Squeeze axes {list(axes)} are not all of size 1 in {list(x.shape)}")
        return [graph.program.apply(
            lambda v: jnp.squeeze(v, axis=axes), [x], name=graph.full_name(self.name)
        )]


# ============================================================================
# Element types
# ============================================================================

class Cast(UnaryNode):
    """Convert to another element type, or reinterpret the bits."""

    def __init__(
        self,
        input_name: str | None = None,
        new_type: DataType = DataType.FLOAT32,
        reinterpret: bool = False,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.new_type = new_type
        self.reinterpret = reinterpret

    def operation(self, x: Any) -> Any:
        dtype = self.new_type.numpy_dtype
        if self.reinterpret:
            return jax.lax.bitcast_convert_type(x, dtype)
        return x.astype(dtype)


class OneHot(UnaryNode):
    """One-hot encode integer indices with `depth` classes.

    Args:
        input_name: Index tensor (None = previous output)
        depth: Number of classes
        axis: Position of the new class axis (default: last)
        data_type: Element type of the result
        on_value: Value at the index position
        off_value: Value everywhere else
        name: Node name
    """

    def __init__(
        self,
        input_name: str | None = None,
        depth: int = 2,
        axis: int = -1,
        data_type: DataType = DataType.FLOAT32,
        on_value: float = 1.0,
        off_value: float = 0.0,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.depth = depth
        self.axis = axis
        self.data_type = data_type
        self.on_value = on_value
        self.off_value = off_value

    def operation(self, x: Any) -> Any:
        dtype = self.data_type.numpy_dtype
        hot = jax.nn.one_hot(x.astype(jnp.int32), self.depth, axis=self.axis, dtype=jnp.float32)
        return (hot * (self.on_value - self.off_value) + self.off_value).astype(dtype)
