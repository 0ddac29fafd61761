"""Two-dimensional convolution and pooling.

Images are [H, W] or [H, W, C] per sample; batch graphs add the leading batch
dimension and a 4D input is always read as [N, H, W, C]. Convolution filters
are [KH, KW, C_in, C_out].
"""

from __future__ import annotations

import enum
from typing import TYPE_CHECKING, Any, Sequence

import jax
import jax.numpy as jnp

from declgraph.data.types import ParameterRange, without_batch_dimension
from declgraph.errors import InputShapeError, InvalidValueError
from declgraph.graph.node import BinaryNode, UnaryNode
from declgraph.nodes.layers import ActivationFunction, Layer, LayerOutputs
from declgraph.nodes.leaf import Variable

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph


class Padding(enum.Enum):
    SAME = "SAME"
    VALID = "VALID"


class PoolingFunction(enum.Enum):
    MAX = "max"
    AVERAGE = "average"
    MIN = "min"


# ============================================================================
# Image layout
# ============================================================================

def _image_layout(
    shape: tuple[int, ...],
    batch_graph: bool,
    extra_dimension_is_batch: bool = False
) -> tuple[bool, bool]:
    """(batched, has_channels) for an image tensor of the given shape."""
    sample = without_batch_dimension(shape, batch_graph)
    batched = len(sample) != len(shape)
    if not batched and (len(sample) == 4 or (len(sample) == 3 and extra_dimension_is_batch)):
        batched, sample = True, sample[1:]
    if len(sample) not in (2, 3):
        raise InputShapeError(
            f"Image input must be [H, W] or [H, W, C] per sample, got {list(shape)}"
        )
    return batched, len(sample) == 3


def _to_nhwc(v: Any, batched: bool, channels: bool) -> Any:
    if not batched:
        v = v[None]
    if not channels:
        v = v[..., None]
    return v


def _pair(value: int | Sequence[int]) -> tuple[int, int]:
    if isinstance(value, int):
        return value, value
    first, second = value
    return int(first), int(second)


def _extreme(dtype: Any, highest: bool) -> Any:
    if jnp.issubdtype(dtype, jnp.floating):
        return jnp.array(jnp.inf if highest else -jnp.inf, dtype)
    info = jnp.iinfo(dtype)
    return jnp.array(info.max if highest else info.min, dtype)


def _pool(v, function: PoolingFunction, window, strides, padding: Padding):
    """Pool an NHWC array over H and W."""
    window = (1,) + window + (1,)
    strides = (1,) + strides + (1,)
    if function == PoolingFunction.MAX:
        return jax.lax.reduce_window(v, _extreme(v.dtype, False), jax.lax.max, window, strides, padding.value)
    if function == PoolingFunction.MIN:
        return jax.lax.reduce_window(v, _extreme(v.dtype, True), jax.lax.min, window, strides, padding.value)
    zero = jnp.array(0, v.dtype)
    total = jax.lax.reduce_window(v, zero, jax.lax.add, window, strides, padding.value)
    count = jax.lax.reduce_window(jnp.ones_like(v), zero, jax.lax.add, window, strides, padding.value)
    return total / count


def _pooled(graph, x, function, window, strides, padding, extra_dimension_is_batch, name):
    batched, channels = _image_layout(x.shape, graph.batch_graph, extra_dimension_is_batch)

    def pool(v):
        out = _pool(_to_nhwc(v, batched, channels), function, window, strides, padding)
        if not channels:
            out = out[..., 0]
        return out if batched else out[0]

    return graph.program.apply(pool, [x], name=name)


# ============================================================================
# Operations
# ============================================================================

class Convolution2D(BinaryNode):
    """Convolve an image with a filter tensor [KH, KW, C_in, C_out].

    The result keeps the input's batch layout and always has a trailing
    filter dimension: [H', W', C_out] or [N, H', W', C_out].

    Example:
        >>> Variable.random_uniform([3, 3, 1, 8], ParameterRange(-0.1, 0.1), name="filters")
        >>> Convolution2D("image", "filters", strides=2, padding=Padding.VALID, name="features")
    """

    def __init__(
        self,
        input_name: str | None = None,
        weights: str | None = None,
        strides: int | Sequence[int] = 1,
        padding: Padding = Padding.SAME,
        dilation: int | Sequence[int] = 1,
        name: str | None = None
    ):
        super().__init__(input_name, weights, name)
        self.strides = _pair(strides)
        self.padding = padding
        self.dilation = _pair(dilation)
        if min(self.strides + self.dilation) < 1:
            self.fail(InvalidValueError(
                f"Convolution strides {self.strides} and dilation {self.dilation} must be positive"
            ))

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.first_input)
        w = graph.resolve(self.second_input)
        batched, channels = _image_layout(x.shape, graph.batch_graph)
        in_channels = x.shape[-1] if channels else 1
        if w.rank != 4 or w.shape[2] != in_channels:
            raise InputShapeError(
                f"Convolution filters must be [KH, KW, {in_channels}, C_out], got {list(w.shape)}"
            )
        strides, padding, dilation = self.strides, self.padding.value, self.dilation

        def convolve(v, f):
            out = jax.lax.conv_general_dilated(
                _to_nhwc(v, batched, channels), f, strides, padding,
                rhs_dilation=dilation, dimension_numbers=("NHWC", "HWIO", "NHWC"),
            )
            return out if batched else out[0]

        return [graph.program.apply(convolve, [x, w], name=graph.full_name(self.name))]


class MaxPooling2D(UnaryNode):
    """Maximum over windows of the image; strides default to the kernel size."""

    def __init__(
        self,
        input_name: str | None = None,
        kernel_size: int | Sequence[int] = 2,
        strides: int | Sequence[int] | None = None,
        padding: Padding = Padding.VALID,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.kernel_size = _pair(kernel_size)
        self.strides = self.kernel_size if strides is None else _pair(strides)
        self.padding = padding
        if min(self.kernel_size + self.strides) < 1:
            self.fail(InvalidValueError(
                f"Pooling kernel {self.kernel_size} and strides {self.strides} must be positive"
            ))

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        return [_pooled(graph, x, PoolingFunction.MAX, self.kernel_size, self.strides, self.padding,
                        False, graph.full_name(self.name))]


# ============================================================================
# Layers
# ============================================================================

class PoolingLayer(UnaryNode):
    """Max, average or min pooling that keeps the input layout.

    Defaults to stride 1 with SAME padding, so the spatial size is unchanged.
    Averages count only the elements inside the image.

    Example:
        >>> PoolingLayer(PoolingFunction.AVERAGE, kernel_height=3, kernel_width=3, name="blur")
        ...     .extra_dimension_is_batch()
    """

    def __init__(
        self,
        function: PoolingFunction = PoolingFunction.MAX,
        input_name: str | None = None,
        kernel_height: int = 2,
        kernel_width: int = 2,
        strides: int | Sequence[int] = 1,
        padding: Padding = Padding.SAME,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.function = function
        self.kernel_size = (kernel_height, kernel_width)
        self.strides = _pair(strides)
        self.padding = padding
        self.treat_extra_dimension_as_batch = False
        if min(self.kernel_size + self.strides) < 1:
            self.fail(InvalidValueError(
                f"Pooling kernel {self.kernel_size} and strides {self.strides} must be positive"
            ))

    def extra_dimension_is_batch(self) -> PoolingLayer:
        """Read a 3D input as [N, H, W] instead of [H, W, C]."""
        self.treat_extra_dimension_as_batch = True
        return self

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        return [_pooled(graph, x, self.function, self.kernel_size, self.strides, self.padding,
                        self.treat_extra_dimension_as_batch, graph.full_name(self.name))]


class ConvolutionLayer(Layer):
    """Convolution with learned filters, optional biases and an activation.

    Emits `_weights` [KH, KW, C, F] and `_biases` [F]. The result puts the
    filter dimension first ([F, H, W] per sample) unless
    leave_filter_dimension_last() is used; with a single filter the filter
    dimension is dropped.
    """

    def __init__(
        self,
        input_name: str | None = None,
        kernel_height: int = 3,
        kernel_width: int = 3,
        num_filters: int = 1,
        strides: int | Sequence[int] = 1,
        padding: Padding = Padding.SAME,
        activation: ActivationFunction = ActivationFunction.NONE,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.kernel_size = (kernel_height, kernel_width)
        self.num_filters = num_filters
        self.strides = _pair(strides)
        self.padding = padding
        self.activation = activation
        self.use_bias = True
        self.filter_dimension_last = False
        self.weight_range = ParameterRange(-0.5, 0.5)
        self.bias_range = ParameterRange(-0.5, 0.5)
        if num_filters < 1 or min(self.kernel_size + self.strides) < 1:
            self.fail(InvalidValueError(
                f"Convolution needs positive kernel, strides and filter count, got "
                f"{self.kernel_size}, {self.strides}, {num_filters}"
            ))

    def no_bias_term(self) -> ConvolutionLayer:
        self.use_bias = False
        return self

    def leave_filter_dimension_last(self) -> ConvolutionLayer:
        self.filter_dimension_last = True
        return self

    def weight_initial_range(self, minimum: float, maximum: float) -> ConvolutionLayer:
        try:
            self.weight_range = ParameterRange(minimum, maximum)
        except InvalidValueError as err:
            self.fail(err)
        return self

    def bias_initial_range(self, minimum: float, maximum: float) -> ConvolutionLayer:
        try:
            self.bias_range = ParameterRange(minimum, maximum)
        except InvalidValueError as err:
            self.fail(err)
        return self

    def input_references(self) -> list[str | None]:
        refs = [self.input_name]
        if self.activation.alpha_tensor is not None:
            refs.append(self.activation.alpha_tensor)
        return refs

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        full_name = graph.full_name(self.name)
        program = graph.program
        outputs = LayerOutputs()
        batched, channels = _image_layout(x.shape, graph.batch_graph)
        in_channels = x.shape[-1] if channels else 1

        weights = outputs.add(self._variable(graph, Variable.random_uniform(
            [*self.kernel_size, in_channels, self.num_filters], self.weight_range,
            name=self.name + "_weights",
        )), "_weights")
        biases = None
        if self.use_bias:
            biases = outputs.add(self._variable(graph, Variable.random_uniform(
                [self.num_filters], self.bias_range, name=self.name + "_biases"
            )), "_biases")

        place = self.num_filters == 1 or not self.filter_dimension_last
        activate = not self.activation.is_none
        strides, padding = self.strides, self.padding.value

        def convolve(v, f):
            out = jax.lax.conv_general_dilated(
                _to_nhwc(v, batched, channels), f, strides, padding,
                dimension_numbers=("NHWC", "HWIO", "NHWC"),
            )
            return out if batched else out[0]

        suffix = "_convolution" if biases is not None or activate or place else ""
        result = outputs.add(
            program.apply(convolve, [x, weights], name=full_name + suffix), suffix, target=not suffix
        )

        if biases is not None:
            suffix = "_biasAdded" if activate or place else ""
            result = outputs.add(
                program.apply(jnp.add, [result, biases], name=full_name + suffix), suffix, target=not suffix
            )

        if activate:
            suffix = "_activation" if place else ""
            result = outputs.add(
                self.activation.apply(graph, result, full_name + suffix), suffix, target=not suffix
            )

        if place:
            if self.num_filters == 1:
                def placed(v):
                    return v[..., 0]
            else:
                axis = 1 if batched else 0

                def placed(v):
                    return jnp.moveaxis(v, -1, axis)
            result = outputs.add(program.apply(placed, [result], name=full_name), "", target=True)

        return self._finish(outputs, result)
