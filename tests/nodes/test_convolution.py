"""Tests for convolution and pooling nodes and layers."""

from __future__ import annotations

import numpy as np
import pytest

from declgraph import (
    Constant,
    Convolution2D,
    ConvolutionLayer,
    Graph,
    Learning,
    MaxPooling2D,
    MeanSquaredErrorLoss,
    Padding,
    PlaceHolder,
    PoolingFunction,
    PoolingLayer,
    Tensor,
    Variable,
)
from declgraph.errors import InputShapeError, InvalidValueError


IMAGE = np.arange(1.0, 26.0, dtype=np.float32).reshape(5, 5)
CHANNELS = np.stack([IMAGE, IMAGE + 30.0, IMAGE + 60.0], axis=-1)
DIAGONAL = [(0, 0), (1, 1), (2, 2), (3, 3), (4, 4)]


def _image(values: np.ndarray = IMAGE) -> Constant:
    return Constant(values=Tensor.from_values(values), name="image")


def _diagonal(array: np.ndarray) -> list[float]:
    return [float(array[i, j]) for i, j in DIAGONAL]


def _ones_layer(num_filters: int = 1) -> ConvolutionLayer:
    return ConvolutionLayer(
        "image", kernel_height=3, kernel_width=3, num_filters=num_filters, name="conv"
    ).no_bias_term().weight_initial_range(1.0, 1.0)


# ============================================================================
# Test Convolution Layer
# ============================================================================

def test_single_filter_drops_filter_dimension():
    result = Graph([
        _image(),
        _ones_layer().target_for_modes(["infer"]),
    ]).run_one("infer", {})["conv"]

    assert result.shape.dimensions == (5, 5)
    np.testing.assert_allclose(_diagonal(result.array), [16.0, 63.0, 117.0, 171.0, 88.0])


def test_filter_dimension_first_unless_left_last():
    first = Graph([_image(), _ones_layer(2).target_for_modes(["infer"])]).run_one("infer", {})["conv"]
    last = Graph([
        _image(), _ones_layer(2).leave_filter_dimension_last().target_for_modes(["infer"]),
    ]).run_one("infer", {})["conv"]

    assert first.shape.dimensions == (2, 5, 5)
    assert last.shape.dimensions == (5, 5, 2)
    np.testing.assert_allclose(first.array[1], last.array[..., 1])
    assert first.array[0, 2, 2] == 117.0


def test_channels_are_summed():
    values = np.stack([IMAGE, IMAGE / 10.0], axis=-1)
    graph = Graph([_image(values), _ones_layer().target_for_modes(["infer"])])

    assert graph.context.symbols["conv_weights"].shape == (3, 3, 2, 1)
    result = graph.run_one("infer", {})["conv"].array
    np.testing.assert_allclose(_diagonal(result), [17.6, 69.3, 128.7, 188.1, 96.8], rtol=1e-5)


def test_convolution_layer_in_batch_graph():
    graph = Graph([
        PlaceHolder(shape=[5, 5, 3], name="image"),
        ConvolutionLayer("image", num_filters=4, name="conv").target_for_modes(["infer"]),
    ], batch_size=2)

    symbols = graph.context.symbols
    assert symbols["conv_weights"].shape == (3, 3, 3, 4)
    assert symbols["conv_convolution"].shape == (2, 5, 5, 4)
    assert symbols["conv_biasAdded"].shape == (2, 5, 5, 4)
    assert symbols["conv"].shape == (2, 4, 5, 5)


def test_convolution_layer_learns():
    graph = Graph([
        PlaceHolder(shape=[5, 5], name="image"),
        PlaceHolder(shape=[5, 5], modes=["train"], name="expected"),
        ConvolutionLayer("image", name="conv").learn_with_respect_to("loss"),
        MeanSquaredErrorLoss("expected", "conv", name="loss").target_for_modes(["train"]),
        Learning(learning_rate=0.01, learning_modes=["train"]),
    ])

    assert {v.name for v in graph.learning_variables} == {"conv_weights", "conv_biases"}
    feeds = {"image": IMAGE / 25.0, "expected": np.zeros((5, 5), np.float32)}
    losses = [float(graph.run_one("train", feeds)["loss"].array.sum()) for _ in range(20)]
    assert losses[-1] < losses[0]


def test_convolution_layer_parameters_checked():
    with pytest.raises(InvalidValueError):
        Graph([_image(), ConvolutionLayer("image", num_filters=0, name="conv").target_for_modes(["infer"])])


# ============================================================================
# Test Convolution2D
# ============================================================================

def test_convolution_with_strides_and_valid_padding():
    graph = Graph([
        _image(),
        Variable.constant(1.0, shape=[3, 3, 1, 1], name="filters"),
        Convolution2D("image", "filters", strides=2, padding=Padding.VALID, name="features")
        .target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {})["features"].array
    assert result.shape == (2, 2, 1)
    np.testing.assert_allclose(result[..., 0], [[63.0, 81.0], [153.0, 171.0]])


def test_convolution_filter_channels_checked():
    with pytest.raises(InputShapeError):
        Graph([
            _image(CHANNELS),
            Variable.constant(1.0, shape=[3, 3, 2, 1], name="filters"),
            Convolution2D("image", "filters", name="features").target_for_modes(["infer"]),
        ])


def test_convolution_needs_image_rank():
    with pytest.raises(InputShapeError):
        Graph([
            Constant(shape=[5], value=1.0, name="image"),
            Variable.constant(1.0, shape=[3, 3, 1, 1], name="filters"),
            Convolution2D("image", "filters", name="features").target_for_modes(["infer"]),
        ])


# ============================================================================
# Test Pooling
# ============================================================================

def _pool(function: PoolingFunction, values: np.ndarray = IMAGE, batch: bool = False) -> np.ndarray:
    layer = PoolingLayer(function, "image", kernel_height=3, kernel_width=3, name="pooled")
    if batch:
        layer = layer.extra_dimension_is_batch()
    graph = Graph([_image(values), layer.target_for_modes(["infer"])])
    return graph.run_one("infer", {})["pooled"].array


@pytest.mark.parametrize("function, expected", [
    (PoolingFunction.MAX, [7.0, 13.0, 19.0, 25.0, 25.0]),
    (PoolingFunction.AVERAGE, [4.0, 7.0, 13.0, 19.0, 22.0]),
    (PoolingFunction.MIN, [1.0, 1.0, 7.0, 13.0, 19.0]),
])
def test_pooling_layer_functions(function, expected):
    result = _pool(function)

    assert result.shape == (5, 5)
    np.testing.assert_allclose(_diagonal(result), expected, rtol=1e-6)


def test_pooling_layer_keeps_channels():
    result = _pool(PoolingFunction.MAX, CHANNELS)

    assert result.shape == (5, 5, 3)
    np.testing.assert_allclose(_diagonal(result[..., 1]), [37.0, 43.0, 49.0, 55.0, 55.0])


def test_pooling_layer_extra_dimension_as_batch():
    result = _pool(PoolingFunction.MAX, np.stack([IMAGE, IMAGE + 30.0, IMAGE + 60.0]), batch=True)

    assert result.shape == (3, 5, 5)
    np.testing.assert_allclose(_diagonal(result[2]), [67.0, 73.0, 79.0, 85.0, 85.0])


def test_max_pooling_default_window():
    values = np.arange(16.0, dtype=np.float32).reshape(4, 4)
    result = Graph([
        _image(values),
        MaxPooling2D("image", name="pooled").target_for_modes(["infer"]),
    ]).run_one("infer", {})["pooled"].array

    np.testing.assert_allclose(result, [[5.0, 7.0], [13.0, 15.0]])


def test_max_pooling_kernel_checked():
    with pytest.raises(InvalidValueError):
        Graph([_image(), MaxPooling2D("image", kernel_size=0, name="pooled").target_for_modes(["infer"])])
