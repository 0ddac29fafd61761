"""Tests for leaf nodes: placeholders, constants, variables and generated tensors."""

from __future__ import annotations

import numpy as np
import pytest

from declgraph import (
    BuildOptions,
    Constant,
    CoordinateTensor,
    DataType,
    Graph,
    Identity,
    Learning,
    MeanSquaredErrorLoss,
    Multiplication,
    ParameterRange,
    PlaceHolder,
    RandomUniformTensor,
    Tensor,
    Variable,
    random_state_tensor,
)
from declgraph.data import initializers
from declgraph.errors import (
    DoesNotContainDimensionError,
    InvalidShapeError,
    InvalidValueError,
    UnknownShapeError,
)
from declgraph.nodes.leaf import UniformSource


def _variable_graph(variable: Variable, **kwargs) -> Graph:
    return Graph(
        [variable, Identity(variable.name, name="out").target_for_modes(["infer"])],
        **kwargs,
    )


# ============================================================================
# Test Constants
# ============================================================================

def test_constant_fill_value():
    graph = Graph([Constant(shape=[2, 2], value=1.5, name="c").target_for_modes(["infer"])])
    np.testing.assert_allclose(graph.run_one("infer", {})["c"].array, np.full((2, 2), 1.5))


def test_constant_from_values():
    values = Tensor.from_values([1, 2, 3], data_type=DataType.INT32)
    graph = Graph([Constant(values=values, name="c").target_for_modes(["infer"])])

    result = graph.run_one("infer", {})["c"]
    assert result.data_type == DataType.INT32
    assert result.tolist() == [1, 2, 3]


def test_constant_needs_exactly_one_form():
    with pytest.raises(InvalidValueError):
        Graph([
            Constant(shape=[2], value=1.0, values=Tensor.from_values([1.0, 2.0]), name="c")
            .target_for_modes(["infer"])
        ])


# ============================================================================
# Test Variables
# ============================================================================

def test_reset_data_reproduces_source_tensor():
    """Reset data of a tensor-sourced variable equals the source, every time."""
    source = Tensor.from_values([[1.0, 2.0], [3.0, 4.0]])
    variable = Variable.from_tensor(source, name="v")
    graph = _variable_graph(variable)

    for _ in range(2):
        data = variable.reset_data(graph)
        assert data.shape == source.shape
        assert data.data_type == source.data_type
        np.testing.assert_array_equal(data.array, source.array)


def test_reset_variables_restores_initial_values():
    graph = Graph(
        [
            PlaceHolder(shape=[2], name="x"),
            PlaceHolder(shape=[2], modes=["train"], name="expected"),
            Variable.from_tensor(Tensor.from_values([1.0, 2.0]), name="v").learn_with_respect_to("loss"),
            Multiplication("x", "v", name="y").target_for_modes(["infer"]),
            MeanSquaredErrorLoss("expected", "y", name="loss").target_for_modes(["train"]),
            Learning(learning_modes=["train"]),
        ],
        build_options=BuildOptions.VARIABLE_ASSIGNS,
    )

    graph.run_one("train", {"x": [1.0, 1.0], "expected": [5.0, 5.0]})
    assert not np.allclose(graph.get_variable_data()["v"].array, [1.0, 2.0])

    graph.reset_variables()
    np.testing.assert_allclose(graph.get_variable_data()["v"].array, [1.0, 2.0])


def test_random_uniform_variable_in_range():
    variable = Variable.random_uniform([100], ParameterRange(-0.25, 0.25), name="w")
    graph = _variable_graph(variable, seed=3)

    values = graph.run_one("infer", {})["out"].array
    assert values.shape == (100,)
    assert values.min() >= -0.25
    assert values.max() <= 0.25


def test_random_variables_depend_on_graph_seed():
    def values(seed):
        variable = Variable.random_normal([16], 0.0, 1.0, name="w")
        return _variable_graph(variable, seed=seed).run_one("infer", {})["out"].array

    np.testing.assert_array_equal(values(1), values(1))
    assert not np.array_equal(values(1), values(2))


def test_orthogonal_variable_blocks():
    variable = Variable.random_normal([32, 8], 0.0, 0.1, name="rw", orthogonal=True)
    graph = _variable_graph(variable)

    result = graph.run_one("infer", {})["out"]
    assert result.shape.dimensions == (32, 8)
    assert initializers.is_orthogonal_blocks(result)


def test_orthogonal_variable_needs_gate_shape():
    with pytest.raises(InvalidShapeError):
        _variable_graph(Variable.random_normal([5, 3], 0.0, 0.1, name="rw", orthogonal=True))


def test_generated_variable_without_shape_fails_on_build():
    variable = Variable(UniformSource(ParameterRange(-1.0, 1.0), orthogonal=True), name="w")

    assert variable.data_type == DataType.FLOAT32
    with pytest.raises(UnknownShapeError):
        _variable_graph(variable)


def test_variable_from_node_copies_value():
    graph = Graph([
        Constant(shape=[3], value=4.0, name="init"),
        Variable.from_node("init", name="state"),
        Identity("state", name="out").target_for_modes(["infer"]),
    ])

    np.testing.assert_allclose(graph.run_one("infer", {})["out"].array, [4.0, 4.0, 4.0])


def test_variable_from_reference():
    from declgraph import SubGraph, SubGraphDefinition

    definition = SubGraphDefinition([
        Variable.from_reference("weights", name="w"),
        Multiplication("x", "w", name="y").target_for_modes(["infer"]),
    ])
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        SubGraph(definition, name="layer", data_tensor_map={"weights": Tensor.from_values([3.0, -1.0])}),
    ])

    result = graph.run_one("infer", {"x": [2.0, 2.0]})["layer_y"]
    np.testing.assert_allclose(result.array, [6.0, -2.0])


def test_gradient_clipping_range_checked():
    variable = Variable.constant(0.0, shape=[2], name="w").learn_with_respect_to(
        "loss", gradient_clipping=(1.0, -1.0)
    )

    assert isinstance(variable.build_error, InvalidValueError)


# ============================================================================
# Test Generated Tensors
# ============================================================================

def test_random_uniform_tensor_with_seed_is_repeatable():
    graph = Graph([RandomUniformTensor(shape=[5], seed=11, name="r").target_for_modes(["infer"])])

    first = graph.run_one("infer", {})["r"].array
    second = graph.run_one("infer", {})["r"].array
    np.testing.assert_array_equal(first, second)
    assert ((first >= 0.0) & (first < 1.0)).all()


def test_stateful_random_tensor_emits_state():
    graph = Graph([
        Variable.from_tensor(random_state_tensor(5), name="state"),
        RandomUniformTensor(shape=[3], state_tensor="state", name="r").target_for_modes(["infer"]),
    ])

    results = graph.run_one("infer", {})
    assert set(results) == {"r_random", "r_state"}
    assert results["r_random"].shape.dimensions == (3,)
    assert results["r_state"].shape.dimensions == (2,)


def test_coordinate_tensor():
    graph = Graph([CoordinateTensor(along_axis=1, shape=[2, 3], name="c").target_for_modes(["infer"])])

    assert graph.run_one("infer", {})["c"].tolist() == [[0, 1, 2], [0, 1, 2]]


def test_coordinate_tensor_axis_checked():
    with pytest.raises(DoesNotContainDimensionError):
        Graph([CoordinateTensor(along_axis=2, shape=[2, 3], name="c").target_for_modes(["infer"])])
