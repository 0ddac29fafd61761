"""Tests for dense, batch normalization and recurrent layers."""

from __future__ import annotations

import numpy as np
import pytest

from declgraph import (
    ActivationFunction,
    BatchNormalization,
    Constant,
    FullyConnectedLayer,
    Graph,
    GRULayer,
    Learning,
    LSTMLayer,
    MeanSquaredErrorLoss,
    PlaceHolder,
    RNNActivation,
    RNNLayer,
    SingleGateRNN,
    Tensor,
)
from declgraph.errors import InputShapeError, InvalidValueError, NoConfiguredTargetTensorsError


def _sequence(steps: int = 5, batch: int = 2, features: int = 3) -> np.ndarray:
    rng = np.random.default_rng(0)
    return rng.normal(size=(steps, batch, features)).astype(np.float32)


# ============================================================================
# Test Fully Connected Layer
# ============================================================================

def test_fully_connected_names_and_shapes():
    graph = Graph([
        PlaceHolder(shape=[3], name="x"),
        FullyConnectedLayer(output_shape=[2], name="fc").target_for_modes(["infer"]),
    ])

    symbols = graph.context.symbols
    assert symbols["fc_inputReshape"].shape == (1, 3)
    assert symbols["fc_weights"].shape == (3, 2)
    assert symbols["fc_biases"].shape == (2,)
    assert symbols["fc_matrixMult"].shape == (1, 2)
    assert symbols["fc_outputReshape"].shape == (2,)
    assert list(graph.targets_for_mode("infer")) == ["fc"]

    result = graph.run_one("infer", {"x": [1.0, 2.0, 3.0]})["fc"]
    assert result.shape.dimensions == (2,)


def test_fully_connected_batch_keeps_batch_dimension():
    graph = Graph(
        [
            PlaceHolder(shape=[2, 3], name="x"),
            FullyConnectedLayer(output_shape=[5], name="fc").target_for_modes(["infer"]),
        ],
        batch_size=4,
    )

    assert graph.context.symbols["fc_inputReshape"].shape == (4, 6)
    assert graph.context.symbols["fc_weights"].shape == (6, 5)
    assert graph.targets_for_mode("infer")["fc"].shape == (4, 5)


def test_fully_connected_activation_is_result():
    graph = Graph([
        PlaceHolder(shape=[1, 4], name="x").batch_exempt(),
        FullyConnectedLayer(output_shape=[3], activation=ActivationFunction.RELU, name="fc")
        .target_for_modes(["infer"]),
    ])

    assert "fc_biasAdded" in graph.context.symbols
    result = graph.run_one("infer", {"x": np.ones((1, 4))})["fc"]
    assert (result.array >= 0.0).all()


def test_fully_connected_without_bias_ends_at_matmul():
    graph = Graph(
        [
            PlaceHolder(shape=[4], name="x"),
            FullyConnectedLayer(output_shape=[3], name="fc").no_bias_term().target_for_modes(["infer"]),
        ],
        batch_size=2,
    )

    assert "fc_biases" not in graph.context.symbols
    assert "fc_matrixMult" not in graph.context.symbols
    assert graph.targets_for_mode("infer")["fc"].shape == (2, 3)


def test_fully_connected_weight_range():
    graph = Graph([
        PlaceHolder(shape=[50], name="x"),
        FullyConnectedLayer(output_shape=[20], name="fc")
        .weight_initial_range(-0.01, 0.01)
        .target_for_modes(["infer"]),
    ])

    weights = graph.program.variable_value(graph.context.symbols["fc_weights"])
    assert np.abs(weights).max() <= 0.01


def test_fully_connected_bad_range_fails():
    with pytest.raises(InvalidValueError):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            FullyConnectedLayer(output_shape=[2], name="fc").bias_initial_range(1.0, -1.0)
            .target_for_modes(["infer"]),
        ])


def test_layer_needs_name():
    with pytest.raises(InvalidValueError):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            FullyConnectedLayer(output_shape=[2]),
            MeanSquaredErrorLoss("x", None, name="loss").target_for_modes(["infer"]),
        ])


def test_fully_connected_learns():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        PlaceHolder(shape=[1], modes=["train"], name="y"),
        FullyConnectedLayer("x", output_shape=[1], name="fc").learn_with_respect_to("loss"),
        MeanSquaredErrorLoss("y", "fc", name="loss").target_for_modes(["train"]),
        Learning(learning_rate=0.1, learning_modes=["train"]),
    ])

    assert {v.name for v in graph.learning_variables} == {"fc_weights", "fc_biases"}
    feeds = {"x": [1.0, -1.0], "y": [0.5]}
    losses = [float(graph.run_one("train", feeds)["loss"].array[0]) for _ in range(30)]
    assert losses[-1] < losses[0]


# ============================================================================
# Test Batch Normalization
# ============================================================================

def _batch_norm_graph() -> Graph:
    return Graph(
        [
            PlaceHolder(shape=[2], name="x"),
            BatchNormalization(name="bn").target_for_modes(["train", "infer"]),
            Learning(learning_modes=["train"]),
        ],
        batch_size=4,
    )


BATCH = np.array([[1.0, 10.0], [2.0, 20.0], [3.0, 30.0], [4.0, 40.0]], np.float32)


def test_batch_norm_training_uses_batch_statistics():
    graph = _batch_norm_graph()

    result = graph.run_one("train", {"x": BATCH})["bn"].array

    np.testing.assert_allclose(result.mean(axis=0), [0.0, 0.0], atol=1e-5)
    np.testing.assert_allclose(result.std(axis=0), [1.0, 1.0], atol=1e-3)


def test_batch_norm_inference_uses_running_statistics():
    graph = _batch_norm_graph()

    result = graph.run_one("infer", {"x": BATCH})["bn"].array

    np.testing.assert_allclose(result, BATCH / np.sqrt(1.0 + 1e-5), rtol=1e-5)


def test_batch_norm_updates_running_mean_while_learning():
    graph = _batch_norm_graph()
    running_mean = graph.context.symbols["bn_runningMean"]
    assert running_mean.shape == (1, 2)

    graph.run_one("infer", {"x": BATCH})
    np.testing.assert_array_equal(graph.program.variable_value(running_mean), [[0.0, 0.0]])

    graph.run_one("train", {"x": BATCH})
    np.testing.assert_allclose(graph.program.variable_value(running_mean), [[0.25, 2.5]], rtol=1e-5)


# ============================================================================
# Test LSTM
# ============================================================================

def test_lstm_shapes_and_targets():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        LSTMLayer("x", state_size=4, name="lstm").target_for_modes(["infer"]),
    ])

    symbols = graph.context.symbols
    assert symbols["lstm_recurrentWeights"].shape == (16, 4)
    assert symbols["lstm_inputWeights"].shape == (16, 3)
    assert symbols["lstm_bias"].shape == (16,)
    assert symbols["lstm_state"].shape == (5, 2, 4)
    assert list(graph.targets_for_mode("infer")) == ["lstm_lastState"]

    result = graph.run_one("infer", {"x": _sequence()})["lstm_lastState"]
    assert result.shape.dimensions == (2, 4)


def test_lstm_last_state_is_final_step():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        LSTMLayer("x", state_size=4, name="lstm")
        .set_output(create_last_cell=True, target_loops=True)
        .target_for_modes(["infer"]),
    ])

    results = graph.run_one("infer", {"x": _sequence()})
    assert set(results) == {"lstm_state", "lstm_cell", "lstm_lastState", "lstm_lastCell"}
    np.testing.assert_allclose(results["lstm_lastState"].array, results["lstm_state"].array[-1])
    np.testing.assert_allclose(results["lstm_lastCell"].array, results["lstm_cell"].array[-1])


def test_lstm_bidirectional_concatenates_directions():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        LSTMLayer("x", state_size=4, name="lstm").make_bidirectional().target_for_modes(["infer"]),
    ])

    assert graph.context.symbols["lstm_recurrentWeights"].shape == (2, 16, 4)
    assert graph.context.symbols["lstm_state"].shape == (5, 2, 8)
    assert graph.targets_for_mode("infer")["lstm_lastState"].shape == (2, 8)


def test_lstm_hard_sigmoid_gates_run():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        LSTMLayer("x", state_size=4, name="lstm")
        .all_activation_functions(RNNActivation.HARD_SIGMOID)
        .target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {"x": _sequence()})["lstm_lastState"].array
    assert np.isfinite(result).all()


def test_lstm_needs_sequence_input():
    with pytest.raises(InputShapeError):
        Graph([
            PlaceHolder(shape=[2, 3], name="x"),
            LSTMLayer("x", state_size=4, name="lstm").target_for_modes(["infer"]),
        ])


def test_lstm_without_target_outputs_fails():
    with pytest.raises(NoConfiguredTargetTensorsError):
        Graph([
            PlaceHolder(shape=[5, 2, 3], name="x"),
            LSTMLayer("x", state_size=4, name="lstm")
            .set_output(create_last_state=False)
            .target_for_modes(["infer"]),
        ])


# ============================================================================
# Test GRU
# ============================================================================

def test_gru_shapes():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        GRULayer("x", state_size=4, name="gru").set_output(target_loop=True).target_for_modes(["infer"]),
    ])

    assert graph.context.symbols["gru_recurrentWeights"].shape == (12, 4)
    results = graph.run_one("infer", {"x": _sequence()})
    assert results["gru_state"].shape.dimensions == (5, 2, 4)
    np.testing.assert_allclose(results["gru_lastState"].array, results["gru_state"].array[-1])


def test_gru_learning_updates_weights():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        PlaceHolder(shape=[2, 2], modes=["train"], name="y"),
        GRULayer("x", state_size=2, name="gru").learn_with_respect_to("loss"),
        MeanSquaredErrorLoss("y", "gru_lastState", name="loss").target_for_modes(["train"]),
        Learning(learning_modes=["train"]),
    ])

    before = graph.get_variable_data()
    assert set(before) == {"gru_recurrentWeights", "gru_inputWeights", "gru_bias"}
    assert "gru_z" in graph.context.symbols

    graph.run_one("train", {"x": _sequence(), "y": np.full((2, 2), 0.5)})
    after = graph.get_variable_data()

    assert not np.allclose(before["gru_inputWeights"].array, after["gru_inputWeights"].array)


# ============================================================================
# Test Single-Gate RNN
# ============================================================================

def test_rnn_shapes():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        RNNLayer("x", state_size=4, name="rnn").set_output(target_loop=True).target_for_modes(["infer"]),
    ])

    symbols = graph.context.symbols
    assert symbols["rnn_recurrentWeights"].shape == (4, 4)
    assert symbols["rnn_inputWeights"].shape == (4, 3)
    assert symbols["rnn_bias"].shape == (4,)
    results = graph.run_one("infer", {"x": _sequence()})
    assert results["rnn_state"].shape.dimensions == (5, 2, 4)
    np.testing.assert_allclose(results["rnn_lastState"].array, results["rnn_state"].array[-1])


def test_rnn_learning_updates_weights():
    graph = Graph([
        PlaceHolder(shape=[5, 2, 3], name="x"),
        PlaceHolder(shape=[2, 2], modes=["train"], name="y"),
        RNNLayer("x", state_size=2, name="rnn").learn_with_respect_to("loss"),
        MeanSquaredErrorLoss("y", "rnn_lastState", name="loss").target_for_modes(["train"]),
        Learning(learning_modes=["train"]),
    ])

    before = graph.get_variable_data()
    assert "rnn_z" in graph.context.symbols

    graph.run_one("train", {"x": _sequence(), "y": np.full((2, 2), 0.5)})
    after = graph.get_variable_data()

    assert not np.allclose(before["rnn_recurrentWeights"].array, after["rnn_recurrentWeights"].array)


def _constant(values, name: str) -> Constant:
    return Constant(values=Tensor.from_values(np.asarray(values, np.float32)), name=name)


def _single_gate_graph(**inputs) -> Graph:
    given = {key: f"rnn_{key}" for key in inputs}
    return Graph([
        _constant([[[1.0]], [[2.0]]], "x"),
        _constant([[0.5]], "r"),
        [_constant(values, f"rnn_{key}") for key, values in inputs.items()],
        SingleGateRNN(
            "x", "r", activation=RNNActivation.NONE, training=True, name="rnn", **given
        ).target_for_modes(["infer"]),
    ])


def test_single_gate_rnn_recurrence():
    results = _single_gate_graph(init_state=[[2.0]]).run_one("infer", {})

    assert set(results) == {"rnn_state", "rnn_trainingState"}
    np.testing.assert_allclose(results["rnn_state"].array.ravel(), [2.0, 3.0])
    np.testing.assert_allclose(results["rnn_trainingState"].array.ravel(), [2.0, 3.0])


def test_single_gate_rnn_mask_keeps_state():
    results = _single_gate_graph(init_state=[[2.0]], mask=[[[1.0]], [[0.0]]]).run_one("infer", {})

    np.testing.assert_allclose(results["rnn_state"].array.ravel(), [2.0, 2.0])


def test_single_gate_rnn_input_weight_and_bias():
    results = _single_gate_graph(
        input_weight=[[2.0]], bias=[1.0], init_state=[[2.0]]
    ).run_one("infer", {})

    np.testing.assert_allclose(results["rnn_state"].array.ravel(), [4.0, 7.0])


def test_single_gate_rnn_needs_matching_features():
    with pytest.raises(InputShapeError):
        Graph([
            PlaceHolder(shape=[5, 2, 3], name="x"),
            _constant(np.eye(2), "r"),
            SingleGateRNN("x", "r", name="rnn").target_for_modes(["infer"]),
        ])
