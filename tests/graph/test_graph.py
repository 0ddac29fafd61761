"""Tests for graph construction, resolution and running."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from declgraph import (
    Absolute,
    Addition,
    BuildOptions,
    Constant,
    Graph,
    GraphConfig,
    Learning,
    MeanSquaredErrorLoss,
    Multiplication,
    Negative,
    PlaceHolder,
    Square,
    SquareRoot,
    Tensor,
    TopK,
    Variable,
)
from declgraph.errors import (
    BinaryShapesDontMatchError,
    MoreThanOneLearningNodeError,
    NamedTensorNotFoundError,
    NameNotUniqueError,
    NoPreviousNodeError,
    NoTargetsInGraphError,
    PlaceHolderInputNotFoundError,
    PlaceHolderShapeMismatchError,
    TargetNodesMustBeNamedError,
    UnreferencedNodeError,
)


# ============================================================================
# Test Reference Checks
# ============================================================================

def test_unreferenced_named_node_fails():
    """A named node nobody reads and nobody targets is an error."""
    with pytest.raises(UnreferencedNodeError) as excinfo:
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Constant(shape=[2], value=1.0, name="unused"),
            Negative("x", name="y").target_for_modes(["infer"]),
        ])

    assert excinfo.value.name == "unused"
    assert excinfo.value.node_type == "Constant"
    assert "unused" in str(excinfo.value)


def test_unreferenced_unnamed_node_message():
    with pytest.raises(UnreferencedNodeError, match=r"\* Unnamed \*"):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Negative("x", name="y").target_for_modes(["infer"]),
            Constant(shape=[2], value=1.0),
        ])


def test_referenced_node_passes():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Constant(shape=[2], value=1.0, name="one"),
        Addition("x", "one", name="y").target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {"x": Tensor.from_values([1.0, 2.0])})
    np.testing.assert_allclose(result["y"].array, [2.0, 3.0])


def test_target_node_without_name_fails():
    with pytest.raises(TargetNodesMustBeNamedError):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Negative("x").target_for_modes(["infer"]),
        ])


def test_graph_without_targets_fails():
    with pytest.raises(NoTargetsInGraphError):
        Graph([Learning()])


def test_duplicate_learning_node_fails():
    with pytest.raises(MoreThanOneLearningNodeError):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Negative("x", name="y").target_for_modes(["infer"]),
            Learning(),
            Learning(),
        ])


def test_duplicate_name_fails():
    with pytest.raises(NameNotUniqueError):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Negative("x", name="x").target_for_modes(["infer"]),
        ])


# ============================================================================
# Test Resolution
# ============================================================================

def test_omitted_input_reads_previous_output():
    """Unnamed inputs chain through the previous node's output."""
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative(),
        Absolute(name="y").target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {"x": Tensor.from_values([1.0, -2.0])})
    np.testing.assert_allclose(result["y"].array, [1.0, 2.0])


def test_omitted_input_on_first_node_fails():
    with pytest.raises(NoPreviousNodeError):
        Graph([Negative(name="y").target_for_modes(["infer"])])


def test_unknown_name_fails():
    with pytest.raises(NamedTensorNotFoundError, match="missing"):
        Graph([
            PlaceHolder(shape=[2], name="x"),
            Addition("x", "missing", name="y").target_for_modes(["infer"]),
        ])


def test_target_count():
    graph = Graph([
        PlaceHolder(shape=[2], name="input"),
        Square(name="setTarget").target_for_modes(["runTest"]),
        SquareRoot(),
        Negative(name="defaultTarget").target_for_modes(["runTest"]),
    ])

    assert len(graph.target_tensors) == 2
    assert set(graph.targets_for_mode("runTest")) == {"setTarget", "defaultTarget"}


# ============================================================================
# Test Shapes
# ============================================================================

def test_binary_shape_mismatch_names_both_inputs():
    with pytest.raises(BinaryShapesDontMatchError) as excinfo:
        Graph([
            Constant(shape=[2, 3], value=1.0, name="a"),
            Constant(shape=[3, 2], value=1.0, name="b"),
            Addition("a", "b", name="sum").target_for_modes(["infer"]),
        ])

    assert excinfo.value.first == "a"
    assert excinfo.value.second == "b"


def test_binary_equal_shapes_resolve():
    graph = Graph([
        Constant(shape=[2, 3], value=1.0, name="a"),
        Constant(shape=[2, 3], value=2.0, name="b"),
        Addition("a", "b", name="sum").target_for_modes(["infer"]),
    ])

    assert graph.targets_for_mode("infer")["sum"].shape == (2, 3)
    result = graph.run_one("infer", {})
    np.testing.assert_allclose(result["sum"].array, np.full((2, 3), 3.0))


@settings(max_examples=10, deadline=None)
@given(batch_size=st.integers(min_value=1, max_value=8))
def test_batch_graph_adds_batch_dimension(batch_size):
    graph = Graph(
        [
            PlaceHolder(shape=[3], name="x"),
            Negative(name="y").target_for_modes(["infer"]),
        ],
        batch_size=batch_size,
    )

    assert graph.batch_graph
    assert graph.targets_for_mode("infer")["y"].shape == (batch_size, 3)


def test_batch_exempt_placeholder_keeps_shape():
    graph = Graph(
        [
            PlaceHolder(shape=[3], name="x").batch_exempt(),
            Negative(name="y").target_for_modes(["infer"]),
        ],
        batch_size=4,
    )

    assert graph.targets_for_mode("infer")["y"].shape == (3,)


# ============================================================================
# Test Multi-Output Nodes
# ============================================================================

def test_multi_output_names_and_targets():
    graph = Graph([
        PlaceHolder(shape=[4], name="x"),
        TopK("x", k=2, name="k").target_for_modes(["infer"]),
    ])

    assert "k_values" in graph.context.symbols
    assert "k_indices" in graph.context.symbols
    assert "k" not in graph.context.symbols
    assert set(graph.targets_for_mode("infer")) == {"k_values"}

    result = graph.run_one("infer", {"x": Tensor.from_values([3.0, 9.0, 1.0, 5.0])})
    np.testing.assert_allclose(result["k_values"].array, [9.0, 5.0])


def test_multi_output_suffix_reference_marks_node():
    """Reading `k_indices` counts as a reference to `k`."""
    graph = Graph([
        PlaceHolder(shape=[4], name="x"),
        TopK("x", k=1, name="k"),
        Negative("k_indices", name="y").target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {"x": Tensor.from_values([3.0, 9.0, 1.0, 5.0])})
    assert result["y"].tolist() == [-1]


# ============================================================================
# Test Running
# ============================================================================

def test_variable_multiplication_scenario():
    graph = Graph([
        PlaceHolder(shape=[4], name="x"),
        Variable.constant(2.0, shape=[4], name="w"),
        Multiplication("x", "w", name="y").target_for_modes(["infer"]),
    ])

    result = graph.run_one("infer", {"x": Tensor.from_values([1.0, 2.0, 3.0, 4.0])})
    np.testing.assert_allclose(result["y"].array, [2.0, 4.0, 6.0, 8.0])


def test_missing_placeholder_input_fails():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative(name="y").target_for_modes(["infer"]),
    ])

    with pytest.raises(PlaceHolderInputNotFoundError):
        graph.run_one("infer", {})


def test_placeholder_only_needed_in_its_modes():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        PlaceHolder(shape=[2], modes=["train"], name="expected"),
        Negative("x", name="y").target_for_modes(["infer"]),
        Addition("y", "expected", name="z").target_for_modes(["train"]),
    ])

    result = graph.run_one("infer", {"x": [1.0, 2.0]})
    np.testing.assert_allclose(result["y"].array, [-1.0, -2.0])

    with pytest.raises(PlaceHolderInputNotFoundError):
        graph.run_one("train", {"x": [1.0, 2.0]})


def test_placeholder_shape_mismatch_fails():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative(name="y").target_for_modes(["infer"]),
    ])

    with pytest.raises(PlaceHolderShapeMismatchError):
        graph.run_one("infer", {"x": [1.0, 2.0, 3.0]})


def test_mode_without_targets_fails():
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative(name="y").target_for_modes(["infer"]),
    ])

    with pytest.raises(NoTargetsInGraphError):
        graph.run_one("train", {"x": [1.0, 2.0]})


def test_optional_blocks_in_declaration():
    negate = False
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative() if negate else None,
        [Square(), SquareRoot(name="y").target_for_modes(["infer"])],
    ])

    result = graph.run_one("infer", {"x": [-3.0, 4.0]})
    np.testing.assert_allclose(result["y"].array, [3.0, 4.0])


def test_config_overrides_arguments():
    config = GraphConfig(batch_size=2, build_options=BuildOptions.VARIABLE_ASSIGNS, seed=7)
    graph = Graph(
        [PlaceHolder(shape=[3], name="x"), Negative(name="y").target_for_modes(["infer"])],
        batch_size=None,
        config=config,
    )

    assert graph.batch_size == 2
    assert graph.build_options == BuildOptions.VARIABLE_ASSIGNS


def test_print_shape_list(capsys):
    graph = Graph([
        PlaceHolder(shape=[2], name="x"),
        Negative(),
        Absolute(name="y").target_for_modes(["infer"]),
    ])

    graph.print_shape_list()
    lines = capsys.readouterr().out.strip().splitlines()

    assert lines == ["[2] - x", "[2] - * Unnamed *", "[2] - y"]


# ============================================================================
# Test Rebuilding and Concurrent Runs
# ============================================================================

MODES = ("train", "infer")


def _learning_graph() -> Graph:
    return Graph([
        PlaceHolder(shape=[2], name="x"),
        PlaceHolder(shape=[2], modes=["train"], name="expected"),
        Variable.constant(0.5, shape=[2], name="w").learn_with_respect_to("loss"),
        Multiplication("x", "w", name="prediction").target_for_modes(["infer"]),
        MeanSquaredErrorLoss("expected", "prediction", name="loss").target_for_modes(["train"]),
        Learning(learning_rate=0.1, learning_modes=["train"]),
    ])


def _mode_signature(graph: Graph) -> dict:
    return {
        mode: (sorted(graph.targets_for_mode(mode)), sorted(f.name for f in graph.feeds_for_mode(mode)))
        for mode in MODES
    }


def test_rebuild_is_idempotent():
    graph = _learning_graph()
    x = {"x": [1.0, 2.0]}
    prediction = graph.run_one("infer", x)["prediction"].array
    referenced = [node.referenced for node in graph.nodes]
    signature = _mode_signature(graph)

    graph.build()

    assert [node.referenced for node in graph.nodes] == referenced
    assert _mode_signature(graph) == signature
    assert [v.name for v in graph.learning_variables] == ["w"]
    np.testing.assert_allclose(graph.run_one("infer", x)["prediction"].array, prediction)


def test_concurrent_runs_in_two_modes():
    graph = _learning_graph()
    signature = _mode_signature(graph)
    feeds = {
        "train": {"x": [1.0, 2.0], "expected": [1.0, 1.0]},
        "infer": {"x": [1.0, 2.0]},
    }

    def run(mode):
        return sorted(graph.run_one(mode, feeds[mode]))

    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(run, MODES * 10))

    assert results == [["loss"], ["prediction"]] * 10
    assert _mode_signature(graph) == signature
    weights = graph.get_variable_data()["w"].array
    assert not np.allclose(weights, [0.5, 0.5])
