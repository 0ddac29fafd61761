"""Tests for samples and in-memory data sets."""

from __future__ import annotations

import pytest

from declgraph.data import DataSet, DataType, Sample, Tensor, TensorShape
from declgraph.errors import InvalidSampleIndexError, InvalidValueError, SampleMismatchError


def _data_set(count: int = 6) -> DataSet:
    data = DataSet(TensorShape([2]), DataType.FLOAT32, TensorShape([1]), DataType.FLOAT32)
    for i in range(count):
        data.append_sample(Sample(
            Tensor.from_values([i, -i]), Tensor.from_values([i * 10]), output_class=i % 2
        ))
    return data


# ============================================================================
# Test Samples
# ============================================================================

def test_append_checks_shapes_and_types():
    data = _data_set(0)

    with pytest.raises(SampleMismatchError):
        data.append_sample(Sample(Tensor.from_values([1.0]), Tensor.from_values([1.0])))
    with pytest.raises(SampleMismatchError):
        data.append_sample(Sample(Tensor.from_values([1.0, 2.0]), Tensor.from_values([1.0, 2.0])))
    with pytest.raises(SampleMismatchError):
        data.append_sample(Sample(
            Tensor.from_values([1, 2], data_type=DataType.INT32), Tensor.from_values([1.0])
        ))

    assert data.num_samples == 0


def test_get_sample_bounds():
    data = _data_set(3)

    assert data.get_sample(2).output_class == 0
    with pytest.raises(InvalidSampleIndexError):
        data.get_sample(3)
    with pytest.raises(InvalidSampleIndexError):
        data.get_sample(-1)


# ============================================================================
# Test Batches
# ============================================================================

def test_get_batch_stacks_in_order():
    data = _data_set()

    inputs, outputs = data.get_batch([4, 1, 1])

    assert inputs.shape.dimensions == (3, 2)
    assert outputs.shape.dimensions == (3, 1)
    assert inputs.tolist() == [[4.0, -4.0], [1.0, -1.0], [1.0, -1.0]]
    assert outputs.tolist() == [[40.0], [10.0], [10.0]]


def test_get_batch_bad_index():
    with pytest.raises(InvalidSampleIndexError):
        _data_set(2).get_batch([0, 5])


# ============================================================================
# Test Splitting and Labels
# ============================================================================

def test_split_randomly_partitions_samples():
    data = _data_set(10)

    remaining, selected = data.split_randomly(3, seed=1)

    assert len(remaining) == 7
    assert len(selected) == 3
    firsts = sorted(int(s.inputs.array[0]) for s in list(remaining) + list(selected))
    assert firsts == list(range(10))


def test_split_is_seeded():
    first = [s.inputs.tolist() for s in _data_set(10).split_randomly(4, seed=5)[1]]
    second = [s.inputs.tolist() for s in _data_set(10).split_randomly(4, seed=5)[1]]
    assert first == second


def test_split_needs_samples_left():
    with pytest.raises(InvalidValueError):
        _data_set(3).split_randomly(3)


def test_labels_case_insensitive():
    data = _data_set(0)

    assert data.label_index("Cat") == 0
    assert data.label_index("dog") == 1
    assert data.label_index("CAT") == 0
    assert data.get_label(1) == "dog"
    assert data.get_label(7) is None
