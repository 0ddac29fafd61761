"""In-memory samples and data sets consumed by the run helpers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Sequence

import numpy as np

from declgraph.data.types import DataType, Tensor, TensorShape
from declgraph.errors import InvalidSampleIndexError, InvalidValueError, SampleMismatchError


@dataclass(frozen=True)
class Sample:
    """One input / expected-output pair.

    Args:
        inputs: Input tensor
        outputs: Expected output tensor
        output_class: Classification index (used by the classifier tests)
    """
    inputs: Tensor
    outputs: Tensor
    output_class: int = 0


@dataclass
class DataSet:
    """Samples sharing one input shape / type and one output shape / type.

    Example:
        >>> data = DataSet(TensorShape([2]), DataType.FLOAT32, TensorShape([1]), DataType.FLOAT32)
        >>> data.append_sample(Sample(Tensor.from_values([0, 1]), Tensor.from_values([1])))
        >>> inputs, outputs = data.get_batch([0])
        >>> inputs.shape.dimensions
        (1, 2)
    """
    input_shape: TensorShape
    input_type: DataType
    output_shape: TensorShape
    output_type: DataType
    samples: list[Sample] = field(default_factory=list)
    labels: list[str] | None = None

    @property
    def num_samples(self) -> int:
        return len(self.samples)

    def __len__(self) -> int:
        return len(self.samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(self.samples)

    def append_sample(self, sample: Sample) -> None:
        """Add a sample; its shapes and element types must match the set."""
        if sample.inputs.shape != self.input_shape:
            raise SampleMismatchError("input shape", self.input_shape, sample.inputs.shape)
        if sample.outputs.shape != self.output_shape:
            raise SampleMismatchError("output shape", self.output_shape, sample.outputs.shape)
        if sample.inputs.data_type != self.input_type:
            raise SampleMismatchError("input type", self.input_type.value, sample.inputs.data_type.value)
        if sample.outputs.data_type != self.output_type:
            raise SampleMismatchError("output type", self.output_type.value, sample.outputs.data_type.value)
        self.samples.append(sample)

    def get_sample(self, index: int) -> Sample:
        if index < 0 or index >= len(self.samples):
            raise InvalidSampleIndexError(index, len(self.samples))
        return self.samples[index]

    def get_batch(self, sample_indices: Sequence[int]) -> tuple[Tensor, Tensor]:
        """Stack the selected samples into [batch, ...] input and output tensors.

        Args:
            sample_indices: Samples making up the batch, in batch order

        Returns:
            Tuple of (input_tensor, output_tensor)
        """
        batch = [self.get_sample(i) for i in sample_indices]
        inputs = np.zeros(
            (len(batch),) + self.input_shape.dimensions, self.input_type.numpy_dtype
        )
        outputs = np.zeros(
            (len(batch),) + self.output_shape.dimensions, self.output_type.numpy_dtype
        )
        for position, sample in enumerate(batch):
            inputs[position] = sample.inputs.array
            outputs[position] = sample.outputs.array
        return Tensor(inputs), Tensor(outputs)

    def get_label(self, label_index: int) -> str | None:
        """Classification label for an index, None when unknown."""
        if self.labels is None or not 0 <= label_index < len(self.labels):
            return None
        return self.labels[label_index]

    def label_index(self, label: str) -> int:
        """Index of a label (case-insensitive), appending it when new."""
        if self.labels is None:
            self.labels = []
        for index, existing in enumerate(self.labels):
            if existing.lower() == label.lower():
                return index
        self.labels.append(label)
        return len(self.labels) - 1

    def split_randomly(self, second_set_count: int, seed: int = 42) -> tuple[DataSet, DataSet]:
        """Move `second_set_count` random samples into a second set.

        Returns:
            Tuple of (remaining_set, selected_set); both keep the labels
        """
        if second_set_count >= self.num_samples:
            raise InvalidValueError(
                f"Cannot split {second_set_count} samples off a set of {self.num_samples}"
            )
        order = np.random.default_rng(seed).permutation(self.num_samples)
        first = self._empty_like()
        second = self._empty_like()
        for position, index in enumerate(order):
            target = second if position < second_set_count else first
            target.append_sample(self.samples[index])
        return first, second

    def _empty_like(self) -> DataSet:
        labels = None if self.labels is None else list(self.labels)
        return DataSet(self.input_shape, self.input_type, self.output_shape, self.output_type, labels=labels)
