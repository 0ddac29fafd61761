"""Tensor value types: shapes, element types, concrete tensors (pure data structures)."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Sequence

import numpy as np

from declgraph.errors import InvalidShapeError, InvalidValueError


MAX_SUPPORTED_DIMENSIONS = 16


class DataType(Enum):
    """Element type of a tensor, valued by its numpy dtype name."""
    FLOAT16 = "float16"
    FLOAT32 = "float32"
    INT8 = "int8"
    INT16 = "int16"
    INT32 = "int32"
    UINT8 = "uint8"
    UINT16 = "uint16"
    UINT32 = "uint32"
    BOOL = "bool"

    @property
    def numpy_dtype(self) -> np.dtype:
        return np.dtype(self.value)

    @property
    def is_floating_point(self) -> bool:
        return self in (DataType.FLOAT16, DataType.FLOAT32)

    @classmethod
    def from_dtype(cls, dtype: Any) -> DataType:
        """Map a numpy or JAX dtype onto a DataType.

        64-bit types are narrowed to their 32-bit counterparts, matching the
        default precision of the JAX backend.
        """
        dtype = np.dtype(dtype)
        if dtype == np.float64:
            return cls.FLOAT32
        if dtype == np.int64:
            return cls.INT32
        if dtype == np.uint64:
            return cls.UINT32
        try:
            return cls(dtype.name)
        except ValueError as err:
            raise InvalidValueError(f"Unsupported tensor element type: {dtype}") from err


@dataclass(frozen=True)
class TensorShape:
    """Immutable tensor shape.

    Example:
        >>> shape = TensorShape([2, 3])
        >>> shape.total_size
        6
        >>> shape.with_batch_dimension(8).dimensions
        (8, 2, 3)
    """
    dimensions: tuple[int, ...]

    def __init__(self, dimensions: Sequence[int]):
        dims = tuple(int(d) for d in dimensions)
        if any(d < 0 for d in dims):
            raise InvalidShapeError(f"Shape dimensions must be non-negative: {list(dims)}")
        object.__setattr__(self, "dimensions", dims)

    @property
    def num_dimensions(self) -> int:
        return len(self.dimensions)

    @property
    def total_size(self) -> int:
        size = 1
        for d in self.dimensions:
            size *= d
        return size

    def with_batch_dimension(self, batch_size: int) -> TensorShape:
        return TensorShape((batch_size,) + self.dimensions)

    def without_batch_dimension(self) -> TensorShape:
        """Drop the leading dimension; shapes of rank 1 or less are unchanged."""
        if self.num_dimensions <= 1:
            return self
        return TensorShape(self.dimensions[1:])

    def matches_except_batch(self, other: TensorShape) -> bool:
        return self.without_batch_dimension() == other.without_batch_dimension()

    def __getitem__(self, index: int) -> int:
        return self.dimensions[index]

    def __len__(self) -> int:
        return len(self.dimensions)

    def __iter__(self):
        return iter(self.dimensions)

    def __str__(self) -> str:
        return str(list(self.dimensions))


def with_batch_dimension(
    shape: Sequence[int],
    batch_enabled: bool,
    batch_size: int | None
) -> tuple[int, ...]:
    """Insert the batch dimension in front of a shape when batching is on."""
    dims = tuple(shape)
    if not batch_enabled or batch_size is None:
        return dims
    return (batch_size,) + dims


def without_batch_dimension(shape: Sequence[int], batch_enabled: bool) -> tuple[int, ...]:
    """Strip the leading batch dimension when batching is on (rank > 1 only)."""
    dims = tuple(shape)
    if not batch_enabled or len(dims) <= 1:
        return dims
    return dims[1:]


@dataclass(frozen=True)
class ParameterRange:
    """Closed value range used for random initialization."""
    minimum: float
    maximum: float

    def __post_init__(self):
        if self.minimum > self.maximum:
            raise InvalidValueError(
                f"Range minimum {self.minimum} is greater than maximum {self.maximum}"
            )


@dataclass(frozen=True, eq=False)
class Tensor:
    """Concrete tensor value: an element type, a shape and a numpy buffer.

    Args:
        array: Backing numpy array (converted to a supported element type)

    Example:
        >>> t = Tensor.from_values([1.0, 2.0, 3.0, 4.0], shape=[2, 2])
        >>> t.shape.dimensions
        (2, 2)
    """
    array: np.ndarray

    def __post_init__(self):
        array = np.asarray(self.array)
        data_type = DataType.from_dtype(array.dtype)
        if array.dtype != data_type.numpy_dtype:
            array = array.astype(data_type.numpy_dtype)
        object.__setattr__(self, "array", array)

    @classmethod
    def from_values(
        cls,
        values: Any,
        shape: Sequence[int] | None = None,
        data_type: DataType = DataType.FLOAT32
    ) -> Tensor:
        array = np.asarray(values, dtype=data_type.numpy_dtype)
        if shape is not None:
            shape = tuple(shape)
            if array.size != TensorShape(shape).total_size:
                raise InvalidShapeError(
                    f"{array.size} values do not fill shape {list(shape)}"
                )
            array = array.reshape(shape)
        return cls(array)

    @classmethod
    def filled(cls, value: float, shape: Sequence[int], data_type: DataType = DataType.FLOAT32) -> Tensor:
        return cls(np.full(tuple(shape), value, dtype=data_type.numpy_dtype))

    @classmethod
    def zeros(cls, shape: Sequence[int], data_type: DataType = DataType.FLOAT32) -> Tensor:
        return cls.filled(0, shape, data_type)

    @property
    def shape(self) -> TensorShape:
        return TensorShape(self.array.shape)

    @property
    def data_type(self) -> DataType:
        return DataType.from_dtype(self.array.dtype)

    def to_numpy(self) -> np.ndarray:
        return self.array

    def tolist(self) -> list:
        return self.array.tolist()

    def element(self, index: Sequence[int]) -> Any:
        return self.array[tuple(index)].item()

    def classification(self) -> int:
        """Index of the largest element over the flattened tensor."""
        return int(np.argmax(self.array))

    def batch_classifications(self) -> list[int]:
        """Per-sample argmax over a tensor whose first dimension is the batch."""
        flat = self.array.reshape(self.array.shape[0], -1)
        return [int(i) for i in np.argmax(flat, axis=1)]

    def allclose(self, other: Tensor, rtol: float = 1e-5, atol: float = 1e-6) -> bool:
        return (
            self.array.shape == other.array.shape
            and np.allclose(self.array, other.array, rtol=rtol, atol=atol)
        )

    def __repr__(self) -> str:
        return f"Tensor({self.data_type.value}, shape={list(self.array.shape)})"
