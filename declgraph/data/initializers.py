"""Weight initialization: random, constant and orthogonal-by-gate tensors.

All functions are pure and take an explicit JAX random key.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Sequence, Union

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from declgraph.data.types import DataType, ParameterRange, Tensor
from declgraph.errors import InvalidShapeError


@dataclass(frozen=True)
class Uniform:
    minimum: float
    maximum: float


@dataclass(frozen=True)
class Normal:
    mean: float
    standard_deviation: float


@dataclass(frozen=True)
class XavierGlorotUniform:
    pass


@dataclass(frozen=True)
class HeUniform:
    pass


@dataclass(frozen=True)
class XavierGlorotNormal:
    pass


@dataclass(frozen=True)
class HeNormal:
    pass


WeightInitialization = Union[
    Uniform, Normal, XavierGlorotUniform, HeUniform, XavierGlorotNormal, HeNormal
]


def resolve_initialization(
    init: WeightInitialization,
    num_inputs: int,
    num_outputs: int
) -> Uniform | Normal:
    """Turn a fan-based initialization into a concrete uniform or normal one.

    Args:
        init: Initialization scheme
        num_inputs: Fan-in of the weights
        num_outputs: Fan-out of the weights

    Returns:
        Uniform or Normal with the scheme's range / standard deviation
    """
    if isinstance(init, (Uniform, Normal)):
        return init
    if isinstance(init, XavierGlorotUniform):
        limit = math.sqrt(6.0 / (num_inputs + num_outputs))
        return Uniform(-limit, limit)
    if isinstance(init, HeUniform):
        limit = math.sqrt(6.0 / num_inputs)
        return Uniform(-limit, limit)
    if isinstance(init, XavierGlorotNormal):
        return Normal(0.0, math.sqrt(2.0 / (num_inputs + num_outputs)))
    if isinstance(init, HeNormal):
        return Normal(0.0, math.sqrt(2.0 / num_inputs))
    raise TypeError(f"Unknown weight initialization: {init!r}")


def _as_tensor(values: jax.Array, data_type: DataType) -> Tensor:
    return Tensor(np.asarray(values).astype(data_type.numpy_dtype))


def random_uniform_values(
    key: jax.Array,
    data_type: DataType,
    shape: Sequence[int],
    value_range: ParameterRange
) -> Tensor:
    values = random.uniform(
        key, tuple(shape), minval=value_range.minimum, maxval=value_range.maximum
    )
    return _as_tensor(values, data_type)


def random_normal_values(
    key: jax.Array,
    data_type: DataType,
    shape: Sequence[int],
    mean: float,
    standard_deviation: float
) -> Tensor:
    values = mean + standard_deviation * random.normal(key, tuple(shape))
    return _as_tensor(values, data_type)


def constant_values(data_type: DataType, shape: Sequence[int], value: float) -> Tensor:
    return Tensor.filled(value, shape, data_type)


def create_weight_initialization_tensor(
    key: jax.Array,
    data_type: DataType,
    shape: Sequence[int],
    init: WeightInitialization,
    num_inputs: int,
    num_outputs: int
) -> Tensor:
    concrete = resolve_initialization(init, num_inputs, num_outputs)
    if isinstance(concrete, Uniform):
        return random_uniform_values(
            key, data_type, shape, ParameterRange(concrete.minimum, concrete.maximum)
        )
    return random_normal_values(
        key, data_type, shape, concrete.mean, concrete.standard_deviation
    )


def orthogonal_block(key: jax.Array, size: int, init: Uniform | Normal) -> jax.Array:
    """Random square matrix orthogonalized by QR (sign fixed by diag(R))."""
    if isinstance(init, Uniform):
        raw = random.uniform(key, (size, size), minval=init.minimum, maxval=init.maximum)
    else:
        raw = init.mean + init.standard_deviation * random.normal(key, (size, size))
    q, r = jnp.linalg.qr(raw)
    signs = jnp.sign(jnp.diag(r))
    signs = jnp.where(signs == 0, 1.0, signs)
    return q * signs[None, :]


def gate_count(shape: Sequence[int]) -> int:
    """Number of square blocks an orthogonal weight of this shape holds.

    Rank 2 shapes [gates*H, H] hold `gates` blocks; rank 3 bidirectional
    shapes [2, gates*H, H] hold twice that.
    """
    dims = tuple(shape)
    if len(dims) == 2:
        rows, cols = dims
        directions = 1
    elif len(dims) == 3 and dims[0] == 2:
        directions, rows, cols = dims
    else:
        raise InvalidShapeError(
            f"Orthogonal initialization needs shape [gates*H, H] or [2, gates*H, H], got {list(dims)}"
        )
    if cols == 0 or rows % cols != 0:
        raise InvalidShapeError(
            f"Orthogonal initialization needs first dimension {rows} to be a "
            f"multiple of the second {cols}"
        )
    return directions * (rows // cols)


def orthogonal_weight_tensor(
    key: jax.Array,
    data_type: DataType,
    shape: Sequence[int],
    init: WeightInitialization,
    num_inputs: int | None = None,
    num_outputs: int | None = None
) -> Tensor:
    """Per-gate orthogonal weights stacked along the first axis in gate order.

    Args:
        key: JAX random key
        data_type: Element type of the result
        shape: [gates*H, H], or [2, gates*H, H] for bidirectional layers
        init: Distribution each block is drawn from before orthogonalization
        num_inputs: Fan-in for fan-based schemes (defaults to H)
        num_outputs: Fan-out for fan-based schemes (defaults to H)

    Returns:
        Tensor with one orthogonal H x H block per gate
    """
    dims = tuple(shape)
    num_gates = gate_count(dims)
    size = dims[-1]
    concrete = resolve_initialization(init, num_inputs or size, num_outputs or size)

    keys = random.split(key, num_gates)
    blocks = [orthogonal_block(k, size, concrete) for k in keys]
    stacked = jnp.concatenate(blocks, axis=0).reshape(dims)
    return _as_tensor(stacked, data_type)


def is_orthogonal_blocks(tensor: Tensor, atol: float = 1e-4) -> bool:
    """Check every H x H block of a gate-stacked weight is orthogonal."""
    size = tensor.array.shape[-1]
    blocks = tensor.array.reshape(-1, size, size).astype(np.float64)
    identity = np.eye(size)
    return all(np.allclose(b.T @ b, identity, atol=atol) for b in blocks)
