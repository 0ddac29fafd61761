"""Tensor values, weight initialization and in-memory data sets."""

from declgraph.data.types import (
    MAX_SUPPORTED_DIMENSIONS,
    DataType,
    ParameterRange,
    Tensor,
    TensorShape,
)
from declgraph.data.initializers import (
    HeNormal,
    HeUniform,
    Normal,
    Uniform,
    XavierGlorotNormal,
    XavierGlorotUniform,
)
from declgraph.data.dataset import DataSet, Sample

__all__ = [
    "MAX_SUPPORTED_DIMENSIONS",
    "DataType",
    "ParameterRange",
    "Tensor",
    "TensorShape",
    # Initialization
    "HeNormal",
    "HeUniform",
    "Normal",
    "Uniform",
    "XavierGlorotNormal",
    "XavierGlorotUniform",
    # Data sets
    "DataSet",
    "Sample",
]
