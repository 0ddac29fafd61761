"""Leaf nodes: placeholders, constants, variables and generated tensors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence, Union

import jax
import jax.numpy as jnp
import jax.random as random
import numpy as np

from declgraph.config import LearningOptimizer
from declgraph.data import initializers
from declgraph.data.types import (
    DataType,
    ParameterRange,
    Tensor,
    TensorShape,
    with_batch_dimension,
)
from declgraph.errors import (
    DoesNotContainDimensionError,
    InputShapeError,
    InvalidShapeError,
    InvalidValueError,
    UnknownShapeError,
)
from declgraph.graph.node import Node

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.context import ReferenceMarker
    from declgraph.graph.graph import Graph


class PlaceHolder(Node):
    """Graph input fed by name when a mode runs.

    Args:
        shape: Shape of one sample; batch graphs add a leading batch dimension
        modes: Modes that need this input (empty = every mode)
        name: Feed name
        data_type: Element type of the input
    """

    def __init__(
        self,
        shape: Sequence[int],
        modes: Sequence[str] = (),
        name: str | None = None,
        data_type: DataType = DataType.FLOAT32
    ):
        super().__init__(name)
        self.shape = TensorShape(shape)
        self.modes = list(modes)
        self.data_type = data_type
        self.is_batch_exempt = False

    def batch_exempt(self) -> PlaceHolder:
        """Keep the declared shape in batch graphs."""
        self.is_batch_exempt = True
        return self

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        shape = with_batch_dimension(
            self.shape, graph.batch_graph and not self.is_batch_exempt, graph.batch_size
        )
        full_name = graph.full_name(self.name)
        tensor = graph.program.placeholder(shape, self.data_type.numpy_dtype, name=full_name)
        graph.add_feed(full_name, tensor, self.modes)
        return [tensor]


class SubGraphPlaceHolder(Node):
    """Sub-graph input: whatever the instance's input map names for it."""

    def __init__(self, name: str):
        super().__init__(name)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        return [graph.resolve_mapped_input(self.name)]

    def mark_references(self, marker: ReferenceMarker) -> Node | None:
        marker.mark_mapped(self.name)
        return self

    def check_referenced(self) -> None:
        pass


class Constant(Node):
    """Constant tensor given as a fill value, a Tensor, or a data tensor reference.

    Example:
        >>> Constant(shape=[2], value=3.0, name="threes")
        >>> Constant(values=Tensor.from_values([-1.0, 3.0]), name="offsets")
        >>> Constant(tensor_reference="data", name="fromMap")
    """

    def __init__(
        self,
        shape: Sequence[int] | None = None,
        value: float | None = None,
        values: Tensor | None = None,
        tensor_reference: str | None = None,
        data_type: DataType = DataType.FLOAT32,
        name: str | None = None
    ):
        super().__init__(name)
        self.shape = None if shape is None else TensorShape(shape)
        self.value = value
        self.values = values
        self.tensor_reference = tensor_reference
        self.data_type = data_type

        forms = sum([value is not None, values is not None, tensor_reference is not None])
        if forms != 1:
            self.fail(InvalidValueError(
                "Constant needs exactly one of a fill value, a values tensor or a tensor reference"
            ))
        elif value is not None and self.shape is None:
            self.fail(InvalidValueError("Constant with a fill value needs a shape"))

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        if self.value is not None:
            tensor = Tensor.filled(self.value, self.shape, self.data_type)
        elif self.tensor_reference is not None:
            tensor = graph.data_tensor(self.tensor_reference)
        else:
            tensor = self.values
        return [graph.program.constant(tensor.array, name=graph.full_name(self.name))]


# ============================================================================
# Variable
# ============================================================================

@dataclass(frozen=True)
class TensorSource:
    values: Tensor


@dataclass(frozen=True)
class ReferenceSource:
    reference: str


@dataclass(frozen=True)
class UniformSource:
    value_range: ParameterRange
    orthogonal: bool = False


@dataclass(frozen=True)
class NormalSource:
    mean: float
    standard_deviation: float
    orthogonal: bool = False


@dataclass(frozen=True)
class ConstantSource:
    value: float


@dataclass(frozen=True)
class NodeSource:
    input_name: str | None


VariableSource = Union[
    TensorSource, ReferenceSource, UniformSource, NormalSource, ConstantSource, NodeSource
]


class Variable(Node):
    """Stateful tensor, optionally learned with respect to a loss node.

    Use the class-method constructors:
        >>> Variable.from_tensor(Tensor.from_values([1.0, 2.0]), name="w")
        >>> Variable.random_uniform([8, 4], ParameterRange(-0.1, 0.1), name="w")
        >>> Variable.random_normal([32, 8], 0.0, 0.1, orthogonal=True, name="rw")
        >>> Variable.constant(0.0, shape=[4], name="b").learn_with_respect_to("loss")
        >>> Variable.from_node("initialState", name="state")
        >>> Variable.from_reference("weights", name="w")

    Type and shape of reference and node sourced variables are known once the
    source has been resolved.
    """

    def __init__(
        self,
        source: VariableSource,
        name: str,
        data_type: DataType | None = None,
        shape: Sequence[int] | None = None
    ):
        super().__init__(name)
        self.source = source
        self.data_type = data_type
        self.shape = None if shape is None else TensorShape(shape)
        self.loss_node: str | None = None
        self.optimizer = LearningOptimizer.STOCHASTIC_GRADIENT_DESCENT
        self.gradient_clipping: tuple[float, float] | None = None
        self.reference_tensor: Tensor | None = None

        generated = isinstance(source, (UniformSource, NormalSource, ConstantSource))
        if generated and self.data_type is None:
            self.data_type = DataType.FLOAT32
        if generated and self.shape is None:
            self.fail(UnknownShapeError(name))
        elif getattr(source, "orthogonal", False):
            try:
                initializers.gate_count(self.shape)
            except InvalidShapeError as err:
                self.fail(err)

    @classmethod
    def from_tensor(cls, values: Tensor, name: str) -> Variable:
        return cls(TensorSource(values), name, values.data_type, values.shape)

    @classmethod
    def from_reference(cls, reference: str, name: str) -> Variable:
        return cls(ReferenceSource(reference), name)

    @classmethod
    def random_uniform(
        cls,
        shape: Sequence[int],
        value_range: ParameterRange,
        name: str,
        data_type: DataType = DataType.FLOAT32,
        orthogonal: bool = False
    ) -> Variable:
        return cls(UniformSource(value_range, orthogonal), name, data_type, shape)

    @classmethod
    def random_normal(
        cls,
        shape: Sequence[int],
        mean: float,
        standard_deviation: float,
        name: str,
        data_type: DataType = DataType.FLOAT32,
        orthogonal: bool = False
    ) -> Variable:
        return cls(NormalSource(mean, standard_deviation, orthogonal), name, data_type, shape)

    @classmethod
    def constant(
        cls,
        value: float,
        shape: Sequence[int],
        name: str,
        data_type: DataType = DataType.FLOAT32
    ) -> Variable:
        return cls(ConstantSource(value), name, data_type, shape)

    @classmethod
    def from_node(cls, input_name: str | None, name: str) -> Variable:
        return cls(NodeSource(input_name), name)

    @classmethod
    def create_weight_initialization_variable(
        cls,
        data_type: DataType,
        shape: Sequence[int],
        init: initializers.WeightInitialization,
        num_inputs: int,
        num_outputs: int,
        name: str,
        orthogonal: bool = False
    ) -> Variable:
        """Variable drawn from a uniform / normal / Xavier / He scheme."""
        concrete = initializers.resolve_initialization(init, num_inputs, num_outputs)
        if isinstance(concrete, initializers.Uniform):
            value_range = ParameterRange(concrete.minimum, concrete.maximum)
            return cls.random_uniform(shape, value_range, name, data_type, orthogonal)
        return cls.random_normal(
            shape, concrete.mean, concrete.standard_deviation, name, data_type, orthogonal
        )

    def learn_with_respect_to(
        self,
        loss: str,
        optimizer: LearningOptimizer = LearningOptimizer.STOCHASTIC_GRADIENT_DESCENT,
        gradient_clipping: tuple[float, float] | None = None
    ) -> Variable:
        """Update this variable to minimise the named loss in learning modes.

        Args:
            loss: Name of the loss node
            optimizer: Update rule for this variable
            gradient_clipping: Optional (min, max) bounds on the gradient
        """
        self.loss_node = loss
        self.optimizer = optimizer
        if gradient_clipping is not None:
            low, high = gradient_clipping
            if low > high:
                self.fail(InvalidValueError(
                    f"Gradient clipping minimum {low} is greater than maximum {high}"
                ))
            self.gradient_clipping = (float(low), float(high))
        return self

    def input_references(self) -> list[str | None]:
        if isinstance(self.source, NodeSource):
            return [self.source.input_name]
        return []

    def _generate(self, key: jax.Array) -> Tensor:
        source = self.source
        if isinstance(source, UniformSource):
            if source.orthogonal:
                init = initializers.Uniform(source.value_range.minimum, source.value_range.maximum)
                return initializers.orthogonal_weight_tensor(key, self.data_type, self.shape, init)
            return initializers.random_uniform_values(key, self.data_type, self.shape, source.value_range)
        if source.orthogonal:
            init = initializers.Normal(source.mean, source.standard_deviation)
            return initializers.orthogonal_weight_tensor(key, self.data_type, self.shape, init)
        return initializers.random_normal_values(
            key, self.data_type, self.shape, source.mean, source.standard_deviation
        )

    def materialize(self, graph: Graph) -> Tensor | None:
        """Initial value of the variable (None when copied from another node)."""
        source = self.source
        if isinstance(source, TensorSource):
            return source.values
        if isinstance(source, ReferenceSource):
            tensor = graph.data_tensor(source.reference)
            self.reference_tensor = tensor
            self.data_type = tensor.data_type
            self.shape = tensor.shape
            return tensor
        if isinstance(source, (UniformSource, NormalSource)):
            return self._generate(graph.next_key())
        if isinstance(source, ConstantSource):
            return initializers.constant_values(self.data_type, self.shape, source.value)
        return None

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        full_name = graph.full_name(self.name)
        source_tensor = None
        if isinstance(self.source, NodeSource):
            source_tensor = graph.resolve(self.source.input_name)
            tensor = graph.program.variable_from_tensor(source_tensor, name=full_name)
            self.data_type = source_tensor.data_type
            self.shape = TensorShape(source_tensor.shape)
        else:
            values = self.materialize(graph)
            tensor = graph.program.variable(values.array, name=full_name)

        graph.add_load_reset_entry(full_name, self, tensor, source_tensor)
        if self.loss_node is not None:
            graph.add_learning_variable(
                full_name, tensor, self.loss_node, self.optimizer, self.gradient_clipping
            )
        return [tensor]

    def reset_data(self, graph: Graph) -> Tensor | None:
        """Values a reset assigns: the same data for fixed sources, a new draw for random ones."""
        source = self.source
        if isinstance(source, TensorSource):
            return source.values
        if isinstance(source, ReferenceSource):
            return self.reference_tensor
        if isinstance(source, (UniformSource, NormalSource)):
            return self._generate(graph.next_key())
        if isinstance(source, ConstantSource):
            return initializers.constant_values(self.data_type, self.shape, source.value)
        return None


# ============================================================================
# Generated tensors
# ============================================================================

def random_state_tensor(seed: int) -> Tensor:
    """Initial state for a stateful RandomUniformTensor."""
    return Tensor(np.asarray(random.PRNGKey(seed)))


class RandomUniformTensor(Node):
    """Uniform random values in [0, 1).

    Without a state input the values come from a fixed key (from `seed`, or
    drawn from the graph seed). With a state input (a uint32 [2] key, see
    random_state_tensor) the node emits the values and the next state, named
    `<name>_random` and `<name>_state`.
    """

    def __init__(
        self,
        shape: Sequence[int],
        seed: int | None = None,
        state_tensor: str | None = None,
        stateful: bool = False,
        name: str | None = None
    ):
        super().__init__(name)
        self.shape = TensorShape(shape)
        self.seed = seed
        self.state_tensor = state_tensor
        self.stateful = stateful or state_tensor is not None

    def input_references(self) -> list[str | None]:
        return [self.state_tensor] if self.stateful else []

    def output_suffixes(self) -> list[str]:
        return ["_random", "_state"] if self.stateful else [""]

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        shape = self.shape.dimensions
        full_name = graph.full_name(self.name)
        if self.stateful:
            state = graph.resolve(self.state_tensor)
            if state.shape != (2,):
                raise InputShapeError(
                    f"Random state tensor must have shape [2], got {list(state.shape)}"
                )

            def generate(key):
                key = key.astype(jnp.uint32)
                next_key, sample_key = random.split(key)
                return random.uniform(sample_key, shape), next_key

            return graph.program.apply_multi(generate, [state], 2, name=full_name)

        key = random.PRNGKey(self.seed) if self.seed is not None else graph.next_key()
        return [graph.program.apply(lambda: random.uniform(key, shape), [], name=full_name)]


class CoordinateTensor(Node):
    """int32 tensor whose elements are their own index along `along_axis`."""

    def __init__(self, along_axis: int, shape: Sequence[int], name: str | None = None):
        super().__init__(name)
        self.along_axis = along_axis
        self.shape = TensorShape(shape)
        if not 0 <= along_axis < self.shape.num_dimensions:
            self.fail(DoesNotContainDimensionError(along_axis, self.shape.num_dimensions))

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        shape, axis = self.shape.dimensions, self.along_axis
        return [graph.program.apply(
            lambda: jax.lax.broadcasted_iota(jnp.int32, shape, axis),
            [],
            name=graph.full_name(self.name),
        )]
