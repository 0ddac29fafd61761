"""Neural-network layers built from several tensors: dense, batch norm and recurrent.

Each layer creates its own Variables (named `<layer>_<part>`), emits every
intermediate tensor under a suffixed name, and targets only its result.
"""

from __future__ import annotations

import enum
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable

import jax
import jax.numpy as jnp

from declgraph.config import LearningOptimizer
from declgraph.data import initializers
from declgraph.data.types import ParameterRange, TensorShape
from declgraph.errors import InputShapeError, InvalidValueError
from declgraph.graph.node import UnaryNode
from declgraph.nodes.leaf import Variable

if TYPE_CHECKING:
    from declgraph.backend.program import SymbolicTensor
    from declgraph.graph.graph import Graph


# ============================================================================
# Activations
# ============================================================================

@dataclass(frozen=True)
class ActivationFunction:
    """Activation applied at the end of a layer.

    Use the constants NONE, RELU, TANH, SIGMOID or the leaky_relu /
    leaky_relu_from_tensor constructors.
    """
    kind: str = "none"
    alpha: float = 0.0
    alpha_tensor: str | None = None

    @classmethod
    def leaky_relu(cls, alpha: float) -> ActivationFunction:
        return cls("leakyRelu", alpha=alpha)

    @classmethod
    def leaky_relu_from_tensor(cls, alpha_tensor: str) -> ActivationFunction:
        return cls("leakyReluFromTensor", alpha_tensor=alpha_tensor)

    @property
    def is_none(self) -> bool:
        return self.kind == "none"

    def apply(self, graph: Graph, x: SymbolicTensor, name: str | None) -> SymbolicTensor | None:
        """Add the activation after `x`; None for NONE."""
        program = graph.program
        if self.kind == "none":
            return None
        if self.kind == "relu":
            return program.apply(jax.nn.relu, [x], name=name)
        if self.kind == "tanh":
            return program.apply(jnp.tanh, [x], name=name)
        if self.kind == "sigmoid":
            return program.apply(jax.nn.sigmoid, [x], name=name)
        if self.kind == "leakyRelu":
            alpha = self.alpha
            return program.apply(lambda v: jax.nn.leaky_relu(v, negative_slope=alpha), [x], name=name)
        if self.kind == "leakyReluFromTensor":
            alpha = graph.resolve(self.alpha_tensor)
            return program.apply(lambda v, a: jnp.where(v >= 0, v, a * v), [x, alpha], name=name)
        raise InvalidValueError(f"Unknown activation function '{self.kind}'")


ActivationFunction.NONE = ActivationFunction("none")
ActivationFunction.RELU = ActivationFunction("relu")
ActivationFunction.TANH = ActivationFunction("tanh")
ActivationFunction.SIGMOID = ActivationFunction("sigmoid")


class RNNActivation(enum.Enum):
    NONE = "none"
    RELU = "relu"
    TANH = "tanh"
    SIGMOID = "sigmoid"
    HARD_SIGMOID = "hardSigmoid"

    @property
    def function(self) -> Callable[[Any], Any]:
        return {
            RNNActivation.NONE: lambda v: v,
            RNNActivation.RELU: jax.nn.relu,
            RNNActivation.TANH: jnp.tanh,
            RNNActivation.SIGMOID: jax.nn.sigmoid,
            RNNActivation.HARD_SIGMOID: lambda v: jnp.clip(0.2 * v + 0.5, 0.0, 1.0),
        }[self]


# ============================================================================
# Shared layer plumbing
# ============================================================================

class LayerOutputs:
    """Tensors a layer emits, with their suffixes and target flags."""

    def __init__(self):
        self.tensors: list[SymbolicTensor | None] = []
        self.suffixes: list[str] = []
        self.targets: list[int] = []

    def add(self, tensor: SymbolicTensor, suffix: str, target: bool = False) -> SymbolicTensor:
        if target:
            self.targets.append(len(self.tensors))
        self.tensors.append(tensor)
        self.suffixes.append(suffix)
        return tensor


class Layer(UnaryNode):
    """Base for multi-tensor layers with learned variables."""

    def __init__(self, input_name: str | None = None, name: str | None = None):
        super().__init__(input_name, name)
        self.loss_node: str | None = None
        self.optimizer = LearningOptimizer.STOCHASTIC_GRADIENT_DESCENT
        self.gradient_clipping: tuple[float, float] | None = None
        self._suffixes: list[str] = []
        self._target_indices: list[int] = []
        self._primary = 0
        if name is None:
            self.fail(InvalidValueError(f"{self.type_name} needs a name for its variables"))

    def learn_with_respect_to(
        self,
        loss: str,
        optimizer: LearningOptimizer = LearningOptimizer.STOCHASTIC_GRADIENT_DESCENT,
        gradient_clipping: tuple[float, float] | None = None
    ) -> Layer:
        """Learn this layer's weights by minimising the named loss."""
        self.loss_node = loss
        self.optimizer = optimizer
        self.gradient_clipping = gradient_clipping
        return self

    def output_suffixes(self) -> list[str]:
        return self._suffixes

    def target_indices(self) -> list[int] | None:
        return self._target_indices

    def primary_output_index(self) -> int:
        return self._primary

    def _variable(self, graph: Graph, variable: Variable, learned: bool = True) -> SymbolicTensor:
        if learned and self.loss_node is not None:
            variable.learn_with_respect_to(self.loss_node, self.optimizer, self.gradient_clipping)
        (tensor,) = variable.resolve(graph)
        return tensor

    def _finish(self, outputs: LayerOutputs, primary: SymbolicTensor) -> list[SymbolicTensor | None]:
        self._suffixes = outputs.suffixes
        self._target_indices = outputs.targets
        self._primary = next(i for i, t in enumerate(outputs.tensors) if t is primary)
        return outputs.tensors


# ============================================================================
# Fully connected
# ============================================================================

class FullyConnectedLayer(Layer):
    """Dense layer: flatten, multiply by weights, add biases, activate.

    In a batch graph the leading batch dimension is kept and each sample is
    flattened separately.

    Example:
        >>> FullyConnectedLayer(output_shape=[10], activation=ActivationFunction.RELU, name="hidden")
        ...     .weight_initial_range(-0.1, 0.1)
        ...     .learn_with_respect_to("loss")
    """

    def __init__(
        self,
        input_name: str | None = None,
        output_shape: list[int] | tuple[int, ...] = (1,),
        activation: ActivationFunction = ActivationFunction.NONE,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.output_shape = TensorShape(output_shape)
        self.activation = activation
        self.use_bias = True
        self.weight_range = ParameterRange(-0.5, 0.5)
        self.bias_range = ParameterRange(-0.5, 0.5)

    def no_bias_term(self) -> FullyConnectedLayer:
        self.use_bias = False
        return self

    def weight_initial_range(self, minimum: float, maximum: float) -> FullyConnectedLayer:
        try:
            self.weight_range = ParameterRange(minimum, maximum)
        except InvalidValueError as err:
            self.fail(err)
        return self

    def bias_initial_range(self, minimum: float, maximum: float) -> FullyConnectedLayer:
        try:
            self.bias_range = ParameterRange(minimum, maximum)
        except InvalidValueError as err:
            self.fail(err)
        return self

    def input_references(self) -> list[str | None]:
        refs = [self.input_name]
        if self.activation.alpha_tensor is not None:
            refs.append(self.activation.alpha_tensor)
        return refs

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        full_name = graph.full_name(self.name)
        program = graph.program
        outputs = LayerOutputs()

        if graph.batch_graph:
            rows = x.shape[0]
            num_inputs = math.prod(x.shape[1:])
            result_shape = (rows,) + self.output_shape.dimensions
        else:
            rows = 1
            num_inputs = math.prod(x.shape)
            result_shape = self.output_shape.dimensions
        num_outputs = self.output_shape.total_size

        flat_shape = (rows, num_inputs)
        if x.shape != flat_shape:
            x = outputs.add(program.apply(
                lambda v: jnp.reshape(v, flat_shape), [x], name=full_name + "_inputReshape"
            ), "_inputReshape")

        weights = outputs.add(self._variable(graph, Variable.random_uniform(
            [num_inputs, num_outputs], self.weight_range, name=self.name + "_weights"
        )), "_weights")

        biases = None
        if self.use_bias:
            biases = outputs.add(self._variable(graph, Variable.random_uniform(
                self.output_shape, self.bias_range, name=self.name + "_biases"
            )), "_biases")

        reshape = (rows, num_outputs) != result_shape
        downstream = self.use_bias or not self.activation.is_none
        suffix = "_matrixMult" if downstream or reshape else ""
        result = outputs.add(
            program.apply(jnp.matmul, [x, weights], name=full_name + suffix),
            suffix,
            target=not suffix,
        )

        if reshape:
            suffix = "_outputReshape" if downstream else ""
            result = outputs.add(program.apply(
                lambda v: jnp.reshape(v, result_shape), [result], name=full_name + suffix
            ), suffix, target=not downstream)

        if biases is not None:
            suffix = "" if self.activation.is_none else "_biasAdded"
            result = outputs.add(
                program.apply(jnp.add, [result, biases], name=full_name + suffix),
                suffix,
                target=self.activation.is_none,
            )

        activated = self.activation.apply(graph, result, full_name)
        if activated is not None:
            result = outputs.add(activated, "", target=True)

        return self._finish(outputs, result)


# ============================================================================
# Batch normalization
# ============================================================================

class BatchNormalization(Layer):
    """Normalize with batch statistics while learning, running statistics otherwise.

    gamma and beta are learned; the running mean and variance move toward
    each learning step's batch statistics with the given momentum.

    Args:
        input_name: Input tensor (None = previous output)
        epsilon: Variance offset
        momentum: Weight of the old running statistics in each update
        feature_dimensions: Axes with their own statistics (default: all but the batch axis)
        activation: Activation applied to the normalized result
        name: Layer name (required)
    """

    def __init__(
        self,
        input_name: str | None = None,
        epsilon: float = 1.0e-5,
        momentum: float = 0.9,
        feature_dimensions: list[int] | None = None,
        activation: ActivationFunction = ActivationFunction.NONE,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.epsilon = epsilon
        self.momentum = momentum
        self.feature_dimensions = feature_dimensions
        self.activation = activation

    def input_references(self) -> list[str | None]:
        refs = [self.input_name]
        if self.activation.alpha_tensor is not None:
            refs.append(self.activation.alpha_tensor)
        return refs

    def _statistics_axes(self, graph: Graph, shape: tuple[int, ...]) -> tuple[tuple[int, ...], tuple[int, ...]]:
        normalized = list(shape)
        axes = []
        if graph.batch_graph:
            normalized[0] = 1
            axes.append(0)
        if self.feature_dimensions is not None:
            for dim in range(len(normalized)):
                if dim not in self.feature_dimensions and dim not in axes:
                    normalized[dim] = 1
                    axes.append(dim)
        return tuple(normalized), tuple(axes)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        full_name = graph.full_name(self.name)
        program = graph.program
        outputs = LayerOutputs()
        shape, axes = self._statistics_axes(graph, x.shape)
        data_type = x.data_type

        def constant_variable(value, part, learned):
            variable = Variable.constant(value, shape, name=f"{self.name}_{part}", data_type=data_type)
            return outputs.add(self._variable(graph, variable, learned), f"_{part}")

        gamma = constant_variable(1.0, "gamma", True)
        beta = constant_variable(0.0, "beta", True)
        running_mean = constant_variable(0.0, "runningMean", False)
        running_variance = constant_variable(1.0, "runningVariance", False)
        training = graph.training_mode_tensor()
        epsilon, momentum = self.epsilon, self.momentum

        def batch_mean(v):
            return jnp.mean(v, axis=axes, keepdims=True)

        def batch_variance(v):
            return jnp.var(v, axis=axes, keepdims=True)

        training_x_hat = outputs.add(program.apply(
            lambda v: (v - batch_mean(v)) / jnp.sqrt(batch_variance(v) + epsilon),
            [x],
            name=full_name + "_training_x_hat",
        ), "_training_x_hat")
        testing_x_hat = outputs.add(program.apply(
            lambda v, m, s: (v - m) / jnp.sqrt(s + epsilon),
            [x, running_mean, running_variance],
            name=full_name + "_testing_x_hat",
        ), "_testing_x_hat")
        x_hat = outputs.add(program.apply(
            lambda t, a, b: jnp.where(t, a, b),
            [training, training_x_hat, testing_x_hat],
            name=full_name + "_x_hat",
        ), "_x_hat")

        new_mean = outputs.add(program.apply(
            lambda v, m: momentum * m + (1.0 - momentum) * batch_mean(v),
            [x, running_mean],
            name=full_name + "_new_running_mean",
        ), "_new_running_mean")
        new_variance = outputs.add(program.apply(
            lambda v, s: momentum * s + (1.0 - momentum) * batch_variance(v),
            [x, running_variance],
            name=full_name + "_new_running_variance",
        ), "_new_running_variance")
        graph.add_update_operation(program.assign(
            running_mean, new_mean, name=full_name + "_running_mean_assignment"
        ))
        graph.add_update_operation(program.assign(
            running_variance, new_variance, name=full_name + "_running_variance_assignment"
        ))

        suffix = "" if self.activation.is_none else "_batchNormalization"
        result = outputs.add(program.apply(
            lambda v, g, b: v * g + b, [x_hat, gamma, beta], name=full_name + suffix
        ), suffix, target=True)

        activated = self.activation.apply(graph, result, full_name)
        if activated is not None:
            result = outputs.add(activated, "", target=True)

        return self._finish(outputs, result)


# ============================================================================
# Recurrent layers
# ============================================================================

def _recurrent_scan(step, carry, inputs, reverse=False):
    _, outputs = jax.lax.scan(step, carry, inputs, reverse=reverse)
    return outputs


class RecurrentLayer(Layer):
    """Shared configuration of LSTM and GRU layers over [T, N, I] inputs."""

    num_gates = 1

    def __init__(self, input_name: str | None = None, state_size: int = 1, name: str | None = None):
        super().__init__(input_name, name)
        self.state_size = state_size
        self.recurrent_initialization: initializers.WeightInitialization = initializers.XavierGlorotNormal()
        self.orthogonal_recurrent_weights = True
        self.input_initialization: initializers.WeightInitialization = initializers.XavierGlorotNormal()
        self.bias_value = 0.0
        self.bidirectional = False
        self.create_last_state = True
        self.target_loop = False
        self.target_last = True

    def recurrent_weight_initialization(
        self,
        init: initializers.WeightInitialization,
        orthogonalize: bool = True
    ) -> RecurrentLayer:
        self.recurrent_initialization = init
        self.orthogonal_recurrent_weights = orthogonalize
        return self

    def input_weight_initialization(self, init: initializers.WeightInitialization) -> RecurrentLayer:
        self.input_initialization = init
        return self

    def bias_initial_value(self, value: float) -> RecurrentLayer:
        self.bias_value = value
        return self

    def make_bidirectional(self) -> RecurrentLayer:
        self.bidirectional = True
        return self

    def _check_input(self, x: SymbolicTensor) -> int:
        if x.rank != 3:
            raise InputShapeError(
                f"{self.type_name} input must be 3D [time, batch, features], got {list(x.shape)}"
            )
        return x.shape[2]

    def _weights(self, graph: Graph, x: SymbolicTensor, outputs: LayerOutputs):
        """Create the recurrent weights, input weights and bias variables."""
        num_inputs = self._check_input(x)
        size, gates = self.state_size, self.num_gates
        directions = 2 if self.bidirectional else 1
        data_type = x.data_type

        recurrent_shape = [2, gates * size, size] if self.bidirectional else [gates * size, size]
        recurrent = outputs.add(self._variable(graph, Variable.create_weight_initialization_variable(
            data_type, recurrent_shape, self.recurrent_initialization, size, size,
            name=self.name + "_recurrentWeights", orthogonal=self.orthogonal_recurrent_weights,
        )), "_recurrentWeights")
        inputs = outputs.add(self._variable(graph, Variable.create_weight_initialization_variable(
            data_type, [directions * gates * size, num_inputs], self.input_initialization,
            num_inputs, size, name=self.name + "_inputWeights",
        )), "_inputWeights")
        bias = outputs.add(self._variable(graph, Variable.constant(
            self.bias_value, [directions * gates * size], name=self.name + "_bias", data_type=data_type,
        )), "_bias")
        return recurrent, inputs, bias

    def _last(self, graph: Graph, sequence: SymbolicTensor, part: str, outputs: LayerOutputs) -> SymbolicTensor:
        full_name = graph.full_name(self.name)
        last_slice = outputs.add(graph.program.apply(
            lambda v: v[-1:], [sequence], name=f"{full_name}_last{part}Slice"
        ), f"_last{part}Slice")
        return outputs.add(graph.program.apply(
            lambda v: v[0], [last_slice], name=f"{full_name}_last{part}"
        ), f"_last{part}", target=self.target_last)


class LSTMLayer(RecurrentLayer):
    """Long short-term memory layer over a [T, N, I] sequence.

    Gate order in the stacked weights is input, forget, cell, output.
    Emits the weights, the state sequence `_state` ([T, N, H], or [T, N, 2H]
    when bidirectional), optionally the cell sequence `_cell`, the gate
    pre-activations `_z` while learning, and the last state / cell.

    Example:
        >>> LSTMLayer("sequence", state_size=8, name="lstm")
        ...     .set_output(create_last_cell=True)
        ...     .learn_with_respect_to("loss")
    """

    num_gates = 4

    def __init__(self, input_name: str | None = None, state_size: int = 1, name: str | None = None):
        super().__init__(input_name, state_size, name)
        self.activation = RNNActivation.TANH
        self.cell_gate_activation = RNNActivation.TANH
        self.forget_gate_activation = RNNActivation.SIGMOID
        self.input_gate_activation = RNNActivation.SIGMOID
        self.output_gate_activation = RNNActivation.SIGMOID
        self.produce_cell_output = False
        self.create_last_cell = False

    def activation_function(self, activation: RNNActivation) -> LSTMLayer:
        self.activation = activation
        if activation == RNNActivation.RELU:
            self.recurrent_initialization = initializers.HeNormal()
            self.input_initialization = initializers.HeNormal()
        return self

    def cell_gate_activation_function(self, activation: RNNActivation) -> LSTMLayer:
        self.cell_gate_activation = activation
        return self

    def forget_gate_activation_function(self, activation: RNNActivation) -> LSTMLayer:
        self.forget_gate_activation = activation
        return self

    def input_gate_activation_function(self, activation: RNNActivation) -> LSTMLayer:
        self.input_gate_activation = activation
        return self

    def output_gate_activation_function(self, activation: RNNActivation) -> LSTMLayer:
        self.output_gate_activation = activation
        return self

    def all_activation_functions(self, activation: RNNActivation) -> LSTMLayer:
        self.activation_function(activation)
        self.cell_gate_activation = activation
        self.forget_gate_activation = activation
        self.input_gate_activation = activation
        self.output_gate_activation = activation
        return self

    def set_output(
        self,
        produce_cell_output: bool = False,
        create_last_state: bool = True,
        create_last_cell: bool = False,
        target_loops: bool = False,
        target_lasts: bool = True
    ) -> LSTMLayer:
        self.produce_cell_output = produce_cell_output or create_last_cell
        self.create_last_state = create_last_state
        self.create_last_cell = create_last_cell
        self.target_loop = target_loops
        self.target_last = target_lasts
        return self

    def _direction(self, x, w, r, b, reverse):
        size = self.state_size
        state_act = self.activation.function
        cell_act = self.cell_gate_activation.function
        forget_act = self.forget_gate_activation.function
        input_act = self.input_gate_activation.function
        output_act = self.output_gate_activation.function

        def step(carry, x_t):
            h, c = carry
            z = x_t @ w.T + h @ r.T + b
            i, f, g, o = jnp.split(z, 4, axis=-1)
            c = forget_act(f) * c + input_act(i) * cell_act(g)
            h = output_act(o) * state_act(c)
            return (h, c), (h, c, z)

        zeros = jnp.zeros((x.shape[1], size), x.dtype)
        return _recurrent_scan(step, (zeros, zeros), x, reverse)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        outputs = LayerOutputs()
        recurrent, inputs, bias = self._weights(graph, x, outputs)
        learning = self.loss_node is not None
        produce_cell = self.produce_cell_output or learning
        gate_rows = self.num_gates * self.state_size

        def lstm(v, r, w, b):
            if self.bidirectional:
                forward = self._direction(v, w[:gate_rows], r[0], b[:gate_rows], False)
                backward = self._direction(v, w[gate_rows:], r[1], b[gate_rows:], True)
                hs, cs, zs = (jnp.concatenate(pair, axis=-1) for pair in zip(forward, backward))
            else:
                hs, cs, zs = self._direction(v, w, r, b, False)
            results = [hs]
            if produce_cell:
                results.append(cs)
            if learning:
                results.append(zs)
            return tuple(results)

        count = 1 + int(produce_cell) + int(learning)
        sequences = graph.program.apply_multi(
            lstm, [x, recurrent, inputs, bias], count, name=graph.full_name(self.name)
        )
        states = outputs.add(sequences[0], "_state", target=self.target_loop)
        result = states
        if produce_cell:
            cells = outputs.add(sequences[1], "_cell", target=self.target_loop)
        if learning:
            outputs.add(sequences[-1], "_z", target=True)

        if self.create_last_state:
            result = self._last(graph, states, "State", outputs)
        if self.create_last_cell:
            self._last(graph, cells, "Cell", outputs)

        return self._finish(outputs, result)


class GRULayer(RecurrentLayer):
    """Gated recurrent unit layer over a [T, N, I] sequence.

    Gate order in the stacked weights is update, reset, output. The new state
    is z * h + (1 - z) * candidate.
    """

    num_gates = 3

    def __init__(self, input_name: str | None = None, state_size: int = 1, name: str | None = None):
        super().__init__(input_name, state_size, name)
        self.output_gate_activation = RNNActivation.TANH
        self.reset_gate_activation = RNNActivation.SIGMOID
        self.update_gate_activation = RNNActivation.SIGMOID

    def output_gate_activation_function(self, activation: RNNActivation) -> GRULayer:
        self.output_gate_activation = activation
        return self

    def reset_gate_activation_function(self, activation: RNNActivation) -> GRULayer:
        self.reset_gate_activation = activation
        return self

    def update_gate_activation_function(self, activation: RNNActivation) -> GRULayer:
        self.update_gate_activation = activation
        return self

    def set_output(
        self,
        create_last_state: bool = True,
        target_loop: bool = False,
        target_last: bool = True
    ) -> GRULayer:
        self.create_last_state = create_last_state
        self.target_loop = target_loop
        self.target_last = target_last
        return self

    def _direction(self, x, w, r, b, reverse):
        size = self.state_size
        output_act = self.output_gate_activation.function
        reset_act = self.reset_gate_activation.function
        update_act = self.update_gate_activation.function

        def step(h, x_t):
            projected = x_t @ w.T + b
            zx, rx, ox = jnp.split(projected, 3, axis=-1)
            rz, rr, ro = jnp.split(r, 3, axis=0)
            update = update_act(zx + h @ rz.T)
            reset = reset_act(rx + h @ rr.T)
            candidate = output_act(ox + (reset * h) @ ro.T)
            h = update * h + (1.0 - update) * candidate
            return h, (h, jnp.concatenate([update, reset, candidate], axis=-1))

        zeros = jnp.zeros((x.shape[1], size), x.dtype)
        return _recurrent_scan(step, zeros, x, reverse)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        outputs = LayerOutputs()
        recurrent, inputs, bias = self._weights(graph, x, outputs)
        learning = self.loss_node is not None
        gate_rows = self.num_gates * self.state_size

        def gru(v, r, w, b):
            if self.bidirectional:
                forward = self._direction(v, w[:gate_rows], r[0], b[:gate_rows], False)
                backward = self._direction(v, w[gate_rows:], r[1], b[gate_rows:], True)
                hs, zs = (jnp.concatenate(pair, axis=-1) for pair in zip(forward, backward))
            else:
                hs, zs = self._direction(v, w, r, b, False)
            return (hs, zs) if learning else (hs,)

        sequences = graph.program.apply_multi(
            gru, [x, recurrent, inputs, bias], 2 if learning else 1, name=graph.full_name(self.name)
        )
        result = outputs.add(sequences[0], "_state", target=self.target_loop)
        if learning:
            outputs.add(sequences[1], "_z", target=True)
        if self.create_last_state:
            result = self._last(graph, result, "State", outputs)

        return self._finish(outputs, result)


class RNNLayer(RecurrentLayer):
    """Single-gate recurrent layer over a [T, N, I] sequence.

    The state is h = f(W x + R h + b). Emits the weights, the state sequence
    `_state`, the pre-activations `_z` while learning, and the last state.
    """

    def __init__(self, input_name: str | None = None, state_size: int = 1, name: str | None = None):
        super().__init__(input_name, state_size, name)
        self.activation = RNNActivation.TANH

    def activation_function(self, activation: RNNActivation) -> RNNLayer:
        self.activation = activation
        if activation == RNNActivation.RELU:
            self.recurrent_initialization = initializers.HeNormal()
            self.input_initialization = initializers.HeNormal()
        return self

    def set_output(
        self,
        create_last_state: bool = True,
        target_loop: bool = False,
        target_last: bool = True
    ) -> RNNLayer:
        self.create_last_state = create_last_state
        self.target_loop = target_loop
        self.target_last = target_last
        return self

    def _direction(self, x, w, r, b, reverse):
        act = self.activation.function

        def step(h, x_t):
            z = x_t @ w.T + h @ r.T + b
            h = act(z)
            return h, (h, z)

        zeros = jnp.zeros((x.shape[1], self.state_size), x.dtype)
        return _recurrent_scan(step, zeros, x, reverse)

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        outputs = LayerOutputs()
        recurrent, inputs, bias = self._weights(graph, x, outputs)
        learning = self.loss_node is not None
        size = self.state_size

        def rnn(v, r, w, b):
            if self.bidirectional:
                forward = self._direction(v, w[:size], r[0], b[:size], False)
                backward = self._direction(v, w[size:], r[1], b[size:], True)
                hs, zs = (jnp.concatenate(pair, axis=-1) for pair in zip(forward, backward))
            else:
                hs, zs = self._direction(v, w, r, b, False)
            return (hs, zs) if learning else (hs,)

        sequences = graph.program.apply_multi(
            rnn, [x, recurrent, inputs, bias], 2 if learning else 1, name=graph.full_name(self.name)
        )
        result = outputs.add(sequences[0], "_state", target=self.target_loop)
        if learning:
            outputs.add(sequences[1], "_z", target=True)
        if self.create_last_state:
            result = self._last(graph, result, "State", outputs)

        return self._finish(outputs, result)


class SingleGateRNN(UnaryNode):
    """Single-gate recurrence over weight tensors declared elsewhere.

    h_t = f(W x_t + R h_{t-1} + b) with R [H, H]. Without input weights the
    input must already be [T, N, H]; without a bias none is added; without an
    initial state [N, H] the state starts at zero. Where the mask ([T, N, H]
    or [T, N, 1]) is 0 the previous state is kept.

    Emits `<name>_state` [T, N, H], and `<name>_trainingState` (the
    pre-activations) when `training` is set.
    """

    def __init__(
        self,
        input_name: str | None = None,
        recurrent_weight: str | None = None,
        input_weight: str | None = None,
        bias: str | None = None,
        init_state: str | None = None,
        mask: str | None = None,
        activation: RNNActivation = RNNActivation.TANH,
        reverse: bool = False,
        training: bool = False,
        name: str | None = None
    ):
        super().__init__(input_name, name)
        self.recurrent_weight = recurrent_weight
        self.optional_inputs = {
            "input_weight": input_weight,
            "bias": bias,
            "init_state": init_state,
            "mask": mask,
        }
        self.activation = activation
        self.reverse = reverse
        self.training = training

    def input_references(self) -> list[str | None]:
        named = [ref for ref in self.optional_inputs.values() if ref is not None]
        return [self.input_name, self.recurrent_weight] + named

    def output_suffixes(self) -> list[str]:
        return ["_state", "_trainingState"] if self.training else ["_state"]

    def _check_shapes(self, x, r, given) -> None:
        if x.rank != 3:
            raise InputShapeError(f"SingleGateRNN input must be 3D [time, batch, features], got {list(x.shape)}")
        steps, batch, features = x.shape
        if r.rank != 2 or r.shape[0] != r.shape[1]:
            raise InputShapeError(f"Recurrent weight must be [H, H], got {list(r.shape)}")
        size = r.shape[0]
        expected = {
            "input_weight": [(size, features)],
            "bias": [(size,)],
            "init_state": [(batch, size)],
            "mask": [(steps, batch, size), (steps, batch, 1)],
        }
        for key, tensor in given.items():
            if tensor.shape not in expected[key]:
                raise InputShapeError(
                    f"SingleGateRNN {key} must have shape {list(expected[key][0])}, got {list(tensor.shape)}"
                )
        if "input_weight" not in given and features != size:
            raise InputShapeError(
                f"Without input weights the input features ({features}) must equal the state size ({size})"
            )

    def resolve(self, graph: Graph) -> list[SymbolicTensor | None]:
        x = graph.resolve(self.input_name)
        r = graph.resolve(self.recurrent_weight)
        given = {
            key: graph.resolve(ref) for key, ref in self.optional_inputs.items() if ref is not None
        }
        self._check_shapes(x, r, given)
        keys = list(given)
        act, training = self.activation.function, self.training

        def rnn(v, r, *rest):
            extra = dict(zip(keys, rest))
            projected = v @ extra["input_weight"].T if "input_weight" in extra else v
            if "bias" in extra:
                projected = projected + extra["bias"]
            h0 = extra.get("init_state", jnp.zeros((v.shape[1], r.shape[0]), v.dtype))
            mask = extra.get("mask", jnp.ones(v.shape[:2] + (1,), v.dtype))

            def step(h, inputs):
                p_t, m_t = inputs
                m_t = m_t.astype(h.dtype)
                z = p_t + h @ r.T
                h = m_t * act(z) + (1.0 - m_t) * h
                return h, (h, z)

            hs, zs = _recurrent_scan(step, h0, (projected, mask), self.reverse)
            return (hs, zs) if training else (hs,)

        return graph.program.apply_multi(
            rnn, [x, r] + [given[k] for k in keys], 2 if training else 1, name=graph.full_name(self.name)
        )
